"""Nudge endpoints: send a nudge and list a sender's active cooldowns."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from habitkernel.auth import verify_api_key
from habitkernel.kernel.deps import get_goal_service, get_nudge_gate
from habitkernel.kernel.goals import GoalService
from habitkernel.kernel.models import NudgeCooldown
from habitkernel.kernel.nudges import NudgeCooldownGate, remaining_minutes

router = APIRouter(prefix="/kernel/nudges", tags=["nudges"])


class NudgeRequest(BaseModel):
    sender_id: str
    goal_id: str


class NudgeSent(BaseModel):
    sender_id: str
    goal_id: str
    receiver_id: str
    cooldown: NudgeCooldown


class CooldownView(BaseModel):
    goal_id: str
    cooldown_until: str
    remaining_minutes: int


@router.post("", response_model=NudgeSent, status_code=201)
async def send_nudge(
    body: NudgeRequest,
    service: GoalService = Depends(get_goal_service),
    gate: NudgeCooldownGate = Depends(get_nudge_gate),
    _: str = Depends(verify_api_key),
) -> NudgeSent:
    goal = await service.get_goal(body.goal_id)
    cooldown = await gate.send(body.sender_id, goal)
    return NudgeSent(sender_id=body.sender_id, goal_id=goal.id, receiver_id=goal.owner_id, cooldown=cooldown)


@router.get("/cooldowns", response_model=list[CooldownView])
async def list_cooldowns(
    sender_id: str = Query(..., description="Sender whose cooldowns to list"),
    gate: NudgeCooldownGate = Depends(get_nudge_gate),
    _: str = Depends(verify_api_key),
) -> list[CooldownView]:
    now = gate.clock.now()
    return [
        CooldownView(
            goal_id=c.goal_id,
            cooldown_until=c.cooldown_until.isoformat(),
            remaining_minutes=remaining_minutes(c.cooldown_until, now),
        )
        for c in await gate.active_cooldowns(sender_id, now)
    ]
