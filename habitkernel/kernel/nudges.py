"""Nudge rate limiting: one nudge per (sender, goal) per cooldown window."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta

from habitkernel.kernel.clock import Clock, to_utc
from habitkernel.kernel.errors import NudgeCooldownActive, SelfNudgeRejected
from habitkernel.kernel.models import Goal, NudgeCooldown
from habitkernel.kernel.store import HabitStore

logger = logging.getLogger(__name__)

COOLDOWN_MINUTES = 60


def remaining_minutes(cooldown_until: datetime, now: datetime) -> int:
    """Whole minutes left on a cooldown, rounded up; 0 once it has expired."""
    left = (to_utc(cooldown_until) - to_utc(now)) / timedelta(minutes=1)
    return max(0, math.ceil(left))


class NudgeCooldownGate:
    def __init__(self, store: HabitStore, clock: Clock, cooldown_minutes: int = COOLDOWN_MINUTES) -> None:
        self.store = store
        self.clock = clock
        self.cooldown = timedelta(minutes=cooldown_minutes)

    async def can_send(self, sender_id: str, goal_id: str, now: datetime | None = None) -> bool:
        now = to_utc(now or self.clock.now())
        cooldown = await self.store.get_cooldown(sender_id, goal_id)
        return cooldown is None or to_utc(cooldown.cooldown_until) < now

    async def record_send(self, sender_id: str, goal_id: str, now: datetime | None = None) -> datetime:
        """Start (or restart) the cooldown unconditionally and return its expiry."""
        now = to_utc(now or self.clock.now())
        until = now + self.cooldown
        await self.store.set_cooldown(NudgeCooldown(sender_id=sender_id, goal_id=goal_id, cooldown_until=until))
        return until

    async def send(self, sender_id: str, goal: Goal, now: datetime | None = None) -> NudgeCooldown:
        """Check and claim the cooldown for one nudge in a single store operation.

        Raises SelfNudgeRejected for the goal's owner and NudgeCooldownActive
        while a previous nudge from the same sender is still cooling down.
        """
        if sender_id == goal.owner_id:
            raise SelfNudgeRejected(sender_id, goal.id)

        now = to_utc(now or self.clock.now())
        claimed = await self.store.acquire_cooldown(sender_id, goal.id, now, now + self.cooldown)
        if claimed is None:
            existing = await self.store.get_cooldown(sender_id, goal.id)
            until = to_utc(existing.cooldown_until) if existing else now + self.cooldown
            minutes = remaining_minutes(until, now)
            logger.info("Nudge blocked sender=%s goal=%s remaining=%dm", sender_id, goal.id, minutes)
            raise NudgeCooldownActive(sender_id, goal.id, until, minutes)

        logger.info("Nudge sent sender=%s goal=%s until=%s", sender_id, goal.id, claimed.cooldown_until.isoformat())
        return claimed

    async def active_cooldowns(self, sender_id: str, now: datetime | None = None) -> list[NudgeCooldown]:
        now = to_utc(now or self.clock.now())
        return await self.store.active_cooldowns(sender_id, now)
