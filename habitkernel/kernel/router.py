"""Kernel HTTP router — goals, completions, streaks and scores."""

from __future__ import annotations

from datetime import date, datetime

from fastapi import APIRouter, Depends, Query
from pydantic import AwareDatetime, BaseModel, Field

from habitkernel.auth import verify_api_key
from habitkernel.config import settings
from habitkernel.kernel import scoring
from habitkernel.kernel.clock import Clock
from habitkernel.kernel.deps import get_clock, get_goal_service, get_tracker
from habitkernel.kernel.errors import ErrorCode, HabitKernelError
from habitkernel.kernel.goals import GoalService
from habitkernel.kernel.models import (
    CalendarDay,
    ClassifiedGoal,
    Difficulty,
    Goal,
    HabitScore,
    HabitStreak,
    NormalizedScore,
    OverallUserScore,
    RecognitionLevel,
    StreakUpdateResult,
)
from habitkernel.kernel.streaks import StreakTracker

router = APIRouter(prefix="/kernel", tags=["kernel"])


def _parse_instant(value: str, name: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise HabitKernelError(
            f"Invalid datetime for '{name}': {value}",
            code=ErrorCode.VALIDATION_ERROR,
            status_code=422,
            details={"field": name},
        ) from None
    if parsed.tzinfo is None:
        raise HabitKernelError(
            f"'{name}' must carry a UTC offset: {value}",
            code=ErrorCode.VALIDATION_ERROR,
            status_code=422,
            details={"field": name},
        )
    return parsed


# ---------------------------------------------------------------------------
# Request / response bodies
# ---------------------------------------------------------------------------


class CreateGoalRequest(BaseModel):
    owner_id: str
    description: str = ""
    frequency: str = "daily"
    target_days: list[str] = Field(default_factory=list)
    difficulty: str = Difficulty.easy.value
    timezone: str | None = None


class RecurrenceRequest(BaseModel):
    frequency: str
    target_days: list[str] = Field(default_factory=list)


class CompletionRequest(BaseModel):
    completed_at: AwareDatetime | None = None
    timezone: str | None = None
    note: str = ""


class FreezeRequest(BaseModel):
    missed_date: date
    timezone: str | None = None


class HabitRecognition(BaseModel):
    goal_id: str
    score: HabitScore
    normalized: NormalizedScore
    recognition: RecognitionLevel


class ScoreBoard(BaseModel):
    owner_id: str
    habits: list[HabitRecognition]
    overall: OverallUserScore


# ---------------------------------------------------------------------------
# /kernel/goals
# ---------------------------------------------------------------------------


@router.post("/goals", response_model=Goal, status_code=201)
async def create_goal(
    body: CreateGoalRequest,
    service: GoalService = Depends(get_goal_service),
    _: str = Depends(verify_api_key),
) -> Goal:
    return await service.create_goal(
        owner_id=body.owner_id,
        description=body.description,
        frequency=body.frequency,
        target_days=body.target_days,
        difficulty=body.difficulty,
        tz_name=body.timezone or settings.default_tz,
    )


@router.get("/goals", response_model=list[ClassifiedGoal])
async def list_goals(
    owner_id: str = Query(..., description="Owner whose goals to classify"),
    tz: str = Query(default=None, description="Timezone used for 'completed today' (defaults to each goal's)"),
    service: GoalService = Depends(get_goal_service),
    _: str = Depends(verify_api_key),
) -> list[ClassifiedGoal]:
    return await service.list_classified(owner_id, tz)


@router.get("/goals/{goal_id}", response_model=Goal)
async def get_goal(
    goal_id: str,
    service: GoalService = Depends(get_goal_service),
    _: str = Depends(verify_api_key),
) -> Goal:
    return await service.get_goal(goal_id)


@router.get("/goals/{goal_id}/status", response_model=ClassifiedGoal)
async def goal_status(
    goal_id: str,
    tz: str = Query(default=None, description="Timezone (e.g. US/Eastern)"),
    service: GoalService = Depends(get_goal_service),
    _: str = Depends(verify_api_key),
) -> ClassifiedGoal:
    return await service.status(goal_id, tz)


@router.post("/goals/{goal_id}/status/refresh", response_model=ClassifiedGoal)
async def refresh_goal_status(
    goal_id: str,
    tz: str = Query(default=None, description="Timezone (e.g. US/Eastern)"),
    service: GoalService = Depends(get_goal_service),
    _: str = Depends(verify_api_key),
) -> ClassifiedGoal:
    return await service.refresh_status(goal_id, tz)


@router.patch("/goals/{goal_id}/recurrence", response_model=Goal)
async def update_recurrence(
    goal_id: str,
    body: RecurrenceRequest,
    service: GoalService = Depends(get_goal_service),
    _: str = Depends(verify_api_key),
) -> Goal:
    return await service.update_recurrence(goal_id, body.frequency, body.target_days)


# ---------------------------------------------------------------------------
# /kernel/goals/{id}/completions
# ---------------------------------------------------------------------------


@router.post("/goals/{goal_id}/completions", response_model=StreakUpdateResult, status_code=201)
async def record_completion(
    goal_id: str,
    body: CompletionRequest,
    service: GoalService = Depends(get_goal_service),
    tracker: StreakTracker = Depends(get_tracker),
    clock: Clock = Depends(get_clock),
    _: str = Depends(verify_api_key),
) -> StreakUpdateResult:
    goal = await service.get_goal(goal_id)
    return await tracker.record_completion(
        goal_id,
        body.completed_at or clock.now(),
        body.timezone or goal.timezone,
        note=body.note,
    )


@router.delete("/goals/{goal_id}/completions", response_model=HabitStreak)
async def revert_completion(
    goal_id: str,
    completed_at: str = Query(..., description="Exact instant of the completion (ISO 8601 with offset)"),
    tracker: StreakTracker = Depends(get_tracker),
    _: str = Depends(verify_api_key),
) -> HabitStreak:
    return await tracker.revert_completion(goal_id, _parse_instant(completed_at, "completed_at"))


# ---------------------------------------------------------------------------
# /kernel/goals/{id}/streak
# ---------------------------------------------------------------------------


@router.get("/goals/{goal_id}/streak", response_model=HabitStreak)
async def get_streak(
    goal_id: str,
    tracker: StreakTracker = Depends(get_tracker),
    _: str = Depends(verify_api_key),
) -> HabitStreak:
    return await tracker.get_streak(goal_id)


@router.post("/goals/{goal_id}/streak/check", response_model=HabitStreak)
async def check_streak(
    goal_id: str,
    tz: str = Query(default=None, description="Timezone (defaults to the goal's)"),
    service: GoalService = Depends(get_goal_service),
    tracker: StreakTracker = Depends(get_tracker),
    _: str = Depends(verify_api_key),
) -> HabitStreak:
    goal = await service.get_goal(goal_id)
    return await tracker.check_missed(goal_id, tz or goal.timezone)


@router.post("/goals/{goal_id}/streak/freeze", response_model=HabitStreak)
async def use_freeze(
    goal_id: str,
    body: FreezeRequest,
    service: GoalService = Depends(get_goal_service),
    tracker: StreakTracker = Depends(get_tracker),
    _: str = Depends(verify_api_key),
) -> HabitStreak:
    goal = await service.get_goal(goal_id)
    return await tracker.use_freeze(goal_id, body.missed_date, body.timezone or goal.timezone)


@router.post("/goals/{goal_id}/milestones/{days}/celebrate", response_model=HabitStreak)
async def celebrate_milestone(
    goal_id: str,
    days: int,
    tracker: StreakTracker = Depends(get_tracker),
    _: str = Depends(verify_api_key),
) -> HabitStreak:
    return await tracker.mark_milestone_celebrated(goal_id, days)


@router.get("/goals/{goal_id}/calendar", response_model=list[CalendarDay])
async def habit_calendar(
    goal_id: str,
    days: int = Query(default=30, ge=1, le=366, description="Number of local days, ending today"),
    tz: str = Query(default=None, description="Timezone (defaults to the goal's)"),
    service: GoalService = Depends(get_goal_service),
    tracker: StreakTracker = Depends(get_tracker),
    _: str = Depends(verify_api_key),
) -> list[CalendarDay]:
    goal = await service.get_goal(goal_id)
    return await tracker.calendar(goal_id, days, tz or goal.timezone)


# ---------------------------------------------------------------------------
# /kernel/scores
# ---------------------------------------------------------------------------


@router.get("/scores", response_model=ScoreBoard)
async def scores(
    owner_id: str = Query(..., description="Owner whose habits to score"),
    tracker: StreakTracker = Depends(get_tracker),
    _: str = Depends(verify_api_key),
) -> ScoreBoard:
    goals = await tracker.store.list_goals(owner_id)
    streaks: list[HabitStreak] = []
    counts: dict[str, int] = {}
    for goal in goals:
        streak = await tracker.store.get_streak(goal.id)
        if streak is None:
            continue
        events = await tracker.store.list_completions(goal.id)
        streaks.append(tracker.current_view(goal, streak, events))
        counts[goal.id] = len(events)

    habit_scores = scoring.score_habits(streaks, goals, counts)
    normalized = {n.goal_id: n for n in scoring.normalize(habit_scores)}
    habits = [
        HabitRecognition(
            goal_id=s.goal_id,
            score=s,
            normalized=normalized[s.goal_id],
            recognition=scoring.recognition_level(s, normalized[s.goal_id]),
        )
        for s in habit_scores
    ]
    return ScoreBoard(owner_id=owner_id, habits=habits, overall=scoring.overall_user_score(habit_scores))
