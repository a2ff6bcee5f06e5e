"""FastAPI dependencies: engine components built per request from the app store."""

from __future__ import annotations

from fastapi import Depends

from habitkernel.config import settings
from habitkernel.db import get_store
from habitkernel.kernel.clock import Clock, SystemClock
from habitkernel.kernel.goals import GoalService
from habitkernel.kernel.nudges import NudgeCooldownGate
from habitkernel.kernel.store import HabitStore
from habitkernel.kernel.streaks import StreakTracker

_system_clock = SystemClock()


def get_clock() -> Clock:
    return _system_clock


def get_tracker(
    store: HabitStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> StreakTracker:
    return StreakTracker(
        store,
        clock,
        milestone_days=settings.milestone_days,
        freeze_award_milestone=settings.freeze_award_milestone,
    )


def get_goal_service(
    store: HabitStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> GoalService:
    return GoalService(
        store,
        clock,
        critical_hours=settings.status_critical_hours,
        warning_hours=settings.status_warning_hours,
        milestone_days=settings.milestone_days,
        freeze_award_milestone=settings.freeze_award_milestone,
    )


def get_nudge_gate(
    store: HabitStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> NudgeCooldownGate:
    return NudgeCooldownGate(store, clock, cooldown_minutes=settings.nudge_cooldown_minutes)
