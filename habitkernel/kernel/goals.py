"""Goal lifecycle: creation, recurrence changes and classified listings."""

from __future__ import annotations

import logging

from habitkernel.kernel.clock import Clock, local_date, resolve_tz, to_utc
from habitkernel.kernel.deadlines import WEEKLY_RULES, compute_next_deadline
from habitkernel.kernel.errors import GoalNotFound, InvalidGoalDefinition
from habitkernel.kernel.models import (
    ClassifiedGoal,
    Difficulty,
    Frequency,
    Goal,
    StatusColor,
    normalize_weekdays,
)
from habitkernel.kernel.status import CRITICAL_HOURS, WARNING_HOURS, classify, classify_all, is_overdue
from habitkernel.kernel.store import HabitStore
from habitkernel.kernel.streaks import (
    FREEZE_AWARD_MILESTONE,
    MILESTONE_DAYS,
    apply_replay,
    new_streak,
    refresh_goal_deadline,
    sync_milestones,
)

logger = logging.getLogger(__name__)


def validate_definition(
    frequency: Frequency | str,
    target_days: list[str] | None,
    difficulty: Difficulty | str = Difficulty.easy,
) -> tuple[Frequency, list[str], Difficulty]:
    """Coerce a goal definition, raising InvalidGoalDefinition on bad input."""
    try:
        freq = Frequency(frequency)
    except ValueError:
        raise InvalidGoalDefinition(f"Unknown frequency: {frequency!r}", field="frequency") from None
    try:
        level = Difficulty(difficulty)
    except ValueError:
        raise InvalidGoalDefinition(f"Unknown difficulty: {difficulty!r}", field="difficulty") from None
    try:
        days = normalize_weekdays(target_days or [])
    except ValueError as exc:
        raise InvalidGoalDefinition(str(exc), field="target_days") from None
    if freq in WEEKLY_RULES and not days:
        raise InvalidGoalDefinition(f"{freq.value} goals need at least one target day", field="target_days")
    return freq, days, level


class GoalService:
    def __init__(
        self,
        store: HabitStore,
        clock: Clock,
        critical_hours: float = CRITICAL_HOURS,
        warning_hours: float = WARNING_HOURS,
        milestone_days: tuple[int, ...] | list[int] = MILESTONE_DAYS,
        freeze_award_milestone: int | None = FREEZE_AWARD_MILESTONE,
    ) -> None:
        self.store = store
        self.clock = clock
        self.critical_hours = critical_hours
        self.warning_hours = warning_hours
        self.milestone_days = tuple(milestone_days)
        self.freeze_award_milestone = freeze_award_milestone

    async def create_goal(
        self,
        owner_id: str,
        description: str,
        frequency: Frequency | str,
        target_days: list[str] | None = None,
        difficulty: Difficulty | str = Difficulty.easy,
        tz_name: str = "UTC",
    ) -> Goal:
        freq, days, level = validate_definition(frequency, target_days, difficulty)
        resolve_tz(tz_name)
        now = self.clock.now()
        goal = Goal(
            owner_id=owner_id,
            description=description,
            frequency=freq,
            target_days=days,
            difficulty=level,
            timezone=tz_name,
            created_at=now,
            next_deadline=compute_next_deadline(freq, days, tz_name, now=now),
        )
        await self.store.create_goal(goal, new_streak(goal))
        logger.info("Goal created id=%s owner=%s frequency=%s", goal.id, owner_id, freq.value)
        return goal

    async def get_goal(self, goal_id: str) -> Goal:
        goal = await self.store.get_goal(goal_id)
        if goal is None:
            raise GoalNotFound(goal_id)
        return goal

    async def update_recurrence(
        self,
        goal_id: str,
        frequency: Frequency | str,
        target_days: list[str] | None = None,
    ) -> Goal:
        """Swap the goal's rule, then rebuild its deadline and streak under the new rule."""
        freq, days, _ = validate_definition(frequency, target_days)
        now = self.clock.now()
        async with self.store.goal_transaction(goal_id) as tx:
            goal = tx.goal
            goal.frequency = freq
            goal.target_days = days
            streak = tx.streak or new_streak(goal)
            apply_replay(streak, goal, tx.completions, local_date(now, goal.timezone))
            sync_milestones(streak, now, self.milestone_days, self.freeze_award_milestone)
            refresh_goal_deadline(goal, tx.completions, goal.timezone, now)
            goal.current_status = None
            tx.streak = streak
        logger.info("Recurrence updated goal=%s frequency=%s days=%s", goal_id, freq.value, ",".join(days))
        return goal

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def status(self, goal_id: str, tz_name: str | None = None) -> ClassifiedGoal:
        goal = await self.get_goal(goal_id)
        if tz_name:
            resolve_tz(tz_name)
        return ClassifiedGoal(
            goal=goal,
            status=classify(goal, self.clock.now(), tz_name, self.critical_hours, self.warning_hours),
        )

    async def list_classified(self, owner_id: str, tz_name: str | None = None) -> list[ClassifiedGoal]:
        if tz_name:
            resolve_tz(tz_name)
        goals = await self.store.list_goals(owner_id)
        return classify_all(goals, self.clock.now(), tz_name, self.critical_hours, self.warning_hours)

    async def refresh_status(self, goal_id: str, tz_name: str | None = None) -> ClassifiedGoal:
        """Write the display colour and ``red_since`` marker from a fresh classification."""
        now = to_utc(self.clock.now())
        async with self.store.goal_transaction(goal_id) as tx:
            goal = tx.goal
            result = classify(goal, now, tz_name, self.critical_hours, self.warning_hours)
            goal.current_status = result.color.value
            if result.color == StatusColor.red and is_overdue(goal, now):
                if goal.red_since is None:
                    goal.red_since = now
            else:
                goal.red_since = None
        return ClassifiedGoal(goal=goal, status=result)
