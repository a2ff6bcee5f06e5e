"""Streak tracking over a goal's completion history.

The persisted ``HabitStreak`` is an aggregate that can always be rebuilt from
the active completion events: ``replay_streak`` is the canonical computation
and every write path ends in it, so a revert (in order or not) can never
leave ``best_streak`` at a value the remaining history does not support.

Periods: a daily goal has one period per local date. A weekly or
``3x_a_week`` goal has one period per target weekday, running until the day
before the next target weekday. Completions inside one period count once, and
a run links periods only when each is the one the recurrence expects next.
A run stays alive while "today" has not passed the next expected target date.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from habitkernel.kernel.clock import Clock, local_date, resolve_tz, to_utc
from habitkernel.kernel.deadlines import compute_next_deadline, next_target_date, weekday_numbers
from habitkernel.kernel.errors import (
    AlreadyCompletedToday,
    CompletionNotFound,
    FutureCompletionRejected,
    InvalidFreezeDate,
    MilestoneNotFound,
    NoFreezeAvailable,
    StreakIntegrityViolation,
    StreakNotFound,
)
from habitkernel.kernel.models import (
    CalendarDay,
    CompletionEvent,
    Frequency,
    Goal,
    HabitStreak,
    StatusColor,
    StreakMilestone,
    StreakUpdateResult,
)
from habitkernel.kernel.store import HabitStore

logger = logging.getLogger(__name__)

MILESTONE_DAYS: tuple[int, ...] = (7, 14, 30, 50, 100, 180, 365)
FREEZE_AWARD_MILESTONE = 30


@dataclass(frozen=True, slots=True)
class StreakReplay:
    current_streak: int
    best_streak: int
    break_count: int
    last_completion_date: date | None
    streak_start_date: date | None
    lapsed: bool


def period_of(frequency: str, target_days: list[str], day: date) -> date:
    """Target date whose period contains ``day``: the latest target weekday on or before it."""
    if frequency == Frequency.daily:
        return day
    numbers = weekday_numbers(target_days)
    for i in range(7):
        if (day.weekday() - i) % 7 in numbers:
            return day - timedelta(days=i)
    return day


def is_contiguous(frequency: str, target_days: list[str], prev: date, day: date) -> bool:
    """True when a completion on ``day`` keeps the run that includes ``prev`` going."""
    last = period_of(frequency, target_days, prev)
    period = period_of(frequency, target_days, day)
    return period == last or period == next_target_date(frequency, target_days, last)


def replay_streak(
    dates: list[date],
    frequency: str,
    target_days: list[str],
    today: date,
) -> StreakReplay:
    """Rebuild streak counters from completion dates as seen on ``today``."""
    days = sorted(set(dates))
    if not days:
        return StreakReplay(0, 0, 0, None, None, False)

    run = 0
    best = 0
    breaks = 0
    start: date | None = None
    last: date | None = None
    for day in days:
        period = period_of(frequency, target_days, day)
        if period == last:
            continue
        if last is not None and period != next_target_date(frequency, target_days, last):
            breaks += 1
            run = 0
        if run == 0:
            start = day
        run += 1
        best = max(best, run)
        last = period

    lapsed = today > next_target_date(frequency, target_days, last)
    if lapsed:
        return StreakReplay(0, best, breaks + 1, days[-1], None, True)
    return StreakReplay(run, best, breaks, days[-1], start, False)


def sync_milestones(
    streak: HabitStreak,
    now: datetime,
    milestone_days: tuple[int, ...] | list[int] = MILESTONE_DAYS,
    freeze_award_milestone: int | None = FREEZE_AWARD_MILESTONE,
) -> list[StreakMilestone]:
    """Append milestones newly reached by the current streak; drop unreachable ones.

    Returns the milestones appended by this call.
    """
    kept: list[StreakMilestone] = []
    for m in streak.milestones:
        if m.days <= streak.best_streak:
            kept.append(m)
        elif m.days == freeze_award_milestone and streak.freezes_available > 0:
            streak.freezes_available -= 1
    streak.milestones = kept

    reached = streak.milestone_days()
    new: list[StreakMilestone] = []
    for days in sorted(milestone_days):
        if days <= streak.current_streak and days not in reached:
            milestone = StreakMilestone(days=days, achieved_at=now, celebrated=False)
            streak.milestones.append(milestone)
            new.append(milestone)
            if days == freeze_award_milestone:
                streak.freezes_available += 1
    return new


def apply_replay(
    streak: HabitStreak,
    goal: Goal,
    events: list[CompletionEvent],
    today: date,
) -> StreakReplay:
    """Overwrite the counters of ``streak`` from the active events."""
    result = replay_streak(
        [e.local_date for e in events if e.is_active],
        goal.frequency,
        goal.target_days,
        today,
    )
    streak.current_streak = result.current_streak
    streak.best_streak = result.best_streak
    streak.break_count = result.break_count
    streak.last_completion_date = result.last_completion_date
    streak.streak_start_date = result.streak_start_date
    return result


def rollback_completion(
    streak: HabitStreak,
    goal: Goal,
    reverted: CompletionEvent,
    remaining: list[date],
    today: date,
) -> None:
    """Undo the most recent link of the current run without a replay.

    Only the unambiguous case is handled: the reverted date ends a current
    run of two or more, it did not set the best streak, and the shortened run
    is still alive today. Anything else raises StreakIntegrityViolation and
    the caller replays the full history.
    """
    if reverted.local_date != streak.last_completion_date:
        raise StreakIntegrityViolation(goal.id, "reverted completion is not the latest link")
    if streak.current_streak < 2:
        raise StreakIntegrityViolation(goal.id, "reverting would end the current run")
    if streak.best_streak <= streak.current_streak:
        raise StreakIntegrityViolation(goal.id, "reverted completion may have set the best streak")
    if not remaining:
        raise StreakIntegrityViolation(goal.id, "no remaining history for a non-empty run")

    prev = max(remaining)
    last = period_of(goal.frequency, goal.target_days, prev)
    expected = next_target_date(goal.frequency, goal.target_days, last)
    if period_of(goal.frequency, goal.target_days, reverted.local_date) != expected:
        raise StreakIntegrityViolation(goal.id, "reverted completion does not open the latest period")
    if today > expected:
        raise StreakIntegrityViolation(goal.id, "shortened run has lapsed")

    streak.current_streak -= 1
    streak.last_completion_date = prev


def new_streak(goal: Goal) -> HabitStreak:
    return HabitStreak(goal_id=goal.id, owner_id=goal.owner_id)


def refresh_goal_deadline(goal: Goal, events: list[CompletionEvent], tz_name: str, now: datetime) -> None:
    """Point the goal's completion and deadline fields at the latest active event."""
    active = [e for e in events if e.is_active]
    if active:
        latest = max(active, key=lambda e: to_utc(e.completed_at))
        goal.latest_completion_date = latest.completed_at
        goal.next_deadline = compute_next_deadline(
            goal.frequency, goal.target_days, tz_name, last_completion=latest.completed_at
        )
    else:
        goal.latest_completion_date = None
        goal.next_deadline = compute_next_deadline(goal.frequency, goal.target_days, tz_name, now=now)


class StreakTracker:
    """Records and reverts completions, keeping goal and streak in one transaction."""

    def __init__(
        self,
        store: HabitStore,
        clock: Clock,
        milestone_days: tuple[int, ...] | list[int] = MILESTONE_DAYS,
        freeze_award_milestone: int | None = FREEZE_AWARD_MILESTONE,
    ) -> None:
        self.store = store
        self.clock = clock
        self.milestone_days = tuple(milestone_days)
        self.freeze_award_milestone = freeze_award_milestone

    # ------------------------------------------------------------------
    # Completions
    # ------------------------------------------------------------------

    async def record_completion(
        self,
        goal_id: str,
        completed_at: datetime,
        tz_name: str,
        note: str = "",
    ) -> StreakUpdateResult:
        resolve_tz(tz_name)
        now = self.clock.now()
        completed_at = to_utc(completed_at)
        day = local_date(completed_at, tz_name)
        today = local_date(now, tz_name)
        if day > today:
            raise FutureCompletionRejected(goal_id, day, today)

        async with self.store.goal_transaction(goal_id) as tx:
            goal = tx.goal
            streak = tx.streak or new_streak(goal)
            active = [e for e in tx.completions if e.is_active]
            if any(e.local_date == day for e in active):
                raise AlreadyCompletedToday(goal_id, day)

            event = CompletionEvent(
                goal_id=goal.id,
                owner_id=goal.owner_id,
                completed_at=completed_at,
                timezone=tz_name,
                local_date=day,
                difficulty=goal.difficulty,
                note=note,
            )
            tx.add_completion(event)

            earlier = [e.local_date for e in active if e.local_date < day]
            contiguous = not earlier or is_contiguous(goal.frequency, goal.target_days, max(earlier), day)
            previous = streak.current_streak

            apply_replay(streak, goal, active + [event], today)
            new_milestones = sync_milestones(streak, now, self.milestone_days, self.freeze_award_milestone)

            refresh_goal_deadline(goal, active + [event], tz_name, now)
            goal.current_status = StatusColor.green.value
            goal.red_since = None
            tx.streak = streak

        await self.store.clear_cooldowns(goal_id)

        logger.info(
            "Completion recorded goal=%s date=%s streak=%d best=%d",
            goal_id,
            day.isoformat(),
            streak.current_streak,
            streak.best_streak,
        )
        for m in new_milestones:
            logger.info("Milestone reached goal=%s days=%d", goal_id, m.days)

        return StreakUpdateResult(
            completion=event,
            streak=streak,
            previous_streak=previous,
            contiguous=contiguous,
            streak_broken=not contiguous,
            new_milestones=new_milestones,
            next_deadline=goal.next_deadline,
        )

    async def revert_completion(self, goal_id: str, completed_at: datetime) -> HabitStreak:
        """Soft-delete the completion at ``completed_at`` and roll its effects back."""
        now = self.clock.now()
        target = to_utc(completed_at)

        async with self.store.goal_transaction(goal_id) as tx:
            goal = tx.goal
            match = next(
                (e for e in tx.completions if e.is_active and to_utc(e.completed_at) == target),
                None,
            )
            if match is None:
                raise CompletionNotFound(goal_id, target)

            match.is_active = False
            match.reverted_at = now
            tx.update_completion(match)

            tz_name = match.timezone
            today = local_date(now, tz_name)
            remaining = [e for e in tx.completions if e.is_active]
            streak = tx.streak or new_streak(goal)

            try:
                rollback_completion(streak, goal, match, [e.local_date for e in remaining], today)
            except StreakIntegrityViolation as exc:
                logger.warning("Replaying streak history for goal=%s: %s", goal_id, exc.details.get("reason"))
                apply_replay(streak, goal, remaining, today)
            sync_milestones(streak, now, self.milestone_days, self.freeze_award_milestone)

            refresh_goal_deadline(goal, remaining, tz_name, now)
            goal.current_status = None
            tx.streak = streak

        logger.info(
            "Completion reverted goal=%s date=%s streak=%d best=%d",
            goal_id,
            match.local_date.isoformat(),
            streak.current_streak,
            streak.best_streak,
        )
        return streak

    # ------------------------------------------------------------------
    # Streak state
    # ------------------------------------------------------------------

    def current_view(
        self,
        goal: Goal,
        streak: HabitStreak,
        events: list[CompletionEvent],
        tz_name: str | None = None,
    ) -> HabitStreak:
        """Replay ``streak`` as of today without persisting, so a lapsed run reads as 0."""
        today = local_date(self.clock.now(), tz_name or goal.timezone)
        apply_replay(streak, goal, events, today)
        return streak

    async def get_streak(self, goal_id: str, tz_name: str | None = None) -> HabitStreak:
        streak = await self.store.get_streak(goal_id)
        if streak is None:
            raise StreakNotFound(goal_id)
        goal = await self.store.get_goal(goal_id)
        if goal is None:
            raise StreakNotFound(goal_id)
        return self.current_view(goal, streak, await self.store.list_completions(goal_id), tz_name)

    async def check_missed(self, goal_id: str, tz_name: str) -> HabitStreak:
        """Persist a lapsed run (current -> 0, one break) once its deadline has passed."""
        resolve_tz(tz_name)
        today = local_date(self.clock.now(), tz_name)
        async with self.store.goal_transaction(goal_id) as tx:
            if tx.streak is None:
                raise StreakNotFound(goal_id)
            streak = tx.streak
            before = streak.current_streak
            result = apply_replay(streak, tx.goal, tx.completions, today)
            tx.streak = streak
        if result.lapsed and before > 0:
            logger.info("Streak lapsed goal=%s previous=%d", goal_id, before)
        return streak

    async def use_freeze(self, goal_id: str, missed_date: date, tz_name: str) -> HabitStreak:
        """Spend one freeze to cover a missed day with a protected completion."""
        resolve_tz(tz_name)
        now = self.clock.now()
        today = local_date(now, tz_name)
        if missed_date >= today:
            raise InvalidFreezeDate(goal_id, missed_date)

        async with self.store.goal_transaction(goal_id) as tx:
            goal = tx.goal
            if tx.streak is None:
                raise StreakNotFound(goal_id)
            streak = tx.streak
            if streak.freezes_available <= 0:
                raise NoFreezeAvailable(goal_id)
            active = [e for e in tx.completions if e.is_active]
            if any(e.local_date == missed_date for e in active):
                raise AlreadyCompletedToday(goal_id, missed_date)

            event = CompletionEvent(
                goal_id=goal.id,
                owner_id=goal.owner_id,
                completed_at=to_utc(datetime.combine(missed_date, time(12), tzinfo=resolve_tz(tz_name))),
                timezone=tz_name,
                local_date=missed_date,
                difficulty=goal.difficulty,
                note="Protected by streak freeze",
                protected=True,
            )
            tx.add_completion(event)
            streak.freezes_available -= 1
            streak.freezes_used += 1

            apply_replay(streak, goal, active + [event], today)
            sync_milestones(streak, now, self.milestone_days, self.freeze_award_milestone)
            refresh_goal_deadline(goal, active + [event], tz_name, now)
            tx.streak = streak

        logger.info("Streak freeze used goal=%s date=%s", goal_id, missed_date.isoformat())
        return streak

    async def mark_milestone_celebrated(self, goal_id: str, days: int) -> HabitStreak:
        async with self.store.goal_transaction(goal_id) as tx:
            if tx.streak is None:
                raise StreakNotFound(goal_id)
            streak = tx.streak
            milestone = next((m for m in streak.milestones if m.days == days), None)
            if milestone is None:
                raise MilestoneNotFound(goal_id, days)
            milestone.celebrated = True
            tx.streak = streak
        return streak

    async def calendar(self, goal_id: str, days: int, tz_name: str) -> list[CalendarDay]:
        """Last ``days`` local dates with completion and streak flags, oldest first."""
        resolve_tz(tz_name)
        streak = await self.get_streak(goal_id, tz_name)
        events = await self.store.list_completions(goal_id)
        by_date = {e.local_date: e for e in events if e.is_active}

        today = local_date(self.clock.now(), tz_name)
        result: list[CalendarDay] = []
        for offset in range(days - 1, -1, -1):
            day = today - timedelta(days=offset)
            event = by_date.get(day)
            in_streak = (
                streak.current_streak > 0
                and streak.streak_start_date is not None
                and streak.last_completion_date is not None
                and streak.streak_start_date <= day <= streak.last_completion_date
            )
            result.append(
                CalendarDay(
                    day=day,
                    completed=event is not None,
                    is_today=day == today,
                    is_in_streak=in_streak,
                    protected=bool(event and event.protected),
                    completion_time=event.completed_at if event else None,
                    note=event.note if event else None,
                )
            )
        return result
