"""Tests for streak replay, the tracker's completion/revert paths and freezes."""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone

import pytest

from habitkernel.kernel.errors import (
    AlreadyCompletedToday,
    CompletionNotFound,
    FutureCompletionRejected,
    GoalNotFound,
    InvalidFreezeDate,
    InvalidTimezone,
    MilestoneNotFound,
    NoFreezeAvailable,
    StreakIntegrityViolation,
    StreakNotFound,
)
from habitkernel.kernel.models import CompletionEvent, Difficulty, Goal, HabitStreak, StreakMilestone
from habitkernel.kernel.streaks import (
    is_contiguous,
    period_of,
    replay_streak,
    rollback_completion,
    sync_milestones,
)
from tests.conftest import T0, utc

MWF = ["Monday", "Wednesday", "Friday"]


def d(day: int, month: int = 2) -> date:
    return date(2026, month, day)


async def complete_on(tracker, clock, goal_id: str, *days: date, tz: str = "UTC"):
    """Move the clock to midday of each day and record a completion there."""
    results = []
    for day in days:
        clock.set(datetime(day.year, day.month, day.day, 12, tzinfo=timezone.utc))
        results.append(await tracker.record_completion(goal_id, clock.now(), tz))
    return results


@pytest.fixture()
async def daily(goals):
    return await goals.create_goal("u1", "Meditate", "daily", difficulty="medium")


# ---------------------------------------------------------------------------
# Pure replay
# ---------------------------------------------------------------------------


class TestReplayStreak:
    def test_empty_history(self):
        result = replay_streak([], "daily", [], d(17))
        assert (result.current_streak, result.best_streak, result.break_count) == (0, 0, 0)
        assert result.last_completion_date is None

    def test_consecutive_days(self):
        result = replay_streak([d(15), d(16), d(17)], "daily", [], d(17))
        assert result.current_streak == 3
        assert result.streak_start_date == d(15)
        assert not result.lapsed

    def test_alive_until_the_next_expected_day_passes(self):
        assert replay_streak([d(15), d(16)], "daily", [], d(17)).current_streak == 2
        lapsed = replay_streak([d(15), d(16)], "daily", [], d(18))
        assert lapsed.current_streak == 0
        assert lapsed.best_streak == 2
        assert lapsed.break_count == 1
        assert lapsed.lapsed

    def test_gap_restarts_the_run(self):
        result = replay_streak([d(10), d(11), d(12), d(14), d(15)], "daily", [], d(15))
        assert result.current_streak == 2
        assert result.best_streak == 3
        assert result.break_count == 1
        assert result.streak_start_date == d(14)

    def test_weekly_runs_skip_non_target_days(self):
        # Mon 16, Wed 18, Fri 20, Mon 23
        result = replay_streak([d(16), d(18), d(20), d(23)], "weekly", MWF, d(24))
        assert result.current_streak == 4

    def test_weekly_missed_target_day_breaks(self):
        # Mon 16 then Fri 20 skips Wednesday
        result = replay_streak([d(16), d(20)], "weekly", MWF, d(20))
        assert result.current_streak == 1
        assert result.break_count == 1

    def test_duplicates_collapse(self):
        assert replay_streak([d(16), d(16), d(17)], "daily", [], d(17)).current_streak == 2

    def test_extra_days_in_one_period_count_once(self):
        # Monday-only goal completed Mon 16 through Sun 22
        week = [d(16) + timedelta(days=i) for i in range(7)]
        result = replay_streak(week, "weekly", ["Monday"], d(22))
        assert result.current_streak == 1
        assert result.best_streak == 1
        assert result.break_count == 0
        assert result.last_completion_date == d(22)
        assert result.streak_start_date == d(16)

    def test_consecutive_weeks_link(self):
        result = replay_streak([d(9), d(12), d(16), d(17)], "weekly", ["Monday"], d(17))
        assert result.current_streak == 2

    def test_three_per_week_off_day_joins_the_previous_period(self):
        # Mon 16, Tue 17 (Monday's period), Wed 18
        result = replay_streak([d(16), d(17), d(18)], "3x_a_week", MWF, d(18))
        assert result.current_streak == 2


class TestPeriodOf:
    def test_daily_is_the_date(self):
        assert period_of("daily", [], d(17)) == d(17)

    def test_weekly_maps_back_to_the_latest_target_day(self):
        assert period_of("weekly", MWF, d(17)) == d(16)
        assert period_of("weekly", MWF, d(18)) == d(18)
        assert period_of("weekly", ["Monday"], d(22)) == d(16)

    def test_contiguity_within_and_across_periods(self):
        assert is_contiguous("weekly", ["Monday"], d(16), d(20)) is True
        assert is_contiguous("weekly", ["Monday"], d(16), d(23)) is True
        assert is_contiguous("weekly", ["Monday"], d(16), d(30, 3)) is False


class TestRollbackCompletion:
    def _setup(self, current: int, best: int, last: date):
        goal = Goal(owner_id="u1", next_deadline=T0)
        streak = HabitStreak(
            goal_id=goal.id, owner_id="u1", current_streak=current, best_streak=best, last_completion_date=last
        )
        event = CompletionEvent(
            goal_id=goal.id,
            owner_id="u1",
            completed_at=utc(last.year, last.month, last.day),
            timezone="UTC",
            local_date=last,
            difficulty=Difficulty.easy,
        )
        return goal, streak, event

    def test_latest_link_of_a_non_best_run(self):
        goal, streak, event = self._setup(current=3, best=5, last=d(17))
        rollback_completion(streak, goal, event, [d(15), d(16)], d(17))
        assert streak.current_streak == 2
        assert streak.last_completion_date == d(16)

    def test_run_that_set_the_best_needs_replay(self):
        goal, streak, event = self._setup(current=3, best=3, last=d(17))
        with pytest.raises(StreakIntegrityViolation) as exc:
            rollback_completion(streak, goal, event, [d(15), d(16)], d(17))
        assert "best" in exc.value.details["reason"]

    def test_not_the_latest_link(self):
        goal, streak, event = self._setup(current=3, best=5, last=d(16))
        streak.last_completion_date = d(17)
        with pytest.raises(StreakIntegrityViolation):
            rollback_completion(streak, goal, event, [d(15), d(17)], d(17))

    def test_single_link_run(self):
        goal, streak, event = self._setup(current=1, best=5, last=d(17))
        with pytest.raises(StreakIntegrityViolation):
            rollback_completion(streak, goal, event, [d(10)], d(17))

    def test_shortened_run_already_lapsed(self):
        goal, streak, event = self._setup(current=3, best=5, last=d(17))
        with pytest.raises(StreakIntegrityViolation):
            rollback_completion(streak, goal, event, [d(15), d(16)], d(18))

    def test_same_period_as_remaining_needs_replay(self):
        goal, streak, event = self._setup(current=2, best=5, last=d(17))
        goal.frequency = "weekly"
        goal.target_days = ["Monday"]
        with pytest.raises(StreakIntegrityViolation):
            rollback_completion(streak, goal, event, [d(9), d(16)], d(17))
        assert streak.current_streak == 2


class TestSyncMilestones:
    def test_awards_thresholds_and_freeze(self):
        streak = HabitStreak(goal_id="g", owner_id="u1", current_streak=30, best_streak=30)
        new = sync_milestones(streak, T0)
        assert [m.days for m in new] == [7, 14, 30]
        assert streak.freezes_available == 1

    def test_idempotent(self):
        streak = HabitStreak(goal_id="g", owner_id="u1", current_streak=8, best_streak=8)
        sync_milestones(streak, T0)
        assert sync_milestones(streak, T0) == []
        assert streak.milestone_days() == {7}

    def test_kept_after_break_while_best_supports_them(self):
        streak = HabitStreak(
            goal_id="g",
            owner_id="u1",
            current_streak=0,
            best_streak=9,
            milestones=[StreakMilestone(days=7, achieved_at=T0)],
        )
        sync_milestones(streak, T0)
        assert streak.milestone_days() == {7}

    def test_drops_unreachable_and_withdraws_unused_freeze(self):
        streak = HabitStreak(
            goal_id="g",
            owner_id="u1",
            current_streak=20,
            best_streak=29,
            freezes_available=1,
            milestones=[StreakMilestone(days=n, achieved_at=T0) for n in (7, 14, 30)],
        )
        sync_milestones(streak, T0)
        assert streak.milestone_days() == {7, 14}
        assert streak.freezes_available == 0


# ---------------------------------------------------------------------------
# Tracker: completions
# ---------------------------------------------------------------------------


class TestRecordCompletion:
    async def test_first_completion(self, tracker, daily):
        result = await tracker.record_completion(daily.id, T0, "UTC", note="10 minutes")
        assert result.streak.current_streak == 1
        assert result.streak.best_streak == 1
        assert result.previous_streak == 0
        assert result.contiguous is True
        assert result.streak_broken is False
        assert result.completion.local_date == d(17)
        assert result.completion.difficulty == Difficulty.medium
        assert result.next_deadline == datetime(2026, 2, 18, 23, 59, 59, 999000, tzinfo=timezone.utc)

    async def test_goal_fields_follow_the_completion(self, tracker, store, daily):
        await tracker.record_completion(daily.id, T0, "UTC")
        goal = await store.get_goal(daily.id)
        assert goal.latest_completion_date == T0
        assert goal.next_deadline.date() == d(18)
        assert goal.current_status == "green"
        assert goal.red_since is None

    async def test_second_completion_same_day_rejected(self, tracker, store, daily):
        await tracker.record_completion(daily.id, T0, "UTC")
        with pytest.raises(AlreadyCompletedToday):
            await tracker.record_completion(daily.id, T0 + timedelta(hours=3), "UTC")
        streak = await tracker.get_streak(daily.id)
        assert streak.current_streak == 1
        assert len(await store.list_completions(daily.id)) == 1

    async def test_same_day_is_judged_in_each_events_timezone(self, tracker, daily):
        # 20:00 UTC on the 16th is already the 17th in Tokyo
        await tracker.record_completion(daily.id, utc(2026, 2, 16, 20), "Asia/Tokyo")
        with pytest.raises(AlreadyCompletedToday):
            await tracker.record_completion(daily.id, T0, "UTC")

    async def test_consecutive_days_grow_the_streak(self, tracker, clock, daily):
        results = await complete_on(tracker, clock, daily.id, d(15), d(16), d(17))
        assert [r.streak.current_streak for r in results] == [1, 2, 3]
        assert results[-1].streak.streak_start_date == d(15)

    async def test_gap_breaks_the_streak(self, tracker, clock, daily):
        results = await complete_on(tracker, clock, daily.id, d(10), d(11), d(13))
        last = results[-1]
        assert last.contiguous is False
        assert last.streak_broken is True
        assert last.previous_streak == 2
        assert last.streak.current_streak == 1
        assert last.streak.best_streak == 2
        assert last.streak.break_count == 1

    async def test_future_date_rejected(self, tracker, daily):
        with pytest.raises(FutureCompletionRejected):
            await tracker.record_completion(daily.id, T0 + timedelta(days=1), "UTC")

    async def test_later_the_same_day_is_accepted(self, tracker, daily):
        result = await tracker.record_completion(daily.id, T0 + timedelta(hours=6), "UTC")
        assert result.completion.local_date == d(17)

    async def test_invalid_timezone(self, tracker, daily):
        with pytest.raises(InvalidTimezone):
            await tracker.record_completion(daily.id, T0, "Not/AZone")

    async def test_unknown_goal(self, tracker):
        with pytest.raises(GoalNotFound):
            await tracker.record_completion("missing", T0, "UTC")

    async def test_milestone_reported_once(self, tracker, clock, daily):
        days = [d(11) + timedelta(days=i) for i in range(7)]
        results = await complete_on(tracker, clock, daily.id, *days)
        assert [m.days for m in results[-1].new_milestones] == [7]
        assert all(not r.new_milestones for r in results[:-1])

    async def test_thirty_day_streak_awards_a_freeze(self, tracker, clock, daily):
        days = [d(19, 1) + timedelta(days=i) for i in range(30)]
        results = await complete_on(tracker, clock, daily.id, *days)
        streak = results[-1].streak
        assert streak.current_streak == 30
        assert streak.milestone_days() == {7, 14, 30}
        assert streak.freezes_available == 1
        assert [m.days for m in results[-1].new_milestones] == [30]

    async def test_weekly_goal(self, goals, tracker, clock):
        goal = await goals.create_goal("u1", "Gym", "weekly", ["monday", "wednesday", "friday"])
        results = await complete_on(tracker, clock, goal.id, d(16), d(18), d(20))
        assert results[-1].streak.current_streak == 3
        assert results[-1].next_deadline.date() == d(23)

    async def test_daily_completions_on_a_monday_only_goal(self, goals, tracker, clock):
        goal = await goals.create_goal("u1", "Long run", "weekly", ["Monday"])
        week = [d(16) + timedelta(days=i) for i in range(7)]
        results = await complete_on(tracker, clock, goal.id, *week)
        streak = results[-1].streak
        assert streak.current_streak == 1
        assert streak.milestones == []
        assert all(r.contiguous for r in results)


class TestConcurrentCompletions:
    async def test_same_day_race_admits_exactly_one(self, tracker, store, daily):
        outcomes = await asyncio.gather(
            tracker.record_completion(daily.id, T0, "UTC"),
            tracker.record_completion(daily.id, T0 + timedelta(minutes=1), "UTC"),
            return_exceptions=True,
        )
        errors = [o for o in outcomes if isinstance(o, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], AlreadyCompletedToday)
        assert (await tracker.get_streak(daily.id)).current_streak == 1
        assert len(await store.list_completions(daily.id)) == 1

    async def test_different_days_both_counted(self, tracker, daily):
        await asyncio.gather(
            tracker.record_completion(daily.id, utc(2026, 2, 16), "UTC"),
            tracker.record_completion(daily.id, T0, "UTC"),
        )
        streak = await tracker.get_streak(daily.id)
        assert streak.current_streak == 2
        assert streak.best_streak == 2


# ---------------------------------------------------------------------------
# Tracker: reverts
# ---------------------------------------------------------------------------


class TestRevertCompletion:
    async def test_revert_latest_recomputes_best(self, tracker, clock, store, daily, caplog):
        await complete_on(tracker, clock, daily.id, d(15), d(16), d(17))
        with caplog.at_level(logging.WARNING, logger="habitkernel.kernel.streaks"):
            streak = await tracker.revert_completion(daily.id, utc(2026, 2, 17))
        assert streak.current_streak == 2
        assert streak.best_streak == 2
        assert streak.last_completion_date == d(16)
        assert "Replaying streak history" in caplog.text

        goal = await store.get_goal(daily.id)
        assert goal.latest_completion_date == utc(2026, 2, 16)
        assert goal.next_deadline.date() == d(17)
        assert goal.current_status is None

    async def test_revert_latest_of_a_shorter_run_is_incremental(self, tracker, clock, daily, caplog):
        await complete_on(tracker, clock, daily.id, d(2), d(3), d(4), d(5), d(6), d(14), d(15), d(16), d(17))
        with caplog.at_level(logging.WARNING, logger="habitkernel.kernel.streaks"):
            streak = await tracker.revert_completion(daily.id, utc(2026, 2, 17))
        assert streak.current_streak == 3
        assert streak.best_streak == 5
        assert streak.streak_start_date == d(14)
        assert "Replaying" not in caplog.text

    async def test_out_of_order_revert_splits_the_run(self, tracker, clock, daily):
        await complete_on(tracker, clock, daily.id, d(13), d(14), d(15), d(16), d(17))
        streak = await tracker.revert_completion(daily.id, utc(2026, 2, 15))
        assert streak.current_streak == 2
        assert streak.best_streak == 2
        assert streak.break_count == 1

    async def test_reverted_event_is_kept_inactive(self, tracker, store, daily):
        await tracker.record_completion(daily.id, T0, "UTC")
        await tracker.revert_completion(daily.id, T0)
        assert await store.list_completions(daily.id) == []
        history = await store.list_completions(daily.id, include_inactive=True)
        assert len(history) == 1
        assert history[0].is_active is False
        assert history[0].reverted_at == T0

    async def test_revert_only_completion_resets_goal(self, tracker, store, daily):
        await tracker.record_completion(daily.id, T0, "UTC")
        streak = await tracker.revert_completion(daily.id, T0)
        assert (streak.current_streak, streak.best_streak) == (0, 0)
        goal = await store.get_goal(daily.id)
        assert goal.latest_completion_date is None
        assert goal.next_deadline == datetime(2026, 2, 17, 23, 59, 59, 999000, tzinfo=timezone.utc)

    async def test_day_can_be_completed_again_after_revert(self, tracker, daily):
        await tracker.record_completion(daily.id, T0, "UTC")
        await tracker.revert_completion(daily.id, T0)
        result = await tracker.record_completion(daily.id, T0 + timedelta(hours=1), "UTC")
        assert result.streak.current_streak == 1

    async def test_revert_drops_unreachable_milestone(self, tracker, clock, daily):
        days = [d(11) + timedelta(days=i) for i in range(7)]
        await complete_on(tracker, clock, daily.id, *days)
        streak = await tracker.revert_completion(daily.id, utc(2026, 2, 17))
        assert streak.best_streak == 6
        assert streak.milestones == []

    async def test_unknown_instant(self, tracker, daily):
        await tracker.record_completion(daily.id, T0, "UTC")
        with pytest.raises(CompletionNotFound):
            await tracker.revert_completion(daily.id, T0 + timedelta(seconds=1))

    async def test_offset_form_of_the_same_instant_matches(self, tracker, daily):
        await tracker.record_completion(daily.id, T0, "UTC")
        same_instant = T0.astimezone(timezone(timedelta(hours=-5)))
        streak = await tracker.revert_completion(daily.id, same_instant)
        assert streak.current_streak == 0


# ---------------------------------------------------------------------------
# Tracker: streak maintenance
# ---------------------------------------------------------------------------


class TestCheckMissed:
    async def test_alive_until_the_expected_day_ends(self, tracker, clock, daily):
        await complete_on(tracker, clock, daily.id, d(10), d(11))
        clock.set(utc(2026, 2, 12, 23, 30))
        assert (await tracker.check_missed(daily.id, "UTC")).current_streak == 2

    async def test_lapse_resets_and_counts_a_break(self, tracker, clock, daily):
        await complete_on(tracker, clock, daily.id, d(10), d(11))
        clock.set(utc(2026, 2, 13, 0, 30))
        streak = await tracker.check_missed(daily.id, "UTC")
        assert streak.current_streak == 0
        assert streak.best_streak == 2
        assert streak.break_count == 1
        assert (await tracker.get_streak(daily.id)).current_streak == 0

    async def test_unknown_goal(self, tracker):
        with pytest.raises(GoalNotFound):
            await tracker.check_missed("missing", "UTC")


class TestGetStreak:
    async def test_lapsed_run_reads_as_zero(self, tracker, clock, store, daily):
        await complete_on(tracker, clock, daily.id, *[d(10) + timedelta(days=i) for i in range(5)])
        clock.set(utc(2026, 2, 25))

        streak = await tracker.get_streak(daily.id)
        assert streak.current_streak == 0
        assert streak.best_streak == 5
        assert streak.break_count == 1
        # Reads do not persist the lapse
        assert (await store.get_streak(daily.id)).current_streak == 5

    async def test_alive_run_is_unchanged(self, tracker, clock, daily):
        await complete_on(tracker, clock, daily.id, d(16), d(17))
        streak = await tracker.get_streak(daily.id)
        assert streak.current_streak == 2
        assert streak.streak_start_date == d(16)

    async def test_unknown_goal(self, tracker):
        with pytest.raises(StreakNotFound):
            await tracker.get_streak("missing")


class TestStreakFreeze:
    async def _grant_freeze(self, store, goal_id: str) -> None:
        async with store.goal_transaction(goal_id) as tx:
            tx.streak.freezes_available = 1

    async def test_freeze_bridges_a_missed_day(self, tracker, clock, store, daily):
        await self._grant_freeze(store, daily.id)
        await complete_on(tracker, clock, daily.id, d(14), d(15), d(17))
        assert (await tracker.get_streak(daily.id)).current_streak == 1

        streak = await tracker.use_freeze(daily.id, d(16), "UTC")
        assert streak.current_streak == 4
        assert streak.break_count == 0
        assert streak.freezes_available == 0
        assert streak.freezes_used == 1

        protected = [e for e in await store.list_completions(daily.id) if e.protected]
        assert [e.local_date for e in protected] == [d(16)]

    async def test_no_freeze_available(self, tracker, clock, daily):
        clock.set(T0)
        with pytest.raises(NoFreezeAvailable):
            await tracker.use_freeze(daily.id, d(16), "UTC")

    async def test_only_past_dates(self, tracker, store, daily):
        await self._grant_freeze(store, daily.id)
        with pytest.raises(InvalidFreezeDate):
            await tracker.use_freeze(daily.id, d(17), "UTC")

    async def test_completed_day_cannot_be_frozen(self, tracker, store, daily):
        await self._grant_freeze(store, daily.id)
        await tracker.record_completion(daily.id, utc(2026, 2, 16), "UTC")
        with pytest.raises(AlreadyCompletedToday):
            await tracker.use_freeze(daily.id, d(16), "UTC")
        assert (await tracker.get_streak(daily.id)).freezes_available == 1


class TestMilestoneCelebration:
    async def test_mark_celebrated(self, tracker, clock, daily):
        days = [d(11) + timedelta(days=i) for i in range(7)]
        await complete_on(tracker, clock, daily.id, *days)
        streak = await tracker.mark_milestone_celebrated(daily.id, 7)
        assert streak.milestones[0].celebrated is True
        assert (await tracker.get_streak(daily.id)).milestones[0].celebrated is True

    async def test_unreached_milestone(self, tracker, daily):
        with pytest.raises(MilestoneNotFound):
            await tracker.mark_milestone_celebrated(daily.id, 14)


class TestCalendar:
    async def test_last_days_oldest_first(self, tracker, clock, daily):
        await complete_on(tracker, clock, daily.id, d(15), d(16), d(17))
        days = await tracker.calendar(daily.id, 7, "UTC")
        assert [c.day for c in days] == [d(11) + timedelta(days=i) for i in range(7)]
        assert [c.completed for c in days] == [False] * 4 + [True] * 3
        assert [c.is_in_streak for c in days] == [False] * 4 + [True] * 3
        assert days[-1].is_today is True
        assert days[-1].completion_time == T0

    async def test_unknown_streak(self, tracker):
        with pytest.raises(StreakNotFound):
            await tracker.calendar("missing", 7, "UTC")
