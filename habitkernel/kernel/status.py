"""Traffic-light goal status, recomputed on every read, never cached.

Precedence (first match wins):
    completed today -> green, 3, "Completed ✓"
    overdue         -> red,   1, "Overdue by Nd" / "Overdue by Nh"
    < critical      -> red,   1, "Due in Nm"
    < warning       -> yellow, 2, "Due in Nh"
    otherwise       -> green, 3, "Safe"

``Goal.current_status`` is only written here as a display hint and is never
read back for any decision.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta

from habitkernel.kernel.clock import same_local_date, to_utc
from habitkernel.kernel.models import ClassifiedGoal, Goal, GoalStatus, StatusColor

CRITICAL_HOURS = 2.0
WARNING_HOURS = 6.0


def classify(
    goal: Goal,
    now: datetime,
    tz_name: str | None = None,
    critical_hours: float = CRITICAL_HOURS,
    warning_hours: float = WARNING_HOURS,
) -> GoalStatus:
    tz = tz_name or goal.timezone
    now = to_utc(now)

    if goal.latest_completion_date is not None and same_local_date(goal.latest_completion_date, now, tz):
        return GoalStatus(color=StatusColor.green, priority=3, text="Completed ✓", nudge_eligible=False)

    hours_until = (to_utc(goal.next_deadline) - now) / timedelta(hours=1)

    if hours_until < 0:
        hours_overdue = abs(hours_until)
        days_overdue = math.floor(hours_overdue / 24)
        text = f"Overdue by {days_overdue}d" if days_overdue > 0 else f"Overdue by {math.floor(hours_overdue)}h"
        return GoalStatus(color=StatusColor.red, priority=1, text=text, nudge_eligible=True)

    if hours_until < critical_hours:
        return GoalStatus(
            color=StatusColor.red,
            priority=1,
            text=f"Due in {math.floor(hours_until * 60)}m",
            nudge_eligible=True,
        )

    if hours_until < warning_hours:
        return GoalStatus(
            color=StatusColor.yellow,
            priority=2,
            text=f"Due in {math.floor(hours_until)}h",
            nudge_eligible=True,
        )

    return GoalStatus(color=StatusColor.green, priority=3, text="Safe", nudge_eligible=False)


def is_overdue(goal: Goal, now: datetime) -> bool:
    return to_utc(now) > to_utc(goal.next_deadline)


def sort_key(item: ClassifiedGoal) -> tuple[int, datetime]:
    return item.status.priority, to_utc(item.goal.next_deadline)


def classify_all(
    goals: list[Goal],
    now: datetime,
    tz_name: str | None = None,
    critical_hours: float = CRITICAL_HOURS,
    warning_hours: float = WARNING_HOURS,
) -> list[ClassifiedGoal]:
    """Classify goals and order them most urgent first, then soonest deadline."""
    items = [
        ClassifiedGoal(goal=g, status=classify(g, now, tz_name, critical_hours, warning_hours))
        for g in goals
    ]
    return sorted(items, key=sort_key)
