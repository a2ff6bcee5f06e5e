"""Next-deadline computation from a recurrence rule. Pure, no I/O."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from habitkernel.kernel.clock import end_of_local_day, local_date, to_utc
from habitkernel.kernel.models import WEEKDAYS, Frequency

logger = logging.getLogger(__name__)

WEEKLY_RULES = (Frequency.weekly, Frequency.three_per_week)


def weekday_numbers(target_days: list[str]) -> list[int]:
    """Map weekday names to ``date.weekday()`` numbers (Monday=0), sorted."""
    index = {name.lower(): i for i, name in enumerate(WEEKDAYS)}
    return sorted({index[d.lower()] for d in target_days if d.lower() in index})


def next_target_date(
    frequency: Frequency | str,
    target_days: list[str],
    after: date,
) -> date:
    """First date strictly after ``after`` on which the rule expects a completion.

    ``daily`` expects every day. Weekly rules scan forward up to 7 days for a
    configured weekday and wrap to the first configured weekday of the
    following week when the scan finds nothing.
    """
    if frequency == Frequency.daily:
        return after + timedelta(days=1)

    numbers = weekday_numbers(target_days)
    current = after.weekday()
    for i in range(1, 8):
        if (current + i) % 7 in numbers:
            return after + timedelta(days=i)

    # Only reachable with an empty/unknown day set
    first = numbers[0] if numbers else current
    days_to_add = (first - current + 7) % 7 or 7
    return after + timedelta(days=days_to_add)


def compute_next_deadline(
    frequency: Frequency | str,
    target_days: list[str],
    tz_name: str,
    last_completion: datetime | None = None,
    now: datetime | None = None,
) -> datetime:
    """Return the UTC instant at which the next obligation is missed.

    The reference instant is ``last_completion`` when given (the next
    obligation counts from the completion), else ``now``.

    - daily, at creation: end of the reference local day.
    - daily, after a completion: end of the following local day.
    - weekly / 3x_a_week: end of the next target weekday strictly after the
      reference local day.
    - anything else: reference + 24h (logged; indicates a bad rule upstream).
    """
    if last_completion is None and now is None:
        raise ValueError("either last_completion or now is required")
    reference = to_utc(last_completion if last_completion is not None else now)
    ref_day = local_date(reference, tz_name)

    try:
        rule = Frequency(frequency)
    except ValueError:
        logger.warning("Unknown frequency %r; falling back to reference + 24h", frequency)
        return reference + timedelta(hours=24)

    if rule == Frequency.daily:
        if last_completion is not None:
            return end_of_local_day(ref_day + timedelta(days=1), tz_name)
        return end_of_local_day(ref_day, tz_name)

    return end_of_local_day(next_target_date(rule, target_days, ref_day), tz_name)
