"""Recurrence calculator.

Occurrence k of a rule is computed directly from the anchor, never by
stepping from the previous occurrence:

    occurrence(k) = anchor + k * interval units   (calendar arithmetic)

so clamped months do not drift: a monthly rule anchored on January 31
gives Feb 28 (29 in leap years), then March 31.

Calendar units (DAY, WEEK, MONTH, YEAR) are added to the wall-clock
anchor in the rule's timezone with dateutil.relativedelta; the result is
converted to UTC only at the end, so DST shifts keep the local time of
day. INTERVAL rules add absolute minutes.

All functions are pure.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from dateutil.relativedelta import relativedelta

from pycadence.models.recurrence import RecurrenceRule, RecurrenceUnit

__all__ = ["occurrence_at", "next_occurrence", "first_occurrence"]

# Upper bounds on unit length, so index estimates never overshoot
_MAX_UNIT = {
    RecurrenceUnit.DAY: timedelta(hours=25),
    RecurrenceUnit.WEEK: timedelta(days=7, hours=1),
    RecurrenceUnit.MONTH: timedelta(days=31, hours=1),
    RecurrenceUnit.YEAR: timedelta(days=366, hours=1),
}


def occurrence_at(rule: RecurrenceRule, index: int) -> datetime:
    """
    Return occurrence `index` (0-based) of the rule, in UTC.

    End conditions are not applied here.

    Args:
        rule: Recurrence rule
        index: Occurrence index, 0 is the anchor itself (or the first
            selected weekday on or after it)

    Returns:
        Timezone-aware UTC datetime
    """
    if index < 0:
        raise ValueError(f"occurrence index must be >= 0, got {index}")

    if rule.unit is RecurrenceUnit.INTERVAL:
        return rule.anchor_utc + timedelta(minutes=index * rule.interval)

    anchor = rule.local_anchor
    match rule.unit:
        case RecurrenceUnit.DAY:
            local = anchor + relativedelta(days=index * rule.interval)
        case RecurrenceUnit.WEEK if rule.days_of_week:
            local = _weekday_occurrence(rule, anchor, index)
        case RecurrenceUnit.WEEK:
            local = anchor + relativedelta(weeks=index * rule.interval)
        case RecurrenceUnit.MONTH:
            local = anchor + relativedelta(months=index * rule.interval)
        case RecurrenceUnit.YEAR:
            local = anchor + relativedelta(years=index * rule.interval)
        case _:
            raise ValueError(f"unsupported recurrence unit: {rule.unit}")

    return local.replace(tzinfo=rule.zone).astimezone(UTC)


def _weekday_occurrence(rule: RecurrenceRule, anchor: datetime, index: int) -> datetime:
    days = rule.days_of_week
    week_start = anchor - timedelta(days=anchor.weekday())
    # selected weekdays before the anchor in its own week are not occurrences
    skipped = sum(1 for day in days if day < anchor.weekday())
    week, position = divmod(index + skipped, len(days))
    return week_start + relativedelta(weeks=week * rule.interval, days=days[position])


def _estimate_index(rule: RecurrenceRule, after: datetime) -> int:
    elapsed = after - rule.anchor_utc
    if elapsed <= timedelta(0):
        return 0
    if rule.unit is RecurrenceUnit.INTERVAL:
        return int(elapsed / timedelta(minutes=rule.interval))
    span = _MAX_UNIT[rule.unit] * rule.interval
    per_span = len(rule.days_of_week) if rule.days_of_week else 1
    return max(0, int(elapsed / span) * per_span - per_span)


def _first_index(rule: RecurrenceRule, after: datetime, inclusive: bool) -> int:
    """Smallest index whose occurrence is after (or at, if inclusive) `after`."""

    def qualifies(index: int) -> bool:
        moment = occurrence_at(rule, index)
        return moment >= after if inclusive else moment > after

    index = _estimate_index(rule, after)
    while index > 0 and qualifies(index - 1):
        index -= 1
    while not qualifies(index):
        index += 1
    return index


def _bounded(rule: RecurrenceRule, index: int) -> datetime | None:
    if rule.max_occurrences is not None and index >= rule.max_occurrences:
        return None
    moment = occurrence_at(rule, index)
    if rule.end_at is not None and moment > rule.end_at:
        return None
    return moment


def next_occurrence(rule: RecurrenceRule, last_fired_at: datetime) -> datetime | None:
    """
    Return the first occurrence strictly after `last_fired_at`.

    Occurrences are counted from the anchor, so occurrences that were
    skipped (because the schedule was paused or the clock was down) still
    count toward max_occurrences.

    Args:
        rule: Recurrence rule
        last_fired_at: Timezone-aware instant of the previous run (callers
            pass max(nominal due time, now) to skip missed occurrences)

    Returns:
        UTC datetime of the next occurrence, or None once the rule's end
        condition (max_occurrences or end_at) is reached

    Example:
        rule = RecurrenceRule(RecurrenceUnit.MONTH, anchor=datetime(2025, 1, 31, 9))
        next_occurrence(rule, datetime(2025, 1, 31, 9, tzinfo=UTC))
        # datetime(2025, 2, 28, 9, tzinfo=UTC)
    """
    return _bounded(rule, _first_index(rule, last_fired_at, inclusive=False))


def first_occurrence(rule: RecurrenceRule, now: datetime) -> datetime | None:
    """Return the first occurrence at or after `now`, or None if the rule has ended."""
    return _bounded(rule, _first_index(rule, now, inclusive=True))
