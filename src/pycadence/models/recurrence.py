"""Recurrence rule for recurring schedules.

The rule only describes the recurrence; pycadence.core.recurrence computes
occurrences from it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pycadence.errors import ValidationError


class RecurrenceUnit(Enum):
    """Calendar unit a rule advances by."""

    DAY = "DAY"
    WEEK = "WEEK"
    MONTH = "MONTH"
    YEAR = "YEAR"
    INTERVAL = "INTERVAL"
    """Fixed interval in minutes, independent of the calendar."""

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class RecurrenceRule:
    """When a recurring schedule fires.

    Example:
        # 09:00 New York time on the 31st of every month (or the last day)
        RecurrenceRule(
            unit=RecurrenceUnit.MONTH,
            anchor=datetime(2025, 1, 31, 9, 0),
            timezone="America/New_York",
        )
    """

    unit: RecurrenceUnit
    """Calendar unit (or INTERVAL for a fixed number of minutes)."""

    anchor: datetime
    """First occurrence, as wall-clock time in `timezone`.

    An aware datetime is converted to `timezone` and its wall-clock time used.
    """

    interval: int = 1
    """Number of units between occurrences (minutes for INTERVAL)."""

    timezone: str = "UTC"
    """IANA timezone name calendar arithmetic happens in."""

    days_of_week: tuple[int, ...] | None = None
    """WEEK only: weekdays to fire on (Monday=0 ... Sunday=6)."""

    max_occurrences: int | None = None
    """End after this many occurrences (counted from the anchor)."""

    end_at: datetime | None = None
    """No occurrence after this instant."""

    def __post_init__(self) -> None:
        if self.days_of_week is not None:
            object.__setattr__(self, "days_of_week", tuple(sorted(set(self.days_of_week))))

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def local_anchor(self) -> datetime:
        """Anchor as naive wall-clock time in the rule's timezone."""
        if self.anchor.tzinfo is None:
            return self.anchor
        return self.anchor.astimezone(self.zone).replace(tzinfo=None)

    @property
    def anchor_utc(self) -> datetime:
        return self.local_anchor.replace(tzinfo=self.zone).astimezone(UTC)

    def validate(self) -> None:
        """Raise ValidationError if the rule cannot produce occurrences."""
        if not isinstance(self.unit, RecurrenceUnit):
            raise ValidationError(f"unknown recurrence unit: {self.unit!r}")
        if self.interval < 1:
            raise ValidationError(f"recurrence interval must be >= 1, got {self.interval}")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValidationError(f"unknown timezone: {self.timezone!r}") from e
        if self.days_of_week is not None:
            if self.unit is not RecurrenceUnit.WEEK:
                raise ValidationError("days_of_week is only valid for weekly rules")
            if not self.days_of_week or any(d < 0 or d > 6 for d in self.days_of_week):
                raise ValidationError("days_of_week must hold weekdays in 0..6")
        if self.max_occurrences is not None and self.max_occurrences < 1:
            raise ValidationError("max_occurrences must be >= 1")
        if self.end_at is not None:
            if self.end_at.tzinfo is None:
                raise ValidationError("end_at must be timezone-aware")
            if self.end_at < self.anchor_utc:
                raise ValidationError("end_at is before the first occurrence")

    def __repr__(self) -> str:
        return (
            f"RecurrenceRule(unit={self.unit}, interval={self.interval}, "
            f"anchor={self.local_anchor.isoformat()}, timezone={self.timezone!r})"
        )
