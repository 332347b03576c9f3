"""Schedule definitions: what to send, to whom, and when."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any

from pycadence.errors import InvalidTransitionError, ValidationError
from pycadence.models.ledger import RUN_HISTORY_LIMIT, RunRecord, RunSummary, ScheduleStats
from pycadence.models.predicate import Predicate
from pycadence.models.recurrence import RecurrenceRule
from pycadence.models.status import ScheduleStatus, ScheduleType
from pycadence.models.workflow import FrequencyCap, TimingWindow

DEFAULT_EXCLUDED_STATUSES: tuple[str, ...] = ("UNSUBSCRIBED", "BOUNCED", "COMPLAINED", "SUPPRESSED")
"""Recipient statuses never sent to (unsubscribe, bounce, complaint, manual suppression)."""


@dataclass(frozen=True)
class ScheduleSettings:
    """Per-schedule dispatch limits."""

    max_recipients_per_run: int = 1000
    concurrency_limit: int = 10
    max_retries: int = 3
    """Run-level retries (and per-action retries for compiled workflows)."""
    batch_size: int = 100
    exclude_statuses: tuple[str, ...] = DEFAULT_EXCLUDED_STATUSES
    throttle_delay: timedelta = timedelta(0)
    """Pause each dispatch slot holds after a send, spacing sends out per slot."""

    def validate(self) -> None:
        if self.max_recipients_per_run < 1:
            raise ValidationError("max_recipients_per_run must be >= 1")
        if self.concurrency_limit < 1:
            raise ValidationError("concurrency_limit must be >= 1")
        if self.max_retries < 0:
            raise ValidationError("max_retries must be >= 0")
        if self.batch_size < 1:
            raise ValidationError("batch_size must be >= 1")
        if self.throttle_delay < timedelta(0):
            raise ValidationError("throttle_delay cannot be negative")


@dataclass(frozen=True)
class DripStep:
    """One step of a drip sequence."""

    delay: timedelta
    """Wait after the previous step (or enrollment) before this step."""
    content_ref: str
    condition: Predicate | None = None
    """Step is skipped when the condition does not hold."""


@dataclass(frozen=True)
class TriggerSpec:
    """Event trigger of an EVENT_TRIGGERED schedule."""

    event_type: str
    condition: Predicate | None = None
    offset: timedelta = timedelta(0)
    frequency_cap: FrequencyCap = field(default_factory=FrequencyCap)
    timing: TimingWindow | None = None


@dataclass
class ScheduleDefinition:
    """A messaging schedule and its runtime bookkeeping.

    Mutated only by the clock (claims, run outcomes) and by explicit
    pause/resume/cancel. Every mutation goes through a compare-and-set on
    `revision`.

    Invariant: next_execution_at is set if and only if status is SCHEDULED.
    """

    schedule_id: str
    """Unique schedule identifier."""

    owner: str
    """Account that owns the schedule; run summaries are surfaced to it."""

    schedule_type: ScheduleType
    """How the schedule fires."""

    content_ref: str | None = None
    """Content sent by IMMEDIATE, ONE_TIME, RECURRING and EVENT_TRIGGERED runs."""

    list_ref: str | None = None
    """Recipient list resolved by the directory (not used by EVENT_TRIGGERED)."""

    status: ScheduleStatus = ScheduleStatus.DRAFT
    next_execution_at: datetime | None = None

    start_at: datetime | None = None
    """ONE_TIME send time; optional start of DRIP enrollment."""

    recurrence: RecurrenceRule | None = None
    drip_steps: list[DripStep] = field(default_factory=list)
    trigger: TriggerSpec | None = None

    workflow_id: str | None = None
    """Compiled workflow of DRIP and EVENT_TRIGGERED schedules."""

    settings: ScheduleSettings = field(default_factory=ScheduleSettings)

    retry_count: int = 0
    """Run-level retries spent on the current run."""

    current_run_id: str | None = None
    """Run in progress; kept across retries and pauses so the ledger dedupes."""

    run_due_at: datetime | None = None
    """Nominal due time of the current run."""

    resume_due_at: datetime | None = None
    """next_execution_at at the time of a pause, restored on resume."""

    occurrences: int = 0
    """Completed runs."""

    last_run_at: datetime | None = None
    last_summary: RunSummary | None = None
    last_error: str | None = None

    history: list[RunRecord] = field(default_factory=list)
    """Finished runs, newest first, at most RUN_HISTORY_LIMIT."""

    stats: ScheduleStats = field(default_factory=ScheduleStats)

    claimed_by: str | None = None
    claimed_at: datetime | None = None

    revision: int = 0
    """Bumped by every successful compare-and-set."""

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def check_invariant(self) -> None:
        """Raise ValidationError if next_execution_at and status disagree."""
        scheduled = self.status is ScheduleStatus.SCHEDULED
        if scheduled != (self.next_execution_at is not None):
            raise ValidationError(
                f"schedule {self.schedule_id}: next_execution_at must be set iff SCHEDULED "
                f"(status={self.status}, next_execution_at={self.next_execution_at})"
            )

    def recording_run(
        self,
        summary: RunSummary,
        finished_at: datetime,
        next_execution_at: datetime | None = None,
    ) -> dict[str, Any]:
        """History and stats fields with one more finished run, for transitioned()."""
        record = RunRecord.from_summary(summary, finished_at, next_execution_at)
        return {
            "history": [record, *self.history][:RUN_HISTORY_LIMIT],
            "stats": self.stats.add(record),
        }

    def transitioned(
        self,
        status: ScheduleStatus,
        *,
        now: datetime,
        next_execution_at: datetime | None = None,
        **changes: Any,
    ) -> ScheduleDefinition:
        """Return a copy moved to `status`.

        Args:
            status: Target status
            now: Time of the transition
            next_execution_at: Required when moving to SCHEDULED, ignored otherwise
            **changes: Other fields to set on the copy

        Raises:
            InvalidTransitionError: If the state machine forbids the move
            ValidationError: If SCHEDULED is requested without a due time
        """
        if not self.status.can_transition_to(status):
            raise InvalidTransitionError(f"schedule {self.schedule_id}", self.status, status)
        if status is ScheduleStatus.SCHEDULED and next_execution_at is None:
            raise ValidationError("SCHEDULED requires next_execution_at")
        due = next_execution_at if status is ScheduleStatus.SCHEDULED else None
        return replace(self, status=status, next_execution_at=due, updated_at=now, **changes)

    def validate(self) -> None:
        """Check the definition is runnable for its type.

        Raises:
            ValidationError: If a required field is missing or malformed
        """
        if not self.schedule_id:
            raise ValidationError("schedule_id is required")
        if not self.owner:
            raise ValidationError("owner is required")
        self.settings.validate()

        kind = self.schedule_type
        if kind is not ScheduleType.DRIP and not self.content_ref:
            raise ValidationError(f"{kind} schedule requires content_ref")
        if kind is not ScheduleType.EVENT_TRIGGERED and not self.list_ref:
            raise ValidationError(f"{kind} schedule requires list_ref")
        if self.start_at is not None and self.start_at.tzinfo is None:
            raise ValidationError("start_at must be timezone-aware")

        if kind is ScheduleType.ONE_TIME and self.start_at is None:
            raise ValidationError("ONE_TIME schedule requires start_at")
        if kind is ScheduleType.RECURRING:
            if self.recurrence is None:
                raise ValidationError("RECURRING schedule requires a recurrence rule")
            self.recurrence.validate()
        if kind is ScheduleType.DRIP:
            if not self.drip_steps:
                raise ValidationError("DRIP schedule requires at least one step")
            for index, step in enumerate(self.drip_steps):
                if step.delay < timedelta(0):
                    raise ValidationError(f"drip step {index} has a negative delay")
                if not step.content_ref:
                    raise ValidationError(f"drip step {index} requires content_ref")
        if kind is ScheduleType.EVENT_TRIGGERED:
            if self.trigger is None or not self.trigger.event_type:
                raise ValidationError("EVENT_TRIGGERED schedule requires a trigger event_type")
            if self.trigger.offset < timedelta(0):
                raise ValidationError("trigger offset cannot be negative")
            self.trigger.frequency_cap.validate()
            if self.trigger.timing is not None:
                self.trigger.timing.validate()

        self.check_invariant()

    def __repr__(self) -> str:
        return (
            f"ScheduleDefinition(schedule_id={self.schedule_id!r}, type={self.schedule_type}, "
            f"status={self.status}, next_execution_at={self.next_execution_at}, "
            f"revision={self.revision})"
        )
