"""Status enumerations for schedules, workflow instances and ledger records.

Defines the lifecycle states of every durable record the engine claims
or mutates, plus the transition table of the schedule state machine.
"""

from enum import Enum


class ScheduleStatus(Enum):
    """Status of a ScheduleDefinition.

    Lifecycle:
        DRAFT → SCHEDULED → RUNNING → SCHEDULED (recurring) / COMPLETED / FAILED

    PAUSED and CANCELLED are reachable from SCHEDULED or RUNNING only.
    A paused schedule returns to SCHEDULED on resume. COMPLETED, FAILED
    and CANCELLED are terminal.

    Invariant: next_execution_at is set if and only if status is SCHEDULED.
    """

    DRAFT = "DRAFT"
    """Created but not submitted; never picked up by the clock."""

    SCHEDULED = "SCHEDULED"
    """Waiting for next_execution_at; eligible for claiming once due."""

    RUNNING = "RUNNING"
    """Claimed by a clock (or listening for events, for event-triggered schedules)."""

    PAUSED = "PAUSED"
    """Stopped by its owner; no new claims until resumed."""

    COMPLETED = "COMPLETED"
    """All runs finished."""

    FAILED = "FAILED"
    """Run-level retries exhausted."""

    CANCELLED = "CANCELLED"
    """Cancelled by its owner."""

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (record is immutable)."""
        return self in (ScheduleStatus.COMPLETED, ScheduleStatus.FAILED, ScheduleStatus.CANCELLED)

    def can_transition_to(self, target: "ScheduleStatus") -> bool:
        """Check whether the state machine allows moving to target."""
        return target in _SCHEDULE_TRANSITIONS.get(self, frozenset())

    def __str__(self) -> str:
        return self.value


_SCHEDULE_TRANSITIONS: dict[ScheduleStatus, frozenset[ScheduleStatus]] = {
    ScheduleStatus.DRAFT: frozenset({ScheduleStatus.SCHEDULED, ScheduleStatus.CANCELLED}),
    ScheduleStatus.SCHEDULED: frozenset(
        {ScheduleStatus.RUNNING, ScheduleStatus.PAUSED, ScheduleStatus.CANCELLED}
    ),
    ScheduleStatus.RUNNING: frozenset(
        {
            ScheduleStatus.SCHEDULED,
            ScheduleStatus.COMPLETED,
            ScheduleStatus.FAILED,
            ScheduleStatus.PAUSED,
            ScheduleStatus.CANCELLED,
        }
    ),
    ScheduleStatus.PAUSED: frozenset({ScheduleStatus.SCHEDULED, ScheduleStatus.CANCELLED}),
}


class ScheduleType(Enum):
    """How a schedule decides when (and to whom) it sends."""

    IMMEDIATE = "IMMEDIATE"
    """One run, as soon as it is submitted."""

    ONE_TIME = "ONE_TIME"
    """One run at start_at."""

    RECURRING = "RECURRING"
    """A run at every occurrence of its recurrence rule."""

    DRIP = "DRIP"
    """Enrolls every recipient into an ordered sequence of delayed steps."""

    EVENT_TRIGGERED = "EVENT_TRIGGERED"
    """Listens for trigger events and sends to the recipient that caused them."""

    def __str__(self) -> str:
        return self.value


class InstanceStatus(Enum):
    """Status of a WorkflowInstance.

    Lifecycle:
        ACTIVE ⇄ WAITING → COMPLETED / ABORTED

    resume_at is set if and only if status is WAITING.
    """

    ACTIVE = "ACTIVE"
    """Ready to advance; owned by claimed_by when set."""

    WAITING = "WAITING"
    """Suspended on a delay or retry backoff until resume_at."""

    COMPLETED = "COMPLETED"
    """Reached a node with no outgoing edges."""

    ABORTED = "ABORTED"
    """Stopped early (no branch matched, recipient suppressed, cancelled)."""

    @property
    def is_terminal(self) -> bool:
        return self in (InstanceStatus.COMPLETED, InstanceStatus.ABORTED)

    def __str__(self) -> str:
        return self.value


class AttemptOutcome(Enum):
    """Outcome of one dispatch attempt in the execution ledger.

    At most one non-FAILED record exists per (run_id, recipient_id).
    """

    PENDING = "PENDING"
    """Attempt recorded, send in flight (or interrupted by a crash)."""

    SUCCEEDED = "SUCCEEDED"
    """Transport accepted the message."""

    FAILED = "FAILED"
    """Render or transport failed; a later attempt may follow."""

    SKIPPED = "SKIPPED"
    """Recipient deliberately not sent to (run cancelled)."""

    def __str__(self) -> str:
        return self.value


class RunOutcome(Enum):
    """How a finished schedule run went, as kept in its run history."""

    SUCCESS = "SUCCESS"
    """Every attempted recipient succeeded (or nothing needed sending)."""

    PARTIAL = "PARTIAL"
    """Some recipients succeeded and some failed."""

    FAILED = "FAILED"
    """Every attempted recipient failed, or a run-level error ended the run."""

    def __str__(self) -> str:
        return self.value
