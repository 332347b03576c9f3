"""Execution ledger records and run summaries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import xxhash

from pycadence.models.status import AttemptOutcome, RunOutcome

SAMPLE_ERROR_LIMIT = 5
RUN_HISTORY_LIMIT = 20


def correlation_id_for(run_id: str, recipient_id: str, attempt_number: int) -> str:
    """Deterministic correlation id handed to the transport for one attempt."""
    digest = xxhash.xxh64_hexdigest(f"{run_id}\x00{recipient_id}".encode("utf-8"))
    return f"{digest}-{attempt_number}"


@dataclass
class ExecutionRecord:
    """One dispatch attempt for one recipient in one run.

    Key: (run_id, recipient_id, attempt_number).
    At most one non-FAILED record exists per (run_id, recipient_id).
    """

    run_id: str
    recipient_id: str
    attempt_number: int
    outcome: AttemptOutcome
    correlation_id: str
    started_at: datetime
    finished_at: datetime | None = None
    error: str | None = None
    provider_message_id: str | None = None

    def __repr__(self) -> str:
        return (
            f"ExecutionRecord(run_id={self.run_id!r}, recipient_id={self.recipient_id!r}, "
            f"attempt={self.attempt_number}, outcome={self.outcome})"
        )


@dataclass
class RunSummary:
    """Structured, user-visible result of a run.

    attempted = succeeded + failed; skipped counts recipients not attempted
    (already dispatched, or the run was cancelled).
    """

    run_id: str
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    sample_errors: list[str] = field(default_factory=list)
    stopped_by: str | None = None
    """Status that halted the run between batches (PAUSED or CANCELLED), if any."""
    error: str | None = None
    """Run-level error that ended the run (directory down, ledger unwritable)."""

    @classmethod
    def for_error(cls, run_id: str, error: str) -> RunSummary:
        """Summary of a run a run-level error ended before it finished."""
        return cls(run_id=run_id, sample_errors=[error], error=error)

    @property
    def outcome(self) -> RunOutcome:
        if self.error is not None or (self.failed and not self.succeeded):
            return RunOutcome.FAILED
        if self.failed:
            return RunOutcome.PARTIAL
        return RunOutcome.SUCCESS

    def record_success(self) -> None:
        self.attempted += 1
        self.succeeded += 1

    def record_failure(self, recipient_id: str, error: str) -> None:
        self.attempted += 1
        self.failed += 1
        if len(self.sample_errors) < SAMPLE_ERROR_LIMIT:
            self.sample_errors.append(f"{recipient_id}: {error}")

    def record_skip(self) -> None:
        self.skipped += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "sample_errors": list(self.sample_errors),
            "stopped_by": self.stopped_by,
            "error": self.error,
        }


@dataclass(frozen=True)
class RunRecord:
    """One finished run in a schedule's run history."""

    run_id: str
    outcome: RunOutcome
    finished_at: datetime
    attempted: int
    succeeded: int
    failed: int
    skipped: int
    sample_errors: tuple[str, ...] = ()
    next_execution_at: datetime | None = None
    """When the schedule fires next, as decided at the end of this run."""

    @classmethod
    def from_summary(
        cls, summary: RunSummary, finished_at: datetime, next_execution_at: datetime | None
    ) -> RunRecord:
        return cls(
            run_id=summary.run_id,
            outcome=summary.outcome,
            finished_at=finished_at,
            attempted=summary.attempted,
            succeeded=summary.succeeded,
            failed=summary.failed,
            skipped=summary.skipped,
            sample_errors=tuple(summary.sample_errors),
            next_execution_at=next_execution_at,
        )


@dataclass(frozen=True)
class ScheduleStats:
    """Totals over every finished run of a schedule, failed runs included."""

    total_runs: int = 0
    total_failed_runs: int = 0
    total_recipients: int = 0
    """Recipients attempted."""
    total_sent: int = 0
    total_failed: int = 0
    last_run_at: datetime | None = None

    def add(self, record: RunRecord) -> ScheduleStats:
        return ScheduleStats(
            total_runs=self.total_runs + 1,
            total_failed_runs=self.total_failed_runs
            + (1 if record.outcome is RunOutcome.FAILED else 0),
            total_recipients=self.total_recipients + record.attempted,
            total_sent=self.total_sent + record.succeeded,
            total_failed=self.total_failed + record.failed,
            last_run_at=record.finished_at,
        )


@dataclass(frozen=True)
class LedgerPage:
    """One page of ledger history."""

    records: list[ExecutionRecord]
    next_offset: int | None
    """Offset of the next page, None on the last page."""
