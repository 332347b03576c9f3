"""
CampaignStore - Abstract interface for storage backends.

Design Pattern: Adapter Pattern
CampaignStore defines the target interface that all storage adapters
implement. Memory, SQLite and Redis backends adapt to it.

Design Principle: Dependency Inversion
The clock, dispatcher, workflow executor and trigger matcher depend on
this abstraction, never on a concrete backend.

Concurrency contract:
    Every mutation that selects work is a compare-and-set on a record's
    `revision`. A failed compare-and-set returns False and has no side
    effects. Ledger writes are atomic per (run_id, recipient_id): at most
    one non-FAILED record exists for a pair at any time.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Protocol, runtime_checkable

from pycadence.errors import CadenceError
from pycadence.models import (
    AttemptOutcome,
    ExecutionRecord,
    FrequencyCap,
    InstanceCreation,
    InstanceStatus,
    LedgerPage,
    RunSummary,
    ScheduleDefinition,
    ScheduleStatus,
    WorkflowDefinition,
    WorkflowInstance,
)

logger = logging.getLogger(__name__)


class PersistenceError(CadenceError):
    """
    Storage operation failed.

    Fatal to the run that hit it: the run is aborted and resumed later,
    which is safe because completed work is already durably recorded.
    """

    pass


class CampaignStore(ABC):
    """
    Abstract storage interface for schedules, workflows, instances and
    the execution ledger.

    Clients program to this interface, not to concrete implementations,
    so tests run against InMemoryCampaignStore and production against
    SqliteCampaignStore or RedisCampaignStore unchanged.
    """

    # ========================================================================
    # Schedules
    # ========================================================================

    @abstractmethod
    async def create_schedule(self, schedule: ScheduleDefinition) -> None:
        """
        Persist a new schedule.

        Args:
            schedule: Schedule to insert (its revision is stored as given)

        Raises:
            PersistenceError: If a schedule with the same id exists or the
                write fails
        """
        pass

    @abstractmethod
    async def get_schedule(self, schedule_id: str) -> ScheduleDefinition | None:
        """
        Retrieve a schedule.

        Returns:
            The schedule, or None if it does not exist
        """
        pass

    @abstractmethod
    async def list_due_schedules(self, now: datetime, limit: int = 100) -> list[ScheduleDefinition]:
        """
        Select schedules with status SCHEDULED and next_execution_at <= now.

        Selection is a plain read: callers must claim each candidate with
        compare_and_set_schedule() before acting on it.

        Args:
            now: Current time
            limit: Maximum number of schedules returned (earliest due first)

        Returns:
            Due schedules ordered by next_execution_at
        """
        pass

    @abstractmethod
    async def list_schedules(
        self, owner: str | None = None, status: ScheduleStatus | None = None
    ) -> list[ScheduleDefinition]:
        """
        List schedules, optionally filtered by owner and status.

        Returns:
            Matching schedules ordered by creation time
        """
        pass

    @abstractmethod
    async def compare_and_set_schedule(
        self, schedule: ScheduleDefinition, expected_revision: int
    ) -> bool:
        """
        Atomically replace a schedule if its stored revision still matches.

        On success the stored revision becomes expected_revision + 1 and
        `schedule.revision` is updated to match.

        Args:
            schedule: New state of the schedule
            expected_revision: Revision the caller read

        Returns:
            True if written, False if another writer got there first
            (or the schedule does not exist)

        Raises:
            ValidationError: If the new state breaks the
                next_execution_at/status invariant
            PersistenceError: If the write fails
        """
        pass

    # ========================================================================
    # Workflows
    # ========================================================================

    @abstractmethod
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        """
        Insert or replace a workflow definition.

        Raises:
            PersistenceError: If the write fails
        """
        pass

    @abstractmethod
    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        """Retrieve a workflow definition, or None if it does not exist."""
        pass

    @abstractmethod
    async def list_active_workflows(self, event_type: str) -> list[WorkflowDefinition]:
        """
        Find active workflows whose trigger listens for `event_type`.

        Returns:
            Matching workflows (may be empty)
        """
        pass

    # ========================================================================
    # Workflow instances
    # ========================================================================

    @abstractmethod
    async def create_instance(
        self, instance: WorkflowInstance, frequency_cap: FrequencyCap | None = None
    ) -> InstanceCreation:
        """
        Atomically create a workflow instance.

        Dedupe check and frequency-cap check happen in the same atomic
        operation as the insert, so concurrent duplicate events cannot
        both create an instance.

        Args:
            instance: Instance to insert
            frequency_cap: If given, refuse creation when the recipient
                already has max_count instances of this workflow created
                within the cap's period before instance.created_at

        Returns:
            CREATED, DUPLICATE (dedupe_key exists) or CAPPED

        Raises:
            PersistenceError: If the write fails
        """
        pass

    @abstractmethod
    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve an instance, or None if it does not exist."""
        pass

    @abstractmethod
    async def compare_and_set_instance(
        self, instance: WorkflowInstance, expected_revision: int
    ) -> bool:
        """
        Atomically replace an instance if its stored revision still matches.

        This is the reentrancy guard of the workflow executor: only the
        holder of the latest revision can move the cursor.

        Returns:
            True if written (instance.revision is bumped), False otherwise
        """
        pass

    @abstractmethod
    async def list_resumable_instances(
        self, now: datetime, stale_before: datetime, limit: int = 100
    ) -> list[WorkflowInstance]:
        """
        Select instances a clock may claim.

        That is WAITING instances with resume_at <= now, plus ACTIVE
        instances that nobody owns (freshly created) or whose owner's
        claim is older than stale_before (crashed worker).

        Returns:
            Candidate instances; callers claim each with compare_and_set_instance()
        """
        pass

    @abstractmethod
    async def list_instances(
        self,
        workflow_id: str | None = None,
        recipient_id: str | None = None,
        status: InstanceStatus | None = None,
    ) -> list[WorkflowInstance]:
        """List instances, optionally filtered, ordered by creation time."""
        pass

    @abstractmethod
    async def purge_finished_instances(self, finished_before: datetime) -> int:
        """
        Delete COMPLETED and ABORTED instances last updated before the cutoff.

        Their dedupe keys and frequency-cap history go with them.

        Returns:
            Number of instances deleted
        """
        pass

    # ========================================================================
    # Execution ledger
    # ========================================================================

    @abstractmethod
    async def record_attempt(
        self, run_id: str, recipient_id: str, now: datetime
    ) -> ExecutionRecord | None:
        """
        Atomically open a dispatch attempt.

        If a non-FAILED record (PENDING, SUCCEEDED or SKIPPED) already
        exists for (run_id, recipient_id), nothing is written and None is
        returned: the recipient must not be sent to again. Otherwise a
        PENDING record is inserted with attempt_number = previous max + 1.

        Args:
            run_id: Run identifier
            recipient_id: Recipient identifier
            now: Attempt start time

        Returns:
            The new PENDING record, or None if the recipient was already
            dispatched in this run

        Raises:
            PersistenceError: If the write fails
        """
        pass

    @abstractmethod
    async def complete_attempt(
        self,
        run_id: str,
        recipient_id: str,
        attempt_number: int,
        outcome: AttemptOutcome,
        now: datetime,
        error: str | None = None,
        provider_message_id: str | None = None,
    ) -> ExecutionRecord:
        """
        Close a PENDING attempt with its final outcome.

        A delivery callback may finalize the attempt before the sender
        does; such a record is returned unchanged.

        Raises:
            PersistenceError: If the attempt does not exist or the write fails
        """
        pass

    @abstractmethod
    async def get_attempts(self, run_id: str, recipient_id: str) -> list[ExecutionRecord]:
        """All attempts for one recipient in one run, by attempt number."""
        pass

    @abstractmethod
    async def get_history(
        self,
        run_id: str | None = None,
        recipient_id: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> LedgerPage:
        """
        Paginated ledger history.

        Args:
            run_id: Restrict to one run
            recipient_id: Restrict to one recipient
            offset: Records to skip
            limit: Page size

        Returns:
            Page of records ordered by (started_at, run_id, recipient_id,
            attempt_number)
        """
        pass

    @abstractmethod
    async def update_outcome_by_correlation_id(
        self, correlation_id: str, outcome: AttemptOutcome, error: str | None = None
    ) -> bool:
        """
        Apply an asynchronous delivery callback (bounce, complaint, delivery).

        Allowed changes: PENDING to SUCCEEDED or FAILED, and SUCCEEDED to
        FAILED. Anything else is refused so the one-non-failed-record
        invariant holds.

        Returns:
            True if the record was updated, False if unknown or refused
        """
        pass

    async def has_succeeded(self, run_id: str, recipient_id: str) -> bool:
        """Check whether any attempt for the pair succeeded."""
        attempts = await self.get_attempts(run_id, recipient_id)
        return any(record.outcome is AttemptOutcome.SUCCEEDED for record in attempts)

    async def summarize(self, run_id: str) -> RunSummary:
        """
        Summarize a run from the ledger, one outcome per recipient.

        A recipient counts as succeeded if any attempt succeeded, skipped
        if skipped, failed if every attempt failed. Recipients with only
        a PENDING attempt are counted as attempted.
        """
        summary = RunSummary(run_id=run_id)
        by_recipient: dict[str, list[ExecutionRecord]] = {}
        offset: int | None = 0
        while offset is not None:
            page = await self.get_history(run_id=run_id, offset=offset, limit=500)
            for record in page.records:
                by_recipient.setdefault(record.recipient_id, []).append(record)
            offset = page.next_offset

        for recipient_id, records in by_recipient.items():
            outcomes = {record.outcome for record in records}
            if AttemptOutcome.SUCCEEDED in outcomes:
                summary.record_success()
            elif AttemptOutcome.SKIPPED in outcomes:
                summary.record_skip()
            elif AttemptOutcome.PENDING in outcomes:
                summary.attempted += 1
            else:
                last = max(records, key=lambda record: record.attempt_number)
                summary.record_failure(recipient_id, last.error or "failed")
        return summary

    # ========================================================================
    # Maintenance
    # ========================================================================

    async def recover_stale_schedules(self, stale_before: datetime, now: datetime) -> int:
        """
        Return RUNNING schedules whose claim expired to SCHEDULED.

        A schedule owned by a crashed clock would otherwise stay RUNNING
        forever. Listening EVENT_TRIGGERED schedules hold no claim and are
        left alone. The run id is kept so the ledger dedupes the rerun.

        Returns:
            Number of schedules recovered
        """
        recovered = 0
        for schedule in await self.list_schedules(status=ScheduleStatus.RUNNING):
            if schedule.claimed_by is None or schedule.claimed_at is None:
                continue
            if schedule.claimed_at >= stale_before:
                continue
            released = schedule.transitioned(
                ScheduleStatus.SCHEDULED,
                now=now,
                next_execution_at=now,
                claimed_by=None,
                claimed_at=None,
            )
            if await self.compare_and_set_schedule(released, schedule.revision):
                logger.warning(
                    f"Recovered stale schedule {schedule.schedule_id} "
                    f"(claimed by {schedule.claimed_by} at {schedule.claimed_at})"
                )
                recovered += 1
        return recovered

    @abstractmethod
    async def reset(self) -> None:
        """Clear all data (for testing)."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""
        pass


def delivery_update_allowed(current: AttemptOutcome, requested: AttemptOutcome) -> bool:
    """Outcome changes a delivery callback may apply to a ledger record."""
    if current is AttemptOutcome.PENDING:
        return requested in (AttemptOutcome.SUCCEEDED, AttemptOutcome.FAILED)
    return current is AttemptOutcome.SUCCEEDED and requested is AttemptOutcome.FAILED


@runtime_checkable
class WorkNotificationSource(Protocol):
    """
    Protocol for storage backends that can notify when work becomes available.

    The clock waits on this event between ticks, so a schedule submitted
    for "now" or an instance created by the trigger matcher is picked up
    without waiting for the next poll.
    """

    def work_notify(self) -> asyncio.Event:
        """
        Get the event that's set when work becomes available.

        Returns:
            asyncio.Event that is set when a schedule becomes due or an
            instance becomes claimable
        """
        ...
