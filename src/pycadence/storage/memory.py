"""In-memory storage implementation for pycadence.

Design Pattern: Adapter Pattern
InMemoryCampaignStore adapts in-memory dictionaries to the CampaignStore
interface.

Records are deep-copied on the way in and out, so callers never hold a
reference to stored state and compare-and-set behaves like a real backend.
Instance is immediately usable after __init__.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime

from pycadence.models import (
    AttemptOutcome,
    ExecutionRecord,
    FrequencyCap,
    InstanceCreation,
    InstanceStatus,
    LedgerPage,
    ScheduleDefinition,
    ScheduleStatus,
    WorkflowDefinition,
    WorkflowInstance,
    correlation_id_for,
)
from pycadence.storage.base import CampaignStore, PersistenceError, delivery_update_allowed


class InMemoryCampaignStore(CampaignStore):
    """In-memory storage for tests and single-process demos.

    Can be substituted for SqliteCampaignStore without changing client code.

    Usage:
        store = InMemoryCampaignStore()
        await store.create_schedule(schedule)
    """

    def __init__(self):
        self._schedules: dict[str, ScheduleDefinition] = {}
        self._workflows: dict[str, WorkflowDefinition] = {}
        self._instances: dict[str, WorkflowInstance] = {}
        self._dedupe: dict[str, str] = {}

        # {(run_id, recipient_id): [ExecutionRecord, ...]} in attempt order
        self._ledger: dict[tuple[str, str], list[ExecutionRecord]] = {}
        self._correlation: dict[str, tuple[str, str]] = {}

        self._lock = asyncio.Lock()
        self._work_notify = asyncio.Event()

    def __repr__(self) -> str:
        return "InMemoryCampaignStore"

    def _notify_work(self) -> None:
        self._work_notify.set()
        self._work_notify.clear()

    # Schedules

    async def create_schedule(self, schedule: ScheduleDefinition) -> None:
        schedule.check_invariant()
        async with self._lock:
            if schedule.schedule_id in self._schedules:
                raise PersistenceError(f"Schedule already exists: {schedule.schedule_id}")
            self._schedules[schedule.schedule_id] = copy.deepcopy(schedule)
        if schedule.status is ScheduleStatus.SCHEDULED:
            self._notify_work()

    async def get_schedule(self, schedule_id: str) -> ScheduleDefinition | None:
        async with self._lock:
            stored = self._schedules.get(schedule_id)
            return copy.deepcopy(stored) if stored is not None else None

    async def list_due_schedules(self, now: datetime, limit: int = 100) -> list[ScheduleDefinition]:
        async with self._lock:
            due = [
                schedule
                for schedule in self._schedules.values()
                if schedule.status is ScheduleStatus.SCHEDULED
                and schedule.next_execution_at is not None
                and schedule.next_execution_at <= now
            ]
            due.sort(key=lambda schedule: schedule.next_execution_at)
            return copy.deepcopy(due[:limit])

    async def list_schedules(
        self, owner: str | None = None, status: ScheduleStatus | None = None
    ) -> list[ScheduleDefinition]:
        async with self._lock:
            found = [
                schedule
                for schedule in self._schedules.values()
                if (owner is None or schedule.owner == owner)
                and (status is None or schedule.status is status)
            ]
            found.sort(key=lambda schedule: schedule.created_at)
            return copy.deepcopy(found)

    async def compare_and_set_schedule(
        self, schedule: ScheduleDefinition, expected_revision: int
    ) -> bool:
        schedule.check_invariant()
        async with self._lock:
            stored = self._schedules.get(schedule.schedule_id)
            if stored is None or stored.revision != expected_revision:
                return False
            schedule.revision = expected_revision + 1
            self._schedules[schedule.schedule_id] = copy.deepcopy(schedule)
        if schedule.status is ScheduleStatus.SCHEDULED:
            self._notify_work()
        return True

    # Workflows

    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        async with self._lock:
            self._workflows[workflow.workflow_id] = copy.deepcopy(workflow)

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        async with self._lock:
            stored = self._workflows.get(workflow_id)
            return copy.deepcopy(stored) if stored is not None else None

    async def list_active_workflows(self, event_type: str) -> list[WorkflowDefinition]:
        async with self._lock:
            return copy.deepcopy(
                [
                    workflow
                    for workflow in self._workflows.values()
                    if workflow.active and workflow.trigger.event_type == event_type
                ]
            )

    # Instances

    async def create_instance(
        self, instance: WorkflowInstance, frequency_cap: FrequencyCap | None = None
    ) -> InstanceCreation:
        async with self._lock:
            if instance.dedupe_key is not None and instance.dedupe_key in self._dedupe:
                return InstanceCreation.DUPLICATE
            if frequency_cap is not None:
                since = instance.created_at - frequency_cap.period
                recent = sum(
                    1
                    for existing in self._instances.values()
                    if existing.workflow_id == instance.workflow_id
                    and existing.recipient_id == instance.recipient_id
                    and existing.created_at > since
                )
                if recent >= frequency_cap.max_count:
                    return InstanceCreation.CAPPED
            if instance.instance_id in self._instances:
                raise PersistenceError(f"Instance already exists: {instance.instance_id}")

            self._instances[instance.instance_id] = copy.deepcopy(instance)
            if instance.dedupe_key is not None:
                self._dedupe[instance.dedupe_key] = instance.instance_id

        self._notify_work()
        return InstanceCreation.CREATED

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        async with self._lock:
            stored = self._instances.get(instance_id)
            return copy.deepcopy(stored) if stored is not None else None

    async def compare_and_set_instance(
        self, instance: WorkflowInstance, expected_revision: int
    ) -> bool:
        async with self._lock:
            stored = self._instances.get(instance.instance_id)
            if stored is None or stored.revision != expected_revision:
                return False
            instance.revision = expected_revision + 1
            self._instances[instance.instance_id] = copy.deepcopy(instance)
        if instance.status is InstanceStatus.ACTIVE and instance.claimed_by is None:
            self._notify_work()
        return True

    async def list_resumable_instances(
        self, now: datetime, stale_before: datetime, limit: int = 100
    ) -> list[WorkflowInstance]:
        async with self._lock:
            found = [
                instance
                for instance in self._instances.values()
                if _is_resumable(instance, now, stale_before)
            ]
            found.sort(key=lambda instance: instance.resume_at or instance.updated_at)
            return copy.deepcopy(found[:limit])

    async def list_instances(
        self,
        workflow_id: str | None = None,
        recipient_id: str | None = None,
        status: InstanceStatus | None = None,
    ) -> list[WorkflowInstance]:
        async with self._lock:
            found = [
                instance
                for instance in self._instances.values()
                if (workflow_id is None or instance.workflow_id == workflow_id)
                and (recipient_id is None or instance.recipient_id == recipient_id)
                and (status is None or instance.status is status)
            ]
            found.sort(key=lambda instance: instance.created_at)
            return copy.deepcopy(found)

    async def purge_finished_instances(self, finished_before: datetime) -> int:
        async with self._lock:
            doomed = [
                instance
                for instance in self._instances.values()
                if instance.status.is_terminal and instance.updated_at < finished_before
            ]
            for instance in doomed:
                del self._instances[instance.instance_id]
                if instance.dedupe_key is not None:
                    self._dedupe.pop(instance.dedupe_key, None)
            return len(doomed)

    # Ledger

    async def record_attempt(
        self, run_id: str, recipient_id: str, now: datetime
    ) -> ExecutionRecord | None:
        async with self._lock:
            attempts = self._ledger.setdefault((run_id, recipient_id), [])
            if any(record.outcome is not AttemptOutcome.FAILED for record in attempts):
                return None

            attempt_number = len(attempts) + 1
            record = ExecutionRecord(
                run_id=run_id,
                recipient_id=recipient_id,
                attempt_number=attempt_number,
                outcome=AttemptOutcome.PENDING,
                correlation_id=correlation_id_for(run_id, recipient_id, attempt_number),
                started_at=now,
            )
            attempts.append(record)
            self._correlation[record.correlation_id] = (run_id, recipient_id)
            return copy.deepcopy(record)

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
        async with self._lock:
            attempts = self._ledger.get((run_id, recipient_id), [])
            if attempt_number < 1 or attempt_number > len(attempts):
                raise PersistenceError(
                    f"Attempt not found: run_id={run_id}, recipient_id={recipient_id}, "
                    f"attempt={attempt_number}"
                )
            record = attempts[attempt_number - 1]
            if record.outcome is not AttemptOutcome.PENDING:
                # Finalized early by a delivery callback; its outcome stands
                return copy.deepcopy(record)

            record.outcome = outcome
            record.finished_at = now
            record.error = error
            record.provider_message_id = provider_message_id
            return copy.deepcopy(record)

    async def get_attempts(self, run_id: str, recipient_id: str) -> list[ExecutionRecord]:
        async with self._lock:
            return copy.deepcopy(self._ledger.get((run_id, recipient_id), []))

    async def get_history(
        self,
        run_id: str | None = None,
        recipient_id: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> LedgerPage:
        async with self._lock:
            records = [
                record
                for (record_run, record_recipient), attempts in self._ledger.items()
                if (run_id is None or record_run == run_id)
                and (recipient_id is None or record_recipient == recipient_id)
                for record in attempts
            ]
            records.sort(
                key=lambda r: (r.started_at, r.run_id, r.recipient_id, r.attempt_number)
            )
            page = records[offset : offset + limit]
            next_offset = offset + limit if offset + limit < len(records) else None
            return LedgerPage(records=copy.deepcopy(page), next_offset=next_offset)

    async def update_outcome_by_correlation_id(
        self, correlation_id: str, outcome: AttemptOutcome, error: str | None = None
    ) -> bool:
        async with self._lock:
            key = self._correlation.get(correlation_id)
            if key is None:
                return False
            for record in self._ledger[key]:
                if record.correlation_id != correlation_id:
                    continue
                if not delivery_update_allowed(record.outcome, outcome):
                    return False
                record.outcome = outcome
                if error is not None:
                    record.error = error
                return True
            return False

    # Maintenance

    async def reset(self) -> None:
        """Clear all data (for testing).

        After reset, storage is empty but functional.
        """
        async with self._lock:
            self._schedules.clear()
            self._workflows.clear()
            self._instances.clear()
            self._dedupe.clear()
            self._ledger.clear()
            self._correlation.clear()

    async def close(self) -> None:
        pass

    def work_notify(self) -> asyncio.Event:
        """Return event for work notifications (WorkNotificationSource protocol)."""
        return self._work_notify


def _is_resumable(instance: WorkflowInstance, now: datetime, stale_before: datetime) -> bool:
    if instance.status is InstanceStatus.WAITING:
        return instance.resume_at is not None and instance.resume_at <= now
    if instance.status is InstanceStatus.ACTIVE:
        return instance.claimed_by is None or (
            instance.claimed_at is not None and instance.claimed_at < stale_before
        )
    return False
