"""
Campaigns - administrative API over the campaign store.

Design Pattern: Façade Pattern
Hides compilation, validation and compare-and-set retries behind a few
calls an application (or an HTTP layer it owns) can make directly:

    create_schedule -> submit_schedule -> pause / resume / cancel

plus workflow management, event submission and ledger queries.

Every state change is a compare-and-set. Admin operations race with the
clock, so a lost compare-and-set is retried against a fresh read; the
state machine then decides whether the operation is still allowed.
"""

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime

from pycadence.core.recurrence import first_occurrence
from pycadence.errors import ClaimConflictError, ValidationError
from pycadence.executor.compile import compile_drip, compile_trigger, workflow_id_for
from pycadence.models import (
    AttemptOutcome,
    InstanceStatus,
    LedgerPage,
    RunRecord,
    RunSummary,
    ScheduleDefinition,
    ScheduleStats,
    ScheduleStatus,
    ScheduleType,
    TriggerEvent,
    WorkflowDefinition,
)
from pycadence.storage.base import CampaignStore
from pycadence.triggers import EventTriggerMatcher, MatchResult

logger = logging.getLogger(__name__)

_MAX_CAS_RETRIES = 5


class Campaigns:
    """
    Administrative façade for schedules and workflows.

    Usage:
        campaigns = Campaigns(store)

        schedule = await campaigns.create_schedule(ScheduleDefinition(
            schedule_id="weekly-digest",
            owner="acme",
            schedule_type=ScheduleType.RECURRING,
            content_ref="tpl-digest",
            list_ref="list-subscribers",
            recurrence=RecurrenceRule(
                RecurrenceUnit.WEEK, anchor=monday_9am, timezone="Europe/Berlin"
            ),
        ))
        await campaigns.submit_schedule(schedule.schedule_id)
    """

    def __init__(self, store: CampaignStore, matcher: EventTriggerMatcher | None = None):
        """
        Args:
            store: Campaign store
            matcher: Trigger matcher used by submit_event (default: one
                without a recipient directory)
        """
        self._store = store
        self._matcher = matcher or EventTriggerMatcher(store)

    # ========================================================================
    # Schedules
    # ========================================================================

    async def create_schedule(self, schedule: ScheduleDefinition) -> ScheduleDefinition:
        """
        Validate and store a schedule as DRAFT.

        DRIP and EVENT_TRIGGERED schedules are compiled to an (inactive)
        workflow stored alongside.

        Raises:
            ValidationError: If the definition is malformed or the id is taken
        """
        if schedule.status is not ScheduleStatus.DRAFT:
            raise ValidationError("new schedules must be DRAFT")
        schedule.validate()
        if await self._store.get_schedule(schedule.schedule_id) is not None:
            raise ValidationError(f"schedule {schedule.schedule_id} already exists")

        workflow = None
        if schedule.schedule_type is ScheduleType.DRIP:
            workflow = compile_drip(schedule)
        elif schedule.schedule_type is ScheduleType.EVENT_TRIGGERED:
            workflow = compile_trigger(schedule)

        if workflow is not None:
            schedule = replace(schedule, workflow_id=workflow_id_for(schedule))
            await self._store.save_workflow(workflow)

        await self._store.create_schedule(schedule)
        logger.info(f"Created {schedule.schedule_type} schedule {schedule.schedule_id}")
        return schedule

    async def get_schedule(self, schedule_id: str) -> ScheduleDefinition | None:
        return await self._store.get_schedule(schedule_id)

    async def list_schedules(
        self, owner: str | None = None, status: ScheduleStatus | None = None
    ) -> list[ScheduleDefinition]:
        return await self._store.list_schedules(owner=owner, status=status)

    async def submit_schedule(
        self, schedule_id: str, now: datetime | None = None
    ) -> ScheduleDefinition:
        """
        Move a DRAFT schedule to SCHEDULED at its first due time.

        IMMEDIATE and EVENT_TRIGGERED schedules are due now, ONE_TIME and
        DRIP at start_at (or now), RECURRING at the first occurrence at or
        after now.

        Raises:
            ValidationError: If a recurring rule has no occurrence left
            InvalidTransitionError: If the schedule is not DRAFT
        """
        now = now or datetime.now(UTC)

        def submit(schedule: ScheduleDefinition) -> ScheduleDefinition:
            return schedule.transitioned(
                ScheduleStatus.SCHEDULED, now=now, next_execution_at=_first_due(schedule, now)
            )

        updated = await self._update_schedule(schedule_id, submit)
        logger.info(f"Submitted schedule {schedule_id}, due at {updated.next_execution_at}")
        return updated

    async def pause(self, schedule_id: str, now: datetime | None = None) -> ScheduleDefinition:
        """
        Pause a SCHEDULED or RUNNING schedule.

        A run in flight stops after its current batch. An event-triggered
        schedule stops accepting new events (its workflow is deactivated;
        instances already started carry on).

        Raises:
            InvalidTransitionError: If the schedule is not SCHEDULED or RUNNING
        """
        now = now or datetime.now(UTC)

        def pause(schedule: ScheduleDefinition) -> ScheduleDefinition:
            return schedule.transitioned(
                ScheduleStatus.PAUSED,
                now=now,
                resume_due_at=schedule.next_execution_at,
                claimed_by=None,
                claimed_at=None,
            )

        updated = await self._update_schedule(schedule_id, pause)
        if updated.schedule_type is ScheduleType.EVENT_TRIGGERED and updated.workflow_id:
            await self._set_workflow_active(updated.workflow_id, False, now)
        logger.info(f"Paused schedule {schedule_id}")
        return updated

    async def resume(self, schedule_id: str, now: datetime | None = None) -> ScheduleDefinition:
        """
        Return a PAUSED schedule to SCHEDULED.

        It becomes due at the time it was due when paused, or now if that
        has passed (or a run was in flight). An interrupted run continues
        under its original run id.

        Raises:
            InvalidTransitionError: If the schedule is not PAUSED
        """
        now = now or datetime.now(UTC)

        def resume(schedule: ScheduleDefinition) -> ScheduleDefinition:
            due = max(schedule.resume_due_at or now, now)
            return schedule.transitioned(
                ScheduleStatus.SCHEDULED, now=now, next_execution_at=due, resume_due_at=None
            )

        updated = await self._update_schedule(schedule_id, resume)
        logger.info(f"Resumed schedule {schedule_id}, due at {updated.next_execution_at}")
        return updated

    async def cancel(self, schedule_id: str, now: datetime | None = None) -> ScheduleDefinition:
        """
        Cancel a schedule.

        A run in flight records its remaining recipients as SKIPPED.
        A compiled workflow is deactivated and its unfinished instances
        are aborted.

        Raises:
            InvalidTransitionError: If the schedule is already terminal
        """
        now = now or datetime.now(UTC)

        def cancel(schedule: ScheduleDefinition) -> ScheduleDefinition:
            return schedule.transitioned(
                ScheduleStatus.CANCELLED, now=now, claimed_by=None, claimed_at=None
            )

        updated = await self._update_schedule(schedule_id, cancel)
        if updated.workflow_id:
            await self.cancel_workflow(updated.workflow_id, now)
        logger.info(f"Cancelled schedule {schedule_id}")
        return updated

    async def _update_schedule(
        self,
        schedule_id: str,
        change: Callable[[ScheduleDefinition], ScheduleDefinition],
    ) -> ScheduleDefinition:
        for _ in range(_MAX_CAS_RETRIES):
            schedule = await self._store.get_schedule(schedule_id)
            if schedule is None:
                raise ValidationError(f"unknown schedule {schedule_id}")
            updated = change(schedule)
            if await self._store.compare_and_set_schedule(updated, schedule.revision):
                return updated
            logger.debug(f"Schedule {schedule_id} changed concurrently, retrying")
        raise ClaimConflictError(f"schedule {schedule_id} kept changing")

    # ========================================================================
    # Workflows
    # ========================================================================

    async def create_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        """
        Validate and store a standalone workflow.

        Raises:
            ValidationError: If the graph is invalid or the id is taken
        """
        workflow.validate()
        if await self._store.get_workflow(workflow.workflow_id) is not None:
            raise ValidationError(f"workflow {workflow.workflow_id} already exists")
        await self._store.save_workflow(workflow)
        logger.info(f"Created workflow {workflow.workflow_id} (active={workflow.active})")
        return workflow

    async def activate_workflow(
        self, workflow_id: str, now: datetime | None = None
    ) -> WorkflowDefinition:
        return await self._set_workflow_active(workflow_id, True, now or datetime.now(UTC))

    async def deactivate_workflow(
        self, workflow_id: str, now: datetime | None = None
    ) -> WorkflowDefinition:
        """Stop new trigger matches; running instances continue."""
        return await self._set_workflow_active(workflow_id, False, now or datetime.now(UTC))

    async def cancel_workflow(self, workflow_id: str, now: datetime | None = None) -> int:
        """
        Deactivate a workflow and abort every unfinished instance.

        Returns:
            Number of instances aborted
        """
        now = now or datetime.now(UTC)
        await self._set_workflow_active(workflow_id, False, now)

        aborted = 0
        for instance in await self._store.list_instances(workflow_id=workflow_id):
            for _ in range(_MAX_CAS_RETRIES):
                if instance is None or instance.status.is_terminal:
                    break
                stopped = replace(
                    instance,
                    status=InstanceStatus.ABORTED,
                    resume_at=None,
                    waiting_on=None,
                    claimed_by=None,
                    claimed_at=None,
                    last_error="workflow cancelled",
                    updated_at=now,
                )
                if await self._store.compare_and_set_instance(stopped, instance.revision):
                    aborted += 1
                    break
                instance = await self._store.get_instance(instance.instance_id)

        logger.info(f"Cancelled workflow {workflow_id}, aborted {aborted} instances")
        return aborted

    async def _set_workflow_active(
        self, workflow_id: str, active: bool, now: datetime
    ) -> WorkflowDefinition:
        workflow = await self._store.get_workflow(workflow_id)
        if workflow is None:
            raise ValidationError(f"unknown workflow {workflow_id}")
        if workflow.active != active:
            workflow.active = active
            workflow.revision += 1
            workflow.updated_at = now
            await self._store.save_workflow(workflow)
        return workflow

    # ========================================================================
    # Events and ledger
    # ========================================================================

    async def submit_event(
        self, event: TriggerEvent, now: datetime | None = None
    ) -> list[MatchResult]:
        """Feed one inbound event to the trigger matcher."""
        return await self._matcher.submit(event, now)

    async def get_run_summary(self, run_id: str) -> RunSummary:
        """Summary of a run rebuilt from the ledger (one outcome per recipient)."""
        return await self._store.summarize(run_id)

    async def get_run_history(self, schedule_id: str) -> tuple[list[RunRecord], ScheduleStats]:
        """Recent finished runs of a schedule (newest first) and its running totals.

        Raises:
            ValidationError: If the schedule does not exist
        """
        schedule = await self._store.get_schedule(schedule_id)
        if schedule is None:
            raise ValidationError(f"unknown schedule {schedule_id}")
        return list(schedule.history), schedule.stats

    async def get_history(
        self,
        run_id: str | None = None,
        recipient_id: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> LedgerPage:
        return await self._store.get_history(
            run_id=run_id, recipient_id=recipient_id, offset=offset, limit=limit
        )

    async def record_delivery(
        self, correlation_id: str, outcome: AttemptOutcome, error: str | None = None
    ) -> bool:
        """
        Apply a provider delivery callback (delivered, bounced...).

        Returns:
            False if the correlation id is unknown or the update is not allowed
        """
        return await self._store.update_outcome_by_correlation_id(correlation_id, outcome, error)


def _first_due(schedule: ScheduleDefinition, now: datetime) -> datetime:
    match schedule.schedule_type:
        case ScheduleType.IMMEDIATE | ScheduleType.EVENT_TRIGGERED:
            return now
        case ScheduleType.ONE_TIME | ScheduleType.DRIP:
            return schedule.start_at or now
        case ScheduleType.RECURRING:
            due = first_occurrence(schedule.recurrence, now)
            if due is None:
                raise ValidationError(
                    f"schedule {schedule.schedule_id}: recurrence has no occurrence after {now}"
                )
            return due


__all__ = ["Campaigns"]
