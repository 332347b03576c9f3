"""Schedule run execution and outcome handling.

Handles the run of one claimed (RUNNING) schedule:
- IMMEDIATE / ONE_TIME: dispatch once, then COMPLETED
- RECURRING: dispatch, then SCHEDULED at the next occurrence (COMPLETED
  when the rule has ended)
- DRIP: enroll every eligible recipient into the compiled drip workflow,
  then COMPLETED
- EVENT_TRIGGERED: activate the compiled workflow and keep listening

Run-level failures (directory down, store errors) put the schedule back
to SCHEDULED with exponential backoff. Once max_retries is spent the
schedule is FAILED and a summary of the failure goes to the owner. The
run id survives retries and pauses, so the ledger skips every recipient
the earlier attempts already handled.

Design: Information Hiding (Parnas)
Retry and finalization policy is isolated here, allowing the clock loop
to remain simple and these policies to evolve independently.
"""

import logging
from dataclasses import replace
from datetime import datetime

import xxhash
from uuid_extensions import uuid7

from pycadence.core.recurrence import next_occurrence
from pycadence.dispatch import Dispatcher
from pycadence.errors import ValidationError
from pycadence.executor.compile import drip_event_type
from pycadence.models import (
    InstanceCreation,
    RetryPolicy,
    RunSummary,
    ScheduleDefinition,
    ScheduleStatus,
    ScheduleType,
    WorkflowInstance,
)
from pycadence.storage.base import CampaignStore

logger = logging.getLogger(__name__)

__all__ = [
    "run_id_for",
    "drip_dedupe_key",
    "execute_run",
    "enroll_drip",
    "activate_listener",
    "handle_run_completion",
    "handle_run_error",
]


def run_id_for(schedule: ScheduleDefinition, due: datetime) -> str:
    """Ledger run id of the run due at `due`.

    Deterministic, so two clocks that both believe they own the run
    still share one ledger.
    """
    return f"{schedule.schedule_id}@{due:%Y%m%dT%H%M%SZ}"


def drip_dedupe_key(run_id: str, recipient_id: str) -> str:
    """Dedupe key of one recipient's enrollment by one drip run."""
    return xxhash.xxh64_hexdigest(f"{run_id}|{recipient_id}".encode("utf-8"))


async def execute_run(
    store: CampaignStore,
    dispatcher: Dispatcher,
    schedule: ScheduleDefinition,
    now: datetime,
    retry_policy: RetryPolicy = RetryPolicy.RUN_LEVEL,
) -> RunSummary | None:
    """Execute one claimed schedule run and persist its outcome.

    Args:
        store: Campaign store
        dispatcher: Dispatch fan-out
        schedule: Schedule in RUNNING status, claimed by the caller, with
            current_run_id set
        now: Time of the tick that claimed the run
        retry_policy: Backoff between run-level retries

    Returns:
        The run summary (with error set if the schedule FAILED), or None
        if the run failed and was deferred for a retry
    """
    run_id = schedule.current_run_id
    try:
        match schedule.schedule_type:
            case ScheduleType.IMMEDIATE | ScheduleType.ONE_TIME | ScheduleType.RECURRING:
                summary = await dispatcher.dispatch_run(schedule, run_id)
            case ScheduleType.DRIP:
                summary = await enroll_drip(store, dispatcher, schedule, now)
            case ScheduleType.EVENT_TRIGGERED:
                await activate_listener(store, schedule, now)
                return RunSummary(run_id=run_id)
    except Exception as error:
        updated = await handle_run_error(store, schedule, error, now, retry_policy)
        if updated is not None and updated.status is ScheduleStatus.FAILED:
            return updated.last_summary
        return None

    if summary.stopped_by is not None:
        # Paused or cancelled between batches; the admin operation owns the schedule now
        logger.info(f"Run {run_id} stopped by {summary.stopped_by}")
        return summary

    await handle_run_completion(store, schedule, summary, now)
    return summary


async def enroll_drip(
    store: CampaignStore,
    dispatcher: Dispatcher,
    schedule: ScheduleDefinition,
    now: datetime,
) -> RunSummary:
    """Create one drip instance per eligible recipient.

    Enrollment is idempotent per run: the dedupe key is derived from the
    run id and the recipient, so a retried enrollment only adds the
    recipients the earlier attempt missed.

    Returns:
        Summary where succeeded counts new enrollments and skipped counts
        recipients already enrolled by this run
    """
    run_id = schedule.current_run_id
    workflow = await store.get_workflow(schedule.workflow_id) if schedule.workflow_id else None
    if workflow is None:
        raise ValidationError(f"schedule {schedule.schedule_id} has no compiled drip workflow")

    recipients = await dispatcher.resolve_recipients(schedule)
    entry = workflow.entry_node_id()
    summary = RunSummary(run_id=run_id)

    for recipient in recipients:
        instance = WorkflowInstance(
            instance_id=str(uuid7()),
            workflow_id=workflow.workflow_id,
            recipient_id=recipient.recipient_id,
            cursor=entry,
            context={"event_type": drip_event_type(schedule.schedule_id), "payload": {}},
            dedupe_key=drip_dedupe_key(run_id, recipient.recipient_id),
            run_id=run_id,
            created_at=now,
            updated_at=now,
        )
        created = await store.create_instance(instance)
        if created is InstanceCreation.CREATED:
            summary.record_success()
        else:
            summary.record_skip()

    logger.info(
        f"Drip {schedule.schedule_id}: enrolled {summary.succeeded} recipients "
        f"({summary.skipped} already enrolled)"
    )
    return summary


async def activate_listener(
    store: CampaignStore, schedule: ScheduleDefinition, now: datetime
) -> None:
    """Turn on an EVENT_TRIGGERED schedule's workflow.

    The schedule stays RUNNING without a claim: it is listening, not
    being worked on, so stale-claim recovery leaves it alone.
    """
    workflow = await store.get_workflow(schedule.workflow_id) if schedule.workflow_id else None
    if workflow is None:
        raise ValidationError(f"schedule {schedule.schedule_id} has no compiled trigger workflow")

    if not workflow.active:
        workflow.active = True
        workflow.updated_at = now
        await store.save_workflow(workflow)

    listening = replace(
        schedule,
        claimed_by=None,
        claimed_at=None,
        current_run_id=None,
        run_due_at=None,
        retry_count=0,
        last_run_at=now,
        last_error=None,
        updated_at=now,
    )
    if await store.compare_and_set_schedule(listening, schedule.revision):
        logger.info(
            f"Schedule {schedule.schedule_id} listening for {schedule.trigger.event_type!r} "
            f"via workflow {workflow.workflow_id}"
        )
    else:
        logger.info(f"Schedule {schedule.schedule_id} changed while activating, leaving it")


async def handle_run_completion(
    store: CampaignStore,
    schedule: ScheduleDefinition,
    summary: RunSummary,
    now: datetime,
) -> ScheduleDefinition | None:
    """Finalize a run that processed all of its recipients.

    Returns:
        The persisted schedule, or None if it changed concurrently
        (paused or cancelled while the run finished)
    """
    next_at = None
    if schedule.schedule_type is ScheduleType.RECURRING:
        # Occurrences missed while the engine was down are skipped, not replayed
        base = max(schedule.run_due_at or now, now)
        next_at = next_occurrence(schedule.recurrence, base)

    status = ScheduleStatus.SCHEDULED if next_at is not None else ScheduleStatus.COMPLETED
    updated = schedule.transitioned(
        status,
        now=now,
        next_execution_at=next_at,
        retry_count=0,
        current_run_id=None,
        run_due_at=None,
        occurrences=schedule.occurrences + 1,
        last_run_at=now,
        last_summary=summary,
        last_error=None,
        claimed_by=None,
        claimed_at=None,
        **schedule.recording_run(summary, now, next_at),
    )

    if not await store.compare_and_set_schedule(updated, schedule.revision):
        logger.info(f"Schedule {schedule.schedule_id} changed during run {summary.run_id}")
        return None

    if status is ScheduleStatus.SCHEDULED:
        logger.info(f"Schedule {schedule.schedule_id} completed run, next at {next_at}")
    else:
        logger.info(f"Schedule {schedule.schedule_id} completed")
    return updated


async def handle_run_error(
    store: CampaignStore,
    schedule: ScheduleDefinition,
    error: Exception,
    now: datetime,
    retry_policy: RetryPolicy = RetryPolicy.RUN_LEVEL,
) -> ScheduleDefinition | None:
    """Defer a failed run with backoff, or fail the schedule.

    ValidationError fails the schedule at once: retrying cannot fix a
    broken definition. A FAILED schedule keeps a summary of the failure
    in last_summary and in its run history.

    Returns:
        The persisted schedule, or None if it changed concurrently
    """
    error_msg = f"{type(error).__name__}: {error}"
    logger.error(f"Run {schedule.current_run_id} of {schedule.schedule_id} failed: {error_msg}")

    delay = None
    if not isinstance(error, ValidationError):
        policy = retry_policy.with_retries(schedule.settings.max_retries)
        delay = policy.backoff(schedule.retry_count + 1)

    if delay is not None:
        updated = schedule.transitioned(
            ScheduleStatus.SCHEDULED,
            now=now,
            next_execution_at=now + delay,
            retry_count=schedule.retry_count + 1,
            last_error=error_msg,
            claimed_by=None,
            claimed_at=None,
        )
        logger.info(
            f"Retrying schedule {schedule.schedule_id}: attempt={schedule.retry_count + 2}, "
            f"delay={delay}"
        )
    else:
        summary = RunSummary.for_error(schedule.current_run_id or schedule.schedule_id, error_msg)
        updated = schedule.transitioned(
            ScheduleStatus.FAILED,
            now=now,
            last_run_at=now,
            last_summary=summary,
            last_error=error_msg,
            claimed_by=None,
            claimed_at=None,
            **schedule.recording_run(summary, now),
        )

    if not await store.compare_and_set_schedule(updated, schedule.revision):
        logger.info(f"Schedule {schedule.schedule_id} changed while handling run error")
        return None
    return updated
