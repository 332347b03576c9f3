"""
Tests for run finalization and run-level error handling.
"""

from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from pycadence.errors import RecipientResolutionError, ValidationError
from pycadence.executor import (
    Clock,
    drip_dedupe_key,
    execute_run,
    handle_run_completion,
    handle_run_error,
    run_id_for,
)
from pycadence.models import (
    RecurrenceRule,
    RecurrenceUnit,
    RetryPolicy,
    RunOutcome,
    RunSummary,
    ScheduleSettings,
    ScheduleStats,
    ScheduleStatus,
    ScheduleType,
    TriggerSpec,
)
from pycadence.models.ledger import RUN_HISTORY_LIMIT

from conftest import T0, make_recipient, make_schedule, scheduled


async def claimed(store, schedule):
    """Store `schedule` as SCHEDULED at T0 and claim it."""
    await store.create_schedule(scheduled(schedule))
    current = await store.get_schedule(schedule.schedule_id)
    running = current.transitioned(
        ScheduleStatus.RUNNING,
        now=T0,
        claimed_by="clock-test",
        claimed_at=T0,
        current_run_id=run_id_for(current, T0),
        run_due_at=T0,
    )
    assert await store.compare_and_set_schedule(running, current.revision)
    return running


def test_run_id_is_deterministic():
    schedule = make_schedule("weekly")

    assert run_id_for(schedule, T0) == "weekly@20250106T090000Z"
    assert run_id_for(schedule, T0) == run_id_for(make_schedule("weekly"), T0)


def test_drip_dedupe_key_digest(bytes_only_xxhash):
    assert drip_dedupe_key("drip-1@20250106T090000Z", "alice") == bytes_only_xxhash(
        b"drip-1@20250106T090000Z|alice"
    )


@pytest.mark.asyncio
async def test_tick_runs_with_bytes_only_hashing(store, dispatcher, directory, bytes_only_xxhash):
    directory.add("list-all", make_recipient("alice"), make_recipient("bob"))
    await store.create_schedule(scheduled(make_schedule()))

    (summary,) = (await Clock(store, dispatcher).tick(T0)).summaries

    assert summary.succeeded == 2
    assert (await store.get_schedule("sched-1")).status is ScheduleStatus.COMPLETED


@pytest.mark.asyncio
async def test_validation_error_fails_immediately(store):
    running = await claimed(store, make_schedule())

    failed = await handle_run_error(store, running, ValidationError("bad content"), T0)

    assert failed.status is ScheduleStatus.FAILED
    assert failed.last_error == "ValidationError: bad content"
    assert failed.retry_count == 0


@pytest.mark.asyncio
async def test_backoff_grows_per_retry(store):
    running = await claimed(store, make_schedule())
    error = RecipientResolutionError("directory down")

    first = await handle_run_error(store, running, error, T0)
    assert first.next_execution_at == T0 + timedelta(minutes=5)

    again = first.transitioned(ScheduleStatus.RUNNING, now=T0, claimed_by="clock-test")
    assert await store.compare_and_set_schedule(again, first.revision)
    second = await handle_run_error(store, again, error, T0)

    assert second.retry_count == 2
    assert second.next_execution_at == T0 + timedelta(minutes=15)


@pytest.mark.asyncio
async def test_custom_retry_policy(store):
    running = await claimed(store, make_schedule())

    retried = await handle_run_error(
        store, running, RuntimeError("boom"), T0, retry_policy=RetryPolicy.STANDARD
    )

    assert retried.next_execution_at == T0 + timedelta(minutes=1)


@pytest.mark.asyncio
async def test_completion_loses_to_concurrent_cancel(store):
    running = await claimed(store, make_schedule())
    current = await store.get_schedule("sched-1")
    cancelled = current.transitioned(ScheduleStatus.CANCELLED, now=T0)
    assert await store.compare_and_set_schedule(cancelled, current.revision)

    result = await handle_run_completion(store, running, RunSummary(run_id="r"), T0)

    assert result is None
    assert (await store.get_schedule("sched-1")).status is ScheduleStatus.CANCELLED


@pytest.mark.asyncio
async def test_recurring_completion_counts_occurrences(store):
    rule = RecurrenceRule(RecurrenceUnit.WEEK, anchor=datetime(2025, 1, 6, 9, 0))
    schedule = make_schedule(schedule_type=ScheduleType.RECURRING, recurrence=rule)
    running = await claimed(store, schedule)

    done = await handle_run_completion(store, running, RunSummary(run_id="r", succeeded=4), T0)

    assert done.status is ScheduleStatus.SCHEDULED
    assert done.next_execution_at == T0 + timedelta(weeks=1)
    assert done.occurrences == 1
    assert done.last_summary.succeeded == 4
    assert done.current_run_id is None


@pytest.mark.asyncio
async def test_trigger_schedule_without_workflow_fails(store, dispatcher):
    schedule = make_schedule(
        "orphan",
        ScheduleType.EVENT_TRIGGERED,
        list_ref=None,
        trigger=TriggerSpec(event_type="signup"),
    )
    running = await claimed(store, schedule)

    summary = await execute_run(store, dispatcher, running, T0)

    assert summary.outcome is RunOutcome.FAILED
    assert "no compiled trigger workflow" in summary.error

    stored = await store.get_schedule("orphan")
    assert stored.status is ScheduleStatus.FAILED
    assert "no compiled trigger workflow" in stored.last_error


# =============================================================================
# Run history
# =============================================================================


@pytest.mark.asyncio
async def test_completion_records_run_history(store):
    rule = RecurrenceRule(RecurrenceUnit.DAY, anchor=datetime(2025, 1, 6, 9, 0))
    schedule = make_schedule(schedule_type=ScheduleType.RECURRING, recurrence=rule)
    running = await claimed(store, schedule)
    summary = RunSummary(run_id="r", attempted=3, succeeded=2, failed=1, sample_errors=["bob: x"])

    done = await handle_run_completion(store, running, summary, T0)

    (record,) = done.history
    assert record.outcome is RunOutcome.PARTIAL
    assert (record.attempted, record.succeeded, record.failed) == (3, 2, 1)
    assert record.sample_errors == ("bob: x",)
    assert record.next_execution_at == T0 + timedelta(days=1)
    assert done.stats == ScheduleStats(
        total_runs=1, total_recipients=3, total_sent=2, total_failed=1, last_run_at=T0
    )
    assert (await store.get_schedule("sched-1")).history == done.history


def test_run_history_is_bounded_and_stats_accumulate():
    schedule = make_schedule()
    for n in range(RUN_HISTORY_LIMIT + 5):
        summary = RunSummary(run_id=f"run-{n}", attempted=2, succeeded=2)
        schedule = replace(schedule, **schedule.recording_run(summary, T0 + timedelta(days=n)))

    assert len(schedule.history) == RUN_HISTORY_LIMIT
    assert schedule.history[0].run_id == f"run-{RUN_HISTORY_LIMIT + 4}"
    assert schedule.stats.total_runs == RUN_HISTORY_LIMIT + 5
    assert schedule.stats.total_sent == 2 * (RUN_HISTORY_LIMIT + 5)
    assert schedule.stats.last_run_at == T0 + timedelta(days=RUN_HISTORY_LIMIT + 4)


@pytest.mark.parametrize(
    "summary, outcome",
    [
        (RunSummary(run_id="r"), RunOutcome.SUCCESS),
        (RunSummary(run_id="r", attempted=2, succeeded=2), RunOutcome.SUCCESS),
        (RunSummary(run_id="r", attempted=2, succeeded=1, failed=1), RunOutcome.PARTIAL),
        (RunSummary(run_id="r", attempted=2, failed=2), RunOutcome.FAILED),
        (RunSummary.for_error("r", "RecipientResolutionError: down"), RunOutcome.FAILED),
    ],
)
def test_run_outcome(summary, outcome):
    assert summary.outcome is outcome


@pytest.mark.asyncio
async def test_failed_schedule_keeps_failure_summary(store):
    schedule = make_schedule(settings=ScheduleSettings(max_retries=0))
    running = await claimed(store, schedule)

    failed = await handle_run_error(store, running, RecipientResolutionError("down"), T0)

    assert failed.status is ScheduleStatus.FAILED
    assert failed.last_summary.error == "RecipientResolutionError: down"
    assert failed.last_summary.run_id == "sched-1@20250106T090000Z"
    assert failed.history[0].outcome is RunOutcome.FAILED
    assert failed.stats.total_failed_runs == 1


@pytest.mark.asyncio
async def test_deferred_retry_is_not_a_finished_run(store):
    running = await claimed(store, make_schedule())

    retried = await handle_run_error(store, running, RecipientResolutionError("down"), T0)

    assert retried.status is ScheduleStatus.SCHEDULED
    assert retried.history == []
    assert retried.last_summary is None
