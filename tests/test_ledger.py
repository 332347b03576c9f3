"""
Tests for the execution ledger, run against every local backend.

Covers:
- At most one non-FAILED record per (run, recipient)
- Attempt numbering after failures
- Completion rules
- History pagination
- Delivery callbacks by correlation id
- Run summaries rebuilt from the ledger
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from pycadence.models import AttemptOutcome
from pycadence.models.ledger import SAMPLE_ERROR_LIMIT, correlation_id_for
from pycadence.storage import PersistenceError

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)


async def succeed(store, run_id, recipient_id, now=T0):
    record = await store.record_attempt(run_id, recipient_id, now)
    return await store.complete_attempt(
        run_id, recipient_id, record.attempt_number, AttemptOutcome.SUCCEEDED, now=now
    )


async def fail(store, run_id, recipient_id, error="boom", now=T0):
    record = await store.record_attempt(run_id, recipient_id, now)
    return await store.complete_attempt(
        run_id, recipient_id, record.attempt_number, AttemptOutcome.FAILED, now=now, error=error
    )


# =============================================================================
# TEST 1: Idempotence gate
# =============================================================================


@pytest.mark.asyncio
async def test_record_attempt_opens_pending_record(store):
    record = await store.record_attempt("run-1", "alice", T0)

    assert record.attempt_number == 1
    assert record.outcome is AttemptOutcome.PENDING
    assert record.correlation_id == correlation_id_for("run-1", "alice", 1)
    assert record.started_at == T0


@pytest.mark.asyncio
async def test_succeeded_recipient_is_never_attempted_again(store):
    await succeed(store, "run-1", "alice")

    assert await store.record_attempt("run-1", "alice", T0) is None
    assert await store.has_succeeded("run-1", "alice")


@pytest.mark.asyncio
async def test_pending_attempt_blocks_new_attempts(store):
    await store.record_attempt("run-1", "alice", T0)

    assert await store.record_attempt("run-1", "alice", T0 + timedelta(minutes=5)) is None


@pytest.mark.asyncio
async def test_failed_attempt_allows_retry_with_next_number(store):
    await fail(store, "run-1", "alice")
    await fail(store, "run-1", "alice")

    third = await store.record_attempt("run-1", "alice", T0)

    assert third.attempt_number == 3
    attempts = await store.get_attempts("run-1", "alice")
    assert [a.outcome for a in attempts] == [
        AttemptOutcome.FAILED,
        AttemptOutcome.FAILED,
        AttemptOutcome.PENDING,
    ]


@pytest.mark.asyncio
async def test_runs_are_independent(store):
    await succeed(store, "run-1", "alice")

    assert await store.record_attempt("run-2", "alice", T0) is not None


@pytest.mark.asyncio
@pytest.mark.concurrency
async def test_concurrent_record_attempt_opens_one_attempt(store):
    """Ten racers for the same pair: exactly one gets a record."""
    results = await asyncio.gather(
        *(store.record_attempt("run-1", "alice", T0) for _ in range(10))
    )

    opened = [r for r in results if r is not None]
    assert len(opened) == 1
    assert len(await store.get_attempts("run-1", "alice")) == 1


# =============================================================================
# TEST 2: Completion
# =============================================================================


@pytest.mark.asyncio
async def test_complete_attempt_records_outcome(store):
    record = await store.record_attempt("run-1", "alice", T0)
    done = await store.complete_attempt(
        "run-1",
        "alice",
        record.attempt_number,
        AttemptOutcome.SUCCEEDED,
        now=T0 + timedelta(seconds=2),
        provider_message_id="msg-42",
    )

    assert done.outcome is AttemptOutcome.SUCCEEDED
    assert done.finished_at == T0 + timedelta(seconds=2)
    assert done.provider_message_id == "msg-42"


@pytest.mark.asyncio
async def test_complete_unknown_attempt_raises(store):
    with pytest.raises(PersistenceError):
        await store.complete_attempt("run-1", "nobody", 1, AttemptOutcome.SUCCEEDED, now=T0)


@pytest.mark.asyncio
async def test_completing_a_final_attempt_keeps_its_outcome(store):
    record = await store.record_attempt("run-1", "alice", T0)
    assert await store.update_outcome_by_correlation_id(
        record.correlation_id, AttemptOutcome.FAILED, error="hard bounce"
    )

    kept = await store.complete_attempt(
        "run-1", "alice", 1, AttemptOutcome.SUCCEEDED, now=T0, provider_message_id="msg-1"
    )

    assert (kept.outcome, kept.error) == (AttemptOutcome.FAILED, "hard bounce")
    assert kept.provider_message_id is None
    (stored,) = await store.get_attempts("run-1", "alice")
    assert stored.outcome is AttemptOutcome.FAILED


# =============================================================================
# TEST 3: History
# =============================================================================


@pytest.mark.asyncio
async def test_history_pages_in_start_order(store):
    for minute in range(5):
        await succeed(store, "run-1", f"r{minute}", now=T0 + timedelta(minutes=minute))
    await succeed(store, "run-2", "r0", now=T0 + timedelta(hours=1))

    first = await store.get_history(run_id="run-1", limit=2)
    assert [r.recipient_id for r in first.records] == ["r0", "r1"]
    assert first.next_offset == 2

    last = await store.get_history(run_id="run-1", offset=4, limit=2)
    assert [r.recipient_id for r in last.records] == ["r4"]
    assert last.next_offset is None

    by_recipient = await store.get_history(recipient_id="r0")
    assert [r.run_id for r in by_recipient.records] == ["run-1", "run-2"]


@pytest.mark.asyncio
async def test_history_exact_page_has_no_next(store):
    await succeed(store, "run-1", "a")
    await succeed(store, "run-1", "b")

    page = await store.get_history(run_id="run-1", limit=2)

    assert len(page.records) == 2
    assert page.next_offset is None


# =============================================================================
# TEST 4: Delivery callbacks
# =============================================================================


@pytest.mark.asyncio
async def test_bounce_turns_success_into_failure(store):
    done = await succeed(store, "run-1", "alice")

    assert await store.update_outcome_by_correlation_id(
        done.correlation_id, AttemptOutcome.FAILED, error="hard bounce"
    )

    (record,) = await store.get_attempts("run-1", "alice")
    assert record.outcome is AttemptOutcome.FAILED
    assert record.error == "hard bounce"


@pytest.mark.asyncio
async def test_delivery_confirms_pending(store):
    record = await store.record_attempt("run-1", "alice", T0)

    assert await store.update_outcome_by_correlation_id(
        record.correlation_id, AttemptOutcome.SUCCEEDED
    )
    assert await store.has_succeeded("run-1", "alice")


@pytest.mark.asyncio
async def test_refused_delivery_updates(store):
    await fail(store, "run-1", "alice")
    failed = (await store.get_attempts("run-1", "alice"))[0]

    # FAILED cannot come back to life; unknown ids are ignored
    assert not await store.update_outcome_by_correlation_id(
        failed.correlation_id, AttemptOutcome.SUCCEEDED
    )
    assert not await store.update_outcome_by_correlation_id("nope-1", AttemptOutcome.FAILED)


# =============================================================================
# TEST 5: Summaries
# =============================================================================


@pytest.mark.asyncio
async def test_summarize_counts_one_outcome_per_recipient(store):
    await fail(store, "run-1", "alice", error="timeout")
    await succeed(store, "run-1", "alice")
    await fail(store, "run-1", "bob", error="mailbox full")
    await succeed(store, "run-1", "carol")
    record = await store.record_attempt("run-1", "dave", T0)
    await store.complete_attempt(
        "run-1", "dave", record.attempt_number, AttemptOutcome.SKIPPED, now=T0
    )

    summary = await store.summarize("run-1")

    assert summary.attempted == 3
    assert summary.succeeded == 2
    assert summary.failed == 1
    assert summary.skipped == 1
    assert summary.sample_errors == ["bob: mailbox full"]


@pytest.mark.asyncio
async def test_summary_keeps_a_bounded_error_sample(store):
    for index in range(SAMPLE_ERROR_LIMIT + 3):
        await fail(store, "run-1", f"r{index}", error="down")

    summary = await store.summarize("run-1")

    assert summary.failed == SAMPLE_ERROR_LIMIT + 3
    assert len(summary.sample_errors) == SAMPLE_ERROR_LIMIT


# =============================================================================
# TEST 6: Correlation ids
# =============================================================================


def test_correlation_id_digest(bytes_only_xxhash):
    expected = bytes_only_xxhash(b"run-1\x00alice")

    assert correlation_id_for("run-1", "alice", 2) == f"{expected}-2"
    assert correlation_id_for("run-1", "alice", 1) != correlation_id_for("run-1", "bob", 1)


@pytest.mark.asyncio
async def test_record_attempt_hashes_bytes(store, bytes_only_xxhash):
    record = await store.record_attempt("run-1", "zoë", T0)

    assert record.correlation_id == bytes_only_xxhash("run-1\x00zoë".encode("utf-8")) + "-1"
