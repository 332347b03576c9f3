"""
Redis backend tests.

Skipped unless CADENCE_TEST_REDIS_URL points at a Redis server, e.g.

    CADENCE_TEST_REDIS_URL=redis://localhost:6379/15 pytest -m redis
"""

import asyncio
import os
from dataclasses import replace
from datetime import timedelta

import pytest
from uuid_extensions import uuid7

from pycadence.models import (
    ActionNode,
    AttemptOutcome,
    Edge,
    FrequencyCap,
    InstanceCreation,
    InstanceStatus,
    ScheduleStatus,
    TriggerNode,
    WorkflowDefinition,
    WorkflowInstance,
)
from pycadence.storage import PersistenceError, RedisCampaignStore

from conftest import T0, make_schedule, scheduled

REDIS_URL = os.getenv("CADENCE_TEST_REDIS_URL")

pytestmark = [
    pytest.mark.redis,
    pytest.mark.skipif(REDIS_URL is None, reason="CADENCE_TEST_REDIS_URL not set"),
]


@pytest.fixture
async def redis_store():
    store = RedisCampaignStore(REDIS_URL, prefix=f"cadence-test-{uuid7()}")
    await store.connect()
    yield store
    await store.reset()
    await store.close()


def instance(instance_id, recipient_id="alice", **overrides):
    fields = {
        "workflow_id": "wf-1",
        "recipient_id": recipient_id,
        "cursor": "send",
        "created_at": T0,
        "updated_at": T0,
    }
    fields.update(overrides)
    return WorkflowInstance(instance_id=instance_id, **fields)


@pytest.mark.asyncio
async def test_schedule_compare_and_set(redis_store):
    await redis_store.create_schedule(scheduled(make_schedule()))
    current = await redis_store.get_schedule("sched-1")

    running = current.transitioned(
        ScheduleStatus.RUNNING, now=T0, claimed_by="clock-a", claimed_at=T0
    )
    assert await redis_store.compare_and_set_schedule(running, current.revision)
    assert running.revision == current.revision + 1
    assert not await redis_store.compare_and_set_schedule(
        replace(running, claimed_by="clock-b"), current.revision
    )

    stored = await redis_store.get_schedule("sched-1")
    assert stored.claimed_by == "clock-a"
    assert await redis_store.list_due_schedules(T0) == []


@pytest.mark.asyncio
async def test_duplicate_schedule_is_rejected(redis_store):
    await redis_store.create_schedule(make_schedule())

    with pytest.raises(PersistenceError):
        await redis_store.create_schedule(make_schedule())


@pytest.mark.asyncio
@pytest.mark.concurrency
async def test_concurrent_claims_have_one_winner(redis_store):
    await redis_store.create_schedule(scheduled(make_schedule()))
    current = await redis_store.get_schedule("sched-1")

    claims = [
        current.transitioned(ScheduleStatus.RUNNING, now=T0, claimed_by=f"clock-{n}", claimed_at=T0)
        for n in range(6)
    ]
    results = await asyncio.gather(
        *(redis_store.compare_and_set_schedule(claim, current.revision) for claim in claims)
    )

    assert results.count(True) == 1


@pytest.mark.asyncio
async def test_instances_dedupe_and_cap(redis_store):
    cap = FrequencyCap(max_count=2)

    assert await redis_store.create_instance(instance("i-1", dedupe_key="k1"), cap) is (
        InstanceCreation.CREATED
    )
    assert await redis_store.create_instance(instance("i-2", dedupe_key="k1"), cap) is (
        InstanceCreation.DUPLICATE
    )
    assert await redis_store.create_instance(instance("i-3", dedupe_key="k2"), cap) is (
        InstanceCreation.CREATED
    )
    assert await redis_store.create_instance(instance("i-4", dedupe_key="k3"), cap) is (
        InstanceCreation.CAPPED
    )


@pytest.mark.asyncio
async def test_resumable_instances(redis_store):
    await redis_store.create_instance(
        instance("due", status=InstanceStatus.WAITING, resume_at=T0 - timedelta(minutes=1))
    )
    await redis_store.create_instance(
        instance("later", status=InstanceStatus.WAITING, resume_at=T0 + timedelta(hours=1))
    )
    await redis_store.create_instance(instance("fresh"))

    found = await redis_store.list_resumable_instances(T0, T0 - timedelta(minutes=10))

    assert {i.instance_id for i in found} == {"due", "fresh"}


@pytest.mark.asyncio
async def test_active_workflows_by_event_type(redis_store):
    workflow = WorkflowDefinition.build(
        "welcome",
        "acme",
        [TriggerNode("t", event_type="signup"), ActionNode("send", content_ref="tpl")],
        [Edge("t", "send")],
        active=True,
    )
    await redis_store.save_workflow(workflow)

    assert [w.workflow_id for w in await redis_store.list_active_workflows("signup")] == [
        "welcome"
    ]

    workflow.active = False
    await redis_store.save_workflow(workflow)
    assert await redis_store.list_active_workflows("signup") == []


@pytest.mark.asyncio
async def test_ledger_gate_and_summary(redis_store):
    first = await redis_store.record_attempt("run-1", "alice", T0)
    assert await redis_store.record_attempt("run-1", "alice", T0) is None

    await redis_store.complete_attempt(
        "run-1", "alice", first.attempt_number, AttemptOutcome.FAILED, now=T0, error="timeout"
    )
    second = await redis_store.record_attempt("run-1", "alice", T0)
    assert second.attempt_number == 2

    await redis_store.complete_attempt(
        "run-1", "alice", second.attempt_number, AttemptOutcome.SUCCEEDED, now=T0
    )
    summary = await redis_store.summarize("run-1")
    assert (summary.attempted, summary.succeeded, summary.failed) == (1, 1, 0)

    assert await redis_store.update_outcome_by_correlation_id(
        second.correlation_id, AttemptOutcome.FAILED, error="hard bounce"
    )
    assert not await redis_store.has_succeeded("run-1", "alice")
