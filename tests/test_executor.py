"""
Tests for the workflow graph executor.

Covers:
- Condition branching on event payload and recipient attributes
- Durable delays (no in-memory timers)
- Action retries with backoff, permanent failures, suppression
- Compare-and-set guard against stale copies
- Compiled drip sequences end to end
"""

from dataclasses import replace
from datetime import timedelta

import pytest

from pycadence.errors import ClaimConflictError, TransportError
from pycadence.executor import WorkflowExecutor, action_run_id, compile_drip
from pycadence.models import (
    ActionNode,
    AttemptOutcome,
    ConditionNode,
    DelayNode,
    DripStep,
    Edge,
    InstanceStatus,
    ScheduleType,
    TriggerNode,
    WorkflowDefinition,
    WorkflowInstance,
    parse_predicate,
)

from conftest import T0, make_recipient, make_schedule

IS_US = parse_predicate({"field": "country", "op": "eq", "value": "US"})


def welcome_workflow(with_false_branch=True) -> WorkflowDefinition:
    nodes = [
        TriggerNode("start", event_type="signup"),
        ConditionNode("is_us", IS_US),
        ActionNode("send_us", content_ref="tpl-us"),
    ]
    edges = [Edge("start", "is_us"), Edge("is_us", "send_us", branch="true")]
    if with_false_branch:
        nodes.append(ActionNode("send_intl", content_ref="tpl-intl"))
        edges.append(Edge("is_us", "send_intl", branch="false"))
    return WorkflowDefinition.build("welcome", "acme", nodes, edges, active=True)


def linear_workflow(*nodes, workflow_id="linear") -> WorkflowDefinition:
    chain = [TriggerNode("start", event_type="signup"), *nodes]
    edges = [Edge(a.node_id, b.node_id) for a, b in zip(chain, chain[1:])]
    return WorkflowDefinition.build(workflow_id, "acme", chain, edges, active=True)


async def start_instance(store, workflow, recipient_id="alice", payload=None, now=T0):
    instance = WorkflowInstance(
        instance_id=f"{workflow.workflow_id}-{recipient_id}",
        workflow_id=workflow.workflow_id,
        recipient_id=recipient_id,
        cursor=workflow.entry_node_id(),
        context={"event_type": "signup", "payload": payload or {}},
        claimed_by="clock-test",
        claimed_at=now,
        created_at=now,
        updated_at=now,
    )
    await store.save_workflow(workflow)
    await store.create_instance(instance)
    return await store.get_instance(instance.instance_id)


async def reclaim(store, instance_id, now):
    """What a clock does when an instance's resume_at has passed."""
    current = await store.get_instance(instance_id)
    claimed = replace(
        current,
        status=InstanceStatus.ACTIVE,
        resume_at=None,
        claimed_by="clock-test",
        claimed_at=now,
    )
    assert await store.compare_and_set_instance(claimed, current.revision)
    return claimed


@pytest.fixture
def executor(store, dispatcher) -> WorkflowExecutor:
    return WorkflowExecutor(store, dispatcher)


# =============================================================================
# TEST 1: Conditions
# =============================================================================


@pytest.mark.asyncio
async def test_condition_on_recipient_attribute(store, executor, directory, transport):
    directory.add("list-all", make_recipient("alice", country="US"))
    instance = await start_instance(store, welcome_workflow())

    final = await executor.drive(instance, T0)

    assert final.status is InstanceStatus.COMPLETED
    assert transport.sent[0][1].startswith("tpl-us")
    assert await store.has_succeeded(action_run_id(final, "send_us"), "alice")


@pytest.mark.asyncio
async def test_condition_prefers_event_payload(store, executor, directory, transport):
    directory.add("list-all", make_recipient("alice", country="US"))
    instance = await start_instance(store, welcome_workflow(), payload={"country": "CA"})

    final = await executor.drive(instance, T0)

    assert final.status is InstanceStatus.COMPLETED
    assert transport.sent[0][1].startswith("tpl-intl")


@pytest.mark.asyncio
async def test_missing_branch_aborts(store, executor, directory, transport):
    directory.add("list-all", make_recipient("alice", country="CA"))
    instance = await start_instance(store, welcome_workflow(with_false_branch=False))

    final = await executor.drive(instance, T0)

    assert final.status is InstanceStatus.ABORTED
    assert "no 'false' edge" in final.last_error
    assert transport.sent == []
    stored = await store.get_instance(instance.instance_id)
    assert stored.status is InstanceStatus.ABORTED
    assert stored.claimed_by is None


# =============================================================================
# TEST 2: Delays
# =============================================================================


@pytest.mark.asyncio
async def test_delay_parks_instance_durably(store, dispatcher, directory, transport):
    directory.add("list-all", make_recipient("alice"))
    workflow = linear_workflow(
        DelayNode("wait", delay=timedelta(days=2)), ActionNode("send", content_ref="tpl-followup")
    )
    instance = await start_instance(store, workflow)

    parked = await WorkflowExecutor(store, dispatcher).drive(instance, T0)

    assert parked.status is InstanceStatus.WAITING
    assert parked.resume_at == T0 + timedelta(days=2)
    assert parked.waiting_on == "wait"
    assert parked.claimed_by is None
    assert transport.sent == []

    # Nothing is resumable before the delay has elapsed
    early = T0 + timedelta(days=1)
    assert await store.list_resumable_instances(early, early - timedelta(minutes=10)) == []

    # A different executor (another process) picks it up from the store alone
    later = T0 + timedelta(days=2)
    (due,) = await store.list_resumable_instances(later, later - timedelta(minutes=10))
    claimed = await reclaim(store, due.instance_id, later)
    final = await WorkflowExecutor(store, dispatcher).drive(claimed, later)

    assert final.status is InstanceStatus.COMPLETED
    assert len(transport.sent) == 1


# =============================================================================
# TEST 3: Action failures
# =============================================================================


@pytest.mark.asyncio
async def test_retryable_failure_backs_off_then_gives_up(store, executor, directory, transport):
    directory.add("list-all", make_recipient("alice"))
    transport.fail("alice")
    workflow = linear_workflow(ActionNode("send", content_ref="tpl", max_retries=2))
    instance = await start_instance(store, workflow)

    first = await executor.drive(instance, T0)
    assert first.status is InstanceStatus.WAITING
    assert first.attempts == 1
    assert first.resume_at == T0 + timedelta(minutes=1)
    assert "connection reset" in first.last_error

    now = first.resume_at
    second = await executor.drive(await reclaim(store, instance.instance_id, now), now)
    assert second.status is InstanceStatus.WAITING
    assert second.attempts == 2
    assert second.resume_at == now + timedelta(minutes=2)

    now = second.resume_at
    final = await executor.drive(await reclaim(store, instance.instance_id, now), now)
    assert final.status is InstanceStatus.COMPLETED
    assert "connection reset" in final.last_error

    attempts = await store.get_attempts(action_run_id(instance, "send"), "alice")
    assert [a.outcome for a in attempts] == [AttemptOutcome.FAILED] * 3


@pytest.mark.asyncio
async def test_retry_succeeds_after_recovery(store, executor, directory, transport):
    directory.add("list-all", make_recipient("alice"))
    transport.fail("alice")
    workflow = linear_workflow(
        ActionNode("send", content_ref="tpl"), ActionNode("thanks", content_ref="tpl-thanks")
    )
    instance = await start_instance(store, workflow)
    parked = await executor.drive(instance, T0)

    transport.recover("alice")
    now = parked.resume_at
    final = await executor.drive(await reclaim(store, instance.instance_id, now), now)

    assert final.status is InstanceStatus.COMPLETED
    assert final.attempts == 0
    assert len(transport.sent) == 2


@pytest.mark.asyncio
async def test_permanent_failure_moves_on(store, executor, directory, transport):
    directory.add("list-all", make_recipient("alice"))
    workflow = linear_workflow(
        ActionNode("send", content_ref="tpl-broken"), ActionNode("next", content_ref="tpl-next")
    )
    instance = await start_instance(store, workflow)
    transport.fail("alice", TransportError("address rejected", is_retryable=False))

    first = await executor.advance(instance, T0)

    assert first.status is InstanceStatus.ACTIVE
    assert first.cursor == "next"
    assert "address rejected" in first.last_error


@pytest.mark.asyncio
async def test_suppressed_recipient_aborts(store, executor, directory, transport):
    directory.add("list-all", make_recipient("alice"))
    workflow = linear_workflow(
        DelayNode("wait", delay=timedelta(hours=1)), ActionNode("send", content_ref="tpl")
    )
    instance = await start_instance(store, workflow)
    await executor.drive(instance, T0)

    # Unsubscribed while waiting
    directory.set_status("alice", "UNSUBSCRIBED")
    now = T0 + timedelta(hours=1)
    final = await executor.drive(await reclaim(store, instance.instance_id, now), now)

    assert final.status is InstanceStatus.ABORTED
    assert final.last_error == "recipient suppressed"
    assert transport.sent == []


@pytest.mark.asyncio
async def test_missing_workflow_aborts(store, executor):
    orphan = WorkflowInstance(
        instance_id="orphan",
        workflow_id="deleted",
        recipient_id="alice",
        cursor="send",
        claimed_by="clock-test",
        claimed_at=T0,
        created_at=T0,
        updated_at=T0,
    )
    await store.create_instance(orphan)

    final = await executor.drive(await store.get_instance("orphan"), T0)

    assert final.status is InstanceStatus.ABORTED
    assert final.last_error == "workflow not found"


# =============================================================================
# TEST 4: Reentrancy guard
# =============================================================================


@pytest.mark.asyncio
@pytest.mark.concurrency
async def test_stale_copy_cannot_overwrite_progress(store, executor):
    workflow = linear_workflow(
        DelayNode("wait", delay=timedelta(hours=1)), ActionNode("send", content_ref="tpl")
    )
    instance = await start_instance(store, workflow)
    stale = await store.get_instance(instance.instance_id)

    await executor.advance(instance, T0)

    with pytest.raises(ClaimConflictError):
        await executor.advance(stale, T0 + timedelta(minutes=5))

    # drive() treats the conflict as "someone else owns it"
    result = await executor.drive(stale, T0 + timedelta(minutes=5))
    assert result is stale
    stored = await store.get_instance(instance.instance_id)
    assert stored.resume_at == T0 + timedelta(hours=1)


# =============================================================================
# TEST 5: Compiled drip
# =============================================================================


@pytest.mark.asyncio
async def test_compiled_drip_skips_false_step(store, executor, directory, transport):
    directory.add("list-all", make_recipient("alice", country="CA"))
    schedule = make_schedule(
        "drip-1",
        ScheduleType.DRIP,
        content_ref=None,
        drip_steps=[
            DripStep(delay=timedelta(0), content_ref="tpl-welcome"),
            DripStep(delay=timedelta(days=2), content_ref="tpl-tips", condition=IS_US),
            DripStep(delay=timedelta(days=5), content_ref="tpl-offer"),
        ],
    )
    workflow = compile_drip(schedule)
    instance = await start_instance(store, workflow)

    first = await executor.drive(instance, T0)
    assert first.cursor == "step2_wait"
    assert first.resume_at == T0 + timedelta(days=2)

    now = first.resume_at
    second = await executor.drive(await reclaim(store, instance.instance_id, now), now)
    assert second.cursor == "step3_wait"
    assert second.resume_at == now + timedelta(days=5)

    now = second.resume_at
    final = await executor.drive(await reclaim(store, instance.instance_id, now), now)

    assert final.status is InstanceStatus.COMPLETED
    subjects = [subject for _, subject, _ in transport.sent]
    assert subjects == ["tpl-welcome for there", "tpl-offer for there"]


@pytest.mark.asyncio
async def test_compiled_drip_false_last_step_completes(store, executor, directory, transport):
    directory.add("list-all", make_recipient("alice", country="CA"))
    schedule = make_schedule(
        "drip-1",
        ScheduleType.DRIP,
        content_ref=None,
        drip_steps=[
            DripStep(delay=timedelta(0), content_ref="tpl-welcome"),
            DripStep(delay=timedelta(0), content_ref="tpl-us-only", condition=IS_US),
        ],
    )
    instance = await start_instance(store, compile_drip(schedule))

    final = await executor.drive(instance, T0)

    assert final.status is InstanceStatus.COMPLETED
    assert final.last_error is None
    assert [subject for _, subject, _ in transport.sent] == ["tpl-welcome for there"]
