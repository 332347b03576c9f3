"""
Tests for the event trigger matcher.

Covers:
- Trigger conditions over event payload and recipient attributes
- Frequency caps and duplicate deliveries
- Timing windows and offsets
- Suppressed recipients
"""

import asyncio
from datetime import time, timedelta

import pytest

from pycadence.errors import RecipientResolutionError
from pycadence.models import (
    ActionNode,
    Edge,
    FrequencyCap,
    InstanceStatus,
    TimingWindow,
    TriggerEvent,
    TriggerNode,
    WorkflowDefinition,
    parse_predicate,
)
from pycadence.storage import InMemoryCampaignStore
from pycadence.triggers import EventTriggerMatcher, MatchOutcome

from conftest import T0, make_recipient

IS_US = parse_predicate({"field": "country", "op": "eq", "value": "US"})


async def listen(store, workflow_id="welcome", event_type="signup", active=True, **trigger):
    """Store a trigger -> send workflow."""
    workflow = WorkflowDefinition.build(
        workflow_id,
        "acme",
        [
            TriggerNode("trigger", event_type=event_type, **trigger),
            ActionNode("send", content_ref="tpl-welcome"),
        ],
        [Edge("trigger", "send")],
        active=active,
    )
    await store.save_workflow(workflow)
    return workflow


def signup(recipient_id="alice", at=T0, event_id=None, **payload):
    return TriggerEvent(recipient_id, "signup", payload, occurred_at=at, event_id=event_id)


@pytest.fixture
def matcher(store) -> EventTriggerMatcher:
    return EventTriggerMatcher(store)


# =============================================================================
# TEST 1: Conditions
# =============================================================================


@pytest.mark.asyncio
async def test_condition_on_payload(store, matcher):
    await listen(store, condition=IS_US)

    (us,) = await matcher.submit(signup("alice", country="US"), now=T0)
    (ca,) = await matcher.submit(signup("bob", country="CA"), now=T0)

    assert us.outcome is MatchOutcome.CREATED
    assert ca.outcome is MatchOutcome.CONDITION_FAILED
    assert ca.instance_id is None

    instance = await store.get_instance(us.instance_id)
    assert instance.status is InstanceStatus.ACTIVE
    assert instance.cursor == "send"
    assert instance.claimed_by is None
    assert instance.context == {"event_type": "signup", "payload": {"country": "US"}}
    assert await store.list_instances(recipient_id="bob") == []


@pytest.mark.asyncio
async def test_condition_sees_recipient_attributes(store, directory):
    directory.add("list-all", make_recipient("alice", country="US"), make_recipient("bob"))
    await listen(store, condition=IS_US)
    matcher = EventTriggerMatcher(store, directory)

    (alice,) = await matcher.submit(signup("alice"), now=T0)
    (bob,) = await matcher.submit(signup("bob"), now=T0)

    assert alice.outcome is MatchOutcome.CREATED
    assert bob.outcome is MatchOutcome.CONDITION_FAILED


@pytest.mark.asyncio
async def test_only_active_listening_workflows_match(store, matcher):
    await listen(store, "welcome")
    await listen(store, "welcome-v2")
    await listen(store, "paused", active=False)
    await listen(store, "purchases", event_type="purchase")

    results = await matcher.submit(signup(), now=T0)

    assert sorted(r.workflow_id for r in results) == ["welcome", "welcome-v2"]
    assert await matcher.submit(TriggerEvent("alice", "refund"), now=T0) == []


# =============================================================================
# TEST 2: Frequency caps and duplicates
# =============================================================================


@pytest.mark.asyncio
async def test_frequency_cap(store, matcher):
    await listen(store, frequency_cap=FrequencyCap(max_count=2, period=timedelta(hours=24)))

    outcomes = []
    for hour in range(3):
        at = T0 + timedelta(hours=hour)
        (result,) = await matcher.submit(signup(at=at, event_id=f"evt-{hour}"), now=at)
        outcomes.append(result.outcome)

    assert outcomes == [MatchOutcome.CREATED, MatchOutcome.CREATED, MatchOutcome.CAPPED]

    next_day = T0 + timedelta(hours=25)
    (result,) = await matcher.submit(signup(at=next_day, event_id="evt-late"), now=next_day)
    assert result.outcome is MatchOutcome.CREATED


@pytest.mark.asyncio
async def test_cap_is_per_recipient(store, matcher):
    await listen(store)

    (alice,) = await matcher.submit(signup("alice", event_id="1"), now=T0)
    (bob,) = await matcher.submit(signup("bob", event_id="2"), now=T0)

    assert alice.outcome is bob.outcome is MatchOutcome.CREATED


@pytest.mark.asyncio
async def test_duplicate_event_id(store, matcher):
    await listen(store, frequency_cap=FrequencyCap(max_count=10))

    (first,) = await matcher.submit(signup(event_id="evt-1"), now=T0)
    (again,) = await matcher.submit(
        signup(at=T0 + timedelta(hours=1), event_id="evt-1"), now=T0 + timedelta(hours=1)
    )

    assert first.outcome is MatchOutcome.CREATED
    assert again.outcome is MatchOutcome.DUPLICATE


@pytest.mark.asyncio
async def test_events_without_id_dedupe_within_window(store, matcher):
    await listen(store, frequency_cap=FrequencyCap(max_count=10))

    (first,) = await matcher.submit(signup(at=T0), now=T0)
    (retry,) = await matcher.submit(signup(at=T0 + timedelta(minutes=1)), now=T0)
    (later,) = await matcher.submit(signup(at=T0 + timedelta(minutes=5)), now=T0)

    assert first.outcome is MatchOutcome.CREATED
    assert retry.outcome is MatchOutcome.DUPLICATE
    assert later.outcome is MatchOutcome.CREATED


@pytest.mark.asyncio
@pytest.mark.concurrency
async def test_concurrent_duplicate_deliveries_create_one_instance(store, matcher):
    await listen(store, frequency_cap=FrequencyCap(max_count=10))

    results = await asyncio.gather(
        *(matcher.submit(signup(event_id="evt-1"), now=T0) for _ in range(8))
    )

    outcomes = [result.outcome for (result,) in results]
    assert outcomes.count(MatchOutcome.CREATED) == 1
    assert outcomes.count(MatchOutcome.DUPLICATE) == 7
    assert len(await store.list_instances(workflow_id="welcome")) == 1


def test_dedupe_key_depends_on_workflow_and_event():
    matcher = EventTriggerMatcher(InMemoryCampaignStore())
    event = signup(event_id="evt-1")

    assert matcher.dedupe_key("a", event) == matcher.dedupe_key("a", signup(event_id="evt-1"))
    assert matcher.dedupe_key("a", event) != matcher.dedupe_key("b", event)
    assert matcher.dedupe_key("a", signup()) != matcher.dedupe_key("a", signup("bob"))


def test_dedupe_key_digest(bytes_only_xxhash):
    matcher = EventTriggerMatcher(InMemoryCampaignStore())
    bucket = int(T0.timestamp()) // 300

    assert matcher.dedupe_key("welcome", signup(event_id="evt-1")) == bytes_only_xxhash(
        b"welcome|evt|evt-1"
    )
    assert matcher.dedupe_key("welcome", signup()) == bytes_only_xxhash(
        f"welcome|alice|signup|{bucket}".encode("utf-8")
    )


@pytest.mark.asyncio
async def test_submit_hashes_bytes(store, matcher, bytes_only_xxhash):
    await listen(store)

    (result,) = await matcher.submit(signup())

    assert result.outcome is MatchOutcome.CREATED


def test_dedupe_window_must_be_positive():
    with pytest.raises(ValueError):
        EventTriggerMatcher(InMemoryCampaignStore()).with_dedupe_window(timedelta(0))


# =============================================================================
# TEST 3: Timing
# =============================================================================


@pytest.mark.asyncio
async def test_timing_window(store, matcher):
    business_hours = TimingWindow(start=time(9), end=time(17), active_days=(0, 1, 2, 3, 4))
    await listen(store, timing=business_hours, frequency_cap=FrequencyCap(max_count=10))

    saturday = T0 + timedelta(days=5)
    evening = T0 + timedelta(hours=10)
    morning = T0 + timedelta(hours=1)

    (weekend,) = await matcher.submit(signup(at=saturday, event_id="1"), now=saturday)
    (late,) = await matcher.submit(signup(at=evening, event_id="2"), now=evening)
    (inside,) = await matcher.submit(signup(at=morning, event_id="3"), now=morning)

    assert weekend.outcome is MatchOutcome.OUTSIDE_WINDOW
    assert late.outcome is MatchOutcome.OUTSIDE_WINDOW
    assert inside.outcome is MatchOutcome.CREATED


@pytest.mark.asyncio
async def test_offset_starts_instance_waiting(store, matcher):
    await listen(store, offset=timedelta(hours=1))
    occurred = T0 - timedelta(minutes=10)

    (result,) = await matcher.submit(signup(at=occurred), now=T0)

    instance = await store.get_instance(result.instance_id)
    assert instance.status is InstanceStatus.WAITING
    assert instance.resume_at == occurred + timedelta(hours=1)
    assert await store.list_resumable_instances(T0, T0 - timedelta(minutes=10)) == []


# =============================================================================
# TEST 4: Suppression
# =============================================================================


@pytest.mark.asyncio
@pytest.mark.parametrize("known", [True, False])
async def test_suppressed_recipient_never_enters(store, directory, known):
    if known:
        directory.add("list-all", make_recipient("alice", status="UNSUBSCRIBED"))
    await listen(store)
    matcher = EventTriggerMatcher(store, directory)

    (result,) = await matcher.submit(signup("alice"), now=T0)

    assert result.outcome is MatchOutcome.SUPPRESSED
    assert await store.list_instances() == []


@pytest.mark.asyncio
async def test_custom_exclude_statuses(store, directory):
    directory.add("list-all", make_recipient("alice", status="UNSUBSCRIBED"))
    await listen(store)
    matcher = EventTriggerMatcher(store, directory).with_exclude_statuses(("BOUNCED",))

    (result,) = await matcher.submit(signup("alice"), now=T0)

    assert result.outcome is MatchOutcome.CREATED


@pytest.mark.asyncio
async def test_directory_failure_is_a_resolution_error(store, directory):
    directory.fail_lookup = ConnectionError("directory down")
    await listen(store)
    matcher = EventTriggerMatcher(store, directory)

    with pytest.raises(RecipientResolutionError, match="directory down") as excinfo:
        await matcher.submit(signup("alice"), now=T0)

    assert isinstance(excinfo.value.__cause__, ConnectionError)
    assert excinfo.value.is_retryable()
    assert await store.list_instances() == []
