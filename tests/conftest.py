"""
Pytest configuration and fixtures for pycadence tests.

Provides reusable fixtures for storage backends, fake recipient
directories, renderers and transports, and schedule factories.
"""

import asyncio
import shutil
import tempfile
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from pathlib import Path

import pytest
import xxhash
from hypothesis import strategies as st

from pycadence.dispatch import Dispatcher, Recipient, RenderedContent, SendResult
from pycadence.errors import RenderError, TransportError
from pycadence.models import ScheduleDefinition, ScheduleSettings, ScheduleStatus, ScheduleType
from pycadence.storage import InMemoryCampaignStore, SqliteCampaignStore

# Monday 2025-01-06 09:00 UTC
T0 = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)


def pytest_sessionfinish(session, exitstatus):
    """Force cleanup after all tests complete to prevent CI hanging."""
    import os

    if os.getenv("CI") or os.getenv("GITHUB_ACTIONS"):
        os._exit(exitstatus)


# Storage fixtures


@pytest.fixture
async def in_memory_store() -> AsyncGenerator[InMemoryCampaignStore, None]:
    """Async in-memory store fixture with automatic cleanup."""
    store = InMemoryCampaignStore()
    yield store
    await store.reset()


@pytest.fixture
async def sqlite_memory_store() -> AsyncGenerator[SqliteCampaignStore, None]:
    """Async SQLite in-memory store fixture with automatic cleanup."""
    store = SqliteCampaignStore(":memory:")
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    db_path = tmpdir / "campaigns.db"
    yield db_path
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
async def sqlite_file_store(temp_db_path: Path) -> AsyncGenerator[SqliteCampaignStore, None]:
    """Async SQLite file-based store fixture with automatic cleanup."""
    store = SqliteCampaignStore(str(temp_db_path))
    await store.connect()
    yield store
    await store.close()


@pytest.fixture(params=["memory", "sqlite"])
async def store(request):
    """Every backend that runs without external services."""
    if request.param == "memory":
        backend = InMemoryCampaignStore()
        yield backend
        await backend.reset()
    else:
        backend = SqliteCampaignStore(":memory:")
        await backend.connect()
        yield backend
        await backend.close()


@pytest.fixture
def bytes_only_xxhash(monkeypatch):
    """xxh64_hexdigest that refuses str input, as current xxhash releases do."""
    real = xxhash.xxh64_hexdigest

    def hexdigest(data, *args, **kwargs):
        if isinstance(data, str):
            raise TypeError("Strings must be encoded before hashing")
        return real(data, *args, **kwargs)

    monkeypatch.setattr(xxhash, "xxh64_hexdigest", hexdigest)
    return real


# Fakes for the external collaborators


def make_recipient(recipient_id: str, **attributes) -> Recipient:
    return Recipient(
        recipient_id=recipient_id,
        address=f"{recipient_id}@example.com",
        attributes=attributes,
    )


class FakeDirectory:
    """Recipient directory backed by a dict of lists.

    A recipient whose "status" attribute is excluded is filtered out of
    resolve() and returned as None by lookup().
    """

    def __init__(self, lists: dict[str, list[Recipient]] | None = None):
        self.lists: dict[str, list[Recipient]] = lists or {}
        self.extra: dict[str, Recipient] = {}
        self.fail_resolve: Exception | None = None
        self.fail_lookup: Exception | None = None
        self.resolve_calls = 0

    def add(self, list_ref: str, *recipients: Recipient) -> None:
        self.lists.setdefault(list_ref, []).extend(recipients)

    def set_status(self, recipient_id: str, status: str) -> None:
        for members in self.lists.values():
            for index, recipient in enumerate(members):
                if recipient.recipient_id == recipient_id:
                    attributes = {**recipient.attributes, "status": status}
                    members[index] = Recipient(recipient_id, recipient.address, attributes)

    def _find(self, recipient_id: str) -> Recipient | None:
        if recipient_id in self.extra:
            return self.extra[recipient_id]
        for members in self.lists.values():
            for recipient in members:
                if recipient.recipient_id == recipient_id:
                    return recipient
        return None

    async def resolve(self, list_ref, exclude_statuses):
        self.resolve_calls += 1
        if self.fail_resolve is not None:
            raise self.fail_resolve
        return [
            recipient
            for recipient in self.lists.get(list_ref, [])
            if recipient.attributes.get("status") not in exclude_statuses
        ]

    async def lookup(self, recipient_id, exclude_statuses):
        if self.fail_lookup is not None:
            raise self.fail_lookup
        recipient = self._find(recipient_id)
        if recipient is None or recipient.attributes.get("status") in exclude_statuses:
            return None
        return recipient


class FakeRenderer:
    """Renders "<content_ref> for <name>"; fails for content refs in fail_refs."""

    def __init__(self):
        self.fail_refs: set[str] = set()
        self.calls: list[tuple[str, dict]] = []

    async def render(self, content_ref, attributes):
        self.calls.append((content_ref, dict(attributes)))
        if content_ref in self.fail_refs:
            raise RenderError(f"template {content_ref} is broken")
        name = attributes.get("name", "there")
        return RenderedContent(
            subject=f"{content_ref} for {name}",
            html_body=f"<p>Hello {name}</p>",
            text_body=f"Hello {name}",
        )


class FakeTransport:
    """Records every send.

    Addresses in `failing` raise (retryable TransportError by default),
    addresses in `rejecting` come back not accepted.
    """

    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []
        self.failing: dict[str, Exception] = {}
        self.rejecting: set[str] = set()
        self.in_flight = 0
        self.max_in_flight = 0
        self.delay = 0.0
        self.on_send = None
        """Optional coroutine function called with each address before sending."""
        self.on_accept = None
        """Optional coroutine function called with the correlation id of each
        accepted message before send() returns, like an eager provider webhook."""

    def fail(self, recipient_id: str, error: Exception | None = None) -> None:
        self.failing[f"{recipient_id}@example.com"] = error or TransportError("connection reset")

    def recover(self, recipient_id: str) -> None:
        self.failing.pop(f"{recipient_id}@example.com", None)

    @property
    def addresses(self) -> list[str]:
        return [address for address, _, _ in self.sent]

    async def send(self, address, subject, html_body, text_body, correlation_id):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.on_send is not None:
                await self.on_send(address)
            if self.delay:
                await asyncio.sleep(self.delay)
            if address in self.failing:
                raise self.failing[address]
            if address in self.rejecting:
                return SendResult(accepted=False, reason="mailbox unavailable")
            self.sent.append((address, subject, correlation_id))
            if self.on_accept is not None:
                await self.on_accept(correlation_id)
            return SendResult(accepted=True, provider_message_id=f"msg-{len(self.sent)}")
        finally:
            self.in_flight -= 1


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def dispatcher(store, directory, renderer, transport) -> Dispatcher:
    return Dispatcher(store, directory, renderer, transport)


# Schedule factories


def make_schedule(
    schedule_id: str = "sched-1",
    schedule_type: ScheduleType = ScheduleType.IMMEDIATE,
    **overrides,
) -> ScheduleDefinition:
    """A valid DRAFT schedule; pass status/next_execution_at together."""
    fields = {
        "owner": "acme",
        "content_ref": "tpl-news",
        "list_ref": "list-all",
        "created_at": T0,
        "updated_at": T0,
    }
    fields.update(overrides)
    return ScheduleDefinition(schedule_id=schedule_id, schedule_type=schedule_type, **fields)


def scheduled(schedule: ScheduleDefinition, due: datetime = T0) -> ScheduleDefinition:
    """Copy of a DRAFT schedule moved to SCHEDULED at `due`."""
    return schedule.transitioned(ScheduleStatus.SCHEDULED, now=T0, next_execution_at=due)


def small_batches(**overrides) -> ScheduleSettings:
    return ScheduleSettings(**{"batch_size": 2, "concurrency_limit": 2, **overrides})


# Hypothesis strategies


recipient_id_strategy = st.text(
    min_size=1, max_size=12, alphabet=st.characters(whitelist_categories=("Lu", "Ll", "Nd"))
)


@st.composite
def comparison_strategy(draw):
    """Random comparison predicate dicts over a small field vocabulary."""
    field = draw(st.sampled_from(["country", "plan", "age", "event.total", "recipient.tier"]))
    op = draw(st.sampled_from(["eq", "ne", "gt", "gte", "lt", "lte", "in", "not_in",
                               "contains", "not_contains", "exists", "not_exists"]))
    scalar = st.one_of(
        st.integers(min_value=-100, max_value=100),
        st.text(max_size=5),
        st.booleans(),
        st.none(),
    )
    predicate = {"field": field, "op": op}
    if op in ("in", "not_in"):
        predicate["value"] = draw(st.lists(scalar, max_size=4))
    elif op not in ("exists", "not_exists"):
        predicate["value"] = draw(scalar)
    return predicate


@st.composite
def scope_values_strategy(draw):
    """Random payload/attribute dicts for predicate evaluation."""
    value = st.one_of(
        st.integers(min_value=-100, max_value=100),
        st.text(max_size=5),
        st.lists(st.text(max_size=3), max_size=3),
        st.none(),
    )
    keys = st.sampled_from(["country", "plan", "age", "total", "tier"])
    return draw(st.dictionaries(keys, value, max_size=5))


pytest.comparison_strategy = comparison_strategy
pytest.scope_values_strategy = scope_values_strategy
