"""Engine configuration from the environment.

Variables (all optional):
    CADENCE_STORE_URL            memory:// | sqlite:///path/to.db | redis://host:port/db
    CADENCE_TICK_INTERVAL        seconds between clock ticks (default 60)
    CADENCE_LEASE_TIMEOUT        seconds a claim stays valid (default 600)
    CADENCE_MAX_CONCURRENT_RUNS  runs/instances executed at once (default 10)
    CADENCE_DEDUPE_WINDOW        seconds per event dedupe bucket (default 300)
    CADENCE_WORKER_ID            identity written to claims (default random)

Usage:
    config = EngineConfig.from_env()
    store = await open_store(config.store_url)
    clock = config.clock(store, Dispatcher(store, directory, renderer, transport))
    handle = await clock.start()
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from urllib.parse import urlparse

from pycadence.dispatch import Dispatcher, RecipientDirectory
from pycadence.errors import ValidationError
from pycadence.executor.clock import Clock
from pycadence.storage.base import CampaignStore
from pycadence.triggers import EventTriggerMatcher

ENV_PREFIX = "CADENCE_"


@dataclass(frozen=True)
class EngineConfig:
    store_url: str = "memory://"
    tick_interval: float = 60.0
    lease_timeout: timedelta = timedelta(minutes=10)
    max_concurrent_runs: int = 10
    dedupe_window: timedelta = timedelta(minutes=5)
    worker_id: str | None = field(default=None)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "EngineConfig":
        """
        Read CADENCE_* variables, falling back to defaults.

        Raises:
            ValidationError: If a numeric variable does not parse
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        def number(name: str, default: float) -> float:
            raw = env.get(ENV_PREFIX + name)
            if raw is None or raw == "":
                return default
            try:
                return float(raw)
            except ValueError as e:
                raise ValidationError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from e

        return cls(
            store_url=env.get(ENV_PREFIX + "STORE_URL") or defaults.store_url,
            tick_interval=number("TICK_INTERVAL", defaults.tick_interval),
            lease_timeout=timedelta(
                seconds=number("LEASE_TIMEOUT", defaults.lease_timeout.total_seconds())
            ),
            max_concurrent_runs=int(number("MAX_CONCURRENT_RUNS", defaults.max_concurrent_runs)),
            dedupe_window=timedelta(
                seconds=number("DEDUPE_WINDOW", defaults.dedupe_window.total_seconds())
            ),
            worker_id=env.get(ENV_PREFIX + "WORKER_ID") or None,
        )

    def clock(self, store: CampaignStore, dispatcher: Dispatcher) -> Clock:
        """Clock configured from this config."""
        return (
            Clock(store, dispatcher, worker_id=self.worker_id)
            .with_interval(self.tick_interval)
            .with_lease_timeout(self.lease_timeout)
            .with_max_concurrent_runs(self.max_concurrent_runs)
        )

    def matcher(
        self, store: CampaignStore, directory: RecipientDirectory | None = None
    ) -> EventTriggerMatcher:
        """Trigger matcher configured from this config."""
        return EventTriggerMatcher(store, directory).with_dedupe_window(self.dedupe_window)


async def open_store(url: str) -> CampaignStore:
    """
    Create and connect a store from a URL.

    Supported schemes:
        memory://              InMemoryCampaignStore
        sqlite:///path/to.db   SqliteCampaignStore (sqlite:///:memory: for in-memory)
        redis://host:port/db   RedisCampaignStore (also rediss://)

    Raises:
        ValidationError: On an unsupported scheme
    """
    scheme = urlparse(url).scheme

    if scheme == "memory":
        from pycadence.storage.memory import InMemoryCampaignStore

        return InMemoryCampaignStore()

    if scheme == "sqlite":
        from pycadence.storage.sqlite import SqliteCampaignStore

        path = url[len("sqlite:///") :] if url.startswith("sqlite:///") else ""
        if not path:
            raise ValidationError(f"sqlite URL needs a path: {url!r}")
        store = SqliteCampaignStore(path)
        await store.connect()
        return store

    if scheme in ("redis", "rediss"):
        from pycadence.storage.redis import RedisCampaignStore

        store = RedisCampaignStore(url)
        await store.connect()
        return store

    raise ValidationError(f"unsupported store URL: {url!r}")


__all__ = ["EngineConfig", "open_store"]
