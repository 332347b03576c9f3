"""Storage backends for schedules, workflows, instances and the ledger.

Provides multiple storage implementations behind a common interface:
    - CampaignStore: Abstract interface
    - SqliteCampaignStore: SQLite-backed storage
    - RedisCampaignStore: Redis-backed distributed storage
    - InMemoryCampaignStore: In-memory storage for testing

Design: Adapter Pattern + Dependency Inversion (SOLID)
    All storage implementations adapt to CampaignStore.
    Clients depend on abstraction, not concrete implementations,
    enabling easy swapping between storage backends.
"""

from pycadence.storage.base import (
    CampaignStore,
    PersistenceError,
    WorkNotificationSource,
)

# Lazy imports: the Redis backend needs redis-py, and nobody should pay for
# aiosqlite or redis just to import the interface.


def __getattr__(name: str):
    """Lazy import storage implementations."""
    if name == "InMemoryCampaignStore":
        from pycadence.storage.memory import InMemoryCampaignStore

        return InMemoryCampaignStore
    elif name == "RedisCampaignStore":
        from pycadence.storage.redis import RedisCampaignStore

        return RedisCampaignStore
    elif name == "SqliteCampaignStore":
        from pycadence.storage.sqlite import SqliteCampaignStore

        return SqliteCampaignStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "CampaignStore",
    "PersistenceError",
    "WorkNotificationSource",
    "SqliteCampaignStore",
    "RedisCampaignStore",
    "InMemoryCampaignStore",
]
