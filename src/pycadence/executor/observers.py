"""Run observers: surface run summaries to schedule owners.

An explicit registry object owned by a Clock, so registrations live and
die with the clock that produces the summaries. Callbacks may be plain
functions or coroutine functions. A failing observer is logged and never
affects the run or the other observers.
"""

from __future__ import annotations

import inspect
import itertools
import logging
from collections.abc import Awaitable, Callable

from pycadence.models import RunSummary, ScheduleDefinition

logger = logging.getLogger(__name__)

RunObserver = Callable[[ScheduleDefinition, RunSummary], Awaitable[None] | None]


class RunObserverRegistry:
    """Owner-scoped callbacks notified after each run.

    Example:
        ```python
        token = clock.observers.register("acme", lambda schedule, summary: print(summary))
        ...
        clock.observers.deregister(token)
        ```
    """

    def __init__(self):
        self._observers: dict[int, tuple[str, RunObserver]] = {}
        self._tokens = itertools.count(1)

    def register(self, owner: str, callback: RunObserver) -> int:
        """Register a callback for one owner's runs.

        Returns:
            Token for deregister()
        """
        token = next(self._tokens)
        self._observers[token] = (owner, callback)
        return token

    def deregister(self, token: int) -> bool:
        """Remove a registration. Returns False if the token is unknown."""
        return self._observers.pop(token, None) is not None

    def clear(self) -> None:
        self._observers.clear()

    def __len__(self) -> int:
        return len(self._observers)

    async def notify(self, schedule: ScheduleDefinition, summary: RunSummary) -> int:
        """Call every observer registered for schedule.owner.

        Returns:
            Number of observers that ran without raising
        """
        callbacks = [cb for owner, cb in list(self._observers.values()) if owner == schedule.owner]
        delivered = 0
        for callback in callbacks:
            try:
                result = callback(schedule, summary)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.warning(f"Run observer for {schedule.owner} failed on {summary.run_id}: {e}")
        return delivered


__all__ = ["RunObserver", "RunObserverRegistry"]
