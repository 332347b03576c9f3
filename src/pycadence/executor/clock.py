"""Scheduler clock: claims due work and hands it to the executors.

Each tick:
1. lists SCHEDULED schedules whose next_execution_at has passed, and
   workflow instances that are WAITING past resume_at or ACTIVE without
   a live owner
2. claims each candidate with a compare-and-set (RUNNING for schedules,
   ACTIVE + claimed_by for instances); a lost race is skipped silently
3. runs every claimed schedule and advances every claimed instance by
   one node, concurrently, bounded by max_concurrent_runs

Many clocks may share one store: the compare-and-set claim guarantees
each piece of work has a single owner.

Features:
- Event-driven wakeups (WorkNotificationSource) with interval fallback
- Stale-claim recovery for schedules owned by crashed clocks
- Run observers scoped to the clock's lifetime
- Graceful shutdown
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

from uuid_extensions import uuid7

from pycadence.dispatch import Dispatcher
from pycadence.errors import ClaimConflictError
from pycadence.executor.graph import WorkflowExecutor
from pycadence.executor.observers import RunObserverRegistry
from pycadence.executor.runs import execute_run, run_id_for
from pycadence.models import (
    InstanceStatus,
    RetryPolicy,
    RunSummary,
    ScheduleDefinition,
    ScheduleStatus,
    WorkflowInstance,
)
from pycadence.storage import WorkNotificationSource
from pycadence.storage.base import CampaignStore

logger = logging.getLogger(__name__)

MAINTENANCE_INTERVAL = 60.0


@dataclass
class TickReport:
    """What one tick did."""

    schedules_claimed: int = 0
    instances_claimed: int = 0
    conflicts: int = 0
    """Candidates another clock claimed first."""
    errors: int = 0
    """Runs or instances that raised (logged, left for recovery)."""
    summaries: list[RunSummary] = field(default_factory=list)


class Clock:
    """Polls the store for due work.

    Design Patterns:
    - Template Method: _run() defines the loop skeleton, tick() the work
    - Builder: with_interval(), with_lease_timeout() for configuration

    Usage:
        clock = Clock(store, dispatcher) \\
            .with_interval(30) \\
            .with_max_concurrent_runs(4)

        handle = await clock.start()
        ...
        await handle.shutdown()
    """

    def __init__(
        self,
        store: CampaignStore,
        dispatcher: Dispatcher,
        executor: WorkflowExecutor | None = None,
        worker_id: str | None = None,
    ):
        """Initialize the clock.

        Args:
            store: Campaign store shared by every clock
            dispatcher: Dispatch fan-out for schedule runs
            executor: Workflow executor (default: one built on the dispatcher)
            worker_id: Identity written to claims (default: random)
        """
        self._store = store
        self._dispatcher = dispatcher
        self._executor = executor or WorkflowExecutor(store, dispatcher)
        self._worker_id = worker_id or f"clock-{uuid7()}"

        self._interval = 60.0
        self._lease_timeout = timedelta(minutes=10)
        self._max_concurrent_runs = 10
        self._batch_limit = 100
        self._retry_policy = RetryPolicy.RUN_LEVEL
        self._instance_retention: timedelta | None = None

        self.observers = RunObserverRegistry()

        self._shutdown_event = asyncio.Event()
        self._running = False
        self._tick_task: asyncio.Task | None = None

        # Track background tasks to prevent garbage collection
        self._background_tasks: set[asyncio.Task] = set()

        if isinstance(store, WorkNotificationSource):
            self._work_notify = store.work_notify()
            logger.debug(f"Clock {self._worker_id}: Event-driven work notifications enabled")
        else:
            self._work_notify = None
            logger.debug(f"Clock {self._worker_id}: Polling only (no notifications)")

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def with_interval(self, seconds: float) -> "Clock":
        """Seconds between ticks (default 60).

        Returns:
            self for method chaining
        """
        if seconds <= 0:
            raise ValueError("interval must be positive")
        self._interval = seconds
        return self

    def with_lease_timeout(self, timeout: timedelta) -> "Clock":
        """How long a claim stays valid before another clock may take over.

        Must comfortably exceed the longest run.

        Returns:
            self for method chaining
        """
        self._lease_timeout = timeout
        return self

    def with_max_concurrent_runs(self, limit: int) -> "Clock":
        """Bound on schedule runs and instance steps executing at once.

        Returns:
            self for method chaining
        """
        if limit < 1:
            raise ValueError("max_concurrent_runs must be >= 1")
        self._max_concurrent_runs = limit
        return self

    def with_batch_limit(self, limit: int) -> "Clock":
        """Maximum schedules (and instances) claimed per tick."""
        self._batch_limit = limit
        return self

    def with_retry_policy(self, policy: RetryPolicy) -> "Clock":
        """Backoff between run-level retries (attempt count comes from each schedule)."""
        self._retry_policy = policy
        return self

    def with_instance_retention(self, retention: timedelta) -> "Clock":
        """Purge finished workflow instances older than `retention` during maintenance."""
        self._instance_retention = retention
        return self

    # ========================================================================
    # Tick
    # ========================================================================

    async def tick(self, now: datetime | None = None) -> TickReport:
        """Claim and execute everything that is due.

        Args:
            now: Current time (default: wall clock)

        Returns:
            TickReport for this tick
        """
        now = now or datetime.now(UTC)
        report = TickReport()

        due = await self._store.list_due_schedules(now, limit=self._batch_limit)
        resumable = await self._store.list_resumable_instances(
            now, now - self._lease_timeout, limit=self._batch_limit
        )

        semaphore = asyncio.Semaphore(self._max_concurrent_runs)
        jobs = []

        for schedule in due:
            try:
                claimed = await self.claim_schedule(schedule, now)
            except ClaimConflictError:
                logger.debug(f"Schedule {schedule.schedule_id} already claimed")
                report.conflicts += 1
                continue
            report.schedules_claimed += 1
            jobs.append(self._run_schedule(semaphore, claimed, now, report))

        for instance in resumable:
            try:
                claimed = await self.claim_instance(instance, now)
            except ClaimConflictError:
                logger.debug(f"Instance {instance.instance_id} already claimed")
                report.conflicts += 1
                continue
            report.instances_claimed += 1
            jobs.append(self._drive_instance(semaphore, claimed, now))

        results = await asyncio.gather(*jobs, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                report.errors += 1
                logger.error(f"Clock {self._worker_id}: job failed: {result}")

        if report.schedules_claimed or report.instances_claimed:
            logger.info(
                f"Clock {self._worker_id} tick: {report.schedules_claimed} runs, "
                f"{report.instances_claimed} instances, {report.conflicts} conflicts"
            )
        return report

    async def claim_schedule(
        self, schedule: ScheduleDefinition, now: datetime
    ) -> ScheduleDefinition:
        """Move a due schedule to RUNNING, owned by this clock.

        Raises:
            ClaimConflictError: If the stored schedule changed since it was listed
        """
        if schedule.status is not ScheduleStatus.SCHEDULED:
            raise ClaimConflictError(f"schedule {schedule.schedule_id} is {schedule.status}")

        due = schedule.next_execution_at
        claimed = schedule.transitioned(
            ScheduleStatus.RUNNING,
            now=now,
            claimed_by=self._worker_id,
            claimed_at=now,
            current_run_id=schedule.current_run_id or run_id_for(schedule, due),
            run_due_at=schedule.run_due_at or due,
        )
        if not await self._store.compare_and_set_schedule(claimed, schedule.revision):
            raise ClaimConflictError(f"schedule {schedule.schedule_id} claimed elsewhere")

        logger.debug(f"Clock {self._worker_id} claimed run {claimed.current_run_id}")
        return claimed

    async def claim_instance(self, instance: WorkflowInstance, now: datetime) -> WorkflowInstance:
        """Take ownership of a resumable instance and make it ACTIVE.

        Raises:
            ClaimConflictError: If the stored instance changed since it was listed
        """
        if instance.status.is_terminal:
            raise ClaimConflictError(f"instance {instance.instance_id} is {instance.status}")

        claimed = replace(
            instance,
            status=InstanceStatus.ACTIVE,
            resume_at=None,
            claimed_by=self._worker_id,
            claimed_at=now,
            updated_at=now,
        )
        if not await self._store.compare_and_set_instance(claimed, instance.revision):
            raise ClaimConflictError(f"instance {instance.instance_id} claimed elsewhere")
        return claimed

    async def _run_schedule(
        self,
        semaphore: asyncio.Semaphore,
        schedule: ScheduleDefinition,
        now: datetime,
        report: TickReport,
    ) -> None:
        async with semaphore:
            summary = await execute_run(
                self._store, self._dispatcher, schedule, now, self._retry_policy
            )
        if summary is not None:
            report.summaries.append(summary)
            await self.observers.notify(schedule, summary)

    async def _drive_instance(
        self, semaphore: asyncio.Semaphore, instance: WorkflowInstance, now: datetime
    ) -> None:
        async with semaphore:
            try:
                # One node per claim; a moved-on instance is released ACTIVE
                await self._executor.advance(instance, now)
            except ClaimConflictError:
                logger.debug(f"Clock {self._worker_id}: lost instance {instance.instance_id}")

    # ========================================================================
    # Maintenance
    # ========================================================================

    async def recover_stale(self, now: datetime | None = None) -> int:
        """Release RUNNING schedules whose claim outlived the lease.

        Stale ACTIVE instances need no separate pass: tick() lists them as
        resumable once their claim is older than the lease.

        Returns:
            Number of schedules recovered
        """
        now = now or datetime.now(UTC)
        recovered = await self._store.recover_stale_schedules(now - self._lease_timeout, now)
        if self._instance_retention is not None:
            purged = await self._store.purge_finished_instances(now - self._instance_retention)
            if purged:
                logger.info(f"Clock {self._worker_id} purged {purged} finished instances")
        return recovered

    # ========================================================================
    # Loop
    # ========================================================================

    async def start(self) -> "ClockHandle":
        """Start the clock loop.

        Returns ClockHandle immediately, letting caller decide
        whether to await or run concurrently.
        """
        self._running = True
        self._shutdown_event.clear()
        task = asyncio.create_task(self._run())
        return ClockHandle(self, task)

    def _spawn_tick(self) -> None:
        if self._tick_task is not None and not self._tick_task.done():
            logger.debug(f"Clock {self._worker_id}: previous tick still running")
            return
        task = asyncio.create_task(self.tick())
        self._tick_task = task
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        task.add_done_callback(self._log_tick_failure)

    def _log_tick_failure(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Clock {self._worker_id} tick failed: {task.exception()}")

    async def _run(self) -> None:
        """Main loop using asyncio.wait with FIRST_COMPLETED.

        Concurrently waits on:
        1. Shutdown
        2. Tick interval
        3. Work notification (new schedule or instance ready)
        4. Maintenance (stale-claim recovery)
        """
        logger.info(f"Clock {self._worker_id} started")
        self._spawn_tick()

        try:
            while self._running and not self._shutdown_event.is_set():
                try:
                    pending_tasks = {
                        "shutdown": asyncio.create_task(self._shutdown_event.wait()),
                        "tick": asyncio.create_task(asyncio.sleep(self._interval)),
                        "maintenance": asyncio.create_task(asyncio.sleep(MAINTENANCE_INTERVAL)),
                    }
                    if self._work_notify is not None:
                        pending_tasks["work"] = asyncio.create_task(self._work_notify.wait())

                    done, pending = await asyncio.wait(
                        pending_tasks.values(),
                        return_when=asyncio.FIRST_COMPLETED,
                    )

                    for task in pending:
                        task.cancel()
                        try:
                            await task
                        except asyncio.CancelledError:
                            pass

                    names = {name for name, task in pending_tasks.items() if task in done}

                    if "shutdown" in names:
                        logger.debug(f"Clock {self._worker_id}: Shutdown signal received")
                        break

                    if "work" in names:
                        self._work_notify.clear()

                    if "tick" in names or "work" in names:
                        self._spawn_tick()

                    if "maintenance" in names:
                        try:
                            count = await self.recover_stale()
                            if count > 0:
                                logger.info(f"Clock {self._worker_id} recovered {count} stale runs")
                        except Exception as e:
                            logger.warning(
                                f"Clock {self._worker_id} failed to recover stale runs: {e}"
                            )

                except Exception as e:
                    logger.error(f"Clock {self._worker_id} error: {e}")
        finally:
            logger.info(f"Clock {self._worker_id} stopped")

    async def shutdown(self) -> None:
        """Stop the loop and wait for in-flight runs to settle."""
        logger.info(f"Clock {self._worker_id}: Initiating graceful shutdown")
        self._running = False
        self._shutdown_event.set()

        if self._background_tasks:
            logger.info(
                f"Clock {self._worker_id}: Waiting for {len(self._background_tasks)} "
                "in-flight ticks to complete..."
            )
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

        self.observers.clear()


class ClockHandle:
    """Handle for controlling a running clock.

    Usage:
        handle = await clock.start()
        await handle.shutdown()
    """

    def __init__(self, clock: Clock, task: asyncio.Task):
        self._clock = clock
        self._task = task

    @property
    def worker_id(self) -> str:
        return self._clock.worker_id

    def is_running(self) -> bool:
        """Return True if the clock task is still running."""
        return not self._task.done()

    async def shutdown(self) -> None:
        """Shutdown the clock and wait for completion."""
        await self._clock.shutdown()
        await self._task
        logger.info("Clock handle closed")

    def abort(self) -> None:
        """Cancel the clock loop without waiting for in-flight runs."""
        self._task.cancel()


__all__ = ["Clock", "ClockHandle", "TickReport"]
