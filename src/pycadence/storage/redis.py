"""Redis-based campaign store.

Provides a Redis backend for clocks running on separate machines.

Data Structures:
- cadence:schedule:{id} (HASH): data (pickle), revision, owner, status
- cadence:schedules (ZSET): all schedule ids (score = created_at ms)
- cadence:schedules:due (ZSET): SCHEDULED ids (score = next_execution_at ms)
- cadence:workflow:{id} (HASH): definition (JSON), active, event_type
- cadence:workflows:active:{event_type} (SET): active workflow ids
- cadence:instance:{id} (HASH): data (pickle), revision
- cadence:instances (ZSET): all instance ids (score = created_at ms)
- cadence:instances:waiting (ZSET): WAITING ids (score = resume_at ms)
- cadence:instances:active (SET): ACTIVE ids
- cadence:dedupe:{key} (STRING): instance id owning a dedupe key
- cadence:created:{workflow}:{recipient} (ZSET): instance ids (score = created_at ms)
- cadence:attempts:{run_id} (HASH): recipient id -> pickled attempt list
- cadence:runs (ZSET): run ids (score = first attempt ms)
- cadence:correlation (HASH): correlation id -> run id NUL recipient id

Atomicity:
- Compare-and-set uses WATCH on the record key, then MULTI/EXEC. A
  concurrent write aborts EXEC (WatchError) and the caller sees False.
- Ledger attempts and instance creation WATCH every key their check reads
  and retry on WatchError, so check and write are atomic.

Design: Adapter Pattern
Adapts the Redis key-value store to the CampaignStore interface.
"""

from __future__ import annotations

import asyncio
import json
import pickle
from dataclasses import replace
from datetime import datetime

try:
    import redis.asyncio as redis
    from redis.exceptions import RedisError, WatchError
except ImportError:
    raise ImportError(
        "redis-py is required for RedisCampaignStore. Install with: pip install redis"
    )

from pycadence.models import (
    AttemptOutcome,
    ExecutionRecord,
    FrequencyCap,
    InstanceCreation,
    InstanceStatus,
    LedgerPage,
    ScheduleDefinition,
    ScheduleStatus,
    WorkflowDefinition,
    WorkflowInstance,
    correlation_id_for,
)
from pycadence.storage.base import CampaignStore, PersistenceError, delivery_update_allowed

_MAX_WATCH_RETRIES = 16


def _millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class RedisCampaignStore(CampaignStore):
    """Redis campaign store using connection pooling.

    Usage:
        store = RedisCampaignStore("redis://localhost:6379")
        await store.connect()
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        max_connections: int = 16,
        prefix: str = "cadence",
    ):
        """Initialize Redis campaign store.

        Args:
            redis_url: Redis connection URL
            max_connections: Maximum pool size
            prefix: Key prefix (lets tests isolate themselves)
        """
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._prefix = prefix
        self._redis: redis.Redis | None = None
        self._work_notify = asyncio.Event()

    def __repr__(self) -> str:
        return f"RedisCampaignStore({self._redis_url}, prefix={self._prefix!r})"

    async def connect(self) -> None:
        """Establish Redis connection pool."""
        self._redis = redis.from_url(
            self._redis_url,
            decode_responses=False,  # We handle binary data
            max_connections=self._max_connections,
        )

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> None:
        if self._redis is None:
            raise PersistenceError("Not connected. Call connect() first.")

    def _notify_work(self) -> None:
        self._work_notify.set()
        self._work_notify.clear()

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix, *parts))

    # ========================================================================
    # Schedules
    # ========================================================================

    async def create_schedule(self, schedule: ScheduleDefinition) -> None:
        schedule.check_invariant()
        self._check_connected()

        key = self._key("schedule", schedule.schedule_id)
        try:
            created = await self._redis.hsetnx(key, "revision", schedule.revision)
            if not created:
                raise PersistenceError(f"Schedule already exists: {schedule.schedule_id}")
            async with self._redis.pipeline(transaction=True) as pipe:
                self._queue_schedule_write(pipe, schedule)
                await pipe.zadd(
                    self._key("schedules"), {schedule.schedule_id: _millis(schedule.created_at)}
                )
                await pipe.execute()
        except RedisError as e:
            raise PersistenceError(f"Failed to create schedule: {e}") from e

        if schedule.status is ScheduleStatus.SCHEDULED:
            self._notify_work()

    def _queue_schedule_write(self, pipe, schedule: ScheduleDefinition) -> None:
        key = self._key("schedule", schedule.schedule_id)
        pipe.hset(
            key,
            mapping={
                "data": pickle.dumps(schedule),
                "revision": schedule.revision,
                "owner": schedule.owner,
                "status": schedule.status.value,
            },
        )
        due_key = self._key("schedules", "due")
        if schedule.status is ScheduleStatus.SCHEDULED:
            pipe.zadd(due_key, {schedule.schedule_id: _millis(schedule.next_execution_at)})
        else:
            pipe.zrem(due_key, schedule.schedule_id)

    async def get_schedule(self, schedule_id: str) -> ScheduleDefinition | None:
        self._check_connected()

        data = await self._redis.hget(self._key("schedule", schedule_id), "data")
        return pickle.loads(data) if data else None

    async def _load_schedules(self, ids: list[bytes]) -> list[ScheduleDefinition]:
        schedules = []
        for schedule_id in ids:
            schedule = await self.get_schedule(schedule_id.decode())
            if schedule is not None:
                schedules.append(schedule)
        return schedules

    async def list_due_schedules(self, now: datetime, limit: int = 100) -> list[ScheduleDefinition]:
        self._check_connected()

        ids = await self._redis.zrangebyscore(
            self._key("schedules", "due"), "-inf", _millis(now), start=0, num=limit
        )
        schedules = await self._load_schedules(ids)
        return [s for s in schedules if s.status is ScheduleStatus.SCHEDULED]

    async def list_schedules(
        self, owner: str | None = None, status: ScheduleStatus | None = None
    ) -> list[ScheduleDefinition]:
        self._check_connected()

        ids = await self._redis.zrange(self._key("schedules"), 0, -1)
        return [
            schedule
            for schedule in await self._load_schedules(ids)
            if (owner is None or schedule.owner == owner)
            and (status is None or schedule.status is status)
        ]

    async def compare_and_set_schedule(
        self, schedule: ScheduleDefinition, expected_revision: int
    ) -> bool:
        """WATCH the schedule hash, check its revision, then MULTI/EXEC."""
        schedule.check_invariant()
        self._check_connected()

        key = self._key("schedule", schedule.schedule_id)
        new_revision = expected_revision + 1
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                current = await pipe.hget(key, "revision")
                if current is None or int(current) != expected_revision:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                self._queue_schedule_write(pipe, replace(schedule, revision=new_revision))
                await pipe.execute()
        except WatchError:
            return False
        except RedisError as e:
            raise PersistenceError(f"Failed to update schedule: {e}") from e

        schedule.revision = new_revision
        if schedule.status is ScheduleStatus.SCHEDULED:
            self._notify_work()
        return True

    # ========================================================================
    # Workflows
    # ========================================================================

    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        self._check_connected()

        key = self._key("workflow", workflow.workflow_id)
        event_type = workflow.trigger.event_type
        try:
            previous = await self._redis.hget(key, "event_type")
            async with self._redis.pipeline(transaction=True) as pipe:
                if previous is not None:
                    await pipe.srem(
                        self._key("workflows", "active", previous.decode()), workflow.workflow_id
                    )
                await pipe.hset(
                    key,
                    mapping={
                        "definition": json.dumps(workflow.to_dict()),
                        "active": 1 if workflow.active else 0,
                        "event_type": event_type,
                    },
                )
                if workflow.active:
                    await pipe.sadd(
                        self._key("workflows", "active", event_type), workflow.workflow_id
                    )
                await pipe.execute()
        except RedisError as e:
            raise PersistenceError(f"Failed to save workflow: {e}") from e

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        self._check_connected()

        data = await self._redis.hget(self._key("workflow", workflow_id), "definition")
        return WorkflowDefinition.from_dict(json.loads(data)) if data else None

    async def list_active_workflows(self, event_type: str) -> list[WorkflowDefinition]:
        self._check_connected()

        ids = await self._redis.smembers(self._key("workflows", "active", event_type))
        workflows = []
        for workflow_id in sorted(ids):
            workflow = await self.get_workflow(workflow_id.decode())
            if workflow is not None and workflow.active:
                workflows.append(workflow)
        return workflows

    # ========================================================================
    # Instances
    # ========================================================================

    def _queue_instance_write(self, pipe, instance: WorkflowInstance) -> None:
        instance_id = instance.instance_id
        pipe.hset(
            self._key("instance", instance_id),
            mapping={"data": pickle.dumps(instance), "revision": instance.revision},
        )
        waiting_key = self._key("instances", "waiting")
        active_key = self._key("instances", "active")
        if instance.status is InstanceStatus.WAITING:
            pipe.zadd(waiting_key, {instance_id: _millis(instance.resume_at)})
        else:
            pipe.zrem(waiting_key, instance_id)
        if instance.status is InstanceStatus.ACTIVE:
            pipe.sadd(active_key, instance_id)
        else:
            pipe.srem(active_key, instance_id)

    async def create_instance(
        self, instance: WorkflowInstance, frequency_cap: FrequencyCap | None = None
    ) -> InstanceCreation:
        self._check_connected()

        dedupe_key = (
            self._key("dedupe", instance.dedupe_key) if instance.dedupe_key is not None else None
        )
        created_key = self._key("created", instance.workflow_id, instance.recipient_id)
        watched = [key for key in (dedupe_key, created_key) if key is not None]

        try:
            for _ in range(_MAX_WATCH_RETRIES):
                try:
                    async with self._redis.pipeline(transaction=True) as pipe:
                        await pipe.watch(*watched)
                        if dedupe_key is not None and await pipe.exists(dedupe_key):
                            await pipe.unwatch()
                            return InstanceCreation.DUPLICATE
                        if frequency_cap is not None:
                            since = _millis(instance.created_at - frequency_cap.period)
                            recent = await pipe.zcount(created_key, f"({since}", "+inf")
                            if recent >= frequency_cap.max_count:
                                await pipe.unwatch()
                                return InstanceCreation.CAPPED

                        pipe.multi()
                        if dedupe_key is not None:
                            pipe.set(dedupe_key, instance.instance_id)
                        pipe.zadd(created_key, {instance.instance_id: _millis(instance.created_at)})
                        pipe.zadd(
                            self._key("instances"),
                            {instance.instance_id: _millis(instance.created_at)},
                        )
                        self._queue_instance_write(pipe, instance)
                        await pipe.execute()
                        break
                except WatchError:
                    continue
            else:
                raise PersistenceError(
                    f"Instance creation kept conflicting: {instance.instance_id}"
                )
        except RedisError as e:
            raise PersistenceError(f"Failed to create instance: {e}") from e

        self._notify_work()
        return InstanceCreation.CREATED

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        self._check_connected()

        data = await self._redis.hget(self._key("instance", instance_id), "data")
        return pickle.loads(data) if data else None

    async def _load_instances(self, ids) -> list[WorkflowInstance]:
        instances = []
        for instance_id in ids:
            if isinstance(instance_id, bytes):
                instance_id = instance_id.decode()
            instance = await self.get_instance(instance_id)
            if instance is not None:
                instances.append(instance)
        return instances

    async def compare_and_set_instance(
        self, instance: WorkflowInstance, expected_revision: int
    ) -> bool:
        self._check_connected()

        key = self._key("instance", instance.instance_id)
        new_revision = expected_revision + 1
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                current = await pipe.hget(key, "revision")
                if current is None or int(current) != expected_revision:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                self._queue_instance_write(pipe, replace(instance, revision=new_revision))
                await pipe.execute()
        except WatchError:
            return False
        except RedisError as e:
            raise PersistenceError(f"Failed to update instance: {e}") from e

        instance.revision = new_revision
        if instance.status is InstanceStatus.ACTIVE and instance.claimed_by is None:
            self._notify_work()
        return True

    async def list_resumable_instances(
        self, now: datetime, stale_before: datetime, limit: int = 100
    ) -> list[WorkflowInstance]:
        self._check_connected()

        waiting_ids = await self._redis.zrangebyscore(
            self._key("instances", "waiting"), "-inf", _millis(now), start=0, num=limit
        )
        active_ids = await self._redis.smembers(self._key("instances", "active"))

        found = [
            instance
            for instance in await self._load_instances(waiting_ids)
            if instance.status is InstanceStatus.WAITING
        ]
        for instance in await self._load_instances(sorted(active_ids)):
            if instance.status is not InstanceStatus.ACTIVE:
                continue
            if instance.claimed_by is None or (
                instance.claimed_at is not None and instance.claimed_at < stale_before
            ):
                found.append(instance)
        return found[:limit]

    async def list_instances(
        self,
        workflow_id: str | None = None,
        recipient_id: str | None = None,
        status: InstanceStatus | None = None,
    ) -> list[WorkflowInstance]:
        self._check_connected()

        ids = await self._redis.zrange(self._key("instances"), 0, -1)
        return [
            instance
            for instance in await self._load_instances(ids)
            if (workflow_id is None or instance.workflow_id == workflow_id)
            and (recipient_id is None or instance.recipient_id == recipient_id)
            and (status is None or instance.status is status)
        ]

    async def purge_finished_instances(self, finished_before: datetime) -> int:
        self._check_connected()

        purged = 0
        try:
            for instance in await self.list_instances():
                if not instance.status.is_terminal or instance.updated_at >= finished_before:
                    continue
                async with self._redis.pipeline(transaction=True) as pipe:
                    await pipe.delete(self._key("instance", instance.instance_id))
                    await pipe.zrem(self._key("instances"), instance.instance_id)
                    await pipe.zrem(
                        self._key("created", instance.workflow_id, instance.recipient_id),
                        instance.instance_id,
                    )
                    if instance.dedupe_key is not None:
                        await pipe.delete(self._key("dedupe", instance.dedupe_key))
                    await pipe.execute()
                purged += 1
        except RedisError as e:
            raise PersistenceError(f"Failed to purge instances: {e}") from e
        return purged

    # ========================================================================
    # Ledger
    # ========================================================================

    async def _read_attempts(self, client, run_id: str, recipient_id: str) -> list[ExecutionRecord]:
        data = await client.hget(self._key("attempts", run_id), recipient_id)
        return pickle.loads(data) if data else []

    async def record_attempt(
        self, run_id: str, recipient_id: str, now: datetime
    ) -> ExecutionRecord | None:
        self._check_connected()

        attempts_key = self._key("attempts", run_id)
        try:
            for _ in range(_MAX_WATCH_RETRIES):
                try:
                    async with self._redis.pipeline(transaction=True) as pipe:
                        await pipe.watch(attempts_key)
                        attempts = await self._read_attempts(pipe, run_id, recipient_id)
                        if any(r.outcome is not AttemptOutcome.FAILED for r in attempts):
                            await pipe.unwatch()
                            return None

                        attempt_number = len(attempts) + 1
                        record = ExecutionRecord(
                            run_id=run_id,
                            recipient_id=recipient_id,
                            attempt_number=attempt_number,
                            outcome=AttemptOutcome.PENDING,
                            correlation_id=correlation_id_for(run_id, recipient_id, attempt_number),
                            started_at=now,
                        )
                        pipe.multi()
                        pipe.hset(attempts_key, recipient_id, pickle.dumps([*attempts, record]))
                        pipe.zadd(self._key("runs"), {run_id: _millis(now)}, nx=True)
                        pipe.hset(
                            self._key("correlation"),
                            record.correlation_id,
                            f"{run_id}\x00{recipient_id}",
                        )
                        await pipe.execute()
                        return record
                except WatchError:
                    continue
        except RedisError as e:
            raise PersistenceError(f"Failed to record attempt: {e}") from e
        raise PersistenceError(f"Attempt recording kept conflicting: {run_id}/{recipient_id}")

    async def _rewrite_attempt(
        self, run_id: str, recipient_id: str, attempt_number: int, change
    ) -> ExecutionRecord | None:
        """WATCH/MULTI loop applying `change(record) -> bool` to one attempt."""
        attempts_key = self._key("attempts", run_id)
        for _ in range(_MAX_WATCH_RETRIES):
            try:
                async with self._redis.pipeline(transaction=True) as pipe:
                    await pipe.watch(attempts_key)
                    attempts = await self._read_attempts(pipe, run_id, recipient_id)
                    if attempt_number < 1 or attempt_number > len(attempts):
                        await pipe.unwatch()
                        return None
                    record = attempts[attempt_number - 1]
                    if not change(record):
                        await pipe.unwatch()
                        return None
                    pipe.multi()
                    pipe.hset(attempts_key, recipient_id, pickle.dumps(attempts))
                    await pipe.execute()
                    return record
            except WatchError:
                continue
        raise PersistenceError(f"Ledger update kept conflicting: {run_id}/{recipient_id}")

    async def complete_attempt(
        self,
        run_id: str,
        recipient_id: str,
        attempt_number: int,
        outcome: AttemptOutcome,
        now: datetime,
        error: str | None = None,
        provider_message_id: str | None = None,
    ) -> ExecutionRecord:
        self._check_connected()

        def close(record: ExecutionRecord) -> bool:
            if record.outcome is not AttemptOutcome.PENDING:
                return False
            record.outcome = outcome
            record.finished_at = now
            record.error = error
            record.provider_message_id = provider_message_id
            return True

        try:
            record = await self._rewrite_attempt(run_id, recipient_id, attempt_number, close)
        except RedisError as e:
            raise PersistenceError(f"Failed to complete attempt: {e}") from e
        if record is not None:
            return record

        attempts = await self.get_attempts(run_id, recipient_id)
        if attempt_number < 1 or attempt_number > len(attempts):
            raise PersistenceError(
                f"Attempt not found: run_id={run_id}, recipient_id={recipient_id}, "
                f"attempt={attempt_number}"
            )
        # Finalized early by a delivery callback; its outcome stands
        return attempts[attempt_number - 1]

    async def get_attempts(self, run_id: str, recipient_id: str) -> list[ExecutionRecord]:
        self._check_connected()
        return await self._read_attempts(self._redis, run_id, recipient_id)

    async def get_history(
        self,
        run_id: str | None = None,
        recipient_id: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> LedgerPage:
        self._check_connected()

        if run_id is not None:
            run_ids = [run_id]
        else:
            run_ids = [item.decode() for item in await self._redis.zrange(self._key("runs"), 0, -1)]

        records: list[ExecutionRecord] = []
        for run in run_ids:
            stored = await self._redis.hgetall(self._key("attempts", run))
            for recipient, data in stored.items():
                if recipient_id is not None and recipient.decode() != recipient_id:
                    continue
                records.extend(pickle.loads(data))

        records.sort(key=lambda r: (r.started_at, r.run_id, r.recipient_id, r.attempt_number))
        page = records[offset : offset + limit]
        next_offset = offset + limit if offset + limit < len(records) else None
        return LedgerPage(records=page, next_offset=next_offset)

    async def update_outcome_by_correlation_id(
        self, correlation_id: str, outcome: AttemptOutcome, error: str | None = None
    ) -> bool:
        self._check_connected()

        location = await self._redis.hget(self._key("correlation"), correlation_id)
        if location is None:
            return False
        run_id, recipient_id = location.decode().split("\x00", 1)
        attempt_number = int(correlation_id.rsplit("-", 1)[1])

        def apply(record: ExecutionRecord) -> bool:
            if record.correlation_id != correlation_id:
                return False
            if not delivery_update_allowed(record.outcome, outcome):
                return False
            record.outcome = outcome
            if error is not None:
                record.error = error
            return True

        try:
            record = await self._rewrite_attempt(run_id, recipient_id, attempt_number, apply)
        except RedisError as e:
            raise PersistenceError(f"Failed to apply delivery update: {e}") from e
        return record is not None

    # ========================================================================
    # Maintenance
    # ========================================================================

    async def reset(self) -> None:
        """Delete every key under this store's prefix.

        Doesn't affect other Redis data.
        """
        self._check_connected()

        keys = []
        async for key in self._redis.scan_iter(match=f"{self._prefix}:*"):
            keys.append(key)

        if keys:
            await self._redis.delete(*keys)

    def work_notify(self) -> asyncio.Event:
        """Return event for work notifications (WorkNotificationSource protocol)."""
        return self._work_notify


__all__ = ["RedisCampaignStore"]
