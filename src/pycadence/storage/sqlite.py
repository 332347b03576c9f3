"""SQLite-backed storage implementation for pycadence.

Design Pattern: Adapter Pattern
SqliteCampaignStore adapts a SQLite database to the CampaignStore interface.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- Conditional UPDATE ... WHERE revision = ? for compare-and-set claims
- IMMEDIATE transactions where a check and an insert must be atomic
  (ledger attempts, capped/deduplicated instance creation)
- Partial unique index: one non-FAILED ledger record per (run, recipient)
- INTEGER timestamps (milliseconds since epoch, UTC)
"""

from __future__ import annotations

import asyncio
import json
import pickle
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

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


def _to_millis(value: datetime | None) -> int | None:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def _from_millis(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000.0, tz=UTC)


class SqliteCampaignStore(CampaignStore):
    """SQLite-backed durable storage.

    After __init__, the instance is not yet usable. Call connect() first.

    Usage:
        store = SqliteCampaignStore("campaigns.db")
        await store.connect()
        try:
            await store.create_schedule(schedule)
        finally:
            await store.close()
    """

    def __init__(self, db_path: str):
        """Initialize storage (connection not opened yet).

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize access to shared connection
        self._work_notify = asyncio.Event()

    @classmethod
    async def in_memory(cls) -> SqliteCampaignStore:
        """
        Create an in-memory SQLite store for testing.

        Returns:
            Connected in-memory store

        Example:
            store = await SqliteCampaignStore.in_memory()
        """
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return "SqliteCampaignStore(in-memory)"
        return f"SqliteCampaignStore({self.db_path})"

    async def connect(self) -> None:
        """Open database connection and initialize schema.

        Fixed initialization sequence:
        1. Open connection
        2. Enable WAL mode
        3. Create tables and indexes
        """
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._connection = await aiosqlite.connect(
                self.db_path,
                timeout=5.0,
                isolation_level=None,  # Autocommit; transactions are explicit
            )

            # In-memory databases report "memory" and don't support WAL
            cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
            result = await cursor.fetchone()
            await cursor.close()
            if result:
                mode = result[0].upper()
                if mode not in ("WAL", "MEMORY"):
                    raise PersistenceError(f"Failed to enable WAL mode, got: {result[0]}")

            await self._connection.execute("PRAGMA synchronous=NORMAL")
            await self._connection.execute("PRAGMA busy_timeout=5000")
            await self._create_schema()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to open {self.db_path}: {e}") from e

    async def _create_schema(self) -> None:
        """Create database tables and indexes.

        Records are stored as serialized blobs (pickle for schedules and
        instances, JSON node/edge lists for workflows) next to the columns
        the claim queries filter on.
        """
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS schedules (
                schedule_id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                status TEXT CHECK( status IN (
                    'DRAFT','SCHEDULED','RUNNING','PAUSED','COMPLETED','FAILED','CANCELLED'
                ) ) NOT NULL,
                next_execution_at INTEGER,
                claimed_by TEXT,
                claimed_at INTEGER,
                revision INTEGER NOT NULL,
                data BLOB NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                CHECK ( (status = 'SCHEDULED') = (next_execution_at IS NOT NULL) )
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_schedules_due
            ON schedules(status, next_execution_at)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS workflows (
                workflow_id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                active INTEGER NOT NULL DEFAULT 0,
                event_type TEXT NOT NULL,
                definition TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_workflows_trigger
            ON workflows(active, event_type)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS workflow_instances (
                instance_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                recipient_id TEXT NOT NULL,
                status TEXT CHECK( status IN (
                    'ACTIVE','WAITING','COMPLETED','ABORTED'
                ) ) NOT NULL,
                resume_at INTEGER,
                claimed_by TEXT,
                claimed_at INTEGER,
                dedupe_key TEXT UNIQUE,
                revision INTEGER NOT NULL,
                data BLOB NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_instances_resumable
            ON workflow_instances(status, resume_at)
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_instances_history
            ON workflow_instances(workflow_id, recipient_id, created_at)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS execution_records (
                run_id TEXT NOT NULL,
                recipient_id TEXT NOT NULL,
                attempt_number INTEGER NOT NULL,
                outcome TEXT CHECK( outcome IN (
                    'PENDING','SUCCEEDED','FAILED','SKIPPED'
                ) ) NOT NULL,
                correlation_id TEXT NOT NULL UNIQUE,
                started_at INTEGER NOT NULL,
                finished_at INTEGER,
                error TEXT,
                provider_message_id TEXT,
                PRIMARY KEY (run_id, recipient_id, attempt_number)
            )
        """)

        await self._connection.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_records_one_live_attempt
            ON execution_records(run_id, recipient_id)
            WHERE outcome != 'FAILED'
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_records_history
            ON execution_records(started_at, run_id, recipient_id, attempt_number)
        """)

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """IMMEDIATE transaction: takes the write lock up front."""
        await self._connection.execute("BEGIN IMMEDIATE")
        try:
            yield self._connection
        except BaseException:
            await self._connection.execute("ROLLBACK")
            raise
        else:
            await self._connection.execute("COMMIT")

    def _notify_work(self) -> None:
        self._work_notify.set()
        self._work_notify.clear()

    # ========================================================================
    # Schedules
    # ========================================================================

    async def create_schedule(self, schedule: ScheduleDefinition) -> None:
        schedule.check_invariant()
        self._check_connected()

        async with self._lock:
            try:
                await self._connection.execute(
                    """
                    INSERT INTO schedules (
                        schedule_id, owner, status, next_execution_at, claimed_by,
                        claimed_at, revision, data, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        schedule.schedule_id,
                        schedule.owner,
                        schedule.status.value,
                        _to_millis(schedule.next_execution_at),
                        schedule.claimed_by,
                        _to_millis(schedule.claimed_at),
                        schedule.revision,
                        pickle.dumps(schedule),
                        _to_millis(schedule.created_at),
                        _to_millis(schedule.updated_at),
                    ),
                )
            except aiosqlite.IntegrityError as e:
                raise PersistenceError(f"Schedule already exists: {schedule.schedule_id}") from e
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to create schedule: {e}") from e

        if schedule.status is ScheduleStatus.SCHEDULED:
            self._notify_work()

    async def get_schedule(self, schedule_id: str) -> ScheduleDefinition | None:
        self._check_connected()

        cursor = await self._connection.execute(
            "SELECT data FROM schedules WHERE schedule_id = ?", (schedule_id,)
        )
        row = await cursor.fetchone()
        await cursor.close()
        return pickle.loads(row[0]) if row else None

    async def list_due_schedules(self, now: datetime, limit: int = 100) -> list[ScheduleDefinition]:
        self._check_connected()

        cursor = await self._connection.execute(
            """
            SELECT data FROM schedules
            WHERE status = 'SCHEDULED' AND next_execution_at <= ?
            ORDER BY next_execution_at ASC
            LIMIT ?
            """,
            (_to_millis(now), limit),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [pickle.loads(row[0]) for row in rows]

    async def list_schedules(
        self, owner: str | None = None, status: ScheduleStatus | None = None
    ) -> list[ScheduleDefinition]:
        self._check_connected()

        clauses, params = [], []
        if owner is not None:
            clauses.append("owner = ?")
            params.append(owner)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        cursor = await self._connection.execute(
            f"SELECT data FROM schedules {where} ORDER BY created_at ASC", params
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [pickle.loads(row[0]) for row in rows]

    async def compare_and_set_schedule(
        self, schedule: ScheduleDefinition, expected_revision: int
    ) -> bool:
        """Conditional UPDATE: only the holder of expected_revision wins."""
        schedule.check_invariant()
        self._check_connected()

        new_revision = expected_revision + 1
        snapshot = replace(schedule, revision=new_revision)

        async with self._lock:
            try:
                cursor = await self._connection.execute(
                    """
                    UPDATE schedules
                    SET owner = ?, status = ?, next_execution_at = ?, claimed_by = ?,
                        claimed_at = ?, revision = ?, data = ?, updated_at = ?
                    WHERE schedule_id = ? AND revision = ?
                    """,
                    (
                        snapshot.owner,
                        snapshot.status.value,
                        _to_millis(snapshot.next_execution_at),
                        snapshot.claimed_by,
                        _to_millis(snapshot.claimed_at),
                        new_revision,
                        pickle.dumps(snapshot),
                        _to_millis(snapshot.updated_at),
                        snapshot.schedule_id,
                        expected_revision,
                    ),
                )
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to update schedule: {e}") from e

        if cursor.rowcount == 0:
            return False

        schedule.revision = new_revision
        if schedule.status is ScheduleStatus.SCHEDULED:
            self._notify_work()
        return True

    # ========================================================================
    # Workflows
    # ========================================================================

    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        self._check_connected()

        async with self._lock:
            try:
                await self._connection.execute(
                    """
                    INSERT INTO workflows (
                        workflow_id, owner, active, event_type, definition, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(workflow_id) DO UPDATE SET
                        owner = excluded.owner,
                        active = excluded.active,
                        event_type = excluded.event_type,
                        definition = excluded.definition,
                        updated_at = excluded.updated_at
                    """,
                    (
                        workflow.workflow_id,
                        workflow.owner,
                        1 if workflow.active else 0,
                        workflow.trigger.event_type,
                        json.dumps(workflow.to_dict()),
                        _to_millis(workflow.updated_at),
                    ),
                )
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to save workflow: {e}") from e

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        self._check_connected()

        cursor = await self._connection.execute(
            "SELECT definition FROM workflows WHERE workflow_id = ?", (workflow_id,)
        )
        row = await cursor.fetchone()
        await cursor.close()
        return WorkflowDefinition.from_dict(json.loads(row[0])) if row else None

    async def list_active_workflows(self, event_type: str) -> list[WorkflowDefinition]:
        self._check_connected()

        cursor = await self._connection.execute(
            "SELECT definition FROM workflows WHERE active = 1 AND event_type = ?",
            (event_type,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [WorkflowDefinition.from_dict(json.loads(row[0])) for row in rows]

    # ========================================================================
    # Instances
    # ========================================================================

    async def create_instance(
        self, instance: WorkflowInstance, frequency_cap: FrequencyCap | None = None
    ) -> InstanceCreation:
        """Dedupe check, cap check and insert in one IMMEDIATE transaction."""
        self._check_connected()

        async with self._lock:
            try:
                async with self._transaction() as conn:
                    if instance.dedupe_key is not None:
                        cursor = await conn.execute(
                            "SELECT 1 FROM workflow_instances WHERE dedupe_key = ?",
                            (instance.dedupe_key,),
                        )
                        duplicate = await cursor.fetchone()
                        await cursor.close()
                        if duplicate:
                            return InstanceCreation.DUPLICATE

                    if frequency_cap is not None:
                        cursor = await conn.execute(
                            """
                            SELECT COUNT(*) FROM workflow_instances
                            WHERE workflow_id = ? AND recipient_id = ? AND created_at > ?
                            """,
                            (
                                instance.workflow_id,
                                instance.recipient_id,
                                _to_millis(instance.created_at - frequency_cap.period),
                            ),
                        )
                        (recent,) = await cursor.fetchone()
                        await cursor.close()
                        if recent >= frequency_cap.max_count:
                            return InstanceCreation.CAPPED

                    await conn.execute(
                        """
                        INSERT INTO workflow_instances (
                            instance_id, workflow_id, recipient_id, status, resume_at,
                            claimed_by, claimed_at, dedupe_key, revision, data,
                            created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        self._instance_params(instance, instance.revision),
                    )
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to create instance: {e}") from e

        self._notify_work()
        return InstanceCreation.CREATED

    @staticmethod
    def _instance_params(instance: WorkflowInstance, revision: int) -> tuple:
        snapshot = replace(instance, revision=revision)
        return (
            snapshot.instance_id,
            snapshot.workflow_id,
            snapshot.recipient_id,
            snapshot.status.value,
            _to_millis(snapshot.resume_at),
            snapshot.claimed_by,
            _to_millis(snapshot.claimed_at),
            snapshot.dedupe_key,
            revision,
            pickle.dumps(snapshot),
            _to_millis(snapshot.created_at),
            _to_millis(snapshot.updated_at),
        )

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        self._check_connected()

        cursor = await self._connection.execute(
            "SELECT data FROM workflow_instances WHERE instance_id = ?", (instance_id,)
        )
        row = await cursor.fetchone()
        await cursor.close()
        return pickle.loads(row[0]) if row else None

    async def compare_and_set_instance(
        self, instance: WorkflowInstance, expected_revision: int
    ) -> bool:
        self._check_connected()

        new_revision = expected_revision + 1
        params = self._instance_params(instance, new_revision)

        async with self._lock:
            try:
                cursor = await self._connection.execute(
                    """
                    UPDATE workflow_instances
                    SET status = ?, resume_at = ?, claimed_by = ?, claimed_at = ?,
                        revision = ?, data = ?, updated_at = ?
                    WHERE instance_id = ? AND revision = ?
                    """,
                    (
                        params[3],
                        params[4],
                        params[5],
                        params[6],
                        new_revision,
                        params[9],
                        params[11],
                        instance.instance_id,
                        expected_revision,
                    ),
                )
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to update instance: {e}") from e

        if cursor.rowcount == 0:
            return False

        instance.revision = new_revision
        if instance.status is InstanceStatus.ACTIVE and instance.claimed_by is None:
            self._notify_work()
        return True

    async def list_resumable_instances(
        self, now: datetime, stale_before: datetime, limit: int = 100
    ) -> list[WorkflowInstance]:
        self._check_connected()

        cursor = await self._connection.execute(
            """
            SELECT data FROM workflow_instances
            WHERE (status = 'WAITING' AND resume_at <= ?)
               OR (status = 'ACTIVE' AND (claimed_by IS NULL OR claimed_at < ?))
            ORDER BY COALESCE(resume_at, updated_at) ASC
            LIMIT ?
            """,
            (_to_millis(now), _to_millis(stale_before), limit),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [pickle.loads(row[0]) for row in rows]

    async def list_instances(
        self,
        workflow_id: str | None = None,
        recipient_id: str | None = None,
        status: InstanceStatus | None = None,
    ) -> list[WorkflowInstance]:
        self._check_connected()

        clauses, params = [], []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if recipient_id is not None:
            clauses.append("recipient_id = ?")
            params.append(recipient_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        cursor = await self._connection.execute(
            f"SELECT data FROM workflow_instances {where} ORDER BY created_at ASC", params
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [pickle.loads(row[0]) for row in rows]

    async def purge_finished_instances(self, finished_before: datetime) -> int:
        self._check_connected()

        async with self._lock:
            try:
                cursor = await self._connection.execute(
                    """
                    DELETE FROM workflow_instances
                    WHERE status IN ('COMPLETED', 'ABORTED') AND updated_at < ?
                    """,
                    (_to_millis(finished_before),),
                )
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to purge instances: {e}") from e
        return cursor.rowcount

    # ========================================================================
    # Ledger
    # ========================================================================

    async def record_attempt(
        self, run_id: str, recipient_id: str, now: datetime
    ) -> ExecutionRecord | None:
        self._check_connected()

        async with self._lock:
            try:
                async with self._transaction() as conn:
                    cursor = await conn.execute(
                        """
                        SELECT outcome, attempt_number FROM execution_records
                        WHERE run_id = ? AND recipient_id = ?
                        """,
                        (run_id, recipient_id),
                    )
                    rows = await cursor.fetchall()
                    await cursor.close()

                    if any(row[0] != AttemptOutcome.FAILED.value for row in rows):
                        return None

                    attempt_number = max((row[1] for row in rows), default=0) + 1
                    record = ExecutionRecord(
                        run_id=run_id,
                        recipient_id=recipient_id,
                        attempt_number=attempt_number,
                        outcome=AttemptOutcome.PENDING,
                        correlation_id=correlation_id_for(run_id, recipient_id, attempt_number),
                        started_at=now,
                    )
                    await conn.execute(
                        """
                        INSERT INTO execution_records (
                            run_id, recipient_id, attempt_number, outcome,
                            correlation_id, started_at
                        ) VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            run_id,
                            recipient_id,
                            attempt_number,
                            record.outcome.value,
                            record.correlation_id,
                            _to_millis(now),
                        ),
                    )
                    return record
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to record attempt: {e}") from e

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

        async with self._lock:
            try:
                await self._connection.execute(
                    """
                    UPDATE execution_records
                    SET outcome = ?, finished_at = ?, error = ?, provider_message_id = ?
                    WHERE run_id = ? AND recipient_id = ? AND attempt_number = ?
                      AND outcome = 'PENDING'
                    """,
                    (
                        outcome.value,
                        _to_millis(now),
                        error,
                        provider_message_id,
                        run_id,
                        recipient_id,
                        attempt_number,
                    ),
                )
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to complete attempt: {e}") from e

        attempts = await self.get_attempts(run_id, recipient_id)
        if attempt_number < 1 or attempt_number > len(attempts):
            raise PersistenceError(
                f"Attempt not found: run_id={run_id}, recipient_id={recipient_id}, "
                f"attempt={attempt_number}"
            )
        # A record a delivery callback finalized first keeps its outcome
        return attempts[attempt_number - 1]

    async def get_attempts(self, run_id: str, recipient_id: str) -> list[ExecutionRecord]:
        self._check_connected()

        cursor = await self._connection.execute(
            f"""
            SELECT {self._RECORD_COLUMNS} FROM execution_records
            WHERE run_id = ? AND recipient_id = ?
            ORDER BY attempt_number ASC
            """,
            (run_id, recipient_id),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [self._row_to_record(row) for row in rows]

    async def get_history(
        self,
        run_id: str | None = None,
        recipient_id: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> LedgerPage:
        self._check_connected()

        clauses, params = [], []
        if run_id is not None:
            clauses.append("run_id = ?")
            params.append(run_id)
        if recipient_id is not None:
            clauses.append("recipient_id = ?")
            params.append(recipient_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        # one extra row tells us whether another page exists
        cursor = await self._connection.execute(
            f"""
            SELECT {self._RECORD_COLUMNS} FROM execution_records {where}
            ORDER BY started_at, run_id, recipient_id, attempt_number
            LIMIT ? OFFSET ?
            """,
            (*params, limit + 1, offset),
        )
        rows = await cursor.fetchall()
        await cursor.close()

        records = [self._row_to_record(row) for row in rows[:limit]]
        next_offset = offset + limit if len(rows) > limit else None
        return LedgerPage(records=records, next_offset=next_offset)

    async def update_outcome_by_correlation_id(
        self, correlation_id: str, outcome: AttemptOutcome, error: str | None = None
    ) -> bool:
        self._check_connected()

        async with self._lock:
            try:
                async with self._transaction() as conn:
                    cursor = await conn.execute(
                        "SELECT outcome FROM execution_records WHERE correlation_id = ?",
                        (correlation_id,),
                    )
                    row = await cursor.fetchone()
                    await cursor.close()
                    if row is None:
                        return False
                    if not delivery_update_allowed(AttemptOutcome(row[0]), outcome):
                        return False

                    await conn.execute(
                        """
                        UPDATE execution_records
                        SET outcome = ?, error = COALESCE(?, error)
                        WHERE correlation_id = ?
                        """,
                        (outcome.value, error, correlation_id),
                    )
                    return True
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to apply delivery update: {e}") from e

    _RECORD_COLUMNS = (
        "run_id, recipient_id, attempt_number, outcome, correlation_id, "
        "started_at, finished_at, error, provider_message_id"
    )

    def _row_to_record(self, row: tuple) -> ExecutionRecord:
        return ExecutionRecord(
            run_id=row[0],
            recipient_id=row[1],
            attempt_number=row[2],
            outcome=AttemptOutcome(row[3]),
            correlation_id=row[4],
            started_at=_from_millis(row[5]),
            finished_at=_from_millis(row[6]),
            error=row[7],
            provider_message_id=row[8],
        )

    # ========================================================================
    # Maintenance
    # ========================================================================

    async def reset(self) -> None:
        """Clear all data (for testing).

        After reset, storage is empty but functional.
        """
        self._check_connected()

        async with self._lock:
            await self._connection.execute("DELETE FROM schedules")
            await self._connection.execute("DELETE FROM workflows")
            await self._connection.execute("DELETE FROM workflow_instances")
            await self._connection.execute("DELETE FROM execution_records")

    async def close(self) -> None:
        """Close storage connections.

        Explicit resource cleanup, not relying on GC.
        """
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def work_notify(self) -> asyncio.Event:
        """Return event for work notifications (WorkNotificationSource protocol)."""
        return self._work_notify

    def _check_connected(self) -> None:
        """Guard clause: Ensure connection is open."""
        if self._connection is None:
            raise PersistenceError("Not connected. Call connect() first.")
