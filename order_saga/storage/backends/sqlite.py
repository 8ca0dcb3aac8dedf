"""SQLite history log implementation."""

import asyncio
import json
import os
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, List, Optional

import aiosqlite
import structlog

from order_saga.errors import DuplicateEventError, LeaseLost, StorageUnavailable
from order_saga.storage.events import (
    EventType,
    HistoryEvent,
    InstanceStatus,
    Lease,
    WorkflowInstance,
)
from order_saga.storage.interface import HistoryLog, validate_append


logger = structlog.get_logger(__name__)


class SQLiteHistoryLog(HistoryLog):
    """SQLite implementation of the history log.

    Every append runs in one ``BEGIN IMMEDIATE`` transaction that writes the
    event row and updates the instance index, so a crash leaves either both or
    neither.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.db_path = self._parse_database_url(database_url)
        self._connection: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    def _parse_database_url(self, database_url: str) -> str:
        """Parse database URL to get file path."""
        for prefix in ("sqlite+aiosqlite:///", "sqlite:///", "sqlite://"):
            if database_url.startswith(prefix):
                return database_url[len(prefix):]
        return database_url

    async def initialize(self) -> None:
        """Open the connection and create tables."""
        if self.db_path != ":memory:":
            if not os.path.isabs(self.db_path):
                self.db_path = os.path.abspath(self.db_path)
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._connection = await aiosqlite.connect(self.db_path, isolation_level=None)
            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA synchronous=FULL")
            await self._create_tables()
        except sqlite3.Error as e:
            logger.error("history_log_init_failed", db_path=self.db_path, error=str(e))
            raise StorageUnavailable(f"Cannot open {self.db_path}: {e}") from e

        logger.info("history_log_initialized", db_path=self.db_path)

    async def _create_tables(self) -> None:
        await self._connection.executescript("""
            CREATE TABLE IF NOT EXISTS history_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                instance_id TEXT NOT NULL,
                event_index INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                sequence_number INTEGER,
                timestamp TEXT NOT NULL,
                data TEXT NOT NULL,
                UNIQUE (instance_id, event_index)
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_history_events_sequence
                ON history_events(instance_id, event_type, sequence_number)
                WHERE sequence_number IS NOT NULL;

            CREATE TABLE IF NOT EXISTS instances (
                instance_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                input TEXT NOT NULL,
                result TEXT,
                error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                owner TEXT,
                lease_expires_at REAL
            );

            CREATE INDEX IF NOT EXISTS idx_instances_status
                ON instances(status);
        """)

        # Databases created before ownership leases lack these columns
        cursor = await self._connection.execute("PRAGMA table_info(instances)")
        columns = {row[1] for row in await cursor.fetchall()}
        await cursor.close()
        if "owner" not in columns:
            await self._connection.execute("ALTER TABLE instances ADD COLUMN owner TEXT")
        if "lease_expires_at" not in columns:
            await self._connection.execute("ALTER TABLE instances ADD COLUMN lease_expires_at REAL")

    async def close(self) -> None:
        if self._connection:
            await self._connection.close()
            self._connection = None

    def _require_connection(self) -> aiosqlite.Connection:
        if not self._connection:
            raise StorageUnavailable("Storage backend not initialized")
        return self._connection

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = self._require_connection()
        async with self._write_lock:
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageUnavailable(str(e)) from e
            try:
                yield conn
                await conn.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                await conn.execute("ROLLBACK")
                raise DuplicateEventError(str(e)) from e
            except sqlite3.Error as e:
                await self._safe_rollback(conn)
                raise StorageUnavailable(str(e)) from e
            except BaseException:
                await self._safe_rollback(conn)
                raise

    async def _safe_rollback(self, conn: aiosqlite.Connection) -> None:
        try:
            await conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.warning("history_log_rollback_failed", error=str(e))

    async def append(
        self,
        instance_id: str,
        event: HistoryEvent,
        lease: Optional[Lease] = None
    ) -> HistoryEvent:
        async with self._transaction() as conn:
            history = await self._read_events(conn, instance_id)
            validate_append(instance_id, history, event)

            now = datetime.now(timezone.utc)
            if lease is not None and event.event_type != EventType.INSTANCE_CREATED:
                if not await self._claim(conn, instance_id, lease, now):
                    raise LeaseLost(f"Instance {instance_id} is leased by another owner")

            committed = event.committed(len(history), now)

            await conn.execute(
                """
                INSERT INTO history_events
                    (instance_id, event_index, event_type, sequence_number, timestamp, data)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    instance_id,
                    committed.event_index,
                    committed.event_type.value,
                    committed.sequence_number,
                    now.isoformat(),
                    json.dumps(committed.data)
                )
            )

            if event.event_type == EventType.INSTANCE_CREATED:
                await conn.execute(
                    """
                    INSERT INTO instances
                        (instance_id, status, input, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        instance_id,
                        InstanceStatus.RUNNING.value,
                        json.dumps(event.data["input"]),
                        now.isoformat(),
                        now.isoformat()
                    )
                )
            elif event.event_type == EventType.INSTANCE_COMPLETED:
                await conn.execute(
                    """
                    UPDATE instances
                    SET status = ?, result = ?, updated_at = ?,
                        owner = NULL, lease_expires_at = NULL
                    WHERE instance_id = ?
                    """,
                    (
                        InstanceStatus.COMPLETED.value,
                        json.dumps(event.data.get("result")),
                        now.isoformat(),
                        instance_id
                    )
                )
            elif event.event_type == EventType.INSTANCE_FAILED:
                await conn.execute(
                    """
                    UPDATE instances
                    SET status = ?, error = ?, updated_at = ?,
                        owner = NULL, lease_expires_at = NULL
                    WHERE instance_id = ?
                    """,
                    (
                        InstanceStatus.FAILED.value,
                        event.data.get("error"),
                        now.isoformat(),
                        instance_id
                    )
                )
            else:
                await conn.execute(
                    "UPDATE instances SET updated_at = ? WHERE instance_id = ?",
                    (now.isoformat(), instance_id)
                )

        return committed

    async def _claim(
        self,
        conn: aiosqlite.Connection,
        instance_id: str,
        lease: Lease,
        now: datetime
    ) -> bool:
        """Conditionally take or renew the lease; must run inside ``_transaction``."""
        cursor = await conn.execute(
            """
            UPDATE instances
            SET owner = ?, lease_expires_at = ?
            WHERE instance_id = ? AND status = ?
              AND (owner IS NULL OR owner = ? OR lease_expires_at IS NULL
                   OR lease_expires_at <= ?)
            """,
            (
                lease.owner,
                lease.expires_at(now).timestamp(),
                instance_id,
                InstanceStatus.RUNNING.value,
                lease.owner,
                now.timestamp()
            )
        )
        claimed = cursor.rowcount == 1
        await cursor.close()
        return claimed

    async def acquire_lease(self, instance_id: str, lease: Lease) -> bool:
        async with self._transaction() as conn:
            return await self._claim(conn, instance_id, lease, datetime.now(timezone.utc))

    async def release_lease(self, instance_id: str, owner: str) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                """
                UPDATE instances SET owner = NULL, lease_expires_at = NULL
                WHERE instance_id = ? AND owner = ?
                """,
                (instance_id, owner)
            )

    async def read(self, instance_id: str) -> List[HistoryEvent]:
        conn = self._require_connection()
        try:
            return await self._read_events(conn, instance_id)
        except sqlite3.Error as e:
            raise StorageUnavailable(str(e)) from e

    async def _read_events(
        self,
        conn: aiosqlite.Connection,
        instance_id: str
    ) -> List[HistoryEvent]:
        cursor = await conn.execute(
            """
            SELECT instance_id, event_index, event_type, sequence_number, timestamp, data
            FROM history_events
            WHERE instance_id = ?
            ORDER BY event_index ASC
            """,
            (instance_id,)
        )
        rows = await cursor.fetchall()
        await cursor.close()

        return [
            HistoryEvent(
                instance_id=row[0],
                event_type=EventType(row[2]),
                data=json.loads(row[5]),
                sequence_number=row[3],
                event_index=row[1],
                timestamp=datetime.fromisoformat(row[4])
            )
            for row in rows
        ]

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        conn = self._require_connection()
        try:
            cursor = await conn.execute(
                """
                SELECT instance_id, status, input, result, error, created_at, updated_at,
                   owner, lease_expires_at
                FROM instances WHERE instance_id = ?
                """,
                (instance_id,)
            )
            row = await cursor.fetchone()
            await cursor.close()
        except sqlite3.Error as e:
            raise StorageUnavailable(str(e)) from e

        return self._row_to_instance(row) if row else None

    async def list_instances(
        self,
        status: Optional[InstanceStatus] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[WorkflowInstance]:
        conn = self._require_connection()

        query = """
            SELECT instance_id, status, input, result, error, created_at, updated_at,
                   owner, lease_expires_at
            FROM instances
        """
        params: List[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY created_at ASC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        try:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
        except sqlite3.Error as e:
            raise StorageUnavailable(str(e)) from e

        return [self._row_to_instance(row) for row in rows]

    def _row_to_instance(self, row) -> WorkflowInstance:
        return WorkflowInstance(
            instance_id=row[0],
            status=InstanceStatus(row[1]),
            input=json.loads(row[2]),
            result=json.loads(row[3]) if row[3] else None,
            error=row[4],
            created_at=datetime.fromisoformat(row[5]),
            updated_at=datetime.fromisoformat(row[6]),
            owner=row[7],
            lease_expires_at=(
                datetime.fromtimestamp(row[8], timezone.utc) if row[8] is not None else None
            )
        )

    async def delete_instance(self, instance_id: str) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "DELETE FROM history_events WHERE instance_id = ?",
                (instance_id,)
            )
            await conn.execute(
                "DELETE FROM instances WHERE instance_id = ?",
                (instance_id,)
            )
