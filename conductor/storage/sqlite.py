"""SQLite thread store: threads and settings survive restarts."""

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

import aiosqlite
import structlog

from conductor.exceptions import StorageError
from conductor.storage.base import (
    MemoryRecord,
    MetadataPredicate,
    StoredMessage,
    StoredThread,
)

logger = structlog.get_logger()

_CREATE_THREADS_TABLE = """
CREATE TABLE IF NOT EXISTS threads (
    id TEXT PRIMARY KEY,
    resource_id TEXT NOT NULL,
    title TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}'
)
"""

_CREATE_MESSAGES_TABLE = """
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
    parts TEXT NOT NULL,
    created_at TEXT NOT NULL
)
"""

_CREATE_MESSAGES_INDEX = """
CREATE INDEX IF NOT EXISTS idx_messages_thread
ON messages (thread_id, created_at)
"""

_CREATE_MEMORY_TABLE = """
CREATE TABLE IF NOT EXISTS memory_records (
    thread_id TEXT PRIMARY KEY,
    resource_id TEXT,
    pending_message_tokens INTEGER DEFAULT 0,
    observation_token_count INTEGER DEFAULT 0,
    last_observed_at TEXT,
    config TEXT NOT NULL DEFAULT '{}'
)
"""


def _parse_dt(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo else dt.replace(tzinfo=UTC)


class SqliteThreadStore:
    def __init__(self, db_path: Path | str) -> None:
        self._db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None

    async def setup(self) -> None:
        try:
            self._db = await aiosqlite.connect(self._db_path)
            self._db.row_factory = aiosqlite.Row
            await self._db.execute(_CREATE_THREADS_TABLE)
            await self._db.execute(_CREATE_MESSAGES_TABLE)
            await self._db.execute(_CREATE_MESSAGES_INDEX)
            await self._db.execute(_CREATE_MEMORY_TABLE)
            await self._db.commit()
            logger.info("sqlite_store_initialized", db_path=self._db_path)
        except Exception as e:
            logger.error(
                "sqlite_store_init_failed", db_path=self._db_path, error=str(e)
            )
            raise StorageError(f"Failed to initialize SQLite store: {e}") from e

    async def teardown(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("sqlite_store_closed", db_path=self._db_path)

    def _conn(self) -> aiosqlite.Connection:
        if not self._db:
            raise StorageError("Store not initialized, call setup() first")
        return self._db

    async def get_thread(self, thread_id: str) -> StoredThread | None:
        cursor = await self._conn().execute(
            "SELECT * FROM threads WHERE id = ?", (thread_id,)
        )
        row = await cursor.fetchone()
        if not row:
            logger.debug("sqlite_thread_not_found", thread_id=thread_id)
            return None
        return self._row_to_thread(row)

    async def save_thread(self, thread: StoredThread) -> None:
        db = self._conn()
        await db.execute(
            """INSERT OR REPLACE INTO threads
               (id, resource_id, title, created_at, updated_at, metadata)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                thread.id,
                thread.resource_id,
                thread.title,
                thread.created_at.isoformat(),
                thread.updated_at.isoformat(),
                json.dumps(thread.metadata),
            ),
        )
        await db.commit()

    async def list_threads(
        self,
        *,
        resource_id: str | None = None,
        predicate: MetadataPredicate | None = None,
    ) -> list[StoredThread]:
        if resource_id is None:
            cursor = await self._conn().execute(
                "SELECT * FROM threads ORDER BY updated_at DESC"
            )
        else:
            cursor = await self._conn().execute(
                "SELECT * FROM threads WHERE resource_id = ? ORDER BY updated_at DESC",
                (resource_id,),
            )
        threads = [self._row_to_thread(row) for row in await cursor.fetchall()]
        if predicate is not None:
            threads = [t for t in threads if predicate(t.metadata)]
        return threads

    async def save_message(self, message: StoredMessage) -> None:
        db = self._conn()
        await db.execute(
            """INSERT OR REPLACE INTO messages
               (id, thread_id, role, parts, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (
                message.id,
                message.thread_id,
                message.role,
                json.dumps(message.parts),
                message.created_at.isoformat(),
            ),
        )
        await db.commit()

    async def list_messages(
        self,
        thread_id: str,
        *,
        page: int = 0,
        per_page: int | None = None,
        order: Literal["asc", "desc"] = "asc",
    ) -> list[StoredMessage]:
        direction = "DESC" if order == "desc" else "ASC"
        query = (
            "SELECT * FROM messages WHERE thread_id = ? "
            f"ORDER BY created_at {direction}, rowid {direction}"
        )
        params: tuple = (thread_id,)
        if per_page is not None:
            query += " LIMIT ? OFFSET ?"
            params = (thread_id, per_page, page * per_page)
        cursor = await self._conn().execute(query, params)
        rows = await cursor.fetchall()
        return [
            StoredMessage(
                id=row["id"],
                thread_id=row["thread_id"],
                role=row["role"],
                parts=json.loads(row["parts"]),
                created_at=_parse_dt(row["created_at"]),
            )
            for row in rows
        ]

    async def get_memory_record(
        self, thread_id: str, resource_id: str | None = None
    ) -> MemoryRecord | None:
        cursor = await self._conn().execute(
            "SELECT * FROM memory_records WHERE thread_id = ?", (thread_id,)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return MemoryRecord(
            thread_id=row["thread_id"],
            resource_id=row["resource_id"],
            pending_message_tokens=row["pending_message_tokens"],
            observation_token_count=row["observation_token_count"],
            last_observed_at=(
                _parse_dt(row["last_observed_at"]) if row["last_observed_at"] else None
            ),
            config=json.loads(row["config"]),
        )

    async def save_memory_record(self, record: MemoryRecord) -> None:
        db = self._conn()
        await db.execute(
            """INSERT OR REPLACE INTO memory_records
               (thread_id, resource_id, pending_message_tokens,
                observation_token_count, last_observed_at, config)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                record.thread_id,
                record.resource_id,
                record.pending_message_tokens,
                record.observation_token_count,
                record.last_observed_at.isoformat() if record.last_observed_at else None,
                json.dumps(record.config),
            ),
        )
        await db.commit()

    @staticmethod
    def _row_to_thread(row: aiosqlite.Row) -> StoredThread:
        return StoredThread(
            id=row["id"],
            resource_id=row["resource_id"],
            title=row["title"],
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
            metadata=json.loads(row["metadata"]),
        )
