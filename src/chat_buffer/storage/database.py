"""SQLite database connection manager with schema migration."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from chat_buffer.log import get_logger

logger = get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS message_buffers (
    id              TEXT    PRIMARY KEY,
    conversation_id TEXT    NOT NULL,
    owner_id        TEXT,
    status          TEXT    NOT NULL DEFAULT 'active'
                    CHECK(status IN ('active','processing','completed','failed')),
    opened_at       TEXT    NOT NULL,
    last_message_at TEXT    NOT NULL,
    closes_at       TEXT    NOT NULL,
    message_count   INTEGER NOT NULL DEFAULT 0,
    claimed_at      TEXT,
    claim_token     TEXT,
    processed_at    TEXT,
    last_error      TEXT,
    updated_at      TEXT    NOT NULL
);

-- one active buffer per conversation
CREATE UNIQUE INDEX IF NOT EXISTS uq_buffers_active_conversation
    ON message_buffers(conversation_id) WHERE status = 'active';

CREATE INDEX IF NOT EXISTS idx_buffers_status_closes
    ON message_buffers(status, closes_at);

CREATE INDEX IF NOT EXISTS idx_buffers_status_processed
    ON message_buffers(status, processed_at);

CREATE TABLE IF NOT EXISTS buffered_messages (
    id                  TEXT PRIMARY KEY,
    buffer_id           TEXT NOT NULL REFERENCES message_buffers(id) ON DELETE CASCADE,
    external_message_id TEXT NOT NULL,
    content_type        TEXT NOT NULL CHECK(content_type IN ('text','audio','image','file')),
    content             TEXT,
    attachments_json    TEXT NOT NULL DEFAULT '[]',
    sender_json         TEXT NOT NULL DEFAULT '{}',
    conversation_json   TEXT NOT NULL DEFAULT '{}',
    received_at         TEXT NOT NULL,
    created_at          TEXT NOT NULL,
    UNIQUE (buffer_id, external_message_id)
);

CREATE INDEX IF NOT EXISTS idx_messages_buffer_received
    ON buffered_messages(buffer_id, received_at);

CREATE TABLE IF NOT EXISTS buffer_processing_jobs (
    buffer_id     TEXT    PRIMARY KEY REFERENCES message_buffers(id) ON DELETE CASCADE,
    scheduled_for TEXT    NOT NULL,
    status        TEXT    NOT NULL DEFAULT 'scheduled'
                  CHECK(status IN ('scheduled','running','completed','failed')),
    attempts      INTEGER NOT NULL DEFAULT 0,
    started_at    TEXT,
    finished_at   TEXT,
    last_error    TEXT,
    created_at    TEXT    NOT NULL,
    updated_at    TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_scheduled
    ON buffer_processing_jobs(status, scheduled_for);

CREATE TABLE IF NOT EXISTS conversation_states (
    conversation_id  TEXT    PRIMARY KEY,
    owner_id         TEXT,
    active_buffer_id TEXT,
    state            TEXT    NOT NULL DEFAULT 'idle'
                     CHECK(state IN ('idle','buffering','processing')),
    last_message_at  TEXT,
    message_count    INTEGER NOT NULL DEFAULT 0,
    updated_at       TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_states_active_buffer
    ON conversation_states(active_buffer_id);

CREATE TABLE IF NOT EXISTS scheduler_runs (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    job_name      TEXT    NOT NULL,
    status        TEXT    NOT NULL CHECK(status IN ('ok','error')),
    details_json  TEXT    NOT NULL DEFAULT '{}',
    error_message TEXT,
    executed_at   TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_scheduler_runs_job_executed
    ON scheduler_runs(job_name, executed_at);

-- durable pause switch per scheduler job, shared by every process on this file
CREATE TABLE IF NOT EXISTS scheduler_job_settings (
    job_name   TEXT    PRIMARY KEY,
    active     INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT    NOT NULL
);
"""


class Database:
    """Async SQLite database manager.

    All writes go through :meth:`transaction`, which takes the SQLite write
    lock up front (``BEGIN IMMEDIATE``) so the guarded updates issued inside
    it see and change a consistent snapshot. Coroutines sharing this
    connection are queued on an ``asyncio.Lock``; other processes sharing the
    file wait on SQLite's own lock for up to ``busy_timeout_ms``.
    """

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000):
        self._db_path = db_path
        self._busy_timeout_ms = busy_timeout_ms
        self._conn: aiosqlite.Connection | None = None
        self._tx_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open connection and run migrations."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        # autocommit mode; transactions are explicit
        self._conn = await aiosqlite.connect(self._db_path, isolation_level=None)
        self._conn.row_factory = aiosqlite.Row
        if self._db_path != ":memory:":
            await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
        await self._conn.executescript(SCHEMA_SQL)
        logger.info("database_initialized", path=self._db_path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block of statements atomically; rolls back on any exception."""
        conn = self.conn
        async with self._tx_lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")

    async def fetch_one(self, sql: str, params: tuple = ()) -> aiosqlite.Row | None:
        cursor = await self.conn.execute(sql, params)
        return await cursor.fetchone()

    async def fetch_all(self, sql: str, params: tuple = ()) -> list[aiosqlite.Row]:
        cursor = await self.conn.execute(sql, params)
        return list(await cursor.fetchall())

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")
