"""SQLite database connection manager with schema migration."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from multichat.log import get_logger

logger = get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS user_settings (
    user_id                     TEXT PRIMARY KEY,
    openai_api_key_encrypted    TEXT,
    anthropic_api_key_encrypted TEXT,
    gemini_api_key_encrypted    TEXT,
    use_provided_keys           INTEGER NOT NULL DEFAULT 0,
    slot_models_json            TEXT    NOT NULL DEFAULT '{}',
    summary_model               TEXT,
    updated_at                  TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS balances (
    user_id             TEXT PRIMARY KEY,
    free_remaining      INTEGER NOT NULL DEFAULT 0 CHECK(free_remaining >= 0),
    paid_remaining      INTEGER NOT NULL DEFAULT 0 CHECK(paid_remaining >= 0),
    total_used_overall  INTEGER NOT NULL DEFAULT 0,
    free_last_reset_at  TEXT
);

CREATE TABLE IF NOT EXISTS token_usage_log (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         TEXT    NOT NULL,
    provider        TEXT    NOT NULL,
    model_name      TEXT    NOT NULL,
    input_tokens    INTEGER NOT NULL DEFAULT 0,
    output_tokens   INTEGER NOT NULL DEFAULT 0,
    total_tokens    INTEGER NOT NULL DEFAULT 0,
    interaction_id  TEXT,
    slot_number     INTEGER,
    key_type        TEXT    NOT NULL CHECK(key_type IN ('user','provided')),
    created_at      TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_usage_user
    ON token_usage_log(user_id, created_at);

CREATE TABLE IF NOT EXISTS interactions (
    id          TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL,
    prompt      TEXT NOT NULL,
    title       TEXT,
    summary     TEXT,
    created_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_interactions_user
    ON interactions(user_id, created_at);

CREATE TABLE IF NOT EXISTS interaction_slots (
    interaction_id      TEXT    NOT NULL REFERENCES interactions(id) ON DELETE CASCADE,
    slot_number         INTEGER NOT NULL CHECK(slot_number BETWEEN 1 AND 6),
    model_used          TEXT    NOT NULL,
    conversation_json   TEXT    NOT NULL DEFAULT '[]',
    input_tokens        INTEGER NOT NULL DEFAULT 0,
    output_tokens       INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (interaction_id, slot_number)
);

CREATE TABLE IF NOT EXISTS processed_payment_events (
    event_id    TEXT PRIMARY KEY,
    user_id     TEXT    NOT NULL,
    price_id    TEXT    NOT NULL,
    quantity    INTEGER NOT NULL,
    tokens      INTEGER NOT NULL,
    created_at  TEXT    NOT NULL
);
"""


class Database:
    """Async SQLite database manager.

    All writes go through :meth:`transaction`, which serializes writers on the
    shared connection so two coroutines never end up inside one transaction.
    """

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open connection and run migrations."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(SCHEMA_SQL)
        await self._conn.commit()
        logger.info("database_initialized", path=self._db_path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block of statements as one IMMEDIATE transaction."""
        async with self._write_lock:
            conn = self.conn
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()

    @asynccontextmanager
    async def snapshot(self) -> AsyncIterator[aiosqlite.Connection]:
        """Hold the write lock for reads that must only see committed rows."""
        async with self._write_lock:
            yield self.conn

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")
