"""Database connection and migration management."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

logger = logging.getLogger(__name__)


class Database:
    """Database connection and operations manager."""

    def __init__(self, database_path: str) -> None:
        """Initialize database manager.

        Args:
            database_path: Path to SQLite database file (or ":memory:")
        """
        self.database_path = database_path
        self.conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self._in_transaction = False

    async def connect(self) -> None:
        """Connect to the database."""
        if self.database_path != ":memory:":
            Path(self.database_path).parent.mkdir(parents=True, exist_ok=True)

        self.conn = await aiosqlite.connect(self.database_path)
        self.conn.row_factory = aiosqlite.Row
        await self.conn.execute("PRAGMA foreign_keys = ON")

    async def close(self) -> None:
        """Close database connection."""
        if self.conn:
            await self.conn.close()
            self.conn = None

    async def execute(
        self, sql: str, parameters: tuple[Any, ...] | dict[str, Any] = ()
    ) -> aiosqlite.Cursor:
        """Execute a SQL statement.

        Args:
            sql: SQL statement
            parameters: Query parameters

        Returns:
            Database cursor
        """
        if not self.conn:
            raise RuntimeError("Database not connected")
        return await self.conn.execute(sql, parameters)

    async def commit(self) -> None:
        """Commit current transaction."""
        if not self.conn:
            raise RuntimeError("Database not connected")
        await self.conn.commit()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Context manager for database transactions.

        If already in a transaction, yields without starting a new one.

        Example:
            async with db.transaction():
                await db.execute(...)
        """
        if not self.conn:
            raise RuntimeError("Database not connected")

        if self._in_transaction:
            yield
            return

        async with self._write_lock:
            self._in_transaction = True
            await self.conn.execute("BEGIN")
            try:
                yield
                await self.conn.commit()
            except Exception:
                await self.conn.rollback()
                raise
            finally:
                self._in_transaction = False

    async def migrate(self) -> None:
        """Run database migrations."""
        try:
            cursor = await self.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            )
            row = await cursor.fetchone()
            current_version = row[0] if row else 0
        except aiosqlite.OperationalError:
            current_version = 0

        if current_version < 1:
            await self._migrate_v1()

    async def _migrate_v1(self) -> None:
        """Initial schema: the conversation node table."""
        async with self.transaction():
            await self.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at DATETIME NOT NULL
                )
            """)

            await self.execute("""
                CREATE TABLE IF NOT EXISTS chat_nodes (
                    id TEXT PRIMARY KEY,
                    parent_id TEXT,
                    session_id TEXT NOT NULL,
                    model TEXT,
                    system_prompt TEXT,
                    prompt TEXT NOT NULL DEFAULT '',
                    response TEXT,
                    status TEXT NOT NULL DEFAULT 'completed',
                    depth INTEGER NOT NULL DEFAULT 0,
                    prompt_tokens INTEGER NOT NULL DEFAULT 0,
                    response_tokens INTEGER NOT NULL DEFAULT 0,
                    metadata TEXT DEFAULT '{}',
                    created_at DATETIME NOT NULL,
                    updated_at DATETIME NOT NULL,
                    FOREIGN KEY (parent_id) REFERENCES chat_nodes(id)
                )
            """)

            await self.execute(
                "CREATE INDEX IF NOT EXISTS idx_chat_nodes_parent ON chat_nodes(parent_id)"
            )
            await self.execute(
                "CREATE INDEX IF NOT EXISTS idx_chat_nodes_session "
                "ON chat_nodes(session_id, created_at)"
            )

            await self.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (1, datetime.now(timezone.utc).isoformat()),
            )

        logger.info("Applied schema migration v1 to %s", self.database_path)
