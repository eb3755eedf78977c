"""Tests for database connection and migrations."""

import pytest

from branch_context.db.database import Database


@pytest.mark.asyncio
class TestDatabase:
    """Test schema setup."""

    async def test_migrate_creates_node_table(self, db):
        cursor = await db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='chat_nodes'"
        )
        assert await cursor.fetchone() is not None

    async def test_migrate_is_idempotent(self, db):
        await db.migrate()
        cursor = await db.execute("SELECT COUNT(*) FROM schema_version")
        row = await cursor.fetchone()
        assert row[0] == 1

    async def test_transaction_rollback(self, db):
        with pytest.raises(ValueError):
            async with db.transaction():
                await db.execute(
                    "INSERT INTO chat_nodes (id, session_id, created_at, updated_at) "
                    "VALUES ('x', 's', '2026-01-01', '2026-01-01')"
                )
                raise ValueError("abort")

        cursor = await db.execute("SELECT COUNT(*) FROM chat_nodes")
        assert (await cursor.fetchone())[0] == 0

    async def test_file_database_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "nodes.db"
        database = Database(str(path))
        await database.connect()
        await database.migrate()
        await database.close()
        assert path.exists()

    async def test_execute_requires_connection(self):
        with pytest.raises(RuntimeError):
            await Database(":memory:").execute("SELECT 1")
