"""Read-only conversation node repository backed by SQLite."""

import json
import logging
from collections.abc import Awaitable
from datetime import datetime, timezone
from typing import Any, TypeVar

import aiosqlite

from branch_context.db.database import Database
from branch_context.exceptions import StoreUnavailableError
from branch_context.models.node import ConversationNode, NodeMetadata, NodeStatus
from branch_context.services.node_store import NodeStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ANCESTOR_CHAIN_SQL = """
    WITH RECURSIVE chain(id, parent_id, hops) AS (
        SELECT id, parent_id, 0 FROM chat_nodes WHERE id = ?
        UNION ALL
        SELECT n.id, n.parent_id, chain.hops + 1
        FROM chat_nodes n JOIN chain ON n.id = chain.parent_id
        WHERE chain.hops < 10000
    )
    SELECT n.* FROM chat_nodes n JOIN chain ON n.id = chain.id
    ORDER BY chain.hops DESC
"""


class NodeRepository(NodeStore):
    """Node store adapter over the ``chat_nodes`` table."""

    def __init__(self, db: Database) -> None:
        """Initialize repository.

        Args:
            db: Database instance
        """
        self.db = db

    async def get_node(self, node_id: str) -> ConversationNode | None:
        rows = await self._fetch("SELECT * FROM chat_nodes WHERE id = ?", (node_id,))
        return self._row_to_node(rows[0]) if rows else None

    async def get_children(self, node_id: str) -> list[ConversationNode]:
        rows = await self._fetch(
            "SELECT * FROM chat_nodes WHERE parent_id = ? ORDER BY created_at ASC, id ASC",
            (node_id,),
        )
        return [self._row_to_node(row) for row in rows]

    async def get_ancestor_chain(self, node_id: str) -> list[ConversationNode]:
        rows = await self._fetch(_ANCESTOR_CHAIN_SQL, (node_id,))
        return [self._row_to_node(row) for row in rows]

    async def get_session_nodes(self, session_id: str) -> list[ConversationNode]:
        rows = await self._fetch(
            "SELECT * FROM chat_nodes WHERE session_id = ? ORDER BY created_at ASC, id ASC",
            (session_id,),
        )
        return [self._row_to_node(row) for row in rows]

    async def _fetch(self, sql: str, parameters: tuple[Any, ...]) -> list[aiosqlite.Row]:
        return await self._guard(self._fetch_all(sql, parameters))

    async def _fetch_all(self, sql: str, parameters: tuple[Any, ...]) -> list[aiosqlite.Row]:
        cursor = await self.db.execute(sql, parameters)
        rows = await cursor.fetchall()
        return list(rows)

    async def _guard(self, operation: Awaitable[T]) -> T:
        """Translate driver failures into StoreUnavailableError."""
        try:
            return await operation
        except (aiosqlite.Error, RuntimeError) as e:
            logger.warning("Node store read failed: %s", e)
            raise StoreUnavailableError(f"Node store unavailable: {e}") from e

    def _row_to_node(self, row: aiosqlite.Row) -> ConversationNode:
        """Convert database row to ConversationNode."""
        try:
            raw_metadata = json.loads(row["metadata"]) if row["metadata"] else {}
        except json.JSONDecodeError:
            logger.debug("Ignoring malformed metadata on node %s", row["id"])
            raw_metadata = {}

        return ConversationNode(
            id=row["id"],
            parent_id=row["parent_id"],
            session_id=row["session_id"],
            model=row["model"],
            system_prompt=row["system_prompt"],
            prompt=row["prompt"] or "",
            response=row["response"],
            status=NodeStatus(row["status"]),
            depth=row["depth"],
            prompt_tokens=row["prompt_tokens"],
            response_tokens=row["response_tokens"],
            metadata=NodeMetadata.from_raw(raw_metadata),
            created_at=_parse_timestamp(row["created_at"]),
            updated_at=_parse_timestamp(row["updated_at"]),
        )


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
