"""Pytest configuration and fixtures for branch-context tests."""

import asyncio
from collections import Counter
from collections.abc import AsyncIterator, Callable
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from branch_context.config.settings import Settings
from branch_context.db.database import Database
from branch_context.exceptions import StoreUnavailableError
from branch_context.models.node import (
    ConversationNode,
    NodeMetadata,
    NodeStatus,
)
from branch_context.services.context_building_service import ContextBuildingService
from branch_context.services.node_store import InMemoryNodeStore
from branch_context.utils.token_counter import TokenCounter

SESSION_ID = "session-1"
BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)

ROOT_ID = "node-root-00000001"
A_ID = "node-aaaa-00000002"
B_ID = "node-bbbb-00000003"
TARGET_ID = "node-tttt-00000004"
SIB1_ID = "node-sib1-00000005"
SIB2_ID = "node-sib2-00000006"
REF_ID = "node-refx-a1b2c3d4"


class WordTokenCounter(TokenCounter):
    """One token per whitespace-separated word, for exact budgets."""

    def count(self, text: str, model: str) -> int:
        return len(text.split())


class CountingNodeStore(InMemoryNodeStore):
    """In-memory store that counts reads and can simulate outages."""

    def __init__(self, nodes=(), delay: float = 0.0) -> None:
        super().__init__(nodes)
        self.calls: Counter[str] = Counter()
        self.delay = delay
        self.failing: set[str] = set()

    async def _enter(self, method: str) -> None:
        self.calls[method] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if method in self.failing:
            raise StoreUnavailableError(f"{method} unavailable")

    async def get_node(self, node_id):
        await self._enter("get_node")
        return await super().get_node(node_id)

    async def get_children(self, node_id):
        await self._enter("get_children")
        return await super().get_children(node_id)

    async def get_ancestor_chain(self, node_id):
        await self._enter("get_ancestor_chain")
        return await super().get_ancestor_chain(node_id)

    async def get_session_nodes(self, session_id):
        await self._enter("get_session_nodes")
        return await super().get_session_nodes(session_id)


def make_node(
    node_id: str,
    parent: ConversationNode | None = None,
    prompt: str = "",
    response: str | None = None,
    minutes: int = 0,
    status: NodeStatus = NodeStatus.COMPLETED,
    session_id: str = SESSION_ID,
    **kwargs,
) -> ConversationNode:
    """Create a node placed under ``parent`` with a deterministic timestamp."""
    created = BASE_TIME + timedelta(minutes=minutes)
    return ConversationNode(
        id=node_id,
        parent_id=parent.id if parent else None,
        session_id=session_id,
        prompt=prompt,
        response=response,
        status=status,
        depth=parent.depth + 1 if parent else 0,
        created_at=created,
        updated_at=created,
        **kwargs,
    )


def note_metadata(title: str) -> NodeMetadata:
    return NodeMetadata.from_raw({"nodeType": "user_note", "noteTitle": title})


@pytest.fixture
def node_factory() -> Callable[..., ConversationNode]:
    """Factory for conversation nodes."""
    return make_node


@pytest.fixture
def conversation_tree() -> dict[str, ConversationNode]:
    """A branching session.

    root -> a -> b -> target (pending), with sibling branches sib1 (under a),
    sib2 and ref (under root).
    """
    root = make_node(
        ROOT_ID,
        prompt="start the project plan",
        response="sure let us plan the project",
        system_prompt="You are a helpful planner.",
        minutes=0,
    )
    a = make_node(
        A_ID,
        root,
        prompt="what database should we use",
        response="use postgres for relational data",
        minutes=10,
    )
    sib2 = make_node(
        SIB2_ID,
        root,
        prompt="brainstorm project names",
        response="alpha beta gamma",
        minutes=15,
    )
    ref = make_node(
        REF_ID,
        root,
        prompt="explain caching layers",
        response="Y",
        minutes=18,
    )
    b = make_node(
        B_ID,
        a,
        prompt="how to index tables",
        response="X",
        minutes=20,
    )
    sib1 = make_node(
        SIB1_ID,
        a,
        prompt="what about mongodb instead",
        response="a document store is an option",
        minutes=25,
    )
    target = make_node(TARGET_ID, b, status=NodeStatus.PENDING, minutes=30)
    return {
        "root": root,
        "a": a,
        "b": b,
        "target": target,
        "sib1": sib1,
        "sib2": sib2,
        "ref": ref,
    }


@pytest.fixture
def word_counter() -> WordTokenCounter:
    return WordTokenCounter()


@pytest.fixture
def node_store(conversation_tree) -> CountingNodeStore:
    """Counting in-memory store holding the conversation tree."""
    return CountingNodeStore(conversation_tree.values())


@pytest.fixture
def test_settings() -> Settings:
    """Test configuration settings."""
    return Settings(
        database_path=":memory:",
        log_level="DEBUG",
        token_counter="estimate",
        token_buffer_ratio=0.0,
        cache_backend="memory",
        cache_max_size=100,
        cache_ttl_seconds=3600,
    )


@pytest_asyncio.fixture
async def context_service(
    node_store, test_settings, word_counter
) -> AsyncIterator[ContextBuildingService]:
    """Context building service over the counting store."""
    service = ContextBuildingService.from_settings(
        node_store, test_settings, token_counter=word_counter
    )
    yield service
    await service.close()


@pytest_asyncio.fixture
async def db() -> AsyncIterator[Database]:
    """Migrated in-memory SQLite database."""
    database = Database(":memory:")
    await database.connect()
    await database.migrate()
    yield database
    await database.close()
