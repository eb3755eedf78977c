"""MCP server implementation for branch-context."""

import logging
from dataclasses import dataclass
from typing import Any

from mcp.server.fastmcp import FastMCP

from branch_context.config.settings import Settings
from branch_context.db.database import Database
from branch_context.db.repositories.node_repository import NodeRepository
from branch_context.services.context_building_service import ContextBuildingService
from branch_context.tools import context_tools

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Explicitly constructed service graph owned by one server process."""

    db: Database
    context_service: ContextBuildingService


async def initialize_services(settings: Settings) -> Services:
    """Initialize the database and the context building service.

    Args:
        settings: Application settings

    Returns:
        Initialized services
    """
    db = Database(settings.database_path)
    await db.connect()
    await db.migrate()

    context_service = ContextBuildingService.from_settings(NodeRepository(db), settings)
    context_service.start()

    logger.info(
        "Services initialized (cache backend=%s, token counter=%s)",
        settings.cache_backend,
        settings.token_counter,
    )
    return Services(db=db, context_service=context_service)


async def shutdown_services(services: Services) -> None:
    """Stop background work, flush the cache backend and close the database."""
    await services.context_service.close()
    await services.db.close()


def create_server(services: Services) -> FastMCP:
    """Create the MCP server bound to a service graph.

    Args:
        services: Initialized services

    Returns:
        FastMCP server instance
    """
    mcp = FastMCP("branch-context")
    service = services.context_service

    @mcp.tool()
    async def context_build(
        node_id: str,
        prompt: str,
        strategy: str | None = None,
        priority: str | None = None,
        max_tokens: int | None = None,
        include_siblings: bool = False,
        include_references: list[str] | None = None,
        model: str | None = None,
        use_cache: bool = True,
        custom_weights: dict[str, float] | None = None,
        adaptive_tokens: bool = True,
    ) -> dict[str, Any]:
        """Build the budgeted conversation context for a new turn.

        Args:
            node_id: Target node id (the new turn's node)
            prompt: New user prompt
            strategy: comprehensive/focused/exploratory/reference-heavy/
                minimal/analytical/creative (inferred when omitted)
            priority: relevance/recency/completeness/depth/breadth
            max_tokens: Token budget (1-200000)
            include_siblings: Include sibling branches (default: false)
            include_references: Explicitly referenced node ids
            model: Model id used for token counting
            use_cache: Use the context cache
            custom_weights: Category shares (ancestors/siblings/references/summaries)
                replacing the strategy's split
            adaptive_tokens: Reallocate budget left unused by a category (default: true)

        Returns:
            Ordered messages and build metadata
        """
        return await context_tools.context_build(
            service,
            node_id,
            prompt,
            strategy,
            priority,
            max_tokens,
            include_siblings,
            include_references,
            model,
            use_cache,
            custom_weights,
            adaptive_tokens,
        )

    @mcp.tool()
    async def context_invalidate_session(session_id: str) -> dict[str, Any]:
        """Invalidate cached contexts of a session after a node was created or updated.

        Args:
            session_id: Session id

        Returns:
            New session generation
        """
        return await context_tools.context_invalidate_session(service, session_id)

    @mcp.tool()
    async def context_cache_stats() -> dict[str, Any]:
        """Get context cache statistics.

        Returns:
            Hit rate, latency, compression ratio and coalescing counters
        """
        return await context_tools.context_cache_stats(service)

    @mcp.tool()
    async def context_cache_clear() -> dict[str, Any]:
        """Clear the context cache.

        Returns:
            Number of cleared entries
        """
        return await context_tools.context_cache_clear(service)

    return mcp
