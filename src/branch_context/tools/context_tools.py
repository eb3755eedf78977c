"""Context building MCP tools."""

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

import pydantic

from branch_context.exceptions import (
    CacheUnavailableError,
    NodeNotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from branch_context.models.context import (
    CategoryWeights,
    ContentPriority,
    ContextBuildOptions,
    ContextStrategy,
)
from branch_context.services.context_building_service import ContextBuildingService
from branch_context.tools import error_response_from

VALID_STRATEGIES = [s.value for s in ContextStrategy]
VALID_PRIORITIES = [p.value for p in ContentPriority]


async def context_build(
    service: ContextBuildingService,
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
    """Build the conversation context for a new turn.

    Args:
        service: Context building service instance
        node_id: Target node id (the new turn's node)
        prompt: New user prompt
        strategy: Strategy override (comprehensive/focused/exploratory/
            reference-heavy/minimal/analytical/creative)
        priority: Priority override (relevance/recency/completeness/depth/breadth)
        max_tokens: Token budget (1-200000)
        include_siblings: Include sibling branches
        include_references: Explicitly referenced node ids
        model: Model id used for token counting
        use_cache: Use the context cache
        custom_weights: Category shares (ancestors/siblings/references/summaries)
            replacing the strategy's split
        adaptive_tokens: Reallocate budget left unused by a category

    Returns:
        Messages and build metadata
    """
    if strategy is not None and strategy not in VALID_STRATEGIES:
        return error_response_from(
            ValidationError(
                f"Invalid strategy '{strategy}'. Must be one of: {', '.join(VALID_STRATEGIES)}"
            ),
            details={"valid_strategies": VALID_STRATEGIES},
        )
    if priority is not None and priority not in VALID_PRIORITIES:
        return error_response_from(
            ValidationError(
                f"Invalid priority '{priority}'. Must be one of: {', '.join(VALID_PRIORITIES)}"
            ),
            details={"valid_priorities": VALID_PRIORITIES},
        )

    try:
        options = ContextBuildOptions(
            strategy=ContextStrategy(strategy) if strategy else None,
            priority=ContentPriority(priority) if priority else None,
            max_tokens=max_tokens,
            include_siblings=include_siblings,
            include_references=tuple(include_references or ()),
            model=model,
            use_cache=use_cache,
            custom_weights=(
                CategoryWeights.model_validate(custom_weights) if custom_weights else None
            ),
            adaptive_tokens=adaptive_tokens,
        )
    except pydantic.ValidationError as e:
        message = e.errors()[0]["msg"]
        return error_response_from(ValidationError(f"Invalid options: {message}"))

    try:
        result = await service.build_context(node_id, prompt, options)
    except NodeNotFoundError as e:
        return error_response_from(e, details={"node_id": e.node_id})
    except StoreUnavailableError as e:
        return error_response_from(e)

    return {
        "messages": result.to_messages(),
        "metadata": result.metadata.model_dump(mode="json"),
    }


async def context_invalidate_session(
    service: ContextBuildingService,
    session_id: str,
) -> dict[str, Any]:
    """Invalidate cached contexts of a session after a node mutation.

    Args:
        service: Context building service instance
        session_id: Session id

    Returns:
        New generation and timestamp
    """
    generation = await service.invalidate_session(session_id)
    if generation is None:
        return error_response_from(
            CacheUnavailableError("Cache backend unavailable; session generation not bumped"),
            details={"session_id": session_id},
        )

    return {
        "session_id": session_id,
        "generation": generation,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def context_cache_stats(service: ContextBuildingService) -> dict[str, Any]:
    """Get context cache statistics.

    Args:
        service: Context building service instance

    Returns:
        Hit rate, latency, compression and coalescing counters
    """
    stats = await service.get_stats()
    return asdict(stats)


async def context_cache_clear(service: ContextBuildingService) -> dict[str, Any]:
    """Clear the context cache.

    Args:
        service: Context building service instance

    Returns:
        Number of cleared entries and timestamp
    """
    try:
        cleared_count = await service.cache.clear()
    except CacheUnavailableError as e:
        return error_response_from(e)

    return {
        "cleared_count": cleared_count,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
