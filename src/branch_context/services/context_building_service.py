"""Context building service: assembles budgeted context for a new turn."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Sequence
from typing import TypeVar

from branch_context.config import Settings
from branch_context.exceptions import (
    NodeNotFoundError,
    ReferenceResolutionError,
    StoreUnavailableError,
    WeightingDegradedError,
)
from branch_context.models.context import (
    AssembledContext,
    BuildRequest,
    CacheStats,
    CandidateNode,
    CandidateWeight,
    CategoryTokens,
    ContentPriority,
    ContextBuildOptions,
    ContextCategory,
    ContextMessage,
    ContextMetadata,
    ContextStrategy,
    IncludedNodes,
)
from branch_context.models.node import ConversationNode
from branch_context.services.background import BackgroundTasks
from branch_context.services.build_coalescer import BuildCoalescer
from branch_context.services.cache_backend import CacheBackend, InMemoryCacheBackend
from branch_context.services.context_cache import ContextCache
from branch_context.services.node_store import NodeStore
from branch_context.services.redis_cache_backend import RedisCacheBackend
from branch_context.services.reference_extractor import (
    extract_references,
    merge_references,
    resolve_references,
)
from branch_context.services.strategy_selector import category_weights, select_strategy
from branch_context.services.token_budget import TokenBudgetAllocator, render_node
from branch_context.services.weighting_service import NodeWeightingEngine
from branch_context.utils.token_counter import TokenCounter, create_token_counter

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ContextBuildingService:
    """Service for building conversation context within a token budget."""

    def __init__(
        self,
        store: NodeStore,
        cache: ContextCache,
        coalescer: BuildCoalescer[AssembledContext],
        token_counter: TokenCounter,
        weighting: NodeWeightingEngine | None = None,
        allocator: TokenBudgetAllocator | None = None,
        background: BackgroundTasks | None = None,
        default_max_tokens: int = 4000,
        default_model: str = "gpt-4o",
        token_buffer_ratio: float = 0.1,
        fallback_max_tokens: int = 1000,
        batch_max_concurrency: int = 10,
    ) -> None:
        """Initialize context building service.

        Args:
            store: Read-only node store
            cache: Assembled-context cache
            coalescer: Registry of in-flight builds
            token_counter: Model-aware token counter
            weighting: Weighting engine (defaults when omitted)
            allocator: Token budget allocator (defaults when omitted)
            background: Owner of warm-up and maintenance tasks
            default_max_tokens: Budget used when options do not set one
            default_model: Model used when options do not set one
            token_buffer_ratio: Safety buffer ratio for token budget (0.0-0.3)
            fallback_max_tokens: Token cap of the degraded context
            batch_max_concurrency: Concurrent builds for batches and warm-ups
        """
        if not 0.0 <= token_buffer_ratio <= 0.3:
            raise ValueError("token_buffer_ratio must be between 0.0 and 0.3")

        self.store = store
        self.cache = cache
        self.coalescer = coalescer
        self.token_counter = token_counter
        self.weighting = weighting or NodeWeightingEngine()
        self.allocator = allocator or TokenBudgetAllocator(token_counter)
        self.background = background or BackgroundTasks()
        self.default_max_tokens = default_max_tokens
        self.default_model = default_model
        self.token_buffer_ratio = token_buffer_ratio
        self.fallback_max_tokens = fallback_max_tokens
        self.batch_max_concurrency = batch_max_concurrency

        self._warmup_semaphore = asyncio.Semaphore(batch_max_concurrency)

    @classmethod
    def from_settings(
        cls,
        store: NodeStore,
        settings: Settings,
        backend: CacheBackend | None = None,
        token_counter: TokenCounter | None = None,
    ) -> "ContextBuildingService":
        """Wire a service from application settings.

        Args:
            store: Read-only node store
            settings: Application settings
            backend: Cache backend override (built from settings when omitted)
            token_counter: Token counter override

        Returns:
            Configured service
        """
        if backend is None:
            if settings.cache_backend == "redis" and settings.redis_url:
                backend = RedisCacheBackend.from_url(
                    settings.redis_url,
                    namespace=settings.redis_namespace,
                    compression=settings.cache_compression,
                )
            else:
                backend = InMemoryCacheBackend(max_size=settings.cache_max_size)

        counter = token_counter or create_token_counter(settings.token_counter)
        return cls(
            store=store,
            cache=ContextCache(
                backend,
                ttl_seconds=settings.cache_ttl_seconds,
                enabled=settings.cache_enabled,
            ),
            coalescer=BuildCoalescer(),
            token_counter=counter,
            weighting=NodeWeightingEngine(
                recency_half_life_hours=settings.recency_half_life_hours,
                reference_boost=settings.reference_boost,
                secondary_weight=settings.secondary_weight,
            ),
            allocator=TokenBudgetAllocator(
                counter,
                max_reallocation_rounds=settings.max_reallocation_rounds,
                parent_min_tokens=settings.parent_min_tokens,
                summary_line_tokens=settings.summary_line_tokens,
            ),
            default_max_tokens=settings.default_max_tokens,
            default_model=settings.default_model,
            token_buffer_ratio=settings.token_buffer_ratio,
            fallback_max_tokens=settings.fallback_max_tokens,
            batch_max_concurrency=settings.batch_max_concurrency,
        )

    def start(self) -> None:
        """Start background maintenance (in-process cache expiry sweep)."""
        if isinstance(self.cache.backend, InMemoryCacheBackend):
            self.background.spawn("cache-expiry-sweep", self.cache.run_expiry_sweep())

    async def close(self) -> None:
        """Stop background work and release the cache backend."""
        await self.background.shutdown()
        await self.cache.close()

    async def build_context(
        self,
        node_id: str,
        prompt: str,
        options: ContextBuildOptions | None = None,
    ) -> AssembledContext:
        """Build the context for a new turn under ``node_id``.

        Concurrent calls with an identical request share one build and
        receive the same result object.

        Args:
            node_id: Target (new) node id; its ancestors form the context
            prompt: The new user turn
            options: Build options

        Returns:
            AssembledContext ending with the new user turn

        Raises:
            NodeNotFoundError: If the target node does not exist
            StoreUnavailableError: If the ancestor chain cannot be read
        """
        resolved = (options or ContextBuildOptions()).with_defaults(
            self.default_max_tokens, self.default_model
        )
        key = ContextCache.make_key(node_id, resolved, prompt)
        return await self.coalescer.run(
            key, lambda: self._build_through_cache(key, node_id, prompt, resolved)
        )

    async def invalidate_session(self, session_id: str) -> int | None:
        """Invalidate every cached context of a session.

        Must be called whenever a node of the session is created or updated.

        Args:
            session_id: Session id

        Returns:
            New generation, or None if the cache backend is unavailable
        """
        generation = await self.cache.invalidate_session(session_id)
        logger.debug("Invalidated session %s (generation=%s)", session_id, generation)
        return generation

    async def build_batch(self, requests: Sequence[BuildRequest]) -> list[AssembledContext]:
        """Build many contexts with bounded concurrency.

        Args:
            requests: Build requests

        Returns:
            Results in request order

        Raises:
            NodeNotFoundError: If any target node does not exist
        """
        semaphore = asyncio.Semaphore(self.batch_max_concurrency)
        tasks = [
            asyncio.ensure_future(
                self._bounded(semaphore, self.build_context(r.node_id, r.prompt, r.options))
            )
            for r in requests
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            # Builds still running after the first failure are not left unowned
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    def schedule_warmup(self, requests: Sequence[BuildRequest]) -> list[asyncio.Task]:
        """Pre-build contexts in the background.

        Failures are recorded in ``self.background.errors`` and never raised
        to the caller.

        Args:
            requests: Build requests to warm

        Returns:
            Scheduled tasks
        """
        return [
            self.background.spawn(
                f"warmup:{r.node_id}",
                self._bounded(
                    self._warmup_semaphore,
                    self.build_context(r.node_id, r.prompt, r.options),
                ),
            )
            for r in requests
        ]

    async def get_stats(self) -> CacheStats:
        """Cache statistics including coalescing counters."""
        stats = await self.cache.get_stats()
        stats.coalesced_count = self.coalescer.coalesced_count
        stats.in_flight = self.coalescer.in_flight
        return stats

    async def _bounded(self, semaphore: asyncio.Semaphore, work: Awaitable[T]) -> T:
        async with semaphore:
            return await work

    async def _build_through_cache(
        self,
        key: str,
        node_id: str,
        prompt: str,
        options: ContextBuildOptions,
    ) -> AssembledContext:
        started = time.perf_counter()

        target = await self.store.get_node(node_id)
        if target is None:
            raise NodeNotFoundError(node_id)

        use_cache = options.use_cache and self.cache.enabled
        generation: int | None = None
        if use_cache:
            # Read before building so a concurrent mutation makes this entry stale
            generation = await self.cache.generation(target.session_id)
            cached = await self.cache.get(key, generation)
            if cached is not None:
                latency_ms = (time.perf_counter() - started) * 1000
                self.cache.record_latency(latency_ms)
                logger.debug("Cache hit for node %s", target.short_id)
                return cached.with_instrumentation(cache_hit=True, build_latency_ms=latency_ms)

        context = await self._assemble(target, prompt, options)

        if use_cache and not context.metadata.degraded:
            await self.cache.put(key, context, generation)

        latency_ms = (time.perf_counter() - started) * 1000
        self.cache.record_latency(latency_ms)
        meta = context.metadata
        logger.info(
            "Built context for node %s: strategy=%s priority=%s selected=%d/%d "
            "tokens=%d/%d adjustments=%d degraded=%s latency=%.1fms",
            target.short_id,
            meta.strategy.value,
            meta.priority.value,
            meta.selected_count,
            meta.candidate_count,
            meta.total_tokens,
            meta.max_tokens,
            meta.adaptive_adjustments,
            meta.degraded,
            latency_ms,
        )
        return context.with_instrumentation(cache_hit=False, build_latency_ms=latency_ms)

    async def _assemble(
        self,
        target: ConversationNode,
        prompt: str,
        options: ContextBuildOptions,
    ) -> AssembledContext:
        """Weighted build with fallback to the ancestor-only context."""
        try:
            return await self._assemble_weighted(target, prompt, options)
        except WeightingDegradedError as e:
            logger.warning(
                "Context build for node %s degraded (%s): %s",
                target.short_id,
                e.reason,
                type(e.__cause__ or e).__name__,
            )
            return await self._fallback_context(target, prompt, options, e.reason)

    async def _assemble_weighted(
        self,
        target: ConversationNode,
        prompt: str,
        options: ContextBuildOptions,
    ) -> AssembledContext:
        model = options.model or self.default_model
        max_tokens = options.max_tokens or self.default_max_tokens

        fragments = merge_references(options.include_references, extract_references(prompt))
        ancestors = await self._get_ancestors(target)
        references = await self._resolve_references(target, fragments)
        strategy, priority = select_strategy(
            prompt,
            has_references=bool(references),
            strategy=options.strategy,
            priority=options.priority,
        )
        siblings = await self._get_siblings(target, ancestors) if options.include_siblings else []

        try:
            candidates = self._collect_candidates(target, ancestors, siblings, references)
            ranked = self.weighting.weigh(candidates, target, prompt, strategy, priority)
            prompt_tokens = self.token_counter.count(prompt, model)
            allocation = self.allocator.allocate(
                ranked,
                category_weights(strategy, options.custom_weights),
                self._context_budget(max_tokens, prompt_tokens),
                model,
                strategy,
                adaptive=options.adaptive_tokens,
            )
        except (ArithmeticError, LookupError, TypeError, ValueError) as e:
            raise WeightingDegradedError(f"Weighting failed: {e}") from e

        messages = (*allocation.messages, ContextMessage(role="user", content=prompt))
        metadata = ContextMetadata(
            strategy=strategy,
            priority=priority,
            model=model,
            max_tokens=max_tokens,
            total_tokens=allocation.total_tokens + prompt_tokens,
            included=allocation.included,
            token_distribution=allocation.distribution,
            truncated_node_ids=allocation.truncated_node_ids,
            candidate_count=len(ranked),
            selected_count=allocation.selected_count,
            adaptive_adjustments=allocation.adaptive_adjustments,
            weights=tuple(
                CandidateWeight(
                    node_id=c.node_id,
                    category=c.category,
                    weight=round(c.weight, 6),
                    reason=c.reason,
                )
                for c in ranked
            ),
        )
        return AssembledContext(messages=messages, metadata=metadata)

    def _context_budget(self, max_tokens: int, prompt_tokens: int) -> int:
        """Tokens left for context after the safety buffer and the new turn."""
        return max(0, int(max_tokens * (1.0 - self.token_buffer_ratio)) - prompt_tokens)

    async def _get_ancestors(self, target: ConversationNode) -> list[ConversationNode]:
        """Ancestors of the target, root first, target excluded."""
        chain = await self.store.get_ancestor_chain(target.id)
        return [node for node in chain if node.id != target.id]

    async def _get_siblings(
        self,
        target: ConversationNode,
        ancestors: list[ConversationNode],
    ) -> list[ConversationNode]:
        """Children of each ancestor that are off the target's path."""
        on_path = {node.id for node in ancestors} | {target.id}
        children = await asyncio.gather(*(self.store.get_children(a.id) for a in ancestors))
        return [
            child
            for group in children
            for child in group
            if child.id not in on_path
        ]

    async def _resolve_references(
        self,
        target: ConversationNode,
        fragments: list[str],
    ) -> list[ConversationNode]:
        if not fragments:
            return []
        try:
            session_nodes = await self.store.get_session_nodes(target.session_id)
        except StoreUnavailableError as e:
            raise ReferenceResolutionError(f"Reference lookup failed: {e}") from e

        candidates = [node for node in session_nodes if node.id != target.id]
        return resolve_references(fragments, candidates)

    def _collect_candidates(
        self,
        target: ConversationNode,
        ancestors: list[ConversationNode],
        siblings: list[ConversationNode],
        references: list[ConversationNode],
    ) -> list[CandidateNode]:
        """Annotate nodes with category and structural distance, deduplicated."""
        referenced_ids = {node.id for node in references}
        parent_id = target.parent_id

        candidates: dict[str, CandidateNode] = {}
        for node in ancestors:
            candidates[node.id] = CandidateNode(
                node=node,
                category=ContextCategory.ANCESTOR,
                distance=max(1, target.depth - node.depth),
                is_parent=node.id == parent_id,
                is_referenced=node.id in referenced_ids,
            )
        for node in references:
            if node.id not in candidates:
                candidates[node.id] = CandidateNode(
                    node=node,
                    category=ContextCategory.REFERENCE,
                    distance=abs(target.depth - node.depth) + 1,
                    is_referenced=True,
                )
        for node in siblings:
            if node.id not in candidates:
                candidates[node.id] = CandidateNode(
                    node=node,
                    category=ContextCategory.SIBLING,
                    distance=max(1, target.depth - node.depth + 1),
                )
        return list(candidates.values())

    async def _fallback_context(
        self,
        target: ConversationNode,
        prompt: str,
        options: ContextBuildOptions,
        reason: str,
    ) -> AssembledContext:
        """Ancestor-only context under a conservative cap, newest first.

        The immediate parent is always kept, truncated if necessary.
        """
        model = options.model or self.default_model
        max_tokens = options.max_tokens or self.default_max_tokens
        cap = min(self.fallback_max_tokens, max_tokens)

        ancestors = await self._get_ancestors(target)
        prompt_tokens = self.token_counter.count(prompt, model)
        budget = max(0, cap - prompt_tokens)

        kept: list[tuple[ConversationNode, list[ContextMessage]]] = []
        truncated: list[str] = []
        used = 0
        for node in reversed(ancestors):
            messages = render_node(node)
            cost = self.allocator.count_messages(messages, model)
            if used + cost > budget:
                if node.id != target.parent_id:
                    break
                limit = max(budget, min(self.allocator.parent_min_tokens, cost))
                messages = self.allocator.truncate_messages(messages, limit, model)
                cost = self.allocator.count_messages(messages, model)
                truncated.append(node.id)
            kept.append((node, messages))
            used += cost
            if node.id in truncated:
                break

        kept.reverse()
        messages = [m for _, node_messages in kept for m in node_messages]
        messages.append(ContextMessage(role="user", content=prompt))
        ancestor_ids = tuple(node.id for node, _ in kept)

        metadata = ContextMetadata(
            strategy=ContextStrategy.MINIMAL,
            priority=ContentPriority.RECENCY,
            model=model,
            max_tokens=max_tokens,
            total_tokens=used + prompt_tokens,
            included=IncludedNodes(ancestors=ancestor_ids),
            token_distribution=CategoryTokens(ancestors=used),
            truncated_node_ids=tuple(truncated),
            candidate_count=len(ancestors),
            selected_count=len(kept),
            degraded=True,
            degradation_reason=reason,
        )
        return AssembledContext(messages=tuple(messages), metadata=metadata)
