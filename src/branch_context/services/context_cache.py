"""Assembled-context cache with generation-based invalidation."""

import asyncio
import hashlib
import logging

from branch_context.exceptions import CacheUnavailableError
from branch_context.models.context import (
    AssembledContext,
    CacheEntry,
    CacheStats,
    ContextBuildOptions,
)
from branch_context.services.cache_backend import CacheBackend

logger = logging.getLogger(__name__)


class ContextCache:
    """Cache of assembled contexts keyed by (node, options, prompt).

    An entry is valid only while its session generation matches the
    backend's current generation and its TTL has not elapsed. Backend
    failures count as misses and never fail the caller.
    """

    def __init__(
        self,
        backend: CacheBackend,
        ttl_seconds: int = 900,
        enabled: bool = True,
    ) -> None:
        """Initialize context cache.

        Args:
            backend: Storage backend
            ttl_seconds: Time-to-live for cache entries in seconds
            enabled: When False every lookup is a miss and nothing is stored
        """
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.enabled = enabled

        # Statistics
        self.hit_count = 0
        self.miss_count = 0
        self.error_count = 0
        self._latency_total_ms = 0.0
        self._latency_samples = 0

    @staticmethod
    def make_key(node_id: str, options: ContextBuildOptions, prompt: str) -> str:
        """Deterministic fingerprint of a build request.

        Args:
            node_id: Target node id
            options: Options with defaults applied
            prompt: Active prompt

        Returns:
            SHA256 hash key
        """
        prompt_hash = hashlib.sha256(prompt.encode("utf-8")).hexdigest()
        key_string = f"{node_id}|{options.serialize()}|{prompt_hash}"
        return hashlib.sha256(key_string.encode("utf-8")).hexdigest()

    async def generation(self, session_id: str) -> int | None:
        """Current generation of a session, or None if the backend is down."""
        if not self.enabled:
            return None
        try:
            return await self.backend.get_generation(session_id)
        except CacheUnavailableError as e:
            self._record_error("get_generation", e)
            return None

    async def get(self, key: str, generation: int | None) -> AssembledContext | None:
        """Look up a valid entry.

        Args:
            key: Cache key
            generation: Session generation observed before the lookup

        Returns:
            Cached context or None on miss
        """
        if generation is None:
            self.miss_count += 1
            return None

        try:
            entry = await self.backend.get(key)
        except CacheUnavailableError as e:
            self._record_error("get", e)
            self.miss_count += 1
            return None

        if entry is None or entry.generation != generation or entry.is_expired():
            self.miss_count += 1
            return None

        self.hit_count += 1
        return entry.context

    async def put(self, key: str, context: AssembledContext, generation: int | None) -> None:
        """Store a context under the generation read before it was built."""
        if generation is None:
            return
        try:
            await self.backend.set(
                key,
                CacheEntry(context=context, generation=generation),
                self.ttl_seconds,
            )
        except CacheUnavailableError as e:
            self._record_error("set", e)

    async def invalidate_session(self, session_id: str) -> int | None:
        """Bump a session's generation, invalidating all of its entries.

        Returns:
            New generation, or None if the backend is unavailable
        """
        try:
            return await self.backend.bump_generation(session_id)
        except CacheUnavailableError as e:
            self._record_error("bump_generation", e)
            return None

    async def clear(self) -> int:
        """Remove every entry and reset statistics.

        Returns:
            Number of entries removed
        """
        count = await self.backend.clear()
        self.hit_count = 0
        self.miss_count = 0
        self.error_count = 0
        self._latency_total_ms = 0.0
        self._latency_samples = 0
        return count

    def record_latency(self, latency_ms: float) -> None:
        """Record the latency of one served build request."""
        self._latency_total_ms += latency_ms
        self._latency_samples += 1

    async def get_stats(self) -> CacheStats:
        """Get cache statistics.

        Returns:
            Cache statistics object
        """
        try:
            total_entries = await self.backend.size()
        except CacheUnavailableError as e:
            self._record_error("size", e)
            total_entries = None

        total_requests = self.hit_count + self.miss_count
        hit_rate = self.hit_count / total_requests if total_requests > 0 else 0.0
        average_latency = (
            self._latency_total_ms / self._latency_samples if self._latency_samples else 0.0
        )
        return CacheStats(
            total_entries=total_entries,
            hit_count=self.hit_count,
            miss_count=self.miss_count,
            hit_rate=hit_rate,
            error_count=self.error_count,
            average_latency_ms=average_latency,
            compression_ratio=self.backend.compression_ratio,
        )

    async def run_expiry_sweep(self, interval_seconds: float | None = None) -> None:
        """Periodically drop expired entries until cancelled."""
        interval = interval_seconds or self.ttl_seconds / 2
        while True:
            await asyncio.sleep(interval)
            removed = await self.backend.sweep_expired()
            if removed:
                logger.debug("Swept %d expired cache entries", removed)

    async def close(self) -> None:
        await self.backend.close()

    def _record_error(self, operation: str, error: CacheUnavailableError) -> None:
        self.error_count += 1
        logger.warning("Cache backend %s failed, treating as miss: %s", operation, error)
