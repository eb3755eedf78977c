"""Pluggable cache backends for assembled contexts."""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

from branch_context.models.context import CacheEntry


class CacheBackend(ABC):
    """Abstract base class for context cache backends.

    Backends raise ``CacheUnavailableError`` when they cannot be reached.
    """

    @abstractmethod
    async def get(self, key: str) -> CacheEntry | None:
        """Get an entry by key.

        Args:
            key: Cache key

        Returns:
            Entry or None on miss (expired entries are misses)
        """
        pass

    @abstractmethod
    async def set(self, key: str, entry: CacheEntry, ttl_seconds: int) -> None:
        """Store an entry with a time-to-live.

        Args:
            key: Cache key
            entry: Entry to store
            ttl_seconds: Time-to-live in seconds
        """
        pass

    @abstractmethod
    async def bump_generation(self, session_id: str) -> int:
        """Atomically increment a session's generation counter.

        Args:
            session_id: Session id

        Returns:
            New generation
        """
        pass

    @abstractmethod
    async def get_generation(self, session_id: str) -> int:
        """Get a session's generation counter (0 if never bumped)."""
        pass

    @abstractmethod
    async def clear(self) -> int:
        """Remove every entry.

        Returns:
            Number of entries removed, when known
        """
        pass

    async def size(self) -> int | None:
        """Number of stored entries, or None when the backend cannot tell."""
        return None

    async def sweep_expired(self) -> int:
        """Drop expired entries. Backends with native expiry do nothing."""
        return 0

    @property
    def compression_ratio(self) -> float | None:
        """Average stored/raw payload size, for compressing backends."""
        return None

    async def close(self) -> None:
        """Release backend resources."""
        return None


class InMemoryCacheBackend(CacheBackend):
    """Process-local cache with TTL and LRU eviction."""

    def __init__(self, max_size: int = 1000) -> None:
        """Initialize in-memory backend.

        Args:
            max_size: Maximum number of cache entries
        """
        self.max_size = max_size
        self.cache: dict[str, CacheEntry] = {}
        self.generations: dict[str, int] = {}

    async def get(self, key: str) -> CacheEntry | None:
        entry = self.cache.get(key)
        if entry is None:
            return None

        now = datetime.now(timezone.utc)
        if entry.is_expired(now):
            del self.cache[key]
            return None

        entry.hit_count += 1
        entry.last_accessed = now
        return entry

    async def set(self, key: str, entry: CacheEntry, ttl_seconds: int) -> None:
        entry.expires_at = entry.created_at + timedelta(seconds=ttl_seconds)

        # Check cache size and evict if needed
        if len(self.cache) >= self.max_size and key not in self.cache:
            self._evict_lru()

        self.cache[key] = entry

    async def bump_generation(self, session_id: str) -> int:
        # No suspension point between read and write
        generation = self.generations.get(session_id, 0) + 1
        self.generations[session_id] = generation
        return generation

    async def get_generation(self, session_id: str) -> int:
        return self.generations.get(session_id, 0)

    async def clear(self) -> int:
        count = len(self.cache)
        self.cache.clear()
        return count

    async def size(self) -> int | None:
        return len(self.cache)

    async def sweep_expired(self) -> int:
        now = datetime.now(timezone.utc)
        expired_keys = [key for key, entry in self.cache.items() if entry.is_expired(now)]
        for key in expired_keys:
            del self.cache[key]
        return len(expired_keys)

    def _evict_lru(self) -> None:
        """Evict least recently used entry."""
        if not self.cache:
            return

        # Oldest last_accessed, or oldest created_at if never accessed
        lru_key = min(
            self.cache.keys(),
            key=lambda k: self.cache[k].last_accessed or self.cache[k].created_at,
        )
        del self.cache[lru_key]
