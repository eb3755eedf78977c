"""Distributed cache backend on Redis with compressed payloads."""

import json
import logging
import zlib
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from branch_context.exceptions import CacheUnavailableError
from branch_context.models.context import AssembledContext, CacheEntry
from branch_context.services.cache_backend import CacheBackend

logger = logging.getLogger(__name__)


class RedisCacheBackend(CacheBackend):
    """Cache entries as zlib-compressed JSON with native TTL.

    Keys are ``{namespace}:entry:{key}`` for entries and
    ``{namespace}:gen:{session_id}`` for generation counters.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        namespace: str = "branch-context",
        compression: bool = True,
    ) -> None:
        """Initialize Redis backend.

        Args:
            client: redis.asyncio client
            namespace: Key prefix
            compression: Whether payloads are zlib-compressed
        """
        self.client = client
        self.namespace = namespace
        self.compression = compression

        self._raw_bytes = 0
        self._stored_bytes = 0

    @classmethod
    def from_url(
        cls, url: str, namespace: str = "branch-context", compression: bool = True
    ) -> "RedisCacheBackend":
        """Create a backend from a Redis URL."""
        return cls(aioredis.from_url(url), namespace=namespace, compression=compression)

    def _entry_key(self, key: str) -> str:
        return f"{self.namespace}:entry:{key}"

    def _generation_key(self, session_id: str) -> str:
        return f"{self.namespace}:gen:{session_id}"

    async def get(self, key: str) -> CacheEntry | None:
        try:
            payload = await self.client.get(self._entry_key(key))
        except RedisError as e:
            raise CacheUnavailableError(f"Redis get failed: {e}") from e

        if payload is None:
            return None

        try:
            return self._decode(payload)
        except (KeyError, ValueError, zlib.error) as e:
            # Unreadable entries behave as misses
            logger.warning("Discarding undecodable cache entry: %s", e)
            return None

    async def set(self, key: str, entry: CacheEntry, ttl_seconds: int) -> None:
        payload = self._encode(entry)
        try:
            await self.client.set(self._entry_key(key), payload, ex=ttl_seconds)
        except RedisError as e:
            raise CacheUnavailableError(f"Redis set failed: {e}") from e

    async def bump_generation(self, session_id: str) -> int:
        try:
            return int(await self.client.incr(self._generation_key(session_id)))
        except RedisError as e:
            raise CacheUnavailableError(f"Redis incr failed: {e}") from e

    async def get_generation(self, session_id: str) -> int:
        try:
            value = await self.client.get(self._generation_key(session_id))
        except RedisError as e:
            raise CacheUnavailableError(f"Redis get failed: {e}") from e
        return int(value) if value is not None else 0

    async def clear(self) -> int:
        count = 0
        try:
            async for redis_key in self.client.scan_iter(match=self._entry_key("*")):
                count += await self.client.delete(redis_key)
        except RedisError as e:
            raise CacheUnavailableError(f"Redis clear failed: {e}") from e
        return count

    @property
    def compression_ratio(self) -> float | None:
        if not self._raw_bytes:
            return None
        return self._stored_bytes / self._raw_bytes

    async def close(self) -> None:
        await self.client.aclose()

    def _encode(self, entry: CacheEntry) -> bytes:
        document: dict[str, Any] = {
            "context": entry.context.model_dump(mode="json"),
            "generation": entry.generation,
            "created_at": entry.created_at.isoformat(),
        }
        raw = json.dumps(document, separators=(",", ":")).encode("utf-8")
        stored = zlib.compress(raw) if self.compression else raw

        self._raw_bytes += len(raw)
        self._stored_bytes += len(stored)
        return stored

    def _decode(self, payload: bytes) -> CacheEntry:
        # zlib streams start with 0x78; JSON documents start with "{"
        raw = zlib.decompress(payload) if payload[:1] == b"\x78" else payload
        document = json.loads(raw)
        return CacheEntry(
            context=AssembledContext.model_validate(document["context"]),
            generation=int(document["generation"]),
            created_at=datetime.fromisoformat(document["created_at"]),
            last_accessed=datetime.now(timezone.utc),
        )
