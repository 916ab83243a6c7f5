"""Keyed caches with explicit TTL and invalidation.

Usage aggregates are cached per subscription. The cache is injected into the
usage tracker rather than living at module level, and every write path calls
`invalidate_prefix` explicitly.
"""

import json
import platform
import socket
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

import redis.asyncio as redis

from cadence.core.clock import Clock, system_clock
from cadence.core.config import settings
from cadence.core.logging import logger


class KeyedCache(Protocol):
    """Async key/value cache with per-entry TTL."""

    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value or None when missing or expired."""
        ...

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        """Store a JSON-serializable value."""
        ...

    async def invalidate(self, key: str) -> None:
        """Drop one key."""
        ...

    async def invalidate_prefix(self, prefix: str) -> int:
        """Drop every key starting with `prefix`; returns the number removed."""
        ...

    async def clear(self) -> None:
        """Drop everything this cache owns."""
        ...


class MemoryCache:
    """In-process cache, expiry measured against an injected clock."""

    def __init__(self, ttl_seconds: Optional[int] = None, clock: Optional[Clock] = None):
        """Initialize the cache.

        Args:
            ttl_seconds: Default TTL for entries written without an explicit one.
            clock: Time source used to expire entries.
        """
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.USAGE_CACHE_TTL_SECONDS
        self.clock = clock or system_clock
        self._entries: dict[str, tuple[Any, datetime]] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self.clock.now() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        self._entries[key] = (value, self.clock.now() + timedelta(seconds=ttl))

    async def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    async def invalidate_prefix(self, prefix: str) -> int:
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    async def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisCache:
    """Cache backed by Redis; values are JSON-encoded under a namespace."""

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        namespace: str = "cadence:usage",
        ttl_seconds: Optional[int] = None,
    ):
        """Initialize the cache.

        Args:
            client: Redis client; one with a tuned connection pool is built when omitted.
            namespace: Prefix applied to every key this cache writes.
            ttl_seconds: Default TTL for entries written without an explicit one.
        """
        self._client = client
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.USAGE_CACHE_TTL_SECONDS

    @property
    def client(self) -> redis.Redis:
        """Get or create the Redis client."""
        if self._client is None:
            self._client = self._create_client()
        return self._client

    @staticmethod
    def _get_socket_keepalive_options() -> dict:
        """TCP keepalive settings; empty on macOS where the options are rejected."""
        if platform.system() == "Darwin":
            return {}
        if hasattr(socket, "TCP_KEEPIDLE"):
            return {
                socket.TCP_KEEPIDLE: 60,
                socket.TCP_KEEPINTVL: 10,
                socket.TCP_KEEPCNT: 6,
            }
        return {}

    def _create_client(self, max_connections: int = 20) -> redis.Redis:
        pool = redis.ConnectionPool(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            db=settings.REDIS_DB,
            password=settings.REDIS_PASSWORD if settings.REDIS_PASSWORD else None,
            decode_responses=True,
            max_connections=max_connections,
            socket_keepalive=True,
            socket_keepalive_options=self._get_socket_keepalive_options(),
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        return redis.Redis(connection_pool=pool)

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        await self.client.setex(self._key(key), ttl, json.dumps(value, default=str))

    async def invalidate(self, key: str) -> None:
        await self.client.delete(self._key(key))

    async def invalidate_prefix(self, prefix: str) -> int:
        removed = 0
        async for redis_key in self.client.scan_iter(match=f"{self._key(prefix)}*"):
            removed += await self.client.delete(redis_key)
        return removed

    async def clear(self) -> None:
        removed = await self.invalidate_prefix("")
        logger.debug(f"Cleared {removed} keys from {self.namespace}")

    async def close(self) -> None:
        """Close the underlying connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def build_usage_cache(clock: Optional[Clock] = None) -> KeyedCache:
    """Build the usage cache selected by USAGE_CACHE_BACKEND."""
    if settings.USAGE_CACHE_BACKEND == "redis":
        return RedisCache(ttl_seconds=settings.USAGE_CACHE_TTL_SECONDS)
    return MemoryCache(ttl_seconds=settings.USAGE_CACHE_TTL_SECONDS, clock=clock)
