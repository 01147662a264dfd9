"""
Bounded Redis connection pool for the counter store.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.logging import get_logger


class StorePool:
    """A fixed set of reusable Redis connections.

    ``client()`` checks one connection out for the duration of the ``async
    with`` block and returns it afterwards. When every connection is busy,
    checkout waits up to ``timeout`` seconds and then raises
    ``redis.exceptions.ConnectionError``.
    """

    def __init__(self, pool: redis.BlockingConnectionPool):
        self._pool = pool
        self.logger = get_logger("gateway.store_pool")

    @classmethod
    def from_url(cls, url: str, *, max_connections: int = 10, timeout: float = 2.0) -> "StorePool":
        pool = redis.BlockingConnectionPool.from_url(
            url,
            max_connections=max_connections,
            timeout=timeout,
            socket_connect_timeout=timeout,
            decode_responses=True,
        )
        return cls(pool)

    @classmethod
    def from_config(cls, config) -> "StorePool":
        return cls.from_url(
            config.redis_url,
            max_connections=config.redis_pool_max_connections,
            timeout=config.redis_pool_timeout_seconds,
        )

    @asynccontextmanager
    async def client(self) -> AsyncIterator[redis.Redis]:
        """Check out a client pinned to one pooled connection."""
        client = redis.Redis(connection_pool=self._pool, single_connection_client=True)
        try:
            await client.initialize()
            yield client
        finally:
            # Hands the connection back; the shared pool stays open.
            await client.aclose()

    async def ping(self) -> bool:
        """Return True when the store answers a PING."""
        try:
            async with self.client() as client:
                return bool(await client.ping())
        except RedisError as exc:
            self.logger.error("Counter store ping failed", error=str(exc))
            return False

    async def close(self) -> None:
        """Disconnect every pooled connection."""
        await self._pool.disconnect()
