from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Tuple

import redis.asyncio as aioredis
from redis import Redis

# (token_hash, payload, token_expiry)
BlacklistRecord = Tuple[str, Dict[str, Any], datetime]


def _blacklist_key(token_hash: str) -> str:
    return f"blacklist:{token_hash}"


class RedisCache:
    """Thin Redis wrapper acting as the fast layer of the token blacklist."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least 1.

        Naive timestamps are treated as UTC. Redis rejects zero or negative
        expirations, so already-expired tokens still get a one-second entry.
        """

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the fast blacklist path."""
        # A short-lived sync client keeps the async client off a temporary startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def blacklist_many(self, records: Iterable[BlacklistRecord]) -> int:
        pipe = self.client.pipeline()
        count = 0
        for token_hash, payload, expires_at in records:
            pipe.set(
                _blacklist_key(token_hash),
                json.dumps(payload),
                ex=self._ttl_seconds(expires_at),
            )
            count += 1
        if count:
            await pipe.execute()
        return count

    async def is_blacklisted(self, token_hash: str) -> bool:
        return bool(await self.client.exists(_blacklist_key(token_hash)))

    async def close(self) -> None:
        """Close the Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client to avoid event loop binding issues in pytest
    (each test runs its own ``asyncio.run``) but exposes the same awaitable
    methods as :class:`RedisCache`.
    """

    def __init__(
        self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def blacklist_many(self, records: Iterable[BlacklistRecord]) -> int:
        pipe = self._sync_client.pipeline()
        count = 0
        for token_hash, payload, expires_at in records:
            pipe.set(
                _blacklist_key(token_hash),
                json.dumps(payload),
                ex=RedisCache._ttl_seconds(expires_at),
            )
            count += 1
        if count:
            pipe.execute()
        return count

    async def is_blacklisted(self, token_hash: str) -> bool:
        return bool(self._sync_client.exists(_blacklist_key(token_hash)))

    async def close(self) -> None:
        self._sync_client.close()
