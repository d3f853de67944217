from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis-backed rate-limit log and token blacklist.

    Mirrors the count/record and blacklist contract of the relational store so
    the rate limiter and token validator can switch backends without changing
    their decisions.
    """

    # Upper bound on how long rate-limit members are retained
    DEFAULT_RETENTION_SECONDS = 86400

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
    ):
        self.redis_url = redis_url
        self.retention_seconds = retention_seconds
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """TTL for an absolute expiry; naive values are UTC and the result is at least 1s."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _rate_key(limit_type: str, identifier: str) -> str:
        # Hash the identifier so "email:ip" composites cannot collide with key delimiters
        digest = hashlib.sha256(identifier.encode()).hexdigest()
        return f"rate:{limit_type}:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the Redis backend."""
        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def count_rate_limit_requests(
        self, limit_type: str, identifier: str, since: datetime
    ) -> int:
        key = self._rate_key(limit_type, identifier)
        since_ts = since.timestamp()
        pipe = self.client.pipeline()
        pipe.zremrangebyscore(key, "-inf", since_ts - self.retention_seconds)
        # "(" makes the lower bound exclusive: created_at > since
        pipe.zcount(key, f"({since_ts}", "+inf")
        _, count = await pipe.execute()
        return int(count or 0)

    async def record_rate_limit_request(self, limit_type: str, identifier: str) -> None:
        key = self._rate_key(limit_type, identifier)
        now_ts = datetime.now(timezone.utc).timestamp()
        pipe = self.client.pipeline()
        pipe.zadd(key, {f"{now_ts}:{uuid.uuid4().hex}": now_ts})
        pipe.expire(key, self.retention_seconds)
        await pipe.execute()

    async def blacklist_token(self, jti: str, expires_at: datetime) -> None:
        await self.client.set(
            f"auth:access:denylist:{jti}", "1", ex=self._ttl_seconds(expires_at)
        )

    async def is_token_blacklisted(self, jti: str, now: datetime) -> bool:
        # Redis expiry already drops entries whose token has lapsed
        return bool(await self.client.exists(f"auth:access:denylist:{jti}"))

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
