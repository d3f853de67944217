from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from trialguard.config import Settings
from trialguard.logging import get_logger
from trialguard.storage.common import AuthStore
from trialguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class LimitType(str, Enum):
    PREAUTH_IP = "preauth_ip"
    PREAUTH_EMAIL = "preauth_email"
    USER = "user"
    IP = "ip"
    AUTH = "auth"


@dataclass(frozen=True)
class RateLimitResult:
    exceeded: bool
    remaining: int
    count: int
    limit: int

    def as_dict(self) -> dict:
        return {
            "exceeded": self.exceeded,
            "remaining": self.remaining,
            "count": self.count,
            "limit": self.limit,
        }


class RateLimiter:
    """Sliding-window counter per ``(limit_type, identifier)``.

    Counts requests recorded strictly inside the window, then records the
    current one. The count is taken before the insert, so ``limit`` prior
    requests is the first exceeded state. Fails open: when the count cannot
    be read the request is allowed with the full allowance.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _count(self, limit_type: str, identifier: str, since: datetime) -> int:
        if self.cache:
            return await self.cache.count_rate_limit_requests(limit_type, identifier, since)
        return self.store.count_rate_limit_requests(limit_type, identifier, since)

    async def _record(self, limit_type: str, identifier: str) -> None:
        if self.cache:
            await self.cache.record_rate_limit_request(limit_type, identifier)
            return
        self.store.record_rate_limit_request(limit_type, identifier)

    async def check(
        self,
        limit_type: str,
        identifier: str,
        limit: int,
        window_seconds: int,
        *,
        record: bool = True,
    ) -> RateLimitResult:
        limit_type = LimitType(limit_type).value
        since = self._now() - timedelta(seconds=window_seconds)
        try:
            count = await self._count(limit_type, identifier, since)
        except Exception as exc:
            self.logger.warning(
                "rate_limit_count_failed",
                limit_type=limit_type,
                identifier=identifier,
                error=str(exc),
            )
            return RateLimitResult(exceeded=False, remaining=limit, count=0, limit=limit)

        if record:
            await self.record(limit_type, identifier)

        exceeded = count >= limit
        if exceeded:
            self.logger.info(
                "rate_limit_exceeded",
                limit_type=limit_type,
                identifier=identifier,
                count=count,
                limit=limit,
            )
        return RateLimitResult(
            exceeded=exceeded,
            remaining=max(0, limit - count),
            count=count,
            limit=limit,
        )

    async def record(self, limit_type: str, identifier: str) -> None:
        """Record one request; a failed insert is logged and ignored."""
        try:
            await self._record(LimitType(limit_type).value, identifier)
        except Exception as exc:
            self.logger.warning(
                "rate_limit_record_failed",
                limit_type=limit_type,
                identifier=identifier,
                error=str(exc),
            )
