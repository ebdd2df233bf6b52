"""
Redis-backed fixed-window rate limiting.

Each action counts requests per identifier (user id or client IP) in a
window; the counter key expires with the window.
"""
import time
from dataclasses import dataclass
from typing import Dict, Optional

import redis.asyncio as aioredis
import structlog

from proplinka.config import get_settings
from proplinka.core.exceptions import RateLimitExceededError
from proplinka.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Window length per action in seconds
WINDOWS: Dict[str, int] = {
    "api": 60,
    "auth": 15 * 60,
    "upload": 60 * 60,
    "email": 24 * 60 * 60,
    "inquiry": 60 * 60,
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int

    @property
    def retry_after(self) -> int:
        return max(self.reset_at - int(time.time()), 1)


class RateLimiter:
    """Fixed-window counters in Redis. Fails open when Redis is unavailable."""

    def __init__(self, redis_client: Optional[aioredis.Redis] = None, redis_url: Optional[str] = None):
        self.redis_client = redis_client
        self.redis_url = redis_url

    def _ensure_redis(self) -> aioredis.Redis:
        if self.redis_client is None:
            if self.redis_url is None:
                self.redis_url = get_settings().redis_url
            self.redis_client = aioredis.from_url(
                self.redis_url, encoding="utf-8", decode_responses=True
            )
        return self.redis_client

    @staticmethod
    def window_for(action: str) -> int:
        return WINDOWS.get(action, WINDOWS["api"])

    async def check(
        self, action: str, identifier: str, limit: int, now: Optional[float] = None
    ) -> RateLimitResult:
        """
        Count a request and report whether it is within the limit.

        Args:
            action: Rate limited action (api, auth, upload, email, inquiry)
            identifier: Who is being limited
            limit: Requests allowed per window
            now: Optional clock override (epoch seconds)

        Returns:
            RateLimitResult: Decision and remaining budget
        """
        window = self.window_for(action)
        current = int(now if now is not None else time.time())
        window_start = current - (current % window)
        reset_at = window_start + window
        key = f"ratelimit:{action}:{identifier}:{window_start}"

        try:
            redis = self._ensure_redis()
            pipe = redis.pipeline()
            pipe.incr(key)
            pipe.expire(key, window)
            count, _ = await pipe.execute()
        except Exception as e:
            logger.warning("rate_limit_check_error", action=action, error=str(e))
            return RateLimitResult(allowed=True, limit=limit, remaining=limit, reset_at=reset_at)

        count = int(count)
        allowed = count <= limit
        if not allowed:
            metrics.record_rate_limited(action)
            logger.warning(
                "rate_limit_exceeded",
                action=action,
                identifier=identifier,
                count=count,
                limit=limit,
            )

        return RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(limit - count, 0),
            reset_at=reset_at,
        )

    async def enforce(self, action: str, identifier: str, limit: int) -> RateLimitResult:
        """
        Like check, but raise when the limit is exceeded.

        Raises:
            RateLimitExceededError: If the caller is over the limit
        """
        result = await self.check(action, identifier, limit)
        if not result.allowed:
            raise RateLimitExceededError(
                f"Rate limit exceeded for {action}. Try again later.",
                retry_after=result.retry_after,
            )
        return result

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
