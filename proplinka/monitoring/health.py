"""
Health checks backing the liveness and readiness endpoints.

The database is the only hard dependency. Listings, offers and messaging
keep working without Redis (rate limiting and webhook de-duplication fail
open) and without Stripe (only checkout is affected), so those failures
report ``degraded`` instead of ``unhealthy`` and do not take the pod out of
rotation.
"""
import asyncio
import os
import tempfile
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import stripe
import structlog
from sqlalchemy import text

from proplinka.config import get_settings
from proplinka.database.connection import get_session_factory

logger = structlog.get_logger(__name__)

CRITICAL_CHECKS = frozenset({"database"})
CHECK_TIMEOUT_SECONDS = 5.0


class HealthCheck:
    """Runs dependency checks and folds them into one status."""

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        timeout: float = CHECK_TIMEOUT_SECONDS,
    ) -> None:
        self.settings = get_settings()
        self.redis_client = redis_client
        self.timeout = timeout

    async def check_database(self) -> Dict[str, Any]:
        async with get_session_factory()() as db:
            await db.execute(text("SELECT 1"))
        return {}

    async def check_redis(self) -> Dict[str, Any]:
        client = self.redis_client or aioredis.from_url(self.settings.redis_url)
        try:
            await client.ping()
        finally:
            if client is not self.redis_client:
                await client.aclose()
        return {}

    async def check_stripe(self) -> Dict[str, Any]:
        stripe.api_key = self.settings.stripe_secret_key
        # Cheapest authenticated call
        await asyncio.get_running_loop().run_in_executor(None, stripe.Balance.retrieve)
        return {"test_mode": self.settings.is_test_mode}

    async def check_media_storage(self) -> Dict[str, Any]:
        media_root = self.settings.media_root
        os.makedirs(media_root, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=media_root, prefix=".health-"):
            pass
        return {"path": media_root}

    def _checks(self) -> Dict[str, Callable[[], Awaitable[Dict[str, Any]]]]:
        return {
            "database": self.check_database,
            "redis": self.check_redis,
            "stripe": self.check_stripe,
            "media_storage": self.check_media_storage,
        }

    async def _run(
        self, name: str, check: Callable[[], Awaitable[Dict[str, Any]]]
    ) -> Dict[str, Any]:
        try:
            details = await asyncio.wait_for(check(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", check=name, timeout=self.timeout)
            return {"status": "unhealthy", "error": f"timed out after {self.timeout}s"}
        except Exception as e:
            logger.error("health_check_failed", check=name, error=str(e))
            return {"status": "unhealthy", "error": str(e)}
        return {"status": "healthy", **details}

    async def check_all(self) -> Dict[str, Any]:
        """
        Run every check concurrently.

        Returns:
            ``healthy`` when everything passes, ``degraded`` when only
            non-critical checks fail, ``unhealthy`` when a critical one fails
        """
        checks = self._checks()
        results = await asyncio.gather(*(self._run(name, fn) for name, fn in checks.items()))
        by_name = dict(zip(checks, results))

        failed = {name for name, result in by_name.items() if result["status"] != "healthy"}
        if failed & CRITICAL_CHECKS:
            overall = "unhealthy"
        elif failed:
            overall = "degraded"
        else:
            overall = "healthy"
        return {"status": overall, "checks": by_name}

    async def liveness(self) -> Dict[str, Any]:
        """Process is up; dependencies are not consulted."""
        return {"status": "alive", "checks": {}}

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
