"""
Tests for the dependency health checks.
"""
import asyncio
from typing import Any

import pytest

from proplinka.monitoring.health import HealthCheck


async def _ok() -> dict:
    return {}


async def _down() -> dict:
    raise ConnectionError("connection refused")


@pytest.fixture
def health(mocker: Any) -> HealthCheck:
    check = HealthCheck(timeout=0.5)
    mocker.patch.object(check, "check_redis", side_effect=_ok)
    mocker.patch.object(check, "check_stripe", side_effect=_ok)
    return check


@pytest.mark.integration
@pytest.mark.asyncio
async def test_all_healthy(health: HealthCheck) -> None:
    result = await health.check_all()

    assert result["status"] == "healthy"
    assert set(result["checks"]) == {"database", "redis", "stripe", "media_storage"}
    assert result["checks"]["media_storage"]["status"] == "healthy"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_stripe_outage_only_degrades(health: HealthCheck, mocker: Any) -> None:
    mocker.patch.object(health, "check_stripe", side_effect=_down)

    result = await health.check_all()

    assert result["status"] == "degraded"
    assert result["checks"]["stripe"] == {"status": "unhealthy", "error": "connection refused"}


@pytest.mark.integration
@pytest.mark.asyncio
async def test_database_outage_is_unhealthy(health: HealthCheck, mocker: Any) -> None:
    mocker.patch.object(health, "check_database", side_effect=_down)

    result = await health.check_all()

    assert result["status"] == "unhealthy"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_slow_check_times_out(health: HealthCheck, mocker: Any) -> None:
    async def hang() -> dict:
        await asyncio.sleep(5)
        return {}

    mocker.patch.object(health, "check_redis", side_effect=hang)

    result = await health.check_all()

    assert result["status"] == "degraded"
    assert "timed out" in result["checks"]["redis"]["error"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_liveness_ignores_dependencies(health: HealthCheck, mocker: Any) -> None:
    mocker.patch.object(health, "check_database", side_effect=_down)

    assert await health.liveness() == {"status": "alive", "checks": {}}
