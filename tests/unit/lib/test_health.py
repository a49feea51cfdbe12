"""Unit tests for the Redis liveness checks."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from geocoding_feedback.lib.health import check_redis_health, liveness


def make_redis(side_effect=None):
    client = MagicMock()
    client.ping = AsyncMock(return_value=True, side_effect=side_effect)
    return client


@pytest.mark.asyncio
async def test_check_redis_health_ok():
    assert await check_redis_health(make_redis(), timeout=1.0) == (True, None)


@pytest.mark.asyncio
async def test_check_redis_health_reports_error():
    is_healthy, error = await check_redis_health(make_redis(OSError("Connection refused")), timeout=1.0)

    assert is_healthy is False
    assert error == "Connection refused"


@pytest.mark.asyncio
async def test_check_redis_health_times_out():
    async def slow_ping():
        await asyncio.sleep(1)

    client = MagicMock()
    client.ping = slow_ping

    is_healthy, error = await check_redis_health(client, timeout=0.01)

    assert is_healthy is False
    assert "timed out" in error


@pytest.mark.asyncio
async def test_liveness_marks_unhealthy_when_any_check_fails():
    result = await liveness(make_redis(), make_redis(OSError("down")), timeout=1.0)

    assert result["status"] == "unhealthy"
    assert result["checks"] == {"geocoding_redis": "healthy", "ttl_redis": "unhealthy"}
    assert result["details"] == {"ttl_redis": {"error": "down"}}
    assert "timestamp" in result


@pytest.mark.asyncio
async def test_liveness_without_marker_client():
    result = await liveness(make_redis(), None, timeout=1.0)

    assert result["status"] == "healthy"
    assert list(result["checks"]) == ["geocoding_redis"]
