"""Liveness checks for the Redis connections."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis

logger = logging.getLogger(__name__)


async def check_redis_health(client: redis.Redis, timeout: float) -> Tuple[bool, Optional[str]]:
    """Check Redis health via PING command.

    Returns:
        (is_healthy, error_message)
    """
    try:
        await asyncio.wait_for(client.ping(), timeout=timeout)
        return True, None
    except asyncio.TimeoutError:
        return False, f"PING timed out after {timeout}s"
    except Exception as e:
        return False, str(e)


async def liveness(
    geocoding_redis: redis.Redis,
    ttl_redis: Optional[redis.Redis],
    timeout: float,
) -> Dict[str, Any]:
    """Ping both stores concurrently and report per-check status.

    A failing check marks the report unhealthy; it never raises.
    """
    targets = {"geocoding_redis": geocoding_redis}
    if ttl_redis is not None:
        targets["ttl_redis"] = ttl_redis

    results = await asyncio.gather(
        *(check_redis_health(client, timeout) for client in targets.values())
    )

    health_status: Dict[str, Any] = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {},
        "details": {},
    }
    for name, (is_healthy, error) in zip(targets, results):
        if is_healthy:
            health_status["checks"][name] = "healthy"
            logger.debug('Healthcheck passed for %s connection', name)
        else:
            health_status["checks"][name] = "unhealthy"
            health_status["details"][name] = {"error": error}
            health_status["status"] = "unhealthy"
            logger.warning('Healthcheck failed for %s: %s', name, error)

    return health_status
