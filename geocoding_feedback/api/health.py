"""Liveness endpoint."""

from fastapi import APIRouter, HTTPException, Request
from typing import Dict, Any

from geocoding_feedback.lib.health import liveness

router = APIRouter()


@router.get("/liveness")
async def liveness_endpoint(request: Request) -> Dict[str, Any]:
    """
    Ping the geocoding and marker Redis connections.

    Returns 503 with per-check details when either connection is unhealthy
    or the notification listener has stopped.
    """
    state = request.app.state
    health_status = await liveness(state.geocoding_redis, state.ttl_redis, state.connection_timeout)
    if state.listener.is_running:
        health_status["listener"] = "running"
    else:
        health_status["listener"] = "stopped"
        health_status["status"] = "unhealthy"

    if health_status["status"] != "healthy":
        raise HTTPException(status_code=503, detail=health_status)

    return health_status
