############################################################
#
# tinychat - Streaming LLM Chat Service
#
# health.py: Health check and Prometheus metrics endpoints
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Health check and metrics endpoints."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Gauge, generate_latest

from tinychat.app.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["health"])

# Prometheus metrics
REGISTERED_MODELS = Gauge(
    "tinychat_registered_models",
    "Model identifiers with an explicit adapter",
)
ACTIVE_TURNS = Gauge(
    "tinychat_active_turns",
    "Chat turns currently producing output",
)


@router.get("/healthz")
async def liveness_probe() -> Dict[str, str]:
    """
    Liveness probe - checks if the application is running.

    Returns 200 if the application is alive.
    """
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/readyz")
async def readiness_probe(request: Request, response: Response) -> Dict[str, Any]:
    """
    Readiness probe - checks if the application is ready to serve traffic.

    Checks:
    - Database connectivity
    - Adapter registry built
    """
    checks = {
        "database": False,
        "adapters": False,
    }

    try:
        await request.app.state.database.ping()
        checks["database"] = True
    except Exception as e:
        logger.warning("readiness_database_failed", error=str(e))

    checks["adapters"] = getattr(request.app.state, "registry", None) is not None

    all_ready = all(checks.values())
    if not all_ready:
        response.status_code = 503

    return {
        "status": "ready" if all_ready else "not_ready",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/metrics")
async def prometheus_metrics(request: Request) -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    if not request.app.state.settings.metrics_enabled:
        return Response(status_code=404)

    registry = getattr(request.app.state, "registry", None)
    if registry is not None:
        REGISTERED_MODELS.set(len(registry.model_ids()))
    relay = getattr(request.app.state, "relay", None)
    if relay is not None:
        ACTIVE_TURNS.set(relay.active_turns)

    metrics = generate_latest()
    return Response(content=metrics, media_type=CONTENT_TYPE_LATEST)
