"""
Health check endpoints.

Provides liveness and readiness probes plus a metrics snapshot.
"""

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from chatrelay.config import get_settings
from chatrelay.core.metrics import metrics
from chatrelay.db import verify_database_connection

router = APIRouter(tags=["health"])


@router.get("/health")
@router.get("/healthz")
async def healthcheck() -> dict[str, Any]:
    """
    Health check endpoint.

    Returns basic service health status. Used by load balancers,
    orchestrators, and monitoring systems.
    """
    settings = get_settings()

    return {
        "status": "ok",
        "version": "0.1.0",
        "timestamp": datetime.now(UTC).isoformat(),
        "debug": settings.debug,
    }


@router.get("/readyz")
async def readiness(request: Request) -> JSONResponse:
    """Readiness check: the record store is reachable and the relay is wired up."""
    checks: dict[str, bool] = {
        "database": verify_database_connection(),
        "relay": getattr(request.app.state, "relay_service", None) is not None,
    }
    all_ready = all(checks.values())
    payload: dict[str, Any] = {
        "status": "ready" if all_ready else "not_ready",
        "timestamp": datetime.now(UTC).isoformat(),
        "checks": checks,
    }
    return JSONResponse(
        status_code=status.HTTP_200_OK if all_ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=payload,
    )


@router.get("/metrics")
async def metrics_snapshot() -> dict[str, Any]:
    """Counters and gauges for turns, keys and history writes."""
    return metrics.snapshot()
