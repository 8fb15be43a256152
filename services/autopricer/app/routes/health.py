"""
Health Check Endpoint

Provides service health status for container health checks and monitoring.
"""

from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from ..config import settings


router = APIRouter()


class ComponentHealth(BaseModel):
    """Health status of a component."""
    status: str  # "healthy", "degraded", "unhealthy"
    message: Optional[str] = None
    last_check: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str  # "healthy", "degraded", "unhealthy"
    service: str
    version: str
    environment: str
    timestamp: str
    components: dict[str, ComponentHealth]


# Component health checks, registered by the service at startup
_component_checks: dict[str, Callable[[], Awaitable[dict]]] = {}


def register_health_check(name: str, check_fn: Callable[[], Awaitable[dict]]) -> None:
    """Register a component health check function."""
    _component_checks[name] = check_fn


def clear_health_checks() -> None:
    _component_checks.clear()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Service health check endpoint.

    Returns overall health status and per-component breakdown
    (database, stream).
    """
    now = datetime.now(timezone.utc).isoformat()
    components: dict[str, ComponentHealth] = {}
    overall_status = "healthy"

    for name, check_fn in _component_checks.items():
        try:
            result = await check_fn()
            components[name] = ComponentHealth(
                status=result.get("status", "healthy"),
                message=result.get("message"),
                last_check=now,
            )
            if result.get("status") == "unhealthy":
                overall_status = "unhealthy"
            elif result.get("status") == "degraded" and overall_status == "healthy":
                overall_status = "degraded"
        except Exception as e:
            components[name] = ComponentHealth(
                status="unhealthy",
                message=str(e),
                last_check=now,
            )
            overall_status = "unhealthy"

    return HealthResponse(
        status=overall_status,
        service=settings.service_name,
        version=settings.service_version,
        environment=settings.environment,
        timestamp=now,
        components=components,
    )


@router.get("/health/live")
async def liveness_check() -> dict:
    """Liveness probe: the process is running."""
    return {"status": "ok"}


@router.get("/health/ready")
async def readiness_check() -> dict:
    """
    Readiness probe: the service can answer price list reads.

    Ready only while the registered database check reports healthy.
    """
    check_fn = _component_checks.get("database")
    if check_fn is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    try:
        result = await check_fn()
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Database check failed: {e}") from e
    if result.get("status", "healthy") != "healthy":
        raise HTTPException(status_code=503, detail=result.get("message") or "Database unavailable")
    return {"status": "ready"}


@router.get("/health/ingestion")
async def ingestion_health(request: Request) -> dict:
    """Listing stream counters (messages, drops by reason, reconnects)."""
    ingestor = getattr(request.app.state, "ingestor", None)
    if not ingestor:
        raise HTTPException(status_code=503, detail="Stream ingestion not running")
    return ingestor.get_stats().model_dump(by_alias=True, mode="json")
