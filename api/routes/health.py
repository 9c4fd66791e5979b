"""Health check and metrics endpoints."""

import sqlite3
from datetime import datetime
from typing import Any, Dict

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from api.dependencies import get_app_settings
from core.config import SyncSettings
from core.observability.metrics import get_metrics


router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str
    services: Dict[str, str]


@router.get("/health", response_model=HealthResponse)
async def health_check(settings: SyncSettings = Depends(get_app_settings)) -> HealthResponse:
    """Health check endpoint."""
    storage = "up"
    try:
        conn = sqlite3.connect(settings.db_path)
        try:
            conn.execute("SELECT 1 FROM connections LIMIT 1")
        finally:
            conn.close()
    except sqlite3.Error:
        storage = "down"

    return HealthResponse(
        status="healthy" if storage == "up" else "degraded",
        timestamp=datetime.utcnow().isoformat(),
        version="1.0.0",
        services={
            "api": "up",
            "storage": storage,
            "ledger": "configured" if settings.prokip_api_url else "not_configured",
        }
    )


@router.get("/ready")
async def readiness_check() -> Dict[str, str]:
    """Readiness probe for Kubernetes."""
    return {"status": "ready"}


@router.get("/live")
async def liveness_check(response: Response) -> Dict[str, str]:
    """Liveness probe for Kubernetes."""
    return {"status": "alive"}


@router.get("/metrics")
async def metrics_summary() -> Dict[str, Any]:
    """In-process counters and timings since startup."""
    return get_metrics().get_summary()
