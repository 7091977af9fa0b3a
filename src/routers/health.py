"""Health check endpoint. Public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.biometrics.config_loader import get_pipeline_config
from src.config import get_settings

router = APIRouter(tags=["system"])
logger = logging.getLogger("wellpulse.health")


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness check. Returns 200 if the API process is up.

    Also reports whether the biometric service finished starting and which
    pipeline config version is loaded.
    """
    settings = get_settings()
    service_ok = getattr(request.app.state, "biometric_service", None) is not None
    try:
        config_version = get_pipeline_config().version
    except Exception as exc:
        logger.warning("Health check config load failed: %s", exc)
        config_version = None

    healthy = service_ok and config_version is not None
    return {
        "status": "healthy" if healthy else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "pipeline": "running" if service_ok else "starting",
        "pipeline_config_version": config_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
