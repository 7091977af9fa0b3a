"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.biometrics.adapters import FitbitAdapter, GarminAdapter
from src.biometrics.base import DeviceType
from src.biometrics.service import BiometricService, ServiceOptions
from src.biometrics.sync import RetryPolicy
from src.config import Settings, get_settings


def build_biometric_service(settings: Settings) -> BiometricService:
    """Construct the orchestrator from application settings."""
    options = ServiceOptions(
        retry=RetryPolicy(
            timeout=settings.adapter_timeout_seconds,
            attempts=settings.adapter_retry_attempts,
            backoff_min=settings.adapter_backoff_min_seconds,
            backoff_max=settings.adapter_backoff_max_seconds,
        ),
        debounce_seconds=settings.stream_debounce_seconds,
        stream_max_retries=settings.stream_max_retries,
        subscriber_buffer_size=settings.subscriber_buffer_size,
        sync_enabled=settings.device_sync_enabled,
        sync_interval_seconds=settings.device_sync_interval_seconds,
        privacy_before_validation=settings.privacy_before_validation,
        recent_window_minutes=settings.recent_window_minutes,
    )
    return BiometricService(
        options,
        adapters={
            DeviceType.FITBIT: FitbitAdapter(api_base=settings.fitbit_api_base),
            DeviceType.GARMIN: GarminAdapter(api_base=settings.garmin_api_base),
        },
    )


async def get_biometric_service(request: Request) -> BiometricService:
    """Return the service created by the app lifespan."""
    service: BiometricService | None = getattr(request.app.state, "biometric_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Biometric service not ready")
    return service


# Annotated shortcuts for route signatures
Service = Annotated[BiometricService, Depends(get_biometric_service)]
AppSettings = Annotated[Settings, Depends(get_settings)]
