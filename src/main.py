"""Wellpulse API: FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.biometrics.config_loader import reload_pipeline_config
from src.biometrics.errors import (
    BiometricServiceError,
    DataValidationError,
    DeviceConnectionError,
    DeviceNotFoundError,
    PrivacyViolationError,
    ProfileNotFoundError,
    StreamError,
)
from src.config import get_settings
from src.dependencies import build_biometric_service
from src.models.base import ErrorResponse
from src.routers import biometrics, health

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("wellpulse")


# ---------- Error mapping ----------

# Most specific first; the first isinstance match wins.
_ERROR_STATUS: list[tuple[type[BiometricServiceError], int]] = [
    (DeviceNotFoundError, 404),
    (ProfileNotFoundError, 404),
    (DataValidationError, 422),
    (PrivacyViolationError, 403),
    (DeviceConnectionError, 502),
    (StreamError, 409),
]
_CODE_STATUS = {
    "ALERT_NOT_FOUND": 404,
    "UNSUPPORTED_DEVICE_TYPE": 400,
    "INVALID_CREDENTIALS": 400,
    "INVALID_SHARING_LEVEL": 400,
    "INVALID_RETENTION_PERIOD": 400,
    "INVALID_DATA_TYPE": 400,
    "INVALID_PRIVACY_SETTINGS": 400,
}


def status_for(exc: BiometricServiceError) -> int:
    if exc.code in _CODE_STATUS:
        return _CODE_STATUS[exc.code]
    for error_cls, status in _ERROR_STATUS:
        if isinstance(exc, error_cls):
            return status
    return 500


async def biometric_error_handler(request: Request, exc: BiometricServiceError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(status_code=status, content=exc.to_dict())


_HTTP_CODES = {
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    503: "SERVICE_UNAVAILABLE",
}


def _describe(errors: list[dict]) -> str:
    parts = []
    for err in errors:
        loc = ".".join(str(p) for p in err.get("loc", ())[1:]) or "request"
        parts.append(f"{loc}: {err.get('msg', 'invalid value')}")
    return "; ".join(parts) or "Invalid request"


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(error=_describe(exc.errors()), code="INVALID_REQUEST").model_dump(),
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=str(exc.detail), code=_HTTP_CODES.get(exc.status_code, "HTTP_ERROR")
        ).model_dump(),
        headers=getattr(exc, "headers", None),
    )


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting Wellpulse API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    if settings.pipeline_config_path:
        reload_pipeline_config(Path(settings.pipeline_config_path))
    app.state.biometric_service = build_biometric_service(settings)
    yield
    await app.state.biometric_service.shutdown()
    logger.info("Wellpulse API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Wellpulse API",
        description=(
            "Biometric data pipeline: device ingestion, validation, consent-aware "
            "privacy filtering, and real-time wellness alerts."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(BiometricServiceError, biometric_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(biometrics.router, prefix=v1_prefix)

    return app


app = create_app()
