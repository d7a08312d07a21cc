"""Liveness and readiness probes."""
import logging
import time

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from . import database
from .config import settings


router = APIRouter(tags=["health"])
logger = logging.getLogger(__name__)

_STARTED_AT = time.monotonic()


def _timestamp_ms() -> int:
    return int(time.time() * 1000)


@router.get("/health")
def health():
    return {
        "uptime": round(time.monotonic() - _STARTED_AT, 3),
        "message": "OK",
        "timestamp": _timestamp_ms(),
        "environment": settings.ENVIRONMENT,
        "version": settings.APP_VERSION,
    }


@router.get("/health/ready")
def ready(request: Request):
    try:
        database.ping()
    except Exception as exc:
        logger.error("Health check failed: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "not ready",
                "error": "database unavailable",
                "timestamp": _timestamp_ms(),
            },
        )

    ingestor = getattr(request.app.state, "ingestor", None)
    mqtt_status = "connected" if ingestor is not None and ingestor.is_connected else "disconnected"
    return {
        "status": "ready",
        "database": "connected",
        "mqtt": mqtt_status,
        "timestamp": _timestamp_ms(),
    }


@router.get("/", include_in_schema=False)
def index():
    return {
        "message": "Device Watch API",
        "version": settings.APP_VERSION,
        "status": "running",
        "endpoints": {
            "health": "/health",
            "ready": "/health/ready",
            "docs": "/docs",
        },
    }
