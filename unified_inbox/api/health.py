"""
Health check endpoints for liveness and readiness probes.
"""
from typing import Annotated

from fastapi import APIRouter, Depends, Response

from unified_inbox.core.config import Settings
from unified_inbox.core.dependencies import get_app_settings, get_ingestion_service, get_store
from unified_inbox.core.logging import get_logger
from unified_inbox.ingestion.pipeline import IngestionService
from unified_inbox.schemas.message import HealthResponse
from unified_inbox.storage.base import MessageStore

logger = get_logger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


@router.get(
    "/live",
    response_model=HealthResponse,
    summary="Liveness probe",
    description="Always returns 200 to indicate the service is alive."
)
async def liveness() -> HealthResponse:
    """
    Liveness probe - always returns 200.

    Used by orchestrators to check if the service is running.
    """
    return HealthResponse(status="ok")


@router.get(
    "/ready",
    response_model=HealthResponse,
    summary="Readiness probe",
    description="Returns 200 if the service is ready to handle traffic."
)
async def readiness(
    response: Response,
    settings: Annotated[Settings, Depends(get_app_settings)],
    store: Annotated[MessageStore, Depends(get_store)],
    service: Annotated[IngestionService, Depends(get_ingestion_service)],
) -> HealthResponse:
    """
    Readiness probe - checks if the service can handle traffic.

    Checks:
    - Storage backend is reachable
    - WEBHOOK_SECRET environment variable is configured
    - Every platform's ingestion workers are running
    """
    checks = {}
    is_ready = True

    storage_ok = await store.ping()
    checks["storage"] = "ok" if storage_ok else "failed"
    if not storage_ok:
        is_ready = False
        logger.warning("Readiness check failed: storage not reachable")

    secret_ok = settings.is_webhook_secret_configured
    checks["webhook_secret"] = "ok" if secret_ok else "not configured"
    if not secret_ok:
        is_ready = False
        logger.warning("Readiness check failed: WEBHOOK_SECRET not configured")

    stopped = [p.value for p, ingestor in service.ingestors.items() if not ingestor.running]
    checks["ingestion"] = "ok" if not stopped else f"stopped: {', '.join(stopped)}"
    if stopped:
        is_ready = False
        logger.warning("Readiness check failed: ingestion workers not running")

    if is_ready:
        return HealthResponse(status="ok", checks=checks)
    else:
        response.status_code = 503
        return HealthResponse(status="not ready", checks=checks)
