"""
Webhook endpoints for ingesting platform messages.
"""
import json
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import PlainTextResponse

from unified_inbox.core.config import Settings
from unified_inbox.core.dependencies import get_app_settings, get_ingestion_service
from unified_inbox.core.errors import NormalizationError, UnsupportedPlatformError
from unified_inbox.core.logging import get_logger
from unified_inbox.core.security import get_validated_body, twitter_crc_response, verify_subscription_token
from unified_inbox.ingestion.pipeline import IngestionService
from unified_inbox.schemas.message import ErrorResponse, IngestionStatus, WebhookIngestResponse

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhook"])


@router.post(
    "/{platform}",
    response_model=WebhookIngestResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        404: {"model": ErrorResponse, "description": "Unsupported platform"},
        422: {"description": "Malformed payload"},
        503: {"description": "Temporarily unable to persist; redeliver later"},
    },
    summary="Ingest platform webhook",
    description="Receive an inbound webhook from a messaging platform. Requires valid HMAC-SHA256 signature."
)
async def ingest_webhook(
    platform: str,
    response: Response,
    validated_body: Annotated[bytes, Depends(get_validated_body)],
    service: Annotated[IngestionService, Depends(get_ingestion_service)],
) -> WebhookIngestResponse:
    """
    Ingest every message carried by a platform webhook.

    - Validates HMAC-SHA256 signature (via dependency)
    - Splits the envelope into single messages, preserving their order
    - Duplicates are acknowledged with 200 so the platform stops redelivering
    - Any retryable failure answers 503 so the platform redelivers
    """
    try:
        data = json.loads(validated_body)
    except json.JSONDecodeError as e:
        logger.warning(f"Invalid JSON in webhook request: {e}")
        raise HTTPException(status_code=422, detail="Invalid JSON")

    try:
        events = service.split(platform, data)
    except UnsupportedPlatformError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except NormalizationError as e:
        logger.warning(
            "Malformed webhook envelope",
            extra={"extra_data": {"platform": platform, "reason": str(e)}},
        )
        raise HTTPException(status_code=422, detail=str(e))

    if not events:
        logger.info("Webhook carried no message events", extra={"extra_data": {"platform": platform}})
        return WebhookIngestResponse(status="ignored")

    # Sequential so messages in one envelope keep their relative order
    results = [await service.ingest(platform, event) for event in events]
    statuses = {result.status for result in results}

    if IngestionStatus.RETRYABLE_FAILURE in statuses:
        response.status_code = 503
        status = "retry"
    elif statuses == {IngestionStatus.REJECTED}:
        response.status_code = 422
        status = "rejected"
    else:
        status = "ok"

    return WebhookIngestResponse(status=status, results=results)


@router.get(
    "/{platform}",
    summary="Webhook subscription handshake",
    description="Answer the verification challenge a platform sends when a webhook is registered.",
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def verify_webhook(
    platform: str,
    settings: Annotated[Settings, Depends(get_app_settings)],
    hub_mode: Annotated[Optional[str], Query(alias="hub.mode")] = None,
    hub_verify_token: Annotated[Optional[str], Query(alias="hub.verify_token")] = None,
    hub_challenge: Annotated[Optional[str], Query(alias="hub.challenge")] = None,
    crc_token: Annotated[Optional[str], Query()] = None,
):
    """
    - **whatsapp**, **instagram**: echo `hub.challenge` when `hub.verify_token` matches
    - **twitter**: answer `crc_token` with an HMAC-SHA256 response token
    """
    platform = platform.lower()

    if platform in ("whatsapp", "instagram"):
        expected = settings.whatsapp_verify_token if platform == "whatsapp" else settings.instagram_verify_token
        if verify_subscription_token(expected, hub_mode, hub_verify_token):
            logger.info(f"{platform} webhook verified successfully")
            return PlainTextResponse(hub_challenge or "")
        logger.warning(f"{platform} webhook verification failed")
        raise HTTPException(status_code=403, detail="Forbidden")

    if platform == "twitter":
        if not crc_token:
            raise HTTPException(status_code=400, detail="crc_token is required")
        if not settings.twitter_consumer_secret:
            logger.error("TWITTER_CONSUMER_SECRET not configured")
            raise HTTPException(status_code=403, detail="Forbidden")
        return {"response_token": twitter_crc_response(settings.twitter_consumer_secret, crc_token)}

    raise HTTPException(status_code=404, detail=f"No verification handshake for platform '{platform}'")
