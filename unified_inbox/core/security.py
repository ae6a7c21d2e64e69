"""
Webhook authentication: HMAC-SHA256 body signatures and platform handshakes.
"""
import base64
import hmac
import hashlib
from typing import Optional

from fastapi import Request, HTTPException

from unified_inbox.core.config import Settings
from unified_inbox.core.logging import get_logger

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Signature"


def compute_signature(secret: str, body: bytes) -> str:
    """
    Compute HMAC-SHA256 signature for the given body.

    Args:
        secret: The webhook secret key
        body: Raw request body bytes

    Returns:
        Hex-encoded HMAC-SHA256 signature
    """
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=body,
        digestmod=hashlib.sha256
    ).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Verify an HMAC-SHA256 signature using constant-time comparison."""
    # Accept GitHub/Meta style "sha256=<hex>" as well as bare hex
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    expected_signature = compute_signature(secret, body)
    return hmac.compare_digest(expected_signature, signature)


def twitter_crc_response(consumer_secret: str, crc_token: str) -> str:
    """Response token for Twitter's challenge-response check."""
    digest = hmac.new(
        key=consumer_secret.encode("utf-8"),
        msg=crc_token.encode("utf-8"),
        digestmod=hashlib.sha256,
    ).digest()
    return "sha256=" + base64.b64encode(digest).decode("ascii")


def verify_subscription_token(expected: Optional[str], mode: Optional[str], token: Optional[str]) -> bool:
    """Meta-style hub.mode/hub.verify_token subscription check."""
    if not expected or mode != "subscribe" or token is None:
        return False
    return hmac.compare_digest(expected, token)


async def get_validated_body(request: Request) -> bytes:
    """
    FastAPI dependency returning the raw body once its X-Signature checks out.

    Raises:
        HTTPException: 401 if the signature is missing, invalid, or no
        secret is configured
    """
    settings: Settings = request.app.state.settings
    signature: Optional[str] = request.headers.get(SIGNATURE_HEADER)

    if not signature:
        logger.warning("Webhook request missing X-Signature header")
        raise HTTPException(status_code=401, detail="invalid signature")

    if not settings.is_webhook_secret_configured:
        logger.error("WEBHOOK_SECRET environment variable not configured")
        raise HTTPException(status_code=401, detail="invalid signature")

    body = await request.body()

    if not verify_signature(settings.webhook_secret, body, signature):
        logger.warning(
            "Webhook signature verification failed",
            extra={
                "extra_data": {
                    "path": request.url.path,
                    "received_signature": signature[:16] + "...",  # Log partial for debugging
                }
            }
        )
        raise HTTPException(status_code=401, detail="invalid signature")

    logger.debug("Webhook signature verified successfully")
    return body
