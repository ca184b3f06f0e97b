"""
HMAC Verification for Shopify Webhooks
Verifies webhook signatures using base64-encoded SHA256 HMAC
"""

import base64
import hashlib
import hmac
import logging

from fastapi import HTTPException, Request, status

from vendor_alert.config import settings

logger = logging.getLogger(__name__)

HMAC_HEADER = "X-Shopify-Hmac-Sha256"


def compute_webhook_hmac(payload: bytes, secret: str = None) -> str:
    """Base64 HMAC-SHA256 digest of a raw webhook body."""
    key = (secret or settings.shopify_api_secret).encode()
    digest = hmac.new(key, payload, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_webhook_hmac(payload: bytes, signature: str) -> bool:
    """
    Verify Shopify webhook HMAC signature.

    Shopify signs the raw body with the app secret and sends the base64
    digest in the X-Shopify-Hmac-Sha256 header.

    Args:
        payload: Raw request body bytes
        signature: Signature from X-Shopify-Hmac-Sha256 header

    Returns:
        bool: True if signature is valid
    """
    if not signature:
        return False

    expected = compute_webhook_hmac(payload)

    # Constant-time comparison
    return hmac.compare_digest(expected.encode(), signature.strip().encode())


async def verify_webhook_signature(request: Request) -> bytes:
    """
    FastAPI dependency to verify webhook signature and return body.

    Runs before any JSON parsing so unsigned payloads never reach handlers.

    Usage:
        @router.post("/webhooks/orders")
        async def handle_webhook(body: bytes = Depends(verify_webhook_signature)):
            ...
    """
    hmac_header = request.headers.get(HMAC_HEADER)
    if not hmac_header:
        logger.warning(f"Webhook request to {request.url.path} missing HMAC header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing HMAC header",
        )

    body = await request.body()

    if not verify_webhook_hmac(body, hmac_header):
        logger.warning(f"Webhook HMAC verification failed for {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid HMAC signature",
        )

    return body


def verify_query_hmac(params: dict, secret: str = None) -> bool:
    """
    Verify the hex HMAC Shopify adds to OAuth redirects.

    The message is every query parameter except `hmac`, sorted by key and
    joined as key=value pairs with '&'.
    """
    signature = params.get("hmac")
    if not signature:
        return False

    message = "&".join(f"{key}={value}" for key, value in sorted(params.items()) if key != "hmac")
    key = (secret or settings.shopify_api_secret).encode()
    expected = hmac.new(key, message.encode(), hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)
