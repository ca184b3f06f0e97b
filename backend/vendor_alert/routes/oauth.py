"""
OAuth Routes for Shopify App Installation
Handles the authorization code grant for offline access tokens
"""

import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vendor_alert.config import settings
from vendor_alert.database import get_db, get_session_factory
from vendor_alert.errors import UpstreamFetchError
from vendor_alert.middleware.hmac_verify import verify_query_hmac
from vendor_alert.services.data_sync import DataSyncService
from vendor_alert.services.shopify_client import ShopifyClient
from vendor_alert.services.store_service import StoreService

logger = logging.getLogger(__name__)

router = APIRouter()

SHOP_DOMAIN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9\-]*\.myshopify\.com$")
STATE_TTL_SECONDS = 600

# Redis-backed CSRF state storage with in-memory fallback
_fallback_states: Dict[str, dict] = {}
_redis_client = None


async def _get_redis():
    """Get or create Redis client for OAuth state."""
    global _redis_client
    if _redis_client is None:
        try:
            import redis.asyncio as aioredis

            client = aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            await client.ping()
            _redis_client = client
        except Exception as e:
            logger.warning(f"Redis unavailable for OAuth state: {e}")
            _redis_client = None
    return _redis_client


async def _store_state(state: str, shop_domain: str) -> None:
    """Store OAuth state in Redis (or fallback to memory)."""
    redis = await _get_redis()
    if redis:
        try:
            await redis.setex(f"oauth_state:shopify:{state}", STATE_TTL_SECONDS, shop_domain)
            return
        except Exception as e:
            logger.warning(f"Redis write failed for OAuth state: {e}")

    logger.critical(
        "OAuth state stored in-memory - NOT safe for multi-worker deployments. "
        "Configure REDIS_URL to enable distributed OAuth state."
    )
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=STATE_TTL_SECONDS)
    expired = [k for k, v in _fallback_states.items() if v["created_at"] < cutoff]
    for k in expired:
        del _fallback_states[k]
    _fallback_states[state] = {"shop": shop_domain, "created_at": datetime.now(timezone.utc)}


async def _validate_state(state: str, shop_domain: str) -> bool:
    """Validate and consume OAuth state issued for this shop."""
    redis = await _get_redis()
    if redis:
        try:
            key = f"oauth_state:shopify:{state}"
            stored_shop = await redis.get(key)
            if stored_shop:
                await redis.delete(key)
                return stored_shop == shop_domain
            return False
        except Exception as e:
            logger.warning(f"Redis read failed for OAuth state: {e}")

    entry = _fallback_states.pop(state, None)
    return entry is not None and entry["shop"] == shop_domain


def _require_shop_domain(shop: str) -> str:
    if not shop or not SHOP_DOMAIN.match(shop):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid shop domain",
        )
    return shop.lower()


@router.get("/auth")
async def auth_start(shop: str = Query(..., description="Shop domain, e.g. example.myshopify.com")):
    """
    Start the OAuth flow.

    Redirects the merchant to the shop's authorization screen with a CSRF
    state token.
    """
    shop_domain = _require_shop_domain(shop)

    state = secrets.token_urlsafe(32)
    await _store_state(state, shop_domain)

    params = {
        "client_id": settings.shopify_api_key,
        "scope": settings.shopify_scopes,
        "redirect_uri": f"{settings.app_url}/auth/callback",
        "state": state,
    }

    auth_url = f"https://{shop_domain}/admin/oauth/authorize?{urlencode(params)}"
    return RedirectResponse(url=auth_url)


@router.get("/auth/callback")
async def auth_callback(
    request: Request,
    code: str = Query(..., description="Authorization code"),
    shop: str = Query(..., description="Shop domain"),
    state: str = Query(..., description="CSRF state"),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    OAuth callback handler.

    Shopify redirects here after the merchant authorizes the app. The
    code is exchanged for an offline token and the shop is installed;
    the initial data sync continues in the background.
    """
    shop_domain = _require_shop_domain(shop)

    if not verify_query_hmac(dict(request.query_params)):
        logger.warning(f"OAuth callback HMAC verification failed for {shop_domain}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid OAuth signature",
        )

    if not await _validate_state(state, shop_domain):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid OAuth state parameter",
        )

    logger.info(f"OAuth callback for shop: {shop_domain}")

    store_service = StoreService(db, sync_service=DataSyncService(session_factory))

    try:
        token_response = await store_service.exchange_token(shop_domain, code)
    except UpstreamFetchError as e:
        logger.error(f"Token exchange failed for {shop_domain}: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to get access token",
        )

    access_token = token_response.get("access_token")
    if not access_token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Failed to get access token",
        )

    email = None
    try:
        async with ShopifyClient(shop_domain, access_token) as client:
            email = (await client.get_shop()).get("email")
    except UpstreamFetchError as e:
        logger.warning(f"Could not load shop details for {shop_domain}: {e.message}")

    try:
        await store_service.install_shop(
            shop_domain=shop_domain,
            access_token=access_token,
            scope=token_response.get("scope", ""),
            email=email,
        )
    except Exception as e:
        logger.exception(f"OAuth install error for {shop_domain}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Installation failed",
        )

    # Land the merchant in the embedded app
    app_handle = settings.shopify_api_key
    return RedirectResponse(
        url=f"https://{shop_domain}/admin/apps/{app_handle}",
        status_code=status.HTTP_302_FOUND,
    )
