"""
Shopify Webhook Handlers
Process incoming order, product, app and privacy webhooks from Shopify
"""

import json
import logging
from datetime import datetime
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vendor_alert.database import get_db, get_session_factory
from vendor_alert.errors import VendorAlertError
from vendor_alert.middleware.hmac_verify import verify_webhook_signature
from vendor_alert.services.data_sync import DataSyncService
from vendor_alert.services.store_service import StoreService

logger = logging.getLogger(__name__)

router = APIRouter()

SHOP_HEADER = "X-Shopify-Shop-Domain"
TOPIC_HEADER = "X-Shopify-Topic"


def parse_webhook(request: Request, body: bytes, default_topic: Optional[str] = None) -> Tuple[str, str, dict]:
    """
    Read shop, topic and JSON payload of a verified webhook.

    Raises:
        HTTPException: 400 on missing shop header or invalid JSON
    """
    shop_domain = request.headers.get(SHOP_HEADER)
    if not shop_domain:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing shop domain")

    try:
        payload = json.loads(body) if body else {}
    except json.JSONDecodeError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    topic = request.headers.get(TOPIC_HEADER) or default_topic or ""
    return shop_domain, topic, payload


async def route_webhook(
    topic: str,
    shop_domain: str,
    payload: dict,
    db: AsyncSession,
    session_factory: async_sessionmaker,
) -> dict:
    """
    Route webhook to appropriate handler based on topic.

    Args:
        topic: Shopify webhook topic
        shop_domain: Shop the webhook belongs to
        payload: Webhook payload
        db: Database session
        session_factory: Factory for services that open their own transactions

    Returns:
        dict: Handler result
    """
    handlers = {
        "orders/create": handle_sync,
        "orders/updated": handle_sync,
        "orders/paid": handle_sync,
        "orders/cancelled": handle_sync,
        "orders/fulfilled": handle_sync,
        "products/create": handle_sync,
        "products/update": handle_sync,
        "products/delete": handle_sync,
        "app/uninstalled": handle_app_uninstalled,
        "customers/data_request": handle_customers_data_request,
        "customers/redact": handle_customers_redact,
        "shop/redact": handle_shop_redact,
    }

    handler = handlers.get(topic)
    if not handler:
        logger.info(f"Unhandled webhook topic: {topic}")
        return {"status": "unhandled", "topic": topic}

    return await handler(topic, shop_domain, payload, db, session_factory)


async def process_webhook(
    request: Request,
    body: bytes,
    db: AsyncSession,
    session_factory: async_sessionmaker,
    default_topic: Optional[str] = None,
) -> dict:
    start_time = datetime.utcnow()
    shop_domain, topic, payload = parse_webhook(request, body, default_topic)

    try:
        result = await route_webhook(topic, shop_domain, payload, db, session_factory)
    except VendorAlertError as e:
        logger.error(f"Webhook {topic} failed for {shop_domain}: {e.message}")
        # Return 200 so Shopify does not retry a payload that will fail again
        return {"status": "error", "topic": topic, "error": e.message}
    except Exception as e:
        logger.exception(f"Webhook processing error for {topic} on {shop_domain}: {e}")
        return {"status": "error", "topic": topic, "error": str(e)}

    elapsed_ms = int((datetime.utcnow() - start_time).total_seconds() * 1000)
    logger.info(f"Webhook {topic} processed for {shop_domain} in {elapsed_ms}ms")
    return {"status": "processed", "topic": topic, "result": result}


# ============== Endpoints ==============


@router.post("/orders")
async def orders_webhook(
    request: Request,
    body: bytes = Depends(verify_webhook_signature),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> dict:
    """orders/create, orders/updated, orders/paid, orders/cancelled, orders/fulfilled."""
    return await process_webhook(request, body, db, session_factory)


@router.post("/products")
async def products_webhook(
    request: Request,
    body: bytes = Depends(verify_webhook_signature),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> dict:
    """products/create, products/update, products/delete."""
    return await process_webhook(request, body, db, session_factory)


@router.post("/app-uninstalled")
async def app_uninstalled_webhook(
    request: Request,
    body: bytes = Depends(verify_webhook_signature),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> dict:
    return await process_webhook(request, body, db, session_factory, default_topic="app/uninstalled")


@router.post("/privacy/customers-data-request")
async def customers_data_request_webhook(
    request: Request,
    body: bytes = Depends(verify_webhook_signature),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> dict:
    return await process_webhook(request, body, db, session_factory, default_topic="customers/data_request")


@router.post("/privacy/customers-redact")
async def customers_redact_webhook(
    request: Request,
    body: bytes = Depends(verify_webhook_signature),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> dict:
    return await process_webhook(request, body, db, session_factory, default_topic="customers/redact")


@router.post("/privacy/shop-redact")
async def shop_redact_webhook(
    request: Request,
    body: bytes = Depends(verify_webhook_signature),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> dict:
    return await process_webhook(request, body, db, session_factory, default_topic="shop/redact")


# ============== Sync Handlers ==============


async def handle_sync(
    topic: str,
    shop_domain: str,
    payload: dict,
    db: AsyncSession,
    session_factory: async_sessionmaker,
) -> dict:
    """Order and product topics go through the sync engine."""
    sync_service = DataSyncService(session_factory)
    return await sync_service.handle_webhook_sync(payload, shop_domain, topic)


# ============== App Handlers ==============


async def handle_app_uninstalled(
    topic: str,
    shop_domain: str,
    payload: dict,
    db: AsyncSession,
    session_factory: async_sessionmaker,
) -> dict:
    """Deactivate the shop and drop its access token."""
    store_service = StoreService(db, sync_service=DataSyncService(session_factory))
    uninstalled = await store_service.uninstall_shop(shop_domain)
    return {"status": "uninstalled" if uninstalled else "unknown_shop"}


# ============== Privacy Handlers ==============


async def handle_customers_data_request(
    topic: str,
    shop_domain: str,
    payload: dict,
    db: AsyncSession,
    session_factory: async_sessionmaker,
) -> dict:
    """No customer personal data is stored; acknowledge only."""
    customer_id = (payload.get("customer") or {}).get("id")
    logger.info(f"Customer data request for {shop_domain} (customer {customer_id}): no customer data stored")
    return {"status": "acknowledged", "customer_data": None}


async def handle_customers_redact(
    topic: str,
    shop_domain: str,
    payload: dict,
    db: AsyncSession,
    session_factory: async_sessionmaker,
) -> dict:
    customer_id = (payload.get("customer") or {}).get("id")
    logger.info(f"Customer redact for {shop_domain} (customer {customer_id}): nothing to redact")
    return {"status": "acknowledged"}


async def handle_shop_redact(
    topic: str,
    shop_domain: str,
    payload: dict,
    db: AsyncSession,
    session_factory: async_sessionmaker,
) -> dict:
    """Delete every row of the tenant, 48 hours after uninstall."""
    store_service = StoreService(db, sync_service=DataSyncService(session_factory))
    deleted = await store_service.redact_shop(shop_domain)
    return {"status": "redacted", "deleted": deleted}
