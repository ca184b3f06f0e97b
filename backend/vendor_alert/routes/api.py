"""
API Routes for the embedded admin app
Orders, products, vendors, sync and notification settings for the shop
resolved from the Shopify session token.
"""

import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, field_validator
from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vendor_alert.database import get_db, get_session_factory
from vendor_alert.middleware.auth import get_current_shop, hash_password
from vendor_alert.models import Order, OrderLineItem, Product, SyncLog, User, Vendor
from vendor_alert.models.user import NOTIFY_EVERY_X_HOURS, NOTIFY_MODES, NOTIFY_SPECIFIC_TIME, ROLE_STORE_OWNER, ROLE_VENDOR
from vendor_alert.services.data_sync import MANUAL_SYNC_TYPES, DataSyncService
from vendor_alert.services.notification_service import NotificationService
from vendor_alert.services.scheduler import parse_interval_hours, parse_time_of_day

logger = logging.getLogger(__name__)

router = APIRouter()

SCHEDULE_FIELDS = {"notify_mode", "notify_value"}


# ============== Request/Response Models ==============


class VendorUpdateRequest(BaseModel):
    """Contact details for a vendor; email links it to a vendor user."""

    email: Optional[str] = None
    contact_person: Optional[str] = None
    mobile: Optional[str] = None
    upi_id: Optional[str] = None


class ProfileUpdateRequest(BaseModel):
    """Store owner profile and notification schedule."""

    username: Optional[str] = None
    phone: Optional[str] = None
    avatar_url: Optional[str] = None
    password: Optional[str] = None
    notify_mode: Optional[str] = None
    notify_value: Optional[str] = None

    @field_validator("notify_mode")
    @classmethod
    def _known_mode(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in NOTIFY_MODES:
            raise ValueError(f"notify_mode must be one of {NOTIFY_MODES}")
        return value

    @field_validator("password")
    @classmethod
    def _password_length(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and len(value) < 8:
            raise ValueError("Password must be at least 8 characters")
        return value


def _contains(text: str) -> str:
    """LIKE pattern matching `text` literally anywhere."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def pagination(page: int, limit: int, total: int) -> dict:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }


# ============== Dependencies ==============


async def get_store_owner(
    shop_domain: str = Depends(get_current_shop),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Store owner user of the current shop."""
    result = await db.execute(
        select(User).where(User.shop_domain == shop_domain, User.role == ROLE_STORE_OWNER)
    )
    owner = result.scalar_one_or_none()
    if owner is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Store owner user not found for this shop",
        )
    return owner


def _order_dict(order: Order) -> dict:
    return {
        "id": order.id,
        "shopify_order_id": order.shopify_order_id,
        "name": order.name,
        "total_price": float(order.total_price or 0),
        "financial_status": order.financial_status,
        "fulfillment_status": order.fulfillment_status,
        "notification": order.notification,
        "shopify_created_at": order.shopify_created_at.isoformat() if order.shopify_created_at else None,
        "shopify_updated_at": order.shopify_updated_at.isoformat() if order.shopify_updated_at else None,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "updated_at": order.updated_at.isoformat() if order.updated_at else None,
    }


# ============== Orders Endpoints ==============


@router.get("/orders")
async def list_orders(
    shop_domain: str = Depends(get_current_shop),
    db: AsyncSession = Depends(get_db),
    page: int = Query(1, ge=1),
    limit: int = Query(25, ge=1, le=250),
    financial_status: Optional[str] = None,
    fulfillment_status: Optional[str] = None,
    vendor: Optional[str] = None,
    notification: Optional[bool] = None,
):
    """List orders with filtering and pagination."""
    conditions = [Order.shop_domain == shop_domain]
    if financial_status:
        conditions.append(Order.financial_status == financial_status.lower())
    if fulfillment_status:
        conditions.append(Order.fulfillment_status == fulfillment_status.lower())
    if notification is not None:
        conditions.append(Order.notification.is_(notification))
    if vendor:
        conditions.append(
            Order.id.in_(select(OrderLineItem.order_id).where(OrderLineItem.vendor_name == vendor))
        )

    total = await db.scalar(select(func.count(Order.id)).where(*conditions))
    result = await db.execute(
        select(Order)
        .where(*conditions)
        .order_by(Order.shopify_created_at.desc(), Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )

    return {
        "success": True,
        "orders": [_order_dict(o) for o in result.scalars().all()],
        "pagination": pagination(page, limit, total or 0),
    }


@router.get("/orders/{order_id}")
async def get_order(
    order_id: int,
    shop_domain: str = Depends(get_current_shop),
    db: AsyncSession = Depends(get_db),
):
    """Order details with its line items."""
    result = await db.execute(
        select(Order).where(Order.id == order_id, Order.shop_domain == shop_domain)
    )
    order = result.scalar_one_or_none()
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    items = await db.execute(
        select(OrderLineItem, Product.title, Product.handle, Product.image)
        .join(Product, Product.id == OrderLineItem.product_id)
        .where(OrderLineItem.order_id == order.id)
        .order_by(OrderLineItem.id)
    )

    return {
        "success": True,
        "order": _order_dict(order),
        "line_items": [
            {
                "id": item.id,
                "shopify_line_item_id": item.shopify_line_item_id,
                "product_id": item.product_id,
                "title": item.title,
                "product_title": title,
                "product_handle": handle,
                "image": image,
                "vendor": item.vendor_name,
                "quantity": item.quantity,
                "notification": item.notification,
            }
            for item, title, handle, image in items.all()
        ],
    }


# ============== Products Endpoints ==============


def _product_stats_query():
    return (
        select(
            Product,
            Vendor,
            func.count(distinct(OrderLineItem.order_id)).label("order_count"),
            func.coalesce(func.sum(OrderLineItem.quantity), 0).label("total_quantity"),
            func.count(OrderLineItem.id).label("line_item_count"),
        )
        .outerjoin(Vendor, Vendor.id == Product.vendor_id)
        .outerjoin(OrderLineItem, OrderLineItem.product_id == Product.id)
        .group_by(Product.id, Vendor.id)
    )


def _product_dict(product: Product, vendor: Optional[Vendor], order_count=0, total_quantity=0, line_items=0) -> dict:
    return {
        "id": product.id,
        "shopify_product_id": product.shopify_product_id,
        "sku": product.sku,
        "title": product.title,
        "image": product.image,
        "handle": product.handle,
        "status": product.status,
        "vendor_name": product.vendor_name,
        "vendor": vendor.to_dict() if vendor else None,
        "stats": {
            "order_count": order_count,
            "total_quantity_ordered": int(total_quantity or 0),
            "line_item_count": line_items,
        },
        "created_at": product.created_at.isoformat() if product.created_at else None,
        "updated_at": product.updated_at.isoformat() if product.updated_at else None,
    }


@router.get("/products")
async def list_products(
    shop_domain: str = Depends(get_current_shop),
    db: AsyncSession = Depends(get_db),
    page: int = Query(1, ge=1),
    limit: int = Query(25, ge=1, le=250),
    search: Optional[str] = None,
    vendor: Optional[str] = None,
):
    """List products with order statistics."""
    conditions = [Product.shop_domain == shop_domain]
    if search:
        conditions.append(Product.title.ilike(_contains(search), escape="\\"))
    if vendor:
        conditions.append(Product.vendor_name == vendor)

    total = await db.scalar(select(func.count(Product.id)).where(*conditions))
    result = await db.execute(
        _product_stats_query()
        .where(*conditions)
        .order_by(Product.title, Product.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )

    return {
        "success": True,
        "products": [_product_dict(*row) for row in result.all()],
        "pagination": pagination(page, limit, total or 0),
    }


@router.get("/products/count")
async def count_products(
    shop_domain: str = Depends(get_current_shop),
    db: AsyncSession = Depends(get_db),
):
    count = await db.scalar(select(func.count(Product.id)).where(Product.shop_domain == shop_domain))
    return {"success": True, "count": count or 0}


@router.get("/products/stats/summary")
async def product_stats(
    shop_domain: str = Depends(get_current_shop),
    db: AsyncSession = Depends(get_db),
):
    """Catalog-wide product statistics."""
    result = await db.execute(
        select(
            func.count(distinct(Product.id)),
            func.count(distinct(Product.vendor_name)),
            func.count(distinct(OrderLineItem.order_id)),
            func.coalesce(func.sum(OrderLineItem.quantity), 0),
            func.avg(OrderLineItem.quantity),
        )
        .select_from(Product)
        .outerjoin(OrderLineItem, OrderLineItem.product_id == Product.id)
        .where(Product.shop_domain == shop_domain)
    )
    products, vendors, orders, quantity, avg_quantity = result.one()

    return {
        "success": True,
        "stats": {
            "total_products": products,
            "unique_vendors": vendors,
            "orders_with_products": orders,
            "total_quantity_ordered": int(quantity or 0),
            "avg_quantity_per_line_item": round(float(avg_quantity or 0), 2),
        },
    }


@router.get("/products/vendor/{vendor_id}")
async def products_for_vendor(
    vendor_id: int,
    shop_domain: str = Depends(get_current_shop),
    db: AsyncSession = Depends(get_db),
):
    vendor = await db.scalar(select(Vendor).where(Vendor.id == vendor_id, Vendor.shop_domain == shop_domain))
    if vendor is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Vendor not found")

    result = await db.execute(
        _product_stats_query().where(Product.vendor_id == vendor.id).order_by(Product.title, Product.id)
    )
    return {
        "success": True,
        "vendor": vendor.to_dict(),
        "products": [_product_dict(*row) for row in result.all()],
    }


@router.get("/products/{product_id}")
async def get_product(
    product_id: int,
    shop_domain: str = Depends(get_current_shop),
    db: AsyncSession = Depends(get_db),
):
    """Product with its order history."""
    result = await db.execute(
        _product_stats_query().where(Product.id == product_id, Product.shop_domain == shop_domain)
    )
    row = result.first()
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")

    history = await db.execute(
        select(OrderLineItem, Order)
        .join(Order, Order.id == OrderLineItem.order_id)
        .where(OrderLineItem.product_id == product_id)
        .order_by(Order.shopify_created_at.desc(), Order.id.desc())
    )

    return {
        "success": True,
        "product": _product_dict(*row),
        "orders": [
            {
                "order_id": order.id,
                "name": order.name,
                "quantity": item.quantity,
                "notification": item.notification,
                "financial_status": order.financial_status,
                "shopify_created_at": order.shopify_created_at.isoformat() if order.shopify_created_at else None,
            }
            for item, order in history.all()
        ],
    }


# ============== Vendors Endpoints ==============


@router.get("/vendors")
async def list_vendors(
    shop_domain: str = Depends(get_current_shop),
    db: AsyncSession = Depends(get_db),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=250),
    search: Optional[str] = None,
):
    """Vendor directory with linked-user status."""
    conditions = [Vendor.shop_domain == shop_domain]
    if search:
        conditions.append(Vendor.name.ilike(_contains(search), escape="\\"))

    total = await db.scalar(select(func.count(Vendor.id)).where(*conditions))
    result = await db.execute(
        select(Vendor, func.count(Product.id).label("product_count"))
        .outerjoin(Product, Product.vendor_id == Vendor.id)
        .where(*conditions)
        .group_by(Vendor.id)
        .order_by(Vendor.name)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    rows = result.all()

    emails = [v.email for v, _ in rows if v.email]
    linked = set()
    if emails:
        linked_result = await db.execute(select(User.email).where(User.email.in_(emails), User.role == ROLE_VENDOR))
        linked = set(linked_result.scalars().all())

    vendors = []
    for vendor, product_count in rows:
        data = vendor.to_dict()
        data["product_count"] = product_count
        data["has_user"] = vendor.email in linked
        vendors.append(data)

    return {"success": True, "vendors": vendors, "pagination": pagination(page, limit, total or 0)}


@router.put("/vendors/{vendor_id}")
async def update_vendor(
    vendor_id: int,
    request: VendorUpdateRequest,
    shop_domain: str = Depends(get_current_shop),
    db: AsyncSession = Depends(get_db),
):
    """Update vendor contact details."""
    vendor = await db.scalar(select(Vendor).where(Vendor.id == vendor_id, Vendor.shop_domain == shop_domain))
    if vendor is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Vendor not found")

    for field, value in request.model_dump(exclude_unset=True).items():
        setattr(vendor, field, value)

    await db.commit()
    logger.info(f"Vendor {vendor.id} updated for {shop_domain}")
    return {"success": True, "vendor": vendor.to_dict()}


# ============== Sync Endpoints ==============


@router.post("/sync/{sync_type}")
async def manual_sync(
    sync_type: str,
    shop_domain: str = Depends(get_current_shop),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Run a manual products, orders, vendors or full sync."""
    if sync_type not in MANUAL_SYNC_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid sync type. Use one of: {', '.join(MANUAL_SYNC_TYPES)}",
        )

    stats = await DataSyncService(session_factory).run_manual_sync(shop_domain, sync_type)
    return {"success": True, "sync_type": sync_type, "stats": stats}


@router.get("/sync/logs")
async def sync_logs(
    shop_domain: str = Depends(get_current_shop),
    db: AsyncSession = Depends(get_db),
    limit: int = Query(20, ge=1, le=100),
):
    result = await db.execute(
        select(SyncLog)
        .where(SyncLog.shop_domain == shop_domain)
        .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
        .limit(limit)
    )
    return {"success": True, "logs": [log.to_dict() for log in result.scalars().all()]}


# ============== Notification Endpoints ==============


@router.post("/notify-orders")
async def notify_orders(
    request: Request,
    shop_domain: str = Depends(get_current_shop),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Run the notification aggregator for the shop now."""
    realtime = getattr(request.app.state, "realtime", None)
    publisher = realtime.manager if realtime else None

    result = await NotificationService(session_factory, publisher=publisher).trigger_notification(shop_domain)
    if not result.get("success"):
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result.get("error"))
    return result


# ============== Settings Endpoints ==============


@router.get("/settings/profile")
async def get_profile(owner: User = Depends(get_store_owner)):
    return {"success": True, "user": owner.to_public_dict()}


@router.put("/settings/profile")
async def update_profile(
    request: ProfileUpdateRequest,
    owner: User = Depends(get_store_owner),
    db: AsyncSession = Depends(get_db),
):
    """Update store owner profile, password and notification schedule."""
    updates = request.model_dump(exclude_unset=True)
    # Only the schedule can be cleared, and only as a pair
    updates = {k: v for k, v in updates.items() if v is not None or k in SCHEDULE_FIELDS}
    if not updates:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")

    if SCHEDULE_FIELDS & updates.keys():
        mode = updates.get("notify_mode", owner.notify_mode)
        value = updates.get("notify_value", owner.notify_value)
        if mode is not None or value is not None:
            _validate_schedule(mode, value)

    password = updates.pop("password", None)
    if password:
        owner.password_hash = hash_password(password)

    for field, field_value in updates.items():
        setattr(owner, field, field_value)

    await db.commit()
    logger.info(f"Profile updated for {owner.shop_domain}: {sorted(updates)}")
    return {"success": True, "message": "Profile updated successfully", "user": owner.to_public_dict()}


def _validate_schedule(mode: Optional[str], value: Optional[str]) -> None:
    if mode is None or value is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="notify_mode and notify_value must be set together",
        )
    try:
        if mode == NOTIFY_SPECIFIC_TIME:
            parse_time_of_day(value)
        elif mode == NOTIFY_EVERY_X_HOURS:
            parse_interval_hours(value)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
