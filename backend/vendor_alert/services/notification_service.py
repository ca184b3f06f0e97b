"""
Notification Service
Turns pending order line items into order notification messages for vendors
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from vendor_alert.database import SessionLocal
from vendor_alert.errors import TenantNotFoundError
from vendor_alert.models import Message, MessageRecipient, Order, OrderLineItem, Product, User, Vendor
from vendor_alert.models.message import DELIVERY_SENT, MESSAGE_ORDER_NOTIFICATION
from vendor_alert.models.product import make_sku
from vendor_alert.models.user import ROLE_STORE_OWNER, ROLE_VENDOR
from vendor_alert.services.payloads import OrderNotificationData

logger = logging.getLogger(__name__)

NOTIFICATION_CONTENT = "Order notification"
UNLINKED_VENDOR_ERROR = "Vendor has no linked user account"


class NotificationService:
    """
    Aggregates pending line items per vendor and writes one message per
    merged product.

    The optional publisher receives each persisted message; it must expose
    `async push_order_notification(message: dict) -> bool` returning whether
    the vendor was reached.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker] = None, publisher=None):
        self.session_factory = session_factory or SessionLocal
        self.publisher = publisher

    async def trigger_notification(
        self,
        shop_domain: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Notify every vendor with pending line items for a shop.

        Args:
            shop_domain: Tenant shop
            now: Time recorded as last_notified_at, defaults to utcnow

        Returns:
            dict: {"success": True, "notified": [...], ...} or
            {"success": False, "error": ...}
        """
        try:
            return await self._notify(shop_domain, now or datetime.utcnow())
        except TenantNotFoundError as e:
            logger.error(f"Notification run skipped: {e.message}")
            return {"success": False, "error": e.message}
        except SQLAlchemyError as e:
            logger.error(f"Notification run failed for {shop_domain}: {e}", exc_info=True)
            return {"success": False, "error": "Database error", "details": str(e)}

    async def _notify(self, shop_domain: str, now: datetime) -> Dict[str, Any]:
        owner_id = await self._get_store_owner_id(shop_domain)
        rows = await self._load_pending(shop_domain)

        if not rows:
            await self._touch_last_notified(owner_id, now)
            logger.info(f"No pending notifications for {shop_domain}")
            return {"success": True, "message": "No pending notifications", "notified": []}

        groups, unlinked = self._group_by_vendor(rows)

        notified = []
        errors = []
        for vendor_user_id, group in groups.items():
            sent_line_item_ids = []
            message_ids = []

            for entry in group["items"].values():
                message = await self._create_message(owner_id, vendor_user_id, entry["payload"])
                if message is None:
                    errors.append({
                        "vendor_user_id": vendor_user_id,
                        "vendor": group["vendor_name"],
                        "sku": entry["payload"].sku,
                        "line_item_ids": entry["line_item_ids"],
                        "error": "Failed to persist notification",
                    })
                    continue

                message_ids.append(message["id"])
                sent_line_item_ids.extend(entry["line_item_ids"])
                await self._publish(message)

            if sent_line_item_ids:
                await self._mark_line_items_notified(sent_line_item_ids)
                notified.append({
                    "vendor_user_id": vendor_user_id,
                    "vendor_id": group["vendor_id"],
                    "item_count": len(message_ids),
                    "message_ids": message_ids,
                    "line_item_ids": sent_line_item_ids,
                    "message": "Notification sent",
                })

        for vendor_name, line_item_ids in unlinked.items():
            logger.warning(
                f"Vendor '{vendor_name}' on {shop_domain} has {len(line_item_ids)} pending "
                f"items but no linked vendor user; set the vendor email to notify them"
            )
            errors.append({
                "vendor": vendor_name,
                "line_item_ids": line_item_ids,
                "error": UNLINKED_VENDOR_ERROR,
            })

        await self._refresh_order_flags(shop_domain)
        await self._touch_last_notified(owner_id, now)

        logger.info(
            f"Notification process completed for {shop_domain}: "
            f"{len(notified)} vendors notified, {len(errors)} errors"
        )
        return {
            "success": True,
            "notified": notified,
            "errors": errors,
            "unlinked_vendors": list(unlinked.keys()),
        }

    async def _get_store_owner_id(self, shop_domain: str) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(User.id).where(User.shop_domain == shop_domain, User.role == ROLE_STORE_OWNER)
            )
            owner_id = result.scalar_one_or_none()

        if owner_id is None:
            raise TenantNotFoundError(shop_domain)
        return owner_id

    async def _load_pending(self, shop_domain: str) -> list:
        """Pending line items with their product, vendor and vendor user (if any)."""
        query = (
            select(
                OrderLineItem.id.label("line_item_id"),
                OrderLineItem.quantity,
                Order.name.label("order_name"),
                Product.title.label("product_title"),
                Product.image,
                Product.shopify_product_id,
                Product.vendor_name,
                Vendor.id.label("vendor_id"),
                Vendor.name.label("vendor_name_resolved"),
                User.id.label("vendor_user_id"),
            )
            .join(Order, Order.id == OrderLineItem.order_id)
            .join(Product, Product.id == OrderLineItem.product_id)
            .outerjoin(Vendor, Vendor.id == Product.vendor_id)
            .outerjoin(
                User,
                and_(User.email == Vendor.email, User.role == ROLE_VENDOR, User.is_active.is_(True)),
            )
            .where(
                OrderLineItem.shop_domain == shop_domain,
                OrderLineItem.notification.is_(False),
            )
            .order_by(Vendor.name, Product.title, OrderLineItem.id)
        )
        async with self.session_factory() as db:
            result = await db.execute(query)
            return result.all()

    @staticmethod
    def _group_by_vendor(rows) -> tuple:
        """
        Group rows by vendor user and merge rows sharing a SKU.

        Returns:
            (groups, unlinked) where groups maps vendor user id to merged
            entries keyed by SKU, and unlinked maps vendor name to the line
            item ids that cannot be delivered
        """
        groups: Dict[int, Dict[str, Any]] = {}
        unlinked: Dict[str, List[int]] = {}

        for row in rows:
            if row.vendor_user_id is None:
                name = row.vendor_name_resolved or row.vendor_name or "(no vendor)"
                unlinked.setdefault(name, []).append(row.line_item_id)
                continue

            group = groups.setdefault(
                row.vendor_user_id,
                {"vendor_id": row.vendor_id, "vendor_name": row.vendor_name_resolved, "items": {}},
            )

            sku = make_sku(row.shopify_product_id)
            entry = group["items"].get(sku)
            if entry is None:
                group["items"][sku] = {
                    "payload": OrderNotificationData(
                        name=row.product_title,
                        sku=sku,
                        image=row.image,
                        qty=row.quantity,
                        orders=[row.order_name] if row.order_name else [],
                    ),
                    "line_item_ids": [row.line_item_id],
                }
            else:
                entry["payload"].qty += row.quantity
                if row.order_name and row.order_name not in entry["payload"].orders:
                    entry["payload"].orders.append(row.order_name)
                entry["line_item_ids"].append(row.line_item_id)

        return groups, unlinked

    async def _create_message(
        self,
        owner_id: int,
        vendor_user_id: int,
        payload: OrderNotificationData,
    ) -> Optional[dict]:
        """Persist message and recipient together; None if the insert failed."""
        try:
            async with self.session_factory() as tx, tx.begin():
                recipient = MessageRecipient(delivery_status=DELIVERY_SENT, sent_at=datetime.utcnow())
                message = Message(
                    sender_id=owner_id,
                    receiver_id=vendor_user_id,
                    content=NOTIFICATION_CONTENT,
                    message_type=MESSAGE_ORDER_NOTIFICATION,
                    order_data=payload.model_dump(),
                    recipient=recipient,
                )
                tx.add(message)
                await tx.flush()
                return message.to_dict(recipient)
        except SQLAlchemyError as e:
            logger.error(f"Failed to store notification {payload.sku} for user {vendor_user_id}: {e}")
            return None

    async def _publish(self, message: dict) -> None:
        if self.publisher is None:
            return
        try:
            delivered = await self.publisher.push_order_notification(message)
        except Exception as e:
            # Message row stays the durable record
            logger.warning(f"Real-time push failed for message {message['id']}: {e}")
            return

        if delivered:
            await self._mark_delivered(message["id"])

    async def _mark_delivered(self, message_id: int) -> None:
        async with self.session_factory() as tx, tx.begin():
            await tx.execute(
                update(MessageRecipient)
                .where(
                    MessageRecipient.message_id == message_id,
                    MessageRecipient.delivery_status == DELIVERY_SENT,
                )
                .values(delivery_status="delivered", delivered_at=datetime.utcnow())
            )

    async def _mark_line_items_notified(self, line_item_ids: List[int]) -> None:
        async with self.session_factory() as tx, tx.begin():
            await tx.execute(
                update(OrderLineItem)
                .where(OrderLineItem.id.in_(line_item_ids))
                .values(notification=True)
            )

    async def _refresh_order_flags(self, shop_domain: str) -> None:
        """Set each order's flag to whether none of its line items is pending."""
        pending = (
            select(OrderLineItem.id)
            .where(
                OrderLineItem.order_id == Order.id,
                OrderLineItem.notification.is_(False),
            )
            .exists()
        )
        async with self.session_factory() as tx, tx.begin():
            await tx.execute(
                update(Order)
                .where(Order.shop_domain == shop_domain)
                .values(notification=~pending)
                .execution_options(synchronize_session=False)
            )

    async def _touch_last_notified(self, owner_id: int, now: datetime) -> None:
        async with self.session_factory() as tx, tx.begin():
            await tx.execute(
                update(User).where(User.id == owner_id).values(last_notified_at=now)
            )
