"""
Data Sync Service
Reconciles Shopify orders, products and vendors into the local database
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vendor_alert.config import settings
from vendor_alert.database import SessionLocal
from vendor_alert.errors import PersistenceError, TenantNotFoundError
from vendor_alert.models import Order, OrderLineItem, Product, Shop, SyncLog, User, Vendor
from vendor_alert.models.sync_log import (
    STATUS_ERROR,
    STATUS_RUNNING,
    STATUS_SUCCESS,
    SYNC_INITIAL,
    SYNC_MANUAL,
    SYNC_WEBHOOK,
)
from vendor_alert.models.user import ROLE_STORE_OWNER
from vendor_alert.services.payloads import (
    SyncLineItem,
    SyncOrder,
    SyncProduct,
    order_from_graphql,
    order_from_rest,
    parse_gid,
    product_from_graphql,
    product_from_rest,
)
from vendor_alert.services.shopify_client import ShopifyClient
from vendor_alert.utils.encryption import decrypt_token

logger = logging.getLogger(__name__)

ORDER_TOPICS = {
    "orders/create",
    "orders/updated",
    "orders/paid",
    "orders/cancelled",
    "orders/fulfilled",
}
PRODUCT_UPSERT_TOPICS = {"products/create", "products/update"}
PRODUCT_DELETE_TOPIC = "products/delete"

MANUAL_SYNC_TYPES = ("products", "orders", "vendors", "full")


@dataclass
class TenantSession:
    """Credentials needed to talk to one shop's Admin API."""

    shop_domain: str
    access_token: str


class DataSyncService:
    """
    Service for synchronizing Shopify data into the local schema.

    Every helper that writes takes the AsyncSession that owns the enclosing
    transaction; the service opens one transaction per order (or product)
    so a failing row never rolls back its neighbours.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        client_factory: Optional[Callable[[str, str], ShopifyClient]] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.client_factory = client_factory or ShopifyClient

    # ============== Tenant credentials ==============

    async def get_tenant_session(self, shop_domain: str) -> TenantSession:
        """
        Build API credentials from the stored, encrypted offline token.

        Raises:
            TenantNotFoundError: If the shop is not installed
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(Shop).where(Shop.shop_domain == shop_domain, Shop.is_active.is_(True))
            )
            shop = result.scalar_one_or_none()

        if shop is None or not shop.access_token:
            raise TenantNotFoundError(shop_domain)

        return TenantSession(shop_domain=shop_domain, access_token=decrypt_token(shop.access_token))

    # ============== Orders ==============

    async def sync_all_orders(self, session: TenantSession) -> int:
        """
        Sync every order of a shop, one transaction per order.

        Args:
            session: Tenant credentials

        Returns:
            Number of orders committed

        Raises:
            UpstreamFetchError: If a page cannot be fetched; aborts the run
        """
        shop_domain = session.shop_domain
        batch_size = settings.sync_batch_size
        cursor = None
        synced = 0

        logger.info(f"Starting order sync for {shop_domain}")

        async with self.client_factory(shop_domain, session.access_token) as client:
            while True:
                page = await client.get_orders_page(first=batch_size, after=cursor)
                edges = page["edges"]

                for edge in edges:
                    try:
                        order = order_from_graphql(edge["node"])
                    except (KeyError, ValueError) as e:
                        logger.warning(f"Skipping malformed order for {shop_domain}: {e}")
                        continue

                    try:
                        async with self.session_factory() as tx, tx.begin():
                            await self.sync_order_with_products(order, shop_domain, tx)
                        synced += 1
                    except (PersistenceError, SQLAlchemyError) as e:
                        logger.error(
                            f"Failed to sync order {order.shopify_order_id} for {shop_domain}: {e}"
                        )

                logger.info(f"Synced {synced} orders so far for {shop_domain}")

                if not page["has_next_page"] or not edges:
                    break
                cursor = edges[-1]["cursor"]

        logger.info(f"Order sync completed for {shop_domain}. Total synced: {synced}")
        return synced

    async def sync_order_with_products(
        self,
        order: SyncOrder,
        shop_domain: str,
        tx: AsyncSession,
    ) -> Order:
        """
        Upsert an order with its vendors, products and line items.

        Args:
            order: Canonical order
            shop_domain: Tenant shop
            tx: Session owning the enclosing transaction

        Returns:
            The persisted order row

        Raises:
            PersistenceError: On any database failure
        """
        try:
            db_order = await self._upsert_order(order, shop_domain, tx)

            inserted_pending = False
            for item, quantity in self._merge_line_items(order.line_items):
                vendor = None
                if item.vendor:
                    vendor = await self.ensure_vendor_exists(item.vendor, shop_domain, tx)

                product = await self.ensure_product_exists(
                    self._product_from_line_item(item),
                    shop_domain,
                    vendor,
                    tx,
                )

                existing = await tx.execute(
                    select(OrderLineItem.id).where(
                        OrderLineItem.order_id == db_order.id,
                        OrderLineItem.product_id == product.id,
                    )
                )
                if existing.scalar_one_or_none() is not None:
                    continue

                line_item = OrderLineItem(
                    order_id=db_order.id,
                    product_id=product.id,
                    shopify_line_item_id=item.shopify_line_item_id,
                    title=item.title,
                    vendor_name=item.vendor,
                    quantity=quantity,
                    notification=False,
                    shop_domain=shop_domain,
                )
                _, created = await self._insert_or_fetch(
                    tx,
                    line_item,
                    select(OrderLineItem).where(
                        OrderLineItem.order_id == db_order.id,
                        OrderLineItem.product_id == product.id,
                    ),
                )
                inserted_pending = inserted_pending or created

            if inserted_pending and db_order.notification:
                db_order.notification = False

            await tx.flush()
            return db_order

        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Database error syncing order {order.shopify_order_id}",
                details=str(e),
            ) from e

    async def _upsert_order(self, order: SyncOrder, shop_domain: str, tx: AsyncSession) -> Order:
        lookup = select(Order).where(Order.shopify_order_id == order.shopify_order_id)
        result = await tx.execute(lookup)
        db_order = result.scalar_one_or_none()

        if db_order is None:
            db_order, created = await self._insert_or_fetch(
                tx,
                Order(
                    shopify_order_id=order.shopify_order_id,
                    name=order.name,
                    total_price=order.total_price,
                    financial_status=order.financial_status,
                    fulfillment_status=order.fulfillment_status,
                    notification=False,
                    shop_domain=shop_domain,
                    shopify_created_at=order.created_at,
                    shopify_updated_at=order.updated_at,
                ),
                lookup,
            )
            if created:
                return db_order

        # Mutable fields only; id and attached line items are kept
        db_order.name = order.name
        db_order.total_price = order.total_price
        db_order.financial_status = order.financial_status
        db_order.fulfillment_status = order.fulfillment_status
        if order.created_at:
            db_order.shopify_created_at = order.created_at
        if order.updated_at:
            db_order.shopify_updated_at = order.updated_at
        return db_order

    @staticmethod
    def _merge_line_items(items: Iterable[SyncLineItem]) -> List[Tuple[SyncLineItem, int]]:
        """Drop items without a product and sum quantities per product."""
        merged: Dict[int, List] = {}
        for item in items:
            if item.product_id is None:
                logger.debug(f"Skipping line item without product: {item.title}")
                continue
            if item.product_id in merged:
                merged[item.product_id][1] += item.quantity
            else:
                merged[item.product_id] = [item, item.quantity]
        return [(item, quantity) for item, quantity in merged.values()]

    @staticmethod
    def _product_from_line_item(item: SyncLineItem) -> SyncProduct:
        return SyncProduct(
            shopify_product_id=item.product_id,
            title=item.product_title or item.title,
            vendor=item.vendor,
            image=item.image,
        )

    # ============== Vendors & products ==============

    async def ensure_vendor_exists(self, name: str, shop_domain: str, tx: AsyncSession) -> Vendor:
        """
        Get or create the vendor for (name, shop_domain).

        A concurrent insert of the same vendor is absorbed by the unique
        constraint and resolved by reading the winning row.
        """
        lookup = select(Vendor).where(Vendor.name == name, Vendor.shop_domain == shop_domain)
        result = await tx.execute(lookup)
        vendor = result.scalar_one_or_none()
        if vendor is not None:
            return vendor

        vendor, created = await self._insert_or_fetch(
            tx,
            Vendor(name=name, shop_domain=shop_domain),
            lookup,
        )
        if created:
            logger.info(f"Registered vendor '{name}' for {shop_domain}")
        return vendor

    async def ensure_product_exists(
        self,
        item: SyncProduct,
        shop_domain: str,
        vendor: Optional[Vendor],
        tx: AsyncSession,
    ) -> Product:
        """
        Insert the product on first sight, otherwise refresh it in place.

        Fields missing from the payload keep their stored value.
        """
        lookup = select(Product).where(Product.shopify_product_id == item.shopify_product_id)
        result = await tx.execute(lookup)
        product = result.scalar_one_or_none()

        if product is None:
            product, created = await self._insert_or_fetch(
                tx,
                Product(
                    shopify_product_id=item.shopify_product_id,
                    title=item.title or f"Product {item.shopify_product_id}",
                    image=item.image,
                    handle=item.handle,
                    product_type=item.product_type,
                    status=item.status or "active",
                    vendor_name=item.vendor,
                    vendor_id=vendor.id if vendor else None,
                    shop_domain=shop_domain,
                ),
                lookup,
            )
            if created:
                return product

        if item.title:
            product.title = item.title
        if item.image:
            product.image = item.image
        if item.handle:
            product.handle = item.handle
        if item.product_type:
            product.product_type = item.product_type
        if item.status:
            product.status = item.status
        if vendor is not None:
            product.vendor_name = vendor.name
            product.vendor_id = vendor.id
        return product

    async def _insert_or_fetch(self, tx: AsyncSession, instance, lookup) -> Tuple[object, bool]:
        """
        Insert inside a SAVEPOINT; on a unique conflict return the existing row.

        Returns:
            (row, created)
        """
        try:
            async with tx.begin_nested():
                tx.add(instance)
                await tx.flush()
        except IntegrityError:
            result = await tx.execute(lookup)
            existing = result.scalar_one_or_none()
            if existing is None:
                raise
            logger.debug(f"Concurrent insert resolved to existing row {existing!r}")
            return existing, False
        return instance, True

    async def bootstrap_vendors(self, session: TenantSession, tx: AsyncSession) -> int:
        """
        Register every catalog vendor before the first order sync.

        Args:
            session: Tenant credentials
            tx: Session owning the enclosing transaction

        Returns:
            Number of distinct vendor names registered or confirmed
        """
        async with self.client_factory(session.shop_domain, session.access_token) as client:
            names = await client.get_all_product_vendors()

        seen = set()
        for name in names:
            if name in seen:
                continue
            seen.add(name)
            await self.ensure_vendor_exists(name, session.shop_domain, tx)

        logger.info(f"Bootstrapped {len(seen)} vendors for {session.shop_domain}")
        return len(seen)

    async def sync_all_products(self, session: TenantSession) -> int:
        """
        Sync the full product catalog, one transaction per product.

        Returns:
            Number of products committed
        """
        shop_domain = session.shop_domain
        synced = 0

        logger.info(f"Starting product sync for {shop_domain}")

        async with self.client_factory(shop_domain, session.access_token) as client:
            async for node in client.iter_products():
                try:
                    product = product_from_graphql(node)
                except (KeyError, ValueError) as e:
                    logger.warning(f"Skipping malformed product for {shop_domain}: {e}")
                    continue

                try:
                    async with self.session_factory() as tx, tx.begin():
                        await self.sync_product(product, shop_domain, tx)
                    synced += 1
                except SQLAlchemyError as e:
                    logger.error(
                        f"Failed to sync product {product.shopify_product_id} for {shop_domain}: {e}"
                    )

        logger.info(f"Product sync completed for {shop_domain}. Total synced: {synced}")
        return synced

    async def sync_product(self, product: SyncProduct, shop_domain: str, tx: AsyncSession) -> Product:
        """Upsert one catalog product and its vendor."""
        vendor = None
        if product.vendor:
            vendor = await self.ensure_vendor_exists(product.vendor, shop_domain, tx)
        db_product = await self.ensure_product_exists(product, shop_domain, vendor, tx)
        await tx.flush()
        return db_product

    async def delete_product(self, shopify_product_id: int, shop_domain: str) -> int:
        """Mark a product deleted; line items keep their reference."""
        async with self.session_factory() as tx, tx.begin():
            result = await tx.execute(
                update(Product)
                .where(
                    Product.shopify_product_id == shopify_product_id,
                    Product.shop_domain == shop_domain,
                )
                .values(status="deleted", updated_at=datetime.utcnow())
            )
        return result.rowcount

    # ============== Sync runs ==============

    async def perform_initial_sync(self, session: TenantSession, force: bool = False) -> dict:
        """
        Full catalog and order sync for a newly installed shop.

        Args:
            session: Tenant credentials
            force: Run even when the initial sync already completed

        Returns:
            dict: Sync statistics
        """
        shop_domain = session.shop_domain

        async with self.session_factory() as db:
            result = await db.execute(
                select(User).where(User.shop_domain == shop_domain, User.role == ROLE_STORE_OWNER)
            )
            owner = result.scalar_one_or_none()

        if owner is None:
            raise TenantNotFoundError(shop_domain)

        if owner.initial_sync_completed and not force:
            logger.info(f"Initial sync already completed for {shop_domain}")
            return {"skipped": True, "products": 0, "orders": 0}

        sync_type = SYNC_MANUAL if force else SYNC_INITIAL
        await self.log_sync_start(shop_domain, sync_type, "full_sync")

        try:
            products = await self.sync_all_products(session)
            orders = await self.sync_all_orders(session)
        except Exception as e:
            await self.log_sync_complete(shop_domain, sync_type, "full_sync", STATUS_ERROR, error=str(e))
            logger.error(f"Initial sync failed for {shop_domain}: {e}")
            raise

        async with self.session_factory() as tx, tx.begin():
            await tx.execute(
                update(User)
                .where(User.shop_domain == shop_domain, User.role == ROLE_STORE_OWNER)
                .values(initial_sync_completed=True)
            )

        await self.log_sync_complete(
            shop_domain,
            sync_type,
            "full_sync",
            STATUS_SUCCESS,
            records=products + orders,
        )
        logger.info(f"Initial sync completed for {shop_domain}: {products} products, {orders} orders")
        return {"skipped": False, "products": products, "orders": orders}

    async def run_manual_sync(self, shop_domain: str, sync_type: str) -> dict:
        """
        Run a merchant-triggered sync.

        Args:
            shop_domain: Tenant shop
            sync_type: One of products, orders, vendors, full

        Returns:
            dict: Sync statistics
        """
        if sync_type not in MANUAL_SYNC_TYPES:
            raise ValueError(f"Unknown sync type: {sync_type}")

        session = await self.get_tenant_session(shop_domain)

        if sync_type == "full":
            return await self.perform_initial_sync(session, force=True)

        await self.log_sync_start(shop_domain, SYNC_MANUAL, sync_type)
        try:
            if sync_type == "products":
                count = await self.sync_all_products(session)
            elif sync_type == "orders":
                count = await self.sync_all_orders(session)
            else:
                async with self.session_factory() as tx, tx.begin():
                    count = await self.bootstrap_vendors(session, tx)
        except Exception as e:
            await self.log_sync_complete(shop_domain, SYNC_MANUAL, sync_type, STATUS_ERROR, error=str(e))
            raise

        await self.log_sync_complete(shop_domain, SYNC_MANUAL, sync_type, STATUS_SUCCESS, records=count)
        return {sync_type: count}

    async def handle_webhook_sync(self, payload: dict, shop_domain: str, topic: str) -> dict:
        """
        Apply a REST webhook payload.

        Args:
            payload: Webhook body
            shop_domain: Shop from the X-Shopify-Shop-Domain header
            topic: Webhook topic, e.g. "orders/create"

        Returns:
            dict: Processing result
        """
        if topic not in ORDER_TOPICS | PRODUCT_UPSERT_TOPICS | {PRODUCT_DELETE_TOPIC}:
            logger.info(f"Ignoring unhandled webhook topic {topic} for {shop_domain}")
            return {"handled": False, "topic": topic}

        entity_type = topic.split("/", 1)[0]
        await self.log_sync_start(shop_domain, SYNC_WEBHOOK, entity_type)

        try:
            result = await self._apply_webhook(payload, shop_domain, topic)
        except (ValidationError, KeyError, ValueError, SQLAlchemyError, PersistenceError) as e:
            await self.log_sync_complete(shop_domain, SYNC_WEBHOOK, entity_type, STATUS_ERROR, error=str(e))
            logger.error(f"Webhook sync failed for {topic} on {shop_domain}: {e}")
            raise

        await self.log_sync_complete(shop_domain, SYNC_WEBHOOK, entity_type, STATUS_SUCCESS, records=1)
        return {"handled": True, "topic": topic, **result}

    async def _apply_webhook(self, payload: dict, shop_domain: str, topic: str) -> dict:
        if topic == PRODUCT_DELETE_TOPIC:
            product_id = parse_gid(payload["id"])
            await self.delete_product(product_id, shop_domain)
            return {"product_id": product_id, "status": "deleted"}

        if topic in PRODUCT_UPSERT_TOPICS:
            product = product_from_rest(payload)
            async with self.session_factory() as tx, tx.begin():
                db_product = await self.sync_product(product, shop_domain, tx)
                product_id = db_product.id
            return {"product_id": product_id}

        order = order_from_rest(payload)
        async with self.session_factory() as tx, tx.begin():
            db_order = await self.sync_order_with_products(order, shop_domain, tx)
            order_id = db_order.id
        return {"order_id": order_id}

    # ============== Sync logs ==============

    async def log_sync_start(self, shop_domain: str, sync_type: str, entity_type: str) -> int:
        """Open a sync log row and return its id."""
        async with self.session_factory() as tx, tx.begin():
            log = SyncLog(
                shop_domain=shop_domain,
                sync_type=sync_type,
                entity_type=entity_type,
                status=STATUS_RUNNING,
            )
            tx.add(log)
            await tx.flush()
            return log.id

    async def log_sync_complete(
        self,
        shop_domain: str,
        sync_type: str,
        entity_type: str,
        status: str,
        error: str = None,
        records: int = None,
    ) -> Optional[SyncLog]:
        """Close the most recent open log row for shop/type/entity."""
        async with self.session_factory() as tx, tx.begin():
            result = await tx.execute(
                select(SyncLog)
                .where(
                    SyncLog.shop_domain == shop_domain,
                    SyncLog.sync_type == sync_type,
                    SyncLog.entity_type == entity_type,
                    SyncLog.completed_at.is_(None),
                )
                .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
                .limit(1)
            )
            log = result.scalar_one_or_none()
            if log is None:
                logger.warning(f"No open sync log for {shop_domain} {sync_type}/{entity_type}")
                return None

            log.mark_complete(status, error=error, records=records)
            return log
