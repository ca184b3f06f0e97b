"""
Tests for the data sync engine.
"""

from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from conftest import SHOP, FakeShopifyClient, create_shop, graphql_order_node
from vendor_alert.errors import PersistenceError, TenantNotFoundError, UpstreamFetchError
from vendor_alert.models import Order, OrderLineItem, Product, SyncLog, User, Vendor
from vendor_alert.models.sync_log import STATUS_SUCCESS, SYNC_INITIAL, SYNC_WEBHOOK
from vendor_alert.services.data_sync import DataSyncService, TenantSession
from vendor_alert.services.payloads import SyncProduct, parse_gid


async def count(session_factory, model, *conditions):
    async with session_factory() as db:
        return await db.scalar(select(func.count()).select_from(model).where(*conditions))


class TestParseGid:
    """Tests for global id parsing."""

    @pytest.mark.parametrize("value, expected", [
        ("gid://shopify/Product/123", 123),
        ("gid://other-app/Product/42", 42),
        ("gid://shopify/LineItem/1?origin=checkout", 1),
        ("17", 17),
        (9, 9),
    ])
    def test_numeric_id_is_last_segment(self, value, expected):
        assert parse_gid(value) == expected

    @pytest.mark.parametrize("value", ["", None, "gid://shopify/Product/abc"])
    def test_invalid_ids_raise(self, value):
        with pytest.raises(ValueError):
            parse_gid(value)

class TestOrderWebhookSync:
    """Tests for applying orders/* payloads."""

    @pytest.mark.asyncio
    async def test_order_creates_vendors_products_and_merged_line_items(
        self, session_factory, store_owner, sample_order_payload
    ):
        """Duplicate products merge, items without a product are skipped."""
        service = DataSyncService(session_factory)
        result = await service.handle_webhook_sync(sample_order_payload, SHOP, "orders/create")

        assert result["handled"] is True
        async with session_factory() as db:
            order = await db.scalar(select(Order).where(Order.shopify_order_id == 5001))
            items = (await db.execute(
                select(OrderLineItem).where(OrderLineItem.order_id == order.id).order_by(OrderLineItem.id)
            )).scalars().all()
            vendors = (await db.execute(select(Vendor.name).order_by(Vendor.name))).scalars().all()

        assert order.name == "#1001"
        assert order.financial_status == "paid"
        assert order.notification is False
        # 09:30 -05:00 stored as naive UTC
        assert order.shopify_created_at.hour == 14
        assert [(i.vendor_name, i.quantity) for i in items] == [("Acme", 3), ("Linen Co", 1)]
        assert all(i.notification is False for i in items)
        assert vendors == ["Acme", "Linen Co"]

    @pytest.mark.asyncio
    async def test_replayed_order_does_not_duplicate_rows(self, session_factory, store_owner, sample_order_payload):
        """Re-delivering the same order keeps one order and one line item per product."""
        service = DataSyncService(session_factory)
        await service.handle_webhook_sync(sample_order_payload, SHOP, "orders/create")

        sample_order_payload["financial_status"] = "refunded"
        await service.handle_webhook_sync(sample_order_payload, SHOP, "orders/updated")

        assert await count(session_factory, Order) == 1
        assert await count(session_factory, OrderLineItem) == 2
        assert await count(session_factory, Product) == 2
        assert await count(session_factory, Vendor) == 2
        async with session_factory() as db:
            status = await db.scalar(select(Order.financial_status))
        assert status == "refunded"

    @pytest.mark.asyncio
    async def test_new_product_on_notified_order_resets_order_flag(
        self, session_factory, store_owner, sample_order_payload
    ):
        """An order is only fully notified while no line item is pending."""
        service = DataSyncService(session_factory)
        await service.handle_webhook_sync(sample_order_payload, SHOP, "orders/create")

        async with session_factory() as db, db.begin():
            order = await db.scalar(select(Order))
            order.notification = True
            for item in (await db.execute(select(OrderLineItem))).scalars():
                item.notification = True

        sample_order_payload["line_items"].append(
            {"id": 9005, "title": "Green Mug", "vendor": "Acme", "quantity": 1, "product_id": 7003}
        )
        await service.handle_webhook_sync(sample_order_payload, SHOP, "orders/updated")

        async with session_factory() as db:
            order = await db.scalar(select(Order))
            pending = await db.scalar(
                select(func.count(OrderLineItem.id)).where(OrderLineItem.notification.is_(False))
            )
        assert order.notification is False
        assert pending == 1

    @pytest.mark.asyncio
    async def test_webhook_sync_is_logged(self, session_factory, store_owner, sample_order_payload):
        """Each webhook opens and closes one sync log row."""
        service = DataSyncService(session_factory)
        await service.handle_webhook_sync(sample_order_payload, SHOP, "orders/paid")

        async with session_factory() as db:
            log = await db.scalar(select(SyncLog))
        assert log.sync_type == SYNC_WEBHOOK
        assert log.entity_type == "orders"
        assert log.status == STATUS_SUCCESS
        assert log.completed_at is not None

    @pytest.mark.asyncio
    async def test_unhandled_topic_is_ignored(self, session_factory, store_owner):
        service = DataSyncService(session_factory)
        result = await service.handle_webhook_sync({"id": 1}, SHOP, "carts/update")

        assert result == {"handled": False, "topic": "carts/update"}
        assert await count(session_factory, SyncLog) == 0


class TestProductSync:
    """Tests for product and vendor upserts."""

    @pytest.mark.asyncio
    async def test_product_upsert_is_idempotent(self, session_factory, store_owner, sample_product_payload):
        """Repeated product payloads update the single existing row."""
        service = DataSyncService(session_factory)
        await service.handle_webhook_sync(sample_product_payload, SHOP, "products/create")

        sample_product_payload["title"] = "Blue Mug (Large)"
        await service.handle_webhook_sync(sample_product_payload, SHOP, "products/update")

        async with session_factory() as db:
            products = (await db.execute(select(Product))).scalars().all()
        assert len(products) == 1
        assert products[0].title == "Blue Mug (Large)"
        assert products[0].image == "https://cdn.shopify.test/blue-mug.png"
        assert products[0].sku == "SKU-7001"

    @pytest.mark.asyncio
    async def test_product_delete_marks_status(self, session_factory, store_owner, sample_product_payload):
        service = DataSyncService(session_factory)
        await service.handle_webhook_sync(sample_product_payload, SHOP, "products/create")
        await service.handle_webhook_sync({"id": 7001}, SHOP, "products/delete")

        async with session_factory() as db:
            product = await db.scalar(select(Product))
        assert product.status == "deleted"

    @pytest.mark.asyncio
    async def test_vendor_is_unique_per_shop(self, session_factory, store_owner):
        """ensure_vendor_exists returns the same row for the same name and shop."""
        service = DataSyncService(session_factory)
        async with session_factory() as tx, tx.begin():
            first = await service.ensure_vendor_exists("Acme", SHOP, tx)
            second = await service.ensure_vendor_exists("Acme", SHOP, tx)

        assert first.id == second.id
        assert await count(session_factory, Vendor) == 1

    @pytest.mark.asyncio
    async def test_concurrent_vendor_insert_resolves_to_existing_row(self, session_factory, store_owner):
        """A unique conflict inside the savepoint yields the committed row."""
        service = DataSyncService(session_factory)
        async with session_factory() as tx, tx.begin():
            winner = await service.ensure_vendor_exists("Acme", SHOP, tx)

        async with session_factory() as tx, tx.begin():
            row, created = await service._insert_or_fetch(
                tx,
                Vendor(name="Acme", shop_domain=SHOP),
                select(Vendor).where(Vendor.name == "Acme", Vendor.shop_domain == SHOP),
            )

        assert created is False
        assert row.id == winner.id
        assert await count(session_factory, Vendor) == 1

    @pytest.mark.asyncio
    async def test_product_keeps_stored_fields_missing_from_payload(self, session_factory, store_owner):
        service = DataSyncService(session_factory)
        async with session_factory() as tx, tx.begin():
            await service.sync_product(
                SyncProduct(shopify_product_id=1, title="Lamp", vendor="Acme", image="lamp.png"), SHOP, tx
            )
        async with session_factory() as tx, tx.begin():
            product = await service.sync_product(SyncProduct(shopify_product_id=1, title="Desk Lamp"), SHOP, tx)

        assert product.title == "Desk Lamp"
        assert product.image == "lamp.png"
        assert product.vendor_name == "Acme"


class TestFullSync:
    """Tests for paginated initial and manual syncs."""

    @pytest.mark.asyncio
    async def test_order_sync_follows_cursor_pages(self, session_factory, store_owner):
        fake = FakeShopifyClient(
            orders=[
                graphql_order_node(1, "#1", [(11, "Mug", "Acme", 1)]),
                graphql_order_node(2, "#2", [(12, "Towel", "Linen Co", 2)]),
                graphql_order_node(3, "#3", [(11, "Mug", "Acme", 4)]),
            ],
            page_size=2,
        )
        service = DataSyncService(session_factory, client_factory=fake)

        synced = await service.sync_all_orders(TenantSession(SHOP, "token"))

        assert synced == 3
        assert fake.order_page_calls == 2
        assert await count(session_factory, Order) == 3
        assert await count(session_factory, Product) == 2

    @pytest.mark.asyncio
    async def test_page_fetch_failure_aborts_run(self, session_factory, store_owner):
        """Orders from pages fetched before the failure stay committed."""
        fake = FakeShopifyClient(
            orders=[
                graphql_order_node(1, "#1", [(11, "Mug", "Acme", 1)]),
                graphql_order_node(2, "#2", [(12, "Towel", "Linen Co", 2)]),
                graphql_order_node(3, "#3", [(11, "Mug", "Acme", 4)]),
            ],
            page_size=2,
            fail_on_page=2,
        )
        service = DataSyncService(session_factory, client_factory=fake)

        with pytest.raises(UpstreamFetchError):
            await service.sync_all_orders(TenantSession(SHOP, "token"))

        assert fake.order_page_calls == 2
        assert await count(session_factory, Order) == 2

    @pytest.mark.asyncio
    async def test_failed_order_rolls_back_alone(self, session_factory, store_owner):
        fake = FakeShopifyClient(
            orders=[
                graphql_order_node(1, "#1", [(11, "Mug", "Acme", 1)]),
                graphql_order_node(2, "#2", [(12, "Towel", "Broken", 2)]),
                graphql_order_node(3, "#3", [(13, "Jug", "Acme", 4)]),
            ],
            page_size=2,
        )
        service = DataSyncService(session_factory, client_factory=fake)
        ensure_vendor = DataSyncService.ensure_vendor_exists

        async def failing_vendor(self, name, shop_domain, tx):
            if name == "Broken":
                raise PersistenceError("Failed to persist vendor Broken")
            return await ensure_vendor(self, name, shop_domain, tx)

        with patch.object(DataSyncService, "ensure_vendor_exists", failing_vendor):
            synced = await service.sync_all_orders(TenantSession(SHOP, "token"))

        assert synced == 2
        async with session_factory() as db:
            names = (await db.execute(select(Order.name).order_by(Order.name))).scalars().all()
        assert names == ["#1", "#3"]
        assert await count(session_factory, Product, Product.shopify_product_id == 12) == 0
        assert await count(session_factory, Vendor, Vendor.name == "Broken") == 0

    @pytest.mark.asyncio
    async def test_initial_sync_runs_once(self, session_factory, store_owner):
        """The completion flag guards against a second initial sync."""
        fake = FakeShopifyClient(
            orders=[graphql_order_node(1, "#1", [(11, "Mug", "Acme", 1)])],
            products=[{"id": "gid://shopify/Product/11", "title": "Mug", "vendor": "Acme", "status": "ACTIVE"}],
        )
        service = DataSyncService(session_factory, client_factory=fake)
        session = TenantSession(SHOP, "token")

        first = await service.perform_initial_sync(session)
        second = await service.perform_initial_sync(session)

        assert first == {"skipped": False, "products": 1, "orders": 1}
        assert second["skipped"] is True
        async with session_factory() as db:
            owner = await db.scalar(select(User).where(User.shop_domain == SHOP))
            log = await db.scalar(select(SyncLog).where(SyncLog.sync_type == SYNC_INITIAL))
        assert owner.initial_sync_completed is True
        assert log.status == STATUS_SUCCESS
        assert log.records_synced == 2

    @pytest.mark.asyncio
    async def test_initial_sync_requires_store_owner(self, session_factory):
        service = DataSyncService(session_factory, client_factory=FakeShopifyClient())
        with pytest.raises(TenantNotFoundError):
            await service.perform_initial_sync(TenantSession("missing.myshopify.com", "token"))

    @pytest.mark.asyncio
    async def test_manual_vendor_sync_bootstraps_directory(self, session_factory, store_owner):
        await create_shop(session_factory)
        fake = FakeShopifyClient(vendors=["Acme", "Linen Co", "Acme"])
        service = DataSyncService(session_factory, client_factory=fake)

        result = await service.run_manual_sync(SHOP, "vendors")

        assert result == {"vendors": 2}
        assert fake.access_token == "shpat_test"
        assert await count(session_factory, Vendor) == 2

    @pytest.mark.asyncio
    async def test_manual_sync_rejects_unknown_type(self, session_factory):
        with pytest.raises(ValueError):
            await DataSyncService(session_factory).run_manual_sync(SHOP, "customers")

    @pytest.mark.asyncio
    async def test_manual_sync_requires_installed_shop(self, session_factory, store_owner):
        with pytest.raises(TenantNotFoundError):
            await DataSyncService(session_factory).run_manual_sync(SHOP, "orders")
