"""
Unit tests for Shopify webhook routes.
"""

import pytest
from sqlalchemy import func, select

from conftest import SHOP, create_shop, sign_webhook, webhook_request
from vendor_alert.models import Message, Order, OrderLineItem, Product, Shop, User, Vendor
from vendor_alert.services.chat_service import ChatService


class TestHMACVerification:
    """Tests for webhook signature checks."""

    @pytest.mark.asyncio
    async def test_webhook_without_signature_fails(self, client, sample_order_payload):
        response = await client.post(
            "/webhooks/orders",
            json=sample_order_payload,
            headers={"X-Shopify-Shop-Domain": SHOP, "X-Shopify-Topic": "orders/create"},
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_signature_fails(self, client, session_factory, store_owner, sample_order_payload):
        """A tampered body is rejected before anything is written."""
        body, headers = webhook_request(sample_order_payload, "orders/create")
        tampered = body.replace(b"#1001", b"#9999")

        response = await client.post("/webhooks/orders", content=tampered, headers=headers)

        assert response.status_code == 401
        async with session_factory() as db:
            assert await db.scalar(select(func.count(Order.id))) == 0

    def test_signature_is_base64_sha256(self):
        body = b'{"id": 1}'
        assert sign_webhook(body) != sign_webhook(body, secret="other-secret")
        assert len(sign_webhook(body)) == 44


class TestOrderWebhook:
    """Tests for order webhook handling."""

    @pytest.mark.asyncio
    async def test_order_created_webhook(self, client, session_factory, store_owner, sample_order_payload):
        body, headers = webhook_request(sample_order_payload, "orders/create")

        response = await client.post("/webhooks/orders", content=body, headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "processed"
        assert data["topic"] == "orders/create"
        async with session_factory() as db:
            assert await db.scalar(select(func.count(OrderLineItem.id))) == 2

    @pytest.mark.asyncio
    async def test_redelivered_webhook_is_idempotent(self, client, session_factory, store_owner, sample_order_payload):
        body, headers = webhook_request(sample_order_payload, "orders/create")

        await client.post("/webhooks/orders", content=body, headers=headers)
        await client.post("/webhooks/orders", content=body, headers=headers)

        async with session_factory() as db:
            assert await db.scalar(select(func.count(Order.id))) == 1
            assert await db.scalar(select(func.count(OrderLineItem.id))) == 2

    @pytest.mark.asyncio
    async def test_missing_shop_header(self, client, sample_order_payload):
        body, headers = webhook_request(sample_order_payload, "orders/create")
        del headers["X-Shopify-Shop-Domain"]

        response = await client.post("/webhooks/orders", content=body, headers=headers)

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_json_body(self, client):
        body = b"not json"
        headers = {
            "X-Shopify-Hmac-Sha256": sign_webhook(body),
            "X-Shopify-Topic": "orders/create",
            "X-Shopify-Shop-Domain": SHOP,
        }

        response = await client.post("/webhooks/orders", content=body, headers=headers)

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_processing_failure_is_acknowledged(self, client, sample_order_payload):
        """Failures answer 200 with an error status so Shopify does not retry."""
        body, headers = webhook_request(sample_order_payload, "orders/create", shop_domain="unknown.myshopify.com")

        response = await client.post("/webhooks/orders", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "error"


class TestProductWebhook:
    """Tests for product webhook handling."""

    @pytest.mark.asyncio
    async def test_product_update_webhook(self, client, session_factory, store_owner, sample_product_payload):
        body, headers = webhook_request(sample_product_payload, "products/update")

        response = await client.post("/webhooks/products", content=body, headers=headers)

        assert response.json()["status"] == "processed"
        async with session_factory() as db:
            product = await db.scalar(select(Product))
        assert product.title == "Blue Mug"
        assert product.vendor_name == "Acme"

    @pytest.mark.asyncio
    async def test_product_deleted_webhook(self, client, session_factory, store_owner, sample_product_payload):
        body, headers = webhook_request(sample_product_payload, "products/create")
        await client.post("/webhooks/products", content=body, headers=headers)

        body, headers = webhook_request({"id": 7001}, "products/delete")
        response = await client.post("/webhooks/products", content=body, headers=headers)

        assert response.json()["result"]["status"] == "deleted"


class TestAppWebhooks:
    """Tests for uninstall and privacy webhooks."""

    @pytest.mark.asyncio
    async def test_app_uninstalled_clears_token(self, client, session_factory, store_owner):
        await create_shop(session_factory)
        body, headers = webhook_request({"id": 1, "domain": SHOP}, "app/uninstalled")
        del headers["X-Shopify-Topic"]

        response = await client.post("/webhooks/app-uninstalled", content=body, headers=headers)

        assert response.json()["result"] == {"status": "uninstalled"}
        async with session_factory() as db:
            shop = await db.scalar(select(Shop))
        assert shop.is_active is False
        assert shop.access_token == ""
        assert shop.uninstalled_at is not None

    @pytest.mark.asyncio
    async def test_customer_data_request_is_acknowledged(self, client):
        body, headers = webhook_request({"customer": {"id": 77}}, "customers/data_request")

        response = await client.post("/webhooks/privacy/customers-data-request", content=body, headers=headers)

        assert response.json()["result"]["status"] == "acknowledged"

    @pytest.mark.asyncio
    async def test_shop_redact_removes_tenant_rows(
        self, client, session_factory, store_owner, vendor_user, sample_order_payload
    ):
        await create_shop(session_factory)
        body, headers = webhook_request(sample_order_payload, "orders/create")
        await client.post("/webhooks/orders", content=body, headers=headers)
        async with session_factory() as db:
            await ChatService(db).create_message(vendor_user, store_owner.id, {"content": "Hi"})

        body, headers = webhook_request({"shop_domain": SHOP}, "shop/redact")
        response = await client.post("/webhooks/privacy/shop-redact", content=body, headers=headers)

        deleted = response.json()["result"]["deleted"]
        assert deleted["orders"] == 1
        assert deleted["messages"] == 1
        async with session_factory() as db:
            for model in (Shop, Order, OrderLineItem, Product, Vendor, Message):
                assert await db.scalar(select(func.count()).select_from(model)) == 0
            remaining = (await db.execute(select(User.email))).scalars().all()
        # Vendor accounts are not tenant rows
        assert remaining == [vendor_user.email]
