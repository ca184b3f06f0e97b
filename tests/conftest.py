"""
Pytest configuration and fixtures for Vendor Alert tests.
"""

import base64
import hashlib
import hmac
import json
import os
import time

import httpx
import jwt
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Set test environment variables before importing app
os.environ.setdefault("SHOPIFY_API_KEY", "test-api-key")
os.environ.setdefault("SHOPIFY_API_SECRET", "test-api-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-32chars-long!")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from vendor_alert.database import Base, build_engine, get_db, get_session_factory  # noqa: E402
from vendor_alert.errors import UpstreamFetchError  # noqa: E402
from vendor_alert.main import app  # noqa: E402
from vendor_alert.middleware.auth import create_access_token, hash_password  # noqa: E402
from vendor_alert.models import Shop, User, Vendor  # noqa: E402
from vendor_alert.models.user import ROLE_STORE_OWNER, ROLE_VENDOR  # noqa: E402
from vendor_alert.realtime import ChannelManager, RealtimeService  # noqa: E402
from vendor_alert.utils.encryption import encrypt_token  # noqa: E402

SHOP = "test-shop.myshopify.com"
OTHER_SHOP = "other-shop.myshopify.com"
API_KEY = os.environ["SHOPIFY_API_KEY"]
API_SECRET = os.environ["SHOPIFY_API_SECRET"]


# ============== Database ==============


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database file per test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'vendor_alert.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ============== App ==============


@pytest.fixture
def realtime(session_factory):
    return RealtimeService(ChannelManager(), session_factory)


@pytest_asyncio.fixture
async def client(session_factory, realtime):
    """Async test client with database and realtime overrides."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    previous_realtime = app.state.realtime
    app.state.realtime = realtime

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client

    app.state.realtime = previous_realtime
    app.dependency_overrides.clear()


# ============== Data ==============


async def create_store_owner(session_factory, shop_domain=SHOP, **fields):
    async with session_factory() as db:
        owner = User(
            role=ROLE_STORE_OWNER,
            email=fields.pop("email", f"owner@{shop_domain}"),
            username=fields.pop("username", shop_domain.split(".", 1)[0]),
            shop_domain=shop_domain,
            **fields,
        )
        db.add(owner)
        await db.commit()
        return owner


async def create_vendor_user(session_factory, email, username=None, password=None, **fields):
    async with session_factory() as db:
        user = User(
            role=ROLE_VENDOR,
            email=email,
            username=username or email.split("@", 1)[0],
            password_hash=hash_password(password) if password else None,
            **fields,
        )
        db.add(user)
        await db.commit()
        return user


async def create_vendor(session_factory, name, shop_domain=SHOP, email=None):
    async with session_factory() as db:
        vendor = Vendor(name=name, shop_domain=shop_domain, email=email)
        db.add(vendor)
        await db.commit()
        return vendor


async def create_shop(session_factory, shop_domain=SHOP, access_token="shpat_test"):
    async with session_factory() as db:
        shop = Shop(shop_domain=shop_domain, access_token=encrypt_token(access_token), scope="read_orders")
        db.add(shop)
        await db.commit()
        return shop


@pytest_asyncio.fixture
async def store_owner(session_factory):
    return await create_store_owner(session_factory)


@pytest_asyncio.fixture
async def vendor_user(session_factory, store_owner):
    """Vendor user linked to the test shop's "Acme" vendor by email."""
    user = await create_vendor_user(session_factory, "acme@vendors.test", username="acme", password="vendor-pass")
    await create_vendor(session_factory, "Acme", email=user.email)
    return user


# ============== Credentials ==============


def session_token(shop_domain=SHOP, secret=API_SECRET, audience=API_KEY, expires_in=60):
    """Shopify App Bridge style session token."""
    now = int(time.time())
    payload = {
        "iss": f"https://{shop_domain}/admin",
        "dest": f"https://{shop_domain}",
        "aud": audience,
        "sub": "42",
        "exp": now + expires_in,
        "nbf": now - 5,
        "iat": now,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def shop_headers(shop_domain=SHOP):
    return {"Authorization": f"Bearer {session_token(shop_domain)}"}


def chat_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user)}"}


def sign_webhook(body: bytes, secret=API_SECRET) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def webhook_request(payload, topic, shop_domain=SHOP):
    """Body and headers of a signed Shopify webhook."""
    body = json.dumps(payload).encode()
    headers = {
        "Content-Type": "application/json",
        "X-Shopify-Hmac-Sha256": sign_webhook(body),
        "X-Shopify-Topic": topic,
        "X-Shopify-Shop-Domain": shop_domain,
    }
    return body, headers


def sign_query(params: dict, secret=API_SECRET) -> dict:
    """Add the hex hmac Shopify puts on OAuth redirects."""
    message = "&".join(f"{key}={value}" for key, value in sorted(params.items()))
    signed = dict(params)
    signed["hmac"] = hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()
    return signed


# ============== Sample payloads ==============


@pytest.fixture
def sample_order_payload():
    """orders/create webhook body."""
    return {
        "id": 5001,
        "name": "#1001",
        "total_price": "59.97",
        "financial_status": "paid",
        "fulfillment_status": None,
        "created_at": "2026-01-10T09:30:00-05:00",
        "updated_at": "2026-01-10T09:30:00-05:00",
        "line_items": [
            {"id": 9001, "title": "Blue Mug", "vendor": "Acme", "quantity": 2, "product_id": 7001, "variant_id": 8001},
            {"id": 9002, "title": "Blue Mug", "vendor": "Acme", "quantity": 1, "product_id": 7001, "variant_id": 8002},
            {"id": 9003, "title": "Tea Towel", "vendor": "Linen Co", "quantity": 1, "product_id": 7002, "variant_id": 8003},
            {"id": 9004, "title": "Gift wrap", "vendor": None, "quantity": 1, "product_id": None, "variant_id": None},
        ],
    }


@pytest.fixture
def sample_product_payload():
    """products/update webhook body."""
    return {
        "id": 7001,
        "title": "Blue Mug",
        "handle": "blue-mug",
        "vendor": "Acme",
        "product_type": "Kitchen",
        "status": "active",
        "image": {"src": "https://cdn.shopify.test/blue-mug.png"},
    }


def graphql_order_node(order_id, name, items):
    """Admin GraphQL order node; items are (product_id, title, vendor, quantity)."""
    return {
        "id": f"gid://shopify/Order/{order_id}",
        "name": name,
        "totalPriceSet": {"shopMoney": {"amount": "10.00"}},
        "displayFinancialStatus": "PAID",
        "displayFulfillmentStatus": "UNFULFILLED",
        "createdAt": "2026-01-10T10:00:00Z",
        "updatedAt": "2026-01-10T10:00:00Z",
        "lineItems": {
            "edges": [
                {
                    "node": {
                        "id": f"gid://shopify/LineItem/{order_id}{index}",
                        "title": title,
                        "vendor": vendor,
                        "quantity": quantity,
                        "image": None,
                        "product": {
                            "id": f"gid://shopify/Product/{product_id}",
                            "title": title,
                            "vendor": vendor,
                            "featuredImage": {"url": f"https://cdn.shopify.test/{product_id}.png"},
                        },
                        "variant": {"id": f"gid://shopify/ProductVariant/{product_id}1"},
                    }
                }
                for index, (product_id, title, vendor, quantity) in enumerate(items)
            ]
        },
    }


class FakeShopifyClient:
    """
    Stand-in for ShopifyClient serving canned GraphQL data.

    Used as `client_factory` for DataSyncService.
    """

    def __init__(self, orders=None, products=None, vendors=None, page_size=2, fail_on_page=None):
        self.orders = orders or []
        self.products = products or []
        self.vendors = vendors or []
        self.page_size = page_size
        self.fail_on_page = fail_on_page
        self.order_page_calls = 0

    def __call__(self, shop_domain, access_token):
        self.shop_domain = shop_domain
        self.access_token = access_token
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def get_orders_page(self, first=50, after=None):
        self.order_page_calls += 1
        if self.order_page_calls == self.fail_on_page:
            raise UpstreamFetchError("Shopify API error: 503", status_code=503)
        start = int(after) if after else 0
        chunk = self.orders[start:start + self.page_size]
        edges = [{"cursor": str(start + i + 1), "node": node} for i, node in enumerate(chunk)]
        return {"edges": edges, "has_next_page": start + self.page_size < len(self.orders)}

    async def iter_products(self, first=None):
        for node in self.products:
            yield node

    async def get_all_product_vendors(self, first=250):
        return list(self.vendors)
