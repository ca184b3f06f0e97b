"""
Unit tests for Shopify OAuth routes.
"""

from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi import status

from conftest import API_KEY, SHOP, sign_query
from vendor_alert.errors import UpstreamFetchError
from vendor_alert.routes import oauth


@pytest.fixture(autouse=True)
def memory_state_store():
    """Keep OAuth state in memory instead of reaching for Redis."""
    oauth._fallback_states.clear()
    with patch("vendor_alert.routes.oauth._get_redis", AsyncMock(return_value=None)):
        yield
    oauth._fallback_states.clear()


def mock_shopify_client(email="owner@test-shop.com"):
    client = MagicMock()
    client.get_shop = AsyncMock(return_value={"name": "Test Shop", "email": email})
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=None)
    return MagicMock(return_value=client)


async def start_auth(client):
    response = await client.get("/auth", params={"shop": SHOP})
    return parse_qs(urlparse(response.headers["location"]).query)["state"][0]


def callback_params(state, shop=SHOP):
    return sign_query({"code": "auth-code", "shop": shop, "state": state, "timestamp": "1760000000"})


class TestOAuthStart:
    """Tests for the /auth endpoint."""

    @pytest.mark.asyncio
    async def test_redirects_to_shop_authorization(self, client):
        response = await client.get("/auth", params={"shop": SHOP})

        assert response.status_code == status.HTTP_307_TEMPORARY_REDIRECT
        location = urlparse(response.headers["location"])
        query = parse_qs(location.query)
        assert location.netloc == SHOP
        assert location.path == "/admin/oauth/authorize"
        assert query["client_id"] == [API_KEY]
        assert query["state"][0] in oauth._fallback_states

    @pytest.mark.asyncio
    @pytest.mark.parametrize("shop", ["evil.com", "shop.myshopify.com.evil.com", "-bad.myshopify.com"])
    async def test_invalid_shop_rejected(self, client, shop):
        response = await client.get("/auth", params={"shop": shop})
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    @pytest.mark.asyncio
    async def test_shop_required(self, client):
        response = await client.get("/auth")
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestOAuthCallback:
    """Tests for the /auth/callback endpoint."""

    @pytest.mark.asyncio
    async def test_bad_hmac_rejected(self, client):
        state = await start_auth(client)
        params = callback_params(state)
        params["hmac"] = "0" * 64

        response = await client.get("/auth/callback", params=params)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Invalid OAuth signature"

    @pytest.mark.asyncio
    async def test_unknown_state_rejected(self, client):
        response = await client.get("/auth/callback", params=callback_params("never-issued"))

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Invalid OAuth state parameter"

    @pytest.mark.asyncio
    async def test_state_bound_to_shop(self, client):
        state = await start_auth(client)

        response = await client.get("/auth/callback", params=callback_params(state, shop="other-shop.myshopify.com"))

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    @pytest.mark.asyncio
    async def test_successful_install_redirects_to_embedded_app(self, client):
        state = await start_auth(client)
        exchange = AsyncMock(return_value={"access_token": "shpat_new", "scope": "read_orders,read_products"})
        install = AsyncMock()

        with patch.object(oauth.StoreService, "exchange_token", exchange), \
                patch.object(oauth.StoreService, "install_shop", install), \
                patch("vendor_alert.routes.oauth.ShopifyClient", mock_shopify_client()):
            response = await client.get("/auth/callback", params=callback_params(state))

        assert response.status_code == status.HTTP_302_FOUND
        assert response.headers["location"] == f"https://{SHOP}/admin/apps/{API_KEY}"
        exchange.assert_awaited_once_with(SHOP, "auth-code")
        install.assert_awaited_once_with(
            shop_domain=SHOP,
            access_token="shpat_new",
            scope="read_orders,read_products",
            email="owner@test-shop.com",
        )

    @pytest.mark.asyncio
    async def test_state_is_single_use(self, client):
        state = await start_auth(client)
        exchange = AsyncMock(return_value={"access_token": "shpat_new", "scope": ""})

        with patch.object(oauth.StoreService, "exchange_token", exchange), \
                patch.object(oauth.StoreService, "install_shop", AsyncMock()), \
                patch("vendor_alert.routes.oauth.ShopifyClient", mock_shopify_client()):
            first = await client.get("/auth/callback", params=callback_params(state))
            second = await client.get("/auth/callback", params=callback_params(state))

        assert first.status_code == status.HTTP_302_FOUND
        assert second.status_code == status.HTTP_400_BAD_REQUEST

    @pytest.mark.asyncio
    async def test_token_exchange_failure(self, client):
        state = await start_auth(client)
        exchange = AsyncMock(side_effect=UpstreamFetchError("Token exchange failed", status_code=400))

        with patch.object(oauth.StoreService, "exchange_token", exchange):
            response = await client.get("/auth/callback", params=callback_params(state))

        assert response.status_code == status.HTTP_502_BAD_GATEWAY
