"""
Shopify Admin API Client
Handles all GraphQL interactions with a merchant's store
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from vendor_alert.config import settings
from vendor_alert.errors import UpstreamFetchError

logger = logging.getLogger(__name__)


ORDERS_QUERY = """
query GetOrders($first: Int!, $after: String) {
  orders(first: $first, after: $after) {
    edges {
      cursor
      node {
        id
        name
        totalPriceSet { shopMoney { amount } }
        displayFinancialStatus
        displayFulfillmentStatus
        createdAt
        updatedAt
        lineItems(first: 100) {
          edges {
            node {
              id
              title
              vendor
              quantity
              image { url }
              product { id title vendor featuredImage { url } }
              variant { id }
            }
          }
        }
      }
    }
    pageInfo { hasNextPage }
  }
}
"""

PRODUCTS_QUERY = """
query GetProducts($first: Int!, $after: String) {
  products(first: $first, after: $after) {
    edges {
      cursor
      node {
        id
        title
        handle
        vendor
        productType
        status
        featuredImage { url }
      }
    }
    pageInfo { hasNextPage }
  }
}
"""

PRODUCT_VENDORS_QUERY = """
query GetProductVendors($first: Int!, $after: String) {
  productVendors(first: $first, after: $after) {
    edges {
      cursor
      node
    }
    pageInfo { hasNextPage }
  }
}
"""

SHOP_QUERY = """
query GetShop {
  shop { name email myshopifyDomain ianaTimezone currencyCode }
}
"""


class ShopifyClient:
    """
    Client for the Shopify Admin GraphQL API.

    API URL format: https://{shop}/admin/api/{version}/graphql.json
    Connections are paginated with opaque cursors; the cursor of the last
    edge on a page requests the next page.
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Shopify client.

        Args:
            shop_domain: The shop's myshopify.com domain
            access_token: Offline access token
            api_version: Admin API version, defaults to settings
            transport: Optional httpx transport, used to stub the API in tests
        """
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.api_version = api_version or settings.shopify_api_version
        self.graphql_url = f"https://{shop_domain}/admin/api/{self.api_version}/graphql.json"
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            headers=self._get_headers(),
            timeout=30.0,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_headers(self) -> Dict[str, str]:
        """Get default request headers."""
        return {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _graphql(self, query: str, variables: Optional[Dict] = None) -> Dict[str, Any]:
        """
        Execute a GraphQL query against the Admin API.

        Args:
            query: GraphQL document
            variables: Query variables

        Returns:
            The `data` object of the response

        Raises:
            UpstreamFetchError: On transport, HTTP or GraphQL error
        """
        if self._client is None:
            raise RuntimeError("Client not initialized. Use async context manager.")

        try:
            response = await self._client.post(
                self.graphql_url,
                json={"query": query, "variables": variables or {}},
            )
        except httpx.TimeoutException:
            raise UpstreamFetchError("Request timeout", status_code=504)
        except httpx.RequestError as e:
            raise UpstreamFetchError(f"Request failed: {str(e)}", status_code=503)

        # Shopify rate limiting
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "2")
            raise UpstreamFetchError(
                f"Rate limited. Retry after {retry_after}s",
                status_code=429,
            )

        if response.status_code >= 400:
            error_data = {}
            try:
                error_data = response.json()
            except ValueError:
                error_data = {"body": response.text[:500]}

            raise UpstreamFetchError(
                message=f"API error: {response.status_code}",
                status_code=response.status_code,
                response=error_data,
            )

        body = response.json()
        if body.get("errors"):
            raise UpstreamFetchError(
                "GraphQL query failed",
                status_code=response.status_code,
                response={"errors": body["errors"]},
            )

        return body.get("data") or {}

    async def _get_connection_page(
        self,
        query: str,
        root: str,
        first: int,
        after: Optional[str],
    ) -> Dict[str, Any]:
        data = await self._graphql(query, {"first": first, "after": after})
        connection = data.get(root) or {}
        return {
            "edges": connection.get("edges", []),
            "has_next_page": connection.get("pageInfo", {}).get("hasNextPage", False),
        }

    async def _iter_connection(self, query: str, root: str, first: int) -> AsyncIterator[Any]:
        cursor = None
        while True:
            page = await self._get_connection_page(query, root, first, cursor)
            edges = page["edges"]
            for edge in edges:
                yield edge["node"]

            if not page["has_next_page"] or not edges:
                break
            cursor = edges[-1]["cursor"]

    # ============== Shop ==============

    async def get_shop(self) -> Dict[str, Any]:
        """Get shop information."""
        data = await self._graphql(SHOP_QUERY)
        return data.get("shop", {})

    # ============== Orders ==============

    async def get_orders_page(self, first: int = 50, after: Optional[str] = None) -> Dict[str, Any]:
        """
        Get one page of orders with nested line items.

        Args:
            first: Page size
            after: Cursor of the last edge from the previous page

        Returns:
            Dict with `edges` and `has_next_page`
        """
        return await self._get_connection_page(ORDERS_QUERY, "orders", first, after)

    # ============== Products ==============

    def iter_products(self, first: int = None) -> AsyncIterator[Dict[str, Any]]:
        """Iterate over every product node across all pages."""
        return self._iter_connection(PRODUCTS_QUERY, "products", first or settings.sync_batch_size)

    # ============== Vendors ==============

    async def get_all_product_vendors(self, first: int = 250) -> List[str]:
        """
        Get every distinct vendor name in the catalog (handles pagination).

        Returns:
            Vendor names in upstream order, blanks removed
        """
        vendors = []
        async for name in self._iter_connection(PRODUCT_VENDORS_QUERY, "productVendors", first):
            if name and name.strip():
                vendors.append(name.strip())
        return vendors
