"""
Canonical payload shapes
Shopify delivers orders and products as GraphQL nodes (sync) or REST bodies
(webhooks). Both are converted here into one set of pydantic models the sync
engine consumes, and message payloads are modelled as a union tagged by
message_type.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

GID_SCHEME = "gid://"


def parse_gid(value: Any) -> int:
    """
    Extract the numeric id from a global id.

    Accepts any `gid://<namespace>/<Type>/123`, a bare numeric string or an int.

    Raises:
        ValueError: If no numeric id can be extracted
    """
    if isinstance(value, int):
        return value
    if not value:
        raise ValueError("Empty Shopify id")

    # Some ids carry query parameters, e.g. gid://shopify/LineItem/1?foo=bar
    text = str(value).split("?", 1)[0]
    if text.startswith(GID_SCHEME):
        text = text.rsplit("/", 1)[-1]
    return int(text)


def _optional_gid(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    return parse_gid(value)


def _lower(value: Optional[str]) -> Optional[str]:
    return value.lower() if isinstance(value, str) else value


def _clean_vendor(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


# ============== Sync models ==============

class SyncLineItem(BaseModel):
    shopify_line_item_id: Optional[int] = None
    title: str = ""
    vendor: Optional[str] = None
    quantity: int = 1
    image: Optional[str] = None
    product_id: Optional[int] = None
    product_title: Optional[str] = None
    variant_id: Optional[int] = None


class SyncOrder(BaseModel):
    shopify_order_id: int
    name: Optional[str] = None
    total_price: Optional[Decimal] = None
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    line_items: List[SyncLineItem] = []

    @field_validator("created_at", "updated_at")
    @classmethod
    def _as_naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Columns store naive UTC timestamps
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value


class SyncProduct(BaseModel):
    shopify_product_id: int
    title: str
    handle: Optional[str] = None
    vendor: Optional[str] = None
    product_type: Optional[str] = None
    status: Optional[str] = None
    image: Optional[str] = None


# ============== GraphQL converters ==============

def _nodes(connection: Optional[Dict]) -> List[Dict]:
    if not connection:
        return []
    return [edge["node"] for edge in connection.get("edges", []) if edge.get("node")]


def _image_url(image: Optional[Dict]) -> Optional[str]:
    return image.get("url") if image else None


def order_from_graphql(node: Dict[str, Any]) -> SyncOrder:
    """Convert an Admin GraphQL order node."""
    line_items = []
    for item in _nodes(node.get("lineItems")):
        product = item.get("product") or {}
        variant = item.get("variant") or {}
        line_items.append(
            SyncLineItem(
                shopify_line_item_id=_optional_gid(item.get("id")),
                title=item.get("title") or "",
                vendor=_clean_vendor(item.get("vendor") or product.get("vendor")),
                quantity=item.get("quantity") or 0,
                image=_image_url(item.get("image")) or _image_url(product.get("featuredImage")),
                product_id=_optional_gid(product.get("id")),
                product_title=product.get("title"),
                variant_id=_optional_gid(variant.get("id")),
            )
        )

    total = (node.get("totalPriceSet") or {}).get("shopMoney", {}).get("amount")
    return SyncOrder(
        shopify_order_id=parse_gid(node["id"]),
        name=node.get("name"),
        total_price=total,
        financial_status=_lower(node.get("displayFinancialStatus")),
        fulfillment_status=_lower(node.get("displayFulfillmentStatus")),
        created_at=node.get("createdAt"),
        updated_at=node.get("updatedAt"),
        line_items=line_items,
    )


def product_from_graphql(node: Dict[str, Any]) -> SyncProduct:
    """Convert an Admin GraphQL product node."""
    return SyncProduct(
        shopify_product_id=parse_gid(node["id"]),
        title=node.get("title") or "",
        handle=node.get("handle"),
        vendor=_clean_vendor(node.get("vendor")),
        product_type=node.get("productType"),
        status=_lower(node.get("status")),
        image=_image_url(node.get("featuredImage")),
    )


# ============== REST (webhook) converters ==============

def order_from_rest(payload: Dict[str, Any]) -> SyncOrder:
    """Convert an orders/* webhook body."""
    line_items = [
        SyncLineItem(
            shopify_line_item_id=_optional_gid(item.get("id")),
            title=item.get("title") or item.get("name") or "",
            vendor=_clean_vendor(item.get("vendor")),
            quantity=item.get("quantity") or 0,
            product_id=_optional_gid(item.get("product_id")),
            variant_id=_optional_gid(item.get("variant_id")),
        )
        for item in payload.get("line_items", [])
    ]

    return SyncOrder(
        shopify_order_id=parse_gid(payload["id"]),
        name=payload.get("name"),
        total_price=payload.get("total_price"),
        financial_status=_lower(payload.get("financial_status")),
        fulfillment_status=_lower(payload.get("fulfillment_status")),
        created_at=payload.get("created_at"),
        updated_at=payload.get("updated_at"),
        line_items=line_items,
    )


def product_from_rest(payload: Dict[str, Any]) -> SyncProduct:
    """Convert a products/* webhook body."""
    image = payload.get("image") or {}
    if not image and payload.get("images"):
        image = payload["images"][0]

    return SyncProduct(
        shopify_product_id=parse_gid(payload["id"]),
        title=payload.get("title") or "",
        handle=payload.get("handle"),
        vendor=_clean_vendor(payload.get("vendor")),
        product_type=payload.get("product_type"),
        status=_lower(payload.get("status")),
        image=image.get("src"),
    )


# ============== Message payloads ==============

class NotificationItem(BaseModel):
    """One merged entry of an order notification batch."""

    name: str
    sku: str
    image: Optional[str] = None
    qty: int
    orders: List[str] = []


class OrderNotificationData(NotificationItem):
    message_type: Literal["order_notification"] = "order_notification"


class TextMessageData(BaseModel):
    message_type: Literal["text"] = "text"
    content: str = Field(min_length=1)


class FileMessageData(BaseModel):
    message_type: Literal["file"] = "file"
    content: str = ""
    file_url: str
    file_name: Optional[str] = None


MessagePayload = Annotated[
    Union[TextMessageData, FileMessageData, OrderNotificationData],
    Field(discriminator="message_type"),
]

_message_payload_adapter = TypeAdapter(MessagePayload)


def parse_message_payload(data: Dict[str, Any]):
    """
    Validate an outgoing message body against its message_type.

    Raises:
        pydantic.ValidationError: If the body does not match its type
    """
    return _message_payload_adapter.validate_python(data)
