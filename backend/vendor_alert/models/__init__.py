"""
Database models for the Vendor Alert app
"""

from vendor_alert.models.message import Message, MessageRecipient
from vendor_alert.models.order import Order, OrderLineItem
from vendor_alert.models.product import Product
from vendor_alert.models.shop import Shop
from vendor_alert.models.sync_log import SyncLog
from vendor_alert.models.user import User
from vendor_alert.models.vendor import Vendor

__all__ = [
    "Message",
    "MessageRecipient",
    "Order",
    "OrderLineItem",
    "Product",
    "Shop",
    "SyncLog",
    "User",
    "Vendor",
]
