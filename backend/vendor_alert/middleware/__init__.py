"""Authentication and webhook verification for the Vendor Alert service."""

from vendor_alert.middleware.auth import get_current_shop, get_current_user
from vendor_alert.middleware.hmac_verify import verify_webhook_signature

__all__ = ["get_current_shop", "get_current_user", "verify_webhook_signature"]
