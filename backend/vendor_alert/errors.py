"""
Error taxonomy and API error responses
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class VendorAlertError(Exception):
    """Base error for the service."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Any = None):
        self.message = message
        self.details = details
        super().__init__(message)


class UpstreamFetchError(VendorAlertError):
    """Error talking to the Shopify Admin API."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[dict] = None,
    ):
        super().__init__(message, details=response)
        self.upstream_status = status_code
        self.response = response or {}


class PersistenceError(VendorAlertError):
    """Database constraint violation or connection failure."""


class TenantNotFoundError(VendorAlertError):
    """No store owner exists for the shop domain."""

    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, shop_domain: str):
        super().__init__(f"Store owner not found for {shop_domain}")
        self.shop_domain = shop_domain


class AuthError(VendorAlertError):
    """Invalid or expired credential."""

    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenError(VendorAlertError):
    """Authenticated user may not touch the resource."""

    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(VendorAlertError):
    status_code = status.HTTP_404_NOT_FOUND


class InvalidRequestError(VendorAlertError):
    """Malformed or inconsistent client input."""

    status_code = status.HTTP_400_BAD_REQUEST


def error_body(error: str, details: Any = None) -> dict:
    """Consistent failure payload."""
    return {"success": False, "error": error, "details": details}


async def vendor_alert_error_handler(request: Request, exc: VendorAlertError) -> JSONResponse:
    logger.warning(f"{exc.__class__.__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.message, exc.details),
    )


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


def register_error_handlers(app: FastAPI) -> None:
    """Install the JSON error handlers on the app."""
    app.add_exception_handler(VendorAlertError, vendor_alert_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
