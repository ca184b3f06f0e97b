"""
Store Service
Manages Shopify shop installations, OAuth token exchange and tenant removal
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx
from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from vendor_alert.config import settings
from vendor_alert.errors import UpstreamFetchError
from vendor_alert.models import (
    Message,
    MessageRecipient,
    Order,
    OrderLineItem,
    Product,
    Shop,
    SyncLog,
    User,
    Vendor,
)
from vendor_alert.models.user import ROLE_STORE_OWNER
from vendor_alert.services.background import BackgroundTaskRunner, SyncTaskHandle, background_runner
from vendor_alert.services.data_sync import DataSyncService, TenantSession
from vendor_alert.utils.encryption import encrypt_token, mask_token

logger = logging.getLogger(__name__)


@dataclass
class InstallResult:
    shop: Shop
    owner: User
    sync_handle: Optional[SyncTaskHandle] = None


class StoreService:
    """Service for managing shop installations."""

    def __init__(
        self,
        db: AsyncSession,
        sync_service: Optional[DataSyncService] = None,
        runner: Optional[BackgroundTaskRunner] = None,
    ):
        self.db = db
        self.sync_service = sync_service or DataSyncService()
        self.runner = runner or background_runner

    async def get_shop(self, shop_domain: str) -> Optional[Shop]:
        """Get shop by domain."""
        result = await self.db.execute(select(Shop).where(Shop.shop_domain == shop_domain))
        return result.scalar_one_or_none()

    async def get_store_owner(self, shop_domain: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.shop_domain == shop_domain, User.role == ROLE_STORE_OWNER)
        )
        return result.scalar_one_or_none()

    async def exchange_token(self, shop_domain: str, code: str) -> dict:
        """
        Exchange authorization code for an offline access token.

        Args:
            shop_domain: Shop that authorized the app
            code: Authorization code from OAuth callback

        Returns:
            dict: Token response with access_token and scope

        Raises:
            UpstreamFetchError: On token exchange failure
        """
        url = f"https://{shop_domain}/admin/oauth/access_token"

        data = {
            "client_id": settings.shopify_api_key,
            "client_secret": settings.shopify_api_secret,
            "code": code,
        }

        async with httpx.AsyncClient(timeout=30.0) as client:
            try:
                response = await client.post(url, json=data)
            except httpx.RequestError as e:
                raise UpstreamFetchError(f"Token exchange failed: {e}", status_code=503)

            if response.status_code != 200:
                logger.error(f"Token exchange failed for {shop_domain}: {response.text}")
                raise UpstreamFetchError(
                    f"Token exchange failed: {response.status_code}",
                    status_code=response.status_code,
                )

            return response.json()

    async def install_shop(
        self,
        shop_domain: str,
        access_token: str,
        scope: str,
        email: Optional[str] = None,
    ) -> InstallResult:
        """
        Install or reinstall the app for a shop.

        Shop row, store owner and vendor bootstrap commit together; the full
        order sync is then started in the background.

        Args:
            shop_domain: Shop domain
            access_token: Offline access token
            scope: Granted scopes
            email: Store owner email, if known

        Returns:
            InstallResult with the detached sync handle (None when the
            initial sync already completed)
        """
        try:
            shop = await self.get_shop(shop_domain)
            encrypted_token = encrypt_token(access_token)

            if shop:
                # Reinstall - update token and reactivate
                shop.access_token = encrypted_token
                shop.scope = scope
                shop.is_active = True
                shop.uninstalled_at = None
                logger.info(f"Shop reinstalled: {shop_domain}")
            else:
                shop = Shop(
                    shop_domain=shop_domain,
                    access_token=encrypted_token,
                    scope=scope,
                    is_active=True,
                )
                self.db.add(shop)
                logger.info(f"New shop installed: {shop_domain} (token {mask_token(access_token)})")

            owner = await self.get_store_owner(shop_domain)
            if owner is None:
                owner = User(
                    role=ROLE_STORE_OWNER,
                    email=email or f"owner@{shop_domain}",
                    username=shop_domain.split(".", 1)[0],
                    shop_domain=shop_domain,
                    initial_sync_completed=False,
                )
                self.db.add(owner)
            elif email and owner.email != email:
                owner.email = email
            owner.is_active = True
            owner.last_active = datetime.utcnow()

            # Vendors must exist before notification lookups run
            await self.db.flush()

            session = TenantSession(shop_domain=shop_domain, access_token=access_token)
            if not owner.initial_sync_completed:
                try:
                    await self.sync_service.bootstrap_vendors(session, self.db)
                except UpstreamFetchError as e:
                    logger.warning(f"Vendor bootstrap failed for {shop_domain}: {e}")

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        handle = None
        if not owner.initial_sync_completed:
            handle = self.runner.submit(
                f"initial-sync:{shop_domain}",
                lambda: self.sync_service.perform_initial_sync(session),
            )

        return InstallResult(shop=shop, owner=owner, sync_handle=handle)

    async def uninstall_shop(self, shop_domain: str) -> bool:
        """
        Handle app/uninstalled webhook.

        Args:
            shop_domain: Shop domain

        Returns:
            bool: True if shop was found and updated
        """
        shop = await self.get_shop(shop_domain)

        if not shop:
            logger.warning(f"Uninstall webhook for unknown shop: {shop_domain}")
            return False

        shop.mark_uninstalled()

        await self.db.commit()
        logger.info(f"Shop uninstalled: {shop_domain}")
        return True

    async def redact_shop(self, shop_domain: str) -> dict:
        """
        Delete every row belonging to a tenant (shop/redact).

        Returns:
            dict: Rows deleted per table
        """
        counts = {}
        try:
            owner_ids = select(User.id).where(User.shop_domain == shop_domain)
            message_ids = select(Message.id).where(
                or_(Message.sender_id.in_(owner_ids), Message.receiver_id.in_(owner_ids))
            )

            statements = [
                ("message_recipients", delete(MessageRecipient).where(MessageRecipient.message_id.in_(message_ids))),
                ("messages", delete(Message).where(
                    or_(Message.sender_id.in_(owner_ids), Message.receiver_id.in_(owner_ids))
                )),
                ("order_line_items", delete(OrderLineItem).where(OrderLineItem.shop_domain == shop_domain)),
                ("orders", delete(Order).where(Order.shop_domain == shop_domain)),
                ("products", delete(Product).where(Product.shop_domain == shop_domain)),
                ("vendors", delete(Vendor).where(Vendor.shop_domain == shop_domain)),
                ("sync_logs", delete(SyncLog).where(SyncLog.shop_domain == shop_domain)),
                ("users", delete(User).where(User.shop_domain == shop_domain)),
                ("shops", delete(Shop).where(Shop.shop_domain == shop_domain)),
            ]
            for table, statement in statements:
                result = await self.db.execute(statement)
                counts[table] = result.rowcount

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Shop data redacted for {shop_domain}: {counts}")
        return counts
