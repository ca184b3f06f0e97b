"""
Notification scheduler
Polls store owners on a fixed tick and runs the notification aggregator for
those whose schedule is due.
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from vendor_alert.config import settings
from vendor_alert.database import SessionLocal
from vendor_alert.models import User
from vendor_alert.models.user import NOTIFY_EVERY_X_HOURS, NOTIFY_SPECIFIC_TIME, ROLE_STORE_OWNER
from vendor_alert.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

TIME_OF_DAY = re.compile(r"^\s*(\d{1,2})\s*([AaPp][Mm])\s*$")


def parse_time_of_day(value: str) -> int:
    """
    Parse a coarse time like "8 AM" or "12 PM" into a 24h hour.

    Raises:
        ValueError: If the value is not an hour with AM/PM
    """
    match = TIME_OF_DAY.match(value or "")
    if not match:
        raise ValueError(f"Invalid time of day: {value!r}")

    hour = int(match.group(1))
    if not 1 <= hour <= 12:
        raise ValueError(f"Invalid hour: {hour}")

    meridiem = match.group(2).upper()
    return hour % 12 + (12 if meridiem == "PM" else 0)


def parse_interval_hours(value: str) -> float:
    hours = float(value)
    if hours <= 0:
        raise ValueError(f"Interval must be positive: {value!r}")
    return hours


class NotifyScheduler:
    """Decides per store owner whether a notification run is due."""

    def __init__(
        self,
        notification_service: Optional[NotificationService] = None,
        session_factory: Optional[async_sessionmaker] = None,
        tz: Optional[str] = None,
        interval_seconds: Optional[int] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.notification_service = notification_service or NotificationService(self.session_factory)
        self.tz = ZoneInfo(tz or settings.notify_timezone)
        self.interval_seconds = interval_seconds or settings.notify_interval_seconds

    def _local(self, value: datetime) -> datetime:
        # Stored timestamps are naive UTC
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(self.tz)

    def should_notify(self, owner: User, now: datetime) -> bool:
        """
        Evaluate one owner's schedule at `now`.

        Raises:
            ValueError: If notify_value or last_notified_at cannot be used
        """
        local_now = self._local(now)
        last = owner.last_notified_at
        if last is not None and not isinstance(last, datetime):
            raise ValueError(f"Invalid last_notified_at: {last!r}")

        if owner.notify_mode == NOTIFY_SPECIFIC_TIME:
            if parse_time_of_day(owner.notify_value) != local_now.hour:
                return False
            if last is None:
                return True
            return self._local(last).date() != local_now.date()

        if owner.notify_mode == NOTIFY_EVERY_X_HOURS:
            interval = parse_interval_hours(owner.notify_value)
            if last is None:
                return True
            elapsed = (self._local(now) - self._local(last)).total_seconds() / 3600
            return elapsed >= interval

        raise ValueError(f"Unknown notify_mode: {owner.notify_mode!r}")

    async def _load_owners(self) -> list:
        """Active store owners with a complete schedule."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(User)
                .where(
                    User.role == ROLE_STORE_OWNER,
                    User.is_active.is_(True),
                    User.notify_mode.is_not(None),
                    User.notify_value.is_not(None),
                )
                .order_by(User.id)
            )
            return result.scalars().all()

    async def run_once(self, now: Optional[datetime] = None) -> list:
        """
        One scheduler tick.

        Returns:
            Shop domains a notification run was triggered for
        """
        now = now or datetime.utcnow()

        triggered = []
        for owner in await self._load_owners():
            try:
                due = self.should_notify(owner, now)
            except ValueError as e:
                logger.warning(f"Skipping schedule for {owner.shop_domain}: {e}")
                continue

            if not due:
                continue

            try:
                result = await self.notification_service.trigger_notification(owner.shop_domain, now=now)
                triggered.append(owner.shop_domain)
                logger.info(f"Scheduled notification for {owner.shop_domain}: {result.get('success')}")
            except Exception as exc:
                logger.error(f"Scheduled notification failed for {owner.shop_domain}: {exc}", exc_info=True)

        return triggered

    async def run_forever(self) -> None:
        """Run the scheduler in a simple interval loop."""
        logger.info(f"Notify scheduler loop started (interval={self.interval_seconds} seconds)")

        while True:
            try:
                await self.run_once()
            except Exception as exc:
                logger.error(f"Notify scheduler loop error: {exc}", exc_info=True)

            await asyncio.sleep(self.interval_seconds)
