"""
User Model - store owners and vendors
"""

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String

from vendor_alert.database import Base

ROLE_VENDOR = "vendor"
ROLE_STORE_OWNER = "store_owner"

NOTIFY_EVERY_X_HOURS = "every_x_hours"
NOTIFY_SPECIFIC_TIME = "specific_time"
NOTIFY_MODES = (NOTIFY_EVERY_X_HOURS, NOTIFY_SPECIFIC_TIME)


class User(Base):
    """
    A conversation participant.

    Store owners are created on first Shopify authentication and carry the
    shop domain plus notification schedule. Vendors are provisioned
    externally and are linked to vendor directory rows by email.
    """

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint(
            "role IN ('vendor', 'store_owner')",
            name="ck_users_role",
        ),
        CheckConstraint(
            "(role = 'store_owner') = (shop_domain IS NOT NULL)",
            name="ck_users_shop_domain_role",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    role = Column(String(20), nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    username = Column(String(255))
    password_hash = Column(String(255))
    phone = Column(String(30))
    avatar_url = Column(String(500))

    shop_domain = Column(String(255), unique=True, nullable=True, index=True)

    # Notification schedule (store owners only)
    notify_mode = Column(String(20), nullable=True)
    notify_value = Column(String(50), nullable=True)
    last_notified_at = Column(DateTime, nullable=True)

    initial_sync_completed = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    last_active = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<User {self.id} {self.role}: {self.email}>"

    @property
    def is_vendor(self) -> bool:
        return self.role == ROLE_VENDOR

    @property
    def is_store_owner(self) -> bool:
        return self.role == ROLE_STORE_OWNER

    def to_public_dict(self) -> dict:
        """Profile fields safe to expose to clients."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "phone": self.phone,
            "avatar_url": self.avatar_url,
            "shop_domain": self.shop_domain,
            "notify_mode": self.notify_mode,
            "notify_value": self.notify_value,
            "last_notified_at": self.last_notified_at.isoformat() if self.last_notified_at else None,
            "last_active": self.last_active.isoformat() if self.last_active else None,
            "has_password": self.password_hash is not None,
        }
