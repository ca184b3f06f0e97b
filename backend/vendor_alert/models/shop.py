"""
Shop Model - Shopify installation data
"""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from vendor_alert.database import Base


class Shop(Base):
    """
    Represents a Shopify store that has installed the app.
    Stores the offline access token used for background syncs.
    """

    __tablename__ = "shops"

    id = Column(Integer, primary_key=True, autoincrement=True)

    shop_domain = Column(String(255), unique=True, nullable=False, index=True)

    # OAuth token
    access_token = Column(Text, nullable=False, default="")  # Encrypted
    scope = Column(Text, nullable=False, default="")

    # Status
    is_active = Column(Boolean, default=True)
    installed_at = Column(DateTime, default=datetime.utcnow)
    uninstalled_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Shop {self.shop_domain}>"

    def mark_uninstalled(self) -> None:
        """Deactivate and clear credentials."""
        self.is_active = False
        self.uninstalled_at = datetime.utcnow()
        self.access_token = ""
