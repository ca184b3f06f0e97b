"""
Product Model - Synced product data
"""

from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from vendor_alert.database import Base


class Product(Base):
    """
    Represents a product synced from Shopify.

    One row per Shopify product id; every sync refreshes the display
    fields in place.
    """

    __tablename__ = "products"

    id = Column(Integer, primary_key=True, autoincrement=True)

    shopify_product_id = Column(BigInteger, unique=True, nullable=False, index=True)

    # Product details
    title = Column(String(500), nullable=False)
    image = Column(Text)
    handle = Column(String(255))
    product_type = Column(String(255))
    status = Column(String(50), default="active")

    # Vendor link
    vendor_name = Column(String(255), index=True)
    vendor_id = Column(
        Integer,
        ForeignKey("vendors.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    shop_domain = Column(String(255), nullable=False, index=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    vendor = relationship("Vendor", back_populates="products")

    def __repr__(self) -> str:
        return f"<Product {self.shopify_product_id}: {self.title}>"

    @property
    def sku(self) -> str:
        """Synthetic SKU used to merge notification items."""
        return make_sku(self.shopify_product_id)


def make_sku(shopify_product_id: int) -> str:
    return f"SKU-{shopify_product_id}"
