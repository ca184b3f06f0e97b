"""
Vendor Model - vendor directory per shop
"""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from vendor_alert.database import Base


class Vendor(Base):
    """A vendor name seen in a shop's catalog or orders."""

    __tablename__ = "vendors"
    __table_args__ = (
        UniqueConstraint("name", "shop_domain", name="uq_vendors_name_shop"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    name = Column(String(255), nullable=False)
    shop_domain = Column(
        String(255),
        ForeignKey("users.shop_domain", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Contact details, email links the vendor to a vendor user account
    email = Column(String(255), index=True)
    contact_person = Column(String(255))
    mobile = Column(String(30))
    upi_id = Column(String(100))

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    products = relationship("Product", back_populates="vendor", passive_deletes=True)

    def __repr__(self) -> str:
        return f"<Vendor {self.name} ({self.shop_domain})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "contact_person": self.contact_person,
            "mobile": self.mobile,
            "upi_id": self.upi_id,
            "shop_domain": self.shop_domain,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
