"""
Order and OrderLineItem Models
"""

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from vendor_alert.database import Base


class Order(Base):
    """
    Represents a Shopify order.

    `notification` is true only when every line item of the order has been
    notified; it is recomputed after each notification run.
    """

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)

    shopify_order_id = Column(BigInteger, unique=True, nullable=False, index=True)
    name = Column(String(100))
    total_price = Column(Numeric(12, 2))
    financial_status = Column(String(50))
    fulfillment_status = Column(String(50))

    notification = Column(Boolean, default=False, nullable=False)
    shop_domain = Column(String(255), nullable=False, index=True)

    shopify_created_at = Column(DateTime)
    shopify_updated_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    line_items = relationship(
        "OrderLineItem",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Order {self.shopify_order_id}: {self.name}>"


class OrderLineItem(Base):
    """
    One product within an order.

    (order_id, product_id) is the idempotency key: re-syncing an order never
    inserts a second row for the same product.
    """

    __tablename__ = "order_line_items"
    __table_args__ = (
        UniqueConstraint("order_id", "product_id", name="uq_order_line_items_order_product"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    order_id = Column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id = Column(
        Integer,
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    shopify_line_item_id = Column(BigInteger, nullable=True)
    title = Column(String(500))
    vendor_name = Column(String(255), index=True)
    quantity = Column(Integer, nullable=False, default=1)

    notification = Column(Boolean, default=False, nullable=False, index=True)
    shop_domain = Column(String(255), nullable=False, index=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    order = relationship("Order", back_populates="line_items")
    product = relationship("Product")

    def __repr__(self) -> str:
        return f"<OrderLineItem order={self.order_id} product={self.product_id} qty={self.quantity}>"
