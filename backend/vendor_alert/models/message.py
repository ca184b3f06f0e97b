"""
Message and MessageRecipient Models - chat and order notifications
"""

from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from vendor_alert.database import Base

MESSAGE_TEXT = "text"
MESSAGE_FILE = "file"
MESSAGE_ORDER_NOTIFICATION = "order_notification"

DELIVERY_SENT = "sent"
DELIVERY_DELIVERED = "delivered"
DELIVERY_READ = "read"


class Message(Base):
    """
    A message between a store owner and a vendor.

    Immutable after creation apart from the soft-delete flag.
    """

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)

    sender_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    receiver_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    content = Column(Text, nullable=False, default="")
    message_type = Column(String(30), nullable=False, default=MESSAGE_TEXT)
    order_data = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    file_url = Column(Text)
    file_name = Column(String(255))

    parent_message_id = Column(Integer, ForeignKey("messages.id", ondelete="SET NULL"), nullable=True)

    is_deleted = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    sender = relationship("User", foreign_keys=[sender_id])
    receiver = relationship("User", foreign_keys=[receiver_id])
    recipient = relationship(
        "MessageRecipient",
        back_populates="message",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Message {self.id} {self.message_type} {self.sender_id}->{self.receiver_id}>"

    def to_dict(self, recipient: "MessageRecipient" = None) -> dict:
        """Serialize for API responses and real-time events."""
        data = {
            "id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "content": self.content,
            "message_type": self.message_type,
            "order_data": self.order_data,
            "file_url": self.file_url,
            "file_name": self.file_name,
            "parent_message_id": self.parent_message_id,
            "is_deleted": self.is_deleted,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if recipient is not None:
            data.update(recipient.to_dict())
        return data


class MessageRecipient(Base):
    """Delivery, read and accept tracking for one message."""

    __tablename__ = "message_recipients"

    id = Column(Integer, primary_key=True, autoincrement=True)

    message_id = Column(
        Integer,
        ForeignKey("messages.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )

    # Only meaningful for order notifications, None while pending
    is_accept = Column(Boolean, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    delivery_status = Column(String(20), default=DELIVERY_SENT, nullable=False)

    sent_at = Column(DateTime, default=datetime.utcnow)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)
    responded_at = Column(DateTime, nullable=True)

    message = relationship("Message", back_populates="recipient")

    def __repr__(self) -> str:
        return f"<MessageRecipient message={self.message_id} {self.delivery_status}>"

    def to_dict(self) -> dict:
        return {
            "delivery_status": self.delivery_status,
            "is_read": self.is_read,
            "is_accept": self.is_accept,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "responded_at": self.responded_at.isoformat() if self.responded_at else None,
        }

    def mark_delivered(self) -> None:
        if self.delivery_status == DELIVERY_SENT:
            self.delivery_status = DELIVERY_DELIVERED
            self.delivered_at = datetime.utcnow()

    def mark_read(self) -> None:
        self.is_read = True
        self.delivery_status = DELIVERY_READ
        self.read_at = datetime.utcnow()

    def record_response(self, accepted: bool) -> None:
        self.is_accept = accepted
        self.responded_at = datetime.utcnow()
        self.mark_read()
