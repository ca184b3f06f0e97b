"""
Chat Service
Conversations, messages, receipts and order responses between store owners
and their vendors. Shared by the REST routes and the WebSocket handlers.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from vendor_alert.errors import AuthError, ForbiddenError, InvalidRequestError, NotFoundError
from vendor_alert.middleware.auth import verify_password
from vendor_alert.models import Message, MessageRecipient, User, Vendor
from vendor_alert.models.message import (
    DELIVERY_DELIVERED,
    DELIVERY_SENT,
    MESSAGE_ORDER_NOTIFICATION,
    MESSAGE_TEXT,
)
from vendor_alert.models.user import ROLE_STORE_OWNER, ROLE_VENDOR
from vendor_alert.services.payloads import OrderNotificationData, parse_message_payload

logger = logging.getLogger(__name__)

ONLINE_WINDOW = timedelta(minutes=5)
DELIVERY_WINDOW = timedelta(hours=1)

ACCEPT_REPLY = "✅ Order accepted! I'll prepare your items."
DECLINE_REPLY = "❌ Sorry, I can't fulfill this order right now."
NO_MESSAGES = "No messages yet"


def serialize_message(
    message: Message,
    recipient: Optional[MessageRecipient] = None,
    sender: Optional[User] = None,
    receiver: Optional[User] = None,
) -> Dict[str, Any]:
    """Message dict enriched with receipt state and participant names."""
    data = message.to_dict(recipient)
    data["sender"] = {
        "id": message.sender_id,
        "username": sender.username if sender else None,
        "role": sender.role if sender else None,
    }
    data["receiver"] = {
        "id": message.receiver_id,
        "username": receiver.username if receiver else None,
    }
    return data


class ChatService:
    """Service for store owner / vendor conversations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user(self, user_id: int) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.id == user_id, User.is_active.is_(True)))
        return result.scalar_one_or_none()

    async def authenticate(self, email: str, password: str) -> User:
        """
        Check chat credentials.

        Raises:
            AuthError: Unknown email, inactive user or wrong password
        """
        result = await self.db.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()

        if user is None or not user.is_active or not verify_password(password, user.password_hash):
            logger.info(f"Chat login rejected for {email}")
            raise AuthError("Invalid email or password")

        user.last_active = datetime.utcnow()
        await self.db.commit()
        return user

    async def touch_last_active(self, user_id: int) -> None:
        await self.db.execute(
            update(User).where(User.id == user_id).values(last_active=datetime.utcnow())
        )
        await self.db.commit()

    # ============== Contacts ==============

    def _contacts_query(self, user: User):
        if user.role == ROLE_STORE_OWNER:
            return select(User).where(
                User.role == ROLE_VENDOR,
                User.is_active.is_(True),
                User.email.in_(
                    select(Vendor.email).where(
                        Vendor.shop_domain == user.shop_domain,
                        Vendor.email.is_not(None),
                    )
                ),
            )

        return select(User).where(
            User.role == ROLE_STORE_OWNER,
            User.is_active.is_(True),
            User.shop_domain.in_(select(Vendor.shop_domain).where(Vendor.email == user.email)),
        )

    async def get_contacts(self, user: User) -> List[User]:
        """
        Counterparts a user may talk to.

        Store owners see vendor users whose email matches a vendor of their
        shop; vendors see the store owners of every shop listing their email.
        """
        result = await self.db.execute(self._contacts_query(user).order_by(User.id))
        return list(result.scalars().all())

    async def get_contact_ids(self, user: User) -> List[int]:
        return [contact.id for contact in await self.get_contacts(user)]

    async def list_conversations(
        self,
        user: User,
        online_user_ids: Optional[Iterable[int]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Conversation list with last message and unread count per contact.

        Args:
            user: Current user
            online_user_ids: Connected user ids; falls back to last_active
                within five minutes when not given
        """
        online = set(online_user_ids) if online_user_ids is not None else None
        now = datetime.utcnow()

        vendors_by_email = {}
        if user.role == ROLE_STORE_OWNER:
            result = await self.db.execute(select(Vendor).where(Vendor.shop_domain == user.shop_domain))
            vendors_by_email = {v.email: v for v in result.scalars().all() if v.email}

        conversations = []
        for contact in await self.get_contacts(user):
            between = self._between(user.id, contact.id)

            result = await self.db.execute(
                select(Message.content, Message.created_at)
                .where(between, Message.is_deleted.is_(False))
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(1)
            )
            last = result.first()

            unread = await self.db.scalar(
                select(func.count(Message.id))
                .join(MessageRecipient, MessageRecipient.message_id == Message.id)
                .where(
                    Message.sender_id == contact.id,
                    Message.receiver_id == user.id,
                    Message.is_deleted.is_(False),
                    MessageRecipient.is_read.is_(False),
                )
            )

            if online is not None:
                is_online = contact.id in online
            else:
                is_online = bool(contact.last_active and now - contact.last_active < ONLINE_WINDOW)

            vendor = vendors_by_email.get(contact.email)
            conversations.append({
                "contact_id": contact.id,
                "contact_name": (vendor.name if vendor else None) or contact.username or contact.email,
                "contact_email": contact.email,
                "contact_avatar": contact.avatar_url,
                "contact_type": contact.role,
                "last_message": last.content if last else NO_MESSAGES,
                "last_message_time": last.created_at.isoformat() if last else None,
                "unread_count": unread or 0,
                "is_online": is_online,
                "last_active": contact.last_active.isoformat() if contact.last_active else None,
                "metadata": {
                    "vendor_name": vendor.name if vendor else None,
                    "vendor_mobile": vendor.mobile if vendor else None,
                    "shop_domain": contact.shop_domain,
                },
            })

        conversations.sort(key=lambda c: c["last_message_time"] or "", reverse=True)
        return conversations

    # ============== Messages ==============

    @staticmethod
    def _between(user_id: int, contact_id: int):
        return or_(
            and_(Message.sender_id == user_id, Message.receiver_id == contact_id),
            and_(Message.sender_id == contact_id, Message.receiver_id == user_id),
        )

    async def get_messages(
        self,
        user: User,
        contact_id: int,
        page: int = 1,
        limit: int = 50,
    ) -> Dict[str, Any]:
        """
        One page of a conversation, oldest first within the page.

        Pages count back from the newest message.
        """
        page = max(page, 1)
        result = await self.db.execute(
            select(Message)
            .options(
                selectinload(Message.recipient),
                selectinload(Message.sender),
                selectinload(Message.receiver),
            )
            .where(self._between(user.id, contact_id), Message.is_deleted.is_(False))
            .order_by(Message.created_at.desc(), Message.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        rows = list(result.scalars().all())
        rows.reverse()

        return {
            "messages": [
                serialize_message(m, m.recipient, m.sender, m.receiver) for m in rows
            ],
            "pagination": {"page": page, "limit": limit, "has_more": len(rows) == limit},
        }

    async def create_message(
        self,
        sender: User,
        receiver_id: int,
        data: Dict[str, Any],
        parent_message_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Persist a message and its recipient row together.

        Args:
            sender: Authenticated user
            receiver_id: Counterpart user id
            data: Body tagged by message_type (text, file, order_notification)
            parent_message_id: Message being replied to

        Raises:
            InvalidRequestError: Body does not match its message_type
            NotFoundError: Receiver does not exist
            ForbiddenError: Sender and receiver share a role, or a vendor
                tries to send an order notification
        """
        body = dict(data)
        body.setdefault("message_type", MESSAGE_TEXT)
        try:
            payload = parse_message_payload(body)
        except ValidationError as e:
            raise InvalidRequestError("Invalid message body", details=e.errors(include_url=False))

        receiver = await self.get_user(receiver_id)
        if receiver is None:
            raise NotFoundError(f"User {receiver_id} not found")
        if receiver.role == sender.role:
            raise ForbiddenError("Messages go between a store owner and a vendor")

        if isinstance(payload, OrderNotificationData):
            if not sender.is_store_owner:
                raise ForbiddenError("Only store owners send order notifications")
            content = "Order notification"
            order_data = payload.model_dump()
        else:
            content = payload.content
            order_data = None

        recipient = MessageRecipient(delivery_status=DELIVERY_SENT, sent_at=datetime.utcnow())
        message = Message(
            sender_id=sender.id,
            receiver_id=receiver.id,
            content=content,
            message_type=payload.message_type,
            order_data=order_data,
            file_url=getattr(payload, "file_url", None),
            file_name=getattr(payload, "file_name", None),
            parent_message_id=parent_message_id,
            recipient=recipient,
        )
        try:
            self.db.add(message)
            await self.db.flush()
            serialized = serialize_message(message, recipient, sender, receiver)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Message {serialized['id']} sent from user {sender.id} to user {receiver.id}")
        return serialized

    async def mark_delivered(self, message_id: int) -> bool:
        """Move one message from sent to delivered; False if it was not sent."""
        result = await self.db.execute(
            update(MessageRecipient)
            .where(
                MessageRecipient.message_id == message_id,
                MessageRecipient.delivery_status == DELIVERY_SENT,
            )
            .values(delivery_status=DELIVERY_DELIVERED, delivered_at=datetime.utcnow())
        )
        await self.db.commit()
        return result.rowcount > 0

    async def mark_conversation_delivered(
        self,
        sender_id: int,
        receiver_id: int,
        now: Optional[datetime] = None,
    ) -> int:
        """Mark the sender's messages from the last hour as delivered."""
        now = now or datetime.utcnow()
        recent = select(Message.id).where(
            Message.sender_id == sender_id,
            Message.receiver_id == receiver_id,
            Message.created_at > now - DELIVERY_WINDOW,
        )
        result = await self.db.execute(
            update(MessageRecipient)
            .where(
                MessageRecipient.message_id.in_(recent),
                MessageRecipient.delivery_status == DELIVERY_SENT,
            )
            .values(delivery_status=DELIVERY_DELIVERED, delivered_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount

    async def _get_message(self, message_id: int) -> Message:
        result = await self.db.execute(
            select(Message)
            .options(selectinload(Message.recipient))
            .where(Message.id == message_id, Message.is_deleted.is_(False))
        )
        message = result.scalar_one_or_none()
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        return message

    async def mark_read(self, message_id: int, reader: User) -> Dict[str, Any]:
        """
        Mark a message read by its receiver.

        Raises:
            NotFoundError: Unknown message
            ForbiddenError: Reader is not the receiver
        """
        message = await self._get_message(message_id)
        if message.receiver_id != reader.id:
            raise ForbiddenError("Only the receiver can mark a message read")

        if message.recipient is None:
            message.recipient = MessageRecipient(message_id=message.id)
        message.recipient.mark_read()
        read_at = message.recipient.read_at
        await self.db.commit()

        return {
            "message_id": message.id,
            "sender_id": message.sender_id,
            "read_by": reader.id,
            "read_at": read_at.isoformat(),
        }

    async def respond_to_order(self, message_id: int, vendor: User, accepted: bool) -> Dict[str, Any]:
        """
        Record a vendor's accept/decline and post the reply text.

        Returns:
            dict with the original message id, the response, the store owner
            id and the serialized reply message

        Raises:
            ForbiddenError: Responder is not the vendor the order was sent to
            InvalidRequestError: Message is not an order notification
        """
        if not vendor.is_vendor:
            raise ForbiddenError("Only vendors can respond to orders")

        message = await self._get_message(message_id)
        if message.message_type != MESSAGE_ORDER_NOTIFICATION:
            raise InvalidRequestError(f"Message {message_id} is not an order notification")
        if message.receiver_id != vendor.id:
            raise ForbiddenError("Order notification was sent to another vendor")

        store_owner = await self.get_user(message.sender_id)

        try:
            if message.recipient is None:
                message.recipient = MessageRecipient(message_id=message.id)
            message.recipient.record_response(accepted)

            reply_recipient = MessageRecipient(delivery_status=DELIVERY_SENT, sent_at=datetime.utcnow())
            reply = Message(
                sender_id=vendor.id,
                receiver_id=message.sender_id,
                content=ACCEPT_REPLY if accepted else DECLINE_REPLY,
                message_type=MESSAGE_TEXT,
                parent_message_id=message.id,
                recipient=reply_recipient,
            )
            self.db.add(reply)
            await self.db.flush()
            reply_data = serialize_message(reply, reply_recipient, vendor, store_owner)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        response = "accept" if accepted else "decline"
        logger.info(f"Order {response} by vendor {vendor.id} for message {message_id}")
        return {
            "original_message_id": message_id,
            "response": response,
            "store_owner_id": message.sender_id,
            "vendor": {"id": vendor.id, "name": vendor.username},
            "response_message": reply_data,
        }

    async def soft_delete(self, user: User, message_ids: List[int]) -> List[int]:
        """
        Hide messages the user sent or received.

        Returns:
            Ids actually deleted
        """
        if not message_ids:
            raise InvalidRequestError("Message IDs array is required")

        result = await self.db.execute(
            select(Message.id).where(
                Message.id.in_(message_ids),
                Message.is_deleted.is_(False),
                or_(Message.sender_id == user.id, Message.receiver_id == user.id),
            )
        )
        ids = list(result.scalars().all())

        if ids:
            await self.db.execute(
                update(Message)
                .where(Message.id.in_(ids))
                .values(is_deleted=True, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
        await self.db.commit()
        return ids
