"""
Realtime Service
Event handlers for the chat WebSocket. Every inbound frame is dispatched by
event name; failures are reported back as `error` / `auth_error` events and
never close the connection.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from vendor_alert.database import SessionLocal
from vendor_alert.errors import VendorAlertError
from vendor_alert.middleware.auth import get_user_by_token
from vendor_alert.models import User
from vendor_alert.realtime.manager import ChannelManager
from vendor_alert.realtime.registry import ConnectedUser
from vendor_alert.services.chat_service import ChatService

logger = logging.getLogger(__name__)

NOT_AUTHENTICATED = "Not authenticated"
VENDOR_ONLY = "Only vendors can respond to orders"
ORDER_RESPONSES = ("accept", "decline")


class RealtimeService:
    """Handles chat events for connections owned by a ChannelManager."""

    def __init__(self, manager: ChannelManager, session_factory: Optional[async_sessionmaker] = None):
        self.manager = manager
        self.session_factory = session_factory or SessionLocal

        self.handlers = {
            "authenticate": self.authenticate,
            "join_conversation": self.join_conversation,
            "leave_conversation": self.leave_conversation,
            "send_message": self.send_message,
            "mark_message_read": self.mark_message_read,
            "order_response": self.order_response,
            "typing_start": self.typing_start,
            "typing_stop": self.typing_stop,
        }

    async def handle(self, connection_id: str, event: str, data: Optional[Dict[str, Any]] = None) -> None:
        """
        Dispatch one inbound event.

        Args:
            connection_id: Connection the frame arrived on
            event: Event name
            data: Event body
        """
        if event == "disconnect":
            await self.disconnect(connection_id)
            return

        handler = self.handlers.get(event)
        if handler is None:
            await self.manager.send(connection_id, "error", {"message": f"Unknown event: {event}"})
            return

        data = data or {}
        if event != "authenticate" and self.manager.registry.lookup_by_connection(connection_id) is None:
            await self.manager.send(connection_id, "error", {"message": NOT_AUTHENTICATED})
            return

        try:
            await handler(connection_id, data)
        except VendorAlertError as e:
            await self.manager.send(connection_id, "error", {"message": e.message})
        except (KeyError, TypeError, ValueError) as e:
            logger.info(f"Bad {event} payload on {connection_id}: {e}")
            await self.manager.send(connection_id, "error", {"message": f"Invalid {event} payload"})
        except Exception as e:
            logger.error(f"Error handling {event} on {connection_id}: {e}", exc_info=True)
            await self.manager.send(connection_id, "error", {"message": f"Failed to process {event}"})

    def _user(self, connection_id: str) -> ConnectedUser:
        return self.manager.registry.lookup_by_connection(connection_id)

    # ============== Presence ==============

    async def authenticate(self, connection_id: str, data: dict) -> None:
        token = data.get("token")
        try:
            async with self.session_factory() as db:
                user = await get_user_by_token(db, token) if token else None
                if user is not None:
                    await ChatService(db).touch_last_active(user.id)
        except Exception as e:
            logger.error(f"Authentication error on {connection_id}: {e}", exc_info=True)
            user = None

        if user is None:
            await self.manager.send(connection_id, "auth_error", {"message": "Authentication failed"})
            return

        previous = self._user(connection_id)
        if previous is not None and previous.id != user.id:
            # The connection now speaks for another user; drop the old identity's channels
            self.manager.leave_all(connection_id)
            self.manager.registry.unregister(connection_id)
            logger.info(f"Connection {connection_id} re-authenticated from user {previous.id} to {user.id}")
            if not self.manager.is_online(previous.id):
                await self._announce_offline(previous.id)

        connected = ConnectedUser.from_user(user)
        self.manager.registry.register(connection_id, connected)
        self.manager.join(connection_id, self.manager.user_channel(user.id))

        await self.manager.send(connection_id, "authenticated", {"user": connected.to_dict(), "status": "connected"})
        logger.info(f"User authenticated: {user.username} ({user.role})")

        await self.notify_contacts(user, True)

    async def disconnect(self, connection_id: str) -> None:
        connected = self.manager.disconnect(connection_id)
        if connected is None:
            return

        # Another live connection keeps the user online
        if self.manager.is_online(connected.id):
            return

        await self._announce_offline(connected.id)

    async def _announce_offline(self, user_id: int) -> None:
        """Record last_active and tell contacts the user went offline."""
        try:
            async with self.session_factory() as db:
                chat = ChatService(db)
                await chat.touch_last_active(user_id)
                user = await chat.get_user(user_id)
            if user is not None:
                await self.notify_contacts(user, False)
        except Exception as e:
            logger.error(f"Error handling disconnect of user {user_id}: {e}", exc_info=True)

    async def notify_contacts(self, user: User, is_online: bool) -> None:
        """Tell the user's connected counterparts about a presence change."""
        async with self.session_factory() as db:
            contact_ids = await ChatService(db).get_contact_ids(user)

        payload = {"user_id": user.id, "is_online": is_online, "timestamp": datetime.utcnow()}
        for contact_id in contact_ids:
            if self.manager.is_online(contact_id):
                await self.manager.publish(
                    self.manager.user_channel(contact_id), "contact_status_changed", payload
                )

    # ============== Conversations ==============

    async def join_conversation(self, connection_id: str, data: dict) -> None:
        user = self._user(connection_id)
        contact_id = int(data["contact_id"])
        channel = self.manager.conversation_channel(user.id, contact_id)

        self.manager.join(connection_id, channel)

        async with self.session_factory() as db:
            await ChatService(db).mark_conversation_delivered(contact_id, user.id)

        await self.manager.send(
            connection_id, "conversation_joined", {"conversation": channel, "contact_id": contact_id}
        )

    async def leave_conversation(self, connection_id: str, data: dict) -> None:
        user = self._user(connection_id)
        channel = self.manager.conversation_channel(user.id, int(data["contact_id"]))
        self.manager.leave(connection_id, channel)

    async def _typing(self, connection_id: str, data: dict, is_typing: bool) -> None:
        user = self._user(connection_id)
        channel = self.manager.conversation_channel(user.id, int(data["contact_id"]))
        await self.manager.publish(
            channel,
            "user_typing",
            {"user_id": user.id, "username": user.username, "is_typing": is_typing},
            exclude=[connection_id],
        )

    async def typing_start(self, connection_id: str, data: dict) -> None:
        await self._typing(connection_id, data, True)

    async def typing_stop(self, connection_id: str, data: dict) -> None:
        await self._typing(connection_id, data, False)

    # ============== Messages ==============

    async def send_message(self, connection_id: str, data: dict) -> None:
        user = self._user(connection_id)
        body = dict(data)
        receiver_id = int(body.pop("receiver_id"))
        parent_message_id = body.pop("parent_message_id", None)

        async with self.session_factory() as db:
            chat = ChatService(db)
            sender = await chat.get_user(user.id)
            if sender is None:
                await self.manager.send(connection_id, "error", {"message": NOT_AUTHENTICATED})
                return
            message = await chat.create_message(sender, receiver_id, body, parent_message_id)

        await self.broadcast_message(message)

    async def broadcast_message(self, message: dict) -> dict:
        """
        Publish a stored message to its conversation.

        When the receiver is connected they also get `message_notification`
        on their private channel and the message is marked delivered.

        Returns:
            The message dict with its delivery status updated
        """
        sender_id = message["sender_id"]
        receiver_id = message["receiver_id"]
        channel = self.manager.conversation_channel(sender_id, receiver_id)

        await self.manager.publish(channel, "new_message", message)

        if self.manager.is_online(receiver_id):
            await self.manager.publish(
                self.manager.user_channel(receiver_id),
                "message_notification",
                {
                    "sender_id": sender_id,
                    "sender_name": message.get("sender", {}).get("username"),
                    "message": message,
                    "conversation": channel,
                },
            )

            async with self.session_factory() as db:
                delivered = await ChatService(db).mark_delivered(message["id"])
            if delivered:
                message = {**message, "delivery_status": "delivered"}
                await self.manager.publish(
                    channel,
                    "message_delivered",
                    {"message_id": message["id"], "delivered_at": datetime.utcnow()},
                )

        return message

    async def mark_message_read(self, connection_id: str, data: dict) -> None:
        user = self._user(connection_id)
        async with self.session_factory() as db:
            chat = ChatService(db)
            reader = await chat.get_user(user.id)
            receipt = await chat.mark_read(int(data["message_id"]), reader)

        await self.broadcast_read(receipt)

    async def broadcast_read(self, receipt: dict) -> None:
        channel = self.manager.conversation_channel(receipt["read_by"], receipt["sender_id"])
        await self.manager.publish(channel, "message_read", receipt)

    async def order_response(self, connection_id: str, data: dict) -> None:
        user = self._user(connection_id)
        if not user.is_vendor:
            await self.manager.send(connection_id, "error", {"message": VENDOR_ONLY})
            return

        response = data.get("response")
        if response not in ORDER_RESPONSES:
            raise ValueError(f"response must be one of {ORDER_RESPONSES}")

        async with self.session_factory() as db:
            chat = ChatService(db)
            vendor = await chat.get_user(user.id)
            result = await chat.respond_to_order(int(data["message_id"]), vendor, response == "accept")

        await self.broadcast_order_response(result)

    async def broadcast_order_response(self, result: dict) -> None:
        """Conversation gets `order_response`; the store owner gets a private notification."""
        vendor = result["vendor"]
        owner_id = result["store_owner_id"]

        await self.manager.publish(
            self.manager.conversation_channel(vendor["id"], owner_id),
            "order_response",
            {
                "original_message_id": result["original_message_id"],
                "response": result["response"],
                "response_message": result["response_message"],
                "vendor": vendor,
            },
        )
        await self.manager.publish(
            self.manager.user_channel(owner_id),
            "vendor_response_notification",
            {
                "vendor_name": vendor["name"],
                "vendor_user_id": vendor["id"],
                "response": result["response"],
                "message_id": result["original_message_id"],
                "response_message": result["response_message"]["content"],
            },
        )


def get_realtime_service(request: Request) -> RealtimeService:
    """FastAPI dependency returning the app's realtime service."""
    return request.app.state.realtime
