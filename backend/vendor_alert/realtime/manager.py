"""
Channel Manager
Owns the live WebSocket connections, their channel memberships and the
connection registry. Frames on the wire are JSON objects of the form
{"event": name, "data": {...}}.
"""

import logging
import uuid
from typing import Dict, Iterable, Optional, Set

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from vendor_alert.realtime.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class ChannelManager:
    """
    Connection and channel bookkeeping for one process.

    Each manager owns its registry, so two managers never see each other's
    users.
    """

    def __init__(self, registry: Optional[ConnectionRegistry] = None):
        self.registry = registry or ConnectionRegistry()
        self._sockets: Dict[str, WebSocket] = {}
        self._channels: Dict[str, Set[str]] = {}
        self._memberships: Dict[str, Set[str]] = {}

    # ============== Naming ==============

    @staticmethod
    def conversation_channel(user_a: int, user_b: int) -> str:
        low, high = sorted((int(user_a), int(user_b)))
        return f"conversation_{low}_{high}"

    @staticmethod
    def user_channel(user_id: int) -> str:
        return f"user_{user_id}"

    # ============== Connections ==============

    async def connect(self, websocket: WebSocket) -> str:
        """Accept a socket and return its connection id."""
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        self._sockets[connection_id] = websocket
        self._memberships[connection_id] = set()
        logger.info(f"WebSocket connected: {connection_id} (total={len(self._sockets)})")
        return connection_id

    def disconnect(self, connection_id: str):
        """
        Forget a connection and all its memberships.

        Returns:
            The ConnectedUser that was registered on it, if any
        """
        self._drop_socket(connection_id)
        user = self.registry.unregister(connection_id)
        logger.info(f"WebSocket disconnected: {connection_id} (total={len(self._sockets)})")
        return user

    def _drop_socket(self, connection_id: str) -> None:
        # Registry entry stays until the owning endpoint runs its disconnect
        self._sockets.pop(connection_id, None)
        self.leave_all(connection_id)
        self._memberships.pop(connection_id, None)

    def is_online(self, user_id: int) -> bool:
        return self.registry.lookup_by_user(user_id) is not None

    def online_user_ids(self) -> set:
        return self.registry.online_user_ids()

    # ============== Channels ==============

    def join(self, connection_id: str, channel: str) -> None:
        if connection_id not in self._sockets:
            return
        self._channels.setdefault(channel, set()).add(connection_id)
        self._memberships[connection_id].add(channel)

    def leave(self, connection_id: str, channel: str) -> None:
        members = self._channels.get(channel)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._channels[channel]
        if connection_id in self._memberships:
            self._memberships[connection_id].discard(channel)

    def leave_all(self, connection_id: str) -> None:
        for channel in list(self._memberships.get(connection_id, ())):
            self.leave(connection_id, channel)

    def members(self, channel: str) -> Set[str]:
        return set(self._channels.get(channel, set()))

    # ============== Sending ==============

    async def send(self, connection_id: str, event: str, data: dict) -> bool:
        """Send one frame to one connection; False if it is gone."""
        websocket = self._sockets.get(connection_id)
        if websocket is None:
            return False

        try:
            await websocket.send_json({"event": event, "data": jsonable_encoder(data)})
            return True
        except Exception as e:
            logger.warning(f"Send of {event} to {connection_id} failed: {e}")
            self._drop_socket(connection_id)
            return False

    async def publish(
        self,
        channel: str,
        event: str,
        data: dict,
        exclude: Optional[Iterable[str]] = None,
    ) -> int:
        """
        Send a frame to every member of a channel.

        Returns:
            Number of connections reached
        """
        skip = set(exclude or ())
        sent = 0
        for connection_id in self.members(channel) - skip:
            if await self.send(connection_id, event, data):
                sent += 1
        return sent

    async def push_order_notification(self, message: dict) -> bool:
        """
        Publish a stored order notification.

        The conversation channel always gets `new_message`; the vendor's
        private channel gets `order_notification` when they are connected.

        Returns:
            True if the vendor received it live
        """
        sender_id = message["sender_id"]
        receiver_id = message["receiver_id"]
        await self.publish(self.conversation_channel(sender_id, receiver_id), "new_message", message)

        if not self.is_online(receiver_id):
            return False

        sent = await self.publish(
            self.user_channel(receiver_id),
            "order_notification",
            {
                "message": message,
                "order_data": message.get("order_data"),
                "store_owner": sender_id,
            },
        )
        return sent > 0
