"""
Tests for the WebSocket channel manager, registry and chat event handlers.
"""

import pytest
from sqlalchemy import select

from vendor_alert.middleware.auth import create_access_token
from vendor_alert.models import Message, MessageRecipient, User
from vendor_alert.models.message import DELIVERY_DELIVERED
from vendor_alert.realtime import ChannelManager, ConnectedUser, ConnectionRegistry
from vendor_alert.realtime.service import NOT_AUTHENTICATED, VENDOR_ONLY
from vendor_alert.services.chat_service import ACCEPT_REPLY, ChatService


class FakeWebSocket:
    """Records frames sent by the manager."""

    def __init__(self, fail=False):
        self.accepted = False
        self.fail = fail
        self.frames = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("connection reset")
        self.frames.append(data)

    def events(self, name):
        return [frame["data"] for frame in self.frames if frame["event"] == name]


def connected(user_id, role="vendor"):
    return ConnectedUser(id=user_id, username=f"user{user_id}", email=f"user{user_id}@test.com", role=role)


async def authenticate(realtime, user):
    websocket = FakeWebSocket()
    connection_id = await realtime.manager.connect(websocket)
    await realtime.handle(connection_id, "authenticate", {"token": create_access_token(user)})
    return connection_id, websocket


class TestChannelNaming:
    """Tests for channel names."""

    def test_conversation_channel_is_symmetric(self):
        assert ChannelManager.conversation_channel(3, 11) == "conversation_3_11"
        assert ChannelManager.conversation_channel(11, 3) == "conversation_3_11"

    def test_user_channel(self):
        assert ChannelManager.user_channel(7) == "user_7"


class TestConnectionRegistry:
    """Tests for the user/connection indexes."""

    def test_register_and_lookup(self):
        registry = ConnectionRegistry()
        registry.register("c1", connected(1))

        assert registry.lookup_by_user(1) == "c1"
        assert registry.lookup_by_connection("c1").id == 1
        assert registry.online_user_ids() == {1}

    def test_reconnect_replaces_user_index(self):
        """The older connection leaving does not evict the newer one."""
        registry = ConnectionRegistry()
        registry.register("old", connected(1))
        registry.register("new", connected(1))

        assert registry.lookup_by_user(1) == "new"
        registry.unregister("old")
        assert registry.lookup_by_user(1) == "new"
        registry.unregister("new")
        assert registry.lookup_by_user(1) is None
        assert len(registry) == 0

    def test_managers_do_not_share_users(self):
        first = ChannelManager()
        second = ChannelManager()
        first.registry.register("c1", connected(1))

        assert first.is_online(1) is True
        assert second.is_online(1) is False


class TestChannelManager:
    """Tests for sending and publishing frames."""

    @pytest.mark.asyncio
    async def test_publish_reaches_members_except_excluded(self):
        manager = ChannelManager()
        first, second = FakeWebSocket(), FakeWebSocket()
        c1 = await manager.connect(first)
        c2 = await manager.connect(second)
        manager.join(c1, "conversation_1_2")
        manager.join(c2, "conversation_1_2")

        sent = await manager.publish("conversation_1_2", "user_typing", {"user_id": 1}, exclude=[c1])

        assert sent == 1
        assert first.frames == []
        assert second.frames == [{"event": "user_typing", "data": {"user_id": 1}}]

    @pytest.mark.asyncio
    async def test_failed_send_drops_connection(self):
        manager = ChannelManager()
        connection_id = await manager.connect(FakeWebSocket(fail=True))
        manager.registry.register(connection_id, connected(1))
        manager.join(connection_id, "user_1")

        assert await manager.send(connection_id, "ping", {}) is False
        assert manager.members("user_1") == set()
        # The user stays registered until the endpoint runs its disconnect
        assert manager.registry.lookup_by_connection(connection_id).id == 1
        assert manager.disconnect(connection_id).id == 1
        assert manager.is_online(1) is False

    @pytest.mark.asyncio
    async def test_disconnect_clears_memberships(self):
        manager = ChannelManager()
        connection_id = await manager.connect(FakeWebSocket())
        manager.registry.register(connection_id, connected(5))
        manager.join(connection_id, "conversation_5_6")

        user = manager.disconnect(connection_id)

        assert user.id == 5
        assert manager.members("conversation_5_6") == set()

    @pytest.mark.asyncio
    async def test_order_notification_to_offline_vendor(self):
        manager = ChannelManager()
        message = {"id": 1, "sender_id": 1, "receiver_id": 2, "order_data": {"sku": "SKU-1"}}

        assert await manager.push_order_notification(message) is False

    @pytest.mark.asyncio
    async def test_order_notification_to_online_vendor(self):
        manager = ChannelManager()
        websocket = FakeWebSocket()
        connection_id = await manager.connect(websocket)
        manager.registry.register(connection_id, connected(2))
        manager.join(connection_id, manager.user_channel(2))
        message = {"id": 1, "sender_id": 1, "receiver_id": 2, "order_data": {"sku": "SKU-1"}}

        assert await manager.push_order_notification(message) is True
        notification = websocket.events("order_notification")[0]
        assert notification["order_data"] == {"sku": "SKU-1"}
        assert notification["store_owner"] == 1


class TestRealtimeEvents:
    """Tests for the chat event handlers."""

    @pytest.mark.asyncio
    async def test_events_require_authentication(self, realtime):
        websocket = FakeWebSocket()
        connection_id = await realtime.manager.connect(websocket)

        await realtime.handle(connection_id, "send_message", {"receiver_id": 1, "content": "hi"})

        assert websocket.events("error") == [{"message": NOT_AUTHENTICATED}]

    @pytest.mark.asyncio
    async def test_unknown_event(self, realtime):
        websocket = FakeWebSocket()
        connection_id = await realtime.manager.connect(websocket)

        await realtime.handle(connection_id, "dance", {})

        assert websocket.events("error")[0]["message"] == "Unknown event: dance"

    @pytest.mark.asyncio
    async def test_invalid_token_gets_auth_error(self, realtime):
        websocket = FakeWebSocket()
        connection_id = await realtime.manager.connect(websocket)

        await realtime.handle(connection_id, "authenticate", {"token": "not-a-jwt"})

        assert websocket.events("auth_error") == [{"message": "Authentication failed"}]
        assert len(realtime.manager.registry) == 0

    @pytest.mark.asyncio
    async def test_authenticate_announces_presence_to_contacts(self, realtime, store_owner, vendor_user):
        _, owner_ws = await authenticate(realtime, store_owner)
        _, vendor_ws = await authenticate(realtime, vendor_user)

        assert vendor_ws.events("authenticated")[0]["user"]["id"] == vendor_user.id
        status = owner_ws.events("contact_status_changed")
        assert status[-1]["user_id"] == vendor_user.id
        assert status[-1]["is_online"] is True

    @pytest.mark.asyncio
    async def test_disconnect_announces_offline(self, realtime, store_owner, vendor_user):
        _, owner_ws = await authenticate(realtime, store_owner)
        vendor_connection, _ = await authenticate(realtime, vendor_user)

        await realtime.disconnect(vendor_connection)

        status = owner_ws.events("contact_status_changed")[-1]
        assert status == {"user_id": vendor_user.id, "is_online": False, "timestamp": status["timestamp"]}
        assert realtime.manager.is_online(vendor_user.id) is False

    @pytest.mark.asyncio
    async def test_failed_send_still_announces_offline(self, realtime, session_factory, store_owner, vendor_user):
        """A socket that breaks mid-send goes through the full disconnect."""
        _, owner_ws = await authenticate(realtime, store_owner)
        vendor_connection, vendor_ws = await authenticate(realtime, vendor_user)
        vendor_ws.fail = True

        assert await realtime.manager.send(vendor_connection, "ping", {}) is False
        await realtime.disconnect(vendor_connection)

        status = owner_ws.events("contact_status_changed")[-1]
        assert (status["user_id"], status["is_online"]) == (vendor_user.id, False)
        assert realtime.manager.is_online(vendor_user.id) is False
        async with session_factory() as db:
            user = await db.get(User, vendor_user.id)
        assert user.last_active is not None

    @pytest.mark.asyncio
    async def test_reauthenticate_as_other_user_leaves_old_channels(self, realtime, store_owner, vendor_user):
        connection_id, websocket = await authenticate(realtime, store_owner)
        await realtime.handle(connection_id, "join_conversation", {"contact_id": vendor_user.id})

        await realtime.handle(connection_id, "authenticate", {"token": create_access_token(vendor_user)})

        manager = realtime.manager
        assert manager.registry.lookup_by_connection(connection_id).id == vendor_user.id
        assert manager.is_online(store_owner.id) is False
        assert manager.members(manager.user_channel(store_owner.id)) == set()
        assert manager.members(manager.conversation_channel(store_owner.id, vendor_user.id)) == set()
        assert manager.members(manager.user_channel(vendor_user.id)) == {connection_id}
        assert await manager.publish(manager.user_channel(store_owner.id), "private", {}) == 0

    @pytest.mark.asyncio
    async def test_send_message_to_online_receiver_is_delivered(
        self, realtime, session_factory, store_owner, vendor_user
    ):
        owner_connection, owner_ws = await authenticate(realtime, store_owner)
        vendor_connection, vendor_ws = await authenticate(realtime, vendor_user)
        await realtime.handle(vendor_connection, "join_conversation", {"contact_id": store_owner.id})

        await realtime.handle(owner_connection, "send_message", {"receiver_id": vendor_user.id, "content": "Hello"})

        assert vendor_ws.events("new_message")[0]["content"] == "Hello"
        notification = vendor_ws.events("message_notification")[0]
        assert notification["sender_id"] == store_owner.id
        assert notification["conversation"] == ChannelManager.conversation_channel(store_owner.id, vendor_user.id)
        assert vendor_ws.events("message_delivered")
        assert owner_ws.events("error") == []

        async with session_factory() as db:
            recipient = await db.scalar(select(MessageRecipient))
        assert recipient.delivery_status == DELIVERY_DELIVERED

    @pytest.mark.asyncio
    async def test_typing_is_not_echoed_to_sender(self, realtime, store_owner, vendor_user):
        owner_connection, owner_ws = await authenticate(realtime, store_owner)
        vendor_connection, vendor_ws = await authenticate(realtime, vendor_user)
        await realtime.handle(owner_connection, "join_conversation", {"contact_id": vendor_user.id})
        await realtime.handle(vendor_connection, "join_conversation", {"contact_id": store_owner.id})

        await realtime.handle(owner_connection, "typing_start", {"contact_id": vendor_user.id})

        assert vendor_ws.events("user_typing") == [
            {"user_id": store_owner.id, "username": store_owner.username, "is_typing": True}
        ]
        assert owner_ws.events("user_typing") == []

    @pytest.mark.asyncio
    async def test_bad_payload_reports_error(self, realtime, store_owner):
        owner_connection, owner_ws = await authenticate(realtime, store_owner)

        await realtime.handle(owner_connection, "join_conversation", {})

        assert owner_ws.events("error") == [{"message": "Invalid join_conversation payload"}]

    @pytest.mark.asyncio
    async def test_vendor_accepts_order(self, realtime, session_factory, store_owner, vendor_user):
        async with session_factory() as db:
            notification = await ChatService(db).create_message(
                store_owner,
                vendor_user.id,
                {"message_type": "order_notification", "name": "Blue Mug", "sku": "SKU-7001", "qty": 3},
            )
        owner_connection, owner_ws = await authenticate(realtime, store_owner)
        vendor_connection, _ = await authenticate(realtime, vendor_user)

        await realtime.handle(
            vendor_connection, "order_response", {"message_id": notification["id"], "response": "accept"}
        )

        received = owner_ws.events("vendor_response_notification")[0]
        assert received["response"] == "accept"
        assert received["response_message"] == ACCEPT_REPLY
        async with session_factory() as db:
            recipient = await db.scalar(
                select(MessageRecipient).where(MessageRecipient.message_id == notification["id"])
            )
            reply = await db.scalar(select(Message).where(Message.parent_message_id == notification["id"]))
        assert recipient.is_accept is True
        assert reply.content == ACCEPT_REPLY

    @pytest.mark.asyncio
    async def test_store_owner_cannot_respond_to_orders(self, realtime, store_owner):
        owner_connection, owner_ws = await authenticate(realtime, store_owner)

        await realtime.handle(owner_connection, "order_response", {"message_id": 1, "response": "accept"})

        assert owner_ws.events("error") == [{"message": VENDOR_ONLY}]
