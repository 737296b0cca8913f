"""
Tests for the in-memory connection registry.
"""

import pytest

from core.exceptions import DuplicateConnectionError
from services.connection_registry import Connection, ConnectionRegistry, ConnectionState


def _connect(registry, make_socket, user_id):
    connection = Connection(websocket=make_socket())
    registry.register(connection, user_id)
    return connection


class TestRegistration:

    def test_register_marks_connection_authenticated(self, make_socket):
        registry = ConnectionRegistry()
        connection = Connection(websocket=make_socket())
        assert connection.state is ConnectionState.CONNECTING

        registry.register(connection, 5)

        assert connection.user_id == 5
        assert connection.is_authenticated
        assert len(registry) == 1
        assert registry.get(connection.id) is connection

    def test_same_transport_twice_is_rejected(self, make_socket):
        registry = ConnectionRegistry()
        connection = _connect(registry, make_socket, 5)

        with pytest.raises(DuplicateConnectionError):
            registry.register(connection, 5)

    def test_same_user_may_hold_several_connections(self, make_socket):
        registry = ConnectionRegistry()
        first = _connect(registry, make_socket, 5)
        second = _connect(registry, make_socket, 5)

        assert len(registry) == 2
        assert set(registry.connections_for_user(5)) == {first, second}

    def test_unregister_is_idempotent_and_drops_subscriptions(self, make_socket):
        registry = ConnectionRegistry()
        connection = _connect(registry, make_socket, 5)
        registry.add_room_subscription(connection, 10)

        registry.unregister(connection)
        registry.unregister(connection)

        assert len(registry) == 0
        assert registry.room_subscriber_counts() == {}
        assert connection.state is ConnectionState.CLOSED
        assert registry.get(connection.id) is None

    def test_unregister_unknown_connection_closes_it(self, make_socket):
        registry = ConnectionRegistry()
        connection = Connection(websocket=make_socket())

        registry.unregister(connection)

        assert connection.state is ConnectionState.CLOSED


class TestSubscriptions:

    def test_add_and_remove_are_idempotent(self, make_socket):
        registry = ConnectionRegistry()
        connection = _connect(registry, make_socket, 5)

        assert registry.add_room_subscription(connection, 10) is True
        assert registry.add_room_subscription(connection, 10) is False
        assert registry.room_subscriber_counts() == {10: 1}

        assert registry.remove_room_subscription(connection, 10) is True
        assert registry.remove_room_subscription(connection, 10) is False
        assert registry.room_subscriber_counts() == {}

    def test_unregistered_connection_cannot_subscribe(self, make_socket):
        registry = ConnectionRegistry()
        connection = Connection(websocket=make_socket())

        assert registry.add_room_subscription(connection, 10) is False
        assert connection.rooms == set()


class TestBroadcast:

    @pytest.mark.asyncio
    async def test_broadcast_to_room_reaches_only_subscribers(self, make_socket):
        registry = ConnectionRegistry()
        in_room = _connect(registry, make_socket, 5)
        elsewhere = _connect(registry, make_socket, 6)
        registry.add_room_subscription(in_room, 10)
        registry.add_room_subscription(elsewhere, 11)

        sent = await registry.broadcast_to_room(10, {"type": "ping", "payload": {}})

        assert sent == 1
        assert in_room.websocket.sent == [{"type": "ping", "payload": {}}]
        assert elsewhere.websocket.sent == []

    @pytest.mark.asyncio
    async def test_broadcast_skips_excluded_connection(self, make_socket):
        registry = ConnectionRegistry()
        sender = _connect(registry, make_socket, 5)
        sender_other_tab = _connect(registry, make_socket, 5)
        for connection in (sender, sender_other_tab):
            registry.add_room_subscription(connection, 10)

        await registry.broadcast_to_room(10, {"type": "typing", "payload": {}}, exclude=sender)

        assert sender.websocket.sent == []
        assert len(sender_other_tab.websocket.sent) == 1

    @pytest.mark.asyncio
    async def test_closed_transport_is_skipped_but_kept(self, make_socket):
        registry = ConnectionRegistry()
        gone = _connect(registry, make_socket, 5)
        alive = _connect(registry, make_socket, 6)
        for connection in (gone, alive):
            registry.add_room_subscription(connection, 10)
        gone.websocket.drop()

        sent = await registry.broadcast_to_room(10, {"type": "ping", "payload": {}})

        assert sent == 1
        assert gone.websocket.sent == []
        assert len(registry) == 2
        assert registry.room_subscriber_counts() == {10: 2}

    @pytest.mark.asyncio
    async def test_failing_send_does_not_stop_broadcast(self, make_socket):
        registry = ConnectionRegistry()
        broken = _connect(registry, make_socket, 5)
        healthy = _connect(registry, make_socket, 6)
        for connection in (broken, healthy):
            registry.add_room_subscription(connection, 10)

        async def boom(_data):
            raise ConnectionError("socket reset")

        broken.websocket.send_json = boom

        sent = await registry.broadcast_to_room(10, {"type": "ping", "payload": {}})

        assert sent == 1
        assert len(healthy.websocket.sent) == 1

    @pytest.mark.asyncio
    async def test_broadcast_to_all_ignores_subscriptions(self, make_socket):
        registry = ConnectionRegistry()
        a = _connect(registry, make_socket, 5)
        b = _connect(registry, make_socket, 6)
        registry.add_room_subscription(a, 10)

        sent = await registry.broadcast_to_all({"type": "new_room", "payload": {"id": 3}})

        assert sent == 2
        assert a.websocket.sent == b.websocket.sent == [{"type": "new_room", "payload": {"id": 3}}]

    @pytest.mark.asyncio
    async def test_broadcast_to_empty_room(self):
        registry = ConnectionRegistry()
        assert await registry.broadcast_to_room(99, {"type": "ping", "payload": {}}) == 0
