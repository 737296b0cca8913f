# backend/services/connection_registry.py

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from core.exceptions import DuplicateConnectionError

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


@dataclass(eq=False)
class Connection:
    """
    One live WebSocket and what the server knows about it.

    Connections compare and hash by identity, so two sockets opened by the
    same user (two browser tabs) are always tracked separately.
    """

    websocket: WebSocket
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    user_id: Optional[int] = None
    rooms: Set[int] = field(default_factory=set)
    state: ConnectionState = ConnectionState.CONNECTING

    @property
    def is_authenticated(self) -> bool:
        return self.state is ConnectionState.AUTHENTICATED

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )


# ============================================================================
# CONNECTION REGISTRY
# ============================================================================

class ConnectionRegistry:
    """
    Tracks authenticated WebSocket connections and their room subscriptions.

    A subscription is session-only: it decides which live events a socket
    receives and is forgotten when the socket closes. Durable membership is
    the RoomManager's job.

    Data Structures:
        connections: Maps WebSocket -> Connection
                     Example: {websocket1: Connection(user_id=5, rooms={10})}

        rooms: Maps room_id -> Set of Connections subscribed to it
               Example: {10: {conn1, conn2}}

        by_id: Maps Connection.id -> Connection, used to resolve an
               excluded sender after a broadcast went through redis

    Scaling:
        - Single instance: everything is in memory
        - Multi-instance: each process has its own registry, use the redis
          fan-out backend so broadcasts reach every process
    """

    def __init__(self) -> None:
        self.connections: Dict[WebSocket, Connection] = {}
        self.rooms: Dict[int, Set[Connection]] = {}
        self.by_id: Dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self.connections)

    def register(self, connection: Connection, user_id: int) -> None:
        """
        Start tracking an authenticated connection.

        Args:
            connection: The connection that just authenticated
            user_id: The user it belongs to

        Raises:
            DuplicateConnectionError: If this websocket is already registered.
                Other connections of the same user are fine.
        """
        if connection.websocket in self.connections:
            raise DuplicateConnectionError(f"Connection {connection.id} is already registered")

        connection.user_id = user_id
        connection.state = ConnectionState.AUTHENTICATED
        self.connections[connection.websocket] = connection
        self.by_id[connection.id] = connection

        logger.info("✓ User %s connected (%s). Total: %d", user_id, connection.id, len(self.connections))

    def unregister(self, connection: Connection) -> None:
        """
        Stop tracking a connection and drop all of its subscriptions.

        Safe to call more than once and for connections that never
        authenticated.
        """
        connection.state = ConnectionState.CLOSED
        if self.connections.pop(connection.websocket, None) is None:
            return

        self.by_id.pop(connection.id, None)
        for room_id in connection.rooms:
            subscribers = self.rooms.get(room_id)
            if subscribers is not None:
                subscribers.discard(connection)
                if not subscribers:
                    del self.rooms[room_id]

        logger.info(
            "✗ User %s disconnected (%s). Total: %d",
            connection.user_id, connection.id, len(self.connections),
        )

    def add_room_subscription(self, connection: Connection, room_id: int) -> bool:
        """
        Subscribe a connection to a room's live events.

        Returns:
            True if the subscription is new, False if it already existed or
            the connection is not registered.
        """
        if connection.websocket not in self.connections:
            return False
        if room_id in connection.rooms:
            return False

        connection.rooms.add(room_id)
        self.rooms.setdefault(room_id, set()).add(connection)
        logger.debug("→ %s subscribed to room %s", connection.id, room_id)
        return True

    def remove_room_subscription(self, connection: Connection, room_id: int) -> bool:
        """
        Unsubscribe a connection from a room. Idempotent.

        Returns:
            True if a subscription was removed.
        """
        if room_id not in connection.rooms:
            return False

        connection.rooms.discard(room_id)
        subscribers = self.rooms.get(room_id)
        if subscribers is not None:
            subscribers.discard(connection)
            if not subscribers:
                del self.rooms[room_id]
        logger.debug("← %s unsubscribed from room %s", connection.id, room_id)
        return True

    def get(self, connection_id: str) -> Optional[Connection]:
        return self.by_id.get(connection_id)

    def connections_for_user(self, user_id: int) -> List[Connection]:
        return [c for c in self.connections.values() if c.user_id == user_id]

    def room_subscriber_counts(self) -> Dict[int, int]:
        return {room_id: len(subscribers) for room_id, subscribers in self.rooms.items()}

    async def broadcast_to_room(
        self,
        room_id: int,
        payload: dict,
        exclude: Optional[Connection] = None,
    ) -> int:
        """
        Send a payload to every open connection subscribed to a room.

        Args:
            room_id: Target room
            payload: Frame to send (JSON serialized)
            exclude: Connection to skip, e.g. the sender of a typing event

        Returns:
            Number of connections the payload was sent to

        Error Handling:
            Closed or closing sockets are skipped but stay registered; they
            are removed when the endpoint sees the disconnect. A failing send
            is logged and skipped.
        """
        subscribers = self.rooms.get(room_id)
        if not subscribers:
            logger.debug("[routing] Skipped broadcast: room=%s has 0 subscribers", room_id)
            return 0

        # Copy: a send may suspend and let the set change under us
        targets = [c for c in subscribers if c is not exclude]
        logger.info("📨 Broadcasting %s to room %s: %d clients", payload.get("type"), room_id, len(targets))
        return await self._send_all(targets, payload)

    async def broadcast_to_all(self, payload: dict) -> int:
        """Send a payload to every open connection regardless of subscriptions."""
        targets = list(self.connections.values())
        logger.info("📣 Broadcasting %s to all: %d clients", payload.get("type"), len(targets))
        return await self._send_all(targets, payload)

    async def _send_all(self, targets: List[Connection], payload: dict) -> int:
        sent = 0
        for connection in targets:
            if not connection.is_open:
                continue
            try:
                await connection.websocket.send_json(payload)
                sent += 1
            except Exception as e:
                logger.error("Send error to %s: %s", connection.id, e)
        return sent
