# backend/services/broker.py

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, Optional, Set, Union

from fastapi import WebSocket
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from core.exceptions import DuplicateConnectionError, PersistenceError, RoomNotFoundError
from models.models import ChatMessageOut, User
from models.protocol import (
    INBOUND_PAYLOADS,
    AuthPayload,
    ChatMessagePayload,
    InboundFrame,
    RoomPayload,
    TypingPayload,
    auth_error_frame,
    auth_success_frame,
    chat_message_frame,
    error_frame,
    room_joined_frame,
    room_left_frame,
    typing_frame,
)
from services.chat_store import ChatStore
from services.connection_registry import Connection, ConnectionRegistry, ConnectionState
from services.event_bus import EventBus, EventKind, MessageSent, UserJoinedRoom, UserTyping
from services.fanout import LocalFanout
from services.redis_pub_sub import RedisFanout
from services.room_manager import RoomManager

logger = logging.getLogger(__name__)

AUTH_TIMEOUT_CLOSE_CODE = 4001

Fanout = Union[LocalFanout, RedisFanout]


class ChatBroker:
    """
    The WebSocket protocol state machine.

    One broker serves every connection of the process. For each inbound
    frame it checks authentication, validates the payload, consults the
    stores, updates the registry and fans resulting events out.

    Lifecycle of a connection:
        open()            CONNECTING, transport accepted
        auth frame        AUTHENTICATED, registered, optionally subscribed to
                          every room the user durably belongs to
        join/leave frames live subscriptions change
        close()           CLOSED, unregistered, typing indicators cleared

    Every problem with a frame is reported back to its sender as an `error`
    (or `auth_error`) frame. The broker never closes a connection because of
    a bad frame; the only close it initiates is the auth timeout.

    Frames from one connection are handled one at a time, so a slow database
    call holds back that connection's next frame. Other connections are not
    affected.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        chat_store: ChatStore,
        room_manager: RoomManager,
        event_bus: EventBus,
        fanout: Optional[Fanout] = None,
        auth_timeout: float = 30.0,
        auto_subscribe: bool = True,
    ) -> None:
        self.registry = registry
        self.chat_store = chat_store
        self.room_manager = room_manager
        self.event_bus = event_bus
        self.fanout = fanout or LocalFanout(registry)
        self.auth_timeout = auth_timeout
        self.auto_subscribe = auto_subscribe

        # TypingState: rooms in which a connection last said isTyping=true
        self._typing: Dict[Connection, Set[int]] = {}
        # Persist-then-broadcast runs under the room's lock so delivery
        # order matches persistence order
        self._room_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

        self._handlers: Dict[str, Callable[[Connection, object], Awaitable[None]]] = {
            "auth": self._on_auth,
            "join_room": self._on_join_room,
            "leave_room": self._on_leave_room,
            "chat_message": self._on_chat_message,
            "typing": self._on_typing,
        }

    # ========================================================================
    # CONNECTION LIFECYCLE
    # ========================================================================

    async def open(self, websocket: WebSocket) -> Connection:
        """Accept the transport. The connection stays CONNECTING until auth."""
        await websocket.accept()
        connection = Connection(websocket=websocket)
        logger.info("WebSocket %s opened", connection.id)
        return connection

    async def enforce_auth_timeout(self, connection: Connection) -> None:
        """
        Close the transport if the connection has not authenticated in time.

        Run as a task next to the receive loop; cancelled when the
        connection ends first.
        """
        await asyncio.sleep(self.auth_timeout)
        if connection.state is not ConnectionState.CONNECTING:
            return

        logger.warning("WebSocket %s did not authenticate within %ss", connection.id, self.auth_timeout)
        connection.state = ConnectionState.CLOSED
        try:
            await connection.websocket.close(code=AUTH_TIMEOUT_CLOSE_CODE, reason="Authentication timeout")
        except RuntimeError:
            # Transport already closed by the client
            pass

    async def close(self, connection: Connection) -> None:
        """
        Tear down a connection after the transport closed.

        The registry entry goes first, so nothing more is sent to the
        socket. Other subscribers are then told the user stopped typing in
        any room the connection was typing in.
        """
        typing_rooms = self._typing.pop(connection, set())
        self.registry.unregister(connection)

        if connection.user_id is None or not typing_rooms:
            return

        try:
            username = await self._username(connection.user_id)
        except PersistenceError:
            username = "Unknown"
        for room_id in sorted(typing_rooms):
            await self.fanout.broadcast_to_room(
                room_id,
                typing_frame(room_id, connection.user_id, username, False),
                exclude=connection,
            )

    # ========================================================================
    # FRAME DISPATCH
    # ========================================================================

    async def handle_frame(self, connection: Connection, raw: str) -> None:
        """
        Process one inbound text frame from `connection`.

        Args:
            connection: The sending connection
            raw: The undecoded frame text

        Error Handling:
            - Not JSON / not {type, payload}: "Invalid message format"
            - Unknown type: "Unknown message type: <type>"
            - Not authenticated (any type but auth): "Not authenticated"
            - Payload fails validation: "Invalid message data"
            - Database failure: reported, connection kept
            - Anything unexpected: logged, "Internal server error"
        """
        try:
            envelope = InboundFrame.model_validate(json.loads(raw))
        except (ValueError, TypeError, ValidationError):
            await self._send(connection, error_frame("Invalid message format"))
            return

        handler = self._handlers.get(envelope.type)
        if handler is None:
            await self._send(connection, error_frame(f"Unknown message type: {envelope.type}"))
            return

        if envelope.type != "auth" and not connection.is_authenticated:
            await self._send(connection, error_frame("Not authenticated"))
            return

        try:
            payload = INBOUND_PAYLOADS[envelope.type].model_validate(envelope.payload)
        except ValidationError:
            await self._send(connection, error_frame("Invalid message data"))
            return

        logger.debug("Websocket input from %s: %s %s", connection.id, envelope.type, envelope.payload)

        try:
            await handler(connection, payload)
        except PersistenceError as exc:
            logger.error("Database error handling %s from %s: %s", envelope.type, connection.id, exc)
            await self._send(connection, error_frame("Service temporarily unavailable"))
        except Exception:
            logger.exception("Error handling %s from %s", envelope.type, connection.id)
            await self._send(connection, error_frame("Internal server error"))

    # ========================================================================
    # FRAME HANDLERS
    # ========================================================================

    async def _on_auth(self, connection: Connection, payload: AuthPayload) -> None:
        if connection.state is ConnectionState.CLOSED:
            return
        if connection.is_authenticated:
            await self._send(connection, error_frame("Already authenticated"))
            return

        user = await run_in_threadpool(self.chat_store.get_user, payload.user_id)
        if user is None:
            await self._send(connection, auth_error_frame("User not found"))
            return

        try:
            self.registry.register(connection, user.id)
        except DuplicateConnectionError:
            await self._send(connection, error_frame("Already authenticated"))
            return

        room_ids = []
        if self.auto_subscribe:
            room_ids = await run_in_threadpool(self.room_manager.get_joined_room_ids, user.id)
            for room_id in room_ids:
                self.registry.add_room_subscription(connection, room_id)

        await self._send(connection, auth_success_frame(user.id, room_ids))

    async def _on_join_room(self, connection: Connection, payload: RoomPayload) -> None:
        """
        Subscribe this connection to a room's live events.

        Session-only: no durable membership is written. Durable joining is
        POST /api/chat/rooms/{id}/join. Group rooms can be watched by anyone;
        direct rooms only by their two members.
        """
        room = await run_in_threadpool(self.chat_store.get_room, payload.room_id)
        if room is None:
            await self._send(connection, error_frame("Room not found"))
            return

        if room.type == "direct" and not await run_in_threadpool(
            self.room_manager.is_member, connection.user_id, room.id
        ):
            await self._send(connection, error_frame("Not a member of this room"))
            return

        self.registry.add_room_subscription(connection, room.id)
        await self._send(connection, room_joined_frame(room.id))
        await self.event_bus.emit(
            EventKind.USER_JOINED_ROOM,
            UserJoinedRoom(room_id=room.id, user_id=connection.user_id),
        )

    async def _on_leave_room(self, connection: Connection, payload: RoomPayload) -> None:
        self.registry.remove_room_subscription(connection, payload.room_id)
        typing_rooms = self._typing.get(connection)
        if typing_rooms:
            typing_rooms.discard(payload.room_id)
        await self._send(connection, room_left_frame(payload.room_id))

    async def _on_chat_message(self, connection: Connection, payload: ChatMessagePayload) -> None:
        """
        Persist a message, then broadcast it to every subscriber of the room.

        The sender gets its own message back as confirmation. Nothing is
        broadcast unless the write succeeded.
        """
        user_id = connection.user_id
        room = await run_in_threadpool(self.chat_store.get_room, payload.room_id)
        if room is None:
            await self._send(connection, error_frame("Room not found"))
            return

        if not await run_in_threadpool(self.room_manager.is_member, user_id, room.id):
            await self._send(connection, error_frame("Not a member of this room"))
            return

        async with self._room_locks[room.id]:
            try:
                stored = await run_in_threadpool(
                    self.chat_store.create_message, room.id, user_id, payload.message
                )
            except (PersistenceError, RoomNotFoundError) as exc:
                logger.error("Failed to persist message from user %s in room %s: %s", user_id, room.id, exc)
                await self._send(connection, error_frame("Failed to send message"))
                return

            username = await self._username(user_id)
            outgoing = ChatMessageOut(**stored.model_dump(), username=username)
            await self.fanout.broadcast_to_room(room.id, chat_message_frame(outgoing))

        await self.event_bus.emit(
            EventKind.MESSAGE_SENT,
            MessageSent(room_id=room.id, message=stored.message, sender_id=user_id),
        )

    async def _on_typing(self, connection: Connection, payload: TypingPayload) -> None:
        """
        Relay a typing indicator to the room's other connections. Not persisted.

        Ignored for rooms this connection is not subscribed to.
        """
        rooms = self._typing.setdefault(connection, set())
        if payload.room_id not in connection.rooms:
            rooms.discard(payload.room_id)
            return
        if payload.is_typing:
            rooms.add(payload.room_id)
        else:
            rooms.discard(payload.room_id)

        username = await self._username(connection.user_id)
        await self.fanout.broadcast_to_room(
            payload.room_id,
            typing_frame(payload.room_id, connection.user_id, username, payload.is_typing),
            exclude=connection,
        )
        await self.event_bus.emit(
            EventKind.USER_TYPING,
            UserTyping(room_id=payload.room_id, user_id=connection.user_id, is_typing=payload.is_typing),
        )

    # ========================================================================
    # HELPERS
    # ========================================================================

    async def _username(self, user_id: int) -> str:
        user: Optional[User] = await run_in_threadpool(self.chat_store.get_user, user_id)
        return user.username if user else "Unknown"

    async def _send(self, connection: Connection, payload: dict) -> None:
        """Reply to one connection. A closed socket is ignored."""
        if not connection.is_open:
            return
        try:
            await connection.websocket.send_json(payload)
        except Exception as e:
            logger.error("Send error to %s: %s", connection.id, e)
