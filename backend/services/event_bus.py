# backend/services/event_bus.py

from __future__ import annotations

import inspect
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, Union

from models.models import CamelModel

logger = logging.getLogger(__name__)


# ============================================================================
# EVENT KINDS AND PAYLOADS
# ============================================================================

class EventKind(str, Enum):
    MESSAGE_SENT = "message_sent"
    USER_JOINED_ROOM = "user_joined_room"
    USER_TYPING = "user_typing"
    MESSAGE_READ = "message_read"
    NEW_ROOM = "new_room"
    USER_JOINED = "user_joined"


class MessageSent(CamelModel):
    room_id: int
    message: str
    sender_id: int


class UserJoinedRoom(CamelModel):
    """A connection subscribed to a room's live events."""

    room_id: int
    user_id: int


class UserTyping(CamelModel):
    room_id: int
    user_id: int
    is_typing: bool = True


class MessageRead(CamelModel):
    room_id: int
    user_id: int
    message_id: int


class NewRoom(CamelModel):
    id: int
    name: str
    created_at: Optional[datetime] = None


class UserJoined(CamelModel):
    """A user durably joined a room."""

    user_id: int
    room_id: int


EVENT_PAYLOADS: Dict[EventKind, Type[CamelModel]] = {
    EventKind.MESSAGE_SENT: MessageSent,
    EventKind.USER_JOINED_ROOM: UserJoinedRoom,
    EventKind.USER_TYPING: UserTyping,
    EventKind.MESSAGE_READ: MessageRead,
    EventKind.NEW_ROOM: NewRoom,
    EventKind.USER_JOINED: UserJoined,
}

Handler = Callable[[Any], Union[None, Awaitable[None]]]


# ============================================================================
# NOTIFICATION BUS
# ============================================================================

class EventBus:
    """
    Process-wide publish/subscribe registry for business events.

    Request handlers raise events ("a room was created", "a user joined")
    without knowing how they reach live clients; subscribers registered at
    startup turn them into WebSocket broadcasts.

    Each kind accepts exactly one payload model (see EVENT_PAYLOADS).
    Subscribing to an unknown kind, or emitting a payload of the wrong
    model, raises TypeError.

    Delivery:
        - Handlers run in registration order, one after another.
        - Handlers may be plain functions or coroutine functions.
        - A handler that raises is logged and skipped; the rest still run.
    """

    def __init__(self) -> None:
        self._handlers: Dict[EventKind, List[Handler]] = {kind: [] for kind in EventKind}

    def subscribe(self, kind: EventKind, handler: Handler) -> None:
        self._handlers[self._check_kind(kind)].append(handler)

    def unsubscribe(self, kind: EventKind, handler: Handler) -> None:
        handlers = self._handlers[self._check_kind(kind)]
        if handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, kind: EventKind) -> int:
        return len(self._handlers[self._check_kind(kind)])

    async def emit(self, kind: EventKind, payload: CamelModel) -> None:
        """
        Deliver `payload` to every subscriber of `kind`.

        Args:
            kind: The event kind
            payload: Instance of the model registered for `kind`

        Raises:
            TypeError: If `payload` is not an instance of EVENT_PAYLOADS[kind]
        """
        kind = self._check_kind(kind)
        expected = EVENT_PAYLOADS[kind]
        if not isinstance(payload, expected):
            raise TypeError(
                f"{kind.value} expects {expected.__name__}, got {type(payload).__name__}"
            )

        for handler in list(self._handlers[kind]):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Subscriber %r failed for event %s", handler, kind.value)

    @staticmethod
    def _check_kind(kind: EventKind) -> EventKind:
        if not isinstance(kind, EventKind):
            raise TypeError(f"Unknown event kind: {kind!r}")
        return kind
