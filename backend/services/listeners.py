# backend/services/listeners.py

from __future__ import annotations

import logging
import weakref

from models.protocol import frame
from services.event_bus import (
    EventBus,
    EventKind,
    MessageRead,
    MessageSent,
    NewRoom,
    UserJoined,
    UserJoinedRoom,
    UserTyping,
)

logger = logging.getLogger(__name__)

_registered: "weakref.WeakSet[EventBus]" = weakref.WeakSet()


def register_listeners(bus: EventBus, fanout) -> bool:
    """
    Install the standing subscribers on `bus`. Runs once per bus.

    - new_room    -> every live connection (fills "available rooms" lists)
    - user_joined -> connections subscribed to that room
    - the other kinds are logged

    Returns:
        False if this bus already had its listeners
    """
    if bus in _registered:
        return False
    _registered.add(bus)

    async def on_new_room(event: NewRoom) -> None:
        await fanout.broadcast_to_all(frame("new_room", **event.to_wire()))

    async def on_user_joined(event: UserJoined) -> None:
        await fanout.broadcast_to_room(event.room_id, frame("user_joined", **event.to_wire()))

    def on_message_sent(event: MessageSent) -> None:
        logger.info("[message_sent] user %s in room %s", event.sender_id, event.room_id)

    def on_user_joined_room(event: UserJoinedRoom) -> None:
        logger.info("[user_joined_room] user %s subscribed to room %s", event.user_id, event.room_id)

    def on_user_typing(event: UserTyping) -> None:
        logger.debug("[user_typing] user %s typing=%s in room %s", event.user_id, event.is_typing, event.room_id)

    def on_message_read(event: MessageRead) -> None:
        logger.info("[message_read] user %s read %s in room %s", event.user_id, event.message_id, event.room_id)

    bus.subscribe(EventKind.NEW_ROOM, on_new_room)
    bus.subscribe(EventKind.USER_JOINED, on_user_joined)
    bus.subscribe(EventKind.MESSAGE_SENT, on_message_sent)
    bus.subscribe(EventKind.USER_JOINED_ROOM, on_user_joined_room)
    bus.subscribe(EventKind.USER_TYPING, on_user_typing)
    bus.subscribe(EventKind.MESSAGE_READ, on_message_read)
    return True
