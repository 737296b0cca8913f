# backend/core/exceptions.py

from __future__ import annotations


class ChatError(Exception):
    """Base class for errors raised by the chat core."""


class DuplicateConnectionError(ChatError):
    """The same websocket was registered twice."""


class DuplicateNameError(ChatError):
    """A room with this name already exists."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Room name '{name}' already exists")
        self.name = name


class RoomNotFoundError(ChatError):
    def __init__(self, room_id: int) -> None:
        super().__init__(f"Room {room_id} not found")
        self.room_id = room_id


class UserNotFoundError(ChatError):
    def __init__(self, user_id: int) -> None:
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class DirectRoomError(ChatError):
    """An operation would break the two-member rule of a direct room."""


class PersistenceError(ChatError):
    """A database read or write failed. The transaction has been rolled back."""
