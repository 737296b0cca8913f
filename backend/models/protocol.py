# backend/models/protocol.py
"""
WebSocket wire protocol.

Every frame, in either direction, is a JSON object:

    {"type": "<frame type>", "payload": {...}}

Client -> Server:
    auth         {"userId": 5}
    join_room    {"roomId": 10}
    leave_room   {"roomId": 10}
    chat_message {"roomId": 10, "message": "hello"}
    typing       {"roomId": 10, "isTyping": true}

Server -> Client:
    auth_success {"userId": 5, "roomIds": [10, 12]}
    auth_error   {"message": "User not found"}
    room_joined  {"roomId": 10}
    room_left    {"roomId": 10}
    chat_message {"id", "roomId", "userId", "username", "message", "createdAt"}
    typing       {"roomId", "userId", "username", "isTyping"}
    error        {"message": "..."}
    new_room     {"id", "name", "createdAt"}          (notification bus)
    user_joined  {"userId", "roomId"}                  (notification bus)
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Type

from pydantic import BaseModel, Field, StrictBool

from models.models import CamelModel, ChatMessageOut


class InboundFrame(BaseModel):
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class AuthPayload(CamelModel):
    user_id: int


class RoomPayload(CamelModel):
    room_id: int


class ChatMessagePayload(CamelModel):
    room_id: int
    message: str = Field(min_length=1)


class TypingPayload(CamelModel):
    room_id: int
    is_typing: StrictBool


INBOUND_PAYLOADS: Dict[str, Type[CamelModel]] = {
    "auth": AuthPayload,
    "join_room": RoomPayload,
    "leave_room": RoomPayload,
    "chat_message": ChatMessagePayload,
    "typing": TypingPayload,
}


# ============================================================================
# OUTBOUND FRAMES
# ============================================================================

def frame(frame_type: str, **payload: Any) -> dict:
    return {"type": frame_type, "payload": payload}


def error_frame(message: str) -> dict:
    return frame("error", message=message)


def auth_success_frame(user_id: int, room_ids: Iterable[int] = ()) -> dict:
    return frame("auth_success", userId=user_id, roomIds=sorted(room_ids))


def auth_error_frame(message: str) -> dict:
    return frame("auth_error", message=message)


def room_joined_frame(room_id: int) -> dict:
    return frame("room_joined", roomId=room_id)


def room_left_frame(room_id: int) -> dict:
    return frame("room_left", roomId=room_id)


def chat_message_frame(message: ChatMessageOut) -> dict:
    return {"type": "chat_message", "payload": message.to_wire()}


def typing_frame(room_id: int, user_id: int, username: str, is_typing: bool) -> dict:
    return frame("typing", roomId=room_id, userId=user_id, username=username, isTyping=is_typing)
