# backend/models/models.py
from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class User(CamelModel):
    id: int
    username: str
    role: Literal["student", "counselor"]
    created_at: Optional[datetime] = None


class Room(CamelModel):
    id: int
    name: str
    description: Optional[str] = None
    type: Literal["group", "direct"] = "group"
    active: bool = True
    created_at: Optional[datetime] = None


class Message(CamelModel):
    id: int
    room_id: int
    user_id: int
    message: str
    created_at: Optional[datetime] = None


class ChatMessageOut(Message):
    """A stored message enriched with the author's display name."""

    username: str


class CreateRoomRequest(CamelModel):
    name: str = Field(min_length=1, max_length=120)
    description: Optional[str] = ""
    type: Literal["group", "direct"] = "group"
