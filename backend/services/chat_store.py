# backend/services/chat_store.py

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from core.db import SessionLocal, session_scope
from core.exceptions import RoomNotFoundError, UserNotFoundError
from models.models import ChatMessageOut, Message, Room, User
from models.orm import MessageRow, RoomRow, UserRow

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


# ============================================================================
# CHAT PERSISTENCE
# ============================================================================

class ChatStore:
    """
    Reads and writes users, rooms and messages.

    Every method runs in its own transaction and returns pydantic models, so
    nothing handed back is tied to a live session. Methods are blocking;
    async callers run them through `run_in_threadpool`.

    Database errors surface as PersistenceError (see core.db.session_scope).
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self.session_factory = session_factory

    # ---- users -------------------------------------------------------------

    def get_user(self, user_id: int) -> Optional[User]:
        with session_scope(self.session_factory) as db:
            row = db.get(UserRow, user_id)
            return User.model_validate(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with session_scope(self.session_factory) as db:
            row = db.scalars(select(UserRow).where(UserRow.username == username)).first()
            return User.model_validate(row) if row else None

    def create_user(self, username: str, role: str = "student") -> User:
        with session_scope(self.session_factory) as db:
            row = UserRow(username=username, role=role)
            db.add(row)
            db.flush()
            logger.info("✓ Created user %s (%s)", row.username, row.role)
            return User.model_validate(row)

    def list_users(self, role: Optional[str] = None) -> List[User]:
        with session_scope(self.session_factory) as db:
            query = select(UserRow).order_by(UserRow.username)
            if role is not None:
                query = query.where(UserRow.role == role)
            return [User.model_validate(row) for row in db.scalars(query)]

    # ---- rooms -------------------------------------------------------------

    def get_room(self, room_id: int) -> Optional[Room]:
        with session_scope(self.session_factory) as db:
            row = db.get(RoomRow, room_id)
            return Room.model_validate(row) if row else None

    def list_rooms(self) -> List[Room]:
        with session_scope(self.session_factory) as db:
            rows = db.scalars(select(RoomRow).order_by(RoomRow.name))
            return [Room.model_validate(row) for row in rows]

    # ---- messages ----------------------------------------------------------

    def create_message(self, room_id: int, user_id: int, text: str) -> Message:
        """
        Persist a chat message.

        Raises:
            RoomNotFoundError / UserNotFoundError: If either side is missing
            PersistenceError: If the write fails
        """
        with session_scope(self.session_factory) as db:
            if db.get(RoomRow, room_id) is None:
                raise RoomNotFoundError(room_id)
            if db.get(UserRow, user_id) is None:
                raise UserNotFoundError(user_id)

            row = MessageRow(room_id=room_id, user_id=user_id, message=text)
            db.add(row)
            db.flush()
            return Message.model_validate(row)

    def list_messages(
        self,
        room_id: int,
        limit: int = DEFAULT_PAGE_SIZE,
        before_id: Optional[int] = None,
    ) -> List[ChatMessageOut]:
        """
        Page backwards through a room's history.

        Args:
            room_id: Room to read
            limit: Page size, capped at MAX_PAGE_SIZE
            before_id: Only return messages older than this message id

        Returns:
            Up to `limit` messages in chronological order, each with the
            author's username ("Unknown" if the author no longer exists)
        """
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        with session_scope(self.session_factory) as db:
            query = (
                select(MessageRow, UserRow.username)
                .outerjoin(UserRow, UserRow.id == MessageRow.user_id)
                .where(MessageRow.room_id == room_id)
                .order_by(MessageRow.id.desc())
                .limit(limit)
            )
            if before_id is not None:
                query = query.where(MessageRow.id < before_id)

            page = [
                ChatMessageOut(
                    id=row.id,
                    room_id=row.room_id,
                    user_id=row.user_id,
                    message=row.message,
                    created_at=row.created_at,
                    username=username or "Unknown",
                )
                for row, username in db.execute(query)
            ]
            page.reverse()
            return page
