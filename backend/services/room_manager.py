# backend/services/room_manager.py

from __future__ import annotations

import logging
import threading
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from core.db import SessionLocal, session_scope
from core.exceptions import (
    DirectRoomError,
    DuplicateNameError,
    RoomNotFoundError,
    UserNotFoundError,
)
from models.models import CreateRoomRequest, Room
from models.orm import MembershipRow, RoomRow, UserRow

logger = logging.getLogger(__name__)

DIRECT_ROOM_SIZE = 2

DEFAULT_ROOMS = [
    {
        "name": "General",
        "description": "A general chat room for all students to discuss mental health topics and get support.",
    },
]


# ============================================================================
# ROOM MEMBERSHIP MANAGER
# ============================================================================

class RoomManager:
    """
    Durable room membership: who belongs to which room.

    A membership is a (user_id, room_id) row. It decides which rooms a user
    sees as "joined" versus "available", who may post in a room, and which
    rooms a socket is subscribed to at login.

    Room kinds:
        group:  Many members, discoverable, joined by anyone
        direct: Exactly two members, created for a pair and never joinable

    The database does not cap membership counts, so the two-member rule of
    direct rooms is enforced here: the only path that adds members to a
    direct room is get_or_create_direct_room.

    Check-then-insert paths (name uniqueness, one direct room per pair, the
    two-member cap) run under one lock, since callers reach them from
    threadpool workers.

    Usage:
        room_manager = RoomManager()
        room = room_manager.create_room(CreateRoomRequest(name="Exam stress"), creator_id=5)
        joined = room_manager.get_joined_rooms(5)
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self.session_factory = session_factory
        self._write_lock = threading.Lock()

    def ensure_default_rooms(self) -> int:
        """
        Create the default rooms on first run.

        Only runs when there are no rooms at all, so deleting or renaming
        "General" later is respected.

        Returns:
            Number of rooms created
        """
        with session_scope(self.session_factory) as db:
            if db.scalar(select(func.count()).select_from(RoomRow)):
                return 0
            for rd in DEFAULT_ROOMS:
                db.add(RoomRow(name=rd["name"], description=rd["description"], type="group"))
        logger.info("✓ Created %d default rooms", len(DEFAULT_ROOMS))
        return len(DEFAULT_ROOMS)

    def create_room(self, data: CreateRoomRequest, creator_id: int) -> Room:
        """
        Create a group room and make its creator the first member.

        Args:
            data: Name, description and type of the room
            creator_id: User creating the room

        Returns:
            Room: The newly created room

        Raises:
            DuplicateNameError: If a room with the same name exists
                (case-insensitive)
            DirectRoomError: If `data.type` is "direct"; direct rooms only
                come from get_or_create_direct_room
            UserNotFoundError: If the creator does not exist

        Note:
            Room and membership are written in one transaction. If either
            insert fails, neither is kept.
        """
        if data.type == "direct":
            raise DirectRoomError("Direct rooms are created by starting a direct chat")

        name = data.name.strip()
        with self._write_lock, session_scope(self.session_factory) as db:
            if db.get(UserRow, creator_id) is None:
                raise UserNotFoundError(creator_id)
            if self._name_taken(db, name):
                raise DuplicateNameError(name)

            row = RoomRow(name=name, description=data.description or None, type="group")
            db.add(row)
            db.flush()
            db.add(MembershipRow(user_id=creator_id, room_id=row.id))
            db.flush()
            room = Room.model_validate(row)

        logger.info("✓ Created room: %s (%s) by user %s", room.name, room.id, creator_id)
        return room

    def get_joined_rooms(self, user_id: int) -> List[Room]:
        """All rooms the user holds a membership in, ordered by name."""
        with session_scope(self.session_factory) as db:
            rows = db.scalars(
                select(RoomRow)
                .join(MembershipRow, MembershipRow.room_id == RoomRow.id)
                .where(MembershipRow.user_id == user_id)
                .order_by(RoomRow.name)
            )
            return [Room.model_validate(row) for row in rows]

    def get_joined_room_ids(self, user_id: int) -> List[int]:
        with session_scope(self.session_factory) as db:
            return list(
                db.scalars(select(MembershipRow.room_id).where(MembershipRow.user_id == user_id))
            )

    def get_available_rooms(self, user_id: int) -> List[Room]:
        """
        Active group rooms the user could join.

        Rooms the user already belongs to are excluded, and direct rooms are
        never offered, whoever they belong to.
        """
        with session_scope(self.session_factory) as db:
            member_of = select(MembershipRow.room_id).where(MembershipRow.user_id == user_id)
            rows = db.scalars(
                select(RoomRow)
                .where(RoomRow.type == "group")
                .where(RoomRow.active.is_(True))
                .where(RoomRow.id.not_in(member_of))
                .order_by(RoomRow.name)
            )
            return [Room.model_validate(row) for row in rows]

    def is_member(self, user_id: int, room_id: int) -> bool:
        with session_scope(self.session_factory) as db:
            return db.get(MembershipRow, (user_id, room_id)) is not None

    def join_room(self, user_id: int, room_id: int) -> bool:
        """
        Durably join a group room. Idempotent.

        Returns:
            True if a membership was created, False if it already existed

        Raises:
            RoomNotFoundError: If the room does not exist
            DirectRoomError: If the room is a direct room
        """
        with self._write_lock, session_scope(self.session_factory) as db:
            room = db.get(RoomRow, room_id)
            if room is None:
                raise RoomNotFoundError(room_id)
            if room.type == "direct":
                raise DirectRoomError("Direct rooms cannot be joined")
            created = self._add_member(db, user_id, room)

        if created:
            logger.info("→ User %s joined room %s", user_id, room_id)
        return created

    def leave_room(self, user_id: int, room_id: int) -> bool:
        """
        Durably leave a group room. Idempotent.

        Returns:
            True if a membership was removed

        Raises:
            DirectRoomError: If the room is a direct room. Its pair of
                members is what identifies it, so neither side may leave.
        """
        with self._write_lock, session_scope(self.session_factory) as db:
            room = db.get(RoomRow, room_id)
            if room is not None and room.type == "direct":
                raise DirectRoomError("Direct rooms cannot be left")
            membership = db.get(MembershipRow, (user_id, room_id))
            if membership is None:
                return False
            db.delete(membership)

        logger.info("← User %s left room %s", user_id, room_id)
        return True

    def add_user_to_room(self, user_id: int, room_id: int) -> bool:
        """
        Add a member to any room, direct rooms included. Idempotent.

        Raises:
            RoomNotFoundError: If the room does not exist
            DirectRoomError: If the room is direct and already has two
                other members
        """
        with self._write_lock, session_scope(self.session_factory) as db:
            room = db.get(RoomRow, room_id)
            if room is None:
                raise RoomNotFoundError(room_id)
            return self._add_member(db, user_id, room)

    def find_direct_room(self, user_id1: int, user_id2: int) -> Optional[Room]:
        """
        Find the direct room shared by exactly these two users.

        Returns:
            The room whose membership is exactly {user_id1, user_id2}, or
            None if the pair has no direct room yet
        """
        with session_scope(self.session_factory) as db:
            row = self._find_direct_room(db, user_id1, user_id2)
            return Room.model_validate(row) if row else None

    def get_or_create_direct_room(self, initiator_id: int, other_id: int) -> Tuple[Room, bool]:
        """
        Return the pair's direct room, creating it on first use.

        Used when a counselor starts a 1:1 chat with a student. Creating the
        room and adding both members happens in one transaction.

        Returns:
            (room, created)

        Raises:
            DirectRoomError: If both ids are the same user
            UserNotFoundError: If either user does not exist
        """
        if initiator_id == other_id:
            raise DirectRoomError("A direct room needs two different users")

        with self._write_lock, session_scope(self.session_factory) as db:
            users = {}
            for user_id in (initiator_id, other_id):
                user = db.get(UserRow, user_id)
                if user is None:
                    raise UserNotFoundError(user_id)
                users[user_id] = user

            existing = self._find_direct_room(db, initiator_id, other_id)
            if existing is not None:
                return Room.model_validate(existing), False

            low, high = sorted((initiator_id, other_id))
            row = RoomRow(
                name=f"direct-{low}-{high}",
                description=f"{users[initiator_id].username} & {users[other_id].username}",
                type="direct",
            )
            db.add(row)
            db.flush()
            self._add_member(db, initiator_id, row)
            self._add_member(db, other_id, row)
            room = Room.model_validate(row)

        logger.info("✓ Created direct room %s for users %s and %s", room.id, initiator_id, other_id)
        return room, True

    # ------------------------------------------------------------------------

    @staticmethod
    def _name_taken(db: Session, name: str) -> bool:
        return (
            db.scalar(select(RoomRow.id).where(func.lower(RoomRow.name) == name.lower()).limit(1))
            is not None
        )

    @staticmethod
    def _member_ids(db: Session, room_id: int) -> set:
        return set(db.scalars(select(MembershipRow.user_id).where(MembershipRow.room_id == room_id)))

    def _add_member(self, db: Session, user_id: int, room: RoomRow) -> bool:
        members = self._member_ids(db, room.id)
        if user_id in members:
            return False
        if room.type == "direct" and len(members) >= DIRECT_ROOM_SIZE:
            raise DirectRoomError(f"Direct room {room.id} already has {DIRECT_ROOM_SIZE} members")

        db.add(MembershipRow(user_id=user_id, room_id=room.id))
        db.flush()
        return True

    def _find_direct_room(self, db: Session, user_id1: int, user_id2: int) -> Optional[RoomRow]:
        wanted = {user_id1, user_id2}
        shared = (
            select(MembershipRow.room_id)
            .where(MembershipRow.user_id.in_(wanted))
            .group_by(MembershipRow.room_id)
            .having(func.count() == len(wanted))
        )
        candidates = db.scalars(
            select(RoomRow).where(RoomRow.type == "direct").where(RoomRow.id.in_(shared))
        )
        for room in candidates:
            if self._member_ids(db, room.id) == wanted:
                return room
        return None
