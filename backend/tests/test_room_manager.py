"""
Tests for durable room membership.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import func, select

from core.db import SessionLocal
from core.exceptions import (
    DirectRoomError,
    DuplicateNameError,
    PersistenceError,
    RoomNotFoundError,
    UserNotFoundError,
)
from models.models import CreateRoomRequest
from models.orm import MembershipRow, RoomRow


def _count(model, *where):
    with SessionLocal() as db:
        return db.scalar(select(func.count()).select_from(model).where(*where))


class TestCreateRoom:

    def test_creator_becomes_member(self, room_manager, student, room):
        assert room.type == "group"
        assert room.active is True
        assert room.created_at is not None
        assert room_manager.is_member(student.id, room.id)
        assert [r.id for r in room_manager.get_joined_rooms(student.id)] == [room.id]

    def test_duplicate_name_is_rejected_and_nothing_persisted(self, room_manager, student, other_student):
        room_manager.create_room(CreateRoomRequest(name="General"), creator_id=student.id)

        with pytest.raises(DuplicateNameError):
            room_manager.create_room(CreateRoomRequest(name="General"), creator_id=other_student.id)

        assert _count(RoomRow) == 1
        assert room_manager.get_joined_rooms(other_student.id) == []

    def test_name_collision_ignores_case_and_whitespace(self, room_manager, student):
        room_manager.create_room(CreateRoomRequest(name="General"), creator_id=student.id)

        with pytest.raises(DuplicateNameError):
            room_manager.create_room(CreateRoomRequest(name="  general "), creator_id=student.id)

    def test_direct_type_is_refused(self, room_manager, student):
        with pytest.raises(DirectRoomError):
            room_manager.create_room(CreateRoomRequest(name="Private", type="direct"), creator_id=student.id)
        assert _count(RoomRow) == 0

    def test_unknown_creator_is_refused(self, room_manager):
        with pytest.raises(UserNotFoundError):
            room_manager.create_room(CreateRoomRequest(name="Orphan"), creator_id=404)
        assert _count(RoomRow) == 0

    def test_failed_membership_insert_rolls_back_room(self, room_manager, student):
        with SessionLocal() as db:
            db.add(MembershipRow(user_id=student.id, room_id=1))
            db.commit()

        # Room 1 does not exist yet; its membership row does, so the
        # creator's membership insert for the new room collides on the
        # composite primary key and the whole transaction is rolled back.
        with pytest.raises(PersistenceError):
            room_manager.create_room(CreateRoomRequest(name="Doomed"), creator_id=student.id)

        assert _count(RoomRow) == 0
        assert _count(MembershipRow) == 1


class TestJoinAndLeave:

    def test_join_twice_keeps_one_membership(self, room_manager, other_student, room):
        assert room_manager.join_room(other_student.id, room.id) is True
        assert room_manager.join_room(other_student.id, room.id) is False

        assert _count(
            MembershipRow,
            MembershipRow.user_id == other_student.id,
            MembershipRow.room_id == room.id,
        ) == 1

    def test_join_unknown_room(self, room_manager, student):
        with pytest.raises(RoomNotFoundError):
            room_manager.join_room(student.id, 999)

    def test_leave_is_idempotent(self, room_manager, student, room):
        assert room_manager.leave_room(student.id, room.id) is True
        assert room_manager.leave_room(student.id, room.id) is False
        assert not room_manager.is_member(student.id, room.id)

    def test_joined_and_available_partition_group_rooms(self, room_manager, student, other_student, room):
        other_room = room_manager.create_room(CreateRoomRequest(name="Sleep"), creator_id=other_student.id)

        assert [r.id for r in room_manager.get_joined_rooms(student.id)] == [room.id]
        assert [r.id for r in room_manager.get_available_rooms(student.id)] == [other_room.id]

        room_manager.join_room(student.id, other_room.id)

        assert {r.id for r in room_manager.get_joined_rooms(student.id)} == {room.id, other_room.id}
        assert room_manager.get_available_rooms(student.id) == []

    def test_inactive_rooms_are_not_available(self, room_manager, student, other_student, room):
        with SessionLocal() as db:
            db.get(RoomRow, room.id).active = False
            db.commit()

        assert room_manager.get_available_rooms(other_student.id) == []


class TestDirectRooms:

    def test_direct_room_is_created_once_per_pair(self, room_manager, counselor, student):
        room, created = room_manager.get_or_create_direct_room(counselor.id, student.id)
        again, created_again = room_manager.get_or_create_direct_room(counselor.id, student.id)
        reversed_pair, _ = room_manager.get_or_create_direct_room(student.id, counselor.id)

        assert created is True
        assert created_again is False
        assert again.id == room.id == reversed_pair.id
        assert room.type == "direct"
        assert _count(RoomRow, RoomRow.type == "direct") == 1

    def test_find_direct_room_is_stable(self, room_manager, counselor, student, other_student):
        assert room_manager.find_direct_room(counselor.id, student.id) is None

        room, _ = room_manager.get_or_create_direct_room(counselor.id, student.id)

        assert room_manager.find_direct_room(counselor.id, student.id).id == room.id
        assert room_manager.find_direct_room(student.id, counselor.id).id == room.id
        assert room_manager.find_direct_room(counselor.id, other_student.id) is None

    def test_direct_room_never_exceeds_two_members(self, room_manager, counselor, student, other_student):
        room, _ = room_manager.get_or_create_direct_room(counselor.id, student.id)
        room_manager.get_or_create_direct_room(counselor.id, student.id)

        assert room_manager.add_user_to_room(student.id, room.id) is False
        with pytest.raises(DirectRoomError):
            room_manager.add_user_to_room(other_student.id, room.id)
        with pytest.raises(DirectRoomError):
            room_manager.join_room(other_student.id, room.id)

        assert _count(MembershipRow, MembershipRow.room_id == room.id) == 2

    def test_group_room_with_same_two_members_is_not_a_direct_room(
        self, room_manager, counselor, student, room
    ):
        # `room` has only the student; add the counselor so the pair matches
        room_manager.join_room(counselor.id, room.id)

        assert room_manager.find_direct_room(counselor.id, student.id) is None

    def test_direct_rooms_are_never_available(self, room_manager, counselor, student, other_student):
        room_manager.get_or_create_direct_room(counselor.id, student.id)

        assert room_manager.get_available_rooms(other_student.id) == []
        assert room_manager.get_available_rooms(student.id) == []

    def test_direct_room_needs_two_users(self, room_manager, counselor):
        with pytest.raises(DirectRoomError):
            room_manager.get_or_create_direct_room(counselor.id, counselor.id)
        with pytest.raises(UserNotFoundError):
            room_manager.get_or_create_direct_room(counselor.id, 404)

    def test_direct_room_cannot_be_left(self, room_manager, counselor, student):
        room, _ = room_manager.get_or_create_direct_room(counselor.id, student.id)

        with pytest.raises(DirectRoomError):
            room_manager.leave_room(student.id, room.id)

        again, created = room_manager.get_or_create_direct_room(counselor.id, student.id)
        assert created is False
        assert again.id == room.id
        assert _count(MembershipRow, MembershipRow.room_id == room.id) == 2


def _race(worker, attempts=4):
    """Run `worker` from several threads at once and collect outcomes."""
    start = threading.Barrier(attempts)

    def attempt():
        start.wait()
        try:
            return worker()
        except Exception as exc:
            return exc

    with ThreadPoolExecutor(max_workers=attempts) as pool:
        return [f.result() for f in [pool.submit(attempt) for _ in range(attempts)]]


class TestConcurrentWrites:

    def test_simultaneous_creates_keep_names_unique(self, room_manager, student):
        outcomes = _race(lambda: room_manager.create_room(CreateRoomRequest(name="General"), creator_id=student.id))

        assert sum(not isinstance(o, Exception) for o in outcomes) == 1
        assert all(isinstance(o, DuplicateNameError) for o in outcomes if isinstance(o, Exception))
        assert _count(RoomRow) == 1

    def test_simultaneous_direct_chats_share_one_room(self, room_manager, counselor, student):
        outcomes = _race(lambda: room_manager.get_or_create_direct_room(counselor.id, student.id))

        assert [created for _room, created in outcomes].count(True) == 1
        assert len({room.id for room, _created in outcomes}) == 1
        assert _count(RoomRow, RoomRow.type == "direct") == 1


class TestDefaultRooms:

    def test_seeds_general_once(self, room_manager):
        assert room_manager.ensure_default_rooms() == 1
        assert room_manager.ensure_default_rooms() == 0
        assert _count(RoomRow, RoomRow.name == "General") == 1
