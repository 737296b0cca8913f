# backend/api/routes/rooms.py

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.concurrency import run_in_threadpool

from core import state
from core.exceptions import (
    DirectRoomError,
    DuplicateNameError,
    PersistenceError,
    RoomNotFoundError,
    UserNotFoundError,
)
from core.security import get_current_user, require_counselor
from models.models import ChatMessageOut, CreateRoomRequest, Room, User
from services.event_bus import EventKind, MessageRead, NewRoom, UserJoined

router = APIRouter(prefix="/api/chat", tags=["Chat"])

# ============================================================================
# ROOM ENDPOINTS
# ============================================================================

@router.get("/rooms", response_model=List[Room])
async def list_joined_rooms(current_user: User = Depends(get_current_user)):
    """Rooms the current user is a member of."""
    return await run_in_threadpool(state.room_manager.get_joined_rooms, current_user.id)


@router.get("/rooms/available", response_model=List[Room])
async def list_available_rooms(current_user: User = Depends(get_current_user)):
    """Group rooms the current user has not joined yet."""
    return await run_in_threadpool(state.room_manager.get_available_rooms, current_user.id)


@router.post("/rooms", response_model=Room, status_code=status.HTTP_201_CREATED)
async def create_room(request: CreateRoomRequest, current_user: User = Depends(get_current_user)):
    """
    Create a group room. The creator becomes its first member.

    Raises:
        HTTPException: 400 if the name is blank, already taken, or the
            type is "direct"

    Side Effects:
        - "new_room" broadcast to every connected WebSocket client
    """
    if not request.name.strip():
        raise HTTPException(status_code=400, detail="Room name required")

    try:
        room = await run_in_threadpool(state.room_manager.create_room, request, current_user.id)
    except DuplicateNameError:
        raise HTTPException(status_code=400, detail="Room name exists")
    except DirectRoomError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Failed to create room")

    await state.event_bus.emit(
        EventKind.NEW_ROOM,
        NewRoom(id=room.id, name=room.name, created_at=room.created_at),
    )
    return room


@router.post("/rooms/{room_id}/join")
async def join_room(room_id: int, current_user: User = Depends(get_current_user)):
    """
    Durably join a group room.

    Side Effects:
        - "user_joined" sent to connections subscribed to the room
    """
    try:
        created = await run_in_threadpool(state.room_manager.join_room, current_user.id, room_id)
    except RoomNotFoundError:
        raise HTTPException(status_code=404, detail="Room not found")
    except DirectRoomError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Failed to join room")

    if created:
        await state.event_bus.emit(
            EventKind.USER_JOINED,
            UserJoined(user_id=current_user.id, room_id=room_id),
        )
    return {"status": "joined", "roomId": room_id}


@router.post("/rooms/{room_id}/leave")
async def leave_room(room_id: int, current_user: User = Depends(get_current_user)):
    try:
        await run_in_threadpool(state.room_manager.leave_room, current_user.id, room_id)
    except DirectRoomError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Failed to leave room")
    return {"status": "left", "roomId": room_id}


@router.get("/rooms/{room_id}/messages", response_model=List[ChatMessageOut])
async def list_messages(
    room_id: int,
    limit: int = Query(50, ge=1, le=200),
    before: Optional[int] = Query(None, description="Only messages older than this id"),
    current_user: User = Depends(get_current_user),
):
    """
    Message history for a room, oldest first, paged backwards with `before`.

    Only members can read a room's history.
    """
    room = await run_in_threadpool(state.chat_store.get_room, room_id)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    if not await run_in_threadpool(state.room_manager.is_member, current_user.id, room_id):
        raise HTTPException(status_code=403, detail="Not a member of this room")

    return await run_in_threadpool(state.chat_store.list_messages, room_id, limit, before)


@router.post("/rooms/{room_id}/messages/{message_id}/read", status_code=status.HTTP_202_ACCEPTED)
async def mark_message_read(
    room_id: int, message_id: int, current_user: User = Depends(get_current_user)
):
    """Read receipt. Not stored; raised on the notification bus only."""
    if not await run_in_threadpool(state.room_manager.is_member, current_user.id, room_id):
        raise HTTPException(status_code=403, detail="Not a member of this room")

    await state.event_bus.emit(
        EventKind.MESSAGE_READ,
        MessageRead(room_id=room_id, user_id=current_user.id, message_id=message_id),
    )
    return {"status": "accepted"}


# ============================================================================
# DIRECT CHAT
# ============================================================================

@router.post("/direct/{user_id}", response_model=Room)
async def start_direct_chat(user_id: int, counselor: User = Depends(require_counselor)):
    """
    Start (or reopen) a 1:1 chat between the current counselor and a user.

    Calling this again for the same pair returns the same room.
    """
    try:
        room, _created = await run_in_threadpool(
            state.room_manager.get_or_create_direct_room, counselor.id, user_id
        )
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    except DirectRoomError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Failed to start direct chat")
    return room
