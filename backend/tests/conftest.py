"""
Pytest configuration and fixtures for backend tests.
"""

import json
import os

# Must be set before any app module reads core.config
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["FANOUT_BACKEND"] = "memory"
os.environ["SEED_DEFAULT_ROOMS"] = "false"
os.environ["JWT_SECRET"] = "test-secret"

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketState

from core.db import SessionLocal, engine
from core.security import create_access_token
from models.models import CreateRoomRequest
from models.orm import Base
from services.broker import ChatBroker
from services.chat_store import ChatStore
from services.connection_registry import ConnectionRegistry
from services.event_bus import EventBus
from services.fanout import LocalFanout
from services.listeners import register_listeners
from services.room_manager import RoomManager


class FakeWebSocket:
    """Stands in for a Starlette WebSocket; records everything sent to it."""

    def __init__(self):
        self.sent = []
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.close_code = None

    async def accept(self):
        pass

    async def send_json(self, data):
        self.sent.append(data)

    async def close(self, code=1000, reason=None):
        self.close_code = code
        self.application_state = WebSocketState.DISCONNECTED

    def drop(self):
        """Simulate the client going away without a close handshake yet."""
        self.client_state = WebSocketState.DISCONNECTED

    def of_type(self, frame_type):
        return [f for f in self.sent if f["type"] == frame_type]

    @property
    def last(self):
        return self.sent[-1]


@pytest.fixture
def make_socket():
    return FakeWebSocket


@pytest.fixture(scope="function")
def db():
    """
    Fresh schema for each test.
    Uses SQLite in-memory with a single shared connection.
    """
    Base.metadata.create_all(bind=engine)
    try:
        yield
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store(db):
    return ChatStore(SessionLocal)


@pytest.fixture
def room_manager(db):
    return RoomManager(SessionLocal)


@pytest.fixture
def student(store):
    return store.create_user("quiet_owl", "student")


@pytest.fixture
def other_student(store):
    return store.create_user("night_fox", "student")


@pytest.fixture
def counselor(store):
    return store.create_user("dr_rivera", "counselor")


@pytest.fixture
def room(room_manager, student):
    """A group room created (and therefore joined) by `student`."""
    return room_manager.create_room(
        CreateRoomRequest(name="Exam Stress", description="Coping with exams"),
        creator_id=student.id,
    )


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def broker(registry, store, room_manager, bus):
    register_listeners(bus, LocalFanout(registry))
    return ChatBroker(
        registry=registry,
        chat_store=store,
        room_manager=room_manager,
        event_bus=bus,
        auth_timeout=0.05,
    )


@pytest.fixture
def send():
    """Feed one frame to the broker the way the endpoint would."""

    async def _send(broker, connection, frame_type, **payload):
        await broker.handle_frame(connection, json.dumps({"type": frame_type, "payload": payload}))

    return _send


@pytest.fixture
def client(db):
    from main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}

    return _headers
