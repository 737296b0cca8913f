# backend/core/state.py
from __future__ import annotations

from datetime import datetime, timezone

from core.config import settings
from core.db import SessionLocal
from services.broker import ChatBroker
from services.chat_store import ChatStore
from services.connection_registry import ConnectionRegistry
from services.event_bus import EventBus
from services.fanout import LocalFanout
from services.listeners import register_listeners
from services.redis_pub_sub import RedisFanout
from services.room_manager import RoomManager

# Global singletons for app state
chat_store = ChatStore(SessionLocal)
room_manager = RoomManager(SessionLocal)
connection_registry = ConnectionRegistry()

if settings.FANOUT_BACKEND == "redis":
    fanout = RedisFanout(connection_registry, url=settings.REDIS_URL)
else:
    fanout = LocalFanout(connection_registry)

event_bus = EventBus()
register_listeners(event_bus, fanout)

broker = ChatBroker(
    registry=connection_registry,
    chat_store=chat_store,
    room_manager=room_manager,
    event_bus=event_bus,
    fanout=fanout,
    auth_timeout=settings.AUTH_TIMEOUT_SECONDS,
    auto_subscribe=settings.AUTO_SUBSCRIBE_JOINED_ROOMS,
)

app_start_time: datetime = datetime.now(timezone.utc)
