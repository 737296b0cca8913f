# backend/services/fanout.py

from __future__ import annotations

from typing import Optional

from services.connection_registry import Connection, ConnectionRegistry


class LocalFanout:
    """
    In-process delivery: broadcasts go straight to this process's registry.

    This is the default backend. It only reaches sockets connected to the
    current server process; see RedisFanout for multi-process deployments.
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    async def broadcast_to_room(
        self, room_id: int, payload: dict, exclude: Optional[Connection] = None
    ) -> None:
        await self.registry.broadcast_to_room(room_id, payload, exclude=exclude)

    async def broadcast_to_all(self, payload: dict) -> None:
        await self.registry.broadcast_to_all(payload)
