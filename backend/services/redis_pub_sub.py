# backend/services/redis_pub_sub.py

from __future__ import annotations

import json
import logging
from typing import Optional

import redis.asyncio as redis

from services.connection_registry import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "chat:"
ALL_CHANNEL = f"{CHANNEL_PREFIX}all"


def room_channel(room_id: int) -> str:
    return f"{CHANNEL_PREFIX}room:{room_id}"


class RedisFanout:
    """
    Cross-process delivery through Redis Pub/Sub.

    Every broadcast is published as an envelope instead of being sent
    directly. Each server process runs `listen()`, receives every envelope
    (its own included) and hands it to its local registry, so a room event
    reaches subscribers no matter which process they are connected to.

    Envelope:
        {"scope": "room", "room_id": 10, "exclude": "<connection id>", "payload": {...}}
        {"scope": "all", "payload": {...}}

    `exclude` is a connection id; it only matches on the process that owns
    that connection.

    Ordering: one channel per room, so events for a room published by one
    process arrive in publish order.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        url: str = "redis://localhost:6379/0",
        client: Optional[redis.Redis] = None,
    ) -> None:
        self.registry = registry
        self.url = url
        self.client = client
        self.pubsub = None

    async def connect(self) -> None:
        """Establish async connection to Redis."""
        if self.client is None:
            self.client = redis.from_url(self.url, decode_responses=True)
        await self.client.ping()
        logger.info("✓ Connected to Redis at %s", self.url)

    async def publish(self, channel: str, envelope: dict) -> None:
        await self.client.publish(channel, json.dumps(envelope))
        logger.debug("📤 Published to Redis channel '%s'", channel)

    async def broadcast_to_room(
        self, room_id: int, payload: dict, exclude: Optional[Connection] = None
    ) -> None:
        envelope = {
            "scope": "room",
            "room_id": room_id,
            "exclude": exclude.id if exclude is not None else None,
            "payload": payload,
        }
        await self.publish(room_channel(room_id), envelope)

    async def broadcast_to_all(self, payload: dict) -> None:
        await self.publish(ALL_CHANNEL, {"scope": "all", "payload": payload})

    async def deliver(self, envelope: dict) -> None:
        """Hand a received envelope to the local registry."""
        payload = envelope.get("payload")
        if not isinstance(payload, dict):
            logger.warning("Redis envelope without payload - ignoring")
            return

        if envelope.get("scope") == "all":
            await self.registry.broadcast_to_all(payload)
            return

        room_id = envelope.get("room_id")
        if room_id is None:
            logger.warning("Redis room envelope without room_id - ignoring")
            return

        exclude_id = envelope.get("exclude")
        exclude = self.registry.get(exclude_id) if exclude_id else None
        await self.registry.broadcast_to_room(room_id, payload, exclude=exclude)

    async def listen(self) -> None:
        """
        Subscribe to every chat channel and deliver envelopes until cancelled.

        Run this as a background task on startup.
        """
        self.pubsub = self.client.pubsub()
        await self.pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
        logger.info("✓ Subscribed to Redis pattern '%s*'", CHANNEL_PREFIX)

        async for message in self.pubsub.listen():
            if message["type"] not in ("message", "pmessage"):
                continue
            try:
                await self.deliver(json.loads(message["data"]))
            except Exception as e:
                logger.error("Error processing Redis message: %s", e)

    async def close(self) -> None:
        """Close connections."""
        if self.pubsub:
            await self.pubsub.punsubscribe()
            await self.pubsub.aclose()
        if self.client:
            await self.client.aclose()
        logger.info("Redis connection closed")
