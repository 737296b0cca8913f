# backend/api/websocket.py

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from core import state

logger = logging.getLogger(__name__)

router = APIRouter()

# ============================================================================
# WEBSOCKET ENDPOINT
# ============================================================================

@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for live chat.

    Protocol: see models/protocol.py. Every frame is
    {"type": "...", "payload": {...}}.

    Lifecycle:
    ==========
    1. Client connects; the connection is unauthenticated
    2. Client sends {"type": "auth", "payload": {"userId": 5}}
       - known user: auth_success, subscribed to the user's joined rooms
       - unknown user: auth_error, connection stays open for a retry
       - no auth within AUTH_TIMEOUT_SECONDS: server closes with code 4001
    3. Client sends join_room / leave_room / chat_message / typing frames
    4. On disconnect the connection is unregistered and its typing
       indicators are cleared for the other subscribers

    Frames are handled one at a time, in arrival order. A bad frame gets an
    error frame back and never ends the connection.
    """
    broker = state.broker
    connection = await broker.open(websocket)
    auth_watchdog = asyncio.create_task(broker.enforce_auth_timeout(connection))

    try:
        while True:
            data = await websocket.receive_text()
            await broker.handle_frame(connection, data)

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error("WebSocket error on %s: %s", connection.id, e)
    finally:
        auth_watchdog.cancel()
        await broker.close(connection)
