# backend/main.py

from __future__ import annotations

import asyncio

from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware

from core import state
from core.config import settings
from core.db import engine
from core.logging import setup_logging, get_logger
from models.orm import Base
from services.redis_pub_sub import RedisFanout
from api.routes import health, rooms, users
from api import websocket as websocket_module

# Configure logging first
setup_logging()
logger = get_logger(__name__)

# FastAPI app
app = FastAPI(title="Student Support Chat")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# REST routes
app.include_router(health.router)
app.include_router(rooms.router)
app.include_router(users.router)

# WebSocket routes
app.include_router(websocket_module.router)

_redis_listener: asyncio.Task | None = None


@app.on_event("startup")
async def startup_event():
    global _redis_listener
    logger.info("🚀 Application starting - fan-out backend: %s", settings.FANOUT_BACKEND)

    await run_in_threadpool(Base.metadata.create_all, engine)
    if settings.SEED_DEFAULT_ROOMS:
        await run_in_threadpool(state.room_manager.ensure_default_rooms)

    if isinstance(state.fanout, RedisFanout):
        await state.fanout.connect()
        # Deliver broadcasts from every process to this process's sockets
        _redis_listener = asyncio.create_task(state.fanout.listen())


@app.on_event("shutdown")
async def on_shutdown():
    if _redis_listener is not None:
        _redis_listener.cancel()
    if isinstance(state.fanout, RedisFanout):
        await state.fanout.close()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
