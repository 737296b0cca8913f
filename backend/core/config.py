# backend/core/config.py
import os
from typing import List, Literal
from dotenv import load_dotenv


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """
    Setup environment variables.
        - DATABASE_URL SQLAlchemy URL of the chat database
        - FANOUT_BACKEND where broadcasts go: "memory" (this process only) or "redis"
        - REDIS_URL redis connection URL, used when FANOUT_BACKEND is "redis"
        - AUTH_TIMEOUT_SECONDS how long a socket may stay unauthenticated
        - AUTO_SUBSCRIBE_JOINED_ROOMS subscribe a socket to its user's rooms on auth
        - SEED_DEFAULT_ROOMS create the "General" room on an empty database
        - LOG_LEVEL root log level
        - JWT_SECRET / JWT_ALGORITHM verify bearer tokens on the HTTP API
    """

    # Load environment variables from the .env file
    load_dotenv()

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./chat.db")

    FANOUT_BACKEND: Literal["memory", "redis"] = os.getenv("FANOUT_BACKEND", "memory")  # type: ignore[assignment]
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    AUTH_TIMEOUT_SECONDS: float = float(os.getenv("AUTH_TIMEOUT_SECONDS", "30"))
    AUTO_SUBSCRIBE_JOINED_ROOMS: bool = _as_bool(os.getenv("AUTO_SUBSCRIBE_JOINED_ROOMS", "true"))
    SEED_DEFAULT_ROOMS: bool = _as_bool(os.getenv("SEED_DEFAULT_ROOMS", "true"))

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    JWT_SECRET: str = os.getenv("JWT_SECRET", "change-me")
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")

    CORS_ORIGINS: List[str] = [
        origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()
    ]

settings = Settings()
