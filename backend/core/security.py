# backend/core/security.py
"""
Bearer-token identity for the HTTP API.

Login and password handling live elsewhere; this module only turns a signed
token into the current user. Tokens carry the user id in `sub`.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException, status
from fastapi.concurrency import run_in_threadpool
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from core import state
from core.config import settings
from core.logging import get_logger
from models.models import User

logger = get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(user_id: int, expires_in: int = 3600) -> str:
    """Sign a token for `user_id`, valid for `expires_in` seconds."""
    now = datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + timedelta(seconds=expires_in),
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_user_id(token: str) -> int:
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        return int(claims["sub"])
    except (JWTError, KeyError, ValueError) as exc:
        logger.warning("Rejected bearer token: %s", exc)
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token") from exc


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> User:
    """
    Resolve the authenticated user.
    Use as dependency for protected endpoints.
    """
    if credentials is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Not authenticated")

    user_id = decode_user_id(credentials.credentials)
    user = await run_in_threadpool(state.chat_store.get_user, user_id)
    if user is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "User not found")
    return user


async def require_counselor(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != "counselor":
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Counselor role required")
    return current_user
