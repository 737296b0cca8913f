# backend/api/routes/users.py

from typing import List

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool

from core import state
from core.security import get_current_user, require_counselor
from models.models import User

router = APIRouter(prefix="/api/users", tags=["Users"])


@router.get("/me", response_model=User)
async def get_me(current_user: User = Depends(get_current_user)):
    return current_user


@router.get("/students", response_model=List[User])
async def list_students(_counselor: User = Depends(require_counselor)):
    """Students a counselor can open a direct chat with."""
    return await run_in_threadpool(state.chat_store.list_users, "student")
