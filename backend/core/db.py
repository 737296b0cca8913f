# backend/core/db.py
"""
Database engine and session management.

SQLite URLs get `check_same_thread=False` because sessions are opened from
the threadpool that FastAPI uses for blocking calls. In-memory SQLite uses a
single shared connection, otherwise every new connection would see an empty
database.
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from core.config import settings
from core.exceptions import PersistenceError


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    return create_engine(
        url,
        pool_pre_ping=True,  # Verify connections before using
        pool_recycle=1800,
    )


engine = build_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
)


@contextmanager
def session_scope(factory: sessionmaker = SessionLocal) -> Generator[Session, None, None]:
    """
    Transactional scope around a series of operations.

    Commits on success. On a database error the transaction is rolled back
    and a PersistenceError is raised in its place; other exceptions roll back
    and propagate unchanged.

    Usage:
        with session_scope() as db:
            db.add(row)
    """
    db = factory()
    try:
        yield db
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError(str(exc)) from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
