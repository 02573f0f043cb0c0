"""Async engine and session factory for the orchestration database."""

import os
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

BASE_DIR = Path(__file__).resolve().parent
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite+aiosqlite:///{BASE_DIR / 'foundry_host.db'}")
SQLITE_BUSY_TIMEOUT = 30  # seconds a writer waits on a locked database file


def make_engine(url: str = DATABASE_URL, **kwargs):
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"timeout": SQLITE_BUSY_TIMEOUT})
    return create_async_engine(url, echo=os.getenv("SQL_ECHO") == "1", **kwargs)


def make_session_factory(bind) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
        class_=AsyncSession,
    )


engine = make_engine()
SessionLocal = make_session_factory(engine)
