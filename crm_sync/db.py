# crm_sync/db.py
from __future__ import annotations

import logging
import pathlib
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    async_sessionmaker,
    AsyncSession,
)
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from crm_sync.config import settings

logger = logging.getLogger("uvicorn.error")

_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp; every column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _resolve_dsn(dsn: str | None = None) -> str:
    """Explicit dsn, else settings.DATABASE_URL. For file-backed SQLite the parent folder is created."""
    dsn = dsn or settings.DATABASE_URL
    url = make_url(dsn)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        try:
            pathlib.Path(url.database).resolve().parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("[DB] could not create SQLite folder for %s: %s", url.database, e)
    return dsn


def make_engine(dsn: str | None = None) -> AsyncEngine:
    dsn = _resolve_dsn(dsn)
    if dsn.startswith("sqlite"):
        # Fresh connection per checkout: aiosqlite connections are bound to the
        # loop that opened them.
        return create_async_engine(dsn, echo=False, poolclass=NullPool)
    return create_async_engine(dsn, echo=False, pool_pre_ping=True)


def get_engine() -> AsyncEngine:
    """
    Lazily create the process-wide AsyncEngine and sessionmaker.
    """
    global _engine, _sessionmaker
    if _engine is None:
        _engine = make_engine()
        _sessionmaker = async_sessionmaker(_engine, expire_on_commit=False)
        logger.info("[DB] engine initialized for %s", _engine.url.render_as_string(hide_password=True))
    return _engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """
    Get the global async session factory.
    """
    global _sessionmaker
    if _sessionmaker is None:
        get_engine()
    # _sessionmaker will be set by get_engine()
    return _sessionmaker  # type: ignore[return-value]


async def init_db(engine: AsyncEngine | None = None) -> None:
    """
    Create tables for jobs, dead letters, the webhook ledger and documents.
    """
    # models register themselves on Base.metadata at import
    import crm_sync.models.jobs  # noqa: F401
    import crm_sync.models.documents  # noqa: F401

    eng = engine or get_engine()
    try:
        async with eng.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception as e:
        logger.error("[DB] initial connect failed: %s", e)
        raise
