"""Async SQLAlchemy engine and request-scoped sessions.

With DATABASE_URL set, enrollments, courses and the user projection live
in PostgreSQL (asyncpg driver).  Without it, `engine` and
`async_session_factory` are None and the API wires in-memory repositories
instead (see marketplace.api.dependencies).

One request is one session is one transaction: the enrollment row and the
course counter / user projection updates it triggers commit together.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from marketplace.core.config import SETTINGS
from marketplace.db.errors import storage_errors

logger = logging.getLogger(__name__)

# asyncpg per-statement timeout; a hung query surfaces as a 503 instead of
# holding the request (and its row locks) open.
STATEMENT_TIMEOUT_SECONDS = 5


class Base(DeclarativeBase):
    """Declarative base for marketplace tables."""


if SETTINGS.database_url:
    engine = create_async_engine(
        SETTINGS.database_url,
        echo=SETTINGS.is_dev,
        pool_size=5,
        max_overflow=10,
        # Connections dropped by a Postgres failover are replaced, not handed out
        pool_pre_ping=True,
        connect_args={
            "command_timeout": STATEMENT_TIMEOUT_SECONDS,
            "server_settings": {"application_name": "course-marketplace"},
        },
    )
    async_session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
else:
    engine = None
    async_session_factory = None


@asynccontextmanager
async def session_scope() -> AsyncGenerator[AsyncSession, None]:
    """One session, one transaction: commit on clean exit, else roll back.

    A failed aggregate update therefore never leaves a half-applied
    completion.  When the block exits normally the commit has landed.
    """
    if async_session_factory is None:
        raise RuntimeError("DATABASE_URL is not configured")
    async with async_session_factory() as session:
        try:
            yield session
            with storage_errors("commit"):
                await session.commit()
        except Exception:
            await session.rollback()
            raise


async def ping_database() -> bool:
    """True when the database answers SELECT 1."""
    if engine is None:
        return False
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError):
        logger.warning("Database ping failed", exc_info=True)
        return False
    return True


@asynccontextmanager
async def lifespan_db():
    if engine is None:
        logger.info("No DATABASE_URL configured; using in-memory repositories")
        yield
        return

    logger.info(
        "Database engine created: %s", engine.url.render_as_string(hide_password=True)
    )
    yield
    await engine.dispose()
    logger.info("Database engine disposed")
