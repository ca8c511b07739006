from __future__ import annotations

import logging
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from threadline.errors import StoreUnavailableError
from threadline.services.config_service import TrackerConfigService

# Load env before anything else
load_dotenv()

logger = logging.getLogger(__name__)

# Declarative base for models
Base = declarative_base()

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None
_schema_initialized = False


def init_engine(database_url: str | None = None) -> AsyncEngine:
    """Create the process-wide engine and session factory.

    Raises ConfigurationError when no URL is given and DATABASE_URL is unset.
    """
    global _engine, _session_factory
    url = database_url or TrackerConfigService.get_database_url()
    _engine = create_async_engine(url, echo=False, future=True)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False, class_=AsyncSession)
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        return init_engine()
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False, class_=AsyncSession)
    return _session_factory


async def ensure_schema(engine: AsyncEngine | None = None) -> None:
    """Create extension, tables and indexes once per process.

    Every statement is guarded (IF NOT EXISTS / checkfirst) so concurrent
    callers racing past the flag cannot corrupt the schema.
    """
    global _schema_initialized
    if _schema_initialized:
        return

    # Register tables on Base.metadata
    from threadline.models import issue, thread_message  # noqa: F401

    engine = engine or get_engine()
    try:
        async with engine.begin() as conn:
            if conn.dialect.name == "postgresql":
                await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            await conn.run_sync(Base.metadata.create_all, checkfirst=True)
    except (OSError, OperationalError) as e:
        raise StoreUnavailableError(f"Datastore unreachable: {e}") from e

    logger.info("Schema initialized (%s)", engine.dialect.name)
    _schema_initialized = True


def reset_schema_flag() -> None:
    """Forget that the schema was initialized (used when swapping engines)."""
    global _schema_initialized
    _schema_initialized = False


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
