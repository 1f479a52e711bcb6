"""Database engine and session factory for the audit archive."""

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from src.settings import get_settings

_sync_engine = None


def get_sync_engine(database_url: Optional[str] = None) -> Engine:
    """Get or create the database engine.

    An explicit ``database_url`` always builds a fresh engine; otherwise the
    engine for ``settings.database_url`` is created once and cached.
    """
    global _sync_engine
    if database_url is not None:
        return create_engine(database_url, pool_pre_ping=True)
    if _sync_engine is None:
        settings = get_settings()
        _sync_engine = create_engine(
            settings.database_url,
            pool_pre_ping=True,
        )
    return _sync_engine


def get_sync_session_factory(engine: Optional[Engine] = None):
    return sessionmaker(bind=engine or get_sync_engine(), expire_on_commit=False)


# Convenience alias
SyncSessionLocal = get_sync_session_factory
