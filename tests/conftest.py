"""Pytest configuration and shared fixtures."""

import os
import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Isolate each test from RELEASE_* variables and the settings cache."""
    from src.settings import get_settings

    for key in list(os.environ):
        if key.startswith("RELEASE_"):
            monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()

    yield

    get_settings.cache_clear()


@pytest.fixture
def session_factory():
    """Session factory bound to a fresh in-memory SQLite archive."""
    from src.db import Base, get_sync_engine, get_sync_session_factory

    engine = get_sync_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield get_sync_session_factory(engine)
    engine.dispose()
