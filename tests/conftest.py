"""
Pytest configuration and fixtures.

Settings and the module-level engine are created at import time, so the
database URL must point at SQLite before anything from fostercare is
imported. For plain builders, see tests/__init__.py
"""

import os

os.environ.setdefault("DB_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_FORMAT", "text")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from fostercare.api import app
from fostercare.db import get_session
from fostercare.models import Base
from tests import STAFF_HEADERS


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "db: tests that need a database session")


@pytest.fixture
def db_url(tmp_path):
    """File-backed SQLite database with the schema created."""
    path = tmp_path / "fostercare.db"
    sync_engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()
    return f"sqlite+aiosqlite:///{path}"


@pytest.fixture
def session_maker(db_url):
    # NullPool: every session gets a fresh connection on the current event loop
    engine = create_async_engine(db_url, poolclass=NullPool)
    return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def session(session_maker):
    async with session_maker() as s:
        yield s


@pytest.fixture
def client(session_maker):
    """API client bound to the test database, authenticated as staff."""

    async def override_get_session():
        async with session_maker() as s:
            yield s

    app.dependency_overrides[get_session] = override_get_session
    with TestClient(app) as c:
        c.headers.update(STAFF_HEADERS)
        yield c
    app.dependency_overrides.clear()
