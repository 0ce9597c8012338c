# tests/conftest.py

import os
from collections.abc import AsyncIterator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

# Point the importer at a process-local in-memory DB before any EmxImporter
# module creates an engine. Each test gets a fresh engine, and with it a fresh
# database, so tables created at runtime never leak between tests.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["EMX_SQLITE_STATIC_POOL"] = "1"

# A .env file beats the OS environment, so pin the module-level URL as well.
import EmxImporter.db as _db  # noqa: E402

_db.DATABASE_URL = os.environ["DATABASE_URL"]
_db._engine = None
_db._sessionmaker = None
_db._schema_initialized = False

# Register ORM tables on Base.metadata before create_all
from EmxImporter import models as _models  # noqa: F401,E402
from EmxImporter.db import Base, get_engine, get_sessionmaker  # noqa: E402
from EmxImporter.metrics import reset_counters  # noqa: E402


def _forget_engine() -> None:
    _db._engine = None
    _db._sessionmaker = None
    _db._schema_initialized = False


@pytest.fixture(autouse=True)
async def _fresh_database() -> AsyncIterator[None]:
    """Create the catalog on a new in-memory database and dispose it afterwards."""
    if os.environ.get("EMX_TEST_SKIP_DB") == "1":
        yield None
        return
    _forget_engine()
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    _db._schema_initialized = True
    try:
        yield None
    finally:
        await engine.dispose()
        _forget_engine()


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_counters()
    yield
    reset_counters()


@pytest.fixture
async def db() -> AsyncIterator[AsyncSession]:
    sm = get_sessionmaker()
    async with sm() as s:
        try:
            yield s
        finally:
            # Release the shared aiosqlite connection cleanly
            await s.rollback()
            await s.close()
