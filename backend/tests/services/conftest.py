"""Service test infrastructure -- dispatch services over a SQLite test database."""

from __future__ import annotations

import pytest_asyncio
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles

from dispatch_service.config import Settings
from dispatch_service.models.database import Base
from dispatch_service.services.container import DispatchServices

# ---------------------------------------------------------------------------
# SQLite compatibility for PostgreSQL column types
# ---------------------------------------------------------------------------


@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    # A file database so every session sees the same data
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------

TEST_SETTINGS = Settings(
    store_max_retries=2,
    store_retry_initial_delay=0.0,
    default_page_size=100,
    max_page_size=1000,
    subscriber_buffer_size=16,
)


@pytest_asyncio.fixture
async def services(session_factory, clock) -> DispatchServices:
    return DispatchServices.build(session_factory, clock=clock, config=TEST_SETTINGS)


@pytest_asyncio.fixture
async def store(services):
    return services.store
