"""API test infrastructure -- async httpx client with SQLite test database."""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles

from dispatch_service.config import Settings
from dispatch_service.core.deps import get_services
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
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


# ---------------------------------------------------------------------------
# FastAPI app with overridden dependencies
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def services(db_engine, clock) -> DispatchServices:
    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    return DispatchServices.build(
        factory,
        clock=clock,
        config=Settings(store_retry_initial_delay=0.0, default_page_size=100),
    )


@pytest_asyncio.fixture
async def app(services):
    from dispatch_service.main import create_app

    application = create_app()
    application.dependency_overrides[get_services] = lambda: services

    yield application

    application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

DISPATCHES_URL = "/api/v1/microgrids/1/dispatches"


@pytest_asyncio.fixture
async def sample_dispatch(client: AsyncClient) -> dict:
    """Create and return a recurring battery dispatch."""
    resp = await client.post(
        DISPATCHES_URL,
        json={
            "type": "PEAK_SHAVE",
            "start_time": "2024-01-01T00:00:00Z",
            "duration": 900,
            "selector": {"component_categories": ["battery"]},
            "payload": {"target_power_w": -5000},
            "recurrence": {
                "freq": "DAILY",
                "byhours": [0],
                "end_criteria": {"count": 3},
            },
        },
    )
    assert resp.status_code == 201
    return resp.json()
