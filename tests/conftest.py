import os

# Minimal settings so feedpipe.config.settings imports without a .env file.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("OTEL_SDK_DISABLED", "true")

import pytest
from fakeredis import FakeServer
from fakeredis import aioredis as fake_aioredis
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from feedpipe import models  # noqa: F401  registers tables on Base.metadata
from feedpipe.database import Base, make_session_factory
from feedpipe.repository import DurableStore


@pytest.fixture
async def redis():
    client = fake_aioredis.FakeRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> DurableStore:
    return DurableStore(session_factory)


@pytest.fixture
def add_rows(session_factory):
    """Insert ORM rows directly, bypassing the store."""

    async def _add(*rows):
        async with session_factory() as session, session.begin():
            session.add_all(rows)
        return rows

    return _add
