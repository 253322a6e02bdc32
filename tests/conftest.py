"""
Shared test configuration and fixtures.

Stores run against a throwaway SQLite database per test function. A real
PostgreSQL server can be used instead by setting TEST_DATABASE_URL.
"""

import os

import pytest
import pytest_asyncio
import fakeredis.aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from social.graze.atstore.atproto.oauth import OAuthSessionData, OAuthStateData
from social.graze.atstore.model.base import Base
from social.graze.atstore.model.kv import AuthSession, AuthState
from social.graze.atstore.storage.kv import KeyValueStore
from social.graze.atstore.storage.records import RecordStore
from tests.test_helpers import RecordingMetricsClient

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "")


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """Create an async SQLAlchemy engine with all tables created."""
    database_url = TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path}/atstore.db"
    engine = create_async_engine(database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def metrics_client():
    return RecordingMetricsClient()


@pytest.fixture
def record_store(session_maker):
    return RecordStore(session_maker)


@pytest.fixture
def state_store(session_maker):
    return KeyValueStore(session_maker, AuthState, OAuthStateData)


@pytest.fixture
def session_store(session_maker):
    return KeyValueStore(session_maker, AuthSession, OAuthSessionData)


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield client
    await client.flushall()
    await client.aclose()
