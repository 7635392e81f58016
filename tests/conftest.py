"""
Shared test fixtures.

Repository tests get a throwaway PostgreSQL database per test, created from the models' metadata, and are
skipped when no server answers at TEST_DB_HOST. Session and queue tests use fakeredis.
"""

import os
import uuid

import fakeredis.aioredis
import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from brave.bpc.model.base import Base

TEST_DB_HOST = os.getenv("TEST_DB_HOST", "postgres")
TEST_DB_PORT = os.getenv("TEST_DB_PORT", "5432")
TEST_DB_USER = os.getenv("TEST_DB_USER", "postgres")
TEST_DB_PASSWORD = os.getenv("TEST_DB_PASSWORD", "password")


def database_url(name: str) -> str:
    return f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@{TEST_DB_HOST}:{TEST_DB_PORT}/{name}"


@pytest_asyncio.fixture
async def test_database():
    """URL of a freshly created database, dropped after the test."""
    admin_engine = create_async_engine(database_url("postgres"), isolation_level="AUTOCOMMIT")
    name = f"bpc_test_{uuid.uuid4().hex[:8]}"

    try:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"CREATE DATABASE {name}"))
    except (OSError, SQLAlchemyError):
        await admin_engine.dispose()
        pytest.skip("PostgreSQL database not available for testing")

    try:
        yield database_url(name)
    finally:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"DROP DATABASE IF EXISTS {name} WITH (FORCE)"))
        await admin_engine.dispose()


@pytest_asyncio.fixture
async def engine(test_database):
    engine = create_async_engine(test_database)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(engine):
    """Session factory configured the way the application configures it."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def fake_redis_client():
    client = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield client
    await client.flushall()
    await client.aclose()
