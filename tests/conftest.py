"""
Shared test configuration and fixtures.

Provides database setup for the PostgreSQL session store, redis clients, and
ready-made settings and sessions used across the test files.
"""

import os
import uuid
import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from jwcrypto import jwk
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from social.graze.bookshelf.app.config import Settings
from social.graze.bookshelf.atproto.jwt import export_dpop_key, generate_dpop_key
from social.graze.bookshelf.model.base import Base
from social.graze.bookshelf.model.store import Session

import redis.asyncio as redis
import fakeredis.aioredis


# Test database configuration
TEST_DB_HOST = os.getenv("TEST_DB_HOST", "postgres")
TEST_DB_PORT = os.getenv("TEST_DB_PORT", "5432")
TEST_DB_USER = os.getenv("TEST_DB_USER", "postgres")
TEST_DB_PASSWORD = os.getenv("TEST_DB_PASSWORD", "password")

# Admin URL for database creation/deletion (connects to postgres database)
ADMIN_DATABASE_URL = f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@{TEST_DB_HOST}:{TEST_DB_PORT}/postgres"

TEST_DID = "did:plc:alice123456789abcdefghij"
TEST_HANDLE = "alice.example.com"
TEST_PDS = "https://pds.example.com"


async def check_postgres_available():
    """Check if PostgreSQL is available for testing."""
    try:
        admin_engine = create_async_engine(ADMIN_DATABASE_URL, echo=False)
        async with admin_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        await admin_engine.dispose()
        return True
    except Exception:
        return False


@pytest_asyncio.fixture(scope="function")
async def test_database():
    """Create and clean up test database for each test function."""
    if not await check_postgres_available():
        pytest.skip("PostgreSQL database not available for testing")

    unique_db_name = f"bookshelf_test_{uuid.uuid4().hex[:8]}"
    unique_db_url = (
        f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@"
        f"{TEST_DB_HOST}:{TEST_DB_PORT}/{unique_db_name}"
    )

    admin_engine = create_async_engine(
        ADMIN_DATABASE_URL, echo=False, isolation_level="AUTOCOMMIT"
    )

    try:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"CREATE DATABASE {unique_db_name}"))

        yield unique_db_url

    finally:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"DROP DATABASE IF EXISTS {unique_db_name}"))
        await admin_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def engine(test_database):
    """Create async SQLAlchemy engine for testing with PostgreSQL."""
    engine = create_async_engine(
        test_database,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def database_session_maker(engine):
    """Create async database session factory for testing."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    client: redis.Redis = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def signing_key() -> jwk.JWK:
    return jwk.JWK.generate(kty="EC", crv="P-256", kid="test-service-key", alg="ES256")


@pytest.fixture
def settings(signing_key) -> Settings:
    """Settings with a fresh encryption key and one service auth key."""
    key_set = jwk.JWKSet()
    key_set.add(signing_key)
    return Settings(
        external_hostname="bookshelf.example.com",
        json_web_keys=key_set,
        service_auth_keys=["test-service-key"],
        encryption_key=Fernet(Fernet.generate_key()),
        refresh_lock_timeout=2,
    )


@pytest.fixture
def dpop_session() -> Session:
    """A stored session bound to a freshly generated DPoP key."""
    dpop_key, _ = generate_dpop_key()
    private_jwk, public_jwk = export_dpop_key(dpop_key)
    return Session(
        did=TEST_DID,
        handle=TEST_HANDLE,
        pds_url=TEST_PDS,
        access_token="access-token-1",
        refresh_token="refresh-token-1",
        dpop_private_jwk=private_jwk,
        dpop_public_jwk=public_jwk,
    )
