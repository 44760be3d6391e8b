"""
Tests for the session stores.

The redis store runs against fakeredis. The PostgreSQL store needs a database and
is skipped when none is reachable.
"""

from datetime import timedelta

import pytest
from sqlalchemy.dialects import postgresql

from social.graze.bookshelf.model.health import HealthGauge
from social.graze.bookshelf.model.session import upsert_user_session_stmt
from social.graze.bookshelf.model.store import DatabaseSessionStore, RedisSessionStore


class TestSession:
    def test_has_dpop_keys(self, dpop_session):
        assert dpop_session.has_dpop_keys
        assert not dpop_session.model_copy(update={"dpop_private_jwk": None}).has_dpop_keys
        assert not dpop_session.model_copy(update={"dpop_public_jwk": {}}).has_dpop_keys


class TestRedisSessionStore:
    @pytest.mark.asyncio
    async def test_upsert_and_get(self, fake_redis_client, dpop_session):
        store = RedisSessionStore(fake_redis_client)

        await store.upsert(dpop_session)

        assert await fake_redis_client.exists(f"session:{dpop_session.did}") == 1
        assert await store.get(dpop_session.did) == dpop_session

    @pytest.mark.asyncio
    async def test_upsert_replaces(self, fake_redis_client, dpop_session):
        store = RedisSessionStore(fake_redis_client)
        await store.upsert(dpop_session)

        await store.upsert(dpop_session.model_copy(update={"access_token": "access-token-2"}))

        stored = await store.get(dpop_session.did)
        assert stored is not None
        assert stored.access_token == "access-token-2"

    @pytest.mark.asyncio
    async def test_missing(self, fake_redis_client):
        assert await RedisSessionStore(fake_redis_client).get("did:plc:nobody") is None

    @pytest.mark.asyncio
    async def test_delete(self, fake_redis_client, dpop_session):
        store = RedisSessionStore(fake_redis_client)
        await store.upsert(dpop_session)

        await store.delete(dpop_session.did)

        assert await store.get(dpop_session.did) is None

    @pytest.mark.asyncio
    async def test_unreadable_value(self, fake_redis_client):
        store = RedisSessionStore(fake_redis_client, prefix="s")
        await fake_redis_client.set("s:did:plc:broken", b'{"did": "did:plc:broken"}')

        assert await store.get("did:plc:broken") is None


class TestUpsertStatement:
    def test_conflict_keeps_created_at(self, dpop_session):
        stmt = upsert_user_session_stmt(
            did=dpop_session.did,
            handle=dpop_session.handle,
            pds_url=dpop_session.pds_url,
            access_token=dpop_session.access_token,
            refresh_token=dpop_session.refresh_token,
            dpop_private_jwk=dpop_session.dpop_private_jwk,
            dpop_public_jwk=dpop_session.dpop_public_jwk,
            created_at=dpop_session.created_at,
            updated_at=dpop_session.updated_at,
        )

        compiled = str(stmt.compile(dialect=postgresql.dialect()))
        assert "ON CONFLICT (did) DO UPDATE" in compiled
        update_clause = compiled.split("DO UPDATE SET", 1)[1]
        assert "updated_at" in update_clause
        assert "created_at" not in update_clause


class TestDatabaseSessionStore:
    @pytest.mark.asyncio
    async def test_round_trip(self, database_session_maker, dpop_session):
        store = DatabaseSessionStore(database_session_maker)

        await store.upsert(dpop_session)
        stored = await store.get(dpop_session.did)

        assert stored is not None
        assert stored.access_token == dpop_session.access_token
        assert stored.dpop_private_jwk == dpop_session.dpop_private_jwk

    @pytest.mark.asyncio
    async def test_upsert_keeps_created_at(self, database_session_maker, dpop_session):
        store = DatabaseSessionStore(database_session_maker)
        await store.upsert(dpop_session)

        later = dpop_session.model_copy(
            update={
                "access_token": "access-token-2",
                "created_at": dpop_session.created_at + timedelta(hours=1),
                "updated_at": dpop_session.updated_at + timedelta(hours=1),
            }
        )
        await store.upsert(later)

        stored = await store.get(dpop_session.did)
        assert stored is not None
        assert stored.access_token == "access-token-2"
        assert stored.created_at == dpop_session.created_at
        assert stored.updated_at == later.updated_at

    @pytest.mark.asyncio
    async def test_delete(self, database_session_maker, dpop_session):
        store = DatabaseSessionStore(database_session_maker)
        await store.upsert(dpop_session)

        await store.delete(dpop_session.did)

        assert await store.get(dpop_session.did) is None


class TestHealthGauge:
    @pytest.mark.asyncio
    async def test_failures_drain(self):
        gauge = HealthGauge(health_threshold=2)
        for _ in range(3):
            await gauge.record_failure()
        assert not await gauge.is_healthy()

        await gauge.tick()
        assert await gauge.is_healthy()

    @pytest.mark.asyncio
    async def test_tick_floor(self):
        gauge = HealthGauge()
        await gauge.tick()
        assert await gauge.record_failure() == 1
