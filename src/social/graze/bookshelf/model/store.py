"""Session values and the stores that persist them.

`Session` is the value every authenticated operation takes explicitly; there is
no process-wide current session. `SessionStore` is the narrow get/upsert/delete
contract the OAuth flow and the token refresher depend on. Two backends are
provided: PostgreSQL through SQLAlchemy, and redis.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, ValidationError
from redis import asyncio as redis
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from social.graze.bookshelf.model.session import UserSession, upsert_user_session_stmt

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Session(BaseModel):
    """An authorized user: tokens, PDS location and the DPoP key they are bound to."""

    did: str
    handle: str
    pds_url: str
    access_token: str
    refresh_token: str
    dpop_private_jwk: Optional[Dict[str, Any]] = None
    dpop_public_jwk: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def has_dpop_keys(self) -> bool:
        return bool(self.dpop_private_jwk) and bool(self.dpop_public_jwk)


class SessionStore(ABC):
    """Keyed persistence of sessions by DID. Writes always replace the full record."""

    @abstractmethod
    async def get(self, did: str) -> Optional[Session]: ...

    @abstractmethod
    async def upsert(self, session: Session) -> None: ...

    @abstractmethod
    async def delete(self, did: str) -> None: ...


class DatabaseSessionStore(SessionStore):
    def __init__(self, database_session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._database_session_maker = database_session_maker

    async def get(self, did: str) -> Optional[Session]:
        async with self._database_session_maker() as database_session:
            row: Optional[UserSession] = (
                await database_session.scalars(
                    select(UserSession).where(UserSession.did == did)
                )
            ).first()
            if row is None:
                return None
            return Session(
                did=row.did,
                handle=row.handle,
                pds_url=row.pds_url,
                access_token=row.access_token,
                refresh_token=row.refresh_token,
                dpop_private_jwk=row.dpop_private_jwk,
                dpop_public_jwk=row.dpop_public_jwk,
                created_at=row.created_at,
                updated_at=row.updated_at,
            )

    async def upsert(self, session: Session) -> None:
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(
                    upsert_user_session_stmt(
                        did=session.did,
                        handle=session.handle,
                        pds_url=session.pds_url,
                        access_token=session.access_token,
                        refresh_token=session.refresh_token,
                        dpop_private_jwk=session.dpop_private_jwk,
                        dpop_public_jwk=session.dpop_public_jwk,
                        created_at=session.created_at,
                        updated_at=session.updated_at,
                    )
                )

    async def delete(self, did: str) -> None:
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(
                    delete(UserSession).where(UserSession.did == did)
                )


class RedisSessionStore(SessionStore):
    """Sessions as JSON documents under `session:{did}`."""

    def __init__(self, redis_session: redis.Redis, prefix: str = "session") -> None:
        self._redis = redis_session
        self._prefix = prefix

    def key(self, did: str) -> str:
        return f"{self._prefix}:{did}"

    async def get(self, did: str) -> Optional[Session]:
        value = await self._redis.get(self.key(did))
        if value is None:
            return None
        try:
            return Session.model_validate_json(value)
        except ValidationError:
            logger.warning("Discarding unreadable session for %s", did)
            return None

    async def upsert(self, session: Session) -> None:
        await self._redis.set(self.key(session.did), session.model_dump_json())

    async def delete(self, did: str) -> None:
        await self._redis.delete(self.key(did))
