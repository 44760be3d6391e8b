"""User session table.

One row per DID holding the OAuth tokens issued to this service and the DPoP key
pair they are bound to.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from sqlalchemy import DateTime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSON, insert

from social.graze.bookshelf.model.base import Base, str512, str2048, didpk


class UserSession(Base):
    """OAuth session for one user, keyed by DID."""

    __tablename__ = "user_sessions"

    did: Mapped[didpk]
    handle: Mapped[str512]
    pds_url: Mapped[str512]
    access_token: Mapped[str2048]
    refresh_token: Mapped[str2048]
    dpop_private_jwk: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    dpop_public_jwk: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )


def upsert_user_session_stmt(
    did: str,
    handle: str,
    pds_url: str,
    access_token: str,
    refresh_token: str,
    dpop_private_jwk: Optional[Dict[str, Any]],
    dpop_public_jwk: Optional[Dict[str, Any]],
    created_at: datetime,
    updated_at: datetime,
):
    """Create PostgreSQL upsert statement for a user session.

    Existing rows keep their `created_at`; every other column is replaced.
    """
    return (
        insert(UserSession)
        .values(
            [
                {
                    "did": did,
                    "handle": handle,
                    "pds_url": pds_url,
                    "access_token": access_token,
                    "refresh_token": refresh_token,
                    "dpop_private_jwk": dpop_private_jwk,
                    "dpop_public_jwk": dpop_public_jwk,
                    "created_at": created_at,
                    "updated_at": updated_at,
                }
            ]
        )
        .on_conflict_do_update(
            index_elements=["did"],
            set_={
                "handle": handle,
                "pds_url": pds_url,
                "access_token": access_token,
                "refresh_token": refresh_token,
                "dpop_private_jwk": dpop_private_jwk,
                "dpop_public_jwk": dpop_public_jwk,
                "updated_at": updated_at,
            },
        )
    )
