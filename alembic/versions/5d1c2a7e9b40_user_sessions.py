"""user sessions

Revision ID: 5d1c2a7e9b40
Revises:
Create Date: 2026-10-17 10:12:04.318551

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5d1c2a7e9b40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "user_sessions",
        sa.Column("did", sa.String(512), primary_key=True),
        sa.Column("handle", sa.String(512), nullable=False),
        sa.Column("pds_url", sa.String(512), nullable=False),
        sa.Column("access_token", sa.String(2048), nullable=False),
        sa.Column("refresh_token", sa.String(2048), nullable=False),
        sa.Column("dpop_private_jwk", sa.JSON, nullable=True),
        sa.Column("dpop_public_jwk", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_user_sessions_handle", "user_sessions", ["handle"])


def downgrade() -> None:
    op.drop_index("idx_user_sessions_handle", "user_sessions")
    op.drop_table("user_sessions")
