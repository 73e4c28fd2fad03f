"""create live rooms

Revision ID: 20261019_01
Revises: 
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_01"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "live_rooms",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("room_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("title", sa.String(length=128), nullable=False),
        sa.Column("host_id", sa.String(length=128), nullable=True),
        sa.Column("host_key_hash", sa.String(length=64), nullable=True),
        sa.Column("is_live", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        mysql_charset="utf8mb4",
    )
    op.create_index("ix_live_rooms_is_live_created_at", "live_rooms", ["is_live", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_live_rooms_is_live_created_at", table_name="live_rooms")
    op.drop_table("live_rooms")
