"""Dispatch tables and per-microgrid id counters.

Revision ID: 001_dispatch_schema
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "001_dispatch_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "dispatches",
        sa.Column("microgrid_id", sa.BigInteger, primary_key=True),
        sa.Column("dispatch_id", sa.BigInteger, primary_key=True),
        sa.Column("type", sa.Text, nullable=False, server_default=""),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration", sa.BigInteger, nullable=True),
        sa.Column("selector", postgresql.JSONB, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("is_dry_run", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("recurrence", postgresql.JSONB, nullable=True),
        sa.Column("create_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("modification_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_dispatches_microgrid_create_time", "dispatches", ["microgrid_id", "create_time"]
    )
    op.create_table(
        "microgrid_dispatch_counters",
        sa.Column("microgrid_id", sa.BigInteger, primary_key=True),
        sa.Column("last_dispatch_id", sa.BigInteger, nullable=False, server_default="0"),
    )


def downgrade() -> None:
    op.drop_table("microgrid_dispatch_counters")
    op.drop_index("ix_dispatches_microgrid_create_time", table_name="dispatches")
    op.drop_table("dispatches")
