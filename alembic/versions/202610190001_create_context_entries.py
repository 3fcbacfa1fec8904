"""create context entries

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 09:00:00
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "202610190001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "context_entries",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("entry_id", sa.String(length=64), nullable=False),
        sa.Column("context_id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("sequence_number", sa.BigInteger(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("actor_type", sa.String(length=16), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("actor_version", sa.String(length=32), nullable=True),
        sa.Column("operation", sa.String(length=64), nullable=False),
        sa.Column("data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("reasoning", sa.Text(), nullable=True),
        sa.Column("trigger", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("corrects", sa.String(length=64), nullable=True),
        sa.UniqueConstraint("entry_id", name="uq_context_entries_entry_id"),
        sa.UniqueConstraint("context_id", "sequence_number", name="uq_context_entries_context_sequence"),
    )
    op.create_index(
        "ix_context_entries_tenant_id",
        "context_entries",
        ["tenant_id", "sequence_number"],
        unique=False,
    )
    op.create_index(
        "ix_context_entries_operation",
        "context_entries",
        ["context_id", "operation"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_context_entries_operation", table_name="context_entries")
    op.drop_index("ix_context_entries_tenant_id", table_name="context_entries")
    op.drop_table("context_entries")
