from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Index,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB

metadata = MetaData()

# Append-only: rows are inserted by PostgresEventStore and never updated or deleted.
context_entries = Table(
    "context_entries",
    metadata,
    Column("id", BigInteger, primary_key=True, autoincrement=True),
    Column("entry_id", String(length=64), nullable=False),
    Column("context_id", String(length=64), nullable=False),
    Column("tenant_id", String(length=128), nullable=False),
    Column("sequence_number", BigInteger, nullable=False),
    Column("recorded_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("actor_type", String(length=16), nullable=False),
    Column("actor_id", String(length=128), nullable=False),
    Column("actor_version", String(length=32), nullable=True),
    Column("operation", String(length=64), nullable=False),
    Column("data", JSONB(astext_type=Text()), nullable=False),
    Column("reasoning", Text(), nullable=True),
    Column("trigger", JSONB(astext_type=Text()), nullable=True),
    Column("corrects", String(length=64), nullable=True),
    UniqueConstraint("entry_id", name="uq_context_entries_entry_id"),
    UniqueConstraint("context_id", "sequence_number", name="uq_context_entries_context_sequence"),
)
Index("ix_context_entries_tenant_id", context_entries.c.tenant_id, context_entries.c.sequence_number)
Index("ix_context_entries_operation", context_entries.c.context_id, context_entries.c.operation)

__all__ = ["context_entries", "metadata"]
