"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB; on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - Natural keys where the domain has them (contact_id, group_id,
    (batch_id, contact_id)) so uniqueness is enforced by the database.
  - Side-effect claims rely on the composite primary key: a second INSERT
    for the same pair fails with IntegrityError on every dialect.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Text, Index, JSON,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Agents
# ──────────────────────────────────────────────────────────────

class AgentRow(Base):
    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    system_instruction: Mapped[str] = mapped_column(Text, default="")
    language: Mapped[str] = mapped_column(String(16), default="es")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    owner_id: Mapped[str] = mapped_column(String(64), default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_agents_owner", "owner_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Conversations
# ──────────────────────────────────────────────────────────────

class ConversationRow(Base):
    __tablename__ = "conversations"

    contact_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_outbound_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    has_started: Mapped[bool] = mapped_column(Boolean, default=False)
    bound_agent_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    extra_state: Mapped[Any] = mapped_column(JSON, default=dict)
    lifecycle: Mapped[str] = mapped_column(String(16), default="active")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_conversations_agent", "bound_agent_id"),
        Index("ix_conversations_lifecycle", "lifecycle"),
    )


# ──────────────────────────────────────────────────────────────
#  Message log
# ──────────────────────────────────────────────────────────────

class MessageRow(Base):
    __tablename__ = "messages"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    contact_id: Mapped[str] = mapped_column(String(64), nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    external_message_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)

    __table_args__ = (
        Index("ix_messages_contact_ts", "contact_id", "timestamp"),
        Index("ix_messages_external_id", "external_message_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Batch calls
# ──────────────────────────────────────────────────────────────

class BatchCallRow(Base):
    __tablename__ = "batch_calls"

    group_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    batch_id: Mapped[str] = mapped_column(String(128), default="")
    status: Mapped[str] = mapped_column(String(32), default="none")

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    total_recipients: Mapped[int] = mapped_column(Integer, default=0)
    completed_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, default=0)

    raw_provider_snapshot: Mapped[Any] = mapped_column(JSON, default=dict)
    call_name: Mapped[str] = mapped_column(String(256), default="")
    agent_id: Mapped[str] = mapped_column(String(64), default="")
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_batch_calls_batch", "batch_id"),
        Index("ix_batch_calls_status", "status"),
    )


class BatchHistoryRow(Base):
    """Finished lifecycle instances, archived when a group starts a new batch."""
    __tablename__ = "batch_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[str] = mapped_column(String(64), nullable=False)
    batch_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    record: Mapped[Any] = mapped_column(JSON, default=dict)
    archived_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_batch_history_group", "group_id"),
        Index("ix_batch_history_batch", "batch_id"),
    )


# ──────────────────────────────────────────────────────────────
#  One-shot side effects
# ──────────────────────────────────────────────────────────────

class SideEffectRow(Base):
    __tablename__ = "side_effects"

    batch_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    contact_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    group_id: Mapped[str] = mapped_column(String(64), default="")
    status: Mapped[str] = mapped_column(String(16), default="pending")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[str] = mapped_column(Text, default="")
    result: Mapped[Any] = mapped_column(JSON, default=dict)
    recipient: Mapped[Any] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_side_effects_status", "status"),
    )
