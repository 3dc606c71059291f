"""
SQL backends — portable queries for PostgreSQL, MySQL, SQLite.

  - SqlRecordStore: agents, conversations, batch records, batch history,
    side-effect claims.
  - SqlMessageLog:  message documents in the `messages` table, ordered by
    (timestamp, seq) so equal timestamps keep append order.

SQLite hands DateTime(timezone=True) columns back as naive values; they are
re-tagged as UTC when rows are converted to models.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, and_, or_, func
from sqlalchemy.exc import IntegrityError

from database.models import (
    AgentRow, ConversationRow, MessageRow, BatchCallRow,
    BatchHistoryRow, SideEffectRow,
)
from database.session import get_session
from database.store_base import BaseMessageLog, BaseRecordStore
from models.schemas import (
    Agent, BatchCallRecord, BatchStatus, ConversationLifecycle,
    ConversationRecord, MessageDirection, MessageLogEntry,
    SideEffectRecord, SideEffectStatus,
)

logger = structlog.get_logger()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlRecordStore(BaseRecordStore):
    """
    Persistent record store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Agents ─────────────────────────────────────────────

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        async with get_session() as db:
            row = await db.get(AgentRow, agent_id)
            return self._row_to_agent(row) if row else None

    async def save_agent(self, agent: Agent) -> Agent:
        async with get_session() as db:
            row = await db.get(AgentRow, agent.id)
            if row is None:
                row = AgentRow(id=agent.id, created_at=agent.created_at)
                db.add(row)
            row.name = agent.name
            row.system_instruction = agent.system_instruction
            row.language = agent.language
            row.is_active = agent.is_active
            row.owner_id = agent.owner_id
            row.updated_at = agent.updated_at
        return agent

    async def list_agents(self, owner_id: str = "") -> list[Agent]:
        async with get_session() as db:
            stmt = select(AgentRow).order_by(AgentRow.created_at)
            if owner_id:
                stmt = stmt.where(AgentRow.owner_id == owner_id)
            result = await db.execute(stmt)
            return [self._row_to_agent(r) for r in result.scalars()]

    # ── Conversations ──────────────────────────────────────

    async def get_conversation(self, contact_id: str) -> Optional[ConversationRecord]:
        async with get_session() as db:
            row = await db.get(ConversationRow, contact_id)
            return self._row_to_conversation(row) if row else None

    async def save_conversation(self, record: ConversationRecord) -> ConversationRecord:
        async with get_session() as db:
            row = await db.get(ConversationRow, record.contact_id)
            if row is None:
                row = ConversationRow(contact_id=record.contact_id, created_at=record.created_at)
                db.add(row)
            row.last_outbound_text = record.last_outbound_text
            row.has_started = record.has_started
            row.bound_agent_id = record.bound_agent_id
            row.extra_state = dict(record.extra_state)
            row.lifecycle = record.lifecycle.value
            row.updated_at = record.updated_at
        return record

    async def list_conversations(self, agent_id: str = "",
                                 lifecycle: Optional[ConversationLifecycle] = None,
                                 limit: int = 100) -> list[ConversationRecord]:
        async with get_session() as db:
            stmt = select(ConversationRow)
            if agent_id:
                stmt = stmt.where(ConversationRow.bound_agent_id == agent_id)
            if lifecycle is not None:
                stmt = stmt.where(ConversationRow.lifecycle == lifecycle.value)
            stmt = stmt.order_by(ConversationRow.updated_at.desc()).limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_conversation(r) for r in result.scalars()]

    # ── Batch records ──────────────────────────────────────

    async def get_batch(self, group_id: str) -> Optional[BatchCallRecord]:
        async with get_session() as db:
            row = await db.get(BatchCallRow, group_id)
            return self._row_to_batch(row) if row else None

    async def save_batch(self, record: BatchCallRecord) -> BatchCallRecord:
        async with get_session() as db:
            row = await db.get(BatchCallRow, record.group_id)
            if row is None:
                row = BatchCallRow(group_id=record.group_id)
                db.add(row)
            row.batch_id = record.batch_id
            row.status = record.status.value
            row.started_at = record.started_at
            row.completed_at = record.completed_at
            row.total_recipients = record.total_recipients
            row.completed_count = record.completed_count
            row.failed_count = record.failed_count
            row.raw_provider_snapshot = record.raw_provider_snapshot
            row.call_name = record.call_name
            row.agent_id = record.agent_id
            row.metadata_ = dict(record.metadata)
            row.updated_at = record.updated_at
        return record

    async def list_batches(self, status: Optional[BatchStatus] = None) -> list[BatchCallRecord]:
        async with get_session() as db:
            stmt = select(BatchCallRow)
            if status is not None:
                stmt = stmt.where(BatchCallRow.status == status.value)
            result = await db.execute(stmt)
            return [self._row_to_batch(r) for r in result.scalars()]

    async def archive_batch(self, record: BatchCallRecord) -> None:
        async with get_session() as db:
            db.add(BatchHistoryRow(
                group_id=record.group_id,
                batch_id=record.batch_id,
                status=record.status.value,
                record=record.model_dump(mode="json"),
            ))

    async def batch_history(self, group_id: str) -> list[BatchCallRecord]:
        async with get_session() as db:
            stmt = (
                select(BatchHistoryRow)
                .where(BatchHistoryRow.group_id == group_id)
                .order_by(BatchHistoryRow.id)
            )
            result = await db.execute(stmt)
            return [BatchCallRecord.model_validate(r.record) for r in result.scalars()]

    async def find_batch(self, batch_id: str) -> Optional[BatchCallRecord]:
        async with get_session() as db:
            stmt = select(BatchCallRow).where(BatchCallRow.batch_id == batch_id).limit(1)
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row:
                return self._row_to_batch(row)
            stmt = (
                select(BatchHistoryRow)
                .where(BatchHistoryRow.batch_id == batch_id)
                .order_by(BatchHistoryRow.id.desc())
                .limit(1)
            )
            hist = (await db.execute(stmt)).scalar_one_or_none()
            return BatchCallRecord.model_validate(hist.record) if hist else None

    # ── Side effects ───────────────────────────────────────

    async def claim_side_effect(self, record: SideEffectRecord) -> bool:
        try:
            async with get_session() as db:
                db.add(SideEffectRow(
                    batch_id=record.batch_id,
                    contact_id=record.contact_id,
                    group_id=record.group_id,
                    status=record.status.value,
                    attempts=record.attempts,
                    error=record.error,
                    result=record.result,
                    recipient=record.recipient,
                    created_at=record.created_at,
                ))
                await db.flush()
        except IntegrityError:
            return False
        return True

    async def get_side_effect(self, batch_id: str, contact_id: str) -> Optional[SideEffectRecord]:
        async with get_session() as db:
            row = await db.get(SideEffectRow, (batch_id, contact_id))
            return self._row_to_side_effect(row) if row else None

    async def update_side_effect(self, record: SideEffectRecord) -> None:
        async with get_session() as db:
            row = await db.get(SideEffectRow, (record.batch_id, record.contact_id))
            if row is None:
                logger.warning("side_effect_update_unclaimed",
                               batch_id=record.batch_id, contact_id=record.contact_id)
                return
            row.status = record.status.value
            row.attempts = record.attempts
            row.error = record.error
            row.result = record.result
            row.recipient = record.recipient
            row.finished_at = record.finished_at

    async def list_side_effects(self, batch_id: str,
                                status: Optional[SideEffectStatus] = None) -> list[SideEffectRecord]:
        async with get_session() as db:
            stmt = select(SideEffectRow).where(SideEffectRow.batch_id == batch_id)
            if status is not None:
                stmt = stmt.where(SideEffectRow.status == status.value)
            stmt = stmt.order_by(SideEffectRow.created_at)
            result = await db.execute(stmt)
            return [self._row_to_side_effect(r) for r in result.scalars()]

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _row_to_agent(row: AgentRow) -> Agent:
        return Agent(
            id=row.id, name=row.name,
            system_instruction=row.system_instruction or "",
            language=row.language or "es",
            is_active=bool(row.is_active),
            owner_id=row.owner_id or "",
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _row_to_conversation(row: ConversationRow) -> ConversationRecord:
        return ConversationRecord(
            contact_id=row.contact_id,
            last_outbound_text=row.last_outbound_text,
            has_started=bool(row.has_started),
            bound_agent_id=row.bound_agent_id,
            extra_state=row.extra_state or {},
            lifecycle=ConversationLifecycle(row.lifecycle or "active"),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _row_to_batch(row: BatchCallRow) -> BatchCallRecord:
        return BatchCallRecord(
            group_id=row.group_id,
            batch_id=row.batch_id or "",
            status=BatchStatus(row.status),
            started_at=_aware(row.started_at),
            completed_at=_aware(row.completed_at),
            total_recipients=row.total_recipients or 0,
            completed_count=row.completed_count or 0,
            failed_count=row.failed_count or 0,
            raw_provider_snapshot=row.raw_provider_snapshot or {},
            call_name=row.call_name or "",
            agent_id=row.agent_id or "",
            metadata=row.metadata_ or {},
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _row_to_side_effect(row: SideEffectRow) -> SideEffectRecord:
        return SideEffectRecord(
            batch_id=row.batch_id,
            contact_id=row.contact_id,
            group_id=row.group_id or "",
            status=SideEffectStatus(row.status),
            attempts=row.attempts or 0,
            error=row.error or "",
            result=row.result or {},
            recipient=row.recipient or {},
            created_at=_aware(row.created_at),
            finished_at=_aware(row.finished_at),
        )


class SqlMessageLog(BaseMessageLog):
    """Message log stored in the `messages` table."""

    async def append(self, entry: MessageLogEntry) -> MessageLogEntry:
        async with get_session() as db:
            db.add(MessageRow(
                id=entry.id,
                contact_id=entry.contact_id,
                direction=entry.direction.value,
                content=entry.content,
                external_message_id=entry.external_message_id,
                timestamp=entry.timestamp,
                metadata_=dict(entry.metadata),
            ))
        return entry

    async def recent(self, contact_id: str, limit: int,
                     before_id: Optional[str] = None) -> list[MessageLogEntry]:
        if limit <= 0:
            return []
        async with get_session() as db:
            stmt = select(MessageRow).where(MessageRow.contact_id == contact_id)
            if before_id is not None:
                anchor = (await db.execute(
                    select(MessageRow).where(MessageRow.id == before_id)
                )).scalar_one_or_none()
                if anchor is not None:
                    stmt = stmt.where(or_(
                        MessageRow.timestamp < anchor.timestamp,
                        and_(MessageRow.timestamp == anchor.timestamp,
                             MessageRow.seq < anchor.seq),
                    ))
            stmt = stmt.order_by(MessageRow.timestamp.desc(), MessageRow.seq.desc()).limit(limit)
            result = await db.execute(stmt)
            rows = list(result.scalars())
        rows.reverse()
        return [self._row_to_entry(r) for r in rows]

    async def count(self, contact_id: str) -> int:
        async with get_session() as db:
            stmt = select(func.count()).select_from(MessageRow).where(MessageRow.contact_id == contact_id)
            return int((await db.execute(stmt)).scalar_one())

    @staticmethod
    def _row_to_entry(row: MessageRow) -> MessageLogEntry:
        metadata: dict[str, Any] = row.metadata_ or {}
        return MessageLogEntry(
            id=row.id,
            contact_id=row.contact_id,
            direction=MessageDirection(row.direction),
            content=row.content,
            external_message_id=row.external_message_id,
            timestamp=_aware(row.timestamp),
            metadata=metadata,
        )
