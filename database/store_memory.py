"""
In-memory stores — dict-backed backends for development and testing.

Features:
  - Zero dependencies (no database server)
  - Full interface compatibility with the SQL backends
  - Safe within a single event loop: no await between check and write
  - All data lost on process restart

Records are deep-copied on the way in and out so callers never alias
stored state.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from typing import Optional

from database.store_base import BaseMessageLog, BaseRecordStore
from models.schemas import (
    Agent, BatchCallRecord, BatchStatus, ConversationLifecycle,
    ConversationRecord, MessageLogEntry, SideEffectRecord, SideEffectStatus,
)

logger = structlog.get_logger()


class InMemoryRecordStore(BaseRecordStore):

    def __init__(self):
        self._agents: dict[str, Agent] = {}
        self._conversations: dict[str, ConversationRecord] = {}    # contact_id → record
        self._batches: dict[str, BatchCallRecord] = {}             # group_id → record
        self._history: dict[str, list[BatchCallRecord]] = defaultdict(list)
        self._side_effects: dict[tuple[str, str], SideEffectRecord] = {}
        logger.info("inmemory_record_store_initialized")

    # ── Agents ────────────────────────────────────────────

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        agent = self._agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None

    async def save_agent(self, agent: Agent) -> Agent:
        self._agents[agent.id] = agent.model_copy(deep=True)
        return agent

    async def list_agents(self, owner_id: str = "") -> list[Agent]:
        return [
            a.model_copy(deep=True) for a in self._agents.values()
            if not owner_id or a.owner_id == owner_id
        ]

    # ── Conversations ─────────────────────────────────────

    async def get_conversation(self, contact_id: str) -> Optional[ConversationRecord]:
        record = self._conversations.get(contact_id)
        return record.model_copy(deep=True) if record else None

    async def save_conversation(self, record: ConversationRecord) -> ConversationRecord:
        self._conversations[record.contact_id] = record.model_copy(deep=True)
        return record

    async def list_conversations(self, agent_id: str = "",
                                 lifecycle: Optional[ConversationLifecycle] = None,
                                 limit: int = 100) -> list[ConversationRecord]:
        results = [
            r for r in self._conversations.values()
            if (not agent_id or r.bound_agent_id == agent_id)
            and (lifecycle is None or r.lifecycle == lifecycle)
        ]
        results.sort(key=lambda r: r.updated_at, reverse=True)
        return [r.model_copy(deep=True) for r in results[:limit]]

    # ── Batch records ─────────────────────────────────────

    async def get_batch(self, group_id: str) -> Optional[BatchCallRecord]:
        record = self._batches.get(group_id)
        return record.model_copy(deep=True) if record else None

    async def save_batch(self, record: BatchCallRecord) -> BatchCallRecord:
        self._batches[record.group_id] = record.model_copy(deep=True)
        return record

    async def list_batches(self, status: Optional[BatchStatus] = None) -> list[BatchCallRecord]:
        return [
            r.model_copy(deep=True) for r in self._batches.values()
            if status is None or r.status == status
        ]

    async def archive_batch(self, record: BatchCallRecord) -> None:
        self._history[record.group_id].append(record.model_copy(deep=True))

    async def batch_history(self, group_id: str) -> list[BatchCallRecord]:
        return [r.model_copy(deep=True) for r in self._history.get(group_id, [])]

    async def find_batch(self, batch_id: str) -> Optional[BatchCallRecord]:
        for record in self._batches.values():
            if record.batch_id == batch_id:
                return record.model_copy(deep=True)
        for records in self._history.values():
            for record in reversed(records):
                if record.batch_id == batch_id:
                    return record.model_copy(deep=True)
        return None

    # ── Side effects ──────────────────────────────────────

    async def claim_side_effect(self, record: SideEffectRecord) -> bool:
        key = (record.batch_id, record.contact_id)
        if key in self._side_effects:
            return False
        self._side_effects[key] = record.model_copy(deep=True)
        return True

    async def get_side_effect(self, batch_id: str, contact_id: str) -> Optional[SideEffectRecord]:
        record = self._side_effects.get((batch_id, contact_id))
        return record.model_copy(deep=True) if record else None

    async def update_side_effect(self, record: SideEffectRecord) -> None:
        key = (record.batch_id, record.contact_id)
        if key not in self._side_effects:
            logger.warning("side_effect_update_unclaimed",
                           batch_id=record.batch_id, contact_id=record.contact_id)
            return
        self._side_effects[key] = record.model_copy(deep=True)

    async def list_side_effects(self, batch_id: str,
                                status: Optional[SideEffectStatus] = None) -> list[SideEffectRecord]:
        return [
            r.model_copy(deep=True) for (bid, _), r in self._side_effects.items()
            if bid == batch_id and (status is None or r.status == status)
        ]


class InMemoryMessageLog(BaseMessageLog):

    def __init__(self):
        self._logs: dict[str, list[MessageLogEntry]] = defaultdict(list)   # contact_id → entries
        logger.info("inmemory_message_log_initialized")

    def _ordered(self, contact_id: str) -> list[MessageLogEntry]:
        # sorted() is stable, so equal timestamps keep append order
        return sorted(self._logs.get(contact_id, []), key=lambda e: e.timestamp)

    async def append(self, entry: MessageLogEntry) -> MessageLogEntry:
        self._logs[entry.contact_id].append(entry)
        return entry

    async def recent(self, contact_id: str, limit: int,
                     before_id: Optional[str] = None) -> list[MessageLogEntry]:
        entries = self._ordered(contact_id)
        if before_id is not None:
            for i, e in enumerate(entries):
                if e.id == before_id:
                    entries = entries[:i]
                    break
        if limit <= 0:
            return []
        return entries[-limit:]

    async def count(self, contact_id: str) -> int:
        return len(self._logs.get(contact_id, []))
