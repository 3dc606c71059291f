"""
Abstract stores — interfaces for all storage backends.

Two independent stores back the service:

  BaseRecordStore   relational records: agents, conversations, batch
                    records (+ history) and one-shot side-effect claims.
      - SqlRecordStore       (PostgreSQL / MySQL / SQLite via SQLAlchemy)
      - InMemoryRecordStore  (dict-based, single-process, no persistence)

  BaseMessageLog    append-only message documents, one log per contact.
      - SqlMessageLog        (same database as the records)
      - InMemoryMessageLog   (dict of lists)
      - FileMessageLog       (one JSON-lines file per contact)

Records are exchanged as the pydantic models from models/schemas.py, never
as ORM rows.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from models.schemas import (
    Agent, BatchCallRecord, BatchStatus, ConversationLifecycle,
    ConversationRecord, MessageLogEntry, SideEffectRecord, SideEffectStatus,
)


class BaseRecordStore(ABC):
    """Interface that all record store backends must implement."""

    # ── Agents ────────────────────────────────────────────────

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        ...

    @abstractmethod
    async def save_agent(self, agent: Agent) -> Agent:
        ...

    @abstractmethod
    async def list_agents(self, owner_id: str = "") -> list[Agent]:
        ...

    # ── Conversations ─────────────────────────────────────────

    @abstractmethod
    async def get_conversation(self, contact_id: str) -> Optional[ConversationRecord]:
        ...

    @abstractmethod
    async def save_conversation(self, record: ConversationRecord) -> ConversationRecord:
        ...

    @abstractmethod
    async def list_conversations(self, agent_id: str = "",
                                 lifecycle: Optional[ConversationLifecycle] = None,
                                 limit: int = 100) -> list[ConversationRecord]:
        ...

    # ── Batch records ─────────────────────────────────────────

    @abstractmethod
    async def get_batch(self, group_id: str) -> Optional[BatchCallRecord]:
        ...

    @abstractmethod
    async def save_batch(self, record: BatchCallRecord) -> BatchCallRecord:
        ...

    @abstractmethod
    async def list_batches(self, status: Optional[BatchStatus] = None) -> list[BatchCallRecord]:
        ...

    @abstractmethod
    async def archive_batch(self, record: BatchCallRecord) -> None:
        """Move a finished lifecycle instance into the group's history."""
        ...

    @abstractmethod
    async def batch_history(self, group_id: str) -> list[BatchCallRecord]:
        """Archived instances for the group, oldest first."""
        ...

    @abstractmethod
    async def find_batch(self, batch_id: str) -> Optional[BatchCallRecord]:
        """Look up a batch by provider id, current records first, then history."""
        ...

    # ── Side effects ──────────────────────────────────────────

    @abstractmethod
    async def claim_side_effect(self, record: SideEffectRecord) -> bool:
        """Atomically insert the claim. False if the pair was already claimed."""
        ...

    @abstractmethod
    async def get_side_effect(self, batch_id: str, contact_id: str) -> Optional[SideEffectRecord]:
        ...

    @abstractmethod
    async def update_side_effect(self, record: SideEffectRecord) -> None:
        ...

    @abstractmethod
    async def list_side_effects(self, batch_id: str,
                                status: Optional[SideEffectStatus] = None) -> list[SideEffectRecord]:
        ...


class BaseMessageLog(ABC):
    """Append-only message documents keyed by contact_id."""

    @abstractmethod
    async def append(self, entry: MessageLogEntry) -> MessageLogEntry:
        ...

    @abstractmethod
    async def recent(self, contact_id: str, limit: int,
                     before_id: Optional[str] = None) -> list[MessageLogEntry]:
        """
        The `limit` most recent entries, oldest first.
        With `before_id`, only entries ordered strictly before that entry.
        """
        ...

    @abstractmethod
    async def count(self, contact_id: str) -> int:
        ...
