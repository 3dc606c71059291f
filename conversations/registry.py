"""
Conversation Registry — one authoritative record per contact.

The registry owns ConversationRecord mutations and the small agent
catalogue needed to bind agents to conversations. Every mutation of a
contact's record is serialized on that contact's lock; different contacts
proceed in parallel.

Events:
  new_conversation     — a record was created
  conversation_update  — an existing record changed (bind, outbound,
                         inbound, extra_state, archive)

Records are never hard-deleted; `archive()` only flips the soft lifecycle
flag, and the next inbound message reactivates the record.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from core.errors import (
    AgentInactiveError, AgentNotFoundError, ConversationNotFoundError, NoAgentBoundError,
)
from database.store_base import BaseRecordStore
from events.hub import EventHub
from models.schemas import (
    Agent, ConversationLifecycle, ConversationRecord, EventTopic,
)
from utils.locks import KeyedLocks

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationRegistry:

    def __init__(self, store: BaseRecordStore, hub: Optional[EventHub] = None):
        self.store = store
        self.hub = hub
        self._locks = KeyedLocks()

    # ── Lookups ───────────────────────────────────────────────

    async def get(self, contact_id: str) -> Optional[ConversationRecord]:
        return await self.store.get_conversation(contact_id)

    async def require(self, contact_id: str) -> ConversationRecord:
        record = await self.store.get_conversation(contact_id)
        if record is None:
            raise ConversationNotFoundError(contact_id)
        return record

    async def list(self, agent_id: str = "",
                   lifecycle: Optional[ConversationLifecycle] = None,
                   limit: int = 100) -> list[ConversationRecord]:
        return await self.store.list_conversations(agent_id=agent_id, lifecycle=lifecycle, limit=limit)

    async def find_or_create(self, contact_id: str) -> ConversationRecord:
        async with self._locks.hold(contact_id):
            record = await self.store.get_conversation(contact_id)
            if record is not None:
                return record
            record = ConversationRecord(contact_id=contact_id)
            await self.store.save_conversation(record)
        logger.info("conversation_created", contact_id=contact_id)
        self._publish(EventTopic.NEW_CONVERSATION, record)
        return record

    # ── Mutations ─────────────────────────────────────────────

    async def bind_agent(self, contact_id: str, agent_id: str) -> ConversationRecord:
        """Route all future inbound messages for the contact to `agent_id`."""
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        if not agent.is_active:
            raise AgentInactiveError(agent_id)

        def apply(record: ConversationRecord) -> None:
            record.bound_agent_id = agent_id

        record = await self._mutate(contact_id, apply)
        logger.info("agent_bound", contact_id=contact_id, agent_id=agent_id)
        return record

    async def record_outbound(self, contact_id: str, text: str, **extra_state: Any) -> ConversationRecord:
        def apply(record: ConversationRecord) -> None:
            record.has_started = True
            record.last_outbound_text = text
            if extra_state:
                record.extra_state = {**record.extra_state, **extra_state}

        return await self._mutate(contact_id, apply)

    async def record_inbound(self, contact_id: str) -> ConversationRecord:
        def apply(record: ConversationRecord) -> None:
            record.has_started = True
            record.lifecycle = ConversationLifecycle.ACTIVE

        return await self._mutate(contact_id, apply)

    async def update_extra_state(self, contact_id: str, **values: Any) -> ConversationRecord:
        def apply(record: ConversationRecord) -> None:
            record.extra_state = {**record.extra_state, **values}

        return await self._mutate(contact_id, apply, create=False)

    async def archive(self, contact_id: str) -> ConversationRecord:
        def apply(record: ConversationRecord) -> None:
            record.lifecycle = ConversationLifecycle.ARCHIVED

        record = await self._mutate(contact_id, apply, create=False)
        logger.info("conversation_archived", contact_id=contact_id)
        return record

    async def _mutate(self, contact_id: str, apply: Callable[[ConversationRecord], None],
                      create: bool = True) -> ConversationRecord:
        created = False
        async with self._locks.hold(contact_id):
            record = await self.store.get_conversation(contact_id)
            if record is None:
                if not create:
                    raise ConversationNotFoundError(contact_id)
                record = ConversationRecord(contact_id=contact_id)
                created = True
            apply(record)
            record.updated_at = _utcnow()
            await self.store.save_conversation(record)

        if created:
            logger.info("conversation_created", contact_id=contact_id)
            self._publish(EventTopic.NEW_CONVERSATION, record)
        self._publish(EventTopic.CONVERSATION_UPDATE, record)
        return record

    def _publish(self, topic: EventTopic, record: ConversationRecord) -> None:
        if self.hub is None:
            return
        self.hub.publish(topic, {
            "contact_id": record.contact_id,
            "conversation": record.model_dump(mode="json"),
        })

    # ── Agents ────────────────────────────────────────────────

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        return await self.store.get_agent(agent_id)

    async def require_agent(self, agent_id: str) -> Agent:
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    async def require_bound_agent(self, contact_id: str) -> Agent:
        """The agent answering the conversation. Raises NoAgentBoundError when unbound."""
        record = await self.require(contact_id)
        if not record.bound_agent_id:
            raise NoAgentBoundError(contact_id)
        return await self.require_agent(record.bound_agent_id)

    async def list_agents(self, owner_id: str = "") -> list[Agent]:
        return await self.store.list_agents(owner_id)

    async def create_agent(self, name: str, system_instruction: str = "",
                           language: str = "es", owner_id: str = "",
                           agent_id: Optional[str] = None) -> Agent:
        agent = Agent(name=name, system_instruction=system_instruction,
                      language=language, owner_id=owner_id)
        if agent_id:
            agent.id = agent_id
        await self.store.save_agent(agent)
        logger.info("agent_created", agent_id=agent.id, name=name)
        return agent

    async def update_agent(self, agent_id: str, **fields: Any) -> Agent:
        agent = await self.require_agent(agent_id)
        allowed = {"name", "system_instruction", "language", "owner_id", "is_active"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown agent fields: {sorted(unknown)}")
        for key, value in fields.items():
            if value is not None:
                setattr(agent, key, value)
        agent.updated_at = _utcnow()
        await self.store.save_agent(agent)
        logger.info("agent_updated", agent_id=agent_id, fields=sorted(fields))
        return agent

    async def set_agent_active(self, agent_id: str, active: bool) -> Agent:
        return await self.update_agent(agent_id, is_active=active)
