"""
Session Router — route an inbound WhatsApp message to the contact's bound
agent and produce a reply.

Flow for one inbound message (serialized per contact with record_outbound):

  find_or_create record
    → append RECEIVED entry to the message log (always, first)
    → record_inbound (has_started, reactivate) → publish new_message
    → resolve bound agent          (NoAgentBound / AgentNotFound / AgentInactive)
    → last N log entries before the inbound one, oldest first
    → generate_reply(system_instruction, history, text)   (GenerationFailed)
    → append SENT entry, record_outbound, publish new_message

Routing outcomes are reported through InboundResult.error_kind, never raised.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from conversations.registry import ConversationRegistry
from conversations.sessions import SessionCache
from core.errors import GenerationFailedError
from database.store_base import BaseMessageLog
from events.hub import EventHub
from models.schemas import (
    EventTopic, HistoryTurn, InboundResult, MessageDirection,
    MessageLogEntry, RoutingErrorKind,
)
from providers.generative import GenerativeCapability
from utils.locks import KeyedLocks

logger = structlog.get_logger()

_ROLE_BY_DIRECTION = {
    MessageDirection.SENT: "assistant",
    MessageDirection.RECEIVED: "user",
}


class SessionRouter:

    def __init__(
        self,
        registry: ConversationRegistry,
        message_log: BaseMessageLog,
        generator: GenerativeCapability,
        hub: Optional[EventHub] = None,
        sessions: Optional[SessionCache] = None,
        history_window: int = 10,
        generation_timeout_s: float = 30.0,
    ):
        self.registry = registry
        self.message_log = message_log
        self.generator = generator
        self.hub = hub
        self.sessions = sessions or SessionCache()
        self.history_window = history_window
        self.generation_timeout_s = generation_timeout_s
        self._locks = KeyedLocks()

    async def handle_inbound(
        self,
        contact_id: str,
        text: str,
        external_message_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> InboundResult:
        async with self._locks.hold(contact_id):
            await self.registry.find_or_create(contact_id)
            inbound = await self.append_message(
                contact_id, MessageDirection.RECEIVED, text,
                external_message_id=external_message_id, metadata=metadata,
            )
            record = await self.registry.record_inbound(contact_id)
            logger.info("inbound_message_logged", contact_id=contact_id, message_id=inbound.id)

            def refuse(kind: RoutingErrorKind, agent_id: Optional[str] = None) -> InboundResult:
                logger.info("inbound_not_answered", contact_id=contact_id,
                            reason=kind.value, agent_id=agent_id)
                return InboundResult(should_respond=False, error_kind=kind,
                                     agent_id=agent_id, inbound_message_id=inbound.id)

            agent_id = record.bound_agent_id
            if not agent_id:
                return refuse(RoutingErrorKind.NO_AGENT_BOUND)
            agent = await self.registry.get_agent(agent_id)
            if agent is None:
                return refuse(RoutingErrorKind.AGENT_NOT_FOUND, agent_id)
            if not agent.is_active:
                return refuse(RoutingErrorKind.AGENT_INACTIVE, agent_id)

            session = self.sessions.touch(agent.id, contact_id)
            history = await self.history_for(contact_id, before_id=inbound.id)

            try:
                reply = await asyncio.wait_for(
                    self.generator.generate_reply(agent.system_instruction, history, text),
                    timeout=self.generation_timeout_s,
                )
            except asyncio.TimeoutError:
                logger.warning("reply_generation_timeout", contact_id=contact_id,
                               agent_id=agent.id, timeout_s=self.generation_timeout_s)
                return refuse(RoutingErrorKind.GENERATION_FAILED, agent.id)
            except GenerationFailedError as e:
                logger.error("reply_generation_failed", contact_id=contact_id,
                             agent_id=agent.id, error=str(e))
                return refuse(RoutingErrorKind.GENERATION_FAILED, agent.id)

            reply = (reply or "").strip()
            if not reply:
                logger.warning("reply_generation_empty", contact_id=contact_id, agent_id=agent.id)
                return refuse(RoutingErrorKind.GENERATION_FAILED, agent.id)

            await self._record_outbound(
                contact_id, reply, metadata={"agent_id": agent.id},
                last_response_at=datetime.now(timezone.utc).isoformat(),
                agent_session_id=session.session_id,
            )

        logger.info("inbound_answered", contact_id=contact_id, agent_id=agent.id,
                    history_turns=len(history))
        return InboundResult(should_respond=True, reply_text=reply, agent_id=agent.id,
                             inbound_message_id=inbound.id)

    async def record_outbound(
        self,
        contact_id: str,
        text: str,
        external_message_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        **state: Any,
    ) -> MessageLogEntry:
        """
        Log a message sent outside the inbound flow (operator, call follow-up).
        Waits for any inbound message of the contact still being answered.
        """
        async with self._locks.hold(contact_id):
            return await self._record_outbound(contact_id, text, external_message_id,
                                               metadata, **state)

    async def _record_outbound(self, contact_id, text, external_message_id=None,
                               metadata=None, **state) -> MessageLogEntry:
        entry = await self.append_message(contact_id, MessageDirection.SENT, text,
                                          external_message_id=external_message_id,
                                          metadata=metadata)
        await self.registry.record_outbound(contact_id, text, **state)
        return entry

    async def history_for(self, contact_id: str, before_id: Optional[str] = None) -> list[HistoryTurn]:
        """Most recent `history_window` turns before `before_id`, oldest first."""
        entries = await self.message_log.recent(contact_id, self.history_window, before_id=before_id)
        return [
            HistoryTurn(role=_ROLE_BY_DIRECTION[e.direction], content=e.content)
            for e in entries
            if e.content and e.content.strip()
        ]

    async def append_message(
        self,
        contact_id: str,
        direction: MessageDirection,
        content: str,
        external_message_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> MessageLogEntry:
        """Append to the contact's log and publish new_message."""
        entry = MessageLogEntry(
            contact_id=contact_id,
            direction=direction,
            content=content,
            external_message_id=external_message_id,
            metadata=metadata or {},
        )
        await self.message_log.append(entry)
        if self.hub is not None:
            self.hub.publish(EventTopic.NEW_MESSAGE, {
                "contact_id": contact_id,
                "direction": direction.value,
                "message": entry.model_dump(mode="json"),
            })
        return entry

    def reset_session(self, contact_id: str) -> int:
        """Drop cached agent sessions for the contact. Persisted records are untouched."""
        dropped = self.sessions.drop_contact(contact_id)
        logger.info("agent_session_reset", contact_id=contact_id, dropped=dropped)
        return dropped
