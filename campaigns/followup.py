"""
Call follow-up — the one-shot side effect fired when a recipient's call
reaches a terminal status.

Recipients whose call completed get a WhatsApp greeting continuing the
phone conversation; the greeting is logged as a SENT message, the
conversation is marked started, and the batch's WhatsApp agent is bound
when the conversation has none yet. Failed and cancelled calls are
recorded as skipped.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog

from campaigns.side_effects import SideEffectSkipped
from config.settings import FollowUpConfig
from conversations.registry import ConversationRegistry
from conversations.router import SessionRouter
from core.errors import AgentInactiveError, AgentNotFoundError
from models.schemas import BatchCallRecord, RecipientCallState, RecipientStatus
from providers.whatsapp import MessagingTransport, normalize_whatsapp_number

logger = structlog.get_logger()


class FollowUpMessenger:

    def __init__(
        self,
        registry: ConversationRegistry,
        router: SessionRouter,
        transport: MessagingTransport,
        config: Optional[FollowUpConfig] = None,
    ):
        self.registry = registry
        self.router = router
        self.transport = transport
        self.config = config or FollowUpConfig()

    def render(self, recipient: RecipientCallState) -> str:
        name = (recipient.name or recipient.variables.get("name") or "").strip()
        return self.config.message_template.format(name=name or self.config.default_client_name)

    async def __call__(self, batch: BatchCallRecord, recipient: RecipientCallState) -> dict[str, Any]:
        if not self.config.enabled:
            raise SideEffectSkipped("follow-up disabled")
        if recipient.status != RecipientStatus.COMPLETED:
            raise SideEffectSkipped(f"call {recipient.status.value}")

        contact_id = normalize_whatsapp_number(recipient.contact_id)
        if not contact_id:
            raise SideEffectSkipped("no phone number")

        record = await self.registry.find_or_create(contact_id)
        agent_id = batch.metadata.get("whatsapp_agent_id") or self.config.default_agent_id
        bound = record.bound_agent_id
        if agent_id and not bound:
            try:
                await self.registry.bind_agent(contact_id, agent_id)
                bound = agent_id
            except (AgentNotFoundError, AgentInactiveError) as e:
                logger.warning("followup_agent_not_bound", contact_id=contact_id,
                               agent_id=agent_id, error=str(e))

        text = self.render(recipient)
        receipt = await self.transport.send(contact_id, text)
        await self.router.record_outbound(
            contact_id, text,
            external_message_id=receipt.external_message_id or None,
            metadata={"source": "call_followup", "batch_id": batch.batch_id,
                      "conversation_id": recipient.conversation_id},
            followup_batch_id=batch.batch_id,
        )

        logger.info("followup_sent", contact_id=contact_id, batch_id=batch.batch_id,
                    agent_id=bound, message_id=receipt.external_message_id)
        return {
            "contact_id": contact_id,
            "external_message_id": receipt.external_message_id,
            "agent_id": bound or "",
        }
