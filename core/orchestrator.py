"""
Orchestrator — wires the campaign and conversation components together and
exposes the operations the HTTP layer serves.

Architecture:
  Outbound: start_batch → provider.start_batch_call → tracker.start_batch
            → monitor.watch → (poll → reconcile → claim → follow-up)

  Inbound:  webhook → router.handle_inbound → bound agent + history
            → generate reply → transport.send

  Live:     every component publishes on the EventHub; the SSE endpoint
            streams it to passive observers.

Launching a batch is serialized per group on a launch lock that covers the
startable check, the provider submission and tracker.start_batch, so two
concurrent starts cannot both reach the provider.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Iterable, Optional

import structlog

from campaigns.followup import FollowUpMessenger
from campaigns.monitor import ProgressMonitor
from campaigns.side_effects import SideEffectRunner
from campaigns.tracker import BatchLifecycleTracker
from config.settings import Settings, get_settings
from conversations.registry import ConversationRegistry
from conversations.router import SessionRouter
from conversations.sessions import SessionCache
from core.errors import (
    AlreadyInProgressError, NoBatchStartedError, ProviderUnavailableError,
)
from database.store_base import BaseMessageLog, BaseRecordStore
from events.hub import EventHub, EventStream
from models.schemas import (
    Agent, BatchCallRecord, BatchStats, BatchStatus, ConversationLifecycle,
    ConversationRecord, EventTopic, InboundResult,
    MessageLogEntry, SideEffectRecord, SideEffectStatus,
)
from providers.call_provider import CallProvider, ElevenLabsBatchClient
from providers.generative import GenerativeCapability, LLMReplyGenerator
from providers.whatsapp import (
    MessagingTransport, TwilioWhatsAppTransport, normalize_whatsapp_number,
)
from utils.locks import KeyedLocks

logger = structlog.get_logger()


class CampaignOrchestrator:
    """
    Thin coordination layer. Business rules live in the components:
    tracker (batch state machine), monitor (reconciliation), runner
    (one-shot side effects), registry (conversation records), router
    (inbound replies).
    """

    def __init__(
        self,
        tracker: BatchLifecycleTracker,
        monitor: ProgressMonitor,
        runner: SideEffectRunner,
        registry: ConversationRegistry,
        router: SessionRouter,
        message_log: BaseMessageLog,
        provider: CallProvider,
        transport: MessagingTransport,
        hub: EventHub,
        settings: Optional[Settings] = None,
    ):
        self.tracker = tracker
        self.monitor = monitor
        self.runner = runner
        self.registry = registry
        self.router = router
        self.message_log = message_log
        self.provider = provider
        self.transport = transport
        self.hub = hub
        self._settings = settings or get_settings()
        self._launch_locks = KeyedLocks()

    # ══════════════════════════════════════════════════════════
    #  LIFECYCLE
    # ══════════════════════════════════════════════════════════

    async def start(self) -> None:
        """Resume monitoring of batches left in progress by a previous process."""
        await self.monitor.resume_in_progress()

    async def shutdown(self) -> None:
        await self.monitor.stop_all()
        await self.runner.wait_idle()
        await self.hub.drain()
        for client in (self.provider, self.transport):
            close = getattr(client, "close", None)
            if close is not None:
                await close()
        logger.info("orchestrator_shutdown")

    # ══════════════════════════════════════════════════════════
    #  BATCH CALLS
    # ══════════════════════════════════════════════════════════

    async def start_batch(
        self,
        group_id: str,
        recipients: list[dict[str, Any]],
        agent_phone_number_id: str = "",
        call_name: str = "",
        agent_id: str = "",
        whatsapp_agent_id: str = "",
        scheduled_time: Optional[datetime] = None,
        metadata: Optional[dict[str, Any]] = None,
        monitor: bool = True,
    ) -> BatchCallRecord:
        """
        Submit a batch call for the group and start tracking it.

        Raises AlreadyInProgressError before anything reaches the provider
        when the group already has a batch in progress.
        """
        if not recipients:
            raise ValueError("recipients must not be empty")
        cfg = self._settings.call_provider

        async with self._launch_locks.hold(group_id):
            current = await self.tracker.get(group_id)
            if current is not None and current.status == BatchStatus.IN_PROGRESS:
                raise AlreadyInProgressError(group_id, current.batch_id)

            submission = await self.provider.start_batch_call(
                group_id,
                recipients,
                agent_phone_number_id or cfg.agent_phone_number_id,
                scheduled_time=scheduled_time,
                call_name=call_name,
                agent_id=agent_id or cfg.agent_id,
            )
            record = await self.tracker.start_batch(
                group_id,
                submission.batch_id,
                total_recipients=submission.recipients_count or len(recipients),
                metadata={**(metadata or {}), "whatsapp_agent_id": whatsapp_agent_id},
                call_name=call_name,
                agent_id=agent_id or cfg.agent_id,
            )

        if monitor:
            self.monitor.watch(group_id, record.batch_id)
        return record

    async def get_batch(self, group_id: str) -> BatchCallRecord:
        record = await self.tracker.get(group_id)
        if record is None or record.status == BatchStatus.NONE:
            raise NoBatchStartedError(group_id)
        return record

    async def get_batch_stats(self, group_id: str) -> BatchStats:
        return await self.tracker.get_stats(group_id)

    async def list_batches(self, group_id: str) -> list[BatchCallRecord]:
        return await self.tracker.history(group_id)

    async def find_batch(self, batch_id: str) -> Optional[BatchCallRecord]:
        return await self.tracker.find_by_batch_id(batch_id)

    async def list_stale_batches(self) -> list[BatchCallRecord]:
        return await self.tracker.list_stale_batches()

    async def list_provider_batches(self) -> list[dict[str, Any]]:
        """Batches as the provider sees them, including ones started elsewhere."""
        return await self.provider.list_batches()

    async def refresh_batch(self, group_id: str) -> BatchCallRecord:
        """Poll the provider now instead of waiting for the next tick."""
        record = await self.get_batch(group_id)
        refreshed = await self.monitor.poll_once(group_id, record.batch_id)
        if refreshed is None:
            raise ProviderUnavailableError("call_provider", "status fetch failed")
        return refreshed

    async def watch_batch(self, group_id: str) -> BatchCallRecord:
        """(Re)start background monitoring for the group's in-progress batch."""
        record = await self.get_batch(group_id)
        if record.status == BatchStatus.IN_PROGRESS:
            self.monitor.watch(group_id, record.batch_id)
        return record

    async def cancel_batch(self, group_id: str) -> BatchCallRecord:
        record = await self.get_batch(group_id)
        if record.is_terminal:
            return record
        await self.provider.cancel_batch(record.batch_id)
        logger.info("batch_cancel_requested", group_id=group_id, batch_id=record.batch_id)
        return await self.monitor.poll_once(group_id, record.batch_id) or record

    async def retry_batch(self, group_id: str) -> BatchCallRecord:
        """
        Ask the provider to re-dial failed recipients. A finished record is
        reopened as a new lifecycle instance for the same batch. Recipients
        skipped earlier get the follow-up once the provider reports a new
        outcome for them.
        """
        async with self._launch_locks.hold(group_id):
            record = await self.get_batch(group_id)
            await self.provider.retry_batch(record.batch_id)
            if record.is_terminal:
                metadata = {k: v for k, v in record.metadata.items() if k != "stale_at"}
                record = await self.tracker.start_batch(
                    group_id, record.batch_id, record.total_recipients,
                    metadata={**metadata, "retry_of": record.batch_id},
                    call_name=record.call_name, agent_id=record.agent_id,
                )
        logger.info("batch_retry_requested", group_id=group_id, batch_id=record.batch_id)
        reconciled = await self.monitor.poll_once(group_id, record.batch_id) or record
        if not reconciled.is_terminal:
            self.monitor.watch(group_id, reconciled.batch_id)
        return reconciled

    async def list_side_effects(self, batch_id: str,
                                status: Optional[SideEffectStatus] = None) -> list[SideEffectRecord]:
        return await self.runner.list(batch_id, status)

    async def retry_failed_side_effects(self, group_id: str) -> int:
        record = await self.get_batch(group_id)
        return await self.runner.retry_failed(record)

    # ══════════════════════════════════════════════════════════
    #  CONVERSATIONS
    # ══════════════════════════════════════════════════════════

    async def handle_inbound(
        self,
        contact_id: str,
        text: str,
        external_message_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> InboundResult:
        """Route an inbound WhatsApp message and deliver the reply, if any."""
        contact_id = normalize_whatsapp_number(contact_id)
        result = await self.router.handle_inbound(contact_id, text, external_message_id, metadata)
        if result.should_respond and result.reply_text:
            try:
                receipt = await self.transport.send(contact_id, result.reply_text)
                logger.info("reply_delivered", contact_id=contact_id,
                            message_id=receipt.external_message_id)
            except ProviderUnavailableError as e:
                # Reply is already logged; delivery is retried by the operator.
                logger.error("reply_delivery_failed", contact_id=contact_id, error=str(e))
        return result

    async def send_message(self, contact_id: str, text: str) -> MessageLogEntry:
        """Operator-initiated outbound WhatsApp message."""
        contact_id = normalize_whatsapp_number(contact_id)
        await self.registry.find_or_create(contact_id)
        receipt = await self.transport.send(contact_id, text)
        return await self.router.record_outbound(
            contact_id, text,
            external_message_id=receipt.external_message_id or None,
            metadata={"source": "operator"},
        )

    async def bind_agent(self, contact_id: str, agent_id: str) -> ConversationRecord:
        contact_id = normalize_whatsapp_number(contact_id)
        record = await self.registry.bind_agent(contact_id, agent_id)
        self.router.sessions.drop_contact(contact_id)
        return record

    async def get_conversation(self, contact_id: str, limit: int = 50) -> dict[str, Any]:
        """Conversation record plus its most recent messages, oldest first."""
        contact_id = normalize_whatsapp_number(contact_id)
        record = await self.registry.require(contact_id)
        messages = await self.message_log.recent(contact_id, limit)
        return {"conversation": record, "messages": messages}

    async def list_conversations(self, agent_id: str = "",
                                 lifecycle: Optional[ConversationLifecycle] = None,
                                 limit: int = 100) -> list[ConversationRecord]:
        return await self.registry.list(agent_id=agent_id, lifecycle=lifecycle, limit=limit)

    async def archive_conversation(self, contact_id: str) -> ConversationRecord:
        return await self.registry.archive(normalize_whatsapp_number(contact_id))

    async def reset_session(self, contact_id: str) -> int:
        contact_id = normalize_whatsapp_number(contact_id)
        dropped = self.router.reset_session(contact_id)
        if await self.registry.get(contact_id) is not None:
            await self.registry.update_extra_state(contact_id, agent_session_id=None)
        return dropped

    # ══════════════════════════════════════════════════════════
    #  AGENTS
    # ══════════════════════════════════════════════════════════

    async def create_agent(self, name: str, system_instruction: str = "",
                           language: str = "es", owner_id: str = "") -> Agent:
        return await self.registry.create_agent(name, system_instruction, language, owner_id)

    async def update_agent(self, agent_id: str, **fields: Any) -> Agent:
        return await self.registry.update_agent(agent_id, **fields)

    async def set_agent_active(self, agent_id: str, active: bool) -> Agent:
        return await self.registry.set_agent_active(agent_id, active)

    async def get_agent(self, agent_id: str) -> Agent:
        return await self.registry.require_agent(agent_id)

    async def get_bound_agent(self, contact_id: str) -> Agent:
        return await self.registry.require_bound_agent(normalize_whatsapp_number(contact_id))

    async def list_agents(self, owner_id: str = "") -> list[Agent]:
        return await self.registry.list_agents(owner_id)

    # ══════════════════════════════════════════════════════════
    #  EVENTS
    # ══════════════════════════════════════════════════════════

    def subscribe(self, topic: EventTopic, handler: Callable[[dict[str, Any]], Any]) -> Callable[[], None]:
        return self.hub.subscribe(topic, handler)

    def stream(self, topics: Optional[Iterable[EventTopic]] = None,
               max_queue: Optional[int] = None) -> EventStream:
        return self.hub.stream(topics, max_queue)


def build_orchestrator(
    store: BaseRecordStore,
    message_log: BaseMessageLog,
    settings: Optional[Settings] = None,
    provider: Optional[CallProvider] = None,
    transport: Optional[MessagingTransport] = None,
    generator: Optional[GenerativeCapability] = None,
    hub: Optional[EventHub] = None,
) -> CampaignOrchestrator:
    """Assemble every component from settings. Collaborators can be injected."""
    settings = settings or get_settings()
    hub = hub or EventHub(default_queue_size=settings.events.subscriber_queue_size)

    provider = provider or ElevenLabsBatchClient(
        api_key=settings.call_provider.api_key,
        base_url=settings.call_provider.base_url,
        agent_id=settings.call_provider.agent_id,
        timeout_s=settings.call_provider.timeout_s,
    )
    transport = transport or TwilioWhatsAppTransport(
        account_sid=settings.whatsapp.account_sid,
        auth_token=settings.whatsapp.auth_token,
        from_number=settings.whatsapp.from_number,
        timeout_s=settings.whatsapp.timeout_s,
    )
    generator = generator or LLMReplyGenerator(settings.llm)

    registry = ConversationRegistry(store, hub)
    router = SessionRouter(
        registry, message_log, generator, hub,
        sessions=SessionCache(ttl_s=settings.sessions.session_ttl_s,
                              max_size=settings.sessions.max_sessions),
        history_window=settings.sessions.history_window,
        generation_timeout_s=settings.sessions.generation_timeout_s,
    )
    tracker = BatchLifecycleTracker(store, stale_after_s=settings.monitor.max_duration_s)
    followup = FollowUpMessenger(registry, router, transport, settings.followup)
    runner = SideEffectRunner(store, followup, concurrency=settings.monitor.side_effect_concurrency)
    monitor = ProgressMonitor(
        provider, tracker, runner, hub,
        poll_interval_s=settings.monitor.poll_interval_s,
        max_iterations=settings.monitor.max_iterations,
        max_duration_s=settings.monitor.max_duration_s,
    )
    return CampaignOrchestrator(
        tracker=tracker, monitor=monitor, runner=runner,
        registry=registry, router=router, message_log=message_log,
        provider=provider, transport=transport, hub=hub, settings=settings,
    )
