"""
Tests for inbound routing and the warm session cache.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from conversations.router import SessionRouter
from conversations.sessions import SessionCache
from core.errors import GenerationFailedError
from models.schemas import MessageDirection, MessageLogEntry, RoutingErrorKind

CONTACT = "+573138539155"


@pytest_asyncio.fixture
async def agent(registry):
    return await registry.create_agent("Cobranza", "Eres un asesor de cobranza.", agent_id="agent_1")


class TestHandleInbound:

    @pytest.mark.asyncio
    async def test_no_agent_bound(self, router, message_log, generator, recorded):
        result = await router.handle_inbound(CONTACT, "hola")

        assert result.should_respond is False
        assert result.error_kind == RoutingErrorKind.NO_AGENT_BOUND
        assert generator.calls == []

        entries = await message_log.recent(CONTACT, 10)
        assert [(e.direction, e.content) for e in entries] == [(MessageDirection.RECEIVED, "hola")]
        messages = [e for e in recorded if e["topic"] == "new_message"]
        assert [m["direction"] for m in messages] == ["received"]
        assert any(e["topic"] == "new_conversation" for e in recorded)

    @pytest.mark.asyncio
    async def test_bound_agent_replies(self, router, registry, message_log, generator, agent):
        await registry.bind_agent(CONTACT, agent.id)
        result = await router.handle_inbound(CONTACT, "¿cuánto debo?", external_message_id="SM_in")

        assert result.should_respond is True
        assert result.reply_text == generator.reply
        assert result.agent_id == "agent_1"
        assert generator.calls[0]["system_instruction"] == "Eres un asesor de cobranza."
        assert generator.calls[0]["message"] == "¿cuánto debo?"

        entries = await message_log.recent(CONTACT, 10)
        assert [e.direction for e in entries] == [MessageDirection.RECEIVED, MessageDirection.SENT]
        assert entries[0].external_message_id == "SM_in"
        assert entries[1].metadata["agent_id"] == "agent_1"

        record = await registry.get(CONTACT)
        assert record.last_outbound_text == generator.reply
        assert record.has_started is True
        assert "agent_session_id" in record.extra_state

    @pytest.mark.asyncio
    async def test_history_is_windowed_and_excludes_current_message(
            self, registry, message_log, generator, hub, agent):
        router = SessionRouter(registry, message_log, generator, hub, history_window=10)
        await registry.bind_agent(CONTACT, agent.id)
        base = datetime.now(timezone.utc) - timedelta(hours=1)
        for i in range(15):
            direction = MessageDirection.SENT if i % 2 else MessageDirection.RECEIVED
            await message_log.append(MessageLogEntry(
                contact_id=CONTACT, direction=direction, content=f"m{i}",
                timestamp=base + timedelta(minutes=i),
            ))

        await router.handle_inbound(CONTACT, "nuevo")
        history = generator.calls[0]["history"]
        assert len(history) == 10
        assert [t.content for t in history] == [f"m{i}" for i in range(5, 15)]
        assert history[-1].role == "user"           # m14 was received
        assert history[-2].role == "assistant"

    @pytest.mark.asyncio
    async def test_rebinding_switches_agent(self, router, registry, generator, agent):
        other = await registry.create_agent("Ventas", "Eres vendedor.", agent_id="agent_2")
        await registry.bind_agent(CONTACT, agent.id)
        await router.handle_inbound(CONTACT, "hola")
        await registry.bind_agent(CONTACT, other.id)
        result = await router.handle_inbound(CONTACT, "hola otra vez")

        assert result.agent_id == "agent_2"
        assert generator.calls[1]["system_instruction"] == "Eres vendedor."

    @pytest.mark.asyncio
    async def test_generation_failure_still_logs_inbound(self, router, registry, message_log,
                                                         generator, agent, recorded):
        await registry.bind_agent(CONTACT, agent.id)
        generator.error = GenerationFailedError("rate limited")
        result = await router.handle_inbound(CONTACT, "hola")

        assert result.should_respond is False
        assert result.error_kind == RoutingErrorKind.GENERATION_FAILED
        entries = await message_log.recent(CONTACT, 10)
        assert [e.direction for e in entries] == [MessageDirection.RECEIVED]
        assert not any(e.get("direction") == "sent" for e in recorded if e["topic"] == "new_message")

    @pytest.mark.asyncio
    async def test_generation_timeout(self, registry, message_log, generator, hub, agent):
        router = SessionRouter(registry, message_log, generator, hub, generation_timeout_s=0.01)
        await registry.bind_agent(CONTACT, agent.id)
        generator.delay = 1.0
        result = await router.handle_inbound(CONTACT, "hola")
        assert result.error_kind == RoutingErrorKind.GENERATION_FAILED

    @pytest.mark.asyncio
    async def test_empty_reply_is_a_failure(self, router, registry, generator, agent):
        await registry.bind_agent(CONTACT, agent.id)
        generator.reply = "   "
        result = await router.handle_inbound(CONTACT, "hola")
        assert result.error_kind == RoutingErrorKind.GENERATION_FAILED

    @pytest.mark.asyncio
    async def test_inactive_agent_does_not_reply(self, router, registry, generator, agent):
        await registry.bind_agent(CONTACT, agent.id)
        await registry.set_agent_active(agent.id, False)
        result = await router.handle_inbound(CONTACT, "hola")
        assert result.error_kind == RoutingErrorKind.AGENT_INACTIVE
        assert result.agent_id == "agent_1"
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_deleted_agent(self, router, registry, store, agent):
        await registry.bind_agent(CONTACT, agent.id)
        store._agents.clear()
        result = await router.handle_inbound(CONTACT, "hola")
        assert result.error_kind == RoutingErrorKind.AGENT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_inbound_reactivates_archived_conversation(self, router, registry):
        await registry.find_or_create(CONTACT)
        await registry.archive(CONTACT)
        await router.handle_inbound(CONTACT, "hola")
        assert (await registry.get(CONTACT)).lifecycle.value == "active"

    @pytest.mark.asyncio
    async def test_reset_session(self, router, registry, agent):
        await registry.bind_agent(CONTACT, agent.id)
        await router.handle_inbound(CONTACT, "hola")
        assert len(router.sessions) == 1
        assert router.reset_session(CONTACT) == 1
        assert len(router.sessions) == 0


class TestRecordOutbound:

    @pytest.mark.asyncio
    async def test_logs_entry_and_updates_record(self, router, registry, message_log):
        entry = await router.record_outbound(CONTACT, "Hola Laura", external_message_id="SM9",
                                             metadata={"source": "operator"}, followup_batch_id="b1")
        assert entry.direction == MessageDirection.SENT
        assert [e.id for e in await message_log.recent(CONTACT, 10)] == [entry.id]
        record = await registry.get(CONTACT)
        assert record.last_outbound_text == "Hola Laura"
        assert record.extra_state["followup_batch_id"] == "b1"

    @pytest.mark.asyncio
    async def test_waits_for_reply_in_progress(self, router, registry, message_log,
                                               generator, agent):
        await registry.bind_agent(CONTACT, agent.id)
        generator.delay = 0.2
        inbound = asyncio.create_task(router.handle_inbound(CONTACT, "hola"))
        while not generator.calls:
            await asyncio.sleep(0)

        await router.record_outbound(CONTACT, "Mensaje del asesor")
        result = await inbound

        entries = await message_log.recent(CONTACT, 10)
        assert [e.content for e in entries] == ["hola", result.reply_text, "Mensaje del asesor"]
        assert (await registry.get(CONTACT)).last_outbound_text == "Mensaje del asesor"


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestSessionCache:

    def test_touch_reuses_live_session(self):
        cache = SessionCache(ttl_s=60, clock=_Clock())
        first = cache.touch("agent_1", CONTACT)
        second = cache.touch("agent_1", CONTACT)
        assert first.session_id == second.session_id
        assert second.turns == 2

    def test_idle_session_expires(self):
        clock = _Clock()
        cache = SessionCache(ttl_s=60, clock=clock)
        first = cache.touch("agent_1", CONTACT)
        clock.now += 61
        assert cache.get("agent_1", CONTACT) is None
        assert cache.touch("agent_1", CONTACT).session_id != first.session_id

    def test_lru_eviction(self):
        cache = SessionCache(ttl_s=60, max_size=2, clock=_Clock())
        cache.touch("a", "+571")
        cache.touch("a", "+572")
        cache.touch("a", "+571")
        cache.touch("a", "+573")
        assert len(cache) == 2
        assert cache.get("a", "+572") is None
        assert cache.get("a", "+571") is not None

    def test_sessions_are_per_agent(self):
        cache = SessionCache(clock=_Clock())
        cache.touch("agent_1", CONTACT)
        cache.touch("agent_2", CONTACT)
        assert len(cache) == 2
        assert cache.drop_contact(CONTACT) == 2

    def test_purge_expired(self):
        clock = _Clock()
        cache = SessionCache(ttl_s=10, clock=clock)
        cache.touch("a", "+571")
        clock.now += 5
        cache.touch("a", "+572")
        clock.now += 6
        assert cache.purge_expired() == 1
        assert len(cache) == 1
