"""Shared test fixtures for CampaignRelay."""
import asyncio
from typing import Any, Optional

import pytest

from config.settings import FollowUpConfig, Settings
from conversations.registry import ConversationRegistry
from conversations.router import SessionRouter
from core.errors import ProviderUnavailableError
from database.store_factory import reset_store
from database.store_memory import InMemoryMessageLog, InMemoryRecordStore
from events.hub import EventHub
from models.schemas import (
    BatchSubmission, HistoryTurn, ProviderBatchSnapshot, SendReceipt,
)


# ──────────────────────────────────────────────────────────────
#  Fakes for the external collaborators
# ──────────────────────────────────────────────────────────────

class FakeCallProvider:
    """Scriptable batch-calling provider. Payloads use the provider's vocabulary."""

    def __init__(self):
        self.payloads: dict[str, dict[str, Any]] = {}
        self.submitted: list[dict[str, Any]] = []
        self.cancelled: list[str] = []
        self.retried: list[str] = []
        self.status_calls = 0
        self.unavailable = False
        self._next = 0

    async def start_batch_call(self, group_id, recipients, agent_phone_number_id,
                               scheduled_time=None, call_name="", agent_id=""):
        self._next += 1
        batch_id = f"btcal_{self._next}"
        self.submitted.append({
            "group_id": group_id, "batch_id": batch_id, "recipients": recipients,
            "agent_phone_number_id": agent_phone_number_id, "agent_id": agent_id,
        })
        self.payloads[batch_id] = {
            "id": batch_id,
            "status": "in_progress",
            "recipients": [
                {"phone_number": r["phone_number"], "status": "pending",
                 "conversation_initiation_client_data": {
                     "dynamic_variables": {"name": r.get("name", "")}}}
                for r in recipients
            ],
        }
        return BatchSubmission(batch_id=batch_id, recipients_count=len(recipients))

    def set_recipient(self, batch_id: str, phone: str, status: str) -> None:
        for r in self.payloads[batch_id]["recipients"]:
            if r["phone_number"] == phone:
                r["status"] = status

    def set_status(self, batch_id: str, status: str) -> None:
        self.payloads[batch_id]["status"] = status

    async def get_batch_status(self, batch_id: str) -> ProviderBatchSnapshot:
        self.status_calls += 1
        if self.unavailable:
            raise ProviderUnavailableError("fake", "down")
        return ProviderBatchSnapshot.from_provider(self.payloads[batch_id], batch_id=batch_id)

    async def cancel_batch(self, batch_id: str) -> dict[str, Any]:
        self.cancelled.append(batch_id)
        self.set_status(batch_id, "cancelled")
        return {"id": batch_id, "status": "cancelled"}

    async def retry_batch(self, batch_id: str) -> dict[str, Any]:
        self.retried.append(batch_id)
        self.set_status(batch_id, "in_progress")
        return {"id": batch_id, "status": "in_progress"}

    async def list_batches(self) -> list[dict[str, Any]]:
        if self.unavailable:
            raise ProviderUnavailableError("fake", "down")
        return [{"id": p["id"], "status": p["status"]} for p in self.payloads.values()]


class FakeTransport:
    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    async def send(self, contact_id: str, text: str) -> SendReceipt:
        if self.fail:
            raise ProviderUnavailableError("fake_whatsapp", "down")
        self.sent.append((contact_id, text))
        return SendReceipt(external_message_id=f"SM{len(self.sent)}", status="queued")


class FakeGenerator:
    def __init__(self, reply: str = "¡Claro! ¿En qué te ayudo?"):
        self.reply = reply
        self.calls: list[dict[str, Any]] = []
        self.error: Optional[Exception] = None
        self.delay = 0.0

    async def generate_reply(self, system_instruction: str, history: list[HistoryTurn],
                             message: str) -> str:
        self.calls.append({"system_instruction": system_instruction,
                           "history": list(history), "message": message})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def _reset_store_singletons():
    reset_store()
    yield
    reset_store()


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def message_log():
    return InMemoryMessageLog()


@pytest.fixture
def hub():
    return EventHub()


@pytest.fixture
def registry(store, hub):
    return ConversationRegistry(store, hub)


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def provider():
    return FakeCallProvider()


@pytest.fixture
def router(registry, message_log, generator, hub):
    return SessionRouter(registry, message_log, generator, hub, generation_timeout_s=1.0)


@pytest.fixture
def settings():
    s = Settings()
    s.monitor.poll_interval_s = 0
    s.followup = FollowUpConfig(message_template="Hola {name}, seguimos por aquí.")
    return s


@pytest.fixture
def recorded(hub):
    """Every event published on the hub, in order."""
    events: list[dict[str, Any]] = []
    for topic in ("new_message", "conversation_update", "new_conversation",
                  "batch_progress", "batch_completed", "batch_stale"):
        hub.subscribe(topic, events.append)
    return events


@pytest.fixture
def make_recipients():
    def _make(n: int, prefix: str = "+5731000000") -> list[dict[str, Any]]:
        return [{"phone_number": f"{prefix}{i:02d}", "name": f"Cliente {i}"} for i in range(n)]
    return _make
