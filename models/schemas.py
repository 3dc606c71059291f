"""
Core data models for the Campaign Relay service.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class BatchStatus(str, Enum):
    NONE = "none"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_BATCH_STATUSES


TERMINAL_BATCH_STATUSES = frozenset({
    BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.CANCELLED,
})


class RecipientStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RecipientStatus.COMPLETED, RecipientStatus.FAILED, RecipientStatus.CANCELLED)


class MessageDirection(str, Enum):
    SENT = "sent"
    RECEIVED = "received"


class ConversationLifecycle(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class RoutingErrorKind(str, Enum):
    NO_AGENT_BOUND = "NoAgentBound"
    AGENT_NOT_FOUND = "AgentNotFound"
    AGENT_INACTIVE = "AgentInactive"
    GENERATION_FAILED = "GenerationFailed"


class SideEffectStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class EventTopic(str, Enum):
    NEW_MESSAGE = "new_message"
    CONVERSATION_UPDATE = "conversation_update"
    NEW_CONVERSATION = "new_conversation"
    BATCH_PROGRESS = "batch_progress"
    BATCH_COMPLETED = "batch_completed"
    BATCH_STALE = "batch_stale"


# Provider vocabulary → our enums. Unknown recipient statuses are treated as
# still in flight so they never trigger the one-shot side effect.
_PROVIDER_RECIPIENT_STATUS: dict[str, RecipientStatus] = {
    "pending": RecipientStatus.PENDING,
    "scheduled": RecipientStatus.PENDING,
    "queued": RecipientStatus.PENDING,
    "initiated": RecipientStatus.IN_PROGRESS,
    "dialing": RecipientStatus.IN_PROGRESS,
    "ringing": RecipientStatus.IN_PROGRESS,
    "in_progress": RecipientStatus.IN_PROGRESS,
    "in-progress": RecipientStatus.IN_PROGRESS,
    "completed": RecipientStatus.COMPLETED,
    "finished": RecipientStatus.COMPLETED,
    "ended": RecipientStatus.COMPLETED,
    "done": RecipientStatus.COMPLETED,
    "failed": RecipientStatus.FAILED,
    "error": RecipientStatus.FAILED,
    "busy": RecipientStatus.FAILED,
    "no_answer": RecipientStatus.FAILED,
    "no-answer": RecipientStatus.FAILED,
    "voicemail": RecipientStatus.FAILED,
    "cancelled": RecipientStatus.CANCELLED,
    "canceled": RecipientStatus.CANCELLED,
}

_PROVIDER_BATCH_STATUS: dict[str, BatchStatus] = {
    "pending": BatchStatus.IN_PROGRESS,
    "scheduled": BatchStatus.IN_PROGRESS,
    "initiated": BatchStatus.IN_PROGRESS,
    "in_progress": BatchStatus.IN_PROGRESS,
    "in-progress": BatchStatus.IN_PROGRESS,
    "completed": BatchStatus.COMPLETED,
    "failed": BatchStatus.FAILED,
    "cancelled": BatchStatus.CANCELLED,
    "canceled": BatchStatus.CANCELLED,
}


def normalize_recipient_status(raw: Any) -> RecipientStatus:
    if isinstance(raw, RecipientStatus):
        return raw
    return _PROVIDER_RECIPIENT_STATUS.get(str(raw or "").strip().lower(), RecipientStatus.IN_PROGRESS)


def normalize_batch_status(raw: Any) -> BatchStatus:
    if isinstance(raw, BatchStatus):
        return BatchStatus.IN_PROGRESS if raw == BatchStatus.NONE else raw
    return _PROVIDER_BATCH_STATUS.get(str(raw or "").strip().lower(), BatchStatus.IN_PROGRESS)


# ──────────────────────────────────────────────────────────────
#  Agents
# ──────────────────────────────────────────────────────────────

class Agent(BaseModel):
    """AI agent configuration used to steer replies on a conversation."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    name: str
    system_instruction: str = ""
    language: str = "es"
    is_active: bool = True
    owner_id: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Conversations & message log
# ──────────────────────────────────────────────────────────────

class ConversationRecord(BaseModel):
    """Authoritative per-contact record. One per contact_id."""
    contact_id: str
    last_outbound_text: Optional[str] = None
    has_started: bool = False
    bound_agent_id: Optional[str] = None
    extra_state: dict[str, Any] = {}
    lifecycle: ConversationLifecycle = ConversationLifecycle.ACTIVE
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class MessageLogEntry(BaseModel):
    """A single immutable message in a contact's log."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    contact_id: str
    direction: MessageDirection
    content: str
    external_message_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = {}


class HistoryTurn(BaseModel):
    role: str                                   # "user" | "assistant"
    content: str


class InboundResult(BaseModel):
    """Outcome of routing one inbound message."""
    should_respond: bool
    reply_text: Optional[str] = None
    error_kind: Optional[RoutingErrorKind] = None
    agent_id: Optional[str] = None
    inbound_message_id: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Batch calls
# ──────────────────────────────────────────────────────────────

class RecipientCallState(BaseModel):
    """Per-recipient call state derived from a provider snapshot."""
    contact_id: str
    status: RecipientStatus
    name: str = ""
    recipient_id: str = ""
    conversation_id: str = ""
    variables: dict[str, Any] = {}

    @classmethod
    def from_provider(cls, raw: dict[str, Any]) -> "RecipientCallState":
        contact_id = str(raw.get("phone_number") or raw.get("contact_id") or "").strip()
        if not contact_id:
            raise ValueError("recipient without phone_number")
        variables = raw.get("variables")
        if not isinstance(variables, dict):
            client_data = raw.get("conversation_initiation_client_data") or {}
            variables = client_data.get("dynamic_variables") if isinstance(client_data, dict) else None
        if not isinstance(variables, dict):
            variables = {}
        name = raw.get("name") or variables.get("name") or ""
        return cls(
            contact_id=contact_id,
            status=normalize_recipient_status(raw.get("status")),
            name=str(name),
            recipient_id=str(raw.get("id") or ""),
            conversation_id=str(raw.get("conversation_id") or ""),
            variables=variables,
        )


class ProviderBatchSnapshot(BaseModel):
    """Validated view of the provider's batch status payload."""
    batch_id: str
    status: BatchStatus = BatchStatus.IN_PROGRESS
    recipients: list[RecipientCallState] = []
    raw: dict[str, Any] = {}

    @model_validator(mode="after")
    def _dedupe_recipients(self) -> "ProviderBatchSnapshot":
        # Last occurrence of a contact wins; order of first appearance is kept.
        latest: dict[str, RecipientCallState] = {}
        for r in self.recipients:
            latest[r.contact_id] = r
        if len(latest) != len(self.recipients):
            self.recipients = list(latest.values())
        if self.status == BatchStatus.NONE:
            self.status = BatchStatus.IN_PROGRESS
        return self

    @classmethod
    def from_provider(cls, payload: dict[str, Any], batch_id: str = "") -> "ProviderBatchSnapshot":
        if not isinstance(payload, dict):
            raise ValueError("provider payload must be an object")
        recipients = []
        for raw in payload.get("recipients") or []:
            if isinstance(raw, dict) and (raw.get("phone_number") or raw.get("contact_id")):
                recipients.append(RecipientCallState.from_provider(raw))
        return cls(
            batch_id=str(payload.get("id") or payload.get("batch_id") or batch_id),
            status=normalize_batch_status(payload.get("status")),
            recipients=recipients,
            raw=payload,
        )

    @property
    def terminal_recipients(self) -> list[RecipientCallState]:
        return [r for r in self.recipients if r.status.is_terminal]

    def count(self, *statuses: RecipientStatus) -> int:
        return sum(1 for r in self.recipients if r.status in statuses)


class BatchCallRecord(BaseModel):
    """Authoritative record of a group's outbound bulk-call operation."""
    group_id: str
    batch_id: str = ""
    status: BatchStatus = BatchStatus.NONE
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_recipients: int = Field(default=0, ge=0)
    completed_count: int = Field(default=0, ge=0)
    failed_count: int = Field(default=0, ge=0)
    raw_provider_snapshot: dict[str, Any] = {}
    call_name: str = ""
    agent_id: str = ""
    metadata: dict[str, Any] = {}
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class BatchStats(BaseModel):
    has_been_called: bool = False
    status: BatchStatus = BatchStatus.NONE
    total_recipients: int = 0
    completed_count: int = 0
    failed_count: int = 0
    success_rate: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    is_stale: bool = False


class BatchSubmission(BaseModel):
    """What the call provider returns when a batch is submitted."""
    batch_id: str
    recipients_count: int = 0
    raw: dict[str, Any] = {}


class SendReceipt(BaseModel):
    external_message_id: str = ""
    status: str = "sent"


# ──────────────────────────────────────────────────────────────
#  One-shot side effects
# ──────────────────────────────────────────────────────────────

class SideEffectRecord(BaseModel):
    """Outcome of the one-shot side effect for a (batch, recipient) pair."""
    batch_id: str
    contact_id: str
    group_id: str = ""
    status: SideEffectStatus = SideEffectStatus.PENDING
    attempts: int = 0
    error: str = ""
    result: dict[str, Any] = {}
    recipient: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None
