"""
Error taxonomy for campaign coordination and session routing.

Structural errors (bad state, unknown entities) are raised before any
mutation happens. Transient errors carry retryable=True and are logged and
retried on the next cycle by whoever owns the loop.
"""
from __future__ import annotations


class CampaignError(Exception):
    """Base exception for all campaign / routing operations."""

    kind: str = "CampaignError"
    status_code: int = 400

    def __init__(self, message: str = "", retryable: bool = False):
        self.retryable = retryable
        super().__init__(message or self.kind)


class AlreadyInProgressError(CampaignError):
    kind = "AlreadyInProgress"
    status_code = 409

    def __init__(self, group_id: str, batch_id: str = ""):
        self.group_id = group_id
        self.batch_id = batch_id
        super().__init__(f"Group {group_id} already has batch {batch_id or '?'} in progress")


class NoBatchStartedError(CampaignError):
    kind = "NoBatchStarted"
    status_code = 404

    def __init__(self, group_id: str):
        self.group_id = group_id
        super().__init__(f"No batch has been started for group {group_id}")


class BatchMismatchError(CampaignError):
    kind = "BatchMismatch"
    status_code = 409

    def __init__(self, group_id: str, expected: str, got: str):
        self.group_id = group_id
        self.expected = expected
        self.got = got
        super().__init__(f"Snapshot for batch {got} does not match group {group_id} batch {expected}")


class AgentNotFoundError(CampaignError):
    kind = "AgentNotFound"
    status_code = 404

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} not found")


class AgentInactiveError(CampaignError):
    kind = "AgentInactive"
    status_code = 422

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} is inactive")


class NoAgentBoundError(CampaignError):
    kind = "NoAgentBound"
    status_code = 422

    def __init__(self, contact_id: str):
        self.contact_id = contact_id
        super().__init__(f"No agent bound to conversation {contact_id}")


class ConversationNotFoundError(CampaignError):
    kind = "ConversationNotFound"
    status_code = 404

    def __init__(self, contact_id: str):
        self.contact_id = contact_id
        super().__init__(f"Conversation {contact_id} not found")


class GenerationFailedError(CampaignError):
    kind = "GenerationFailed"
    status_code = 502

    def __init__(self, message: str = "Reply generation failed"):
        super().__init__(message, retryable=True)


class ProviderUnavailableError(CampaignError):
    kind = "ProviderUnavailable"
    status_code = 502

    def __init__(self, provider: str, message: str = ""):
        self.provider = provider
        super().__init__(f"{provider} unavailable: {message}" if message else f"{provider} unavailable",
                         retryable=True)
