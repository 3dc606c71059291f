"""
Conversations — per-contact records, warm agent sessions and inbound routing.
"""
from conversations.registry import ConversationRegistry
from conversations.sessions import AgentSession, SessionCache
from conversations.router import SessionRouter

__all__ = ["ConversationRegistry", "AgentSession", "SessionCache", "SessionRouter"]
