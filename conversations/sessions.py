"""
Warm agent sessions keyed by (agent_id, contact_id).

Only bookkeeping lives here (session id, turn count, last use). History is
always rebuilt from the message log, so losing the cache changes nothing
about the replies a contact gets.
"""
from __future__ import annotations

import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog

logger = structlog.get_logger()


@dataclass
class AgentSession:
    agent_id: str
    contact_id: str
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    created_at: float = 0.0
    last_used_at: float = 0.0
    turns: int = 0


class SessionCache:
    """LRU cache with a per-entry idle TTL."""

    def __init__(self, ttl_s: float = 1800.0, max_size: int = 1000,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_s = ttl_s
        self.max_size = max(1, max_size)
        self._clock = clock
        self._sessions: OrderedDict[tuple[str, str], AgentSession] = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def _expired(self, session: AgentSession, now: float) -> bool:
        return self.ttl_s > 0 and now - session.last_used_at > self.ttl_s

    def get(self, agent_id: str, contact_id: str) -> Optional[AgentSession]:
        key = (agent_id, contact_id)
        session = self._sessions.get(key)
        if session is None:
            return None
        if self._expired(session, self._clock()):
            del self._sessions[key]
            return None
        return session

    def touch(self, agent_id: str, contact_id: str) -> AgentSession:
        """Return the live session for the pair, creating one if needed."""
        now = self._clock()
        key = (agent_id, contact_id)
        session = self.get(agent_id, contact_id)
        if session is None:
            session = AgentSession(agent_id=agent_id, contact_id=contact_id, created_at=now)
            self._sessions[key] = session
            logger.debug("agent_session_created", agent_id=agent_id,
                         contact_id=contact_id, session_id=session.session_id)
        session.last_used_at = now
        session.turns += 1
        self._sessions.move_to_end(key)
        while len(self._sessions) > self.max_size:
            evicted_key, _ = self._sessions.popitem(last=False)
            logger.debug("agent_session_evicted", agent_id=evicted_key[0], contact_id=evicted_key[1])
        return session

    def drop_contact(self, contact_id: str) -> int:
        """Forget every session for the contact. Returns how many were dropped."""
        keys = [k for k in self._sessions if k[1] == contact_id]
        for key in keys:
            del self._sessions[key]
        return len(keys)

    def purge_expired(self) -> int:
        now = self._clock()
        keys = [k for k, s in self._sessions.items() if self._expired(s, now)]
        for key in keys:
            del self._sessions[key]
        return len(keys)

    def clear(self) -> None:
        self._sessions.clear()
