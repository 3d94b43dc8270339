"""
agent-relay - Session Registry

In-memory registration entries (agent id -> handler connection) and the
session table (session id -> routing state). Owned by a single RelayServer
and only mutated from its event loop, one message at a time.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from . import protocol

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Session lifecycle states."""
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.FAILED,
                        SessionState.CANCELLED)


@dataclass(eq=False)
class Session:
    """One in-flight run (or undo/redo) request"""
    session_id: str
    agent_id: str
    requester: Any  # browser connection
    handler: Any    # handler connection serving it
    kind: str = protocol.RUN
    state: SessionState = SessionState.PENDING
    created_at: datetime = field(default_factory=datetime.now)
    # Stats
    messages_forwarded: int = 0


class SessionRegistry:
    """Registration entries and session table for one relay"""

    def __init__(self):
        # agent_id -> handler connection
        self.registrations: Dict[str, Any] = {}

        # session_id -> Session
        self.sessions: Dict[str, Session] = {}

    # =========================================================================
    # Registrations
    # =========================================================================

    def register(self, agent_id: str, conn: Any) -> Optional[Any]:
        """Point agent_id at conn. Last writer wins.

        Returns the connection previously serving agent_id, if any.
        """
        previous = self.registrations.get(agent_id)
        self.registrations[agent_id] = conn
        return previous

    def unregister(self, agent_id: str, conn: Any) -> bool:
        """Remove agent_id if conn currently owns it."""
        if self.registrations.get(agent_id) is not conn:
            return False
        del self.registrations[agent_id]
        return True

    def drop_handler(self, conn: Any) -> List[str]:
        """Remove every entry owned by conn; returns the removed agent ids."""
        removed = [agent_id for agent_id, owner in self.registrations.items()
                   if owner is conn]
        for agent_id in removed:
            del self.registrations[agent_id]
        return removed

    def handler_for(self, agent_id: str) -> Optional[Any]:
        return self.registrations.get(agent_id)

    def agent_ids(self) -> List[str]:
        return list(self.registrations)

    # =========================================================================
    # Sessions
    # =========================================================================

    def open_session(self, session_id: str, agent_id: str, requester: Any,
                     handler: Any, kind: str = protocol.RUN) -> Session:
        if session_id in self.sessions:
            raise KeyError(f"Session already exists: {session_id}")
        session = Session(session_id=session_id, agent_id=agent_id,
                          requester=requester, handler=handler, kind=kind)
        self.sessions[session_id] = session
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.sessions.get(session_id)

    def record_output(self, session: Session,
                      message: protocol.AgentMessage) -> SessionState:
        """Advance a session for one forwarded message.

        A terminal message completes and removes the session; anything else
        moves it to streaming.
        """
        session.messages_forwarded += 1
        if message.is_terminal:
            self.close_session(session.session_id, SessionState.COMPLETED)
        elif session.state is SessionState.PENDING:
            session.state = SessionState.STREAMING
        return session.state

    def close_session(self, session_id: str,
                      state: SessionState) -> Optional[Session]:
        """Move a session to a terminal state and drop it from the table."""
        session = self.sessions.pop(session_id, None)
        if session is None:
            return None
        session.state = state
        logger.info(f"Session {session_id} ({session.agent_id}) {state.value} "
                    f"after {session.messages_forwarded} message(s)")
        return session

    def sessions_for_handler(self, conn: Any,
                             agent_id: Optional[str] = None) -> List[Session]:
        return [s for s in self.sessions.values()
                if s.handler is conn and (agent_id is None or s.agent_id == agent_id)]

    def sessions_for_requester(self, conn: Any) -> List[Session]:
        return [s for s in self.sessions.values() if s.requester is conn]

    def clear(self):
        self.registrations.clear()
        self.sessions.clear()

    # =========================================================================
    # Status
    # =========================================================================

    def get_status(self) -> Dict[str, Any]:
        """Get registry status for monitoring"""
        return {
            "handlers": self.agent_ids(),
            "sessions_active": len(self.sessions),
            "sessions": [
                {
                    "session_id": s.session_id,
                    "agent_id": s.agent_id,
                    "kind": s.kind,
                    "state": s.state.value,
                    "created_at": s.created_at.isoformat(),
                    "messages_forwarded": s.messages_forwarded,
                }
                for s in self.sessions.values()
            ],
        }
