"""agent-relay exceptions.

Exception hierarchy shared by the relay server and both client libraries.
"""


class RelayError(Exception):
    """Base exception for all agent-relay errors."""
    pass


class RelayConnectionError(RelayError):
    """Failed to connect to the relay or the connection was lost."""
    pass


class ProtocolError(RelayError):
    """Malformed, misdirected or out-of-order protocol message."""
    pass


class SessionError(RelayError):
    """The relay could not serve a session.

    Raised from a run stream when the relay reports a ``session-error``
    (unknown agent, handler disconnected mid-run, ...). Distinct from an
    agent-authored ``error`` message, which is delivered as a regular
    AgentMessage.

    Attributes:
        session_id: The session the relay gave up on
        reason: Relay-supplied reason text
    """
    def __init__(self, session_id: str, reason: str):
        super().__init__(f"Session {session_id} failed: {reason}")
        self.session_id = session_id
        self.reason = reason


class AgentError(RelayError):
    """An agent reported an ``error`` for an undo/redo operation.

    Attributes:
        session_id: The session carrying the operation
        content: Error text reported by the agent
    """
    def __init__(self, session_id: str, content: str):
        super().__init__(content or "Unknown error")
        self.session_id = session_id
        self.content = content


class ConfigError(RelayError):
    """Invalid configuration value."""
    pass
