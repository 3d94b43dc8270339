"""agent-relay wire protocol definitions.

JSON envelopes exchanged between browser clients, the relay server and
agent handler processes. Every envelope is a single JSON object carrying a
``type`` discriminant plus kind-specific camelCase fields; receivers ignore
discriminants they do not know.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .exceptions import ProtocolError


# Protocol constants
DEFAULT_RELAY_HOST = "localhost"
DEFAULT_RELAY_PORT = 4722
DEFAULT_API_PORT = 4723
PROTOCOL_ERROR_CLOSE_CODE = 1002

# Handler -> relay
REGISTER = "register"
UNREGISTER = "unregister"
MESSAGE = "message"          # also relay -> browser

# Browser -> relay
HELLO = "hello"
LIST_AGENTS = "list-agents"
RUN = "run"                  # also relay -> handler
CANCEL = "cancel"
UNDO = "undo"                # also relay -> handler
REDO = "redo"                # also relay -> handler

# Relay -> browser
AGENTS = "agents"
SESSION_ERROR = "session-error"

# Liveness, either direction
PING = "ping"
PONG = "pong"

HANDLER_MESSAGE_TYPES = frozenset({REGISTER, UNREGISTER, MESSAGE})
BROWSER_MESSAGE_TYPES = frozenset({HELLO, LIST_AGENTS, RUN, CANCEL, UNDO, REDO})
INVOCATION_TYPES = frozenset({RUN, UNDO, REDO})

# AgentMessage kinds
CONTENT = "content"
ERROR = "error"
DONE = "done"
TERMINAL_KINDS = frozenset({ERROR, DONE})

# session-error reasons
UNKNOWN_AGENT = "unknown agent"
HANDLER_DISCONNECTED = "handler disconnected"
DUPLICATE_SESSION = "duplicate session id"
RELAY_SHUTDOWN = "relay shutting down"


def _require_str(data: Dict[str, Any], key: str, msg_type: str,
                 allow_empty: bool = False) -> str:
    value = data.get(key)
    if not isinstance(value, str) or (not value and not allow_empty):
        raise ProtocolError(f"{msg_type}: missing or invalid '{key}'")
    return value


def _optional_context(data: Dict[str, Any], msg_type: str) -> Optional[Dict[str, Any]]:
    context = data.get("context")
    if context is not None and not isinstance(context, dict):
        raise ProtocolError(f"{msg_type}: 'context' must be an object")
    return context


# ========== Agent output ==========

@dataclass
class AgentMessage:
    """One unit of streamed agent output.

    ``type`` is one of ``content``, ``error`` or ``done``; other kinds
    (tool notices, status lines) pass through untouched. Unknown extra
    keys are kept in ``extra`` so they survive the round trip.
    """
    type: str
    content: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_KINDS

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data["type"] = self.type
        data["content"] = self.content
        return data

    @classmethod
    def from_dict(cls, data: Any) -> 'AgentMessage':
        if not isinstance(data, dict):
            raise ProtocolError("agent message must be an object")
        kind = data.get("type")
        if not isinstance(kind, str) or not kind:
            raise ProtocolError("agent message: missing or invalid 'type'")
        content = data.get("content")
        if content is None:
            content = ""
        elif not isinstance(content, str):
            raise ProtocolError("agent message: 'content' must be a string")
        extra = {k: v for k, v in data.items() if k not in ("type", "content")}
        return cls(type=kind, content=content, extra=extra)

    @classmethod
    def coerce(cls, value: Union['AgentMessage', Dict[str, Any]]) -> 'AgentMessage':
        """Accept either an AgentMessage or its dict form."""
        if isinstance(value, cls):
            return value
        return cls.from_dict(value)


def content_message(text: str) -> AgentMessage:
    return AgentMessage(type=CONTENT, content=text)


def error_message(text: str) -> AgentMessage:
    return AgentMessage(type=ERROR, content=text)


def done_message() -> AgentMessage:
    return AgentMessage(type=DONE, content="")


# ========== Handler -> relay ==========

@dataclass
class Register:
    """Claim an agent id for the sending connection."""
    agent_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": REGISTER, "agentId": self.agent_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Register':
        return cls(agent_id=_require_str(data, "agentId", REGISTER))


@dataclass
class Unregister:
    """Release an agent id held by the sending connection."""
    agent_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": UNREGISTER, "agentId": self.agent_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Unregister':
        return cls(agent_id=_require_str(data, "agentId", UNREGISTER))


@dataclass
class SessionMessage:
    """One AgentMessage tagged with its session.

    Same shape handler -> relay and relay -> browser.
    """
    session_id: str
    message: AgentMessage

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": MESSAGE,
            "sessionId": self.session_id,
            "message": self.message.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SessionMessage':
        return cls(
            session_id=_require_str(data, "sessionId", MESSAGE),
            message=AgentMessage.from_dict(data.get("message")),
        )


# ========== Browser -> relay ==========

@dataclass
class RunRequest:
    """Ask an agent to run a prompt. The session id is chosen client-side."""
    session_id: str
    agent_id: str
    prompt: str
    context: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": RUN,
            "sessionId": self.session_id,
            "agentId": self.agent_id,
            "prompt": self.prompt,
        }
        if self.context is not None:
            data["context"] = self.context
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RunRequest':
        return cls(
            session_id=_require_str(data, "sessionId", RUN),
            agent_id=_require_str(data, "agentId", RUN),
            prompt=_require_str(data, "prompt", RUN, allow_empty=True),
            context=_optional_context(data, RUN),
        )

    def invocation(self) -> 'Invocation':
        return Invocation(method=RUN, session_id=self.session_id,
                          prompt=self.prompt, context=self.context)


@dataclass
class HistoryRequest:
    """Ask an agent to undo or redo its last change."""
    action: str  # undo, redo
    session_id: str
    agent_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.action, "sessionId": self.session_id,
                "agentId": self.agent_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HistoryRequest':
        action = data.get("type")
        if action not in (UNDO, REDO):
            raise ProtocolError(f"Not a history request: {action!r}")
        return cls(
            action=action,
            session_id=_require_str(data, "sessionId", action),
            agent_id=_require_str(data, "agentId", action),
        )

    def invocation(self) -> 'Invocation':
        return Invocation(method=self.action, session_id=self.session_id)


@dataclass
class Cancel:
    """Stop delivering output for a session."""
    session_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": CANCEL, "sessionId": self.session_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Cancel':
        return cls(session_id=_require_str(data, "sessionId", CANCEL))


# ========== Relay -> browser ==========

@dataclass
class AgentsSnapshot:
    """Current set of registered agent ids."""
    agent_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": AGENTS, "agentIds": list(self.agent_ids)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AgentsSnapshot':
        agent_ids = data.get("agentIds")
        if not isinstance(agent_ids, list) or not all(isinstance(a, str) for a in agent_ids):
            raise ProtocolError(f"{AGENTS}: 'agentIds' must be a list of strings")
        return cls(agent_ids=agent_ids)


@dataclass
class SessionErrorMessage:
    """Relay-level failure of a session (not an agent-authored error)."""
    session_id: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": SESSION_ERROR, "sessionId": self.session_id,
                "reason": self.reason}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SessionErrorMessage':
        return cls(
            session_id=_require_str(data, "sessionId", SESSION_ERROR),
            reason=_require_str(data, "reason", SESSION_ERROR, allow_empty=True),
        )


# ========== Relay -> handler ==========

@dataclass
class Invocation:
    """Work forwarded to a handler: run a prompt, or undo/redo."""
    method: str  # run, undo, redo
    session_id: str
    prompt: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.method, "sessionId": self.session_id}
        if self.method == RUN:
            data["prompt"] = self.prompt or ""
            if self.context is not None:
                data["context"] = self.context
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Invocation':
        method = data.get("type")
        if method not in INVOCATION_TYPES:
            raise ProtocolError(f"Not an invocation: {method!r}")
        session_id = _require_str(data, "sessionId", method)
        if method == RUN:
            return cls(method=RUN, session_id=session_id,
                       prompt=_require_str(data, "prompt", RUN, allow_empty=True),
                       context=_optional_context(data, RUN))
        return cls(method=method, session_id=session_id)


# ========== Codec ==========

def decode(raw: Union[str, bytes]) -> Dict[str, Any]:
    """Parse one transport frame into an envelope dict.

    Raises:
        ProtocolError: If the frame is not a JSON object with a string ``type``
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid JSON: {e}")

    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object")
    if not isinstance(data.get("type"), str):
        raise ProtocolError("Message is missing its 'type' discriminant")
    return data


def encode(message: Any) -> str:
    """Serialize an envelope (dataclass with ``to_dict`` or a plain dict)."""
    if hasattr(message, "to_dict"):
        message = message.to_dict()
    return json.dumps(message)
