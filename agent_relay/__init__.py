"""
agent-relay

Local WebSocket relay that lets a browser overlay drive coding agents
running on the same machine.
"""

__version__ = "0.1.0"

from .agents import EchoAgent
from .exceptions import (
    AgentError,
    ConfigError,
    ProtocolError,
    RelayConnectionError,
    RelayError,
    SessionError,
)
from .handler import AgentHandler, HandlerConnection, connect_relay
from .protocol import AgentMessage
from .provider import AgentProvider, RunStream
from .server import RelayServer

__all__ = [
    'RelayServer',
    'AgentProvider',
    'RunStream',
    'AgentHandler',
    'HandlerConnection',
    'connect_relay',
    'AgentMessage',
    'EchoAgent',
    'RelayError',
    'RelayConnectionError',
    'ProtocolError',
    'SessionError',
    'AgentError',
    'ConfigError',
]
