"""
agent-relay - Relay Server

WebSocket broker that lets a browser overlay talk to coding-agent
processes running on the same machine.

Architecture:
    [Browser overlay] <--> [Relay Server] <--> [Agent handler process]

Both sides connect outbound to the relay, which routes messages between
them. A connection stays unclassified until its first message: ``register``
makes it a handler, any browser message (``hello``, ``list-agents``,
``run``, ...) makes it a browser client.

Environment Variables:
    AGENT_RELAY_HOST: Host to bind to (default: localhost)
    AGENT_RELAY_PORT: Port to listen on (default: 4722)
    AGENT_RELAY_API_PORT: Status API port (default: 4723)
    AGENT_RELAY_NO_API: Disable the status API
"""

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from . import protocol
from .config import RelayConfig
from .exceptions import ProtocolError
from .registry import Session, SessionRegistry, SessionState

logger = logging.getLogger(__name__)


class PeerRole(Enum):
    """What a connection turned out to be"""
    UNCLASSIFIED = "unclassified"
    HANDLER = "handler"
    BROWSER = "browser"


@dataclass(eq=False)
class Peer:
    """One accepted connection with its outbound buffer.

    Routing only ever enqueues; a per-peer writer task drains the queue
    into the socket, so a slow consumer never stalls other sessions.
    """
    ws: ServerConnection
    role: PeerRole = PeerRole.UNCLASSIFIED
    connected_at: datetime = field(default_factory=datetime.now)
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    # Stats
    messages_received: int = 0
    messages_sent: int = 0
    _writer: Optional[asyncio.Task] = field(default=None, repr=False)
    _closed: bool = False

    @property
    def address(self):
        return self.ws.remote_address

    def to_dict(self) -> Dict[str, Any]:
        host, port = self.address[:2]
        return {
            "role": self.role.value,
            "address": f"{host}:{port}",
            "connected_at": self.connected_at.isoformat(),
            "messages_received": self.messages_received,
            "messages_sent": self.messages_sent,
        }

    def start(self):
        self._writer = asyncio.create_task(self._drain())

    def send(self, message: Any) -> bool:
        """Queue an envelope for delivery without waiting on the socket"""
        if self._closed:
            return False
        self.outbox.put_nowait(protocol.encode(message))
        return True

    async def _drain(self):
        while True:
            data = await self.outbox.get()
            try:
                await self.ws.send(data)
                self.messages_sent += 1
            except ConnectionClosed:
                # Nothing more can be delivered; keep acknowledging so flush() returns
                self._closed = True
            finally:
                self.outbox.task_done()

    async def flush(self, timeout: float = 1.0):
        """Wait (bounded) until everything queued so far has been written"""
        if self._writer is None:
            return
        try:
            await asyncio.wait_for(self.outbox.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Timed out flushing {self.outbox.qsize()} message(s) to {self.address}")

    async def close(self):
        self._closed = True
        if self._writer is not None:
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None


class RelayServer:
    """Relay between browser clients and agent handlers"""

    def __init__(self, host: str = protocol.DEFAULT_RELAY_HOST,
                 port: int = protocol.DEFAULT_RELAY_PORT,
                 ping_interval: Optional[float] = 30.0,
                 ping_timeout: Optional[float] = 10.0):
        self.host = host
        self.port = port
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.registry = SessionRegistry()
        self._peers: Dict[Peer, None] = {}
        self._server = None
        self._running = False

    @classmethod
    def from_config(cls, config: RelayConfig) -> 'RelayServer':
        return cls(host=config.host, port=config.port,
                   ping_interval=config.ping_interval,
                   ping_timeout=config.ping_timeout)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    def _peers_with_role(self, role: PeerRole) -> List[Peer]:
        return [peer for peer in self._peers if peer.role is role]

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def handle_connection(self, websocket: ServerConnection):
        """Handle a new WebSocket connection"""
        remote_addr = websocket.remote_address
        logger.info(f"New connection from {remote_addr}")

        peer = Peer(ws=websocket)
        peer.start()
        self._peers[peer] = None

        try:
            async for message in websocket:
                peer.messages_received += 1
                try:
                    self.dispatch(peer, message)
                except ProtocolError as e:
                    logger.warning(f"Protocol error from {remote_addr} "
                                   f"({peer.role.value}): {e}")
                    reason = str(e).encode()[:120].decode(errors="ignore")
                    await websocket.close(code=protocol.PROTOCOL_ERROR_CLOSE_CODE,
                                          reason=reason)
                    break
                except Exception as e:
                    logger.error(f"Error handling message from {remote_addr}: {e}",
                                 exc_info=True)
        except ConnectionClosed as e:
            logger.info(f"Connection lost: {remote_addr} ({e})")
        except Exception as e:
            logger.error(f"Connection error: {e}", exc_info=True)
        finally:
            self._peers.pop(peer, None)
            self.on_disconnect(peer)
            await peer.close()
            logger.info(f"Connection closed: {remote_addr}")

    def dispatch(self, peer: Peer, raw):
        """Route one inbound frame.

        Runs to completion without awaiting, so registry and session
        updates are applied one message at a time.

        Raises:
            ProtocolError: Malformed or misdirected message; the caller
                closes the connection
        """
        data = protocol.decode(raw)
        msg_type = data["type"]

        if msg_type == protocol.PING:
            peer.send({"type": protocol.PONG})

        elif msg_type in protocol.HANDLER_MESSAGE_TYPES:
            if peer.role is PeerRole.BROWSER:
                raise ProtocolError(f"Browser connection sent handler message '{msg_type}'")
            self._handle_handler_message(peer, msg_type, data)

        elif msg_type in protocol.BROWSER_MESSAGE_TYPES:
            if peer.role is PeerRole.HANDLER:
                raise ProtocolError(f"Handler connection sent browser message '{msg_type}'")
            self._handle_browser_message(peer, msg_type, data)

        else:
            logger.debug(f"Ignoring unknown message type {msg_type!r} from {peer.address}")

    def on_disconnect(self, peer: Peer):
        """Tear down whatever a closed connection owned"""
        if peer.role is PeerRole.HANDLER:
            removed = self.registry.drop_handler(peer)
            if removed:
                logger.info(f"Handler disconnected: {', '.join(removed)}")
                self._broadcast_agents()
            self._fail_sessions(self.registry.sessions_for_handler(peer),
                                protocol.HANDLER_DISCONNECTED)

        elif peer.role is PeerRole.BROWSER:
            # No cancel reaches the handler; its late output is dropped
            for session in self.registry.sessions_for_requester(peer):
                self.registry.close_session(session.session_id, SessionState.CANCELLED)

    # =========================================================================
    # Handler side
    # =========================================================================

    def _handle_handler_message(self, peer: Peer, msg_type: str, data: Dict[str, Any]):
        if msg_type == protocol.REGISTER:
            self.on_register(peer, protocol.Register.from_dict(data).agent_id)
            return

        if peer.role is not PeerRole.HANDLER:
            raise ProtocolError(f"'{msg_type}' sent before registering")

        if msg_type == protocol.UNREGISTER:
            self.on_unregister(peer, protocol.Unregister.from_dict(data).agent_id)
        else:
            output = protocol.SessionMessage.from_dict(data)
            self.on_handler_message(peer, output.session_id, output.message)

    def on_register(self, peer: Peer, agent_id: str):
        peer.role = PeerRole.HANDLER
        previous = self.registry.register(agent_id, peer)
        if previous is peer:
            return
        if previous is not None:
            logger.warning(f"Replacing existing handler connection for {agent_id}")

        logger.info(f"Handler registered: {agent_id} ({peer.address})")
        self._broadcast_agents()

    def on_unregister(self, peer: Peer, agent_id: str):
        if not self.registry.unregister(agent_id, peer):
            logger.debug(f"Ignoring unregister of {agent_id}: not held by {peer.address}")
            return

        logger.info(f"Handler unregistered: {agent_id}")
        self._broadcast_agents()
        self._fail_sessions(self.registry.sessions_for_handler(peer, agent_id),
                            protocol.HANDLER_DISCONNECTED)

    def on_handler_message(self, peer: Peer, session_id: str,
                           message: protocol.AgentMessage):
        session = self.registry.get_session(session_id)
        if session is None:
            # Cancelled or already finished; late output races are expected
            logger.debug(f"Dropping {message.type!r} for closed session {session_id}")
            return
        if session.handler is not peer:
            logger.warning(f"Dropping output for {session_id} from a handler not serving it")
            return

        session.requester.send(protocol.SessionMessage(session_id, message))
        self.registry.record_output(session, message)

    # =========================================================================
    # Browser side
    # =========================================================================

    def _handle_browser_message(self, peer: Peer, msg_type: str, data: Dict[str, Any]):
        # Validate before classifying so a bad first message leaves nothing behind
        if msg_type == protocol.RUN:
            request = protocol.RunRequest.from_dict(data)
        elif msg_type == protocol.CANCEL:
            request = protocol.Cancel.from_dict(data)
        elif msg_type in (protocol.UNDO, protocol.REDO):
            request = protocol.HistoryRequest.from_dict(data)
        else:
            request = None

        newly_admitted = peer.role is PeerRole.UNCLASSIFIED
        if newly_admitted:
            self._admit_browser(peer)

        if msg_type in (protocol.HELLO, protocol.LIST_AGENTS):
            if not newly_admitted:
                peer.send(self._agents_snapshot())
        elif msg_type == protocol.RUN:
            self.on_run(peer, request)
        elif msg_type == protocol.CANCEL:
            self.on_cancel(peer, request.session_id)
        else:
            self._open_session(peer, request.agent_id, request.invocation())

    def _admit_browser(self, peer: Peer):
        peer.role = PeerRole.BROWSER
        peer.send(self._agents_snapshot())
        logger.info(f"Browser client connected: {peer.address}")

    def on_run(self, peer: Peer, request: protocol.RunRequest):
        self._open_session(peer, request.agent_id, request.invocation())

    def _open_session(self, peer: Peer, agent_id: str, invocation: protocol.Invocation):
        session_id = invocation.session_id

        if self.registry.get_session(session_id) is not None:
            logger.warning(f"Rejecting duplicate session id {session_id}")
            peer.send(protocol.SessionErrorMessage(session_id, protocol.DUPLICATE_SESSION))
            return

        handler = self.registry.handler_for(agent_id)
        if handler is None:
            logger.info(f"{invocation.method} for unknown agent {agent_id} (session {session_id})")
            peer.send(protocol.SessionErrorMessage(session_id, protocol.UNKNOWN_AGENT))
            return

        self.registry.open_session(session_id, agent_id, peer, handler,
                                   kind=invocation.method)
        handler.send(invocation)
        logger.info(f"Session {session_id} opened: {invocation.method} -> {agent_id}")

    def on_cancel(self, peer: Peer, session_id: str):
        session = self.registry.get_session(session_id)
        if session is None:
            return
        if session.requester is not peer:
            logger.warning(f"Ignoring cancel of {session_id} from a connection that did not start it")
            return
        # Advisory only: the handler is not told, its later output is dropped
        self.registry.close_session(session_id, SessionState.CANCELLED)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _agents_snapshot(self) -> protocol.AgentsSnapshot:
        return protocol.AgentsSnapshot(agent_ids=self.registry.agent_ids())

    def _broadcast_agents(self):
        snapshot = self._agents_snapshot()
        for peer in self._peers_with_role(PeerRole.BROWSER):
            peer.send(snapshot)

    def _fail_sessions(self, sessions: Iterable[Session], reason: str):
        for session in list(sessions):
            session.requester.send(protocol.SessionErrorMessage(session.session_id, reason))
            self.registry.close_session(session.session_id, SessionState.FAILED)

    # =========================================================================
    # Server lifecycle
    # =========================================================================

    async def start(self):
        """Bind and start accepting connections"""
        logger.info(f"Starting relay server on {self.host}:{self.port}")

        self._server = await serve(
            self.handle_connection,
            self.host,
            self.port,
            ping_interval=self.ping_interval,
            ping_timeout=self.ping_timeout
        )

        # Resolve an ephemeral port
        sockets = list(self._server.sockets)
        if sockets:
            self.port = sockets[0].getsockname()[1]

        self._running = True
        logger.info(f"Relay server listening on {self.url}")

    async def stop(self):
        """Stop the relay server, failing every live session"""
        if self._server is None:
            return
        self._running = False

        sessions = list(self.registry.sessions.values())
        self._fail_sessions(sessions, protocol.RELAY_SHUTDOWN)
        await asyncio.gather(*(s.requester.flush() for s in sessions))

        self._server.close()
        await self._server.wait_closed()
        self._server = None
        self.registry.clear()
        logger.info("Relay server stopped")

    async def __aenter__(self) -> 'RelayServer':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    def get_status(self) -> Dict[str, Any]:
        """Get server status"""
        return {
            "running": self._running,
            "host": self.host,
            "port": self.port,
            "handlers_connected": len(self._peers_with_role(PeerRole.HANDLER)),
            "browsers_connected": len(self._peers_with_role(PeerRole.BROWSER)),
            "connections": [peer.to_dict() for peer in self._peers],
            **self.registry.get_status()
        }


async def run_relay(config: RelayConfig):
    """Run the relay (and its status API) until SIGINT/SIGTERM"""
    from .api import RelayAPI

    server = RelayServer.from_config(config)

    # Handle shutdown gracefully
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def shutdown_handler():
        logger.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_handler)

    await server.start()

    api = None
    if config.api_enabled:
        api = RelayAPI(server, config.host, config.api_port)
        await api.start()
        logger.info(f"Status API available at {config.api_url}")

    # Wait for shutdown
    await stop_event.wait()

    if api:
        await api.stop()
    await server.stop()
