"""
agent-relay Handler Connection

Agent-side client library. Connects outward to the relay, registers an
agent id, and bridges each incoming run request to a local AgentHandler,
streaming whatever it produces back to the relay.

Example:
    from agent_relay import EchoAgent, connect_relay

    conn = await connect_relay(EchoAgent(agent_id="echo"))
    await conn.wait_closed()
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Optional, Protocol, runtime_checkable

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from . import protocol
from .exceptions import ProtocolError, RelayConnectionError
from .server import RelayServer

logger = logging.getLogger(__name__)


@runtime_checkable
class AgentHandler(Protocol):
    """Capability every agent implementation provides.

    ``run`` returns a lazy, one-shot async iterator of AgentMessage (or
    dicts of the same shape) that ends with a single ``done`` or
    ``error``. Implementations may also offer ``async undo()`` and
    ``async redo()``; the relay never needs anything else.
    """
    agent_id: str

    def run(self, prompt: str,
            context: Optional[Dict[str, Any]] = None) -> AsyncIterator[protocol.AgentMessage]:
        ...


class HandlerConnection:
    """Connection from one agent process to the relay.

    Every session runs in its own task, so several prompts can stream
    concurrently. Output is sent in the order the handler produces it.
    """

    def __init__(self, handler: AgentHandler, url: Optional[str] = None,
                 host: str = protocol.DEFAULT_RELAY_HOST,
                 port: int = protocol.DEFAULT_RELAY_PORT,
                 reconnect: bool = False, max_reconnect_attempts: int = 5,
                 reconnect_base_delay: float = 1.0, connect_timeout: float = 10.0,
                 ping_interval: Optional[float] = 30.0,
                 ping_timeout: Optional[float] = 10.0):
        """
        Args:
            handler: The local agent implementation
            url: Relay WebSocket URL; built from host/port when omitted
            reconnect: Re-open and re-register after the relay drops us
            max_reconnect_attempts: Consecutive failed attempts before giving up
            reconnect_base_delay: First backoff delay in seconds, doubled per attempt
        """
        self.handler = handler
        self.agent_id = handler.agent_id
        self.url = url or f"ws://{host}:{port}"
        self.reconnect = reconnect
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_base_delay = reconnect_base_delay
        self.connect_timeout = connect_timeout
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout

        # Relay started in-process by connect_relay(), stopped on close()
        self.hosted_server: Optional[RelayServer] = None

        self._ws: Optional[ClientConnection] = None
        self._receiver: Optional[asyncio.Task] = None
        self._sessions: Dict[str, asyncio.Task] = {}
        self._closing = False
        self._closed: Optional[asyncio.Event] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    async def connect(self):
        """Connect to the relay and register the agent id.

        Raises:
            RelayConnectionError: If the relay cannot be reached
        """
        if self._ws is not None:
            return

        self._closing = False
        self._closed = asyncio.Event()
        await self._open()
        self._receiver = asyncio.create_task(self._message_loop())

    async def _open(self):
        try:
            self._ws = await connect(
                self.url,
                open_timeout=self.connect_timeout,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout
            )
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as e:
            self._ws = None
            raise RelayConnectionError(f"Failed to connect to relay at {self.url}: {e}") from e

        await self._ws.send(protocol.encode(protocol.Register(self.agent_id)))
        logger.info(f"Registered {self.agent_id} with relay at {self.url}")

    async def _message_loop(self):
        """Handle relay messages, reconnecting with backoff when enabled"""
        reconnect_attempts = 0

        try:
            while True:
                if self._ws is not None:
                    try:
                        async for message in self._ws:
                            self._handle_frame(message)
                    except ConnectionClosed as e:
                        logger.info(f"Relay connection closed: {e}")
                    self._ws = None
                    # In-flight work cannot report back any more
                    self._cancel_sessions()

                if self._closing or not self.reconnect:
                    break
                if reconnect_attempts >= self.max_reconnect_attempts:
                    logger.error(f"Giving up on relay at {self.url} after "
                                 f"{reconnect_attempts} attempts")
                    break

                reconnect_attempts += 1
                delay = self.reconnect_base_delay * (2 ** (reconnect_attempts - 1))  # Exponential backoff
                logger.warning(f"Relay connection lost, reconnecting in {delay:.1f}s... "
                               f"(attempt {reconnect_attempts}/{self.max_reconnect_attempts})")
                await asyncio.sleep(delay)
                try:
                    await self._open()
                    reconnect_attempts = 0
                except RelayConnectionError as e:
                    logger.warning(f"Reconnection failed: {e}")
        finally:
            self._ws = None
            self._cancel_sessions()
            self._closed.set()

    def _handle_frame(self, raw):
        try:
            data = protocol.decode(raw)
        except ProtocolError as e:
            logger.warning(f"Invalid message from relay: {e}")
            return

        msg_type = data["type"]
        if msg_type in protocol.INVOCATION_TYPES:
            try:
                invocation = protocol.Invocation.from_dict(data)
            except ProtocolError as e:
                logger.warning(f"Malformed invocation from relay: {e}")
                return
            self._start_session(invocation)
        elif msg_type != protocol.PONG:
            logger.debug(f"Ignoring unknown message type {msg_type!r} from relay")

    def _start_session(self, invocation: protocol.Invocation):
        session_id = invocation.session_id
        if session_id in self._sessions:
            logger.warning(f"Ignoring repeated invocation for session {session_id}")
            return

        task = asyncio.create_task(self._serve(invocation))
        self._sessions[session_id] = task
        task.add_done_callback(lambda _: self._sessions.pop(session_id, None))

    async def _serve(self, invocation: protocol.Invocation):
        logger.info(f"{self.agent_id}: {invocation.method} for session {invocation.session_id}")
        if invocation.method == protocol.RUN:
            await self._stream_run(invocation)
        else:
            await self._apply_history(invocation)

    async def _stream_run(self, invocation: protocol.Invocation):
        session_id = invocation.session_id
        finished = False
        stream = None

        try:
            stream = self.handler.run(invocation.prompt or "", invocation.context)
            async for item in stream:
                message = protocol.AgentMessage.coerce(item)
                await self._send_output(session_id, message)
                if message.is_terminal:
                    # Anything produced after the terminal message is discarded
                    finished = True
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"{self.agent_id} failed in session {session_id}: {e}", exc_info=True)
            if not finished:
                finished = True
                await self._send_output(session_id,
                                        protocol.error_message(str(e) or type(e).__name__))
        finally:
            if stream is not None and hasattr(stream, "aclose"):
                await stream.aclose()

        if not finished:
            await self._send_output(session_id, protocol.done_message())

    async def _apply_history(self, invocation: protocol.Invocation):
        operation = getattr(self.handler, invocation.method, None)

        if operation is None:
            message = protocol.error_message(
                f"{self.agent_id} does not support {invocation.method}")
        else:
            try:
                await operation()
                message = protocol.done_message()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"{self.agent_id} {invocation.method} failed: {e}")
                message = protocol.error_message(str(e) or f"{invocation.method} failed")

        await self._send_output(invocation.session_id, message)

    async def _send_output(self, session_id: str, message: protocol.AgentMessage) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(protocol.encode(protocol.SessionMessage(session_id, message)))
            return True
        except ConnectionClosed:
            return False

    def _cancel_sessions(self):
        for task in list(self._sessions.values()):
            task.cancel()

    async def wait_closed(self):
        """Block until the connection is gone for good"""
        if self._closed is not None:
            await self._closed.wait()

    async def close(self):
        """Unregister, disconnect, and stop a hosted relay if we started one"""
        self._closing = True
        ws = self._ws

        if ws is not None:
            try:
                await ws.send(protocol.encode(protocol.Unregister(self.agent_id)))
            except ConnectionClosed:
                pass
            await ws.close()

        if self._receiver is not None:
            if ws is None:
                # Sleeping between reconnect attempts
                self._receiver.cancel()
            try:
                await self._receiver
            except asyncio.CancelledError:
                pass
            self._receiver = None

        pending = list(self._sessions.values())
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if self.hosted_server is not None:
            await self.hosted_server.stop()
            self.hosted_server = None

        logger.info(f"{self.agent_id} disconnected from relay")

    async def __aenter__(self) -> 'HandlerConnection':
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


async def connect_relay(handler: AgentHandler,
                        host: str = protocol.DEFAULT_RELAY_HOST,
                        port: int = protocol.DEFAULT_RELAY_PORT,
                        host_relay: bool = True,
                        **options) -> HandlerConnection:
    """Connect a handler to the relay, starting one in-process if needed.

    When nothing is listening on host:port and host_relay is set, a
    RelayServer is started in this process and the handler joins it over
    loopback; closing the returned connection stops that server.

    Raises:
        RelayConnectionError: If no relay can be reached or started
    """
    conn = HandlerConnection(handler, host=host, port=port, **options)
    try:
        await conn.connect()
        return conn
    except RelayConnectionError:
        if not host_relay:
            raise

    logger.info(f"No relay listening on {host}:{port}, starting one in-process")
    server = RelayServer(host=host, port=port)
    try:
        await server.start()
    except OSError as e:
        # Another process won the race for the port; join it instead
        logger.info(f"Could not host relay ({e}), joining the existing one")
        await conn.connect()
        return conn

    conn.url = server.url
    conn.hosted_server = server
    try:
        await conn.connect()
    except RelayConnectionError:
        conn.hosted_server = None
        await server.stop()
        raise
    return conn
