"""
agent-relay Agent Provider

Browser-side client library used by overlay UIs: keeps the list of
registered agents current and runs prompts against a chosen agent,
exposing each run as a lazy, cancellable stream of AgentMessage.

Example:
    from agent_relay import AgentProvider

    async with AgentProvider() as provider:
        print(provider.list_agents())

        stream = await provider.run("claude-code", "explain this button")
        async for message in stream:
            print(message.type, message.content)
"""

import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from . import protocol
from .exceptions import AgentError, ProtocolError, RelayConnectionError, SessionError

logger = logging.getLogger(__name__)

_END = object()


def new_session_id() -> str:
    return f"session-{uuid.uuid4().hex}"


class RunStream:
    """Output of one session, in production order.

    Iteration stops after the terminal ``done``/``error`` message. It
    raises SessionError if the relay fails the session and
    RelayConnectionError if the relay connection drops. Once cancelled,
    nothing more is yielded, even if output already arrived.
    """

    def __init__(self, provider: 'AgentProvider', session_id: str, agent_id: str,
                 kind: str = protocol.RUN):
        self.provider = provider
        self.session_id = session_id
        self.agent_id = agent_id
        self.kind = kind
        self._queue: asyncio.Queue = asyncio.Queue()
        self._finished = False
        self._cancelled = False
        self._exhausted = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _deliver(self, message: protocol.AgentMessage):
        if self._finished:
            return
        self._queue.put_nowait(message)
        if message.is_terminal:
            self._finished = True
            self._queue.put_nowait(_END)

    def _fail(self, error: Exception):
        if self._finished:
            return
        self._finished = True
        self._queue.put_nowait(error)

    def _cancel_locally(self):
        if self._cancelled:
            return
        self._cancelled = True
        self._finished = True
        # Wake a consumer blocked in __anext__
        self._queue.put_nowait(_END)

    def __aiter__(self) -> 'RunStream':
        return self

    async def __anext__(self) -> protocol.AgentMessage:
        if self._cancelled or self._exhausted:
            raise StopAsyncIteration

        item = await self._queue.get()
        if self._cancelled or item is _END:
            self._exhausted = True
            raise StopAsyncIteration
        if isinstance(item, Exception):
            self._exhausted = True
            raise item
        return item

    async def cancel(self):
        """Stop this stream now and tell the relay (best effort)."""
        self._cancel_locally()
        await self.provider.cancel(self.session_id)

    async def collect(self) -> List[protocol.AgentMessage]:
        """Drain the stream into a list."""
        return [message async for message in self]


class AgentProvider:
    """Browser-side connection to the relay"""

    def __init__(self, url: Optional[str] = None,
                 host: str = protocol.DEFAULT_RELAY_HOST,
                 port: int = protocol.DEFAULT_RELAY_PORT,
                 connect_timeout: float = 10.0,
                 ping_interval: Optional[float] = 30.0,
                 ping_timeout: Optional[float] = 10.0):
        self.url = url or f"ws://{host}:{port}"
        self.connect_timeout = connect_timeout
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout

        self._ws: Optional[ClientConnection] = None
        self._reader: Optional[asyncio.Task] = None
        self._agents: List[str] = []
        self._streams: Dict[str, RunStream] = {}
        self._agents_callbacks: List[Callable[[List[str]], Any]] = []
        self._snapshot_event: Optional[asyncio.Event] = None
        self._pong_waiters: List[asyncio.Future] = []

    @property
    def connected(self) -> bool:
        return self._ws is not None

    # =========================================================================
    # Connection
    # =========================================================================

    async def connect(self):
        """Connect, introduce ourselves and wait for the first agent list.

        Raises:
            RelayConnectionError: If the relay cannot be reached
        """
        if self._ws is not None:
            return

        try:
            self._ws = await connect(
                self.url,
                open_timeout=self.connect_timeout,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout
            )
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as e:
            raise RelayConnectionError(f"Failed to connect to relay at {self.url}: {e}") from e

        self._snapshot_event = asyncio.Event()
        self._reader = asyncio.create_task(self._message_loop())

        await self._send({"type": protocol.HELLO})
        try:
            await asyncio.wait_for(self._snapshot_event.wait(), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise RelayConnectionError("Relay did not send the agent list")

        if not self.connected:
            raise RelayConnectionError("Relay closed the connection")
        logger.info(f"Connected to relay at {self.url} ({len(self._agents)} agent(s))")

    async def close(self):
        """Disconnect; open streams end without further messages"""
        for stream in list(self._streams.values()):
            stream._cancel_locally()
        self._streams.clear()

        ws = self._ws
        if ws is not None:
            await ws.close()

        if self._reader is not None:
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None

    async def __aenter__(self) -> 'AgentProvider':
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _send(self, message: Any):
        ws = self._ws
        if ws is None:
            raise RelayConnectionError("Not connected to relay")
        try:
            await ws.send(protocol.encode(message))
        except ConnectionClosed as e:
            raise RelayConnectionError(f"Send failed: {e}") from e

    async def _message_loop(self):
        try:
            async for message in self._ws:
                self._handle_frame(message)
        except ConnectionClosed as e:
            logger.info(f"Relay connection closed: {e}")
        finally:
            self._ws = None
            lost = RelayConnectionError("Relay connection lost")
            for stream in list(self._streams.values()):
                stream._fail(lost)
            self._streams.clear()
            for waiter in self._pong_waiters:
                if not waiter.done():
                    waiter.set_result(False)
            self._pong_waiters.clear()
            if self._agents:
                self._set_agents([])
            self._snapshot_event.set()

    def _handle_frame(self, raw):
        try:
            data = protocol.decode(raw)
        except ProtocolError as e:
            logger.warning(f"Invalid message from relay: {e}")
            return

        msg_type = data["type"]
        try:
            if msg_type == protocol.AGENTS:
                self._set_agents(protocol.AgentsSnapshot.from_dict(data).agent_ids)
                self._snapshot_event.set()

            elif msg_type == protocol.MESSAGE:
                output = protocol.SessionMessage.from_dict(data)
                stream = self._streams.get(output.session_id)
                if stream is None:
                    logger.debug(f"Dropping message for unknown session {output.session_id}")
                    return
                if output.message.is_terminal:
                    del self._streams[output.session_id]
                stream._deliver(output.message)

            elif msg_type == protocol.SESSION_ERROR:
                failure = protocol.SessionErrorMessage.from_dict(data)
                stream = self._streams.pop(failure.session_id, None)
                if stream is not None:
                    stream._fail(SessionError(failure.session_id, failure.reason))

            elif msg_type == protocol.PONG:
                for waiter in self._pong_waiters:
                    if not waiter.done():
                        waiter.set_result(True)
                self._pong_waiters.clear()

            else:
                logger.debug(f"Ignoring unknown message type {msg_type!r} from relay")

        except ProtocolError as e:
            logger.warning(f"Malformed {msg_type!r} from relay: {e}")

    # =========================================================================
    # Agents
    # =========================================================================

    def _set_agents(self, agent_ids: List[str]):
        self._agents = list(agent_ids)
        for callback in list(self._agents_callbacks):
            try:
                callback(list(self._agents))
            except Exception as e:
                logger.error(f"Agent list callback failed: {e}", exc_info=True)

    def list_agents(self) -> List[str]:
        """Agent ids currently registered with the relay"""
        return list(self._agents)

    def is_agent_available(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def on_agents_change(self, callback: Callable[[List[str]], Any]) -> Callable[[], None]:
        """Call callback with every new agent list; returns an unsubscribe function."""
        self._agents_callbacks.append(callback)

        def unsubscribe():
            if callback in self._agents_callbacks:
                self._agents_callbacks.remove(callback)

        return unsubscribe

    async def refresh_agents(self) -> List[str]:
        """Ask the relay for a fresh agent list and wait for it"""
        if self._ws is None:
            raise RelayConnectionError("Not connected to relay")
        self._snapshot_event.clear()
        await self._send({"type": protocol.LIST_AGENTS})
        try:
            await asyncio.wait_for(self._snapshot_event.wait(), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            raise RelayConnectionError("Relay did not send the agent list")
        return self.list_agents()

    async def ping(self, timeout: float = 5.0) -> bool:
        """Round-trip a ping through the relay"""
        waiter = asyncio.get_running_loop().create_future()
        self._pong_waiters.append(waiter)
        try:
            await self._send({"type": protocol.PING})
            return await asyncio.wait_for(waiter, timeout=timeout)
        except (RelayConnectionError, asyncio.TimeoutError):
            return False
        finally:
            if waiter in self._pong_waiters:
                self._pong_waiters.remove(waiter)

    # =========================================================================
    # Sessions
    # =========================================================================

    async def run(self, agent_id: str, prompt: str,
                  context: Optional[Dict[str, Any]] = None) -> RunStream:
        """Start a run and return its message stream.

        Raises:
            RelayConnectionError: If the request cannot be sent
        """
        session_id = new_session_id()
        stream = RunStream(self, session_id, agent_id)
        self._streams[session_id] = stream
        try:
            await self._send(protocol.RunRequest(session_id=session_id, agent_id=agent_id,
                                                 prompt=prompt, context=context))
        except RelayConnectionError:
            self._streams.pop(session_id, None)
            raise
        return stream

    async def cancel(self, session_id: str):
        """End a session's stream locally and ask the relay to drop it"""
        stream = self._streams.pop(session_id, None)
        if stream is not None:
            stream._cancel_locally()

        if self._ws is None:
            return
        try:
            await self._send(protocol.Cancel(session_id))
        except RelayConnectionError as e:
            logger.debug(f"Cancel of {session_id} not delivered: {e}")

    async def undo(self, agent_id: str):
        """Ask an agent to undo its last change.

        Raises:
            AgentError: If the agent reports an error
            SessionError: If the relay cannot reach the agent
        """
        await self._history(protocol.UNDO, agent_id)

    async def redo(self, agent_id: str):
        """Ask an agent to redo its last undone change.

        Raises:
            AgentError: If the agent reports an error
            SessionError: If the relay cannot reach the agent
        """
        await self._history(protocol.REDO, agent_id)

    async def _history(self, action: str, agent_id: str):
        session_id = new_session_id()
        stream = RunStream(self, session_id, agent_id, kind=action)
        self._streams[session_id] = stream
        try:
            await self._send(protocol.HistoryRequest(action=action, session_id=session_id,
                                                     agent_id=agent_id))
        except RelayConnectionError:
            self._streams.pop(session_id, None)
            raise

        async for message in stream:
            if message.type == protocol.ERROR:
                raise AgentError(session_id, message.content)
