from __future__ import annotations

import asyncio

import pytest

from agent_relay import protocol
from agent_relay.agents import EchoAgent
from agent_relay.exceptions import AgentError, RelayConnectionError
from agent_relay.handler import AgentHandler, HandlerConnection, connect_relay
from agent_relay.provider import AgentProvider
from agent_relay.server import RelayServer

from tests.helpers import free_port, wait_until


class FailingAgent:
    agent_id = "flaky"

    async def run(self, prompt, context=None):
        yield protocol.content_message("starting")
        raise ValueError("boom")


class UnterminatedAgent:
    agent_id = "quiet"

    async def run(self, prompt, context=None):
        yield {"type": "content", "content": prompt}


class ChattyAgent:
    agent_id = "chatty"

    async def run(self, prompt, context=None):
        yield protocol.content_message("one")
        yield protocol.done_message()
        yield protocol.content_message("after done")


def _connection(handler: AgentHandler, relay: RelayServer, **options) -> HandlerConnection:
    return HandlerConnection(handler, url=relay.url, ping_interval=None, **options)


async def _registered(relay: RelayServer, *agent_ids: str) -> None:
    await wait_until(lambda: sorted(relay.registry.agent_ids()) == sorted(agent_ids))


async def _run(relay: RelayServer, agent_id: str, prompt: str, context=None):
    async with AgentProvider(relay.url, ping_interval=None) as provider:
        stream = await provider.run(agent_id, prompt, context)
        return await stream.collect()


def test_echo_agent_satisfies_handler_capability() -> None:
    assert isinstance(EchoAgent(), AgentHandler)


@pytest.mark.asyncio
async def test_echo_agent_streams_words_then_done(relay: RelayServer) -> None:
    async with _connection(EchoAgent(), relay):
        await _registered(relay, "echo")
        messages = await _run(relay, "echo", "It is a button")

    assert [m.content for m in messages[:-1]] == ["It", "is", "a", "button"]
    assert messages[-1].type == "done"


@pytest.mark.asyncio
async def test_context_is_passed_to_the_agent(relay: RelayServer) -> None:
    async with _connection(EchoAgent(), relay):
        await _registered(relay, "echo")
        messages = await _run(relay, "echo", "hi", context={"selector": "#go", "html": "<b>"})

    assert messages[0].type == "status"
    assert messages[0].extra == {"keys": ["html", "selector"]}


@pytest.mark.asyncio
async def test_failure_becomes_terminal_error(relay: RelayServer) -> None:
    async with _connection(FailingAgent(), relay):
        await _registered(relay, "flaky")
        messages = await _run(relay, "flaky", "go")

    assert [(m.type, m.content) for m in messages] == [("content", "starting"), ("error", "boom")]


@pytest.mark.asyncio
async def test_missing_terminal_gets_implicit_done(relay: RelayServer) -> None:
    async with _connection(UnterminatedAgent(), relay):
        await _registered(relay, "quiet")
        messages = await _run(relay, "quiet", "hello")

    assert [m.type for m in messages] == ["content", "done"]
    assert messages[0].content == "hello"


@pytest.mark.asyncio
async def test_output_after_terminal_is_not_sent(relay: RelayServer) -> None:
    async with _connection(ChattyAgent(), relay):
        await _registered(relay, "chatty")
        messages = await _run(relay, "chatty", "x")

    assert [m.content for m in messages] == ["one", ""]


@pytest.mark.asyncio
async def test_undo_and_redo(relay: RelayServer) -> None:
    agent = EchoAgent()
    async with _connection(agent, relay):
        await _registered(relay, "echo")
        async with AgentProvider(relay.url, ping_interval=None) as provider:
            await (await provider.run("echo", "first change")).collect()

            await provider.undo("echo")
            assert agent.history == []
            assert agent.undone == ["first change"]

            with pytest.raises(AgentError, match="Nothing to undo"):
                await provider.undo("echo")

            await provider.redo("echo")
            assert agent.history == ["first change"]


@pytest.mark.asyncio
async def test_undo_without_capability_reports_error(relay: RelayServer) -> None:
    async with _connection(FailingAgent(), relay):
        await _registered(relay, "flaky")
        async with AgentProvider(relay.url, ping_interval=None) as provider:
            with pytest.raises(AgentError, match="does not support undo"):
                await provider.undo("flaky")


@pytest.mark.asyncio
async def test_close_unregisters(relay: RelayServer) -> None:
    conn = _connection(EchoAgent(), relay)
    await conn.connect()
    await _registered(relay, "echo")
    assert conn.connected

    await conn.close()
    await _registered(relay)
    assert not conn.connected


@pytest.mark.asyncio
async def test_connect_to_missing_relay_raises() -> None:
    conn = HandlerConnection(EchoAgent(), host="127.0.0.1", port=free_port(),
                             connect_timeout=1.0, ping_interval=None)
    with pytest.raises(RelayConnectionError):
        await conn.connect()


@pytest.mark.asyncio
async def test_wait_closed_returns_when_relay_goes_away() -> None:
    server = RelayServer(host="127.0.0.1", port=0, ping_interval=None)
    await server.start()
    conn = HandlerConnection(EchoAgent(), url=server.url, ping_interval=None)
    await conn.connect()

    await server.stop()
    await asyncio.wait_for(conn.wait_closed(), timeout=2.0)
    assert not conn.connected
    await conn.close()


@pytest.mark.asyncio
async def test_reconnects_and_registers_again() -> None:
    port = free_port()
    first = RelayServer(host="127.0.0.1", port=port, ping_interval=None)
    await first.start()

    conn = HandlerConnection(EchoAgent(), url=first.url, ping_interval=None,
                             reconnect=True, reconnect_base_delay=0.05)
    await conn.connect()
    await _registered(first, "echo")

    await first.stop()
    second = RelayServer(host="127.0.0.1", port=port, ping_interval=None)
    await second.start()
    try:
        await wait_until(lambda: second.registry.agent_ids() == ["echo"], timeout=5.0)
        messages = await _run(second, "echo", "back again")
        assert [m.content for m in messages[:-1]] == ["back", "again"]
    finally:
        await conn.close()
        await second.stop()


@pytest.mark.asyncio
async def test_connect_relay_joins_running_relay(relay: RelayServer) -> None:
    conn = await connect_relay(EchoAgent(), host=relay.host, port=relay.port,
                               ping_interval=None)
    try:
        assert conn.hosted_server is None
        await _registered(relay, "echo")
    finally:
        await conn.close()


@pytest.mark.asyncio
async def test_connect_relay_hosts_when_nothing_listens() -> None:
    port = free_port()
    conn = await connect_relay(EchoAgent(), host="127.0.0.1", port=port, ping_interval=None)
    server = conn.hosted_server
    assert server is not None
    assert server.running
    assert conn.url == f"ws://127.0.0.1:{port}"

    await wait_until(lambda: server.registry.agent_ids() == ["echo"])
    messages = await _run(server, "echo", "hosted")
    assert messages[0].content == "hosted"

    await conn.close()
    assert conn.hosted_server is None
    assert not server.running


@pytest.mark.asyncio
async def test_connect_relay_without_hosting_raises() -> None:
    with pytest.raises(RelayConnectionError):
        await connect_relay(EchoAgent(), host="127.0.0.1", port=free_port(),
                            host_relay=False, connect_timeout=1.0, ping_interval=None)
