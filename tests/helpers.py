"""Raw-socket helpers for driving a relay the way overlays and agents do."""

from __future__ import annotations

import asyncio
import json
import socket
from typing import Any, Callable

from websockets.asyncio.client import ClientConnection, connect


def free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def send_json(ws: ClientConnection, data: dict[str, Any]) -> None:
    await ws.send(json.dumps(data))


async def recv_json(ws: ClientConnection, timeout: float = 2.0) -> dict[str, Any]:
    return json.loads(await asyncio.wait_for(ws.recv(), timeout))


async def recv_until(ws: ClientConnection, msg_type: str,
                     timeout: float = 2.0) -> tuple[dict[str, Any], list[dict[str, Any]]]:
    """Receive until a message of msg_type arrives; also returns what was skipped."""
    skipped = []
    while True:
        data = await recv_json(ws, timeout)
        if data["type"] == msg_type:
            return data, skipped
        skipped.append(data)


async def sync(ws: ClientConnection) -> list[dict[str, Any]]:
    """Round-trip a ping so everything sent before it has been handled.

    Returns the messages that arrived ahead of the pong.
    """
    await send_json(ws, {"type": "ping"})
    _, before = await recv_until(ws, "pong")
    return before


async def open_handler(url: str, agent_id: str) -> ClientConnection:
    ws = await connect(url, ping_interval=None)
    await send_json(ws, {"type": "register", "agentId": agent_id})
    await sync(ws)
    return ws


async def open_browser(url: str) -> tuple[ClientConnection, list[str]]:
    ws = await connect(url, ping_interval=None)
    await send_json(ws, {"type": "hello"})
    snapshot = await recv_json(ws)
    assert snapshot["type"] == "agents"
    return ws, snapshot["agentIds"]


async def run(ws: ClientConnection, session_id: str, agent_id: str, prompt: str,
              **extra: Any) -> None:
    await send_json(ws, {"type": "run", "sessionId": session_id, "agentId": agent_id,
                         "prompt": prompt, **extra})


async def reply(ws: ClientConnection, session_id: str, kind: str, content: str = "") -> None:
    await send_json(ws, {"type": "message", "sessionId": session_id,
                         "message": {"type": kind, "content": content}})
