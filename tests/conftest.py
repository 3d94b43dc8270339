from __future__ import annotations

import pytest
import pytest_asyncio

from agent_relay.config import reset_config
from agent_relay.server import RelayServer


@pytest_asyncio.fixture
async def relay():
    server = RelayServer(host="127.0.0.1", port=0, ping_interval=None, ping_timeout=None)
    await server.start()
    try:
        yield server
    finally:
        await server.stop()


@pytest.fixture(autouse=True)
def _fresh_config(monkeypatch: pytest.MonkeyPatch):
    for name in ("HOST", "PORT", "API_PORT", "NO_API", "PING_INTERVAL", "PING_TIMEOUT",
                 "CONNECT_TIMEOUT", "LOG_LEVEL"):
        monkeypatch.delenv(f"AGENT_RELAY_{name}", raising=False)
    reset_config()
    yield
    reset_config()
