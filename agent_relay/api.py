"""
agent-relay - Status API

Small HTTP API next to the WebSocket relay:
- /health for liveness probes and relay discovery
- /api/v1/status for connection and session details
- /api/v1/agents for the registered agent ids
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import aiohttp
from aiohttp import web

from .exceptions import RelayConnectionError, RelayError
from .protocol import DEFAULT_API_PORT, DEFAULT_RELAY_HOST
from .server import RelayServer

logger = logging.getLogger(__name__)


class RelayAPI:
    """HTTP status API for a RelayServer."""

    def __init__(self, server: RelayServer, host: str = DEFAULT_RELAY_HOST,
                 port: int = DEFAULT_API_PORT):
        self.server = server
        self.host = host
        self.port = port
        self.app = web.Application(middlewares=[self._error_middleware])
        self._setup_routes()
        self._runner: Optional[web.AppRunner] = None

    def _setup_routes(self):
        """Set up API routes."""
        self.app.router.add_get('/health', self.health_check)
        self.app.router.add_get('/api/v1/status', self.get_status)
        self.app.router.add_get('/api/v1/agents', self.list_agents)

    @web.middleware
    async def _error_middleware(self, request, handler):
        """Handle errors and return JSON responses."""
        try:
            return await handler(request)
        except web.HTTPException as e:
            return web.json_response({
                'error': e.reason,
                'status': e.status
            }, status=e.status)
        except Exception as e:
            logger.error(f"API error: {e}", exc_info=True)
            return web.json_response({
                'error': str(e),
                'status': 500
            }, status=500)

    # =========================================================================
    # Endpoints
    # =========================================================================

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        if not self.server.running:
            raise web.HTTPServiceUnavailable(reason='Relay is not running')
        return web.json_response({
            'status': 'ok',
            'handlers': self.server.registry.agent_ids(),
            'timestamp': datetime.now().isoformat()
        })

    async def get_status(self, request: web.Request) -> web.Response:
        """Get overall relay server status."""
        return web.json_response({
            'timestamp': datetime.now().isoformat(),
            **self.server.get_status()
        })

    async def list_agents(self, request: web.Request) -> web.Response:
        """List registered agent ids."""
        return web.json_response({'agents': self.server.registry.agent_ids()})

    # =========================================================================
    # Server Lifecycle
    # =========================================================================

    async def start(self):
        """Start the API server."""
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        logger.info(f"Status API started on http://{self.host}:{self.port}")

    async def stop(self):
        """Stop the API server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Status API stopped")


async def fetch_status(api_url: str, timeout: float = 5.0) -> Dict[str, Any]:
    """Fetch /api/v1/status from a running relay.

    Raises:
        RelayConnectionError: If the API cannot be reached
        RelayError: If the API answers with an error
    """
    url = f"{api_url.rstrip('/')}/api/v1/status"
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.get(url) as resp:
                body = await resp.json()
                if resp.status >= 400:
                    raise RelayError(body.get('error', 'Unknown error'))
                return body
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise RelayConnectionError(f"Connection error: {e}")
