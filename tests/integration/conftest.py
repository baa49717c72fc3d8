"""Integration test fixtures.

Provides a real RelayServer bound to free local ports.
"""

from collections.abc import AsyncIterator

import pytest_asyncio

from src.relay.config import HealthConfig, RelayConfig, WebSocketConfig
from src.relay.server import RelayServer
from tests.helpers.ws_helpers import get_free_port


@pytest_asyncio.fixture
async def relay_server() -> AsyncIterator[RelayServer]:
    """Start a relay with health endpoints on free ports."""
    config = RelayConfig(
        websocket=WebSocketConfig(host="127.0.0.1", port=get_free_port()),
        health=HealthConfig(host="127.0.0.1", port=get_free_port()),
        log_level="DEBUG",
    )
    server = RelayServer(config)
    await server.start()
    try:
        yield server
    finally:
        await server.stop()
