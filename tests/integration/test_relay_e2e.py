"""End-to-end tests for the signaling relay over real WebSockets.

Tests matchmaking, envelope relay, partner-left notices, path rejection,
health endpoints and the client signaling connector against a live server.
"""

import asyncio
from typing import Any

import aiohttp
import pytest
import websockets
from pydantic import BaseModel
from websockets.exceptions import InvalidStatus

from src.client.capabilities import SignalingChannel
from src.client.signaling import WebSocketSignalingConnector
from src.relay.protocol import MatchMessage, MatchRequest
from src.relay.server import RelayServer
from tests.helpers.ws_helpers import get_free_port, recv_json, relay_url, send_json, wait_until

pytestmark = [pytest.mark.integration, pytest.mark.asyncio]


async def test_pairing_and_relay(relay_server: RelayServer) -> None:
    """Test two clients are paired and can exchange handshake envelopes."""
    url = relay_url(relay_server)
    async with websockets.connect(url) as first, websockets.connect(url) as second:
        await send_json(first, {"type": "match"})
        # Let the first request land before the second so the order is fixed
        await asyncio.sleep(0.05)
        await send_json(second, {"type": "match"})

        match_second = await recv_json(second)
        match_first = await recv_json(first)
        assert match_second["type"] == "match"
        assert match_second["initiator"] is True
        assert match_first["initiator"] is False
        first_id = match_second["partnerId"]
        second_id = match_first["partnerId"]
        assert first_id != second_id

        await send_json(second, {"type": "offer", "sdp": "v=0 offer"})
        offer = await recv_json(first)
        assert offer == {"type": "offer", "sdp": "v=0 offer", "restart": False, "from": second_id}

        await send_json(first, {"type": "answer", "sdp": "v=0 answer"})
        answer = await recv_json(second)
        assert answer == {"type": "answer", "sdp": "v=0 answer", "from": first_id}

        await send_json(first, {"type": "ice", "candidate": None})
        assert await recv_json(second) == {"type": "ice", "candidate": None, "from": first_id}


async def test_leave_notifies_partner(relay_server: RelayServer) -> None:
    """Test leaving sends next to the partner and closes the leaver."""
    url = relay_url(relay_server)
    async with websockets.connect(url) as first, websockets.connect(url) as second:
        await send_json(first, {"type": "match"})
        await asyncio.sleep(0.05)
        await send_json(second, {"type": "match"})
        await recv_json(first)
        await recv_json(second)

        await send_json(second, {"type": "leave"})

        assert await recv_json(first) == {"type": "next"}
        await asyncio.wait_for(second.wait_closed(), timeout=2.0)

    await wait_until(lambda: len(relay_server.registry) == 0)


async def test_close_without_leave_notifies_partner(relay_server: RelayServer) -> None:
    """Test a socket closed without a leave envelope is treated like a leave."""
    url = relay_url(relay_server)
    async with websockets.connect(url) as first:
        second = await websockets.connect(url)
        await send_json(first, {"type": "match"})
        await asyncio.sleep(0.05)
        await send_json(second, {"type": "match"})
        await recv_json(first)

        await second.close()

        assert await recv_json(first) == {"type": "next"}


async def test_malformed_input_and_ping(relay_server: RelayServer) -> None:
    """Test malformed frames get an error and ping gets a pong."""
    async with websockets.connect(relay_url(relay_server)) as client:
        await client.send("not json")
        assert await recv_json(client) == {"type": "error", "message": "Invalid message format"}

        await send_json(client, {"type": "ping", "ts": 99})
        assert await recv_json(client) == {"type": "pong", "ts": 99}


async def test_unknown_path_rejected(relay_server: RelayServer) -> None:
    """Test upgrades outside the signaling path get 404."""
    with pytest.raises(InvalidStatus) as exc_info:
        async with websockets.connect(f"ws://127.0.0.1:{relay_server.port}/other"):
            pass
    assert exc_info.value.response.status_code == 404


async def test_health_endpoint(relay_server: RelayServer) -> None:
    """Test the health server reports live counts."""
    url = relay_url(relay_server)
    health_url = f"http://127.0.0.1:{relay_server.config.health_port}"
    async with websockets.connect(url) as client:
        await send_json(client, {"type": "match"})
        await asyncio.sleep(0.05)

        async with aiohttp.ClientSession() as session:
            async with session.get(f"{health_url}/health") as response:
                assert response.status == 200
                body = await response.json()
            async with session.get(f"{health_url}/metrics") as response:
                metrics_text = await response.text()

    assert body["status"] == "healthy"
    assert body["connections"] == 1
    assert body["waiting"] == 1
    assert "connections_total 1.0" in metrics_text


async def test_signaling_connector_against_relay(relay_server: RelayServer) -> None:
    """Test the client connector exchanges typed envelopes with the relay."""
    connector = WebSocketSignalingConnector(relay_url(relay_server))
    received: list[BaseModel] = []
    closed: list[SignalingChannel] = []
    matched = asyncio.Event()

    def on_message(message: BaseModel) -> None:
        received.append(message)
        matched.set()

    first = await connector.connect(on_message, closed.append)
    second = await connector.connect(lambda _: None, closed.append)
    try:
        await first.send(MatchRequest())
        await asyncio.sleep(0.05)
        await second.send(MatchRequest())
        await asyncio.wait_for(matched.wait(), timeout=2.0)
    finally:
        await first.close()
        await second.close()

    message: Any = received[0]
    assert isinstance(message, MatchMessage)
    assert message.initiator is False
    assert closed == []


async def test_connector_unreachable() -> None:
    """Test connecting to a closed port raises ConnectionError."""
    connector = WebSocketSignalingConnector(f"ws://127.0.0.1:{get_free_port()}/ws", open_timeout_s=1)

    with pytest.raises(ConnectionError):
        await connector.connect(lambda _: None, lambda _: None)
