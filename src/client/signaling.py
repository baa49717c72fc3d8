"""Client end of the signaling WebSocket.

Opens the relay connection, parses inbound envelopes and hands them to the
session, and keeps intermediaries from idling the connection out with a
lightweight application-level heartbeat.
"""

import asyncio
import logging
import time
from collections.abc import Callable

import websockets
from pydantic import BaseModel
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from src.client.capabilities import SignalingChannel, SignalingConnector
from src.relay.protocol import PingMessage, ProtocolError, encode, parse_server_message

logger = logging.getLogger(__name__)


class WebSocketSignalingChannel(SignalingChannel):
    """SignalingChannel backed by a websockets client connection."""

    def __init__(
        self,
        websocket: ClientConnection,
        on_message: Callable[[BaseModel], None],
        on_closed: Callable[[SignalingChannel], None],
    ) -> None:
        self._websocket = websocket
        self._on_message = on_message
        self._on_closed = on_closed
        self._closing = False
        self._reader: asyncio.Task[None] | None = None

    def start(self) -> None:
        self._reader = asyncio.create_task(self._read_loop())

    @property
    def is_open(self) -> bool:
        return not self._closing and self._websocket.state == State.OPEN

    async def send(self, message: BaseModel) -> None:
        if not self.is_open:
            raise ConnectionError("Signaling channel is closed")
        try:
            await self._websocket.send(encode(message))
        except ConnectionClosed as e:
            raise ConnectionError(f"Signaling channel closed: {e}") from e

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        await self._websocket.close()
        if self._reader is not None and self._reader is not asyncio.current_task():
            await asyncio.gather(self._reader, return_exceptions=True)

    async def _read_loop(self) -> None:
        try:
            async for raw_message in self._websocket:
                try:
                    message = parse_server_message(raw_message)
                except ProtocolError as e:
                    logger.warning("Invalid envelope from relay", extra={"error": str(e)})
                    continue
                logger.debug("Received message", extra={"type": message.type})
                self._on_message(message)
        except ConnectionClosed:
            pass
        finally:
            logger.info("Signaling channel closed", extra={"intentional": self._closing})
            if not self._closing:
                self._closing = True
                self._on_closed(self)


class WebSocketSignalingConnector(SignalingConnector):
    """Connects to the relay's signaling endpoint."""

    def __init__(self, server_url: str, open_timeout_s: float = 10.0) -> None:
        """Initialize connector.

        Args:
            server_url: Signaling WebSocket URL (e.g., ws://localhost:8080/ws)
            open_timeout_s: Handshake timeout
        """
        self.server_url = server_url
        self.open_timeout_s = open_timeout_s

    async def connect(
        self,
        on_message: Callable[[BaseModel], None],
        on_closed: Callable[[SignalingChannel], None],
    ) -> SignalingChannel:
        try:
            websocket = await websockets.connect(self.server_url, open_timeout=self.open_timeout_s)
        except (OSError, TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise ConnectionError(f"Failed to connect to {self.server_url}: {e}") from e

        logger.info("WebSocket connected", extra={"server_url": self.server_url})
        channel = WebSocketSignalingChannel(websocket, on_message, on_closed)
        channel.start()
        return channel


class Heartbeat:
    """Periodic ping over the signaling channel.

    Carries no application semantics; the pong only refreshes liveness.
    """

    def __init__(self, channel: SignalingChannel, interval_s: float = 25.0) -> None:
        self.channel = channel
        self.interval_s = interval_s
        self.last_pong_at: float | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def record_pong(self) -> None:
        self.last_pong_at = time.monotonic()

    async def _loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval_s)
                if not self.channel.is_open:
                    continue
                try:
                    await self.channel.send(PingMessage(ts=int(time.time() * 1000)))
                except ConnectionError as e:
                    logger.debug("Heartbeat ping not sent", extra={"error": str(e)})
        except asyncio.CancelledError:
            pass
