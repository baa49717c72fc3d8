"""Signaling relay server.

Main server implementation that:
1. Owns the process-wide ConnectionRegistry, MatchmakingQueue and MessageRouter
2. Accepts signaling WebSocket connections on the configured path
3. Feeds every inbound frame through the MessageRouter
4. Deregisters connections exactly once when they close
5. Provides HTTP health check and metrics endpoints

The relay never sees audio; it only pairs connections and forwards the
handshake envelopes the peers need to connect directly.
"""

import argparse
import asyncio
import logging
from http import HTTPStatus
from pathlib import Path
from typing import Any

from aiohttp.web import Application, AppRunner, TCPSite
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response
from websockets.protocol import State

from src.relay.config import RelayConfig
from src.relay.health import HealthCheckHandler, setup_health_routes
from src.relay.matchmaking import MatchmakingQueue
from src.relay.metrics import MetricsCollector
from src.relay.registry import ConnectionRegistry, PeerHandle
from src.relay.router import MessageRouter

logger = logging.getLogger(__name__)


class WebSocketPeer(PeerHandle):
    """PeerHandle backed by a websockets server connection."""

    def __init__(self, websocket: ServerConnection) -> None:
        self._websocket = websocket

    @property
    def is_open(self) -> bool:
        return self._websocket.state == State.OPEN

    @property
    def remote_address(self) -> Any:
        return self._websocket.remote_address

    async def send(self, text: str) -> None:
        if not self.is_open:
            raise ConnectionError("WebSocket connection is closed")
        try:
            await self._websocket.send(text)
        except ConnectionClosed as e:
            raise ConnectionError(f"WebSocket connection closed: {e}") from e

    async def close(self) -> None:
        await self._websocket.close()


class RelayServer:
    """Signaling relay with explicit start/stop lifecycle.

    Exactly one registry, queue and router exist per server instance; they
    are created in the constructor and discarded with the server.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(self, config: RelayConfig, metrics: MetricsCollector | None = None) -> None:
        """Initialize relay server.

        Args:
            config: Relay configuration
            metrics: Optional metrics collector (for testing)
        """
        self.config = config
        self.metrics = metrics or MetricsCollector()
        self.registry = ConnectionRegistry()
        self.queue = MatchmakingQueue(self.registry)
        self.router = MessageRouter(self.registry, self.queue, self.metrics)

        self._server: Server | None = None
        self._health_runner: AppRunner | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def port(self) -> int:
        """Actual bound WebSocket port."""
        if self._server is not None and self._server.sockets:
            return int(next(iter(self._server.sockets)).getsockname()[1])
        return self.config.websocket.port

    async def start(self) -> None:
        """Bind the WebSocket endpoint and the health server.

        Raises:
            RuntimeError: If the server is already running
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("Relay server is already running")

        ws_config = self.config.websocket
        logger.info(
            "Starting signaling relay",
            extra={"host": ws_config.host, "port": ws_config.port, "path": ws_config.path},
        )

        try:
            self._server = await serve(
                self._handle_connection,
                ws_config.host,
                ws_config.port,
                process_request=self._process_request,
                max_size=ws_config.max_message_bytes,
                ping_interval=ws_config.ping_interval_s,
                ping_timeout=ws_config.ping_timeout_s,
            )
        except OSError as e:
            logger.error(
                "Failed to bind WebSocket server",
                extra={"host": ws_config.host, "port": ws_config.port, "error": str(e)},
            )
            raise

        self._running = True

        if self.config.health.enabled:
            health_app = Application()
            handler = HealthCheckHandler(
                self.registry, self.queue, self.metrics, is_serving=lambda: self._running
            )
            setup_health_routes(health_app, handler)

            self._health_runner = AppRunner(health_app)
            await self._health_runner.setup()
            site = TCPSite(self._health_runner, self.config.health.host, self.config.health_port)
            await site.start()
            logger.info("Health check server started", extra={"port": self.config.health_port})

        logger.info("Signaling relay ready", extra={"port": self.port})

    async def stop(self) -> None:
        """Close every live connection and release both listeners.

        Each closing connection goes through the normal disconnect path, so
        partners are notified exactly as on an abrupt client close.
        """
        if not self._running:
            return

        logger.info("Stopping signaling relay", extra={"connections": len(self.registry)})
        self._running = False

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        if self._health_runner is not None:
            await self._health_runner.cleanup()
            self._health_runner = None

        logger.info("Signaling relay stopped")

    def _process_request(self, connection: ServerConnection, request: Request) -> Response | None:
        """Reject upgrades on any path other than the signaling path."""
        if request.path != self.config.websocket.path:
            logger.debug("Rejected upgrade on unknown path", extra={"path": request.path})
            return connection.respond(HTTPStatus.NOT_FOUND, "Not found\n")
        return None

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Run one signaling connection from open to close.

        Args:
            websocket: WebSocket connection
        """
        peer = WebSocketPeer(websocket)
        connection_id = self.router.connect(peer)

        logger.info(
            "New signaling connection",
            extra={"connection_id": connection_id, "remote": websocket.remote_address},
        )

        try:
            async for raw_message in websocket:
                await self.router.handle_message(connection_id, raw_message)
                if connection_id not in self.registry:
                    # Explicit leave
                    break
        except ConnectionClosed:
            logger.info(
                "Signaling connection closed by client",
                extra={"connection_id": connection_id},
            )
        finally:
            await self.router.disconnect(connection_id)
            logger.info("Signaling connection finished", extra={"connection_id": connection_id})


async def start_server(config_path: Path, server: RelayServer | None = None) -> None:
    """Start the relay and run until cancelled.

    Args:
        config_path: Path to YAML config file
        server: Optional pre-created server (for testing)
    """
    config = RelayConfig.from_yaml_with_defaults(config_path)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("Loaded configuration", extra={"config_path": str(config_path)})

    if server is None:
        server = RelayServer(config)

    await server.start()
    try:
        await asyncio.Future()
    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    finally:
        try:
            await asyncio.wait_for(server.stop(), timeout=config.graceful_shutdown_timeout_s)
        except TimeoutError:
            logger.warning("Graceful shutdown timed out")


def main() -> None:
    """Entry point for the signaling relay."""
    parser = argparse.ArgumentParser(description="Anonymous voice pairing signaling relay")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "relay.yaml",
        help="Path to relay config YAML file",
    )
    args = parser.parse_args()

    try:
        asyncio.run(start_server(args.config))
    except KeyboardInterrupt:
        logger.info("Signaling relay interrupted")


if __name__ == "__main__":
    main()
