"""Health check endpoints for the relay.

Provides HTTP endpoints for load balancers and monitoring systems:
/health, /liveness, /metrics (Prometheus text) and /metrics/summary (JSON).
"""

import logging
import time
from collections.abc import Callable

from aiohttp import web

from src.relay.matchmaking import MatchmakingQueue
from src.relay.metrics import MetricsCollector
from src.relay.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Health check handler for the relay.

    Reports the relay as healthy while its WebSocket endpoint is serving.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        queue: MatchmakingQueue,
        metrics: MetricsCollector,
        is_serving: Callable[[], bool] | None = None,
    ) -> None:
        """Initialize health check handler.

        Args:
            registry: Connection registry to report on
            queue: Matchmaking queue to report on
            metrics: Metrics collector to export
            is_serving: Callable returning whether the WebSocket endpoint is up
        """
        self.registry = registry
        self.queue = queue
        self.metrics = metrics
        self.is_serving = is_serving or (lambda: True)
        self.start_time = time.time()

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Relay is serving signaling connections
            503 Service Unavailable: WebSocket endpoint is down

        Response format:
        {
            "status": "healthy" | "unhealthy",
            "uptime_seconds": float,
            "connections": int,
            "paired": int,
            "waiting": int
        }
        """
        serving = bool(self.is_serving())
        snapshot = self.registry.snapshot()

        response_data = {
            "status": "healthy" if serving else "unhealthy",
            "uptime_seconds": time.time() - self.start_time,
            "connections": snapshot["connections"],
            "paired": snapshot["paired"],
            "waiting": len(self.queue),
        }

        logger.debug("Health check performed", extra={"status": response_data["status"]})

        return web.json_response(response_data, status=200 if serving else 503)

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Returns OK if the process is running, regardless of endpoint state.
        """
        return web.json_response(
            {
                "status": "alive",
                "uptime_seconds": time.time() - self.start_time,
            },
            status=200,
        )

    async def metrics_endpoint(self, request: web.Request) -> web.Response:
        """Prometheus metrics endpoint.

        Returns:
            200 OK: Metrics in Prometheus text format
        """
        try:
            metrics_text = self.metrics.export_prometheus()
            return web.Response(
                text=metrics_text,
                content_type="text/plain",
                charset="utf-8",
                status=200,
            )
        except Exception as e:
            logger.error("Failed to export metrics", extra={"error": str(e)}, exc_info=True)
            return web.Response(
                text=f"# Error exporting metrics: {e}\n",
                content_type="text/plain",
                status=500,
            )

    async def metrics_summary(self, request: web.Request) -> web.Response:
        """Human-readable metrics summary endpoint."""
        return web.json_response(
            {
                "status": "ok",
                "uptime_seconds": time.time() - self.start_time,
                "metrics": self.metrics.get_summary(),
            },
            status=200,
        )


def setup_health_routes(app: web.Application, handler: HealthCheckHandler) -> None:
    """Set up health check routes on application.

    Args:
        app: aiohttp Application instance
        handler: Configured HealthCheckHandler
    """
    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/liveness", handler.liveness_check)
    app.router.add_get("/metrics", handler.metrics_endpoint)
    app.router.add_get("/metrics/summary", handler.metrics_summary)

    logger.info("Health check endpoints configured: /health, /liveness, /metrics, /metrics/summary")
