"""Health check endpoints for the signaling relay.

Provides HTTP health check endpoints for load balancers, monitoring systems,
and orchestration tools (e.g., Docker healthcheck, Kubernetes liveness probe).
"""

import logging
import time
from typing import TYPE_CHECKING

from aiohttp import web

if TYPE_CHECKING:
    from src.webcall.relay import SignalingRelay

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Health check handler for the relay.

    Provides /health endpoint that checks:
    - Relay server is accepting connections
    - Connected users
    - Service uptime
    """

    def __init__(self, relay: "SignalingRelay") -> None:
        """Initialize health check handler.

        Args:
            relay: Relay whose state is reported
        """
        self.relay = relay
        self.start_time = time.time()

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Relay is running
            503 Service Unavailable: Relay is stopped

        Response format:
        {
            "status": "healthy" | "unhealthy",
            "uptime_seconds": float,
            "connected_users": [str, ...]
        }
        """
        healthy = self.relay.is_running
        response_data = {
            "status": "healthy" if healthy else "unhealthy",
            "uptime_seconds": time.time() - self.start_time,
            "connected_users": self.relay.connected_users,
        }

        logger.debug("Health check performed", extra={"status": response_data["status"]})

        return web.json_response(response_data, status=200 if healthy else 503)

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Returns OK if the process is running, even if the relay is stopped.

        Returns:
            200 OK: Service is alive
        """
        return web.json_response(
            {
                "status": "alive",
                "uptime_seconds": time.time() - self.start_time,
            },
            status=200,
        )


def setup_health_routes(app: web.Application, relay: "SignalingRelay") -> None:
    """Set up health check routes on application.

    Args:
        app: aiohttp Application instance
        relay: Relay whose state is reported
    """
    handler = HealthCheckHandler(relay)

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/liveness", handler.liveness_check)

    logger.info("Health check endpoints configured: /health, /liveness")
