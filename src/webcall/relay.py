"""Signaling relay server.

Pairs the two peers of the naming convention and forwards their negotiation
messages. Responsibilities:
1. Accept WebSocket connections and register them on ``login``
2. Announce ``partner_online`` to both peers once both are connected
3. Announce ``partner_offline`` to the remaining peer on disconnect
4. Forward any message carrying ``to`` with ``from`` set to the sender
5. Serve HTTP health endpoints on port + 1
"""

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import websockets
from aiohttp.web import Application, AppRunner, TCPSite
from pydantic import ValidationError
from websockets.asyncio.server import ServerConnection
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from src.webcall.config import WebCallConfig
from src.webcall.health import setup_health_routes
from src.webcall.identity import resolve_peer_ids
from src.webcall.signaling.protocol import (
    LoginMessage,
    PartnerOfflineMessage,
    PartnerOnlineMessage,
    encode_message,
)

logger = logging.getLogger(__name__)


class SignalingRelay:
    """WebSocket relay between the two call peers.

    At most one connection is kept per username; a second login under the
    same name replaces (and closes) the first.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 8765,
        max_message_size: int = 2**20,
    ) -> None:
        """Initialize signaling relay.

        Args:
            host: Bind host address
            port: Bind port (0 picks a free port)
            max_message_size: Maximum inbound message size in bytes
        """
        self._host = host
        self._port = port
        self._max_message_size = max_message_size
        self._server: Any = None  # websockets Server
        self._users: dict[str, ServerConnection] = {}

    @property
    def is_running(self) -> bool:
        """Check if the relay server is currently running."""
        return self._server is not None

    @property
    def port(self) -> int:
        """Bound port (resolved after start when configured as 0)."""
        if self._server is not None:
            for sock in self._server.sockets:
                return int(sock.getsockname()[1])
        return self._port

    @property
    def connected_users(self) -> list[str]:
        """Usernames with an open connection."""
        return sorted(self._users)

    async def start(self) -> None:
        """Start accepting connections.

        Raises:
            RuntimeError: If the relay is already running
            OSError: If port binding fails
        """
        if self._server is not None:
            raise RuntimeError("Signaling relay is already running")

        try:
            self._server = await websockets.serve(
                self._handle_connection,
                self._host,
                self._port,
                max_size=self._max_message_size,
            )
        except OSError as e:
            logger.error(
                "Failed to bind signaling relay",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise

        logger.info("Signaling relay started", extra={"host": self._host, "port": self.port})

    async def stop(self) -> None:
        """Close all connections and stop the server."""
        if self._server is None:
            return

        logger.info("Stopping signaling relay")
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        self._users.clear()
        logger.info("Signaling relay stopped")

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        username: str | None = None
        logger.info("New relay connection", extra={"remote": websocket.remote_address})

        try:
            async for raw in websocket:
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError as e:
                    logger.error("Invalid JSON message", extra={"error": str(e)})
                    continue

                if not isinstance(data, dict):
                    logger.error("Message is not a JSON object", extra={"username": username})
                    continue

                if data.get("type") == "login":
                    try:
                        login = LoginMessage.model_validate(data)
                    except ValidationError as e:
                        logger.error("Invalid login message", extra={"error": str(e)})
                        continue
                    username = login.username
                    await self._register(username, websocket)
                    continue

                if username is None:
                    logger.warning(
                        "Message before login, dropping",
                        extra={"type": data.get("type")},
                    )
                    continue

                await self._forward(username, data)

        except ConnectionClosed:
            pass
        finally:
            if username is not None:
                await self._unregister(username, websocket)
            logger.info("Relay connection closed", extra={"username": username})

    async def _register(self, username: str, websocket: ServerConnection) -> None:
        previous = self._users.get(username)
        self._users[username] = websocket
        logger.info("User logged in", extra={"username": username})

        if previous is not None and previous is not websocket:
            logger.warning("Replacing existing connection", extra={"username": username})
            await previous.close()

        partner = self._partner_of(username)
        if partner is not None and partner in self._users:
            online = encode_message(PartnerOnlineMessage())
            await self._send(partner, online)
            await self._send(username, online)

    async def _unregister(self, username: str, websocket: ServerConnection) -> None:
        if self._users.get(username) is not websocket:
            return

        del self._users[username]
        logger.info("User logged out", extra={"username": username})

        partner = self._partner_of(username)
        if partner is not None:
            await self._send(partner, encode_message(PartnerOfflineMessage()))

    async def _forward(self, sender: str, data: dict[str, Any]) -> None:
        recipient = data.get("to")
        if not isinstance(recipient, str) or not recipient:
            logger.warning(
                "Message without recipient, dropping",
                extra={"type": data.get("type"), "sender": sender},
            )
            return

        data["from"] = sender
        if not await self._send(recipient, json.dumps(data)):
            logger.warning(
                "Recipient not connected, dropping message",
                extra={"type": data.get("type"), "sender": sender, "recipient": recipient},
            )
            return

        logger.debug(
            "Message forwarded",
            extra={"type": data.get("type"), "sender": sender, "recipient": recipient},
        )

    async def _send(self, username: str, payload: str) -> bool:
        websocket = self._users.get(username)
        if websocket is None or websocket.state != State.OPEN:
            return False

        try:
            await websocket.send(payload)
        except ConnectionClosed as e:
            logger.warning(
                "Failed to send to user",
                extra={"username": username, "error": str(e)},
            )
            return False
        return True

    def _partner_of(self, username: str) -> str | None:
        try:
            return resolve_peer_ids(username)[1]
        except ValueError:
            return None


async def start_relay(config: WebCallConfig) -> None:
    """Run the relay and its health server until cancelled.

    Args:
        config: Loaded configuration (``relay`` and ``signaling`` sections)
    """
    relay = SignalingRelay(
        host=config.relay.host,
        port=config.relay.port,
        max_message_size=config.signaling.max_message_size,
    )
    await relay.start()

    runner: AppRunner | None = None
    if config.relay.health_enabled:
        health_port = config.relay.port + 1  # Use next port after WebSocket
        health_app = Application()
        setup_health_routes(health_app, relay)

        runner = AppRunner(health_app)
        await runner.setup()
        site = TCPSite(runner, "127.0.0.1", health_port)
        await site.start()
        logger.info("Health check server started", extra={"port": health_port})

    try:
        await asyncio.Future()  # run until cancelled
    except asyncio.CancelledError:
        logger.info("Relay loop cancelled")
    finally:
        logger.info("Shutting down signaling relay")
        await relay.stop()
        if runner is not None:
            await runner.cleanup()
            logger.info("Health check server stopped")


def main() -> None:
    """Entry point for the signaling relay."""
    parser = argparse.ArgumentParser(description="WebRTC call signaling relay")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "webcall.yaml",
        help="Path to config YAML file",
    )
    parser.add_argument("--host", type=str, default=None, help="Bind host (overrides config)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (overrides config)")
    args = parser.parse_args()

    config = WebCallConfig.from_yaml_with_defaults(args.config)
    if args.host is not None:
        config.relay.host = args.host
    if args.port is not None:
        config.relay.port = args.port

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(start_relay(config))
    except KeyboardInterrupt:
        logger.info("Signaling relay interrupted")


if __name__ == "__main__":
    main()
