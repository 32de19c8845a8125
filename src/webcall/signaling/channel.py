"""Signaling channel to the relay service.

Provides the duplex message connection used by the call controller: typed
commands go out, typed events come in, and a closed notification is emitted
whenever the connection drops.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.protocol import State

from src.webcall.config import ReconnectConfig
from src.webcall.errors import SignalingClosedError
from src.webcall.signaling.protocol import (
    LoginMessage,
    SignalingMessage,
    encode_message,
    parse_message,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelClosed:
    """The relay connection dropped.

    Attributes:
        reason: Human-readable close reason
        will_reconnect: Whether the channel is about to try reconnecting
    """

    reason: str
    will_reconnect: bool = False


class SignalingChannel(ABC):
    """Base class for relay connections.

    ``send`` is fire-and-forget: it returns once the message is handed to the
    connection. Messages from one sender are delivered in order.
    """

    @abstractmethod
    async def connect(self, server_url: str, identity: str) -> None:
        """Open the connection and announce ``identity`` with a login message.

        Raises:
            ConnectionError: If the relay cannot be reached
        """
        pass

    @abstractmethod
    async def send(self, message: SignalingMessage) -> None:
        """Send a message to the relay.

        Raises:
            SignalingClosedError: If the channel is not open
        """
        pass

    @abstractmethod
    async def events(self) -> AsyncIterator[SignalingMessage | ChannelClosed]:
        """Inbound messages and close notifications, in arrival order.

        The iterator ends once the channel is closed for good.

        Yields:
            Parsed message or ChannelClosed notification
        """
        # Using yield to make this an async generator
        if False:
            yield ChannelClosed(reason="")

    @abstractmethod
    async def close(self) -> None:
        """Close the connection without reconnecting."""
        pass

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Check if messages can currently be sent."""
        pass


class WebSocketSignalingChannel(SignalingChannel):
    """Relay connection over a persistent WebSocket.

    Reconnects with bounded exponential backoff when the connection drops and
    re-sends the login message after every successful (re)connect.
    """

    def __init__(
        self,
        reconnect: ReconnectConfig | None = None,
        max_message_size: int = 2**20,
    ) -> None:
        """Initialize WebSocket signaling channel.

        Args:
            reconnect: Reconnect policy (defaults to ReconnectConfig())
            max_message_size: Maximum inbound message size in bytes
        """
        self._reconnect = reconnect or ReconnectConfig()
        self._max_message_size = max_message_size
        self._websocket: ClientConnection | None = None
        self._server_url: str | None = None
        self._identity: str | None = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        """Check if messages can currently be sent."""
        return (
            not self._closing
            and self._websocket is not None
            and self._websocket.state == State.OPEN
        )

    async def connect(self, server_url: str, identity: str) -> None:
        """Open the connection and log in.

        Args:
            server_url: Relay WebSocket URL
            identity: Local peer id

        Raises:
            ConnectionError: If all connection attempts fail
        """
        self._server_url = server_url
        self._identity = identity
        self._closing = False
        await self._open_with_backoff()

    async def _open(self) -> None:
        assert self._server_url is not None and self._identity is not None

        self._websocket = await websockets.connect(
            self._server_url, max_size=self._max_message_size
        )
        await self._websocket.send(encode_message(LoginMessage(username=self._identity)))

        logger.info(
            "Signaling channel connected",
            extra={"server_url": self._server_url, "identity": self._identity},
        )

    async def _open_with_backoff(self) -> None:
        attempts = self._reconnect.max_attempts if self._reconnect.enabled else 1
        backoff = self._reconnect.initial_backoff_s
        last_error: Exception | None = None

        for attempt in range(attempts):
            if self._closing:
                break
            try:
                await self._open()
                return
            except (OSError, TimeoutError, WebSocketException) as e:
                last_error = e
                if attempt < attempts - 1:
                    logger.warning(
                        "Signaling connection failed, retrying...",
                        extra={
                            "server_url": self._server_url,
                            "attempt": attempt + 1,
                            "max_attempts": attempts,
                            "backoff_s": backoff,
                            "error": str(e),
                        },
                    )
                    await asyncio.sleep(backoff)
                    backoff = min(backoff * 2, self._reconnect.max_backoff_s)
                else:
                    logger.error(
                        "Failed to connect to signaling relay",
                        extra={
                            "server_url": self._server_url,
                            "attempts": attempts,
                            "error": str(e),
                        },
                    )

        raise ConnectionError(
            f"Signaling relay unreachable at {self._server_url}: {last_error}"
        ) from last_error

    async def send(self, message: SignalingMessage) -> None:
        """Send a message to the relay.

        Args:
            message: Outbound message

        Raises:
            SignalingClosedError: If the channel is not open
        """
        if not self.is_open or self._websocket is None:
            raise SignalingClosedError("Signaling channel is not open")

        try:
            await self._websocket.send(encode_message(message))
        except ConnectionClosed as e:
            raise SignalingClosedError(f"Signaling channel closed: {e}") from e

        logger.debug("Signaling message sent", extra={"type": message.type})

    async def events(self) -> AsyncIterator[SignalingMessage | ChannelClosed]:
        """Yield inbound messages and close notifications.

        Unknown message types and malformed JSON are logged and skipped.
        """
        while self._websocket is not None:
            websocket = self._websocket
            reason = "closed by relay"

            try:
                async for raw in websocket:
                    try:
                        message = parse_message(raw)
                    except ValueError as e:
                        logger.error("Invalid signaling message", extra={"error": str(e)})
                        continue

                    if message is None:
                        continue

                    logger.debug("Signaling message received", extra={"type": message.type})
                    yield message
            except ConnectionClosed as e:
                reason = str(e)

            if self._closing:
                return

            will_reconnect = self._reconnect.enabled
            logger.warning(
                "Signaling channel disconnected",
                extra={"reason": reason, "will_reconnect": will_reconnect},
            )
            yield ChannelClosed(reason=reason, will_reconnect=will_reconnect)

            if not will_reconnect:
                return

            try:
                await self._open_with_backoff()
            except ConnectionError:
                yield ChannelClosed(reason="reconnect attempts exhausted", will_reconnect=False)
                return

    async def close(self) -> None:
        """Close the connection without reconnecting."""
        self._closing = True

        if self._websocket is None:
            return

        logger.info("Closing signaling channel")
        try:
            await self._websocket.close()
        except Exception as e:
            logger.warning("Error during signaling close", extra={"error": str(e)})
