"""Base peer transport abstraction.

Defines the interface the call controller uses to drive a peer-to-peer media
transport. The transport itself (ICE, DTLS, SRTP) is provided by the
platform; implementations only adapt it to this contract.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from src.webcall.config import IceServerConfig
from src.webcall.signaling.protocol import IceCandidatePayload, SessionDescription


class LocalAudioTrack(Protocol):
    """Local audio track whose send pipeline can be suspended."""

    kind: str
    enabled: bool

    def stop(self) -> None: ...


@dataclass(frozen=True)
class TransportStats:
    """Link statistics sampled from a transport.

    Attributes:
        round_trip_time_s: Latest RTCP round-trip time, if known
        downlink_kbps: Estimated downlink throughput, if the platform reports one
    """

    round_trip_time_s: float | None = None
    downlink_kbps: float | None = None


class PeerTransport(ABC):
    """Peer-to-peer media transport driven by the call controller.

    All coroutine methods are negotiation steps; the controller never runs
    two of them concurrently against the same transport. Asynchronous
    notifications (connectivity changes, local candidates, remote tracks)
    are pushed to the event sink given at construction.
    """

    @abstractmethod
    async def add_local_audio(self, track: Any) -> None:
        """Attach a captured local audio track for sending."""
        pass

    @abstractmethod
    async def create_offer(self) -> SessionDescription:
        """Create a local offer."""
        pass

    @abstractmethod
    async def create_answer(self) -> SessionDescription:
        """Create a local answer to the applied remote offer."""
        pass

    @abstractmethod
    async def set_local_description(self, description: SessionDescription) -> None:
        """Apply a local session description."""
        pass

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None:
        """Apply a remote session description.

        Raises:
            NegotiationError: If the description is malformed or out of order
        """
        pass

    @abstractmethod
    async def add_ice_candidate(self, candidate: IceCandidatePayload) -> None:
        """Apply a remote network-path candidate.

        Raises:
            NegotiationError: If the candidate cannot be applied
        """
        pass

    @abstractmethod
    async def restart_ice(self) -> SessionDescription | None:
        """Restart path negotiation in place.

        Returns:
            A new local offer to send to the partner, or None if the platform
            renegotiates on its own
        """
        pass

    @abstractmethod
    async def set_audio_max_bitrate(self, bitrate_bps: int) -> int:
        """Set the maximum bitrate of every outgoing audio encoding.

        Returns:
            Number of audio senders updated

        Raises:
            NegotiationError: If the platform rejects the parameter change
        """
        pass

    @abstractmethod
    async def get_stats(self) -> TransportStats:
        """Sample link statistics."""
        pass

    @abstractmethod
    def local_audio_tracks(self) -> list[LocalAudioTrack]:
        """Local audio tracks currently attached for sending."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the transport and stop local tracks."""
        pass

    @property
    @abstractmethod
    def local_description(self) -> SessionDescription | None:
        """Applied local description, including gathered candidates."""
        pass

    @property
    @abstractmethod
    def remote_description(self) -> SessionDescription | None:
        """Applied remote description; gates candidate application."""
        pass

    @property
    @abstractmethod
    def ice_connection_state(self) -> str:
        """Current connectivity state (new, checking, connected, failed, ...)."""
        pass


# Receives events pushed by a transport; see src.webcall.events
TransportEventSink = Callable[[Any], None]

TransportFactory = Callable[[list[IceServerConfig], TransportEventSink], PeerTransport]
