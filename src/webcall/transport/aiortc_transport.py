"""aiortc-backed peer transport.

Adapts ``aiortc.RTCPeerConnection`` to the PeerTransport interface. aiortc
gathers local candidates while applying the local description and embeds
them in the SDP, so no local candidate events are trickled.
"""

import fractions
import logging
from collections.abc import Callable
from typing import Any

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCRtpSender,
    RTCSessionDescription,
)
from aiortc.codecs.opus import OpusEncoder
from aiortc.exceptions import InvalidStateError
from aiortc.sdp import candidate_from_sdp
from av import AudioFrame
from av.frame import Frame

from src.webcall.config import IceServerConfig
from src.webcall.errors import NegotiationError
from src.webcall.events import IceConnectionStateChanged, RemoteTrackReceived
from src.webcall.signaling.protocol import IceCandidatePayload, SessionDescription
from src.webcall.transport.base import (
    LocalAudioTrack,
    PeerTransport,
    TransportEventSink,
    TransportStats,
)

logger = logging.getLogger(__name__)

# libopus accepts 6-510 kb/s
OPUS_MIN_BITRATE = 6_000
OPUS_MAX_BITRATE = 510_000


class MutableAudioTrack(MediaStreamTrack):
    """Audio track that sends silence while disabled.

    Wraps a captured source track so muting suspends the send pipeline
    without renegotiating or stopping the source. ``on_frame`` runs before
    each frame is returned to the sender.
    """

    kind = "audio"

    def __init__(self, source: MediaStreamTrack, on_frame: Callable[[], None] | None = None) -> None:
        super().__init__()
        self._source = source
        self._on_frame = on_frame
        self.enabled = True

    async def recv(self) -> AudioFrame:
        frame = await self._source.recv()
        if self._on_frame is not None:
            self._on_frame()
        if self.enabled:
            return frame

        silence = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        for plane in silence.planes:
            plane.update(bytes(plane.buffer_size))
        silence.pts = frame.pts
        silence.sample_rate = frame.sample_rate
        silence.time_base = frame.time_base or fractions.Fraction(1, frame.sample_rate)
        return silence

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class AdaptiveOpusEncoder(OpusEncoder):
    """Opus encoder whose bitrate can change during a call.

    libopus reads the bitrate when its codec context opens, so a new target
    reopens the context before the next frame. The resampler and the first
    packet timestamp carry over, keeping RTP timestamps continuous.
    """

    def __init__(self, max_bitrate: int) -> None:
        super().__init__()
        self.max_bitrate = max_bitrate
        self._applied_bitrate = _clamp_opus_bitrate(max_bitrate)
        self.codec.bit_rate = self._applied_bitrate

    @classmethod
    def replacing(cls, encoder: OpusEncoder, max_bitrate: int) -> "AdaptiveOpusEncoder":
        """Take over the stream state of an encoder aiortc already created."""
        adaptive = cls(max_bitrate)
        adaptive.resampler = encoder.resampler
        adaptive.first_packet_pts = encoder.first_packet_pts
        return adaptive

    def encode(self, frame: Frame, force_keyframe: bool = False) -> tuple[list[bytes], int]:
        bitrate = _clamp_opus_bitrate(self.max_bitrate)
        if bitrate != self._applied_bitrate:
            codec = OpusEncoder().codec
            codec.bit_rate = bitrate
            self.codec = codec
            self._applied_bitrate = bitrate
        return super().encode(frame, force_keyframe)


def _clamp_opus_bitrate(bitrate: int) -> int:
    return max(OPUS_MIN_BITRATE, min(bitrate, OPUS_MAX_BITRATE))


def _sender_encoder(sender: RTCRtpSender) -> Any:
    # aiortc keeps the encoder private and creates it on the first frame
    return getattr(sender, "_RTCRtpSender__encoder", None)


def build_rtc_configuration(ice_servers: list[IceServerConfig]) -> RTCConfiguration:
    """Translate configured connectivity-assist servers for aiortc."""
    return RTCConfiguration(
        iceServers=[
            RTCIceServer(urls=server.urls, username=server.username, credential=server.credential)
            for server in ice_servers
        ]
    )


def _to_description(description: RTCSessionDescription | None) -> SessionDescription | None:
    if description is None:
        return None
    return SessionDescription(type=description.type, sdp=description.sdp)  # type: ignore[arg-type]


class AiortcPeerTransport(PeerTransport):
    """PeerTransport over a single aiortc RTCPeerConnection."""

    def __init__(self, ice_servers: list[IceServerConfig], event_sink: TransportEventSink) -> None:
        """Initialize aiortc transport.

        Args:
            ice_servers: STUN/TURN servers
            event_sink: Receives connectivity and remote-track events
        """
        self._pc = RTCPeerConnection(configuration=build_rtc_configuration(ice_servers))
        self._event_sink = event_sink
        self._local_tracks: list[MutableAudioTrack] = []
        self._closed = False
        self._max_bitrate_bps: int | None = None

        @self._pc.on("iceconnectionstatechange")
        def on_ice_connection_state_change() -> None:
            state = self._pc.iceConnectionState
            logger.info("ICE connection state", extra={"state": state})
            self._event_sink(IceConnectionStateChanged(transport=self, state=state))

        @self._pc.on("connectionstatechange")
        def on_connection_state_change() -> None:
            logger.info("Connection state", extra={"state": self._pc.connectionState})

        @self._pc.on("track")
        def on_track(track: MediaStreamTrack) -> None:
            logger.info("Remote track received", extra={"kind": track.kind})
            if track.kind == "audio":
                self._event_sink(RemoteTrackReceived(transport=self, track=track))

    async def add_local_audio(self, track: Any) -> None:
        wrapped = MutableAudioTrack(track, on_frame=self._sync_encoders)
        self._pc.addTrack(wrapped)
        self._local_tracks.append(wrapped)
        logger.info("Adding track to peer connection", extra={"kind": wrapped.kind})

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return SessionDescription(type="offer", sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(type="answer", sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def set_remote_description(self, description: SessionDescription) -> None:
        try:
            await self._pc.setRemoteDescription(
                RTCSessionDescription(sdp=description.sdp, type=description.type)
            )
        except (ValueError, TypeError, AssertionError, InvalidStateError) as e:
            raise NegotiationError(f"Invalid remote {description.type}: {e}") from e

    async def add_ice_candidate(self, candidate: IceCandidatePayload) -> None:
        if not candidate.candidate:
            # end-of-candidates marker; aiortc does not trickle
            logger.debug("Ignoring end-of-candidates marker")
            return

        sdp = candidate.candidate
        if sdp.startswith("candidate:"):
            sdp = sdp.split(":", 1)[1]

        try:
            parsed = candidate_from_sdp(sdp)
        except (ValueError, IndexError, AssertionError) as e:
            raise NegotiationError(f"Malformed candidate '{candidate.candidate}': {e}") from e

        parsed.sdpMid = candidate.sdp_mid
        parsed.sdpMLineIndex = candidate.sdp_mline_index

        try:
            await self._pc.addIceCandidate(parsed)
        except (ValueError, AttributeError) as e:
            raise NegotiationError(f"Candidate rejected: {e}") from e

    async def restart_ice(self) -> SessionDescription | None:
        """Re-offer on the same connection.

        aiortc has no restartIce() and keeps its ICE credentials across
        offers, so this is a plain renegotiation. It refreshes the session
        descriptions but cannot revive an ICE transport that has already
        failed.
        """
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return self.local_description

    async def set_audio_max_bitrate(self, bitrate_bps: int) -> int:
        """Cap the Opus bitrate of every audio sender.

        The target is remembered; senders whose encoder does not exist yet
        pick it up on their first encoded frame. Fixed-rate codecs are
        skipped.
        """
        self._max_bitrate_bps = bitrate_bps
        updated = 0
        for sender in self._audio_senders():
            encoder = _sender_encoder(sender)
            if isinstance(encoder, AdaptiveOpusEncoder):
                encoder.max_bitrate = bitrate_bps
                updated += 1
            elif encoder is None or isinstance(encoder, OpusEncoder):
                updated += 1
            else:
                logger.debug(
                    "Audio codec has a fixed bitrate",
                    extra={"encoder": type(encoder).__name__},
                )
        return updated

    def _audio_senders(self) -> list[RTCRtpSender]:
        return [
            sender
            for sender in self._pc.getSenders()
            if sender.track is not None and sender.track.kind == "audio"
        ]

    def _sync_encoders(self) -> None:
        """Swap created Opus encoders for adaptive ones carrying the target.

        Called from the local track before each frame is handed to the
        sender, so no encode is in flight.
        """
        target = self._max_bitrate_bps
        if target is None:
            return
        for sender in self._audio_senders():
            encoder = _sender_encoder(sender)
            if isinstance(encoder, AdaptiveOpusEncoder):
                encoder.max_bitrate = target
            elif isinstance(encoder, OpusEncoder):
                sender._RTCRtpSender__encoder = AdaptiveOpusEncoder.replacing(encoder, target)  # type: ignore[attr-defined]
                logger.info("Adaptive Opus encoder installed", extra={"bitrate_bps": target})

    async def get_stats(self) -> TransportStats:
        report = await self._pc.getStats()
        rtt: float | None = None
        for stats in report.values():
            if getattr(stats, "kind", "audio") != "audio":
                continue
            stats_type = getattr(stats, "type", None)
            if stats_type == "remote-inbound-rtp":
                value = getattr(stats, "roundTripTime", None)
                if value is not None:
                    rtt = float(value)

        return TransportStats(round_trip_time_s=rtt)

    def local_audio_tracks(self) -> list[LocalAudioTrack]:
        return list(self._local_tracks)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for track in self._local_tracks:
            track.stop()
        await self._pc.close()
        logger.info("Peer connection closed")

    @property
    def local_description(self) -> SessionDescription | None:
        return _to_description(self._pc.localDescription)

    @property
    def remote_description(self) -> SessionDescription | None:
        return _to_description(self._pc.remoteDescription)

    @property
    def ice_connection_state(self) -> str:
        return self._pc.iceConnectionState


def create_aiortc_transport(
    ice_servers: list[IceServerConfig], event_sink: TransportEventSink
) -> PeerTransport:
    """TransportFactory producing aiortc transports."""
    return AiortcPeerTransport(ice_servers, event_sink)
