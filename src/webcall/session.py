"""Call session state and orchestration.

The CallSessionController owns the single call session of a logged-in
process. It consumes one inbound event queue (relay messages, transport
notifications, view visibility) and exposes the call-control commands used
by the view layer.

State Transitions:
- IDLE → WAITING_FOR_PARTNER (partner online, or an offer arrives)
- WAITING_FOR_PARTNER → OUTGOING_RINGING (start_call)
- WAITING_FOR_PARTNER → INCOMING_RINGING (remote offer stored)
- OUTGOING_RINGING → ACTIVE (remote answer applied)
- OUTGOING_RINGING → INCOMING_RINGING (simultaneous offers, partner has priority)
- INCOMING_RINGING → ACTIVE (accept)
- OUTGOING/INCOMING_RINGING, ACTIVE → WAITING_FOR_PARTNER (reject, hang up,
  partner offline, signaling closed, fatal negotiation error)
- * → ENDED (controller closed; terminal)

Connectivity failure while ACTIVE and renegotiation offers are handled in
place without a state change.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from src.webcall.candidate_buffer import IceCandidateBuffer
from src.webcall.config import IceServerConfig, QualityConfig
from src.webcall.errors import CallControlError, SignalingClosedError
from src.webcall.events import (
    CallEvent,
    IceConnectionStateChanged,
    LocalCandidate,
    PartnerOffline,
    PartnerOnline,
    RemoteAnswer,
    RemoteCandidate,
    RemoteOffer,
    RemoteReject,
    RemoteTrackReceived,
    SignalingClosed,
    VisibilityChanged,
    event_from_signaling,
)
from src.webcall.identity import has_priority
from src.webcall.media import AudioRouter, MediaSessionManager, WakeLock
from src.webcall.quality import LinkQualityProbe, NetworkQualityMonitor, TransportStatsProbe
from src.webcall.signaling.channel import SignalingChannel
from src.webcall.signaling.protocol import (
    AnswerMessage,
    CandidateMessage,
    OfferMessage,
    RejectMessage,
    SessionDescription,
    SignalingMessage,
)
from src.webcall.transport.base import PeerTransport, TransportFactory

logger = logging.getLogger(__name__)


class CallState(Enum):
    """Call session states."""

    IDLE = "idle"
    WAITING_FOR_PARTNER = "waiting_for_partner"
    OUTGOING_RINGING = "outgoing_ringing"
    INCOMING_RINGING = "incoming_ringing"
    ACTIVE = "active"
    ENDED = "ended"


# Valid state transitions
VALID_TRANSITIONS: dict[CallState, set[CallState]] = {
    CallState.IDLE: {CallState.WAITING_FOR_PARTNER, CallState.ENDED},
    CallState.WAITING_FOR_PARTNER: {
        CallState.OUTGOING_RINGING,
        CallState.INCOMING_RINGING,
        CallState.ENDED,
    },
    CallState.OUTGOING_RINGING: {
        CallState.ACTIVE,
        CallState.INCOMING_RINGING,
        CallState.WAITING_FOR_PARTNER,
        CallState.ENDED,
    },
    CallState.INCOMING_RINGING: {
        CallState.ACTIVE,
        CallState.WAITING_FOR_PARTNER,
        CallState.ENDED,
    },
    CallState.ACTIVE: {CallState.WAITING_FOR_PARTNER, CallState.ENDED},
    CallState.ENDED: set(),  # Terminal state
}

# States in which a call attempt or call exists
CALL_STATES = frozenset(
    {CallState.OUTGOING_RINGING, CallState.INCOMING_RINGING, CallState.ACTIVE}
)


@dataclass
class CallSession:
    """The single active or pending call of a process.

    Descriptions are read from the current transport so they are created and
    destroyed together with it.
    """

    local_peer_id: str
    remote_peer_id: str
    state: CallState = CallState.IDLE
    pending_remote_offer: SessionDescription | None = None
    candidate_buffer: IceCandidateBuffer = field(default_factory=IceCandidateBuffer)
    muted: bool = False
    speaker_routed: bool = False
    partner_present: bool = False
    initiated_by_local: bool = False
    transport: PeerTransport | None = None

    @property
    def local_description(self) -> SessionDescription | None:
        if self.transport is None:
            return None
        return self.transport.local_description

    @property
    def remote_description(self) -> SessionDescription | None:
        if self.transport is None:
            return None
        return self.transport.remote_description


StateCallback = Callable[[CallState, CallSession], None]
AudioSource = Callable[[], Awaitable[Any]]


class _StaleTransport(Exception):
    """The transport an operation ran against was torn down meanwhile."""


class CallSessionController:
    """State machine driving one call session.

    Negotiation steps against the transport are serialized by a lock.
    Teardown never waits for that lock: it detaches the transport from the
    session first, and any operation resuming afterwards finds a different
    current transport and discards its result.
    """

    def __init__(
        self,
        session: CallSession,
        channel: SignalingChannel,
        transport_factory: TransportFactory,
        audio_source: AudioSource | None = None,
        ice_servers: list[IceServerConfig] | None = None,
        quality: QualityConfig | None = None,
        probe_factory: Callable[[PeerTransport], LinkQualityProbe] | None = None,
        wake_lock: WakeLock | None = None,
        audio_router: AudioRouter | None = None,
        on_state_changed: StateCallback | None = None,
    ) -> None:
        """Initialize call session controller.

        Args:
            session: Session owned by this controller
            channel: Relay connection
            transport_factory: Creates a peer transport per negotiation attempt
            audio_source: Coroutine function returning a captured microphone track
            ice_servers: Connectivity-assist servers for new transports
            quality: Adaptive bitrate settings
            probe_factory: Builds the link-quality probe for an active transport
            wake_lock: Wake-lock capability
            audio_router: Remote audio routing capability
            on_state_changed: Called with (state, session) after every transition
        """
        self.session = session
        self._channel = channel
        self._transport_factory = transport_factory
        self._audio_source = audio_source
        self._ice_servers = ice_servers if ice_servers is not None else []
        self._quality = quality or QualityConfig()
        self._probe_factory = probe_factory or TransportStatsProbe
        self._on_state_changed = on_state_changed

        self.media = MediaSessionManager(session, wake_lock=wake_lock, router=audio_router)

        self._lock = asyncio.Lock()
        self._events: asyncio.Queue[CallEvent | None] = asyncio.Queue()
        self._monitor: NetworkQualityMonitor | None = None

        self._handlers: dict[type, Callable[[Any], Awaitable[None]]] = {
            PartnerOnline: self._on_partner_online,
            PartnerOffline: self._on_partner_offline,
            RemoteOffer: self._on_remote_offer,
            RemoteAnswer: self._on_remote_answer,
            RemoteCandidate: self._on_remote_candidate,
            RemoteReject: self._on_remote_reject,
            SignalingClosed: self._on_signaling_closed,
            IceConnectionStateChanged: self._on_ice_connection_state,
            LocalCandidate: self._on_local_candidate,
            RemoteTrackReceived: self._on_remote_track,
            VisibilityChanged: self._on_visibility_changed,
        }

    @property
    def state(self) -> CallState:
        return self.session.state

    @property
    def monitor(self) -> NetworkQualityMonitor | None:
        """Quality monitor of the active call, if any."""
        return self._monitor

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------

    async def login(self, server_url: str) -> None:
        """Connect the relay channel as the local peer.

        Raises:
            ConnectionError: If the relay cannot be reached
        """
        await self._channel.connect(server_url, self.session.local_peer_id)

    def post_event(self, event: CallEvent) -> None:
        """Queue an event for the controller loop (transport event sink)."""
        self._events.put_nowait(event)

    async def run(self) -> None:
        """Consume events until the channel ends or the controller is closed."""
        pump = asyncio.create_task(self._pump_signaling())
        try:
            while True:
                event = await self._events.get()
                if event is None:
                    break
                await self.handle_event(event)
        finally:
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass

    async def _pump_signaling(self) -> None:
        try:
            async for item in self._channel.events():
                event = event_from_signaling(item)
                if event is not None:
                    self._events.put_nowait(event)
        finally:
            self._events.put_nowait(None)

    async def handle_event(self, event: CallEvent) -> None:
        """Apply one event to the state machine.

        Handler failures are logged; they never stop the loop.
        """
        if self.session.state == CallState.ENDED:
            logger.debug("Ignoring event after session end", extra={"event": type(event).__name__})
            return

        sender = getattr(event, "sender", None)
        if sender is not None and sender != self.session.remote_peer_id:
            logger.warning(
                "Ignoring message from unexpected peer",
                extra={"event": type(event).__name__, "sender": sender},
            )
            return

        handler = self._handlers.get(type(event))
        if handler is None:
            logger.warning("Unhandled call event", extra={"event": type(event).__name__})
            return

        try:
            await handler(event)
        except Exception as e:
            logger.error(
                "Error handling call event",
                extra={"event": type(event).__name__, "error": str(e)},
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Call-control commands
    # ------------------------------------------------------------------

    async def start_call(self) -> None:
        """Call the partner: create a transport and send an offer.

        Raises:
            CallControlError: If not waiting for a present partner, or the
                channel is not open
        """
        if self.session.state != CallState.WAITING_FOR_PARTNER:
            raise CallControlError(f"Cannot start a call while {self.session.state.value}")
        if not self.session.partner_present:
            raise CallControlError("Partner is not online")
        self._require_open()

        self.session.initiated_by_local = True
        self._transition(CallState.OUTGOING_RINGING)

        async with self._lock:
            if self.session.state != CallState.OUTGOING_RINGING:
                logger.info("Outgoing call ended before negotiation started")
                return

            transport = await self._create_transport()
            try:
                await self._capture_local_audio(transport)
                offer = await transport.create_offer()
                self._ensure_current(transport)
                await transport.set_local_description(offer)
                self._ensure_current(transport)
                await self._channel.send(
                    OfferMessage(
                        to=self.session.remote_peer_id,
                        offer=transport.local_description or offer,
                    )
                )
            except _StaleTransport:
                logger.info("Outgoing call attempt superseded")
                return
            except Exception as e:
                if not self._is_current(transport):
                    return
                logger.error("Failed to start call", extra={"error": str(e)}, exc_info=True)
                await self._end_call("offer failed")
                return

        logger.info("Offer sent", extra={"to": self.session.remote_peer_id})

    async def accept(self) -> None:
        """Accept the stored incoming offer and answer it.

        Raises:
            CallControlError: If there is no stored offer, or the channel is
                not open
        """
        offer = self.session.pending_remote_offer
        if self.session.state != CallState.INCOMING_RINGING or offer is None:
            raise CallControlError("No incoming call to accept")
        self._require_open()

        async with self._lock:
            if self.session.pending_remote_offer is not offer:
                logger.info("Incoming call changed before it could be accepted")
                return

            self.session.initiated_by_local = False
            transport = await self._create_transport()
            try:
                await self._capture_local_audio(transport)
                await transport.set_remote_description(offer)
                self._ensure_current(transport)
                self.session.pending_remote_offer = None

                await self.session.candidate_buffer.drain(transport.add_ice_candidate)
                self._ensure_current(transport)

                answer = await transport.create_answer()
                self._ensure_current(transport)
                await transport.set_local_description(answer)
                self._ensure_current(transport)
                await self._channel.send(
                    AnswerMessage(
                        to=self.session.remote_peer_id,
                        answer=transport.local_description or answer,
                    )
                )
                self._ensure_current(transport)
            except _StaleTransport:
                logger.info("Accepted call ended before negotiation finished")
                return
            except Exception as e:
                if not self._is_current(transport):
                    return
                logger.error("Failed to accept call", extra={"error": str(e)}, exc_info=True)
                await self._end_call("answer failed")
                await self._send_best_effort(RejectMessage(to=self.session.remote_peer_id))
                return

            self._transition(CallState.ACTIVE)
            await self._on_call_active(transport)

        logger.info("Answer sent", extra={"to": self.session.remote_peer_id})

    async def reject(self) -> None:
        """Decline the ringing incoming call (no-op if none is ringing).

        Raises:
            CallControlError: If the channel is not open
        """
        if self.session.state != CallState.INCOMING_RINGING:
            logger.debug("Reject ignored", extra={"state": self.session.state.value})
            return
        self._require_open()

        await self._end_call("rejected locally")
        await self._send_best_effort(RejectMessage(to=self.session.remote_peer_id))

    async def hang_up(self) -> None:
        """End the current call or call attempt (no-op if there is none).

        The local teardown always happens; the partner is notified when the
        channel is open.
        """
        if self.session.state not in CALL_STATES:
            logger.debug("Hang up ignored", extra={"state": self.session.state.value})
            return

        notify = self._channel.is_open
        await self._end_call("hung up locally")
        if notify:
            await self._send_best_effort(RejectMessage(to=self.session.remote_peer_id))

    def toggle_mute(self) -> bool:
        """Flip local audio enablement; returns the new muted flag."""
        return self.media.toggle_mute(self.session.transport)

    async def toggle_speaker_routing(self) -> bool:
        """Switch remote audio between default and speaker output."""
        return await self.media.toggle_speaker_routing()

    async def set_audio_bitrate(self, bitrate_bps: int) -> int:
        """Set the maximum bitrate of the outgoing audio encoding.

        Returns:
            Number of audio senders updated (0 without a transport)
        """
        transport = self.session.transport
        if transport is None:
            return 0
        return await transport.set_audio_max_bitrate(bitrate_bps)

    async def set_foreground(self, foreground: bool) -> None:
        """Record view visibility; holds the wake lock only while active and visible."""
        await self.media.set_foreground(foreground, self.session.state == CallState.ACTIVE)

    async def close(self) -> None:
        """End the session for good (logout) and stop the event loop."""
        if self.session.state == CallState.ENDED:
            return

        in_call = self.session.state in CALL_STATES
        if in_call and self._channel.is_open:
            await self._send_best_effort(RejectMessage(to=self.session.remote_peer_id))

        transport = self._detach_transport()
        self.session.candidate_buffer.clear()
        self.session.pending_remote_offer = None
        self._transition(CallState.ENDED)
        await self._dispose(transport)

        await self._channel.close()
        self._events.put_nowait(None)
        logger.info("Call session closed", extra={"local_peer_id": self.session.local_peer_id})

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _on_partner_online(self, event: PartnerOnline) -> None:
        self.session.partner_present = True
        if self.session.state == CallState.IDLE:
            self._transition(CallState.WAITING_FOR_PARTNER)
        logger.info("Partner online", extra={"remote_peer_id": self.session.remote_peer_id})

    async def _on_partner_offline(self, event: PartnerOffline) -> None:
        self.session.partner_present = False
        logger.info("Partner offline", extra={"remote_peer_id": self.session.remote_peer_id})
        await self._end_call("partner offline")

    async def _on_signaling_closed(self, event: SignalingClosed) -> None:
        self.session.partner_present = False
        await self._end_call(f"signaling closed: {event.reason}")

    async def _on_remote_offer(self, event: RemoteOffer) -> None:
        self.session.partner_present = True
        state = self.session.state

        if state == CallState.IDLE:
            self._transition(CallState.WAITING_FOR_PARTNER)
            state = self.session.state

        if state == CallState.WAITING_FOR_PARTNER:
            self.session.pending_remote_offer = event.offer
            self._transition(CallState.INCOMING_RINGING)
            logger.info("Incoming call", extra={"from": self.session.remote_peer_id})

        elif state == CallState.INCOMING_RINGING:
            logger.info("Replacing pending incoming offer")
            self.session.pending_remote_offer = event.offer
            self.session.candidate_buffer.clear()

        elif state == CallState.OUTGOING_RINGING:
            if has_priority(self.session.local_peer_id, self.session.remote_peer_id):
                logger.info("Simultaneous offers: keeping local offer")
                return

            logger.info("Simultaneous offers: yielding to partner offer")
            transport = self._detach_transport()
            self.session.candidate_buffer.clear()
            self.session.initiated_by_local = False
            self.session.pending_remote_offer = event.offer
            self._transition(CallState.INCOMING_RINGING)
            await self._close_transport(transport)

        elif state == CallState.ACTIVE:
            await self._apply_renegotiation_offer(event.offer)

    async def _apply_renegotiation_offer(self, offer: SessionDescription) -> None:
        async with self._lock:
            transport = self.session.transport
            if transport is None or self.session.state != CallState.ACTIVE:
                return
            try:
                await transport.set_remote_description(offer)
                self._ensure_current(transport)
                await self.session.candidate_buffer.drain(transport.add_ice_candidate)
                self._ensure_current(transport)
                answer = await transport.create_answer()
                self._ensure_current(transport)
                await transport.set_local_description(answer)
                self._ensure_current(transport)
            except _StaleTransport:
                return
            except Exception as e:
                logger.error("Failed to apply renegotiation offer", extra={"error": str(e)})
                return

            await self._send_best_effort(
                AnswerMessage(
                    to=self.session.remote_peer_id,
                    answer=transport.local_description or answer,
                )
            )
            logger.info("Renegotiation answered")

    async def _on_remote_answer(self, event: RemoteAnswer) -> None:
        async with self._lock:
            state = self.session.state
            transport = self.session.transport
            if state not in (CallState.OUTGOING_RINGING, CallState.ACTIVE) or transport is None:
                logger.warning("Ignoring unexpected answer", extra={"state": state.value})
                return

            try:
                await transport.set_remote_description(event.answer)
                self._ensure_current(transport)
                await self.session.candidate_buffer.drain(transport.add_ice_candidate)
                self._ensure_current(transport)
            except _StaleTransport:
                return
            except Exception as e:
                logger.error("Failed to apply remote answer", extra={"error": str(e)})
                return

            if self.session.state == CallState.OUTGOING_RINGING:
                self._transition(CallState.ACTIVE)
                await self._on_call_active(transport)

    async def _on_remote_candidate(self, event: RemoteCandidate) -> None:
        async with self._lock:
            transport = self.session.transport

            if transport is not None and transport.remote_description is not None:
                try:
                    await transport.add_ice_candidate(event.candidate)
                except Exception as e:
                    logger.warning(
                        "Error adding received candidate",
                        extra={"error": str(e), "candidate": event.candidate.candidate},
                    )
                return

            awaiting_accept = (
                self.session.state == CallState.INCOMING_RINGING
                and self.session.pending_remote_offer is not None
            )
            if transport is not None or awaiting_accept:
                self.session.candidate_buffer.enqueue(event.candidate)
                return

            logger.debug(
                "Dropping candidate with no pending negotiation",
                extra={"state": self.session.state.value},
            )

    async def _on_remote_reject(self, event: RemoteReject) -> None:
        if self.session.state not in CALL_STATES:
            logger.debug("Ignoring reject", extra={"state": self.session.state.value})
            return
        await self._end_call("rejected by partner")

    async def _on_ice_connection_state(self, event: IceConnectionStateChanged) -> None:
        if not self._is_current(event.transport):
            return
        if event.state != "failed" or self.session.state != CallState.ACTIVE:
            return
        if not self.session.initiated_by_local:
            logger.info("Connectivity failed; waiting for partner to restart")
            return

        logger.warning("Connectivity failed; restarting path negotiation")
        async with self._lock:
            transport = event.transport
            try:
                self._ensure_current(transport)
                offer = await transport.restart_ice()
                self._ensure_current(transport)
            except _StaleTransport:
                return
            except Exception as e:
                logger.error("ICE restart failed", extra={"error": str(e)})
                return

            if offer is not None:
                await self._send_best_effort(
                    OfferMessage(to=self.session.remote_peer_id, offer=offer)
                )

    async def _on_local_candidate(self, event: LocalCandidate) -> None:
        # Lock keeps local candidates behind the offer/answer being sent
        async with self._lock:
            if not self._is_current(event.transport):
                return
            await self._send_best_effort(
                CandidateMessage(to=self.session.remote_peer_id, candidate=event.candidate)
            )

    async def _on_remote_track(self, event: RemoteTrackReceived) -> None:
        if not self._is_current(event.transport):
            return
        await self.media.attach_remote_stream(event.track)

    async def _on_visibility_changed(self, event: VisibilityChanged) -> None:
        await self.set_foreground(event.foreground)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(self, new_state: CallState) -> None:
        """Move to ``new_state`` (no-op if already there).

        Raises:
            ValueError: If the transition is not in VALID_TRANSITIONS
        """
        old_state = self.session.state
        if new_state == old_state:
            return
        if new_state not in VALID_TRANSITIONS.get(old_state, set()):
            raise ValueError(f"Invalid state transition: {old_state.value} → {new_state.value}")

        self.session.state = new_state
        logger.info(
            "Call state transition",
            extra={
                "local_peer_id": self.session.local_peer_id,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )

        if self._on_state_changed is not None:
            try:
                self._on_state_changed(new_state, self.session)
            except Exception as e:
                logger.warning("State observer failed", extra={"error": str(e)})

    def _require_open(self) -> None:
        if not self._channel.is_open:
            raise CallControlError("Signaling channel is not open")

    def _is_current(self, transport: PeerTransport) -> bool:
        return self.session.transport is transport

    def _ensure_current(self, transport: PeerTransport) -> None:
        if self.session.transport is not transport:
            raise _StaleTransport()

    async def _send_best_effort(self, message: SignalingMessage) -> None:
        try:
            await self._channel.send(message)
        except SignalingClosedError as e:
            logger.warning(
                "Signaling message not sent",
                extra={"type": message.type, "error": str(e)},
            )

    async def _create_transport(self) -> PeerTransport:
        previous = self._detach_transport()
        await self._close_transport(previous)

        transport = self._transport_factory(self._ice_servers, self.post_event)
        self.session.transport = transport
        logger.info("Peer transport created", extra={"ice_servers": len(self._ice_servers)})
        return transport

    async def _capture_local_audio(self, transport: PeerTransport) -> None:
        if self._audio_source is None:
            return

        try:
            track = await self._audio_source()
        except Exception as e:
            logger.warning(
                "Microphone capture failed; continuing without local audio",
                extra={"error": str(e)},
            )
            return

        if not self._is_current(transport):
            track.stop()
            raise _StaleTransport()

        await transport.add_local_audio(track)

    async def _on_call_active(self, transport: PeerTransport) -> None:
        await self.media.update_wake_lock(call_active=True)

        if self._quality.enabled and self._is_current(transport):
            self._stop_monitor()
            self._monitor = NetworkQualityMonitor(
                self._probe_factory(transport), self.set_audio_bitrate, self._quality
            )
            self._monitor.start()

    def _stop_monitor(self) -> None:
        if self._monitor is not None:
            self._monitor.stop()
            self._monitor = None

    def _detach_transport(self) -> PeerTransport | None:
        transport = self.session.transport
        self.session.transport = None
        self._stop_monitor()
        return transport

    async def _close_transport(self, transport: PeerTransport | None) -> None:
        if transport is None:
            return
        try:
            await transport.close()
        except Exception as e:
            logger.warning("Error closing peer transport", extra={"error": str(e)})

    async def _dispose(self, transport: PeerTransport | None) -> None:
        await self._close_transport(transport)
        await self.media.reset()

    async def _end_call(self, reason: str) -> None:
        """Tear the call down and return to WAITING_FOR_PARTNER.

        Everything that decides the new state happens before the first
        suspension point, so a concurrent command sees the ended call.
        """
        transport = self._detach_transport()
        self.session.candidate_buffer.clear()
        self.session.pending_remote_offer = None
        self.session.initiated_by_local = False
        had_call = transport is not None or self.session.state in CALL_STATES

        if self.session.state != CallState.ENDED:
            self._transition(CallState.WAITING_FOR_PARTNER)

        if had_call:
            logger.info("Call ended", extra={"reason": reason})
        await self._dispose(transport)
