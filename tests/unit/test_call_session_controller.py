"""Unit tests for the call session controller.

Tests the call state machine end to end against in-memory channel and
transport fakes: outgoing and incoming calls, candidate buffering, teardown,
simultaneous offers, in-place connectivity restarts and stale operations.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.webcall.config import QualityConfig
from src.webcall.errors import CallControlError
from src.webcall.events import (
    IceConnectionStateChanged,
    PartnerOffline,
    PartnerOnline,
    RemoteAnswer,
    RemoteCandidate,
    RemoteOffer,
    RemoteReject,
    RemoteTrackReceived,
    SignalingClosed,
    VisibilityChanged,
)
from src.webcall.media import NullAudioRouter, NullWakeLock
from src.webcall.session import VALID_TRANSITIONS, CallSession, CallState
from src.webcall.signaling.channel import ChannelClosed
from src.webcall.signaling.protocol import (
    OfferMessage,
    PartnerOnlineMessage,
    SessionDescription,
)
from tests.helpers.webcall_fakes import (
    FakeTransport,
    assert_session_invariants,
    build_controller,
    candidate,
)

REMOTE_OFFER = SessionDescription(type="offer", sdp="v=0 remote-offer")
REMOTE_ANSWER = SessionDescription(type="answer", sdp="v=0 remote-answer")


async def _ringing_outgoing(local_id: str = "user1", **kwargs):  # type: ignore[no-untyped-def]
    controller, channel, factory, states = build_controller(local_id, **kwargs)
    await controller.handle_event(PartnerOnline())
    await controller.start_call()
    return controller, channel, factory, states


async def _active_outgoing(local_id: str = "user1", **kwargs):  # type: ignore[no-untyped-def]
    controller, channel, factory, states = await _ringing_outgoing(local_id, **kwargs)
    await controller.handle_event(RemoteAnswer(answer=REMOTE_ANSWER))
    return controller, channel, factory, states


async def _ringing_incoming(local_id: str = "user2", **kwargs):  # type: ignore[no-untyped-def]
    controller, channel, factory, states = build_controller(local_id, **kwargs)
    await controller.handle_event(PartnerOnline())
    await controller.handle_event(RemoteOffer(offer=REMOTE_OFFER))
    return controller, channel, factory, states


class TestPresence:
    """Test partner presence transitions."""

    @pytest.mark.asyncio
    async def test_partner_online_from_idle(self) -> None:
        """Test partner_online moves IDLE to WAITING_FOR_PARTNER."""
        controller, _, _, states = build_controller()
        assert controller.state == CallState.IDLE

        await controller.handle_event(PartnerOnline())

        assert controller.state == CallState.WAITING_FOR_PARTNER
        assert controller.session.partner_present is True
        assert states == [CallState.WAITING_FOR_PARTNER]

    @pytest.mark.asyncio
    async def test_partner_online_twice_is_single_transition(self) -> None:
        """Test repeated partner_online does not re-notify observers."""
        controller, _, _, states = build_controller()

        await controller.handle_event(PartnerOnline())
        await controller.handle_event(PartnerOnline())

        assert states == [CallState.WAITING_FOR_PARTNER]

    @pytest.mark.asyncio
    async def test_partner_offline_while_waiting(self) -> None:
        """Test partner_offline clears presence."""
        controller, _, _, _ = build_controller()
        await controller.handle_event(PartnerOnline())

        await controller.handle_event(PartnerOffline())

        assert controller.state == CallState.WAITING_FOR_PARTNER
        assert controller.session.partner_present is False

    @pytest.mark.asyncio
    async def test_partner_offline_ends_active_call(self) -> None:
        """Test partner_offline tears the active call down."""
        controller, _, factory, _ = await _active_outgoing()

        await controller.handle_event(PartnerOffline())

        assert controller.state == CallState.WAITING_FOR_PARTNER
        assert controller.session.partner_present is False
        assert factory.created[0].closed is True
        assert_session_invariants(controller)


class TestOutgoingCall:
    """Test the calling side (scenarios A and C)."""

    @pytest.mark.asyncio
    async def test_start_call_sends_single_offer(self) -> None:
        """Test start_call sends exactly one offer addressed to the partner."""
        controller, channel, factory, _ = await _ringing_outgoing()

        offers = channel.sent_of_type("offer")
        assert len(offers) == 1
        assert offers[0].to == "user2"
        assert offers[0].offer.type == "offer"
        assert controller.state == CallState.OUTGOING_RINGING

        transport = factory.created[0]
        assert controller.session.transport is transport
        assert controller.session.local_description is not None
        assert len(transport.tracks) == 1
        assert controller.session.initiated_by_local is True

    @pytest.mark.asyncio
    async def test_start_call_requires_partner(self) -> None:
        """Test start_call is rejected while the partner is offline."""
        controller, channel, factory, _ = build_controller()
        await controller.handle_event(PartnerOnline())
        await controller.handle_event(PartnerOffline())

        with pytest.raises(CallControlError, match="not online"):
            await controller.start_call()

        assert channel.sent == []
        assert factory.created == []

    @pytest.mark.asyncio
    async def test_start_call_requires_open_channel(self) -> None:
        """Test start_call is rejected while the channel is closed."""
        controller, channel, factory, _ = build_controller()
        await controller.handle_event(PartnerOnline())
        channel.open = False

        with pytest.raises(CallControlError, match="not open"):
            await controller.start_call()

        assert controller.state == CallState.WAITING_FOR_PARTNER
        assert factory.created == []

    @pytest.mark.asyncio
    async def test_start_call_while_ringing_rejected(self) -> None:
        """Test start_call outside WAITING_FOR_PARTNER is rejected."""
        controller, channel, _, _ = await _ringing_outgoing()

        with pytest.raises(CallControlError):
            await controller.start_call()

        assert len(channel.sent_of_type("offer")) == 1

    @pytest.mark.asyncio
    async def test_microphone_failure_does_not_abort_call(self) -> None:
        """Test a capture failure is logged and the offer is still sent."""
        controller, channel, factory, _ = await _ringing_outgoing(
            audio_source=AsyncMock(side_effect=RuntimeError("Permission denied"))
        )

        assert controller.state == CallState.OUTGOING_RINGING
        assert len(channel.sent_of_type("offer")) == 1
        assert factory.created[0].tracks == []

    @pytest.mark.asyncio
    async def test_answer_activates_call(self) -> None:
        """Test the remote answer moves OUTGOING_RINGING to ACTIVE."""
        controller, _, factory, states = await _active_outgoing()

        assert controller.state == CallState.ACTIVE
        assert factory.created[0].remote_description == REMOTE_ANSWER
        assert states == [
            CallState.WAITING_FOR_PARTNER,
            CallState.OUTGOING_RINGING,
            CallState.ACTIVE,
        ]
        assert_session_invariants(controller)

    @pytest.mark.asyncio
    async def test_candidates_before_answer_applied_after(self) -> None:
        """Test candidates buffered while ringing are applied once the answer lands."""
        controller, _, factory, _ = await _ringing_outgoing()

        for n in (1, 2):
            await controller.handle_event(RemoteCandidate(candidate=candidate(n)))

        transport = factory.created[0]
        assert transport.applied_candidates == []
        assert len(controller.session.candidate_buffer) == 2

        await controller.handle_event(RemoteAnswer(answer=REMOTE_ANSWER))

        assert transport.applied_candidates == [candidate(1).candidate, candidate(2).candidate]
        assert len(controller.session.candidate_buffer) == 0

    @pytest.mark.asyncio
    async def test_malformed_answer_leaves_state_unchanged(self) -> None:
        """Test a rejected answer is logged and the call keeps ringing."""
        controller, _, factory, _ = await _ringing_outgoing()
        factory.created[0].fail_remote_description = True

        await controller.handle_event(RemoteAnswer(answer=REMOTE_ANSWER))

        assert controller.state == CallState.OUTGOING_RINGING
        assert controller.session.transport is factory.created[0]

    @pytest.mark.asyncio
    async def test_answer_while_waiting_ignored(self) -> None:
        """Test an answer with no call attempt is ignored."""
        controller, _, factory, _ = build_controller()
        await controller.handle_event(PartnerOnline())

        await controller.handle_event(RemoteAnswer(answer=REMOTE_ANSWER))

        assert controller.state == CallState.WAITING_FOR_PARTNER
        assert factory.created == []


class TestIncomingCall:
    """Test the called side (scenarios B and E)."""

    @pytest.mark.asyncio
    async def test_offer_stored_without_transport(self) -> None:
        """Test an incoming offer is stored and no transport is created yet."""
        controller, _, factory, _ = await _ringing_incoming()

        assert controller.state == CallState.INCOMING_RINGING
        assert controller.session.pending_remote_offer == REMOTE_OFFER
        assert factory.created == []

    @pytest.mark.asyncio
    async def test_offer_in_idle_marks_partner_present(self) -> None:
        """Test an offer arriving before partner_online still rings."""
        controller, _, _, states = build_controller("user2")

        await controller.handle_event(RemoteOffer(offer=REMOTE_OFFER))

        assert controller.state == CallState.INCOMING_RINGING
        assert controller.session.partner_present is True
        assert states == [CallState.WAITING_FOR_PARTNER, CallState.INCOMING_RINGING]

    @pytest.mark.asyncio
    async def test_accept_sends_single_answer(self) -> None:
        """Test accept answers the partner and activates the call."""
        controller, channel, factory, _ = await _ringing_incoming()

        await controller.accept()

        answers = channel.sent_of_type("answer")
        assert len(answers) == 1
        assert answers[0].to == "user1"
        assert answers[0].answer.type == "answer"
        assert controller.state == CallState.ACTIVE
        assert controller.session.pending_remote_offer is None
        assert factory.created[0].remote_description == REMOTE_OFFER
        assert controller.session.initiated_by_local is False
        assert_session_invariants(controller)

    @pytest.mark.asyncio
    async def test_candidates_before_accept_applied_in_order(self) -> None:
        """Test three early candidates are applied in arrival order after accept."""
        controller, _, factory, _ = await _ringing_incoming()

        for n in (1, 2, 3):
            await controller.handle_event(RemoteCandidate(candidate=candidate(n)))

        assert factory.created == []
        assert len(controller.session.candidate_buffer) == 3

        await controller.accept()

        assert factory.created[0].applied_candidates == [
            candidate(1).candidate,
            candidate(2).candidate,
            candidate(3).candidate,
        ]
        assert len(controller.session.candidate_buffer) == 0

    @pytest.mark.asyncio
    async def test_bad_buffered_candidate_does_not_block_rest(self) -> None:
        """Test a failing buffered candidate is discarded and the rest still apply."""
        controller, _, factory, _ = await _ringing_incoming()
        factory.on_create = lambda t: t.fail_candidates.add(candidate(2).candidate)

        for n in (1, 2, 3):
            await controller.handle_event(RemoteCandidate(candidate=candidate(n)))
        await controller.accept()

        assert factory.created[0].applied_candidates == [
            candidate(1).candidate,
            candidate(3).candidate,
        ]
        assert len(controller.session.candidate_buffer) == 0
        assert controller.state == CallState.ACTIVE

    @pytest.mark.asyncio
    async def test_candidate_after_accept_applied_immediately(self) -> None:
        """Test a candidate arriving once the remote description is set is applied."""
        controller, _, factory, _ = await _ringing_incoming()
        await controller.accept()

        await controller.handle_event(RemoteCandidate(candidate=candidate(7)))

        assert factory.created[0].applied_candidates == [candidate(7).candidate]
        assert len(controller.session.candidate_buffer) == 0

    @pytest.mark.asyncio
    async def test_candidate_without_negotiation_dropped(self) -> None:
        """Test a candidate with no transport and no stored offer is dropped."""
        controller, _, _, _ = build_controller()
        await controller.handle_event(PartnerOnline())

        await controller.handle_event(RemoteCandidate(candidate=candidate(1)))

        assert len(controller.session.candidate_buffer) == 0

    @pytest.mark.asyncio
    async def test_accept_without_offer_raises(self) -> None:
        """Test accept with no stored offer is reported and nothing is sent."""
        controller, channel, factory, _ = build_controller()
        await controller.handle_event(PartnerOnline())

        with pytest.raises(CallControlError, match="No incoming call"):
            await controller.accept()

        assert channel.sent == []
        assert factory.created == []

    @pytest.mark.asyncio
    async def test_accept_requires_open_channel(self) -> None:
        """Test accept is rejected while the channel is closed."""
        controller, channel, factory, _ = await _ringing_incoming()
        channel.open = False

        with pytest.raises(CallControlError, match="not open"):
            await controller.accept()

        assert controller.state == CallState.INCOMING_RINGING
        assert factory.created == []

    @pytest.mark.asyncio
    async def test_accept_failure_returns_to_waiting(self) -> None:
        """Test a malformed stored offer tears the attempt down and notifies the partner."""
        controller, channel, factory, _ = await _ringing_incoming()
        factory.on_create = lambda t: setattr(t, "fail_remote_description", True)

        await controller.accept()

        assert controller.state == CallState.WAITING_FOR_PARTNER
        assert factory.created[0].closed is True
        assert len(channel.sent_of_type("reject")) == 1
        assert channel.sent_of_type("answer") == []
        assert_session_invariants(controller)

    @pytest.mark.asyncio
    async def test_new_offer_replaces_pending(self) -> None:
        """Test a second offer while ringing replaces the stored one."""
        controller, _, _, _ = await _ringing_incoming()
        await controller.handle_event(RemoteCandidate(candidate=candidate(1)))
        newer = SessionDescription(type="offer", sdp="v=0 newer-offer")

        await controller.handle_event(RemoteOffer(offer=newer))

        assert controller.session.pending_remote_offer == newer
        assert len(controller.session.candidate_buffer) == 0


class TestReject:
    """Test local and remote reject."""

    @pytest.mark.asyncio
    async def test_reject_incoming(self) -> None:
        """Test reject notifies the partner and discards the offer."""
        controller, channel, _, _ = await _ringing_incoming()
        await controller.handle_event(RemoteCandidate(candidate=candidate(1)))

        await controller.reject()

        rejects = channel.sent_of_type("reject")
        assert len(rejects) == 1
        assert rejects[0].to == "user1"
        assert controller.state == CallState.WAITING_FOR_PARTNER
        assert controller.session.pending_remote_offer is None
        assert_session_invariants(controller)

    @pytest.mark.asyncio
    async def test_reject_is_idempotent(self) -> None:
        """Test reject on a waiting session sends nothing and does not raise."""
        controller, channel, _, _ = await _ringing_incoming()

        await controller.reject()
        await controller.reject()

        assert len(channel.sent_of_type("reject")) == 1

    @pytest.mark.asyncio
    async def test_reject_requires_open_channel(self) -> None:
        """Test reject while ringing with a closed channel is rejected."""
        controller, channel, _, _ = await _ringing_incoming()
        channel.open = False

        with pytest.raises(CallControlError):
            await controller.reject()

        assert controller.state == CallState.INCOMING_RINGING

    @pytest.mark.asyncio
    async def test_remote_reject_ends_outgoing(self) -> None:
        """Test a remote reject ends the ringing outgoing call."""
        controller, _, factory, _ = await _ringing_outgoing()

        await controller.handle_event(RemoteReject())

        assert controller.state == CallState.WAITING_FOR_PARTNER
        assert factory.created[0].closed is True
        assert_session_invariants(controller)

    @pytest.mark.asyncio
    async def test_remote_reject_resets_media_flags(self) -> None:
        """Test a remote reject during a call restores mute and speaker flags."""
        controller, _, _, _ = await _active_outgoing()
        controller.toggle_mute()
        controller.session.speaker_routed = True

        await controller.handle_event(RemoteReject())

        assert controller.session.muted is False
        assert controller.session.speaker_routed is False


class TestHangUp:
    """Test local hang up (scenario D)."""

    @pytest.mark.asyncio
    async def test_hang_up_active_call(self) -> None:
        """Test hang_up clears transport and buffer and notifies the partner."""
        controller, channel, factory, _ = await _active_outgoing()

        await controller.hang_up()

        assert controller.state == CallState.WAITING_FOR_PARTNER
        assert controller.session.transport is None
        assert len(controller.session.candidate_buffer) == 0
        assert factory.created[0].closed is True
        assert factory.created[0].tracks[0].enabled is True
        assert len(channel.sent_of_type("reject")) == 1
        assert_session_invariants(controller)

    @pytest.mark.asyncio
    async def test_hang_up_is_idempotent(self) -> None:
        """Test a second hang_up sends nothing and does not raise."""
        controller, channel, _, _ = await _active_outgoing()

        await controller.hang_up()
        sent_count = len(channel.sent)
        await controller.hang_up()

        assert len(channel.sent) == sent_count
        assert controller.state == CallState.WAITING_FOR_PARTNER

    @pytest.mark.asyncio
    async def test_hang_up_with_closed_channel_tears_down_locally(self) -> None:
        """Test hang_up still ends the call when the relay is unreachable."""
        controller, channel, factory, _ = await _active_outgoing()
        channel.open = False

        await controller.hang_up()

        assert controller.state == CallState.WAITING_FOR_PARTNER
        assert factory.created[0].closed is True
        assert channel.sent_of_type("reject") == []

    @pytest.mark.asyncio
    async def test_new_call_after_hang_up(self) -> None:
        """Test a fresh transport is created for the next call."""
        controller, channel, factory, _ = await _active_outgoing()
        await controller.hang_up()

        await controller.start_call()

        assert len(factory.created) == 2
        assert controller.session.transport is factory.created[1]
        assert len(channel.sent_of_type("offer")) == 2


class TestSignalingLoss:
    """Test signaling channel closure."""

    @pytest.mark.asyncio
    async def test_signaling_closed_tears_down(self) -> None:
        """Test a dropped relay connection ends the call."""
        controller, _, factory, _ = await _active_outgoing()

        await controller.handle_event(SignalingClosed(reason="going away", will_reconnect=True))

        assert controller.state == CallState.WAITING_FOR_PARTNER
        assert controller.session.partner_present is False
        assert factory.created[0].closed is True
        assert_session_invariants(controller)

    @pytest.mark.asyncio
    async def test_signaling_closed_discards_incoming_offer(self) -> None:
        """Test a dropped relay connection discards a ringing offer."""
        controller, _, _, _ = await _ringing_incoming()

        await controller.handle_event(SignalingClosed(reason="reset"))

        assert controller.state == CallState.WAITING_FOR_PARTNER
        assert controller.session.pending_remote_offer is None


class TestMute:
    """Test mute toggling through the controller."""

    @pytest.mark.asyncio
    async def test_mute_is_involutive(self) -> None:
        """Test toggling mute twice restores track enablement."""
        controller, channel, factory, _ = await _active_outgoing()
        track = factory.created[0].tracks[0]
        sent_count = len(channel.sent)

        assert controller.toggle_mute() is True
        assert track.enabled is False
        assert controller.session.muted is True

        assert controller.toggle_mute() is False
        assert track.enabled is True
        assert controller.session.muted is False

        assert len(channel.sent) == sent_count

    def test_mute_without_transport_is_noop(self) -> None:
        """Test toggling mute with no call leaves the flag unchanged."""
        controller, _, _, _ = build_controller()

        assert controller.toggle_mute() is False
        assert controller.session.muted is False


class TestSimultaneousOffers:
    """Test tie-break when both peers call at once."""

    @pytest.mark.asyncio
    async def test_priority_side_keeps_offer(self) -> None:
        """Test the smaller id ignores the partner's offer."""
        controller, _, factory, _ = await _ringing_outgoing("user1")

        await controller.handle_event(RemoteOffer(offer=REMOTE_OFFER))

        assert controller.state == CallState.OUTGOING_RINGING
        assert controller.session.transport is factory.created[0]
        assert controller.session.pending_remote_offer is None

    @pytest.mark.asyncio
    async def test_other_side_yields(self) -> None:
        """Test the larger id abandons its attempt and rings with the partner's offer."""
        controller, _, factory, _ = await _ringing_outgoing("user2")

        await controller.handle_event(RemoteOffer(offer=REMOTE_OFFER))

        assert controller.state == CallState.INCOMING_RINGING
        assert controller.session.transport is None
        assert factory.created[0].closed is True
        assert controller.session.pending_remote_offer == REMOTE_OFFER
        assert controller.session.initiated_by_local is False

        await controller.accept()
        assert controller.state == CallState.ACTIVE


class TestConnectivityRestart:
    """Test in-place restart on connectivity failure."""

    @pytest.mark.asyncio
    async def test_initiator_restarts_in_place(self) -> None:
        """Test the calling side restarts without a new transport or state change."""
        controller, channel, factory, states = await _active_outgoing()
        transport = factory.created[0]
        state_count = len(states)

        await controller.handle_event(IceConnectionStateChanged(transport=transport, state="failed"))

        assert transport.restart_count == 1
        assert controller.state == CallState.ACTIVE
        assert controller.session.transport is transport
        assert len(factory.created) == 1
        assert len(transport.tracks) == 1
        assert len(channel.sent_of_type("offer")) == 2
        assert len(states) == state_count

    @pytest.mark.asyncio
    async def test_callee_waits_for_restart(self) -> None:
        """Test the called side leaves the restart to the caller."""
        controller, channel, factory, _ = await _ringing_incoming()
        await controller.accept()
        transport = factory.created[0]

        await controller.handle_event(IceConnectionStateChanged(transport=transport, state="failed"))

        assert transport.restart_count == 0
        assert channel.sent_of_type("offer") == []

    @pytest.mark.asyncio
    async def test_renegotiation_offer_answered_in_place(self) -> None:
        """Test a restart offer during a call is answered without a state change."""
        controller, channel, factory, _ = await _ringing_incoming()
        await controller.accept()

        restart_offer = SessionDescription(type="offer", sdp="v=0 restart-offer")
        await controller.handle_event(RemoteOffer(offer=restart_offer))

        assert controller.state == CallState.ACTIVE
        assert factory.created[0].remote_description == restart_offer
        assert len(factory.created) == 1
        assert len(channel.sent_of_type("answer")) == 2

    @pytest.mark.asyncio
    async def test_failure_of_old_transport_ignored(self) -> None:
        """Test connectivity events from a torn-down transport are ignored."""
        controller, _, factory, _ = await _active_outgoing()
        old = factory.created[0]
        await controller.hang_up()
        await controller.start_call()
        await controller.handle_event(RemoteAnswer(answer=REMOTE_ANSWER))

        await controller.handle_event(IceConnectionStateChanged(transport=old, state="failed"))

        assert old.restart_count == 0
        assert factory.created[1].restart_count == 0

    @pytest.mark.asyncio
    async def test_non_failed_state_ignored(self) -> None:
        """Test only the failed state triggers a restart."""
        controller, _, factory, _ = await _active_outgoing()
        transport = factory.created[0]

        for state in ("checking", "connected", "disconnected"):
            await controller.handle_event(IceConnectionStateChanged(transport=transport, state=state))

        assert transport.restart_count == 0


class TestStaleOperations:
    """Test that teardown makes in-flight operations no-ops."""

    @pytest.mark.asyncio
    async def test_hang_up_during_offer_creation(self) -> None:
        """Test an offer finishing after hang up is never applied or sent."""
        gate = asyncio.Event()
        controller, channel, factory, _ = build_controller()
        factory.on_create = lambda t: setattr(t, "offer_gate", gate)
        await controller.handle_event(PartnerOnline())

        task = asyncio.create_task(controller.start_call())
        while not factory.created:
            await asyncio.sleep(0)
        for _ in range(3):
            await asyncio.sleep(0)

        await controller.hang_up()
        gate.set()
        await task

        transport = factory.created[0]
        assert transport.closed is True
        assert transport.local_description is None
        assert channel.sent_of_type("offer") == []
        assert controller.state == CallState.WAITING_FOR_PARTNER
        assert_session_invariants(controller)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ended_by", ["hang_up", "remote_reject"])
    async def test_call_ended_while_accepting(self, ended_by: str) -> None:
        """Test an accept suspended on the remote offer never sends an answer."""
        gate = asyncio.Event()
        controller, channel, factory, _ = await _ringing_incoming()
        factory.on_create = lambda t: setattr(t, "remote_description_gate", gate)

        task = asyncio.create_task(controller.accept())
        while not factory.created:
            await asyncio.sleep(0)
        for _ in range(3):
            await asyncio.sleep(0)

        if ended_by == "hang_up":
            await controller.hang_up()
        else:
            await controller.handle_event(RemoteReject())
        gate.set()
        await task

        assert factory.created[0].closed is True
        assert channel.sent_of_type("answer") == []
        assert controller.state == CallState.WAITING_FOR_PARTNER
        assert controller.session.transport is None
        assert_session_invariants(controller)

    @pytest.mark.asyncio
    async def test_remote_track_from_old_transport_ignored(self) -> None:
        """Test a late remote track from a closed transport is not played."""
        router = NullAudioRouter()
        controller, _, factory, _ = await _active_outgoing(audio_router=router)
        old = factory.created[0]
        await controller.hang_up()

        await controller.handle_event(RemoteTrackReceived(transport=old, track=MagicMock()))

        assert router.stream is None


class TestBackgroundActivities:
    """Test quality monitor and wake-lock lifetimes."""

    @pytest.mark.asyncio
    async def test_monitor_runs_only_while_active(self) -> None:
        """Test the quality monitor starts on ACTIVE and stops on teardown."""
        controller, _, _, _ = await _active_outgoing(
            quality=QualityConfig(enabled=True, interval_s=60.0)
        )
        monitor = controller.monitor
        assert monitor is not None
        assert monitor.is_running is True

        await controller.hang_up()

        assert controller.monitor is None
        assert monitor.is_running is False

    @pytest.mark.asyncio
    async def test_monitor_disabled(self) -> None:
        """Test no monitor is started when adaptive bitrate is disabled."""
        controller, _, _, _ = await _active_outgoing()

        assert controller.monitor is None

    @pytest.mark.asyncio
    async def test_wake_lock_follows_call_and_visibility(self) -> None:
        """Test the wake lock is held only while active and foregrounded."""
        wake_lock = NullWakeLock()
        controller, _, _, _ = await _active_outgoing(wake_lock=wake_lock)
        assert wake_lock.is_held is True

        await controller.handle_event(VisibilityChanged(foreground=False))
        assert wake_lock.is_held is False

        await controller.handle_event(VisibilityChanged(foreground=True))
        assert wake_lock.is_held is True

        await controller.hang_up()
        assert wake_lock.is_held is False

    @pytest.mark.asyncio
    async def test_foreground_without_call_does_not_lock(self) -> None:
        """Test foregrounding with no active call leaves the lock released."""
        wake_lock = NullWakeLock()
        controller, _, _, _ = build_controller(wake_lock=wake_lock)

        await controller.set_foreground(True)

        assert wake_lock.is_held is False

    @pytest.mark.asyncio
    async def test_set_audio_bitrate(self) -> None:
        """Test bitrate changes reach the current transport only."""
        controller, _, factory, _ = build_controller()
        assert await controller.set_audio_bitrate(20_000) == 0

        await controller.handle_event(PartnerOnline())
        await controller.start_call()

        assert await controller.set_audio_bitrate(20_000) == 1
        assert factory.created[0].bitrates == [20_000]


class TestRemoteAudio:
    """Test remote stream playback and speaker routing."""

    @pytest.mark.asyncio
    async def test_remote_track_played_and_routed(self) -> None:
        """Test the remote track is played and speaker routing toggles."""
        router = NullAudioRouter()
        controller, _, factory, _ = await _active_outgoing(audio_router=router)
        track = MagicMock()

        await controller.handle_event(RemoteTrackReceived(transport=factory.created[0], track=track))
        assert router.stream is track

        assert await controller.toggle_speaker_routing() is True
        assert router.speaker is True
        assert controller.session.speaker_routed is True

    @pytest.mark.asyncio
    async def test_speaker_without_stream_is_noop(self) -> None:
        """Test speaker routing without a remote stream changes nothing."""
        controller, _, _, _ = await _active_outgoing()

        assert await controller.toggle_speaker_routing() is False
        assert controller.session.speaker_routed is False


class TestEventLoop:
    """Test event dispatch and the run loop."""

    @pytest.mark.asyncio
    async def test_message_from_unexpected_peer_ignored(self) -> None:
        """Test routed messages from a third party are dropped."""
        controller, _, _, _ = build_controller("user2")

        await controller.handle_event(RemoteOffer(offer=REMOTE_OFFER, sender="mallory"))

        assert controller.state == CallState.IDLE
        assert controller.session.pending_remote_offer is None

    @pytest.mark.asyncio
    async def test_run_consumes_channel_events(self) -> None:
        """Test run() applies channel events in order and ends with the channel."""
        controller, channel, _, _ = build_controller("user2")
        channel.push(PartnerOnlineMessage())
        channel.push(OfferMessage.model_validate({"offer": REMOTE_OFFER.model_dump(), "from": "user1"}))
        channel.push(ChannelClosed(reason="going away", will_reconnect=True))
        channel.push(PartnerOnlineMessage())
        channel.finish()

        await asyncio.wait_for(controller.run(), timeout=1.0)

        assert controller.state == CallState.WAITING_FOR_PARTNER
        assert controller.session.partner_present is True
        assert controller.session.pending_remote_offer is None

    @pytest.mark.asyncio
    async def test_run_processes_posted_transport_events(self) -> None:
        """Test events posted by a transport are handled by the loop."""
        router = NullAudioRouter()
        controller, channel, factory, _ = await _active_outgoing(audio_router=router)
        track = MagicMock()

        run_task = asyncio.create_task(controller.run())
        factory.created[0].event_sink(RemoteTrackReceived(transport=factory.created[0], track=track))
        await asyncio.sleep(0.01)
        channel.finish()
        await asyncio.wait_for(run_task, timeout=1.0)

        assert router.stream is track

    @pytest.mark.asyncio
    async def test_restart_failure_keeps_call_active(self) -> None:
        """Test a failing connectivity restart is logged and the call stays up."""
        controller, _, factory, _ = await _active_outgoing()
        transport = factory.created[0]
        transport.restart_ice = AsyncMock(side_effect=RuntimeError("boom"))  # type: ignore[method-assign]

        await controller.handle_event(IceConnectionStateChanged(transport=transport, state="failed"))

        assert controller.state == CallState.ACTIVE

    @pytest.mark.asyncio
    async def test_handler_error_is_swallowed(self) -> None:
        """Test an exception raised by a handler does not propagate."""
        controller, _, _, _ = build_controller()
        controller._handlers[PartnerOnline] = AsyncMock(side_effect=RuntimeError("boom"))

        await controller.handle_event(PartnerOnline())

        assert controller.state == CallState.IDLE

    @pytest.mark.asyncio
    async def test_login_connects_as_local_peer(self) -> None:
        """Test login announces the local peer id."""
        controller, channel, _, _ = build_controller("user2")

        await controller.login("ws://relay.test:8765")

        assert channel.identity == "user2"


class TestClose:
    """Test controller shutdown."""

    @pytest.mark.asyncio
    async def test_close_ends_session(self) -> None:
        """Test close tears down the call, notifies the partner and is terminal."""
        controller, channel, factory, _ = await _active_outgoing()

        await controller.close()

        assert controller.state == CallState.ENDED
        assert factory.created[0].closed is True
        assert channel.closed is True
        assert len(channel.sent_of_type("reject")) == 1

        await controller.handle_event(PartnerOnline())
        assert controller.state == CallState.ENDED

    @pytest.mark.asyncio
    async def test_close_stops_run_loop(self) -> None:
        """Test close makes run() return."""
        controller, _, _, _ = build_controller()
        run_task = asyncio.create_task(controller.run())
        await asyncio.sleep(0)

        await controller.close()

        await asyncio.wait_for(run_task, timeout=1.0)
        assert controller.state == CallState.ENDED


def test_ended_is_terminal() -> None:
    """Test no transition leaves ENDED and every state can reach it."""
    assert VALID_TRANSITIONS[CallState.ENDED] == set()
    for state, targets in VALID_TRANSITIONS.items():
        if state != CallState.ENDED:
            assert CallState.ENDED in targets


def test_session_descriptions_follow_transport() -> None:
    """Test descriptions are only visible through the current transport."""
    session = CallSession(local_peer_id="user1", remote_peer_id="user2")
    assert session.local_description is None
    assert session.remote_description is None

    transport = FakeTransport([], lambda event: None)
    session.transport = transport
    assert session.remote_description is None
    assert session.local_description is None
