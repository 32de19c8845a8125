"""Typed events consumed by the call controller.

Every external callback (relay message, connectivity change, remote track,
view visibility) becomes one of these events on the controller's inbound
queue, preserving arrival order.
"""

from dataclasses import dataclass
from typing import Any

from src.webcall.signaling.channel import ChannelClosed
from src.webcall.signaling.protocol import (
    AnswerMessage,
    CandidateMessage,
    IceCandidatePayload,
    OfferMessage,
    PartnerOfflineMessage,
    PartnerOnlineMessage,
    RejectMessage,
    SessionDescription,
    SignalingMessage,
)
from src.webcall.transport.base import PeerTransport


@dataclass(frozen=True)
class PartnerOnline:
    pass


@dataclass(frozen=True)
class PartnerOffline:
    pass


@dataclass(frozen=True)
class RemoteOffer:
    offer: SessionDescription
    sender: str | None = None


@dataclass(frozen=True)
class RemoteAnswer:
    answer: SessionDescription
    sender: str | None = None


@dataclass(frozen=True)
class RemoteCandidate:
    candidate: IceCandidatePayload
    sender: str | None = None


@dataclass(frozen=True)
class RemoteReject:
    sender: str | None = None


@dataclass(frozen=True)
class SignalingClosed:
    reason: str
    will_reconnect: bool = False


@dataclass(frozen=True)
class IceConnectionStateChanged:
    """Connectivity state of ``transport`` changed."""

    transport: PeerTransport
    state: str


@dataclass(frozen=True)
class LocalCandidate:
    """``transport`` gathered a local candidate to trickle to the partner."""

    transport: PeerTransport
    candidate: IceCandidatePayload


@dataclass(frozen=True)
class RemoteTrackReceived:
    transport: PeerTransport
    track: Any


@dataclass(frozen=True)
class VisibilityChanged:
    """The view moved to the foreground or background."""

    foreground: bool


CallEvent = (
    PartnerOnline
    | PartnerOffline
    | RemoteOffer
    | RemoteAnswer
    | RemoteCandidate
    | RemoteReject
    | SignalingClosed
    | IceConnectionStateChanged
    | LocalCandidate
    | RemoteTrackReceived
    | VisibilityChanged
)


def event_from_signaling(item: SignalingMessage | ChannelClosed) -> CallEvent | None:
    """Convert a channel item to a controller event.

    Returns:
        The matching event, or None for messages a client never consumes
        (e.g. an echoed login)
    """
    if isinstance(item, ChannelClosed):
        return SignalingClosed(reason=item.reason, will_reconnect=item.will_reconnect)
    if isinstance(item, PartnerOnlineMessage):
        return PartnerOnline()
    if isinstance(item, PartnerOfflineMessage):
        return PartnerOffline()
    if isinstance(item, OfferMessage):
        return RemoteOffer(offer=item.offer, sender=item.from_)
    if isinstance(item, AnswerMessage):
        return RemoteAnswer(answer=item.answer, sender=item.from_)
    if isinstance(item, CandidateMessage):
        return RemoteCandidate(candidate=item.candidate, sender=item.from_)
    if isinstance(item, RejectMessage):
        return RemoteReject(sender=item.from_)
    return None
