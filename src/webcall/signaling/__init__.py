"""Signaling layer: relay message protocol and channel implementations."""

from src.webcall.signaling.channel import (
    ChannelClosed,
    SignalingChannel,
    WebSocketSignalingChannel,
)
from src.webcall.signaling.protocol import (
    AnswerMessage,
    CandidateMessage,
    IceCandidatePayload,
    LoginMessage,
    OfferMessage,
    PartnerOfflineMessage,
    PartnerOnlineMessage,
    RejectMessage,
    SessionDescription,
    SignalingMessage,
    encode_message,
    parse_message,
)

__all__ = [
    "AnswerMessage",
    "CandidateMessage",
    "ChannelClosed",
    "IceCandidatePayload",
    "LoginMessage",
    "OfferMessage",
    "PartnerOfflineMessage",
    "PartnerOnlineMessage",
    "RejectMessage",
    "SessionDescription",
    "SignalingChannel",
    "SignalingMessage",
    "WebSocketSignalingChannel",
    "encode_message",
    "parse_message",
]
