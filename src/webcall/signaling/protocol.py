"""Signaling message protocol definitions.

Defines Pydantic models for relay message serialization/deserialization.
Messages are JSON objects discriminated by their ``type`` field.
"""

import json
import logging
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class SessionDescription(BaseModel):
    """Media negotiation offer or answer (SDP)."""

    type: Literal["offer", "answer", "pranswer", "rollback"]
    sdp: str = Field(default="", description="Session description body")


class IceCandidatePayload(BaseModel):
    """Network-path candidate as exchanged by browsers."""

    model_config = ConfigDict(populate_by_name=True)

    candidate: str = Field(..., description="candidate-attribute line")
    sdp_mid: str | None = Field(default=None, alias="sdpMid")
    sdp_mline_index: int | None = Field(default=None, alias="sdpMLineIndex")
    username_fragment: str | None = Field(default=None, alias="usernameFragment")


class _RoutedMessage(BaseModel):
    """Message addressed to (or received from) a specific peer."""

    model_config = ConfigDict(populate_by_name=True)

    to: str | None = Field(default=None, description="Recipient peer id")
    from_: str | None = Field(default=None, alias="from", description="Sender peer id")


class LoginMessage(BaseModel):
    """Client → Relay: announce identity on connect."""

    type: Literal["login"] = "login"
    username: str = Field(..., min_length=1, description="Local peer id")


class PartnerOnlineMessage(BaseModel):
    """Relay → Client: the paired peer is reachable."""

    type: Literal["partner_online"] = "partner_online"


class PartnerOfflineMessage(BaseModel):
    """Relay → Client: the paired peer disconnected."""

    type: Literal["partner_offline"] = "partner_offline"


class OfferMessage(_RoutedMessage):
    """Start or receive a negotiation."""

    type: Literal["offer"] = "offer"
    offer: SessionDescription


class AnswerMessage(_RoutedMessage):
    """Complete a negotiation."""

    type: Literal["answer"] = "answer"
    answer: SessionDescription


class CandidateMessage(_RoutedMessage):
    """Exchange a connectivity candidate."""

    type: Literal["candidate"] = "candidate"
    candidate: IceCandidatePayload


class RejectMessage(_RoutedMessage):
    """Decline or abort a ringing call."""

    type: Literal["reject"] = "reject"


SignalingMessage = (
    LoginMessage
    | PartnerOnlineMessage
    | PartnerOfflineMessage
    | OfferMessage
    | AnswerMessage
    | CandidateMessage
    | RejectMessage
)

MESSAGE_TYPES: dict[str, type[BaseModel]] = {
    "login": LoginMessage,
    "partner_online": PartnerOnlineMessage,
    "partner_offline": PartnerOfflineMessage,
    "offer": OfferMessage,
    "answer": AnswerMessage,
    "candidate": CandidateMessage,
    "reject": RejectMessage,
}


def encode_message(message: SignalingMessage) -> str:
    """Serialize a message to its JSON wire form."""
    return message.model_dump_json(by_alias=True, exclude_none=True)


def parse_message(raw: str | bytes) -> SignalingMessage | None:
    """Parse a JSON wire message.

    Args:
        raw: Raw message text

    Returns:
        Parsed message, or None if the ``type`` is unknown

    Raises:
        ValueError: If the message is not valid JSON or fails validation
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ValueError("Signaling message must be a JSON object")

    message_type = data.get("type")
    model = MESSAGE_TYPES.get(message_type)  # type: ignore[arg-type]
    if model is None:
        logger.warning("Unknown message type", extra={"type": message_type})
        return None

    try:
        return model.model_validate(data)  # type: ignore[return-value]
    except ValidationError as e:
        raise ValueError(f"Invalid '{message_type}' message: {e}") from e
