"""Exception types raised at the call-control seams."""


class WebCallError(Exception):
    """Base exception for call orchestration errors."""

    pass


class CallControlError(WebCallError):
    """A call-control command was rejected without side effects.

    Raised synchronously to the caller (e.g. accept with no stored offer, or
    any command while the signaling channel is not open). Nothing is sent to
    the remote party.
    """

    pass


class SignalingClosedError(WebCallError, ConnectionError):
    """Attempted to send on a signaling channel that is not open."""

    pass


class NegotiationError(WebCallError):
    """A peer transport negotiation step failed."""

    pass
