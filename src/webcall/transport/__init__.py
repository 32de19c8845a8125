"""Peer transport layer.

Provides the abstraction the call controller drives. The aiortc-backed
implementation lives in src.webcall.transport.aiortc_transport.
"""

from src.webcall.transport.base import (
    LocalAudioTrack,
    PeerTransport,
    TransportEventSink,
    TransportFactory,
    TransportStats,
)

__all__ = [
    "LocalAudioTrack",
    "PeerTransport",
    "TransportEventSink",
    "TransportFactory",
    "TransportStats",
]
