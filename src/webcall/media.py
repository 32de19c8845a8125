"""Media session management: mute, speaker routing and wake lock.

Wraps the capability services the call controller uses around the media
transport. None of these operations touch the network path.
"""

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.webcall.session import CallSession
    from src.webcall.transport.base import PeerTransport

logger = logging.getLogger(__name__)


class WakeLock(ABC):
    """Process-wide screen wake-lock capability."""

    @abstractmethod
    async def acquire(self) -> None:
        pass

    @abstractmethod
    async def release(self) -> None:
        pass

    @property
    @abstractmethod
    def is_held(self) -> bool:
        pass


class NullWakeLock(WakeLock):
    """Wake lock for environments without a screen; tracks the held flag only."""

    def __init__(self) -> None:
        self._held = False

    async def acquire(self) -> None:
        self._held = True
        logger.debug("Wake lock acquired")

    async def release(self) -> None:
        self._held = False
        logger.debug("Wake lock released")

    @property
    def is_held(self) -> bool:
        return self._held


class AudioRouter(ABC):
    """Audio output routing capability for the remote stream."""

    @abstractmethod
    async def play(self, stream: Any, speaker: bool) -> None:
        """Start playing ``stream`` on the default or speaker output.

        Raises:
            RuntimeError: If playback is refused (e.g. autoplay policy)
        """
        pass

    @abstractmethod
    async def route(self, stream: Any, speaker: bool) -> None:
        """Move playback of ``stream`` to the default or speaker output."""
        pass

    @abstractmethod
    async def detach(self) -> None:
        """Stop playback and release the output."""
        pass


class NullAudioRouter(AudioRouter):
    """Router that only records the requested output."""

    def __init__(self) -> None:
        self.stream: Any = None
        self.speaker = False

    async def play(self, stream: Any, speaker: bool) -> None:
        self.stream = stream
        self.speaker = speaker

    async def route(self, stream: Any, speaker: bool) -> None:
        self.speaker = speaker

    async def detach(self) -> None:
        self.stream = None
        self.speaker = False


class MediaSessionManager:
    """Mute, speaker routing and wake-lock handling for a call session.

    The mute and speaker flags live on the CallSession; this class is the
    only writer of them.
    """

    def __init__(
        self,
        session: "CallSession",
        wake_lock: WakeLock | None = None,
        router: AudioRouter | None = None,
    ) -> None:
        """Initialize media session manager.

        Args:
            session: Call session whose flags are managed
            wake_lock: Wake-lock capability (defaults to NullWakeLock)
            router: Audio routing capability (defaults to NullAudioRouter)
        """
        self._session = session
        self.wake_lock = wake_lock or NullWakeLock()
        self.router = router or NullAudioRouter()
        self.remote_stream: Any = None
        self.foreground = True

    def toggle_mute(self, transport: "PeerTransport | None") -> bool:
        """Flip enablement of every local audio track.

        The network path stays up; only the local send pipeline is suspended.

        Returns:
            New muted flag (unchanged if there is no transport)
        """
        if transport is None:
            return self._session.muted

        muted = not self._session.muted
        for track in transport.local_audio_tracks():
            if track.kind == "audio":
                track.enabled = not muted

        self._session.muted = muted
        logger.info("Microphone mute toggled", extra={"muted": muted})
        return muted

    async def toggle_speaker_routing(self) -> bool:
        """Re-route remote audio between default and speaker outputs.

        Returns:
            New speaker flag (unchanged if no remote stream is attached)
        """
        if self.remote_stream is None:
            return self._session.speaker_routed

        speaker = not self._session.speaker_routed
        await self.router.route(self.remote_stream, speaker)
        self._session.speaker_routed = speaker
        logger.info("Audio output routed", extra={"speaker": speaker})
        return speaker

    async def attach_remote_stream(self, stream: Any) -> None:
        """Start playback of a newly received remote stream."""
        self.remote_stream = stream
        try:
            await self.router.play(stream, self._session.speaker_routed)
        except Exception as e:
            logger.warning("Autoplay prevented", extra={"error": str(e)})

    async def update_wake_lock(self, call_active: bool) -> None:
        """Hold the wake lock exactly while a call is active and foregrounded."""
        wanted = call_active and self.foreground
        try:
            if wanted and not self.wake_lock.is_held:
                await self.wake_lock.acquire()
            elif not wanted and self.wake_lock.is_held:
                await self.wake_lock.release()
        except Exception as e:
            logger.warning("Wake lock update failed", extra={"wanted": wanted, "error": str(e)})

    async def set_foreground(self, foreground: bool, call_active: bool) -> None:
        """Record view visibility and re-evaluate the wake lock."""
        self.foreground = foreground
        await self.update_wake_lock(call_active)

    async def reset(self) -> None:
        """Return to the idle media state after a call ends."""
        self._session.muted = False
        self._session.speaker_routed = False
        if self.remote_stream is not None:
            self.remote_stream = None
            try:
                await self.router.detach()
            except Exception as e:
                logger.warning("Audio output detach failed", extra={"error": str(e)})
        await self.update_wake_lock(call_active=False)
