"""Command-line softphone.

Logs in to the signaling relay as one peer of the pair, drives the call
session controller from typed commands, captures the microphone through
ffmpeg and plays the partner's audio through sounddevice.
"""

import argparse
import asyncio
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any

from aiortc import AudioStreamTrack, MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer
from aiortc.mediastreams import MediaStreamError
from av import AudioResampler

from src.webcall.config import AudioConfig, WebCallConfig
from src.webcall.errors import CallControlError
from src.webcall.identity import resolve_peer_ids
from src.webcall.media import AudioRouter
from src.webcall.session import CallSession, CallSessionController, CallState
from src.webcall.signaling.channel import WebSocketSignalingChannel
from src.webcall.transport.aiortc_transport import create_aiortc_transport

# Configure logging
logger = logging.getLogger(__name__)

PLAYBACK_SAMPLE_RATE = 48000

HELP_TEXT = """
Commands:
  /call    - Call your partner
  /accept  - Accept the incoming call
  /reject  - Decline the incoming call
  /hangup  - End the current call
  /mute    - Toggle microphone mute
  /speaker - Toggle speaker output
  /status  - Show call status
  /quit    - Exit client
  /help    - Show this help
"""


class SoundDeviceAudioRouter(AudioRouter):
    """Plays the remote track on a sounddevice output.

    Speaker routing re-opens the output on ``speaker_device``. Falls back to
    discarding the remote audio if no audio device is available.
    """

    def __init__(
        self,
        output_device: str | int | None = None,
        speaker_device: str | int | None = None,
    ) -> None:
        """Initialize audio router.

        Args:
            output_device: Default playback device name/index
            speaker_device: Playback device for speaker routing
        """
        self.output_device = output_device
        self.speaker_device = speaker_device
        self._resampler = AudioResampler(format="s16", layout="mono", rate=PLAYBACK_SAMPLE_RATE)
        self._stream: Any = None
        # guards _stream between executor writes and output switches
        self._output_lock = threading.Lock()
        self._task: asyncio.Task[None] | None = None
        self._blackhole: MediaBlackhole | None = None

        # Try to import sounddevice for playback
        self.sd: Any = None
        try:
            import sounddevice as sd

            self.sd = sd
            logger.info(f"Audio output initialized (device: {output_device or 'default'})")
        except (ImportError, OSError):
            logger.warning("sounddevice not available, remote audio will be discarded")

    def device_for(self, speaker: bool) -> str | int | None:
        if speaker and self.speaker_device is not None:
            return self.speaker_device
        return self.output_device

    def _open_output(self, speaker: bool) -> None:
        self._close_output()
        stream = self.sd.RawOutputStream(
            samplerate=PLAYBACK_SAMPLE_RATE,
            channels=1,
            dtype="int16",
            device=self.device_for(speaker),
        )
        stream.start()
        with self._output_lock:
            self._stream = stream

    def _close_output(self) -> None:
        with self._output_lock:
            stream, self._stream = self._stream, None
            if stream is None:
                return
            try:
                stream.stop()
                stream.close()
            except Exception as e:  # noqa: S110
                logger.debug(f"Audio output close failed (non-critical): {e}")

    def _write(self, pcm: bytes) -> None:
        with self._output_lock:
            if self._stream is not None:
                self._stream.write(pcm)

    async def play(self, stream: Any, speaker: bool) -> None:
        await self.detach()

        if self.sd is None:
            self._blackhole = MediaBlackhole()
            self._blackhole.addTrack(stream)
            await self._blackhole.start()
            return

        try:
            self._open_output(speaker)
        except Exception as e:
            raise RuntimeError(f"Audio output unavailable: {e}") from e

        self._task = asyncio.create_task(self._pump(stream))

    async def route(self, stream: Any, speaker: bool) -> None:
        if self.sd is None:
            return
        self._open_output(speaker)
        logger.info(f"Audio output switched to {self.device_for(speaker) or 'default'}")

    async def detach(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self._close_output()

        if self._blackhole is not None:
            await self._blackhole.stop()
            self._blackhole = None

    async def _pump(self, track: MediaStreamTrack) -> None:
        loop = asyncio.get_running_loop()
        try:
            while True:
                frame = await track.recv()
                for resampled in self._resampler.resample(frame):
                    pcm = resampled.to_ndarray().tobytes()
                    await loop.run_in_executor(None, self._write, pcm)
        except MediaStreamError:
            logger.info("Remote audio ended")
        except Exception as e:
            logger.error(f"Remote audio playback failed: {e}", exc_info=True)


async def open_microphone(audio: AudioConfig) -> MediaStreamTrack:
    """Open the configured capture device, or a silent track if none is set.

    Raises:
        RuntimeError: If the device has no audio stream
    """
    if audio.input_device is None:
        return AudioStreamTrack()

    player = MediaPlayer(audio.input_device, format=audio.input_format)
    if player.audio is None:
        raise RuntimeError(f"No audio stream on input device {audio.input_device}")
    return player.audio


class CLIClient:
    """Interactive softphone for one peer of the pair."""

    def __init__(self, config: WebCallConfig, user_id: str, verbose: bool = False) -> None:
        """Initialize CLI client.

        Args:
            config: Loaded configuration
            user_id: Local peer id (user1 or user2)
            verbose: Enable verbose logging
        """
        self.config = config
        self.verbose = verbose
        self.running = True

        local_id, remote_id = resolve_peer_ids(user_id)
        self.session = CallSession(local_peer_id=local_id, remote_peer_id=remote_id)
        self.channel = WebSocketSignalingChannel(
            reconnect=config.reconnect,
            max_message_size=config.signaling.max_message_size,
        )
        self.controller = CallSessionController(
            self.session,
            self.channel,
            create_aiortc_transport,
            audio_source=lambda: open_microphone(config.audio),
            ice_servers=config.ice_servers,
            quality=config.quality,
            audio_router=SoundDeviceAudioRouter(
                output_device=config.audio.output_device,
                speaker_device=config.audio.speaker_device,
            ),
            on_state_changed=self.on_state_changed,
        )

    def on_state_changed(self, state: CallState, session: CallSession) -> None:
        if state == CallState.INCOMING_RINGING:
            print(f"\n📞 Incoming call from {session.remote_peer_id} (/accept or /reject)")
        elif state == CallState.OUTGOING_RINGING:
            print(f"\n📞 Calling {session.remote_peer_id}...")
        elif state == CallState.ACTIVE:
            print(f"\n🔗 In call with {session.remote_peer_id}")
        elif state == CallState.WAITING_FOR_PARTNER:
            presence = "online" if session.partner_present else "offline"
            print(f"\n✓ Ready ({session.remote_peer_id} is {presence})")

    def status_line(self) -> str:
        session = self.session
        return (
            f"user={session.local_peer_id} partner={session.remote_peer_id} "
            f"state={session.state.value} partner_online={session.partner_present} "
            f"muted={session.muted} speaker={session.speaker_routed}"
        )

    async def handle_command(self, text: str) -> None:
        """Execute one input line.

        Args:
            text: Raw input line (commands start with ``/``)
        """
        if not text.startswith("/"):
            print("Type /help for available commands")
            return

        command = text[1:].lower()

        try:
            if command == "quit":
                self.running = False
                print("\nGoodbye!")

            elif command == "help":
                print(HELP_TEXT)

            elif command == "call":
                await self.controller.start_call()

            elif command == "accept":
                await self.controller.accept()

            elif command == "reject":
                await self.controller.reject()

            elif command == "hangup":
                await self.controller.hang_up()

            elif command == "mute":
                muted = self.controller.toggle_mute()
                print("🔇 Muted" if muted else "🎙 Unmuted")

            elif command == "speaker":
                speaker = await self.controller.toggle_speaker_routing()
                print("🔊 Speaker on" if speaker else "🔈 Speaker off")

            elif command == "status":
                print(self.status_line())

            else:
                print(f"Unknown command: {command}")
                print("Type /help for available commands")

        except CallControlError as e:
            print(f"\n❌ {e}")

    async def input_loop(self) -> None:
        """Handle user input from stdin."""
        print("\n" + "=" * 60)
        print(f"WebRTC call client ({self.session.local_peer_id})")
        print("=" * 60)
        print(HELP_TEXT)

        loop = asyncio.get_event_loop()

        while self.running:
            try:
                # Read input asynchronously
                text = await loop.run_in_executor(None, input, "> ")
                text = text.strip()
                if text:
                    await self.handle_command(text)

            except EOFError:
                # Handle Ctrl+D
                self.running = False
                break
            except KeyboardInterrupt:
                # Handle Ctrl+C
                self.running = False
                print("\n\nInterrupted!")
                break
            except Exception as e:
                logger.error(f"Input error: {e}")

    async def run(self) -> None:
        """Run the CLI client."""
        try:
            await self.controller.login(self.config.signaling.server_url)
        except ConnectionError as e:
            logger.error(f"Client error: {e}")
            sys.exit(1)

        logger.info(f"Connected to {self.config.signaling.server_url}")
        controller_task = asyncio.create_task(self.controller.run())

        # Setup signal handlers
        def signal_handler() -> None:
            self.running = False

        loop = asyncio.get_event_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        try:
            await self.input_loop()
        finally:
            # Cleanup signal handlers
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

            await self.controller.close()
            await controller_task


def main() -> None:
    """Main entry point for CLI client."""
    parser = argparse.ArgumentParser(description="WebRTC one-to-one audio call client")
    parser.add_argument(
        "--user",
        type=str,
        default=None,
        help="Local peer id: user1 or user2 (default: WEBCALL_USER_ID or config)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "webcall.yaml",
        help="Path to config YAML file",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Signaling relay URL (default: from config, ws://localhost:8765)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    config = WebCallConfig.from_yaml_with_defaults(args.config)
    if args.host is not None:
        config.signaling.server_url = args.host

    user_id = args.user or config.signaling.user_id
    if not user_id:
        parser.error("--user is required (or set WEBCALL_USER_ID)")

    # Setup logging
    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        asyncio.run(CLIClient(config, user_id, verbose=args.verbose).run())
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
