"""Network quality monitoring and adaptive audio bitrate.

Periodically samples a link-quality signal while a call transport is active
and requests a lower or normal audio encoding bitrate accordingly.

Policy:
- downlink below ``low_bandwidth_kbps`` or connection class in
  ``low_tier_types`` → ``low_bitrate_bps`` (20 kbit/s by default)
- otherwise → ``normal_bitrate_bps`` (64 kbit/s by default)
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from src.webcall.config import QualityConfig
from src.webcall.transport.base import PeerTransport

logger = logging.getLogger(__name__)

# Effective connection class from round-trip time (Network Information API table)
EFFECTIVE_TYPE_RTT_THRESHOLDS_S: list[tuple[float, str]] = [
    (2.0, "slow-2g"),
    (1.4, "2g"),
    (0.27, "3g"),
]


@dataclass(frozen=True)
class LinkQuality:
    """One link-quality sample.

    Attributes:
        downlink_kbps: Estimated downlink throughput, if known
        effective_type: Connection class (slow-2g, 2g, 3g, 4g), if known
    """

    downlink_kbps: float | None = None
    effective_type: str | None = None


def effective_type_from_rtt(rtt_s: float) -> str:
    """Map a round-trip time to a connection class."""
    for threshold_s, effective_type in EFFECTIVE_TYPE_RTT_THRESHOLDS_S:
        if rtt_s >= threshold_s:
            return effective_type
    return "4g"


class LinkQualityProbe(ABC):
    """Source of link-quality samples."""

    @abstractmethod
    async def sample(self) -> LinkQuality:
        """Take one sample."""
        pass


class StaticLinkQualityProbe(LinkQualityProbe):
    """Probe reporting a value set by the host environment."""

    def __init__(self, quality: LinkQuality | None = None) -> None:
        self.quality = quality or LinkQuality()

    def update(self, quality: LinkQuality) -> None:
        self.quality = quality

    async def sample(self) -> LinkQuality:
        return self.quality


class TransportStatsProbe(LinkQualityProbe):
    """Probe deriving link quality from transport statistics."""

    def __init__(self, transport: PeerTransport) -> None:
        self._transport = transport

    async def sample(self) -> LinkQuality:
        stats = await self._transport.get_stats()
        effective_type = None
        if stats.round_trip_time_s is not None:
            effective_type = effective_type_from_rtt(stats.round_trip_time_s)
        return LinkQuality(downlink_kbps=stats.downlink_kbps, effective_type=effective_type)


class NetworkQualityMonitor:
    """Samples link quality on a timer and adapts the audio bitrate.

    The bitrate is only re-applied when the selected value changes. Failures
    to sample or to apply are logged and never escalated.
    """

    def __init__(
        self,
        probe: LinkQualityProbe,
        apply_bitrate: Callable[[int], Awaitable[object]],
        config: QualityConfig | None = None,
    ) -> None:
        """Initialize network quality monitor.

        Args:
            probe: Link-quality source
            apply_bitrate: Coroutine function setting the audio max bitrate
            config: Thresholds, bitrates and sampling interval
        """
        self._probe = probe
        self._apply_bitrate = apply_bitrate
        self._config = config or QualityConfig()
        self._task: asyncio.Task[None] | None = None
        self.current_bitrate_bps: int | None = None

    @property
    def is_running(self) -> bool:
        """Check if the sampling task is active."""
        return self._task is not None and not self._task.done()

    def is_low_link(self, quality: LinkQuality) -> bool:
        """Whether a sample counts as a low-bandwidth link."""
        if (
            quality.downlink_kbps is not None
            and quality.downlink_kbps < self._config.low_bandwidth_kbps
        ):
            return True
        return quality.effective_type in self._config.low_tier_types

    def select_bitrate(self, quality: LinkQuality) -> int:
        """Choose the audio max bitrate for a sample."""
        if self.is_low_link(quality):
            return self._config.low_bitrate_bps
        return self._config.normal_bitrate_bps

    async def sample_once(self) -> int | None:
        """Take one sample and apply the resulting bitrate if it changed.

        Returns:
            The bitrate now in effect, or None if nothing has been applied yet
        """
        try:
            quality = await self._probe.sample()
        except Exception as e:
            logger.warning("Link quality sampling failed", extra={"error": str(e)})
            return self.current_bitrate_bps

        bitrate = self.select_bitrate(quality)
        if bitrate == self.current_bitrate_bps:
            return bitrate

        try:
            await self._apply_bitrate(bitrate)
        except Exception as e:
            logger.warning(
                "Failed to apply audio bitrate",
                extra={"bitrate_bps": bitrate, "error": str(e)},
            )
            return self.current_bitrate_bps

        logger.info(
            "Audio bitrate adapted",
            extra={
                "bitrate_bps": bitrate,
                "downlink_kbps": quality.downlink_kbps,
                "effective_type": quality.effective_type,
            },
        )
        self.current_bitrate_bps = bitrate
        return bitrate

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._config.interval_s)
            await self.sample_once()

    def start(self) -> None:
        """Start periodic sampling (no-op if already running)."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())
        logger.debug("Network quality monitor started", extra={"interval_s": self._config.interval_s})

    def stop(self) -> None:
        """Cancel periodic sampling."""
        if self._task is None:
            return
        self._task.cancel()
        self._task = None
        logger.debug("Network quality monitor stopped")

