"""Buffer for remote network-path candidates.

Candidates can arrive before the local transport has a remote description
to attach them to. They are held here in arrival order and replayed once the
remote description is in place.
"""

import logging
from collections import deque
from collections.abc import Awaitable, Callable

from src.webcall.signaling.protocol import IceCandidatePayload

logger = logging.getLogger(__name__)


class IceCandidateBuffer:
    """FIFO of candidates waiting for the remote-description gate.

    Thread-safety: not thread-safe; owned by a single call controller.
    """

    def __init__(self) -> None:
        self._pending: deque[IceCandidatePayload] = deque()

    def __len__(self) -> int:
        return len(self._pending)

    def pending(self) -> list[IceCandidatePayload]:
        """Snapshot of buffered candidates in enqueue order."""
        return list(self._pending)

    def enqueue(self, candidate: IceCandidatePayload) -> None:
        """Append a candidate to the end of the buffer."""
        self._pending.append(candidate)
        logger.debug("Candidate buffered", extra={"buffered": len(self._pending)})

    async def drain(
        self, apply_fn: Callable[[IceCandidatePayload], Awaitable[None]]
    ) -> int:
        """Apply every buffered candidate in enqueue order.

        Each entry is removed only once its application has finished. A
        candidate whose application raises is logged and discarded; the
        remaining entries are still applied.

        Args:
            apply_fn: Coroutine function applying one candidate to the transport

        Returns:
            Number of candidates applied successfully
        """
        applied = 0

        while self._pending:
            candidate = self._pending[0]
            try:
                await apply_fn(candidate)
            except Exception as e:
                logger.warning(
                    "Error processing queued candidate",
                    extra={"error": str(e), "candidate": candidate.candidate},
                )
            else:
                applied += 1

            # clear() may have run while apply_fn was suspended
            if self._pending and self._pending[0] is candidate:
                self._pending.popleft()

        if applied:
            logger.debug("Processed queued candidates", extra={"applied": applied})
        return applied

    def clear(self) -> None:
        """Drop all buffered candidates."""
        if self._pending:
            logger.debug("Candidate buffer cleared", extra={"dropped": len(self._pending)})
        self._pending.clear()
