"""
FrameLens Engine - Progress Reporting and Cancellation

Progress events are observational only: publishing never blocks the compute
loop and never changes what an analysis returns. Consumers either poll
``ProgressChannel.latest`` or iterate the channel asynchronously.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Optional

from ..core.exceptions import AnalysisCancelledException

logger = logging.getLogger(__name__)


class DiscoveryPhase(str, Enum):
    """Phases of a checksum discovery pass."""

    GROUPING = "grouping"
    SIMPLE = "simple"
    KNOWN_CRC = "known-crc"
    BRUTE_FORCE_CRC8 = "brute-force-crc8"
    BRUTE_FORCE_CRC16 = "brute-force-crc16"


@dataclass(frozen=True)
class DiscoveryProgress:
    """Snapshot of checksum discovery progress."""

    phase: DiscoveryPhase
    frame_id_index: int
    total_frame_ids: int
    current_frame_id: int
    polynomials_tested: Optional[int] = None
    polynomials_total: Optional[int] = None

    def to_dict(self):
        return {
            "phase": self.phase.value,
            "frame_id_index": self.frame_id_index,
            "total_frame_ids": self.total_frame_ids,
            "current_frame_id": self.current_frame_id,
            "polynomials_tested": self.polynomials_tested,
            "polynomials_total": self.polynomials_total,
        }


ProgressCallback = Callable[[DiscoveryProgress], None]


class ProgressChannel:
    """Event channel decoupling progress consumers from the compute loop.

    The channel is itself a progress callback. Events are buffered in a
    bounded queue; when the queue is full the oldest event is discarded so a
    slow consumer can never stall the analysis.
    """

    def __init__(self, max_events: int = 256):
        self._queue: "asyncio.Queue[Optional[DiscoveryProgress]]" = asyncio.Queue(
            maxsize=max_events
        )
        self._latest: Optional[DiscoveryProgress] = None
        self._closed = False
        self.events_published = 0
        self.events_dropped = 0

    @property
    def latest(self) -> Optional[DiscoveryProgress]:
        """Most recent progress snapshot, for polling consumers."""
        return self._latest

    @property
    def closed(self) -> bool:
        return self._closed

    def __call__(self, progress: DiscoveryProgress) -> None:
        self.publish(progress)

    def publish(self, progress: DiscoveryProgress) -> None:
        if self._closed:
            return
        self._latest = progress
        self.events_published += 1
        if self._queue.full():
            self._queue.get_nowait()
            self.events_dropped += 1
        self._queue.put_nowait(progress)

    def close(self) -> None:
        """Signal the end of the stream to async consumers."""
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            self._queue.get_nowait()
            self.events_dropped += 1
        self._queue.put_nowait(None)

    def __aiter__(self) -> AsyncIterator[DiscoveryProgress]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[DiscoveryProgress]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


class CancellationToken:
    """Cooperative cancellation flag checked by long running analyses."""

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._cancelled:
            logger.info(f"Cancellation requested: {reason or 'no reason given'}")
        self._cancelled = True
        self.reason = reason

    def raise_if_cancelled(self, phase: Optional[str] = None) -> None:
        if self._cancelled:
            raise AnalysisCancelledException(
                f"Analysis cancelled{': ' + self.reason if self.reason else ''}",
                phase=phase,
            )
