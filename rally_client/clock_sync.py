"""
Clock Synchronization
=====================

NTP-style clock sync between a rally client and the room server.
Keeps a short trailing window of round-trip samples and uses the one
with the lowest RTT, since a shorter round trip bounds the offset error
more tightly than any average of noisier samples.

Offset convention:
    offset = server_time - local_time
    server_time = local_time + offset
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Optional

from .protocol import current_time_ms, is_finite_number

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 6
DEFAULT_FRESH_MS = 60_000


@dataclass(frozen=True)
class ClockSyncSample:
    offset_ms: float
    rtt_ms: float
    observed_at: int  # local clock, ms


def measure(t0: float, t1: float, t2: float, t3: float) -> tuple[float, float]:
    """Offset and RTT of one handshake.

    Args:
        t0: Client send time (local clock, ms).
        t1: Server receive time (server clock, ms).
        t2: Server send time (server clock, ms).
        t3: Client receive time (local clock, ms).

    Returns:
        Tuple of (offset_ms, rtt_ms).
    """
    rtt = max(0, (t3 - t0) - (t2 - t1))
    offset = ((t1 - t0) + (t2 - t3)) / 2
    return offset, rtt


class ClockSync:
    """Minimum-RTT clock offset estimator.

    Args:
        window:   Number of most recent samples retained (oldest evicted first).
        fresh_ms: How long a best estimate counts as "synced".
    """

    def __init__(self, window: int = DEFAULT_WINDOW, fresh_ms: int = DEFAULT_FRESH_MS):
        self._samples: deque[ClockSyncSample] = deque(maxlen=window)
        self._fresh_ms = fresh_ms
        self.offset: float = 0.0
        self.rtt: Optional[float] = None
        self.last_sync_at: Optional[int] = None

    def process(self, t0, t1, t2, t3) -> Optional[ClockSyncSample]:
        """Fold one handshake into the window.

        Replies with a non-finite timestamp are dropped without raising.

        Returns:
            The new sample, or None if the reply was discarded.
        """
        if not all(is_finite_number(t) for t in (t0, t1, t2, t3)):
            logger.debug(f"Discarding malformed sync reply: t0={t0!r} t1={t1!r} t2={t2!r}")
            return None
        offset, rtt = measure(t0, t1, t2, t3)
        sample = ClockSyncSample(offset_ms=offset, rtt_ms=rtt, observed_at=int(t3))
        self.add_sample(sample)
        return sample

    def add_sample(self, sample: ClockSyncSample) -> None:
        self._samples.append(sample)
        # min() keeps the first of equal RTTs, i.e. the oldest
        best = min(self._samples, key=lambda s: s.rtt_ms)
        self.offset = best.offset_ms
        self.rtt = best.rtt_ms
        self.last_sync_at = sample.observed_at

    @property
    def best(self) -> Optional[ClockSyncSample]:
        """The operative sample, or None before the first sync."""
        if not self._samples:
            return None
        return min(self._samples, key=lambda s: s.rtt_ms)

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    def synced(self, now_ms: Optional[int] = None) -> bool:
        """True if a best estimate was produced within the freshness window."""
        if self.last_sync_at is None:
            return False
        if now_ms is None:
            now_ms = current_time_ms()
        return now_ms - self.last_sync_at < self._fresh_ms

    def to_server_time(self, local_time_ms: int) -> int:
        """Convert a local timestamp to server time.

        Args:
            local_time_ms: Timestamp in local clock (ms).

        Returns:
            Estimated server-clock timestamp (ms).
        """
        return int(round(local_time_ms + self.offset))
