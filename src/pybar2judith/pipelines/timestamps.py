# src/pybar2judith/pipelines/timestamps.py
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional

from ..errors import TimestampDriftError

# pyBAR trigger time stamps are 31 bit counters
TIMESTAMP_WRAP = 2 ** 31


def wrapped_delta(current: int, last: int, wrap: int = TIMESTAMP_WRAP) -> int:
    """Counter increment from last to current, assuming at most one rollover."""
    if current >= last:
        return current - last
    return current + (wrap - last)


@dataclass
class TimestampChecker:
    """
    Compare the rate of two clocks that should advance in lockstep.

    The pulled clock is the TimeStamp of the existing Event table, the
    current clock is the trigger time stamp of the hit stream being merged.
    The first `skip_events` events only seed the reference samples, since
    some captures lose the first trigger time stamp.
    """
    tolerance: float = 0.01
    skip_events: int = 2
    wrap: int = TIMESTAMP_WRAP

    last_pulled: Optional[int] = field(default=None, init=False)
    last_current: Optional[int] = field(default=None, init=False)
    last_ratio: Optional[float] = field(default=None, init=False)

    def ratio(self, pulled: int, current: int) -> float:
        delta_pulled = wrapped_delta(pulled, self.last_pulled, self.wrap)
        delta_current = wrapped_delta(current, self.last_current, self.wrap)
        if delta_current == 0:
            return 1.0 if delta_pulled == 0 else float("inf")
        return delta_pulled / delta_current

    def check(
        self,
        event_index: int,
        pulled: int,
        current: int,
        *,
        chunk_index: Optional[int] = None,
        row_index: Optional[int] = None,
    ) -> Optional[float]:
        """
        Record the samples of event `event_index` (0-based) and check the drift.

        Returns the ratio, or None while still inside the exempt prefix.
        Raises TimestampDriftError when |ratio - 1| > tolerance.
        """
        pulled, current = int(pulled), int(current)
        ratio = None
        if event_index >= self.skip_events and self.last_pulled is not None:
            ratio = self.ratio(pulled, current)
        self.last_pulled, self.last_current = pulled, current
        self.last_ratio = ratio
        if ratio is not None and abs(ratio - 1.0) > self.tolerance:
            raise TimestampDriftError(
                f"time stamp drift ratio {ratio:.6g} outside 1 +/- {self.tolerance:g}",
                ratio=ratio, chunk_index=chunk_index, row_index=row_index,
            )
        return ratio
