"""Conversion between wall-clock time and the monotonic clock."""

from __future__ import annotations

import time

_NANOS_PER_SECOND = 1_000_000_000


class Converter:
    """Pairs a wall-clock reading with a monotonic reading taken at the same moment.

    Wall-clock times are integer nanoseconds since the Unix epoch; instants are
    integer nanoseconds on the ``time.monotonic_ns`` clock.
    """

    def __init__(self, sys_now: int | None = None) -> None:
        self.sys_now = time.time_ns() if sys_now is None else sys_now
        self.now = time.monotonic_ns()

    def __repr__(self) -> str:
        return f"Converter(sys_now={self.sys_now}, now={self.now})"

    def system_time_to_instant(self, t: int) -> int | None:
        """Map a wall-clock time to a monotonic instant, or None if it cannot be represented."""
        if t >= self.sys_now:
            return self.now + (t - self.sys_now)
        instant = self.now - (self.sys_now - t)
        return instant if instant >= 0 else None

    def instant_to_system_time(self, t: int) -> int:
        """Map a monotonic instant to a wall-clock time."""
        if t > self.now:
            return self.sys_now + (t - self.now)
        return self.sys_now - (self.now - t)

    def elapsed_nanos(self, now: int) -> int:
        """Nanoseconds between the converter's reference instant and ``now`` (never negative)."""
        return max(0, now - self.now)

    def subsec_nanos(self) -> int:
        """The sub-second part of the reference wall-clock time."""
        if self.sys_now < 0:
            raise ValueError("reference time is before the Unix epoch")
        return self.sys_now % _NANOS_PER_SECOND