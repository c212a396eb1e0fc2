"""Timing of the phases of a comparison pass."""

from datetime import timedelta
import time
from collections.abc import Callable

__all__ = ["TimingStats"]


class TimingStats:
    """Records the time spent between named checkpoints."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize TimingStats."""
        self._clock = clock
        self._start = clock()
        self._last = self._start
        self._timings: dict[str, timedelta] = {}

    def add_checkpoint(self, name: str) -> None:
        """Record the time since the previous checkpoint under the name."""
        now = self._clock()
        self._timings[name] = timedelta(seconds=now - self._last)
        self._last = now

    def timings(self) -> dict[str, timedelta]:
        return dict(self._timings)

    def elapsed(self) -> timedelta:
        return timedelta(seconds=self._clock() - self._start)

    def summary(self) -> str:
        """Return the timings in milliseconds, suitable for a log line."""
        parts = [
            f"{name}={int(value.total_seconds() * 1000)}"
            for name, value in self._timings.items()
        ]
        parts.append(f"time_ms={int(self.elapsed().total_seconds() * 1000)}")
        return " ".join(parts)
