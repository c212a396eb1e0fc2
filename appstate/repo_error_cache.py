"""Per-application record of the first rendering failure.

Used to suppress transient rendering failures for a grace period. Entries are
keyed by application so concurrent comparisons of different applications never
touch each other's entry.
"""

from collections.abc import Callable
from datetime import datetime
import logging
import threading

from .manifest import utcnow

__all__ = ["RepoErrorCache"]

_LOGGER = logging.getLogger(__name__)


class RepoErrorCache:
    """Thread safe map of application key to the time its failure was first seen."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        """Initialize RepoErrorCache."""
        self._clock = clock
        self._lock = threading.Lock()
        self._first_seen: dict[str, datetime] = {}

    def now(self) -> datetime:
        return self._clock()

    def load(self, key: str) -> datetime | None:
        with self._lock:
            return self._first_seen.get(key)

    def store(self, key: str, first_seen: datetime | None = None) -> None:
        with self._lock:
            self._first_seen[key] = first_seen or self._clock()

    def delete(self, key: str) -> None:
        with self._lock:
            if self._first_seen.pop(key, None) is not None:
                _LOGGER.debug("Cleared repo error for %s", key)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._first_seen

    def __len__(self) -> int:
        with self._lock:
            return len(self._first_seen)
