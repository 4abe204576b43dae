"""
Read-through value cache with an explicit time-to-live.

Provider lists and quota overrides are read from the database on demand and
kept for a short period. The refresh decision is a pure function of
``(now, last_fetch, ttl)`` so it can be tested without real timers.
"""
import threading
from datetime import datetime, timedelta
from typing import Callable, Generic, Optional, TypeVar

from event_atlas.utils.clock import resolve_now

T = TypeVar("T")


def needs_refresh(now: datetime, last_fetch: Optional[datetime], ttl_seconds: float) -> bool:
    """Return True when a value fetched at ``last_fetch`` is stale at ``now``."""
    if last_fetch is None:
        return True
    if ttl_seconds <= 0:
        return True
    return now - last_fetch >= timedelta(seconds=ttl_seconds)


class TTLValue(Generic[T]):
    """Holds ``value + fetched_at + ttl`` and reloads through ``loader`` when stale."""

    def __init__(self, loader: Callable[[], T], ttl_seconds: float):
        self._loader = loader
        self.ttl_seconds = ttl_seconds
        self.value: Optional[T] = None
        self.fetched_at: Optional[datetime] = None
        self._lock = threading.Lock()

    def get(self, now: Optional[datetime] = None) -> T:
        now = resolve_now(now)
        with self._lock:
            if needs_refresh(now, self.fetched_at, self.ttl_seconds):
                self.value = self._loader()
                self.fetched_at = now
            return self.value

    def invalidate(self) -> None:
        with self._lock:
            self.value = None
            self.fetched_at = None
