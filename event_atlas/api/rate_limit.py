"""
In-memory sliding-window rate limiting for webhook triggers.

Each key (a webhook token) is checked against every window in order; the
first window that is full rejects the call and says when it frees up.
Accepted calls are recorded in all windows. State is per process.
"""
import logging
import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, List, Optional, Tuple

from event_atlas.core.config import settings
from event_atlas.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class RateWindow:
    name: str
    limit: int
    seconds: int


@dataclass
class RateDecision:
    allowed: bool
    failed_window: Optional[str] = None
    retry_after: int = 0
    reset_time: Optional[datetime] = None


def webhook_windows() -> List[RateWindow]:
    return [
        RateWindow("burst", 1, settings.webhook_burst_window_seconds),
        RateWindow("hourly", settings.webhook_hourly_limit, 3600),
    ]


class SlidingWindowRateLimiter:
    def __init__(self, windows: List[RateWindow], clock: Callable[[], datetime] = utcnow):
        self.windows = windows
        self.clock = clock
        self._calls: Dict[Tuple[str, str], Deque[datetime]] = defaultdict(deque)
        self._lock = threading.Lock()

    def check(self, key: str) -> RateDecision:
        now = self.clock()
        with self._lock:
            for window in self.windows:
                calls = self._calls[(key, window.name)]
                cutoff = now - timedelta(seconds=window.seconds)
                while calls and calls[0] <= cutoff:
                    calls.popleft()
                if len(calls) >= window.limit:
                    reset_time = calls[0] + timedelta(seconds=window.seconds)
                    retry_after = max(1, int((reset_time - now).total_seconds() + 0.999))
                    logger.warning("Rate limit '%s' hit for webhook %s...", window.name, key[:6])
                    return RateDecision(False, window.name, retry_after, reset_time)
            for window in self.windows:
                self._calls[(key, window.name)].append(now)
        return RateDecision(True)

    def reset(self) -> None:
        with self._lock:
            self._calls.clear()
