"""
In-memory fixed-window rate limiting for public booking requests
"""
import logging
import time
from threading import Lock
from typing import Callable, Dict, Tuple

logger = logging.getLogger(__name__)


class RateLimiter:
    """Allows `limit` hits per key within each `window` seconds."""

    def __init__(self, limit: int = 5, window: int = 3600, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window = window
        self._clock = clock
        # Format: {key: {'count': int, 'reset_time': float}}
        self._records: Dict[str, dict] = {}
        self._lock = Lock()

    def check(self, key: str) -> Tuple[bool, int]:
        """
        Counts a hit for key. Returns (allowed, remaining) where remaining is what is left after this hit.
        """
        now = self._clock()
        with self._lock:
            record = self._records.get(key)
            if record is None or now >= record['reset_time']:
                self._records[key] = {'count': 1, 'reset_time': now + self.window}
                self._cleanup(now)
                return True, self.limit - 1

            if record['count'] >= self.limit:
                logger.warning("Rate limit exceeded for %s", key)
                return False, 0

            record['count'] += 1
            return True, self.limit - record['count']

    def _cleanup(self, now: float):
        expired = [key for key, record in self._records.items() if now >= record['reset_time']]
        for key in expired:
            del self._records[key]

    def reset(self):
        with self._lock:
            self._records.clear()
