"""
In-process query cache for read endpoints.
Entries are keyed by tuples so related queries can be invalidated together by prefix.
"""
import copy
import logging
import time
from contextlib import contextmanager
from threading import RLock
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)

QueryKey = Tuple[Hashable, ...]


class CalendarKeys:
    ALL = ('calendar',)

    @staticmethod
    def months() -> QueryKey:
        return CalendarKeys.ALL + ('months',)

    @staticmethod
    def month(year: int, month: int) -> QueryKey:
        return CalendarKeys.months() + (year, month)


class AvailabilityKeys:
    ALL = ('availability',)

    @staticmethod
    def monthly(year: int, month: int) -> QueryKey:
        return AvailabilityKeys.ALL + ('monthly', year, month)


class BookingKeys:
    ALL = ('bookings',)

    @staticmethod
    def detail(booking_id) -> QueryKey:
        return BookingKeys.ALL + ('detail', str(booking_id))


PACKAGES_KEY = ('packages',)
FACILITIES_KEY = ('facilities',)
GALLERY_KEY = ('gallery',)


class AnalyticsKeys:
    ALL = ('analytics',)

    @staticmethod
    def latest() -> QueryKey:
        return AnalyticsKeys.ALL + ('latest',)

    @staticmethod
    def history(limit: int) -> QueryKey:
        return AnalyticsKeys.ALL + ('history', limit)


class NotificationKeys:
    ALL = ('notifications',)

    @staticmethod
    def listing(limit: int) -> QueryKey:
        return NotificationKeys.ALL + ('list', limit)


class _Entry:

    def __init__(self, data: Any, updated_at: float, stale_time: float):
        self.data = data
        self.updated_at = updated_at
        self.stale_time = stale_time

    def is_fresh(self, now: float) -> bool:
        return now - self.updated_at < self.stale_time


class QueryCache:
    """
    Caches fetcher results per key with a stale time, retrying failed fetches with capped exponential backoff.
    """

    def __init__(self, stale_time: float = 300, retry: int = 2, max_retry_delay: float = 5.0,
                 sleep: Callable[[float], None] = time.sleep, clock: Callable[[], float] = time.monotonic):
        self.stale_time = stale_time
        self.retry = retry
        self.max_retry_delay = max_retry_delay
        self._sleep = sleep
        self._clock = clock
        self._entries: Dict[QueryKey, _Entry] = {}
        self._lock = RLock()
        # bumped by invalidate and clear; a fetch that started before the bump does not store
        self._generation = 0

    def retry_delay(self, attempt: int) -> float:
        return min(1.0 * 2 ** attempt, self.max_retry_delay)

    def fetch(self, key: QueryKey, fetcher: Callable[[], Any], stale_time: Optional[float] = None) -> Any:
        """
        Returns cached data for key while it is fresh, otherwise runs fetcher and stores the result.
        The last fetch error propagates once retries are exhausted.
        """
        stale_time = self.stale_time if stale_time is None else stale_time
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_fresh(self._clock()):
                logger.debug("Cache hit: %s", key)
                return entry.data
            generation = self._generation

        logger.debug("Cache miss: %s", key)
        attempt = 0
        while True:
            try:
                data = fetcher()
                break
            except Exception as e:
                if attempt >= self.retry:
                    logger.error("Query %s failed after %s attempts: %s", key, attempt + 1, e)
                    raise
                delay = self.retry_delay(attempt)
                logger.warning("Query %s failed (%s), retrying in %.1fs", key, e, delay)
                self._sleep(delay)
                attempt += 1

        with self._lock:
            if self._generation == generation:
                self._entries[key] = _Entry(data, self._clock(), stale_time)
            else:
                logger.debug("Dropping result for %s, cache was invalidated during the fetch", key)
        return data

    def get_query_data(self, key: QueryKey) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            return entry.data if entry is not None else None

    def set_query_data(self, key: QueryKey, value) -> Any:
        """
        Replaces the cached data for key. A callable receives the current data (or None) and returns the new data.
        """
        with self._lock:
            entry = self._entries.get(key)
            current = entry.data if entry is not None else None
            data = value(current) if callable(value) else value
            stale_time = entry.stale_time if entry is not None else self.stale_time
            self._entries[key] = _Entry(data, self._clock(), stale_time)
            return data

    def invalidate(self, prefix: QueryKey) -> int:
        with self._lock:
            self._generation += 1
            matching = [key for key in self._entries if key[:len(prefix)] == tuple(prefix)]
            for key in matching:
                del self._entries[key]
        if matching:
            logger.info("Invalidated %s cached queries under %s", len(matching), prefix)
        return len(matching)

    @contextmanager
    def optimistic(self, prefix: QueryKey, updater: Callable[[Any], Any]):
        """
        Applies updater to every cached entry under prefix straight away and restores
        the snapshots if the block raises.

            with cache.optimistic(NotificationKeys.ALL, mark_read):
                db.mark_notification_read(notification_id)
        """
        prefix = tuple(prefix)
        with self._lock:
            snapshots = {key: copy.deepcopy(entry) for key, entry in self._entries.items()
                         if key[:len(prefix)] == prefix}
            for key in snapshots:
                self.set_query_data(key, updater)
        try:
            yield
        except Exception:
            with self._lock:
                self._entries.update(snapshots)
            logger.warning("Rolled back optimistic update for %s", prefix)
            raise

    def __contains__(self, key: QueryKey) -> bool:
        with self._lock:
            return key in self._entries

    def clear(self):
        with self._lock:
            self._generation += 1
            self._entries.clear()
