"""
Realtime bridge between the Postgres change feed and the running service.

Table triggers publish every insert/update/delete on the venue_changes channel (see database.py).
The bridge LISTENs on that channel, drops cached queries the change affects, keeps the admin's
inbox of new bookings, and fans events out to subscribers such as the SSE stream.
"""
import json
import logging
import queue
import select
import threading
from typing import Callable, Dict, List, Optional, Tuple

import psycopg2
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT

from .query_cache import (AnalyticsKeys, AvailabilityKeys, BookingKeys, CalendarKeys, FACILITIES_KEY,
                          GALLERY_KEY, NotificationKeys, PACKAGES_KEY, QueryCache)

logger = logging.getLogger(__name__)

CHANNEL = 'venue_changes'

EVENT_TYPES = ('INSERT', 'UPDATE', 'DELETE')

# Connection states
CLOSED = 'CLOSED'
SUBSCRIBED = 'SUBSCRIBED'
CHANNEL_ERROR = 'CHANNEL_ERROR'

# Cached query prefixes to drop when a table changes
TABLE_QUERY_KEYS = {
    'bookings': [BookingKeys.ALL, CalendarKeys.ALL, AvailabilityKeys.ALL],
    'blocked_dates': [CalendarKeys.ALL, AvailabilityKeys.ALL],
    'notifications': [NotificationKeys.ALL],
    'analytics_summary': [AnalyticsKeys.ALL],
    'packages': [PACKAGES_KEY],
    'facilities': [FACILITIES_KEY],
    'gallery': [GALLERY_KEY],
}


class ChangeEvent:

    def __init__(self, table: str, type: str, record: Optional[dict] = None, old_record: Optional[dict] = None):
        self.table = table
        self.type = type
        self.record = record
        self.old_record = old_record

    @classmethod
    def from_payload(cls, raw: str) -> 'ChangeEvent':
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Change payload is not JSON: {e.msg}")
        if not isinstance(payload, dict):
            raise ValueError("Change payload must be a JSON object")
        table, event_type = payload.get('table'), payload.get('type')
        if not table or event_type not in EVENT_TYPES:
            raise ValueError(f"Change payload missing table or type: {raw[:200]}")
        return cls(table, event_type, payload.get('record'), payload.get('old_record'))

    def to_dict(self) -> dict:
        return {"table": self.table, "type": self.type, "record": self.record, "old_record": self.old_record}


class BookingInbox:
    """Recent new bookings for the admin bell, newest first."""

    def __init__(self, max_items: int = 10):
        self.max_items = max_items
        self._items: List[dict] = []
        self._unread = 0
        self._lock = threading.Lock()

    def push(self, booking: dict):
        with self._lock:
            self._items = ([booking] + self._items)[:self.max_items]
            self._unread += 1

    @property
    def unread_count(self) -> int:
        return self._unread

    def items(self) -> List[dict]:
        with self._lock:
            return list(self._items)

    def mark_as_read(self):
        with self._lock:
            self._unread = 0

    def clear(self):
        with self._lock:
            self._items = []
            self._unread = 0


class NotificationBridge:

    def __init__(self, cache: Optional[QueryCache] = None, inbox_size: int = 10):
        self.cache = cache
        self.inbox = BookingInbox(inbox_size)
        self.status = CLOSED
        self._subscribers: Dict[int, Tuple[str, str, Callable[[ChangeEvent], None]]] = {}
        self._next_id = 0
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_connected(self) -> bool:
        return self.status == SUBSCRIBED

    def subscribe(self, table: str, event: str, callback: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        """
        Registers callback for events on table ('*' for any table) of type event ('*' for any type).
        Returns a function that removes the subscription.
        """
        with self._lock:
            subscription_id = self._next_id
            self._next_id += 1
            self._subscribers[subscription_id] = (table, event, callback)

        def unsubscribe():
            with self._lock:
                self._subscribers.pop(subscription_id, None)
        return unsubscribe

    def dispatch(self, event: ChangeEvent):
        if self.cache is not None:
            for prefix in TABLE_QUERY_KEYS.get(event.table, []):
                self.cache.invalidate(prefix)

        if event.table == 'bookings' and event.type == 'INSERT' and event.record:
            logger.info("New booking received: %s for %s", event.record.get('full_name'), event.record.get('booking_date'))
            self.inbox.push(event.record)

        with self._lock:
            subscribers = list(self._subscribers.values())
        for table, event_type, callback in subscribers:
            if table not in ('*', event.table) or event_type not in ('*', event.type):
                continue
            try:
                callback(event)
            except Exception:
                logger.exception("Subscriber for %s %s failed", event.table, event.type)

    def handle_payload(self, raw: str):
        try:
            event = ChangeEvent.from_payload(raw)
        except ValueError as e:
            logger.error("Ignoring malformed change notification: %s", e)
            return
        self.dispatch(event)

    def open_stream(self, maxsize: int = 100) -> 'queue.Queue[ChangeEvent]':
        """Queue that receives every change event until close_stream() is called."""
        stream: 'queue.Queue[ChangeEvent]' = queue.Queue(maxsize=maxsize)

        def enqueue(event: ChangeEvent):
            try:
                stream.put_nowait(event)
            except queue.Full:
                logger.warning("Dropping %s event for a slow stream client", event.table)

        stream.unsubscribe = self.subscribe('*', '*', enqueue)
        return stream

    def close_stream(self, stream):
        stream.unsubscribe()

    def listen(self, connect: Callable[[], 'psycopg2.extensions.connection'], stop_event: threading.Event,
               poll_timeout: float = 5.0):
        """
        Blocks on LISTEN until stop_event is set. Connection errors propagate after the status is updated.
        """
        conn = connect()
        try:
            conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
            with conn.cursor() as cursor:
                cursor.execute(f"LISTEN {CHANNEL};")
            self.status = SUBSCRIBED
            logger.info("Connected to %s channel", CHANNEL)
            while not stop_event.is_set():
                if select.select([conn], [], [], poll_timeout) == ([], [], []):
                    continue
                conn.poll()
                while conn.notifies:
                    notify = conn.notifies.pop(0)
                    self.handle_payload(notify.payload)
        except psycopg2.Error as e:
            self.status = CHANNEL_ERROR
            logger.error("Error on %s channel: %s", CHANNEL, e)
            raise
        finally:
            conn.close()
            if self.status != CHANNEL_ERROR:
                self.status = CLOSED

    def _run(self, connect, max_backoff: float):
        attempt = 0
        while not self._stop.is_set():
            try:
                self.listen(connect, self._stop)
                attempt = 0
            except psycopg2.Error:
                delay = min(2 ** attempt, max_backoff)
                attempt += 1
                logger.info("Reconnecting to %s in %ss", CHANNEL, delay)
                self._stop.wait(delay)
        self.status = CLOSED

    def start(self, connect: Callable[[], 'psycopg2.extensions.connection'], max_backoff: float = 30.0) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, args=(connect, max_backoff), name='venue-realtime', daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: float = 10.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
