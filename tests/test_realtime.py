import unittest
import json
import os
import sys
import threading
from types import SimpleNamespace
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
import psycopg2
from venue_booking.booking.query_cache import (AvailabilityKeys, BookingKeys, CalendarKeys, NotificationKeys,
                                               QueryCache)
from venue_booking.booking.realtime import (CHANNEL_ERROR, CLOSED, SUBSCRIBED, BookingInbox, ChangeEvent,
                                            NotificationBridge)


def payload(table='bookings', type='INSERT', record=None, old_record=None):
    return json.dumps({'table': table, 'type': type, 'record': record, 'old_record': old_record})


class FakeCursor:

    def __init__(self, connection):
        self.connection = connection

    def __enter__(self):
        return self

    def __exit__(self, *args):
        return False

    def execute(self, query):
        self.connection.executed.append(query)


class FakeListenConnection:
    """Readable pipe stands in for the socket; poll() delivers the queued payloads once."""

    def __init__(self, payloads, stop_event, bridge):
        self._read, self._write = os.pipe()
        os.write(self._write, b'x')
        self._payloads = list(payloads)
        self._stop_event = stop_event
        self._bridge = bridge
        self.executed = []
        self.notifies = []
        self.closed = False
        self.status_while_listening = None

    def fileno(self):
        return self._read

    def set_isolation_level(self, level):
        self.isolation_level = level

    def cursor(self):
        return FakeCursor(self)

    def poll(self):
        self.status_while_listening = self._bridge.status
        self.notifies.extend(SimpleNamespace(payload=p) for p in self._payloads)
        self._payloads = []
        self._stop_event.set()

    def close(self):
        self.closed = True
        os.close(self._read)
        os.close(self._write)


class ChangeEventTest(unittest.TestCase):

    def test_from_payload(self):
        event = ChangeEvent.from_payload(payload('blocked_dates', 'DELETE', old_record={'blocked_date': '2099-03-14'}))
        self.assertEqual(event.table, 'blocked_dates')
        self.assertEqual(event.type, 'DELETE')
        self.assertIsNone(event.record)
        self.assertEqual(event.to_dict()['old_record'], {'blocked_date': '2099-03-14'})

    def test_rejects_malformed_payloads(self):
        for raw in ('not json', '[1, 2]', json.dumps({'table': 'bookings'}),
                    json.dumps({'table': 'bookings', 'type': 'TRUNCATE'})):
            with self.assertRaises(ValueError, msg=raw):
                ChangeEvent.from_payload(raw)


class BookingInboxTest(unittest.TestCase):

    def test_keeps_newest_first_up_to_limit(self):
        inbox = BookingInbox(max_items=2)
        for name in ('first', 'second', 'third'):
            inbox.push({'full_name': name})
        self.assertEqual([item['full_name'] for item in inbox.items()], ['third', 'second'])
        self.assertEqual(inbox.unread_count, 3)

    def test_mark_as_read_and_clear(self):
        inbox = BookingInbox()
        inbox.push({'full_name': 'Asha Rao'})
        inbox.mark_as_read()
        self.assertEqual(inbox.unread_count, 0)
        self.assertEqual(len(inbox.items()), 1)
        inbox.push({'full_name': 'Ravi'})
        inbox.clear()
        self.assertEqual((inbox.items(), inbox.unread_count), ([], 0))


class NotificationBridgeTest(unittest.TestCase):

    def setUp(self):
        self.cache = QueryCache()
        self.bridge = NotificationBridge(self.cache, inbox_size=5)

    def test_booking_change_invalidates_related_queries(self):
        for key in (CalendarKeys.month(2099, 3), AvailabilityKeys.monthly(2099, 3), BookingKeys.detail(1),
                    NotificationKeys.listing(50)):
            self.cache.set_query_data(key, 'cached')
        self.bridge.handle_payload(payload('bookings', 'UPDATE', record={'id': 1}))
        self.assertNotIn(CalendarKeys.month(2099, 3), self.cache)
        self.assertNotIn(AvailabilityKeys.monthly(2099, 3), self.cache)
        self.assertNotIn(BookingKeys.detail(1), self.cache)
        self.assertIn(NotificationKeys.listing(50), self.cache)

    def test_only_new_bookings_reach_the_inbox(self):
        self.bridge.handle_payload(payload('bookings', 'INSERT', record={'full_name': 'Asha Rao'}))
        self.bridge.handle_payload(payload('bookings', 'UPDATE', record={'full_name': 'Asha Rao'}))
        self.bridge.handle_payload(payload('notifications', 'INSERT', record={'title': 'New Booking Received'}))
        self.assertEqual(self.bridge.inbox.unread_count, 1)

    def test_malformed_payload_is_ignored(self):
        self.bridge.handle_payload('{broken')
        self.assertEqual(self.bridge.inbox.unread_count, 0)

    def test_subscriptions_filter_by_table_and_type(self):
        seen = []
        self.bridge.subscribe('bookings', 'INSERT', lambda e: seen.append(('insert', e.table)))
        self.bridge.subscribe('*', 'DELETE', lambda e: seen.append(('delete', e.table)))
        self.bridge.dispatch(ChangeEvent('bookings', 'INSERT', {'id': 1}))
        self.bridge.dispatch(ChangeEvent('packages', 'DELETE', None, {'id': 2}))
        self.bridge.dispatch(ChangeEvent('packages', 'INSERT', {'id': 3}))
        self.assertEqual(seen, [('insert', 'bookings'), ('delete', 'packages')])

    def test_unsubscribe(self):
        seen = []
        unsubscribe = self.bridge.subscribe('*', '*', seen.append)
        unsubscribe()
        unsubscribe()
        self.bridge.dispatch(ChangeEvent('bookings', 'INSERT', {'id': 1}))
        self.assertEqual(seen, [])

    def test_failing_subscriber_does_not_stop_others(self):
        seen = []

        def broken(event):
            raise RuntimeError("subscriber bug")

        self.bridge.subscribe('*', '*', broken)
        self.bridge.subscribe('*', '*', seen.append)
        with self.assertLogs('venue_booking.booking.realtime', level='ERROR'):
            self.bridge.dispatch(ChangeEvent('gallery', 'UPDATE', {'id': 1}))
        self.assertEqual(len(seen), 1)

    def test_streams(self):
        stream = self.bridge.open_stream(maxsize=1)
        self.bridge.dispatch(ChangeEvent('bookings', 'INSERT', {'id': 1}))
        with self.assertLogs('venue_booking.booking.realtime', level='WARNING'):
            self.bridge.dispatch(ChangeEvent('bookings', 'UPDATE', {'id': 1}))
        self.assertEqual(stream.get_nowait().type, 'INSERT')
        self.bridge.close_stream(stream)
        self.bridge.dispatch(ChangeEvent('bookings', 'DELETE', None, {'id': 1}))
        self.assertTrue(stream.empty())

    def test_listen_delivers_notifications(self):
        stop = threading.Event()
        connection = FakeListenConnection([payload('bookings', 'INSERT', record={'full_name': 'Asha Rao'})],
                                          stop, self.bridge)
        self.bridge.listen(lambda: connection, stop, poll_timeout=1.0)
        self.assertEqual(connection.executed, ['LISTEN venue_changes;'])
        self.assertEqual(connection.status_while_listening, SUBSCRIBED)
        self.assertEqual(self.bridge.inbox.unread_count, 1)
        self.assertTrue(connection.closed)
        self.assertEqual(self.bridge.status, CLOSED)
        self.assertFalse(self.bridge.is_connected)

    def test_listen_reports_channel_errors(self):
        connection = FakeListenConnection([], threading.Event(), self.bridge)

        def fail(level):
            raise psycopg2.OperationalError("server closed the connection")

        connection.set_isolation_level = fail
        with self.assertRaises(psycopg2.OperationalError):
            self.bridge.listen(lambda: connection, threading.Event())
        self.assertEqual(self.bridge.status, CHANNEL_ERROR)
        self.assertTrue(connection.closed)

    def test_run_reconnects_until_stopped(self):
        attempts = []

        def connect():
            attempts.append(1)
            if len(attempts) == 3:
                self.bridge._stop.set()
            raise psycopg2.OperationalError("could not connect to server")

        self.bridge._run(connect, max_backoff=0)
        self.assertEqual(len(attempts), 3)
        self.assertEqual(self.bridge.status, CLOSED)

    def test_start_and_stop(self):
        started = threading.Event()

        def connect():
            started.set()
            raise psycopg2.OperationalError("could not connect to server")

        thread = self.bridge.start(connect)
        self.assertTrue(started.wait(5))
        self.assertIs(self.bridge.start(connect), thread)
        self.bridge.stop()
        self.assertFalse(thread.is_alive())
        self.assertEqual(self.bridge.status, CLOSED)


if __name__ == "__main__":
    unittest.main()
