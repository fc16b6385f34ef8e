# In-memory stand-in for DatabasePersistence so the app and service can be tested without Postgres.

import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID, uuid4

from venue_booking.booking.error_utils import BookingNotFoundError

_clock = itertools.count()


def _timestamp():
    # Strictly increasing so ordering by created_at is stable
    return datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=next(_clock))


def _same_id(left, right):
    return str(left) == str(right)


BOOKING_DEFAULTS = {
    'email': None,
    'time_slot': None,
    'start_time': None,
    'end_time': None,
    'guest_count': 1,
    'package_id': None,
    'event_type': None,
    'special_requests': None,
    'additional_notes': None,
    'status': 'pending',
    'is_active': True,
    'cooking_gas_qty': 0,
    'garbage_bags': 0,
    'plates_small': 0,
    'plates_large': 0,
    'admin_price_adjustment': Decimal('0'),
    'floor_cleaning_cost': None,
    'extra_services_total': None,
    'final_price': None,
    'ip_address': None,
    'created_by': None,
    'confirmed_by': None,
    'confirmed_at': None,
    'cancelled_by': None,
    'cancelled_at': None,
    'completed_at': None,
    'extras_updated_by': None,
    'extras_updated_at': None,
}


class FakeDatabase:

    def __init__(self):
        self.packages = []
        self.facilities = []
        self.gallery = []
        self.bookings = []
        self.blocked_dates = []
        self.booking_events = []
        self.notifications = []
        self.analytics = []

    # Seeding helpers

    def add_package(self, name='Gold Package', price=Decimal('25000'), is_active=True, **fields):
        package = {'id': uuid4(), 'name': name, 'price': price, 'price_min': None, 'price_max': None,
                   'features': [], 'is_active': is_active, 'order_index': None, 'created_at': _timestamp(), **fields}
        self.packages.append(package)
        return package

    def add_booking(self, booking_date, time_slot=None, start_time=None, end_time=None, status='confirmed', **fields):
        record = {'full_name': 'Existing Guest', 'mobile': '+919876543210', 'booking_date': booking_date,
                  'time_slot': time_slot, 'start_time': start_time, 'end_time': end_time, 'status': status, **fields}
        return self.insert_booking(record)

    def add_notification(self, title='New Booking Received', message='A booking arrived', is_read=False):
        notification = self.insert_notification(title, message, 'booking', 'high')
        notification['is_read'] = is_read
        return notification

    # Bookings

    def _with_package_name(self, booking):
        package = self.get_package(booking['package_id']) if booking.get('package_id') else None
        return {**booking, 'package_name': package['name'] if package else None}

    def get_booking(self, booking_id):
        for booking in self.bookings:
            if _same_id(booking['id'], booking_id):
                return self._with_package_name(booking)
        return None

    def list_bookings(self, status=None, q=None, date_from=None, date_to=None, package_id=None):
        results = []
        for booking in self.bookings:
            if status and booking['status'] != status:
                continue
            if q and not any(q.lower() in (booking.get(field) or '').lower() for field in ('full_name', 'mobile', 'email')):
                continue
            if date_from and booking['booking_date'] < date_from:
                continue
            if date_to and booking['booking_date'] > date_to:
                continue
            if package_id and not _same_id(booking.get('package_id'), package_id):
                continue
            results.append(self._with_package_name(booking))
        return sorted(results, key=lambda b: b['booking_date'], reverse=True)

    def bookings_between(self, first, last):
        return [self._with_package_name(b) for b in sorted(self.bookings, key=lambda b: b['booking_date'])
                if first <= b['booking_date'] <= last]

    def _date_state(self, day, exclude_id=None):
        existing = [dict(b) for b in self.bookings
                    if b['booking_date'] == day and b['status'] in ('pending', 'confirmed') and b['is_active']
                    and (exclude_id is None or not _same_id(b['id'], exclude_id))]
        blocked = any(row['blocked_date'] == day for row in self.blocked_dates)
        return existing, blocked

    def insert_booking(self, record, check=None):
        if check is not None:
            existing, blocked = self._date_state(record['booking_date'])
            check(None, dict(record), existing, blocked)
        now = _timestamp()
        booking = {**BOOKING_DEFAULTS, **record, 'id': uuid4(), 'created_at': now, 'updated_at': now}
        if booking['package_id'] is not None:
            booking['package_id'] = UUID(str(booking['package_id']))
        self.bookings.append(booking)
        return dict(booking)

    def update_booking(self, booking_id, changes, check=None):
        for booking in self.bookings:
            if _same_id(booking['id'], booking_id):
                break
        else:
            raise BookingNotFoundError()
        current = dict(booking)
        candidate = {**current, **changes}
        if check is not None:
            existing, blocked = self._date_state(candidate['booking_date'], exclude_id=booking_id)
            check(current, candidate, existing, blocked)
        booking.update(changes, updated_at=_timestamp())
        return dict(booking)

    def delete_booking(self, booking_id):
        before = len(self.bookings)
        self.bookings = [b for b in self.bookings if not _same_id(b['id'], booking_id)]
        return len(self.bookings) < before

    # Blocked dates

    def blocked_dates_between(self, first, last):
        return sorted(row['blocked_date'] for row in self.blocked_dates if first <= row['blocked_date'] <= last)

    def get_blocked_date(self, day):
        for row in self.blocked_dates:
            if row['blocked_date'] == day:
                return dict(row)
        return None

    def insert_blocked_date(self, day, reason, blocked_by):
        existing = self.get_blocked_date(day)
        if existing is not None:
            return existing
        row = {'id': uuid4(), 'blocked_date': day, 'reason': reason, 'blocked_by': blocked_by, 'created_at': _timestamp()}
        self.blocked_dates.append(row)
        return dict(row)

    def delete_blocked_date(self, day):
        before = len(self.blocked_dates)
        self.blocked_dates = [row for row in self.blocked_dates if row['blocked_date'] != day]
        return len(self.blocked_dates) < before

    # Audit trail

    def insert_booking_event(self, booking_id, event_type, actor, details=None):
        event = {'id': uuid4(), 'booking_id': booking_id, 'event_type': event_type, 'actor': actor,
                 'details': details or {}, 'created_at': _timestamp()}
        self.booking_events.append(event)
        return dict(event)

    def list_booking_events(self, booking_id):
        events = [dict(e) for e in self.booking_events if _same_id(e['booking_id'], booking_id)]
        return sorted(events, key=lambda e: e['created_at'], reverse=True)

    # Catalogue

    def get_package(self, package_id):
        for package in self.packages:
            if _same_id(package['id'], package_id):
                return dict(package)
        return None

    def list_packages(self, include_inactive=False):
        return [dict(p) for p in self.packages if include_inactive or p['is_active']]

    def list_facilities(self, include_inactive=False):
        return [dict(f) for f in self.facilities if include_inactive or f.get('is_active', True)]

    def list_gallery(self):
        return [dict(item) for item in self.gallery]

    # Notifications

    def insert_notification(self, title, message, type='info', priority='medium', metadata=None):
        notification = {'id': uuid4(), 'title': title, 'message': message, 'type': type, 'priority': priority,
                        'is_read': False, 'metadata': metadata, 'created_at': _timestamp()}
        self.notifications.append(notification)
        return notification

    def list_notifications(self, limit=50):
        ordered = sorted(self.notifications, key=lambda n: n['created_at'], reverse=True)
        return [dict(n) for n in ordered[:limit]]

    def mark_notification_read(self, notification_id):
        for notification in self.notifications:
            if _same_id(notification['id'], notification_id):
                notification['is_read'] = True
                return True
        return False

    def mark_all_notifications_read(self):
        unread = [n for n in self.notifications if not n['is_read']]
        for notification in unread:
            notification['is_read'] = True
        return len(unread)

    def delete_notification(self, notification_id):
        before = len(self.notifications)
        self.notifications = [n for n in self.notifications if not _same_id(n['id'], notification_id)]
        return len(self.notifications) < before

    # Analytics

    def insert_analytics(self, snapshot):
        row = {'id': uuid4(), **snapshot, 'created_at': _timestamp()}
        self.analytics.append(row)
        return dict(row)

    def latest_analytics(self):
        return dict(self.analytics[-1]) if self.analytics else None

    def analytics_history(self, limit):
        return [dict(row) for row in reversed(self.analytics)][:limit]
