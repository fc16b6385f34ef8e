"""
Booking and availability service.

Every write that can change what the calendar shows goes through the persistence layer's
date-locked transaction with a conflict check, so two requests for the same slot cannot both win.
"""
from datetime import date, datetime, timezone
import logging
from typing import Dict, List, Mapping, Optional

from . import booking_utils as util
from .calendar import BookingCalendar, DayFlags, flags_from_bookings, is_active_booking, month_bounds, month_summary
from .error_utils import (BookingConflictError, BookingNotFoundError, BookingValidationError, InvalidStatusTransition,
                          TimeValidationError)
from .period import Period
from .time_slots import SLOT_LABELS, parse_time

logger = logging.getLogger(__name__)

# Allowed status changes; anything else is rejected
STATUS_TRANSITIONS = {
    'pending': ('confirmed', 'cancelled'),
    'confirmed': ('cancelled', 'completed'),
    'cancelled': ('pending',),
    'completed': (),
}

STATUS_EVENTS = {
    'confirmed': 'booking_confirmed',
    'cancelled': 'booking_cancelled',
    'completed': 'booking_completed',
    'pending': 'booking_reopened',
}

PRICE_COLUMNS = ('floor_cleaning_cost', 'extra_services_total', 'final_price')


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _conflict_summary(booking: Mapping) -> dict:
    return {
        'id': booking.get('id'),
        'time_slot': booking.get('time_slot'),
        'start_time': booking.get('start_time'),
        'end_time': booking.get('end_time'),
        'status': booking.get('status'),
    }


class _StatusUnchanged(Exception):
    """Raised inside the status transaction when the row already has the requested status."""


class BookingService:

    def __init__(self, db, today: date, max_per_day: int = 2, phone_region: str = 'IN'):
        self.db = db
        self.today = today
        self.max_per_day = max_per_day
        self.phone_region = phone_region

    # Availability

    def month_bookings(self, year: int, month: int) -> List[dict]:
        first, last = month_bounds(year, month)
        return self.db.bookings_between(first, last)

    def calendar_flags(self, year: int, month: int) -> Dict[date, DayFlags]:
        first, last = month_bounds(year, month)
        bookings = self.db.bookings_between(first, last)
        blocked = self.db.blocked_dates_between(first, last)
        return flags_from_bookings(bookings, blocked, self.max_per_day)

    def build_calendar(self, year: int, month: int, flags: Optional[Dict[date, DayFlags]] = None) -> BookingCalendar:
        if flags is None:
            flags = self.calendar_flags(year, month)
        return BookingCalendar(year, month, flags, self.today)

    def month_availability(self, year: int, month: int) -> Dict[str, dict]:
        first, last = month_bounds(year, month)
        bookings = self.db.bookings_between(first, last)
        flags = flags_from_bookings(bookings, self.db.blocked_dates_between(first, last), self.max_per_day)
        return month_summary(bookings, flags, self.today, year, month)

    def bookings_by_day(self, year: int, month: int) -> Dict[str, List[dict]]:
        by_day: Dict[str, List[dict]] = {}
        for booking in self.month_bookings(year, month):
            by_day.setdefault(booking['booking_date'].isoformat(), []).append(booking)
        return by_day

    def check_availability(self, day, start_time=None, end_time=None) -> dict:
        """
        Answers whether day (optionally a start/end range on it) can still be booked.
        """
        if bool(start_time) != bool(end_time):
            raise BookingValidationError({'start_time': 'start_time and end_time must be given together'})
        day = util.parse_booking_date(day)
        existing = util.active_only(self.db.bookings_between(day, day))
        blocked = self.db.get_blocked_date(day) is not None
        whole_day_taken = any(util.holds_whole_day(booking) for booking in existing)

        has_conflict = False
        if start_time and end_time:
            requested = Period(parse_time(start_time), parse_time(end_time))
            has_conflict = any(util.holds_whole_day(booking) or util.booking_period(booking).overlaps(requested)
                               for booking in existing)

        if blocked:
            message = "Date is blocked"
        elif len(existing) >= self.max_per_day or whole_day_taken:
            message = "Date is fully booked"
        elif has_conflict:
            message = "Time slot conflict detected"
        else:
            message = "Date is available"
        return {
            'available': message == "Date is available",
            'has_conflict': has_conflict,
            'existing_bookings': len(existing),
            'blocked': blocked,
            'message': message,
        }

    def _conflict_check(self, current, candidate, existing, blocked):
        """Runs inside the locked transaction; raising rolls the write back."""
        if not is_active_booking(candidate):
            return
        reason = util.find_conflict(candidate, existing, blocked, self.max_per_day)
        if reason:
            logger.info("Rejected booking on %s: %s", candidate['booking_date'], reason)
            raise BookingConflictError(reason, [_conflict_summary(booking) for booking in existing])

    # Bookings

    def get_booking(self, booking_id) -> dict:
        booking = self.db.get_booking(booking_id)
        if booking is None:
            raise BookingNotFoundError()
        return booking

    def _active_package(self, package_id) -> Optional[dict]:
        if package_id is None:
            return None
        package = self.db.get_package(package_id)
        if package is None or not package.get('is_active', True):
            raise BookingValidationError({'package_id': 'Package not found or inactive'})
        return package

    def _pricing(self, package: Optional[Mapping], extras: Mapping) -> dict:
        pricing = util.calculate_pricing(util.package_base_price(package), extras)
        return {column: pricing[column] for column in PRICE_COLUMNS}

    def create_booking(self, payload: Mapping, ip_address: Optional[str] = None, actor: Optional[str] = None,
                       admin: bool = False) -> dict:
        record = util.validate_booking_payload(payload, self.today, admin=admin, region=self.phone_region)
        package = self._active_package(record['package_id'])
        record.update(self._pricing(package, record))
        record['ip_address'] = ip_address
        record['created_by'] = actor
        if record['status'] == 'confirmed':
            record['confirmed_by'] = actor
            record['confirmed_at'] = _now()

        booking = self.db.insert_booking(record, self._conflict_check)
        logger.info("Booking %s created for %s on %s", booking['id'], booking['full_name'], booking['booking_date'])

        self.db.insert_booking_event(booking['id'], 'booking_created', actor or booking['full_name'], {
            'status': booking['status'],
            'booking_date': booking['booking_date'].isoformat(),
            'time_slot': booking['time_slot'],
            'source': 'admin' if admin else 'public',
        })
        if not admin:
            slot = SLOT_LABELS.get(booking['time_slot'], booking['time_slot'])
            self.db.insert_notification(
                "New Booking Received",
                f"{booking['full_name']} booked {booking['booking_date'].isoformat()} ({slot}) for {booking['guest_count']} guests",
                type='booking',
                priority='high',
                metadata={
                    'booking_id': str(booking['id']),
                    'booking_date': booking['booking_date'].isoformat(),
                    'time_slot': booking['time_slot'],
                    'guest_count': booking['guest_count'],
                })
        return booking

    def create_manual_booking(self, payload: Mapping, actor: str) -> dict:
        """Admin-entered booking (phone or walk-in). Confirmed unless the payload says pending."""
        if isinstance(payload, Mapping) and not payload.get('time_slot') and not payload.get('slot'):
            raise BookingValidationError({'time_slot': 'Time slot selection is required'})
        return self.create_booking(payload, actor=actor, admin=True)

    def update_details(self, booking_id, changes: Mapping, actor: str) -> dict:
        current = self.get_booking(booking_id)
        clean = util.validate_detail_changes(changes, current, self.today)

        if 'package_id' in clean:
            package = self._active_package(clean['package_id'])
        elif current.get('package_id'):
            package = self.db.get_package(current['package_id'])
        else:
            package = None
        clean.update(self._pricing(package, {**current, **clean}))

        moves = any(field in clean for field in ('booking_date', 'time_slot', 'start_time', 'end_time'))
        booking = self.db.update_booking(booking_id, clean, self._conflict_check if moves else None)
        self.db.insert_booking_event(booking_id, 'details_updated', actor, {'fields': sorted(changes)})
        return booking

    def update_extras(self, booking_id, extras: Mapping, actor: str) -> dict:
        if not isinstance(extras, Mapping):
            raise BookingValidationError({'body': 'Expected a JSON object'})
        validated = util.validate_extras(extras)
        changes = {field: value for field, value in validated.items() if field in extras}
        if not changes:
            raise BookingValidationError({'body': 'No extras supplied'})

        current = self.get_booking(booking_id)
        package = self.db.get_package(current['package_id']) if current.get('package_id') else None
        changes.update(self._pricing(package, {**current, **changes}))
        changes['extras_updated_by'] = actor
        changes['extras_updated_at'] = _now()

        booking = self.db.update_booking(booking_id, changes)
        self.db.insert_booking_event(booking_id, 'extras_updated', actor, {
            'fields': sorted(field for field in extras if field in validated),
            'final_price': str(booking['final_price']),
        })
        return booking

    # Status

    def change_status(self, booking_id, status: str, actor: str, notes: Optional[str] = None) -> dict:
        """
        Moves a booking along pending -> confirmed -> completed, with cancel and reopen.
        Asking for the status the booking already has returns it unchanged.
        """
        if status not in util.BOOKING_STATUSES:
            raise BookingValidationError({'status': f"status must be one of: {', '.join(util.BOOKING_STATUSES)}"})
        booking = self.get_booking(booking_id)
        if booking['status'] == status:
            logger.info("Booking %s already %s", booking_id, status)
            return booking
        if status not in STATUS_TRANSITIONS[booking['status']]:
            raise InvalidStatusTransition(booking['status'], status)

        changes = {'status': status}
        if status == 'confirmed':
            changes.update(confirmed_by=actor, confirmed_at=_now())
        elif status == 'cancelled':
            changes.update(cancelled_by=actor, cancelled_at=_now())
        elif status == 'completed':
            changes['completed_at'] = _now()
        else:
            changes.update(cancelled_by=None, cancelled_at=None)

        def check(current, candidate, existing, blocked):
            # Status may have moved since it was read above
            if current['status'] == status:
                raise _StatusUnchanged()
            if current['status'] != booking['status'] and status not in STATUS_TRANSITIONS[current['status']]:
                raise InvalidStatusTransition(current['status'], status)
            if status == 'pending':
                self._conflict_check(current, candidate, existing, blocked)

        try:
            updated = self.db.update_booking(booking_id, changes, check)
        except _StatusUnchanged:
            logger.info("Booking %s was already moved to %s", booking_id, status)
            return self.get_booking(booking_id)
        details = {'from': booking['status'], 'to': status}
        if notes:
            details['notes'] = notes
        self.db.insert_booking_event(booking_id, STATUS_EVENTS[status], actor, details)
        logger.info("Booking %s moved from %s to %s by %s", booking_id, booking['status'], status, actor)
        return updated

    def confirm(self, booking_id, actor: str, notes: Optional[str] = None) -> dict:
        return self.change_status(booking_id, 'confirmed', actor, notes)

    def cancel(self, booking_id, actor: str, notes: Optional[str] = None) -> dict:
        return self.change_status(booking_id, 'cancelled', actor, notes)

    def complete(self, booking_id, actor: str, notes: Optional[str] = None) -> dict:
        return self.change_status(booking_id, 'completed', actor, notes)

    def reopen(self, booking_id, actor: str, notes: Optional[str] = None) -> dict:
        return self.change_status(booking_id, 'pending', actor, notes)

    def delete_booking(self, booking_id, actor: str) -> dict:
        booking = self.get_booking(booking_id)
        if not self.db.delete_booking(booking_id):
            raise BookingNotFoundError()
        self.db.insert_booking_event(booking_id, 'booking_deleted', actor, {
            'full_name': booking['full_name'],
            'booking_date': booking['booking_date'].isoformat(),
        })
        logger.info("Booking %s deleted by %s", booking_id, actor)
        return booking

    # Blocked dates

    def block_date(self, day, reason: Optional[str], actor: str) -> dict:
        day = util.parse_booking_date(day)
        if day < self.today:
            raise BookingValidationError({'date': 'Cannot block a date in the past'})
        existing = self.db.get_blocked_date(day)
        if existing is not None:
            return existing
        blocked = self.db.insert_blocked_date(day, reason, actor)
        self.db.insert_booking_event(None, 'date_blocked', actor, {'date': day.isoformat(), 'reason': reason})
        logger.info("Date %s blocked by %s", day, actor)
        return blocked

    def unblock_date(self, day, actor: str) -> date:
        day = util.parse_booking_date(day)
        if not self.db.delete_blocked_date(day):
            raise BookingNotFoundError("Blocked date")
        self.db.insert_booking_event(None, 'date_unblocked', actor, {'date': day.isoformat()})
        logger.info("Date %s unblocked by %s", day, actor)
        return day

    # Queries

    def search(self, status=None, q=None, date_from=None, date_to=None, package_id=None) -> List[dict]:
        errors = {}
        if status and status not in util.BOOKING_STATUSES:
            errors['status'] = f"status must be one of: {', '.join(util.BOOKING_STATUSES)}"
        parsed = {}
        for field, value in (('date_from', date_from), ('date_to', date_to)):
            if value:
                try:
                    parsed[field] = util.parse_booking_date(value)
                except TimeValidationError as e:
                    errors[field] = e.message
        if package_id:
            try:
                package_id = util.parse_uuid(package_id)
            except BookingValidationError as e:
                errors.update(e.errors)
        if errors:
            raise BookingValidationError(errors)
        return self.db.list_bookings(status=status or None, q=(q or '').strip() or None,
                                     date_from=parsed.get('date_from'), date_to=parsed.get('date_to'),
                                     package_id=package_id or None)

    def history(self, booking_id) -> List[dict]:
        """Audit events, newest first. Deleted bookings keep their trail; ids never seen raise not found."""
        events = self.db.list_booking_events(booking_id)
        if not events:
            self.get_booking(booking_id)
        return [{**event, 'message': util.format_admin_history(event)} for event in events]
