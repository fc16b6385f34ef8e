# Utility functions for booking functionality
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Mapping, Optional
from uuid import UUID

import phonenumbers
from email_validator import validate_email, EmailNotValidError

from .calendar import is_active_booking
from .error_utils import BookingValidationError, TimeValidationError
from .period import Period
from .time_slots import BOOKING_SLOTS, PUBLIC_SLOTS, SHORT_DURATION_DEFAULT, parse_time, slot_for_times, slot_to_times

BOOKING_STATUSES = ('pending', 'confirmed', 'cancelled', 'completed')
EVENT_TYPES = ('birthday', 'meeting_conference', 'get_together', 'awareness_class', 'normal')

# Pricing constants (INR)
FLOOR_CLEANING_COST = Decimal('3000')
COOKING_GAS_UNIT_COST = Decimal('150')
GARBAGE_BAG_COST = Decimal('250')
PLATE_SMALL_COST = Decimal('2.5')
PLATE_LARGE_COST = Decimal('3.5')

# field: (min, max)
EXTRAS_LIMITS = {
    'cooking_gas_qty': (0, 100),
    'garbage_bags': (0, 100),
    'plates_small': (0, 1000),
    'plates_large': (0, 1000),
}

MAX_NOTES_LENGTH = 1000


def sanitize_phone(phone, region: str = 'IN') -> str:
    # Maximum allowed input length to avoid oversized input injections.
    MAX_PHONE_LENGTH = 50

    if not isinstance(phone, str):
        raise BookingValidationError({'mobile': 'Valid mobile number is required'})

    # Step 1: Remove any leading or trailing whitespace.
    phone = phone.strip()

    # Step 2: Ensure the input does not exceed the allowed length.
    if len(phone) > MAX_PHONE_LENGTH:
        raise BookingValidationError({'mobile': 'Phone number input is too long'})

    # Step 3: Allowed characters: an optional leading '+', digits, spaces, hyphens, and parentheses.
    allowed_pattern = re.compile(r'^\+?[0-9\-\(\)\s]+$')
    if not allowed_pattern.fullmatch(phone):
        raise BookingValidationError({'mobile': 'Invalid mobile number format'})

    # Step 4: Use the phonenumbers library to parse and validate the phone number.
    try:
        if phone.startswith('+'):
            parsed_phone = phonenumbers.parse(phone, None)
        else:
            # Local numbers are read in the venue's region
            parsed_phone = phonenumbers.parse(phone, region)
    except phonenumbers.NumberParseException:
        raise BookingValidationError({'mobile': 'Invalid mobile number format'})

    # Step 5: Validate that the parsed phone is both "possible" and "valid."
    if not phonenumbers.is_possible_number(parsed_phone) or not phonenumbers.is_valid_number(parsed_phone):
        raise BookingValidationError({'mobile': 'Phone number is not valid'})

    # Step 6: Canonical E.164 format.
    return phonenumbers.format_number(parsed_phone, phonenumbers.PhoneNumberFormat.E164)


def sanitize_email(email) -> str:
    if not isinstance(email, str):
        raise BookingValidationError({'email': 'Invalid email address'})

    email = email.strip()

    # 254 characters is the maximum for email addresses by RFC 5321 / 5322 standards
    MAX_EMAIL_LENGTH = 254
    if len(email) > MAX_EMAIL_LENGTH:
        raise BookingValidationError({'email': 'Email input is too long'})

    try:
        valid = validate_email(email, check_deliverability=False)
    except EmailNotValidError as e:
        raise BookingValidationError({'email': f'Invalid email address: {e}'})
    return valid.normalized


def parse_booking_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not re.fullmatch(r'\d{4}-\d{2}-\d{2}', value.strip()):
        raise TimeValidationError("Invalid date format. Expected YYYY-MM-DD")
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        raise TimeValidationError("Invalid date. Expected a real calendar date")


def parse_uuid(value) -> Optional[str]:
    if value in (None, ''):
        return None
    try:
        return str(UUID(str(value)))
    except ValueError:
        raise BookingValidationError({'package_id': 'Invalid package ID'})


def _parse_int(data: Mapping, field: str, low: int, high: int, default: int, errors: Dict[str, str]) -> int:
    value = data.get(field)
    if value in (None, ''):
        return default
    # bools are ints in Python, reject them explicitly
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        errors[field] = f'{field} must be a whole number'
        return default
    try:
        number = int(value)
    except ValueError:
        errors[field] = f'{field} must be a whole number'
        return default
    if not low <= number <= high:
        errors[field] = f'{field} must be between {low} and {high}'
    return number


def _parse_decimal(data: Mapping, field: str, errors: Dict[str, str]) -> Decimal:
    value = data.get(field)
    if value in (None, ''):
        return Decimal('0')
    if isinstance(value, bool):
        errors[field] = f'{field} must be a number'
        return Decimal('0')
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        errors[field] = f'{field} must be a number'
        return Decimal('0')
    if not number.is_finite():
        errors[field] = f'{field} must be a number'
        return Decimal('0')
    return number


def _clean_text(data: Mapping, field: str, errors: Dict[str, str]) -> Optional[str]:
    value = data.get(field)
    if value is None:
        return None
    if not isinstance(value, str):
        errors[field] = f'{field} must be text'
        return None
    value = value.strip()
    if len(value) > MAX_NOTES_LENGTH:
        errors[field] = f'{field} too long (max {MAX_NOTES_LENGTH} characters)'
    return value or None


def resolve_times(slot: Optional[str], start, end, admin: bool = False):
    """
    Works out (time_slot, start_time, end_time) for a booking.

    Explicit times win over the slot's fixed range. short_duration is admin only and falls back to 10:00-18:00.
    Raises BookingValidationError when nothing usable was given.
    """
    allowed = BOOKING_SLOTS if admin else PUBLIC_SLOTS
    if slot is not None:
        slot = str(slot).lower()
        if slot not in allowed:
            raise BookingValidationError({'time_slot': f'Invalid slot: {slot}'})

    try:
        if start and end:
            start_time, end_time = parse_time(start), parse_time(end)
        elif slot == 'short_duration':
            start_time, end_time = SHORT_DURATION_DEFAULT
        elif slot:
            start_time, end_time = slot_to_times(slot)
        else:
            raise BookingValidationError({'time_slot': 'Time slot selection is required'})
        # Constructing the period enforces start < end
        Period(start_time, end_time)
    except TimeValidationError as e:
        raise BookingValidationError({'start_time': e.message})

    # Explicit times decide which slot the booking occupies on the calendar
    if (start and end) or slot is None:
        slot = slot_for_times(start_time, end_time)
    if slot == 'short_duration' and not admin:
        raise BookingValidationError({'time_slot': 'Custom time ranges can only be booked by the venue'})
    return slot, start_time, end_time


def validate_extras(data: Mapping) -> dict:
    errors: Dict[str, str] = {}
    extras = {field: _parse_int(data, field, low, high, 0, errors) for field, (low, high) in EXTRAS_LIMITS.items()}
    extras['admin_price_adjustment'] = _parse_decimal(data, 'admin_price_adjustment', errors)
    if errors:
        raise BookingValidationError(errors)
    return extras


def validate_booking_payload(data: Mapping, today: date, admin: bool = False, region: str = 'IN') -> dict:
    """
    Validates and normalizes a booking payload into a record ready for insertion.

    Public bookings are always pending; admin bookings may carry a status and the extras fields.
    Collects every field problem before raising BookingValidationError.
    """
    if not isinstance(data, Mapping):
        raise BookingValidationError({'body': 'Expected a JSON object'})

    errors: Dict[str, str] = {}
    record: dict = {}

    full_name = data.get('full_name')
    if not isinstance(full_name, str) or len(full_name.strip()) < 2:
        errors['full_name'] = 'Full name is required (minimum 2 characters)'
    elif len(full_name.strip()) > 100:
        errors['full_name'] = 'Full name too long'
    else:
        record['full_name'] = full_name.strip()

    mobile = data.get('mobile')
    if not isinstance(mobile, str) or not 10 <= len(mobile.strip()) <= 15:
        errors['mobile'] = 'Valid mobile number is required (10 to 15 characters)'
    else:
        try:
            record['mobile'] = sanitize_phone(mobile, region)
        except BookingValidationError as e:
            errors.update(e.errors)

    email = data.get('email')
    record['email'] = None
    if email not in (None, ''):
        try:
            record['email'] = sanitize_email(email)
        except BookingValidationError as e:
            errors.update(e.errors)

    try:
        booking_date = parse_booking_date(data.get('booking_date'))
        if booking_date < today:
            errors['booking_date'] = 'Booking date must be today or in the future'
        record['booking_date'] = booking_date
    except TimeValidationError as e:
        errors['booking_date'] = e.message

    try:
        record['time_slot'], record['start_time'], record['end_time'] = resolve_times(
            data.get('time_slot') or data.get('slot'), data.get('start_time'), data.get('end_time'), admin)
    except BookingValidationError as e:
        errors.update(e.errors)

    record['guest_count'] = _parse_int(data, 'guest_count', 1, 10000, 1, errors)

    try:
        record['package_id'] = parse_uuid(data.get('package_id'))
    except BookingValidationError as e:
        errors.update(e.errors)

    event_type = data.get('event_type')
    if event_type not in (None, '') and event_type not in EVENT_TYPES:
        errors['event_type'] = f"event_type must be one of: {', '.join(EVENT_TYPES)}"
    record['event_type'] = event_type or None

    record['special_requests'] = _clean_text(data, 'special_requests', errors)
    record['additional_notes'] = _clean_text(data, 'additional_notes', errors)

    if admin:
        status = data.get('status') or 'confirmed'
        if status not in ('pending', 'confirmed'):
            errors['status'] = 'New bookings must be pending or confirmed'
        record['status'] = status
        try:
            record.update(validate_extras(data))
        except BookingValidationError as e:
            errors.update(e.errors)
    else:
        record['status'] = 'pending'
        record.update({field: 0 for field in EXTRAS_LIMITS})
        record['admin_price_adjustment'] = Decimal('0')

    if errors:
        raise BookingValidationError(errors)
    record['is_active'] = True
    return record


DETAIL_FIELDS = ('booking_date', 'time_slot', 'start_time', 'end_time', 'guest_count', 'package_id', 'event_type',
                 'special_requests', 'additional_notes', 'admin_price_adjustment')


def validate_detail_changes(changes: Mapping, current: Mapping, today: date) -> dict:
    """
    Validates an admin edit of an existing booking. Only the fields present in changes are returned.
    A new slot without explicit times takes the slot's fixed range.
    """
    if not isinstance(changes, Mapping) or not changes:
        raise BookingValidationError({'body': 'No changes supplied'})
    errors: Dict[str, str] = {}
    for field in changes:
        if field not in DETAIL_FIELDS:
            errors[field] = f'{field} cannot be changed here'

    clean: dict = {}
    if 'booking_date' in changes:
        try:
            clean['booking_date'] = parse_booking_date(changes['booking_date'])
            if clean['booking_date'] < today and clean['booking_date'] != current.get('booking_date'):
                errors['booking_date'] = 'Booking date must be today or in the future'
        except TimeValidationError as e:
            errors['booking_date'] = e.message

    if any(field in changes for field in ('time_slot', 'start_time', 'end_time')):
        start, end = changes.get('start_time'), changes.get('end_time')
        if (start is None) != (end is None):
            errors['start_time'] = 'start_time and end_time must be changed together'
        else:
            try:
                clean['time_slot'], clean['start_time'], clean['end_time'] = resolve_times(
                    changes.get('time_slot'), start, end, admin=True)
            except BookingValidationError as e:
                errors.update(e.errors)

    if 'guest_count' in changes:
        clean['guest_count'] = _parse_int(changes, 'guest_count', 1, 10000, current.get('guest_count') or 1, errors)
    if 'package_id' in changes:
        try:
            clean['package_id'] = parse_uuid(changes['package_id'])
        except BookingValidationError as e:
            errors.update(e.errors)
    if 'event_type' in changes:
        event_type = changes['event_type']
        if event_type not in (None, '') and event_type not in EVENT_TYPES:
            errors['event_type'] = f"event_type must be one of: {', '.join(EVENT_TYPES)}"
        clean['event_type'] = event_type or None
    for field in ('special_requests', 'additional_notes'):
        if field in changes:
            clean[field] = _clean_text(changes, field, errors)
    if 'admin_price_adjustment' in changes:
        clean['admin_price_adjustment'] = _parse_decimal(changes, 'admin_price_adjustment', errors)

    if errors:
        raise BookingValidationError(errors)
    return clean


def booking_period(booking: Mapping) -> Optional[Period]:
    start, end = booking.get('start_time'), booking.get('end_time')
    if not start or not end:
        return None
    return Period(parse_time(start), parse_time(end))


def holds_whole_day(booking: Mapping) -> bool:
    # full_day bookings and bookings without times keep the date to themselves
    return booking.get('time_slot') == 'full_day' or booking_period(booking) is None


def find_conflict(candidate: Mapping, existing: List[Mapping], blocked: bool, max_per_day: int) -> Optional[str]:
    """
    Returns the reason the candidate cannot take its slot, or None.

    existing must already exclude the candidate itself and hold only active bookings for the same date.
    """
    if blocked:
        return "Date is blocked"
    if len(existing) >= max_per_day:
        return "Venue is fully booked for this date"
    if holds_whole_day(candidate):
        return "Time slot conflict with existing booking" if existing else None
    candidate_period = booking_period(candidate)
    for booking in existing:
        if holds_whole_day(booking) or booking_period(booking).overlaps(candidate_period):
            return "Time slot conflict with existing booking"
    return None


def package_base_price(package: Optional[Mapping]) -> Decimal:
    if not package:
        return Decimal('0')
    for field in ('price', 'price_min'):
        if package.get(field) is not None:
            return Decimal(str(package[field]))
    return Decimal('0')


def calculate_pricing(package_price: Decimal, extras: Mapping) -> Dict[str, Decimal]:
    cooking_gas_cost = COOKING_GAS_UNIT_COST * (extras.get('cooking_gas_qty') or 0)
    garbage_cost = GARBAGE_BAG_COST * (extras.get('garbage_bags') or 0)
    plates_cost = (PLATE_SMALL_COST * (extras.get('plates_small') or 0)
                   + PLATE_LARGE_COST * (extras.get('plates_large') or 0))
    extra_services_total = cooking_gas_cost + garbage_cost + plates_cost
    adjustment = Decimal(str(extras.get('admin_price_adjustment') or 0))
    return {
        'floor_cleaning_cost': FLOOR_CLEANING_COST,
        'cooking_gas_cost': cooking_gas_cost,
        'garbage_cost': garbage_cost,
        'plates_cost': plates_cost,
        'extra_services_total': extra_services_total,
        'final_price': package_price + FLOOR_CLEANING_COST + extra_services_total + adjustment,
    }


_HISTORY_MESSAGES = {
    'booking_created': '{name} created this booking',
    'booking_confirmed': '{name} confirmed this booking',
    'booking_cancelled': '{name} cancelled this booking',
    'booking_completed': '{name} marked booking as completed',
    'booking_reopened': '{name} reopened this booking',
    'details_updated': '{name} updated booking details',
    'extras_updated': '{name} updated extras',
    'booking_deleted': '{name} deleted this booking',
    'date_blocked': '{name} blocked {date}',
    'date_unblocked': '{name} unblocked {date}',
}


def format_admin_history(event: Mapping) -> str:
    name = event.get('actor') or 'Admin'
    details = event.get('details') or {}
    template = _HISTORY_MESSAGES.get(event.get('event_type'))
    if template is None:
        # Generic fallback - clean up underscores
        return f"{name} {str(event.get('event_type', 'acted')).replace('_', ' ')}"
    return template.format(name=name, date=details.get('date', 'a date'))


def client_ip(headers: Mapping, remote_addr: Optional[str]) -> str:
    forwarded = headers.get('X-Forwarded-For')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return headers.get('X-Real-IP') or remote_addr or 'unknown'


def active_only(bookings: Iterable[Mapping], exclude_id=None) -> List[Mapping]:
    return [booking for booking in bookings
            if is_active_booking(booking)
            and (exclude_id is None or str(booking.get('id')) != str(exclude_id))]
