"""
Monthly availability calendar for the venue.

Problem:

Given the bookings and blocked dates for a month, show visitors which days they can still book.

Each day carries five flags (morning, evening, night, full_day, short_duration booked).
A calendar cell is classified from those flags alone:

    outside the month or in the past -> None
    no flags recorded                -> available
    full_day                         -> full
    any other flag                   -> partial
    otherwise                        -> available

Data Structures:
    DayFlags: the five booleans for one date
    CalendarCell: one square in the month grid
    BookingCalendar: the grid, Sunday-first weeks padded with adjacent-month days
"""
import calendar
from datetime import date
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .error_utils import TimeValidationError
from .time_slots import NAMED_SLOTS, parse_time, slot_for_times

AVAILABLE = 'available'
PARTIAL = 'partial'
FULL = 'full'

# Bookings in these states hold their slot on the calendar
ACTIVE_STATUSES = ('pending', 'confirmed')

FLAG_NAMES = ('morning', 'evening', 'night', 'full_day', 'short_duration')


class DayFlags:

    def __init__(self, morning=False, evening=False, night=False, full_day=False, short_duration=False):
        self.morning = bool(morning)
        self.evening = bool(evening)
        self.night = bool(night)
        self.full_day = bool(full_day)
        self.short_duration = bool(short_duration)

    @classmethod
    def from_mapping(cls, data: Mapping) -> 'DayFlags':
        return cls(**{name: bool(data.get(name)) for name in FLAG_NAMES})

    def any_slot_booked(self) -> bool:
        return any((self.morning, self.evening, self.night, self.short_duration))

    def mark(self, slot: str):
        setattr(self, slot, True)

    def to_dict(self) -> Dict[str, bool]:
        return {name: getattr(self, name) for name in FLAG_NAMES}

    def __eq__(self, other):
        if not isinstance(other, DayFlags):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        booked = [name for name in FLAG_NAMES if getattr(self, name)]
        return f"DayFlags({', '.join(booked) or 'free'})"


def month_bounds(year: int, month: int) -> Tuple[date, date]:
    if not 1 <= month <= 12:
        raise TimeValidationError("Month must be between 1 and 12")
    if not 1 <= year <= 9999:
        raise TimeValidationError("Year is out of range")
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def classify_day(day: date, flags: Optional[DayFlags], today: date, year: int, month: int) -> Optional[str]:
    """
    Status for a single calendar cell. Pure function of the flags once the month and past-date guards pass.
    """
    if (day.year, day.month) != (year, month) or day < today:
        return None
    if flags is None:
        return AVAILABLE
    if flags.full_day:
        return FULL
    if flags.any_slot_booked():
        return PARTIAL
    return AVAILABLE


def booking_slot(booking: Mapping) -> Optional[str]:
    """
    The calendar flag a booking occupies. Uses time_slot when set, otherwise infers it from the booking times.
    """
    slot = booking.get('time_slot')
    if slot in FLAG_NAMES:
        return slot
    start, end = booking.get('start_time'), booking.get('end_time')
    if start and end:
        return slot_for_times(parse_time(start), parse_time(end))
    # No slot and no times: treat as a whole-day hold
    return 'full_day'


def is_active_booking(booking: Mapping) -> bool:
    return booking.get('status') in ACTIVE_STATUSES and booking.get('is_active', True) is not False


def flags_from_bookings(bookings: Iterable[Mapping], blocked_dates: Iterable[date], max_per_day: int) -> Dict[date, DayFlags]:
    """
    Derives per-day flags from booking rows and blocked dates.

    A day is marked full_day when it is blocked, holds max_per_day active bookings,
    or has every named slot taken.
    """
    flags_by_date: Dict[date, DayFlags] = {}
    counts: Dict[date, int] = {}
    for booking in bookings:
        if not is_active_booking(booking):
            continue
        day = booking['booking_date']
        flags = flags_by_date.setdefault(day, DayFlags())
        flags.mark(booking_slot(booking))
        counts[day] = counts.get(day, 0) + 1

    for day, flags in flags_by_date.items():
        if counts[day] >= max_per_day or all(getattr(flags, slot) for slot in NAMED_SLOTS):
            flags.full_day = True

    for day in blocked_dates:
        flags_by_date.setdefault(day, DayFlags()).full_day = True
    return flags_by_date


class CalendarCell:

    def __init__(self, day: date, in_month: bool, is_past: bool, status: Optional[str], flags: Optional[DayFlags]):
        self.date = day
        self.in_month = in_month
        self.is_past = is_past
        self.status = status
        self.flags = flags

    @property
    def selectable(self) -> bool:
        return self.status in (AVAILABLE, PARTIAL)

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "day": self.date.day,
            "in_month": self.in_month,
            "is_past": self.is_past,
            "status": self.status,
            "selectable": self.selectable,
            "slots": self.flags.to_dict() if self.flags else DayFlags().to_dict(),
        }


class BookingCalendar():

    def __init__(self, year: int, month: int, flags_by_date: Mapping[date, DayFlags], today: date):
        self.first_day, self.last_day = month_bounds(year, month)
        self.year = year
        self.month = month
        self.today = today
        self._flags_by_date = flags_by_date
        # Sunday first, matching the public booking calendar layout
        self._calendar = calendar.Calendar(firstweekday=calendar.SUNDAY)

    def cell(self, day: date) -> CalendarCell:
        flags = self._flags_by_date.get(day)
        return CalendarCell(
            day,
            in_month=(day.year, day.month) == (self.year, self.month),
            is_past=day < self.today,
            status=classify_day(day, flags, self.today, self.year, self.month),
            flags=flags,
        )

    def weeks(self) -> List[List[CalendarCell]]:
        return [[self.cell(day) for day in week] for week in self._calendar.monthdatescalendar(self.year, self.month)]

    def statuses(self) -> Dict[date, Optional[str]]:
        """Status for every date of the month, None for past days."""
        return {cell.date: cell.status for week in self.weeks() for cell in week if cell.in_month}

    def to_dict(self) -> dict:
        return {
            "year": self.year,
            "month": self.month,
            "month_name": calendar.month_name[self.month],
            "week_days": ['Sun', 'Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat'],
            "weeks": [[cell.to_dict() for cell in week] for week in self.weeks()],
        }


def month_summary(bookings: Iterable[Mapping], flags_by_date: Mapping[date, DayFlags], today: date, year: int, month: int) -> Dict[str, dict]:
    """
    Per-date booking count, guest total and status for the days of the month that have any activity.
    """
    summary: Dict[str, dict] = {}
    for booking in bookings:
        if not is_active_booking(booking):
            continue
        day = booking['booking_date']
        entry = summary.setdefault(day.isoformat(), {"bookings": 0, "guests": 0})
        entry["bookings"] += 1
        entry["guests"] += booking.get('guest_count') or 0

    for day in flags_by_date:
        summary.setdefault(day.isoformat(), {"bookings": 0, "guests": 0})

    for key, entry in summary.items():
        day = date.fromisoformat(key)
        entry["status"] = classify_day(day, flags_by_date.get(day), today, year, month)
    return dict(sorted(summary.items()))
