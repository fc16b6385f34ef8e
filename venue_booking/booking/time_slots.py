# Named booking windows for the venue and helpers for converting between slots and times
import re
from datetime import time
from typing import Dict, List, Optional, Tuple

from .error_utils import TimeValidationError

# Slots that partition the bookable day. full_day and short_duration are booking modes layered on top.
NAMED_SLOTS = ('morning', 'evening', 'night')
BOOKING_SLOTS = NAMED_SLOTS + ('full_day', 'short_duration')
PUBLIC_SLOTS = NAMED_SLOTS + ('full_day',)

SLOT_TIME_RANGES = {
    'morning': (time(10, 0), time(14, 0)),
    'evening': (time(14, 0), time(18, 0)),
    'night': (time(18, 0), time(22, 0)),
    'full_day': (time(10, 0), time(18, 0)),
}

# Used when an admin books short_duration without giving explicit times
SHORT_DURATION_DEFAULT = (time(10, 0), time(18, 0))

SLOT_LABELS = {
    'morning': 'Morning',
    'evening': 'Evening',
    'night': 'Night',
    'full_day': 'Full Day',
    'short_duration': 'Short Duration',
}

_TIME_PATTERN = re.compile(r'^([01]\d|2[0-3]):([0-5]\d)(?::([0-5]\d))?$')


def parse_time(value) -> time:
    """
    Parses a 24-hour HH:MM or HH:MM:SS string into a time object. time objects pass straight through.

    Raises TimeValidationError for anything else.
    """
    if isinstance(value, time):
        return value
    if not isinstance(value, str):
        raise TimeValidationError("Invalid time format. Expected HH:MM (24-hour format)")
    match = _TIME_PATTERN.match(value.strip())
    if not match:
        raise TimeValidationError("Invalid time format. Expected HH:MM (24-hour format)")
    hours, minutes, seconds = match.groups()
    return time(int(hours), int(minutes), int(seconds or 0))


def format_time(value: Optional[time]) -> Optional[str]:
    if value is None:
        return None
    return value.strftime('%H:%M')


def slot_to_times(slot: Optional[str]) -> Optional[Tuple[time, time]]:
    """
    Converts a slot name to its fixed start/end times.
    short_duration has no fixed range so it returns None like any unknown slot.
    """
    return SLOT_TIME_RANGES.get((slot or '').lower())


def slot_for_times(start: time, end: time) -> str:
    for slot, (slot_start, slot_end) in SLOT_TIME_RANGES.items():
        if start == slot_start and end == slot_end:
            return slot
    return 'short_duration'


def display_time(start: time, end: time) -> str:
    # 9:00 AM - 1:00 PM style, without the leading zero
    def twelve_hour(value: time) -> str:
        return value.strftime('%I:%M %p').lstrip('0')
    return f"{twelve_hour(start)} - {twelve_hour(end)}"


def slot_definitions() -> List[Dict[str, str]]:
    definitions = []
    for slot in PUBLIC_SLOTS:
        start, end = SLOT_TIME_RANGES[slot]
        definitions.append({
            "id": slot,
            "label": SLOT_LABELS[slot],
            "start_time": format_time(start),
            "end_time": format_time(end),
            "display_time": display_time(start, end),
        })
    return definitions
