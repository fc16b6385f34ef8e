# Custom exceptions to be used throughout the project.
from typing import Dict, List, Optional


class TimeValidationError(Exception):
    """
    To be raised when a date or time input cannot be used.
    May be raised under the following circumstances:
        1. Time input does not match HH:MM or HH:MM:SS
        2. Date input does not match YYYY-MM-DD or is not a real calendar date
        3. A period ends before (or when) it begins
        4. The requested month is outside 1-12
    """
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BookingValidationError(Exception):
    """
    Raised when a booking payload fails validation.
    Carries a field -> message dict so the API can return every problem at once.
    """
    def __init__(self, errors: Dict[str, str], message: str = "Validation failed"):
        super().__init__(message)
        self.message = message
        self.errors = errors


class BookingConflictError(Exception):
    """
    Raised inside the date-locked transaction when the candidate booking collides with the calendar.
    Raising rolls the transaction back.
    """
    def __init__(self, message: str, conflicts: Optional[List[dict]] = None):
        super().__init__(message)
        self.message = message
        self.conflicts = conflicts or []


class BookingNotFoundError(Exception):
    def __init__(self, resource: str = "Booking"):
        super().__init__(f"{resource} not found")
        self.message = f"{resource} not found"


class InvalidStatusTransition(Exception):
    def __init__(self, current: str, requested: str):
        message = f"Cannot change booking status from {current} to {requested}"
        super().__init__(message)
        self.message = message
        self.current = current
        self.requested = requested


class RateLimitExceeded(Exception):
    def __init__(self, limit: int):
        message = f"Rate limit exceeded. Maximum {limit} bookings per hour allowed."
        super().__init__(message)
        self.message = message
        self.limit = limit
