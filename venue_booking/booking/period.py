# Custom time period class used for conflict detection on the booking calendar
from datetime import time

from .error_utils import TimeValidationError


"""
Defined as a half-open pair of time objects [begin, end) within a single day.
Periods that only touch (one ends when the other begins) do not overlap.
"""
class Period:

    def __init__(self, begin_period: time, end_period: time):
        if end_period <= begin_period:
            raise TimeValidationError("Start time must be earlier than end time")
        self._begin_period = begin_period
        self._end_period = end_period

    @property
    def begin_period(self) -> time:
        return self._begin_period

    @property
    def end_period(self) -> time:
        return self._end_period

    def overlaps(self, other: 'Period') -> bool:
        return self.begin_period < other.end_period and other.begin_period < self.end_period

    def __eq__(self, other):
        if not isinstance(other, Period):
            return NotImplemented
        return (self.begin_period, self.end_period) == (other.begin_period, other.end_period)

    def __hash__(self):
        return hash((self.begin_period, self.end_period))

    def __repr__(self):
        return f"Period({self.begin_period.isoformat()}, {self.end_period.isoformat()})"
