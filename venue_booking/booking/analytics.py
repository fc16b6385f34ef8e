"""
Append-only log of the venue's public headline numbers (events hosted, guests served, client satisfaction).
Every update inserts a new snapshot; the newest row is the current value and older rows are the history.
"""
import logging
from typing import List, Mapping, Optional

from .error_utils import BookingValidationError

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY = {'events_hosted': 0, 'guests_served': 0, 'client_satisfaction': 100}

FIELD_RANGES = {
    'events_hosted': (0, None),
    'guests_served': (0, None),
    'client_satisfaction': (0, 100),
}

MAX_HISTORY = 50


def validate_snapshot(updates: Mapping) -> dict:
    if not isinstance(updates, Mapping):
        raise BookingValidationError({'body': 'Expected a JSON object'})
    errors = {}
    snapshot = {}
    for field, (low, high) in FIELD_RANGES.items():
        value = updates.get(field)
        if value is None:
            errors[field] = f'{field} is required'
            continue
        if isinstance(value, bool) or not isinstance(value, int):
            errors[field] = f'{field} must be a whole number'
            continue
        if value < low or (high is not None and value > high):
            errors[field] = f'{field} must be between {low} and {high}' if high is not None else f'{field} cannot be negative'
            continue
        snapshot[field] = value
    if errors:
        raise BookingValidationError(errors)
    return snapshot


def validate_history_limit(limit) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_HISTORY:
        raise BookingValidationError({'limit': f'limit must be between 1 and {MAX_HISTORY}'})
    return limit


class AnalyticsLog:

    def __init__(self, db):
        self.db = db

    def record(self, updates: Mapping, updated_by: Optional[str] = None) -> dict:
        """
        Inserts a new snapshot. Existing rows are never updated.
        """
        snapshot = validate_snapshot(updates)
        snapshot['updated_by'] = updated_by
        row = self.db.insert_analytics(snapshot)
        logger.info("Analytics snapshot recorded by %s: %s", updated_by, snapshot)
        return row

    def latest(self) -> Optional[dict]:
        return self.db.latest_analytics()

    def summary(self) -> dict:
        row = self.latest()
        if row is None:
            return dict(DEFAULT_SUMMARY)
        return {field: row[field] for field in DEFAULT_SUMMARY}

    def history(self, limit: int = 3) -> List[dict]:
        return self.db.analytics_history(validate_history_limit(limit))
