# clinic_scheduler/exceptions.py
from datetime import time
from typing import Optional


class SchedulingError(Exception):
    """Base class for errors surfaced by the scheduling core."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SchedulingError):
    """Malformed input; raised before anything is written."""


class ConflictError(SchedulingError):
    """Booking overlaps a reservation, exceeds capacity or is not covered by availability."""

    NO_AVAILABILITY = "no_availability"
    BLOCKED_PERIOD = "blocked_period"
    CAPACITY_EXHAUSTED = "capacity_exhausted"
    OUTSIDE_SLOT = "outside_slot"
    TIME_OVERLAP = "time_overlap"
    FUTURE_BOOKINGS = "future_bookings"

    def __init__(
        self,
        message: str,
        reason: str = TIME_OVERLAP,
        conflicting_start: Optional[time] = None,
        conflicting_end: Optional[time] = None,
    ):
        super().__init__(message)
        self.reason = reason
        self.conflicting_start = conflicting_start
        self.conflicting_end = conflicting_end


class NotFoundError(SchedulingError):
    """Referenced doctor, patient, pattern or visit is missing, inactive or in another tenant."""


class AuthorizationError(SchedulingError):
    """Actor may not perform the mutation."""


class TransientStoreError(SchedulingError):
    """The data store failed (connection, timeout). Reads may be retried; writes must be re-checked first."""
