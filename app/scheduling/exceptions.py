"""
Exceptions for the availability and booking scheduler.

Raised by the scheduling components and services, translated to HTTP
responses in the API layer.
"""

from datetime import date
from typing import Optional


class SchedulingError(Exception):
    """Base exception for all scheduler errors."""

    reason = "scheduling_error"

    def __init__(self, detail: str = "", reason: Optional[str] = None):
        super().__init__(detail or self.reason)
        self.detail = detail or self.reason
        if reason:
            self.reason = reason


class SchedulerValidationError(SchedulingError):
    """Rejected input: malformed range, bad rules, slot not offered."""

    reason = "validation"


class EventNotFoundError(SchedulerValidationError):
    """The requested event does not exist, is inactive or belongs elsewhere."""

    reason = "event_not_found"


class BusinessNotFoundError(SchedulerValidationError):
    reason = "business_not_found"


class BookingNotFoundError(SchedulerValidationError):
    reason = "booking_not_found"


class ConflictError(SchedulingError):
    """Another booking already holds the requested interval."""

    reason = "conflict"

    def __init__(
        self,
        event_id: int,
        booking_date: date,
        start_minute: int,
        detail: str = "",
        reason: Optional[str] = None,
    ):
        super().__init__(
            detail or "Requested time slot is no longer available", reason=reason
        )
        self.event_id = event_id
        self.booking_date = booking_date
        self.start_minute = start_minute


class SchedulerUnavailableError(SchedulingError):
    """Underlying storage is unreachable; the caller may retry with backoff."""

    reason = "unavailable"
    retry_after_seconds = 5


class LockTimeoutError(SchedulerUnavailableError):
    """The per-slot reservation lock could not be acquired in time."""

    reason = "lock_timeout"
    retry_after_seconds = 1
