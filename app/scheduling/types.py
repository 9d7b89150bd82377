from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Optional, Sequence

from app.scheduling.exceptions import SchedulerValidationError

MINUTES_PER_DAY = 24 * 60


def minute_of_day(value: time) -> int:
    """Convert a wall-clock time to minutes since local midnight."""
    return value.hour * 60 + value.minute


def time_from_minute(minute: int) -> time:
    return time(minute // 60, minute % 60)


@dataclass(frozen=True)
class EventRules:
    """Slot rules of a bookable event: duration, post-slot buffer and stride."""

    event_id: Optional[int]
    duration_minutes: int
    buffer_minutes: int = 0
    slot_interval_minutes: int = 15
    is_active: bool = True

    def validate(self) -> "EventRules":
        if self.duration_minutes is None or self.duration_minutes <= 0:
            raise SchedulerValidationError(
                "Duration must be a positive number of minutes",
                reason="invalid_duration",
            )
        if self.buffer_minutes is None or self.buffer_minutes < 0:
            raise SchedulerValidationError(
                "Buffer cannot be negative", reason="invalid_buffer"
            )
        if self.slot_interval_minutes is None or self.slot_interval_minutes <= 0:
            raise SchedulerValidationError(
                "Slot interval must be a positive number of minutes",
                reason="invalid_slot_interval",
            )
        return self

    @property
    def occupied_minutes(self) -> int:
        return self.duration_minutes + self.buffer_minutes


@dataclass(frozen=True)
class AvailabilityWindow:
    """Half-open opening interval ``[start_minute, end_minute)`` on an ISO weekday.

    Recurring windows apply every week. Override windows apply only between
    ``effective_from`` and ``effective_to`` (inclusive, ``None`` is open) and
    supersede the recurring ones for their weekday. ``is_closed`` marks an
    override that closes the day outright.
    """

    day_of_week: int
    start_minute: int
    end_minute: int
    is_recurring: bool = True
    effective_from: Optional[date] = None
    effective_to: Optional[date] = None
    is_closed: bool = False

    def __post_init__(self):
        if not 1 <= self.day_of_week <= 7:
            raise SchedulerValidationError(
                f"Invalid day of week {self.day_of_week}, expected 1-7",
                reason="invalid_day_of_week",
            )

    @property
    def is_valid(self) -> bool:
        return not self.is_closed and self.start_minute < self.end_minute

    def covers(self, day: date) -> bool:
        """Whether an override's date range includes ``day``."""
        if self.effective_from is not None and day < self.effective_from:
            return False
        if self.effective_to is not None and day > self.effective_to:
            return False
        return True


@dataclass(frozen=True, order=True)
class Slot:
    start_minute: int
    end_minute: int

    @property
    def start_time(self) -> time:
        return time_from_minute(self.start_minute)

    @property
    def duration_minutes(self) -> int:
        return self.end_minute - self.start_minute

    def start_datetime(self, day: date, tz: tzinfo) -> datetime:
        """Business-local aware datetime of the slot start."""
        return datetime.combine(day, self.start_time, tzinfo=tz)

    def end_datetime(self, day: date, tz: tzinfo) -> datetime:
        # end may fall exactly on midnight
        if self.end_minute >= MINUTES_PER_DAY:
            return datetime.combine(day + timedelta(days=1), time(0), tzinfo=tz)
        return datetime.combine(day, time_from_minute(self.end_minute), tzinfo=tz)


@dataclass(frozen=True, order=True)
class OccupiedInterval:
    """Minutes blocked by an existing booking, buffer included."""

    start_minute: int
    end_minute: int


@dataclass(frozen=True)
class EventSchedule:
    """An event's rules together with all of its configured windows."""

    rules: EventRules
    windows: Sequence[AvailabilityWindow] = field(default_factory=tuple)
