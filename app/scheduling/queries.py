"""
Read-side availability queries.

Both queries are pure functions of the event schedules and a booking ledger
snapshot, so they can run concurrently and repeatedly with identical results.
"""

import heapq
from datetime import date, datetime, timedelta
from typing import Iterator, Optional, Sequence

from app.scheduling.exceptions import SchedulerValidationError
from app.scheduling.ledger import BookingLedger
from app.scheduling.slots import SlotGenerator
from app.scheduling.types import MINUTES_PER_DAY, EventSchedule, Slot
from app.scheduling.windows import WindowResolver


def iter_dates(start_date: date, end_date: date) -> Iterator[date]:
    current = start_date
    while current <= end_date:
        yield current
        current += timedelta(days=1)


def validate_date_range(start_date: date, end_date: date) -> None:
    if start_date is None or end_date is None:
        raise SchedulerValidationError(
            "Both start and end dates are required", reason="missing_date"
        )
    if end_date < start_date:
        raise SchedulerValidationError(
            "End date must not be before start date", reason="invalid_date_range"
        )


def earliest_start(
    day: date, now: Optional[datetime], lead_time_minutes: int = 0
) -> Optional[int]:
    """
    First bookable minute of ``day`` given the business-local ``now``.

    Returns None when the whole day is already out of reach.
    """
    if now is None:
        return 0
    today = now.date()
    if day < today:
        return None
    if day > today:
        return 0

    horizon = now.hour * 60 + now.minute + lead_time_minutes
    if now.second or now.microsecond:
        horizon += 1
    if horizon >= MINUTES_PER_DAY:
        return None
    return horizon


class _AvailabilityQuery:
    def __init__(
        self, resolver: Optional[WindowResolver] = None, lead_time_minutes: int = 0
    ):
        self.resolver = resolver or WindowResolver()
        self.lead_time_minutes = lead_time_minutes

    def _free_slots(
        self,
        schedule: EventSchedule,
        ledger: BookingLedger,
        day: date,
        not_before: int,
    ) -> Iterator[Slot]:
        if not schedule.rules.is_active:
            return iter(())
        windows = self.resolver.resolve(schedule.windows, day)
        if not windows:
            return iter(())
        generator = SlotGenerator(windows, schedule.rules, not_before)
        return ledger.free_slots(day, generator, schedule.rules)


class OverviewQuery(_AvailabilityQuery):
    """Which dates in a range have at least one free slot."""

    def run(
        self,
        schedules: Sequence[EventSchedule],
        ledger: BookingLedger,
        start_date: date,
        end_date: date,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> list[date]:
        validate_date_range(start_date, end_date)
        if limit is not None and limit <= 0:
            raise SchedulerValidationError(
                "Limit must be a positive integer", reason="invalid_limit"
            )
        for schedule in schedules:
            schedule.rules.validate()

        available = []
        for day in iter_dates(start_date, end_date):
            not_before = earliest_start(day, now, self.lead_time_minutes)
            if not_before is None:
                continue
            if self.has_free_slot(schedules, ledger, day, not_before):
                available.append(day)
                if limit is not None and len(available) >= limit:
                    break
        return available

    def has_free_slot(
        self,
        schedules: Sequence[EventSchedule],
        ledger: BookingLedger,
        day: date,
        not_before: int = 0,
    ) -> bool:
        for schedule in schedules:
            first = next(self._free_slots(schedule, ledger, day, not_before), None)
            if first is not None:
                return True
        return False


class SlotQuery(_AvailabilityQuery):
    """Every free slot of one date."""

    def run(
        self,
        schedules: Sequence[EventSchedule],
        ledger: BookingLedger,
        day: date,
        now: Optional[datetime] = None,
    ) -> list[Slot]:
        for schedule in schedules:
            schedule.rules.validate()

        not_before = earliest_start(day, now, self.lead_time_minutes)
        if not_before is None:
            return []

        streams = [
            self._free_slots(schedule, ledger, day, not_before)
            for schedule in schedules
        ]
        slots = []
        for slot in heapq.merge(*streams):
            if slots and slots[-1].start_minute == slot.start_minute:
                continue
            slots.append(slot)
        return slots
