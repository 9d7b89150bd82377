from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Callable, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import storage_errors
from app.models.booking import BLOCKING_STATUSES, Booking
from app.models.business import Business
from app.models.event_availability import EventAvailability
from app.models.service_event import ServiceEvent
from app.scheduling import (
    BookingLedger,
    EventRules,
    EventSchedule,
    OverviewQuery,
    Slot,
    SlotQuery,
)
from app.scheduling.exceptions import EventNotFoundError, SchedulerValidationError
from app.scheduling.queries import validate_date_range
from app.services.availability_cache import AvailabilityCache

logger = structlog.get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AvailabilityService:
    """Read side of the scheduler: overview, slots and first available slot.

    Loads schedules and the blocking bookings of the queried range in one
    pass, then runs the pure queries over that snapshot. Results go through
    the availability cache, keyed by business.
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[AvailabilityCache] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.cache = cache
        self.clock = clock

    def local_now(self, business: Business) -> datetime:
        return self.clock().astimezone(business.tz)

    async def get_overview(
        self,
        business: Business,
        start_date: date,
        end_date: date,
        event_id: Optional[int] = None,
        limit: Optional[int] = None,
        duration: Optional[int] = None,
    ) -> list[date]:
        """
        Dates in ``[start_date, end_date]`` with at least one free slot.

        ``duration`` has the same meaning as in ``get_slots``, so a date is
        listed exactly when ``get_slots`` would return something for it.
        """
        validate_date_range(start_date, end_date)
        _validate_duration(duration)
        total_days = (end_date - start_date).days + 1
        if total_days > settings.MAX_OVERVIEW_RANGE_DAYS:
            raise SchedulerValidationError(
                f"Date range cannot exceed {settings.MAX_OVERVIEW_RANGE_DAYS} days",
                reason="date_range_too_large",
            )

        now = self.local_now(business)

        async def compute() -> list[str]:
            schedules = await self._load_schedules(business, event_id, duration)
            ledger = await self._load_ledger(business, event_id, start_date, end_date)
            query = OverviewQuery(lead_time_minutes=business.lead_time_minutes)
            dates = query.run(
                schedules, ledger, start_date, end_date, limit=limit, now=now
            )
            return [day.isoformat() for day in dates]

        values = await self._cached(
            business,
            (
                "overview",
                event_id,
                start_date,
                end_date,
                limit,
                duration,
                _minute_key(now),
            ),
            compute,
        )
        logger.debug(
            "Availability overview computed",
            business_id=business.id,
            event_id=event_id,
            start_date=str(start_date),
            end_date=str(end_date),
            available_days=len(values),
        )
        return [date.fromisoformat(value) for value in values]

    async def get_slots(
        self,
        business: Business,
        day: date,
        event_id: Optional[int] = None,
        duration: Optional[int] = None,
    ) -> list[Slot]:
        """
        Free slots of ``day``.

        With an event the event's own rules apply and ``duration``, when
        given, must match the event duration. Without an event every active
        event of the business contributes: with ``duration`` its windows are
        sliced into slots of that length on the default stride, otherwise
        each event uses its own rules.
        """
        if day is None:
            raise SchedulerValidationError("Date is required", reason="missing_date")
        _validate_duration(duration)

        now = self.local_now(business)

        async def compute() -> list[list[int]]:
            schedules = await self._load_schedules(business, event_id, duration)
            ledger = await self._load_ledger(business, event_id, day, day)
            query = SlotQuery(lead_time_minutes=business.lead_time_minutes)
            slots = query.run(schedules, ledger, day, now=now)
            return [[slot.start_minute, slot.end_minute] for slot in slots]

        values = await self._cached(
            business, ("slots", event_id, day, duration, _minute_key(now)), compute
        )
        return [Slot(start, end) for start, end in values]

    async def get_first_available(
        self,
        business: Business,
        start_date: date,
        end_date: date,
        event_id: Optional[int] = None,
        duration: Optional[int] = None,
    ) -> Optional[tuple[date, Slot]]:
        """Earliest free slot in the range, or None."""
        dates = await self.get_overview(
            business,
            start_date,
            end_date,
            event_id=event_id,
            limit=1,
            duration=duration,
        )

        for day in dates:
            slots = await self.get_slots(
                business, day, event_id=event_id, duration=duration
            )
            if slots:
                return day, slots[0]
        return None

    async def _cached(self, business: Business, key_parts: tuple, compute):
        if self.cache is None:
            return await compute()
        return await self.cache.get_or_compute(str(business.id), key_parts, compute)

    async def _load_schedules(
        self, business: Business, event_id: Optional[int], duration: Optional[int]
    ) -> Sequence[EventSchedule]:
        """Active schedules, with the rules a requested ``duration`` implies."""
        async with storage_errors("load_schedules"):
            query = select(ServiceEvent).where(
                ServiceEvent.business_id == business.id,
                ServiceEvent.is_active.is_(True),
            )
            if event_id is not None:
                query = query.where(ServiceEvent.id == event_id)
            query = query.order_by(ServiceEvent.display_order, ServiceEvent.id)
            events = (await self.db.execute(query)).scalars().all()

            if event_id is not None and not events:
                raise EventNotFoundError(
                    f"Event {event_id} not found for business {business.id}"
                )
            if not events:
                return []

            rows = (
                await self.db.execute(
                    select(EventAvailability).where(
                        EventAvailability.event_id.in_([e.id for e in events])
                    )
                )
            ).scalars().all()

        windows_by_event: dict[int, list] = {}
        for row in rows:
            windows_by_event.setdefault(row.event_id, []).append(row.to_window())

        return [
            EventSchedule(
                rules=_rules_for_duration(event, event_id, duration),
                windows=windows_by_event.get(event.id, []),
            )
            for event in events
        ]

    async def _load_ledger(
        self,
        business: Business,
        event_id: Optional[int],
        start_date: date,
        end_date: date,
    ) -> BookingLedger:
        """Blocking bookings of the range, of one event or the whole business."""
        query = select(
            Booking.booking_date, Booking.start_minute, Booking.blocked_until_minute
        ).where(
            Booking.business_id == business.id,
            Booking.booking_date >= start_date,
            Booking.booking_date <= end_date,
            Booking.status.in_(BLOCKING_STATUSES),
        )
        if event_id is not None:
            query = query.where(Booking.event_id == event_id)

        async with storage_errors("load_bookings"):
            rows = (await self.db.execute(query)).all()
        return BookingLedger.from_rows(rows)


def _minute_key(now: datetime) -> str:
    # cached answers depend on the lead-time horizon, which moves every minute
    return now.strftime("%Y%m%dT%H%M")


def _validate_duration(duration: Optional[int]) -> None:
    if duration is not None and duration <= 0:
        raise SchedulerValidationError(
            "Duration must be a positive number of minutes",
            reason="invalid_duration",
        )


def _rules_for_duration(
    event: ServiceEvent, event_id: Optional[int], duration: Optional[int]
) -> EventRules:
    """
    Rules an event is sliced with for a query.

    A queried event keeps its own rules and ``duration`` must match them.
    In the business-wide view a ``duration`` slices every event's windows
    into slots of that length on the default stride, without buffer.
    """
    rules = event.to_rules()
    if duration is None:
        return rules
    if event_id is not None:
        if duration != rules.duration_minutes:
            raise SchedulerValidationError(
                f"Event {event_id} has a fixed duration of "
                f"{rules.duration_minutes} minutes",
                reason="duration_mismatch",
            )
        return rules
    return replace(
        rules,
        duration_minutes=duration,
        buffer_minutes=0,
        slot_interval_minutes=settings.DEFAULT_SLOT_INTERVAL_MINUTES,
    )
