"""Test the availability service against a real database."""

from datetime import date, datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.booking import BookingStatus, new_booking
from app.scheduling.exceptions import EventNotFoundError, SchedulerValidationError
from app.services.availability import AvailabilityService
from tests.helpers import override, weekly

MONDAY = date(2030, 1, 7)
TUESDAY = date(2030, 1, 8)
SUNDAY = date(2030, 1, 13)


async def add_booking(db: AsyncSession, event, day, start_minute, status=None):
    booking = new_booking(
        business_id=event.business_id,
        event_id=event.id,
        booking_date=day,
        start_minute=start_minute,
        duration_minutes=event.duration_minutes,
        buffer_minutes=event.buffer_minutes,
    )
    booking.transition_to(BookingStatus.CONFIRMED)
    if status == BookingStatus.CANCELLED:
        booking.transition_to(BookingStatus.CANCELLED)
    db.add(booking)
    await db.commit()
    return booking


@pytest.fixture
def availability_service(db, cache, clock):
    return AvailabilityService(db, cache=cache, clock=clock)


class TestAvailabilityOverview:
    @pytest.mark.asyncio
    async def test_overview_follows_weekly_windows(
        self, availability_service, business, make_event
    ):
        event = await make_event(
            windows=[weekly(1, "09:00", "12:00"), weekly(3, "14:00", "16:00")]
        )

        dates = await availability_service.get_overview(
            business, MONDAY, SUNDAY, event_id=event.id
        )

        assert dates == [MONDAY, date(2030, 1, 9)]

    @pytest.mark.asyncio
    async def test_fully_booked_day_disappears(
        self, db, availability_service, business, make_event
    ):
        event = await make_event(windows=[weekly(1, "09:00", "11:00")])
        await add_booking(db, event, MONDAY, 9 * 60)
        await add_booking(db, event, MONDAY, 10 * 60)

        dates = await availability_service.get_overview(
            business, MONDAY, SUNDAY, event_id=event.id
        )

        assert dates == []

    @pytest.mark.asyncio
    async def test_cancelled_bookings_do_not_block(
        self, db, availability_service, business, make_event
    ):
        event = await make_event(windows=[weekly(1, "09:00", "10:00")])
        await add_booking(db, event, MONDAY, 9 * 60, status=BookingStatus.CANCELLED)

        dates = await availability_service.get_overview(
            business, MONDAY, MONDAY, event_id=event.id
        )

        assert dates == [MONDAY]

    @pytest.mark.asyncio
    async def test_closure_override_hides_date(
        self, availability_service, business, make_event
    ):
        event = await make_event(
            windows=[weekly(1, "08:00", "18:00"), override(MONDAY, closed=True)]
        )

        dates = await availability_service.get_overview(
            business, MONDAY, date(2030, 1, 14), event_id=event.id
        )

        assert dates == [date(2030, 1, 14)]

    @pytest.mark.asyncio
    async def test_business_wide_overview_is_union_of_events(
        self, availability_service, business, make_event
    ):
        await make_event(windows=[weekly(1, "09:00", "12:00")], name="Morning")
        await make_event(windows=[weekly(2, "14:00", "18:00")], name="Afternoon")
        await make_event(
            windows=[weekly(3, "09:00", "12:00")], is_active=False, name="Retired"
        )

        dates = await availability_service.get_overview(business, MONDAY, SUNDAY)

        assert dates == [MONDAY, TUESDAY]

    @pytest.mark.asyncio
    async def test_unknown_event_rejected(self, availability_service, business):
        with pytest.raises(EventNotFoundError):
            await availability_service.get_overview(
                business, MONDAY, SUNDAY, event_id=999
            )

    @pytest.mark.asyncio
    async def test_range_too_long_rejected(self, availability_service, business):
        with pytest.raises(SchedulerValidationError) as exc_info:
            await availability_service.get_overview(
                business, date(2030, 1, 1), date(2030, 12, 31)
            )

        assert exc_info.value.reason == "date_range_too_large"

    @pytest.mark.asyncio
    async def test_cached_until_invalidated(
        self, db, availability_service, cache, business, make_event
    ):
        event = await make_event(windows=[weekly(1, "09:00", "10:00")])

        first = await availability_service.get_overview(
            business, MONDAY, MONDAY, event_id=event.id
        )
        await add_booking(db, event, MONDAY, 9 * 60)
        cached = await availability_service.get_overview(
            business, MONDAY, MONDAY, event_id=event.id
        )
        await cache.invalidate(str(business.id))
        fresh = await availability_service.get_overview(
            business, MONDAY, MONDAY, event_id=event.id
        )

        assert first == cached == [MONDAY]
        assert fresh == []


class TestAvailableSlots:
    @pytest.mark.asyncio
    async def test_scenario_a(self, availability_service, business, make_event):
        event = await make_event(
            duration_minutes=60,
            slot_interval_minutes=30,
            windows=[weekly(1, "09:00", "11:00")],
        )

        slots = await availability_service.get_slots(
            business, MONDAY, event_id=event.id
        )

        assert [s.start_time.strftime("%H:%M") for s in slots] == [
            "09:00",
            "09:30",
            "10:00",
        ]

    @pytest.mark.asyncio
    async def test_scenario_b_with_buffer(
        self, db, availability_service, business, make_event
    ):
        event = await make_event(
            duration_minutes=60,
            buffer_minutes=15,
            slot_interval_minutes=60,
            windows=[weekly(1, "09:00", "13:00")],
        )
        await add_booking(db, event, MONDAY, 10 * 60)

        slots = await availability_service.get_slots(
            business, MONDAY, event_id=event.id
        )

        assert [s.start_minute for s in slots] == [12 * 60]

    @pytest.mark.asyncio
    async def test_duration_must_match_event(
        self, availability_service, business, make_event
    ):
        event = await make_event(windows=[weekly(1, "09:00", "11:00")])

        with pytest.raises(SchedulerValidationError) as exc_info:
            await availability_service.get_slots(
                business, MONDAY, event_id=event.id, duration=30
            )

        assert exc_info.value.reason == "duration_mismatch"

    @pytest.mark.asyncio
    async def test_business_wide_slots_use_requested_duration(
        self, db, availability_service, business, make_event
    ):
        event = await make_event(
            duration_minutes=60,
            buffer_minutes=30,
            windows=[weekly(1, "09:00", "10:30")],
        )
        await add_booking(db, event, MONDAY, 9 * 60)

        slots = await availability_service.get_slots(business, MONDAY, duration=30)

        # the booking blocks 09:00-10:30 including its buffer
        assert slots == []

    @pytest.mark.asyncio
    async def test_business_wide_stride_is_default_interval(
        self, availability_service, business, make_event
    ):
        await make_event(
            duration_minutes=60,
            slot_interval_minutes=60,
            windows=[weekly(1, "09:00", "10:00")],
        )

        slots = await availability_service.get_slots(business, MONDAY, duration=30)

        assert [s.start_minute for s in slots] == [540, 555, 570]
        assert all(s.duration_minutes == 30 for s in slots)

    @pytest.mark.asyncio
    async def test_lead_time_hides_imminent_slots(
        self, business, make_event, db, cache
    ):
        event = await make_event(
            duration_minutes=30,
            slot_interval_minutes=30,
            windows=[weekly(1, "09:00", "12:00")],
        )
        now = datetime(2030, 1, 7, 9, 20, tzinfo=business.tz)
        service = AvailabilityService(db, cache=cache, clock=lambda: now)

        slots = await service.get_slots(business, MONDAY, event_id=event.id)

        assert slots[0].start_minute == 10 * 60


class TestFirstAvailable:
    @pytest.mark.asyncio
    async def test_first_slot_of_first_open_date(
        self, db, availability_service, business, make_event
    ):
        event = await make_event(
            windows=[weekly(2, "09:00", "10:00"), weekly(4, "15:00", "17:00")]
        )
        await add_booking(db, event, TUESDAY, 9 * 60)

        found = await availability_service.get_first_available(
            business, MONDAY, SUNDAY, event_id=event.id
        )

        assert found is not None
        day, slot = found
        assert day == date(2030, 1, 10)
        assert slot.start_minute == 15 * 60

    @pytest.mark.asyncio
    async def test_custom_duration_agrees_with_slot_listing(
        self, availability_service, business, make_event
    ):
        # only a shorter slot than the event's own fits the window
        await make_event(duration_minutes=120, windows=[weekly(1, "09:00", "10:00")])

        slots = await availability_service.get_slots(business, MONDAY, duration=30)
        found = await availability_service.get_first_available(
            business, MONDAY, SUNDAY, duration=30
        )

        assert [s.start_minute for s in slots] == [540, 555, 570]
        assert found is not None
        assert found[0] == MONDAY
        assert found[1].start_minute == 540
        assert found[1].duration_minutes == 30

    @pytest.mark.asyncio
    async def test_overview_with_duration_lists_dates_slots_would_fill(
        self, availability_service, business, make_event
    ):
        await make_event(duration_minutes=120, windows=[weekly(1, "09:00", "10:00")])

        own_rules = await availability_service.get_overview(business, MONDAY, SUNDAY)
        with_duration = await availability_service.get_overview(
            business, MONDAY, SUNDAY, duration=30
        )

        assert own_rules == []
        assert with_duration == [MONDAY]

    @pytest.mark.asyncio
    async def test_event_duration_mismatch_rejected(
        self, availability_service, business, make_event
    ):
        event = await make_event(windows=[weekly(1, "09:00", "11:00")])

        with pytest.raises(SchedulerValidationError) as exc_info:
            await availability_service.get_first_available(
                business, MONDAY, SUNDAY, event_id=event.id, duration=45
            )

        assert exc_info.value.reason == "duration_mismatch"

    @pytest.mark.asyncio
    async def test_nothing_found(self, availability_service, business, make_event):
        event = await make_event(windows=[weekly(6, "09:00", "10:00")])

        found = await availability_service.get_first_available(
            business, MONDAY, date(2030, 1, 11), event_id=event.id
        )

        assert found is None
