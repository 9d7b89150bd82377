from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from app.api.deps.business import BusinessContext, get_business_context
from app.api.deps.scheduling import get_availability_service, get_reservation_manager
from app.api.errors import error_response
from app.scheduling.exceptions import SchedulerValidationError, SchedulingError
from app.schemas.scheduling import (
    AvailabilityOverviewResponse,
    AvailableSlotsResponse,
    BookingEnvelope,
    BookingResponse,
    NextAvailableResponse,
    ReservationCreate,
    ReservationReschedule,
    SlotResponse,
)
from app.services.availability import AvailabilityService
from app.services.reservation import ReservationManager
from app.utils.validation import parse_local_date

logger = structlog.get_logger(__name__)

router = APIRouter()


def _booking_body(booking, context: BusinessContext) -> dict:
    envelope = BookingEnvelope(
        booking=BookingResponse.from_booking(booking, context.timezone)
    )
    return envelope.model_dump(mode="json", by_alias=True)


@router.get("/overview", response_model=AvailabilityOverviewResponse)
async def get_availability_overview(
    start_date: str = Query(..., alias="startDate", description="First date, ISO"),
    end_date: str = Query(..., alias="endDate", description="Last date, ISO"),
    event_id: Optional[int] = Query(None, alias="eventId"),
    limit: Optional[int] = Query(None, description="Stop after this many dates"),
    duration: Optional[int] = Query(None, description="Slot length in minutes"),
    context: BusinessContext = Depends(get_business_context),
    service: AvailabilityService = Depends(get_availability_service),
) -> AvailabilityOverviewResponse:
    """
    Get the dates in a range that have at least one free slot.

    Without an event the union over all active events of the business is
    returned. Past dates and slots inside the lead time are never offered.
    """
    try:
        start = parse_local_date(start_date, context.timezone, "startDate")
        end = parse_local_date(end_date, context.timezone, "endDate")

        dates = await service.get_overview(
            context.business,
            start,
            end,
            event_id=event_id,
            limit=limit,
            duration=duration,
        )

        return AvailabilityOverviewResponse(
            available_dates=[day.isoformat() for day in dates],
            business_id=context.business_id,
            event_id=event_id,
            start_date=start.isoformat(),
            end_date=end.isoformat(),
            total_days=(end - start).days + 1,
            available_days=len(dates),
        )

    except SchedulingError:
        raise
    except Exception as e:
        logger.error(
            "Failed to get availability overview",
            business_id=context.business_id,
            exc_info=e,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get availability overview",
        )


@router.get("/slots", response_model=AvailableSlotsResponse)
async def get_available_slots(
    date: str = Query(..., description="Date to list free slots for"),
    duration: Optional[int] = Query(None, description="Slot length in minutes"),
    event_id: Optional[int] = Query(None, alias="eventId"),
    context: BusinessContext = Depends(get_business_context),
    service: AvailabilityService = Depends(get_availability_service),
) -> AvailableSlotsResponse:
    """
    Get the free slots of one date.

    With ``eventId`` the event's duration, buffer and stride apply and
    ``duration`` may be omitted. Without it ``duration`` is required and the
    business-wide view is returned.
    """
    try:
        day = parse_local_date(date, context.timezone)
        if event_id is None and duration is None:
            raise SchedulerValidationError(
                "duration is required without eventId", reason="missing_duration"
            )

        slots = await service.get_slots(
            context.business, day, event_id=event_id, duration=duration
        )

        return AvailableSlotsResponse(
            available_slots=[
                SlotResponse.from_slot(slot, day, context.timezone) for slot in slots
            ],
            business_id=context.business_id,
            event_id=event_id,
            date=day.isoformat(),
            duration=slots[0].duration_minutes if slots else duration,
        )

    except SchedulingError:
        raise
    except Exception as e:
        logger.error(
            "Failed to get available slots",
            business_id=context.business_id,
            exc_info=e,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get available slots",
        )


@router.get("/next", response_model=NextAvailableResponse)
async def get_next_available(
    start_date: str = Query(..., alias="startDate"),
    end_date: str = Query(..., alias="endDate"),
    event_id: Optional[int] = Query(None, alias="eventId"),
    duration: Optional[int] = Query(None),
    context: BusinessContext = Depends(get_business_context),
    service: AvailabilityService = Depends(get_availability_service),
) -> NextAvailableResponse:
    """Get the earliest free slot in a date range."""
    try:
        start = parse_local_date(start_date, context.timezone, "startDate")
        end = parse_local_date(end_date, context.timezone, "endDate")

        found = await service.get_first_available(
            context.business, start, end, event_id=event_id, duration=duration
        )
        if found is None:
            return NextAvailableResponse(
                found=False, business_id=context.business_id, event_id=event_id
            )

        day, slot = found
        return NextAvailableResponse(
            found=True,
            business_id=context.business_id,
            event_id=event_id,
            date=day.isoformat(),
            slot=SlotResponse.from_slot(slot, day, context.timezone),
        )

    except SchedulingError:
        raise
    except Exception as e:
        logger.error(
            "Failed to find next available slot",
            business_id=context.business_id,
            exc_info=e,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to find next available slot",
        )


@router.post("/reservations", status_code=status.HTTP_201_CREATED)
async def create_reservation(
    request: ReservationCreate,
    context: BusinessContext = Depends(get_business_context),
    manager: ReservationManager = Depends(get_reservation_manager),
) -> JSONResponse:
    """
    Reserve a slot.

    Returns 201 with the confirmed booking, or 409 when the slot was taken
    in the meantime. Retrying with the same ``idempotencyKey`` returns the
    original booking.
    """
    result = await manager.reserve(context.business, request)

    if not result.confirmed:
        return error_response(result.conflict)

    headers = {"Idempotent-Replayed": "true"} if result.replayed else None
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content=_booking_body(result.booking, context),
        headers=headers,
    )


@router.get("/reservations/{booking_uuid}")
async def get_reservation(
    booking_uuid: UUID,
    context: BusinessContext = Depends(get_business_context),
    manager: ReservationManager = Depends(get_reservation_manager),
) -> JSONResponse:
    """Get a booking by UUID."""
    booking = await manager.get_booking(context.business, booking_uuid)
    return JSONResponse(content=_booking_body(booking, context))


@router.post("/reservations/{booking_uuid}/cancel")
async def cancel_reservation(
    booking_uuid: UUID,
    context: BusinessContext = Depends(get_business_context),
    manager: ReservationManager = Depends(get_reservation_manager),
) -> JSONResponse:
    """Cancel a booking, releasing its slot."""
    booking = await manager.cancel(context.business, booking_uuid)
    return JSONResponse(content=_booking_body(booking, context))


@router.post("/reservations/{booking_uuid}/reschedule")
async def reschedule_reservation(
    booking_uuid: UUID,
    request: ReservationReschedule,
    context: BusinessContext = Depends(get_business_context),
    manager: ReservationManager = Depends(get_reservation_manager),
) -> JSONResponse:
    """
    Move a booking to another slot of its event.

    Returns the replacement booking, or 409 when the new slot is taken, in
    which case the original booking is left untouched.
    """
    result = await manager.reschedule(context.business, booking_uuid, request)

    if not result.confirmed:
        return error_response(result.conflict)

    return JSONResponse(content=_booking_body(result.booking, context))
