from datetime import date, datetime, tzinfo
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.models.booking import Booking
from app.scheduling.types import Slot


class CamelModel(BaseModel):
    """Base for API bodies, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Availability responses
class AvailabilityOverviewResponse(CamelModel):
    available_dates: List[str]
    business_id: int
    event_id: Optional[int] = None
    start_date: str
    end_date: str
    total_days: int
    available_days: int


class SlotResponse(CamelModel):
    start_datetime: str = Field(..., alias="datetime")
    time: str
    duration: int

    @classmethod
    def from_slot(cls, slot: Slot, day: date, tz: tzinfo) -> "SlotResponse":
        return cls(
            start_datetime=slot.start_datetime(day, tz).isoformat(),
            time=slot.start_time.strftime("%H:%M"),
            duration=slot.duration_minutes,
        )


class AvailableSlotsResponse(CamelModel):
    available_slots: List[SlotResponse]
    business_id: int
    event_id: Optional[int] = None
    date: str
    duration: Optional[int] = None


class NextAvailableResponse(CamelModel):
    found: bool
    business_id: int
    event_id: Optional[int] = None
    date: Optional[str] = None
    slot: Optional[SlotResponse] = None


# Reservations
class ReservationCreate(CamelModel):
    event_id: int = Field(..., gt=0)
    booking_date: str = Field(..., alias="date", min_length=1)
    start: str = Field(..., min_length=1)
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=255)

    customer_name: Optional[str] = Field(None, max_length=255)
    customer_email: Optional[str] = Field(None, max_length=255)
    customer_phone: Optional[str] = Field(None, max_length=50)
    customer_notes: Optional[str] = None

    def customer_fields(self) -> dict:
        return {
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "customer_notes": self.customer_notes,
        }


class ReservationReschedule(CamelModel):
    booking_date: str = Field(..., alias="date", min_length=1)
    start: str = Field(..., min_length=1)


class BookingResponse(CamelModel):
    uuid: UUID
    business_id: int
    event_id: int
    status: str
    date: str
    start: str
    end: str
    duration_minutes: int
    buffer_minutes: int
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_notes: Optional[str] = None
    created_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @classmethod
    def from_booking(cls, booking: Booking, tz: tzinfo) -> "BookingResponse":
        slot = Slot(booking.start_minute, booking.end_minute)
        return cls(
            uuid=booking.uuid,
            business_id=booking.business_id,
            event_id=booking.event_id,
            status=booking.status,
            date=booking.booking_date.isoformat(),
            start=slot.start_datetime(booking.booking_date, tz).isoformat(),
            end=slot.end_datetime(booking.booking_date, tz).isoformat(),
            duration_minutes=booking.duration_minutes,
            buffer_minutes=booking.buffer_minutes,
            customer_name=booking.customer_name,
            customer_email=booking.customer_email,
            customer_phone=booking.customer_phone,
            customer_notes=booking.customer_notes,
            created_at=booking.created_at,
            cancelled_at=booking.cancelled_at,
        )


class BookingEnvelope(BaseModel):
    booking: BookingResponse


class ErrorResponse(BaseModel):
    error: str
    reason: Optional[str] = None
    detail: Optional[str] = None
