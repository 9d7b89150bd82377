from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.core.database import Base
from app.scheduling.types import OccupiedInterval, time_from_minute
import enum
import uuid
from datetime import datetime, timezone
from typing import Optional


class BookingStatus(enum.Enum):
    PROPOSED = "proposed"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# Statuses whose interval is occupied
BLOCKING_STATUSES = (BookingStatus.PROPOSED.value, BookingStatus.CONFIRMED.value)


class Booking(Base):
    """Reserved interval of a bookable event on one business-local date."""

    __tablename__ = "bookings"

    # Core identity
    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(Uuid, unique=True, nullable=False, default=uuid.uuid4, index=True)
    business_id = Column(Integer, ForeignKey("businesses.id"), nullable=False)
    event_id = Column(Integer, ForeignKey("service_events.id"), nullable=False)

    # Interval in business-local minutes of day
    booking_date = Column(Date, nullable=False)
    start_minute = Column(Integer, nullable=False)
    end_minute = Column(Integer, nullable=False)
    blocked_until_minute = Column(Integer, nullable=False)

    # Event rules at reservation time
    duration_minutes = Column(Integer, nullable=False)
    buffer_minutes = Column(Integer, nullable=False, default=0)

    # Status management
    status = Column(
        String(20), nullable=False, default=BookingStatus.PROPOSED.value, index=True
    )
    status_changed_at = Column(DateTime(timezone=True), server_default=func.now())
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # Booking this one replaced when it was rescheduled
    rescheduled_from_id = Column(Integer, ForeignKey("bookings.id"), nullable=True)

    # Client retry protection
    idempotency_key = Column(String(255), nullable=True)

    # Customer details
    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    customer_notes = Column(Text, nullable=True)

    # Audit timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("end_minute > start_minute", name="check_end_after_start"),
        CheckConstraint(
            "blocked_until_minute >= end_minute", name="check_buffer_after_end"
        ),
        CheckConstraint("duration_minutes > 0", name="check_positive_duration"),
        CheckConstraint("buffer_minutes >= 0", name="check_non_negative_buffer"),
        UniqueConstraint(
            "business_id", "idempotency_key", name="uq_booking_idempotency_key"
        ),
        # Backstop against two live bookings on the very same start
        Index(
            "uq_booking_live_slot",
            "event_id",
            "booking_date",
            "start_minute",
            unique=True,
            postgresql_where=text("status IN ('proposed', 'confirmed')"),
            sqlite_where=text("status IN ('proposed', 'confirmed')"),
        ),
        Index("ix_booking_event_date", "event_id", "booking_date"),
        Index("ix_booking_business_date", "business_id", "booking_date"),
    )

    event = relationship("ServiceEvent")
    business = relationship("Business")

    def can_transition_to(self, new_status: BookingStatus) -> bool:
        """Check if booking can transition to the new status."""
        current = BookingStatus(self.status or BookingStatus.PROPOSED.value)

        allowed_transitions = {
            BookingStatus.PROPOSED: [BookingStatus.CONFIRMED, BookingStatus.REJECTED],
            BookingStatus.CONFIRMED: [BookingStatus.CANCELLED],
            BookingStatus.REJECTED: [],  # Final state
            BookingStatus.CANCELLED: [],  # Final state
        }

        return new_status in allowed_transitions.get(current, [])

    def transition_to(self, new_status: BookingStatus) -> bool:
        """Transition booking to new status with validation."""
        if not self.can_transition_to(new_status):
            return False

        now = datetime.now(timezone.utc)
        self.status = new_status.value
        self.status_changed_at = now

        if new_status == BookingStatus.CANCELLED:
            self.cancelled_at = now

        return True

    @property
    def is_active(self) -> bool:
        return self.status in BLOCKING_STATUSES

    @property
    def start_time(self):
        return time_from_minute(self.start_minute)

    def occupied_interval(self) -> OccupiedInterval:
        return OccupiedInterval(self.start_minute, self.blocked_until_minute)

    def matches_request(
        self, event_id: int, booking_date, start_minute: int
    ) -> bool:
        """Whether an idempotent retry asks for the same slot."""
        return (
            self.event_id == event_id
            and self.booking_date == booking_date
            and self.start_minute == start_minute
        )

    def customer_fields(self) -> dict:
        return {
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "customer_notes": self.customer_notes,
        }

    def __repr__(self):
        return (
            f"<Booking(id={self.id}, status='{self.status}', "
            f"event_id={self.event_id}, date={self.booking_date}, "
            f"start={self.start_minute})>"
        )


def new_booking(
    business_id: int,
    event_id: int,
    booking_date,
    start_minute: int,
    duration_minutes: int,
    buffer_minutes: int,
    idempotency_key: Optional[str] = None,
    **customer,
) -> Booking:
    """Build a proposed booking for the given slot."""
    end_minute = start_minute + duration_minutes
    return Booking(
        business_id=business_id,
        event_id=event_id,
        booking_date=booking_date,
        start_minute=start_minute,
        end_minute=end_minute,
        blocked_until_minute=end_minute + buffer_minutes,
        duration_minutes=duration_minutes,
        buffer_minutes=buffer_minutes,
        status=BookingStatus.PROPOSED.value,
        idempotency_key=idempotency_key,
        **customer,
    )
