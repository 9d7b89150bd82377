import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Time,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.database import Base
from app.scheduling.types import AvailabilityWindow, minute_of_day


class WeekDay(enum.Enum):
    MONDAY = 1
    TUESDAY = 2
    WEDNESDAY = 3
    THURSDAY = 4
    FRIDAY = 5
    SATURDAY = 6
    SUNDAY = 7


class EventAvailability(Base):
    """Opening window of an event, weekly recurring or bounded by dates."""

    __tablename__ = "event_availability"

    # Core identity
    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("service_events.id"), nullable=False)
    business_id = Column(Integer, ForeignKey("businesses.id"), nullable=False)

    # Schedule details, ISO weekday numbering
    day_of_week = Column(Integer, nullable=False)
    time_start = Column(Time, nullable=True)
    time_end = Column(Time, nullable=True)

    # Recurring windows apply every week, overrides only inside their range
    is_recurring = Column(Boolean, default=True, nullable=False)
    date_effective_from = Column(Date, nullable=True)
    date_effective_to = Column(Date, nullable=True)

    # Override that closes the day, times are ignored
    is_closed = Column(Boolean, default=False, nullable=False)

    # Audit timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    event = relationship("ServiceEvent", back_populates="availability")

    __table_args__ = (
        CheckConstraint("day_of_week BETWEEN 1 AND 7", name="check_valid_day_of_week"),
        Index("ix_event_availability_event_day", "event_id", "day_of_week"),
        Index("ix_event_availability_business", "business_id"),
    )

    def to_window(self) -> AvailabilityWindow:
        closed = bool(self.is_closed) or self.time_start is None or self.time_end is None
        return AvailabilityWindow(
            day_of_week=self.day_of_week,
            start_minute=0 if closed else minute_of_day(self.time_start),
            end_minute=0 if closed else minute_of_day(self.time_end),
            is_recurring=bool(self.is_recurring),
            effective_from=self.date_effective_from,
            effective_to=self.date_effective_to,
            is_closed=closed,
        )

    def __repr__(self):
        kind = "recurring" if self.is_recurring else "override"
        if self.is_closed:
            hours = "closed"
        else:
            hours = f"{self.time_start}-{self.time_end}"
        return (
            f"<EventAvailability(id={self.id}, event_id={self.event_id}, "
            f"day={self.day_of_week}: {hours}, {kind})>"
        )
