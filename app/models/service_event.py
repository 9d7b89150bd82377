import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.database import Base
from app.scheduling.types import EventRules


class ServiceEvent(Base):
    """Bookable unit of a service with its own duration, buffer and stride."""

    __tablename__ = "service_events"

    # Core identity
    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(Uuid, unique=True, nullable=False, default=uuid.uuid4, index=True)
    business_id = Column(Integer, ForeignKey("businesses.id"), nullable=False)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # Slot rules
    duration_minutes = Column(Integer, nullable=False)
    buffer_minutes = Column(Integer, nullable=False, default=0)  # blocked after the slot
    slot_interval_minutes = Column(Integer, nullable=False, default=15)  # stride

    is_active = Column(Boolean, default=True, nullable=False)
    display_order = Column(Integer, default=0)

    # Audit timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="check_event_positive_duration"),
        CheckConstraint("buffer_minutes >= 0", name="check_event_non_negative_buffer"),
        CheckConstraint(
            "slot_interval_minutes > 0", name="check_event_positive_interval"
        ),
        Index("ix_service_events_business", "business_id", "is_active"),
    )

    # Relationships
    business = relationship("Business", back_populates="events")
    service = relationship("Service", back_populates="events")
    availability = relationship(
        "EventAvailability", back_populates="event", cascade="all, delete-orphan"
    )

    def to_rules(self) -> EventRules:
        return EventRules(
            event_id=self.id,
            duration_minutes=self.duration_minutes,
            buffer_minutes=self.buffer_minutes or 0,
            slot_interval_minutes=self.slot_interval_minutes,
            is_active=bool(self.is_active),
        )

    def __repr__(self):
        return (
            f"<ServiceEvent(id={self.id}, name='{self.name}', "
            f"duration={self.duration_minutes}min, buffer={self.buffer_minutes}min, "
            f"every={self.slot_interval_minutes}min)>"
        )
