import uuid
from zoneinfo import ZoneInfo

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.config import settings
from app.core.database import Base


class Business(Base):
    """Business owning services, bookable events and their bookings."""

    __tablename__ = "businesses"

    # Core identity
    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(Uuid, unique=True, nullable=False, default=uuid.uuid4, index=True)
    name = Column(String(255), nullable=False)

    # Location & timezone
    timezone = Column(String(50), nullable=True)

    # Booking policy, falls back to MIN_LEAD_TIME_MINUTES
    min_lead_time_minutes = Column(Integer, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)

    # Audit timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    services = relationship("Service", back_populates="business")
    events = relationship("ServiceEvent", back_populates="business")

    @property
    def tz(self) -> ZoneInfo:
        """Business-local zone used for every calendar computation."""
        return ZoneInfo(self.timezone or settings.BUSINESS_TIMEZONE)

    @property
    def lead_time_minutes(self) -> int:
        if self.min_lead_time_minutes is None:
            return settings.MIN_LEAD_TIME_MINUTES
        return self.min_lead_time_minutes

    def __repr__(self):
        return f"<Business(id={self.id}, name='{self.name}', tz={self.timezone})>"
