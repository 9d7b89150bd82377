# Import all models to ensure they are registered with SQLAlchemy
from . import (
    booking,
    business,
    event_availability,
    service,
    service_event,
)

__all__ = [
    "booking",
    "business",
    "event_availability",
    "service",
    "service_event",
]
