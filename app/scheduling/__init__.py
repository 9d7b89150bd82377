"""
Availability & booking scheduler core.

Pure components, leaf-first:
- WindowResolver: effective windows of a date
- SlotGenerator: candidate slots inside windows
- BookingLedger: occupied intervals of existing bookings
- OverviewQuery / SlotQuery: dates with availability, free slots of a date
"""

from .ledger import BookingLedger
from .queries import OverviewQuery, SlotQuery
from .slots import SlotGenerator
from .types import AvailabilityWindow, EventRules, EventSchedule, OccupiedInterval, Slot
from .windows import WindowResolver

__all__ = [
    "AvailabilityWindow",
    "BookingLedger",
    "EventRules",
    "EventSchedule",
    "OccupiedInterval",
    "OverviewQuery",
    "Slot",
    "SlotGenerator",
    "SlotQuery",
    "WindowResolver",
]
