from datetime import datetime
from typing import Callable

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import get_db, get_session_factory
from app.services.availability import AvailabilityService, utc_now
from app.services.availability_cache import AvailabilityCache, get_availability_cache
from app.services.reservation import (
    ReservationManager,
    SlotLockRegistry,
    get_lock_registry,
)


def get_clock() -> Callable[[], datetime]:
    """Source of the current instant, overridden in tests."""
    return utc_now


def get_availability_service(
    db: AsyncSession = Depends(get_db),
    cache: AvailabilityCache = Depends(get_availability_cache),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> AvailabilityService:
    return AvailabilityService(db, cache=cache, clock=clock)


def get_reservation_manager(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    cache: AvailabilityCache = Depends(get_availability_cache),
    locks: SlotLockRegistry = Depends(get_lock_registry),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> ReservationManager:
    return ReservationManager(session_factory, cache=cache, locks=locks, clock=clock)
