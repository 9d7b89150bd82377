"""
Write side of the scheduler.

A reservation re-checks its slot and inserts the booking inside a single
transaction while holding the lock of its ``(event, date)`` key, so two
concurrent requests for overlapping intervals cannot both be confirmed.
Within one process the key is an asyncio lock; on PostgreSQL the same key
is also taken as a transaction-scoped advisory lock for multi-instance
deployments. The partial unique index on live bookings backs both up.
"""

import asyncio
import enum
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional
from uuid import UUID

import structlog
from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.database import storage_errors
from app.models.booking import BLOCKING_STATUSES, Booking, BookingStatus, new_booking
from app.models.business import Business
from app.models.event_availability import EventAvailability
from app.models.service_event import ServiceEvent
from app.scheduling import BookingLedger, Slot, SlotGenerator, WindowResolver
from app.scheduling.exceptions import (
    BookingNotFoundError,
    ConflictError,
    EventNotFoundError,
    LockTimeoutError,
    SchedulerValidationError,
)
from app.scheduling.queries import earliest_start
from app.schemas.scheduling import ReservationCreate, ReservationReschedule
from app.services.availability import utc_now
from app.services.availability_cache import AvailabilityCache
from app.utils.validation import parse_local_date, parse_start_minute

logger = structlog.get_logger(__name__)

# PostgreSQL lock_not_available, raised when SET LOCAL lock_timeout expires
LOCK_NOT_AVAILABLE = "55P03"


def _sqlstate(error: DBAPIError) -> Optional[str]:
    orig = error.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


class ReservationStatus(str, enum.Enum):
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


@dataclass
class ReservationResult:
    """Outcome of a reservation attempt."""

    status: ReservationStatus
    booking: Optional[Booking] = None
    conflict: Optional[ConflictError] = None
    replayed: bool = False

    @property
    def confirmed(self) -> bool:
        return self.status == ReservationStatus.CONFIRMED


class SlotLockRegistry:
    """Per-key asyncio locks, dropped once no task holds or waits on them."""

    def __init__(self):
        self._locks: dict[tuple, asyncio.Lock] = {}
        self._users: dict[tuple, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: tuple, timeout: float):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            try:
                async with asyncio.timeout(timeout):
                    await lock.acquire()
            except TimeoutError:
                logger.warning("Reservation lock timeout", key=key, timeout=timeout)
                raise LockTimeoutError(
                    "Timed out waiting for the reservation lock, retry shortly"
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    @asynccontextmanager
    async def hold_all(self, keys, timeout: float):
        """Hold several keys at once, always acquired in sorted order."""
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(self.hold(key, timeout))
            yield


_lock_registry = SlotLockRegistry()


def get_lock_registry() -> SlotLockRegistry:
    return _lock_registry


class ReservationManager:
    """Reserves, fetches, cancels and reschedules bookings."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        cache: Optional[AvailabilityCache] = None,
        locks: Optional[SlotLockRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
        lock_timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.locks = locks if locks is not None else get_lock_registry()
        self.clock = clock
        self.lock_timeout = (
            settings.RESERVATION_LOCK_TIMEOUT_SECONDS
            if lock_timeout is None
            else lock_timeout
        )
        self.resolver = WindowResolver()

    async def reserve(
        self, business: Business, request: ReservationCreate
    ) -> ReservationResult:
        """
        Atomically check the requested slot and confirm a booking for it.

        A slot taken by an overlapping booking yields a rejected result
        carrying the ConflictError. Malformed requests, slots that are not
        offered and unknown events raise SchedulerValidationError.
        """
        tz = business.tz
        booking_date = parse_local_date(request.booking_date, tz)
        start_minute = parse_start_minute(request.start, booking_date, tz)
        key = request.idempotency_key

        log = logger.bind(
            business_id=business.id,
            event_id=request.event_id,
            date=booking_date.isoformat(),
            start_minute=start_minute,
            idempotency_key=key,
        )

        async with storage_errors("reserve"):
            if key:
                async with self.session_factory() as session:
                    existing = await self._find_by_key(session, business.id, key)
                if existing is not None:
                    return self._replay(existing, request.event_id, booking_date, start_minute)

            async with self.locks.hold(
                (request.event_id, booking_date), self.lock_timeout
            ):
                async with self.session_factory() as session:
                    try:
                        async with session.begin():
                            result = await self._reserve_in_transaction(
                                session, business, request, booking_date, start_minute
                            )
                    except IntegrityError:
                        log.info("Reservation hit a uniqueness constraint")
                        result = await self._resolve_integrity_error(
                            session, business, request, booking_date, start_minute
                        )

        if result.confirmed and not result.replayed:
            await self._invalidate(business)
            log.info("Reservation confirmed", booking_uuid=str(result.booking.uuid))
        elif not result.confirmed:
            log.info("Reservation rejected, slot taken")
        return result

    async def _reserve_in_transaction(
        self,
        session: AsyncSession,
        business: Business,
        request: ReservationCreate,
        booking_date: date,
        start_minute: int,
    ) -> ReservationResult:
        await self._serialize(session, request.event_id, booking_date)

        if request.idempotency_key:
            existing = await self._find_by_key(
                session, business.id, request.idempotency_key
            )
            if existing is not None:
                return self._replay(
                    existing, request.event_id, booking_date, start_minute
                )

        event = await self._get_event(session, business, request.event_id)
        rules = event.to_rules().validate()
        windows = await self._load_windows(session, event.id)
        self._check_offered(business, rules, windows, booking_date, start_minute)

        ledger = await self._load_ledger(session, event.id, booking_date)
        slot = Slot(start_minute, start_minute + rules.duration_minutes)
        booking = new_booking(
            business_id=business.id,
            event_id=event.id,
            booking_date=booking_date,
            start_minute=start_minute,
            duration_minutes=rules.duration_minutes,
            buffer_minutes=rules.buffer_minutes,
            idempotency_key=request.idempotency_key,
            **request.customer_fields(),
        )

        if not ledger.is_free(booking_date, slot, rules):
            booking.transition_to(BookingStatus.REJECTED)
            return ReservationResult(
                ReservationStatus.REJECTED,
                conflict=ConflictError(event.id, booking_date, start_minute),
            )

        booking.transition_to(BookingStatus.CONFIRMED)
        session.add(booking)
        await session.flush()
        await session.refresh(booking)
        return ReservationResult(ReservationStatus.CONFIRMED, booking=booking)

    async def _resolve_integrity_error(
        self,
        session: AsyncSession,
        business: Business,
        request: ReservationCreate,
        booking_date: date,
        start_minute: int,
    ) -> ReservationResult:
        # a concurrent retry with the same key may have won the insert
        if request.idempotency_key:
            existing = await self._find_by_key(
                session, business.id, request.idempotency_key
            )
            if existing is not None:
                return self._replay(
                    existing, request.event_id, booking_date, start_minute
                )
        return ReservationResult(
            ReservationStatus.REJECTED,
            conflict=ConflictError(request.event_id, booking_date, start_minute),
        )

    def _replay(
        self,
        existing: Booking,
        event_id: int,
        booking_date: date,
        start_minute: int,
    ) -> ReservationResult:
        if not existing.matches_request(event_id, booking_date, start_minute):
            raise SchedulerValidationError(
                "Idempotency key was already used for a different reservation",
                reason="idempotency_key_reused",
            )
        if existing.status != BookingStatus.CONFIRMED.value:
            # the booking made under this key is gone, a retry must not revive it
            return ReservationResult(
                ReservationStatus.REJECTED,
                conflict=ConflictError(
                    event_id,
                    booking_date,
                    start_minute,
                    detail="The booking made with this idempotency key was cancelled",
                    reason="idempotency_key_cancelled",
                ),
                replayed=True,
            )
        logger.info(
            "Reservation replayed", booking_uuid=str(existing.uuid), status=existing.status
        )
        return ReservationResult(
            ReservationStatus.CONFIRMED, booking=existing, replayed=True
        )

    def _check_offered(
        self, business: Business, rules, windows, booking_date: date, start_minute: int
    ) -> None:
        now = self.clock().astimezone(business.tz)
        not_before = earliest_start(booking_date, now, business.lead_time_minutes)
        if not_before is None:
            raise SchedulerValidationError(
                f"{booking_date.isoformat()} is no longer bookable",
                reason="date_in_past",
            )
        if start_minute < not_before:
            raise SchedulerValidationError(
                "Requested start is earlier than the minimum lead time allows",
                reason="start_too_soon",
            )

        effective = self.resolver.resolve(windows, booking_date)
        if not SlotGenerator(effective, rules, not_before).contains_start(start_minute):
            raise SchedulerValidationError(
                "Requested start is not an offered slot of this event",
                reason="slot_not_offered",
            )

    async def get_booking(self, business: Business, booking_uuid: UUID) -> Booking:
        async with storage_errors("get_booking"):
            async with self.session_factory() as session:
                booking = await self._get_booking(session, business, booking_uuid)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_uuid} not found")
        return booking

    async def cancel(self, business: Business, booking_uuid: UUID) -> Booking:
        """
        Cancel a confirmed booking, freeing its interval.

        Cancelling an already cancelled booking returns it unchanged.
        """
        booking = await self.get_booking(business, booking_uuid)
        if booking.status == BookingStatus.CANCELLED.value:
            return booking

        async with storage_errors("cancel"):
            async with self.locks.hold(
                (booking.event_id, booking.booking_date), self.lock_timeout
            ):
                async with self.session_factory() as session:
                    async with session.begin():
                        await self._serialize(
                            session, booking.event_id, booking.booking_date
                        )
                        booking = await self._get_booking(
                            session, business, booking_uuid, for_update=True
                        )
                        if booking.status == BookingStatus.CANCELLED.value:
                            return booking
                        if not booking.transition_to(BookingStatus.CANCELLED):
                            raise SchedulerValidationError(
                                f"Booking in status '{booking.status}' cannot be cancelled",
                                reason="invalid_transition",
                            )
                        await session.flush()
                        await session.refresh(booking)

        await self._invalidate(business)
        logger.info(
            "Booking cancelled",
            business_id=business.id,
            event_id=booking.event_id,
            booking_uuid=str(booking.uuid),
        )
        return booking

    async def reschedule(
        self,
        business: Business,
        booking_uuid: UUID,
        request: ReservationReschedule,
    ) -> ReservationResult:
        """
        Move a confirmed booking to another slot of the same event.

        The old booking is cancelled and its replacement confirmed in one
        transaction, holding the locks of both dates. When the new slot is
        taken the result is rejected and the old booking stays confirmed.
        """
        current = await self.get_booking(business, booking_uuid)
        self._check_reschedulable(current)

        tz = business.tz
        new_date = parse_local_date(request.booking_date, tz)
        start_minute = parse_start_minute(request.start, new_date, tz)
        keys = sorted(
            {
                (current.event_id, current.booking_date),
                (current.event_id, new_date),
            }
        )

        log = logger.bind(
            business_id=business.id,
            event_id=current.event_id,
            booking_uuid=str(booking_uuid),
            date=new_date.isoformat(),
            start_minute=start_minute,
        )

        async with storage_errors("reschedule"):
            async with self.locks.hold_all(keys, self.lock_timeout):
                async with self.session_factory() as session:
                    try:
                        async with session.begin():
                            result = await self._reschedule_in_transaction(
                                session,
                                business,
                                booking_uuid,
                                keys,
                                new_date,
                                start_minute,
                            )
                    except IntegrityError:
                        log.info("Reschedule hit a uniqueness constraint")
                        result = ReservationResult(
                            ReservationStatus.REJECTED,
                            conflict=ConflictError(
                                current.event_id, new_date, start_minute
                            ),
                        )

        if result.confirmed:
            await self._invalidate(business)
            log.info("Booking rescheduled", new_booking_uuid=str(result.booking.uuid))
        else:
            log.info("Reschedule rejected, slot taken")
        return result

    async def _reschedule_in_transaction(
        self,
        session: AsyncSession,
        business: Business,
        booking_uuid: UUID,
        keys: list,
        new_date: date,
        start_minute: int,
    ) -> ReservationResult:
        for event_id, day in keys:
            await self._serialize(session, event_id, day)

        old = await self._get_booking(session, business, booking_uuid, for_update=True)
        if old is None:
            raise BookingNotFoundError(f"Booking {booking_uuid} not found")
        self._check_reschedulable(old)

        event = await self._get_event(session, business, old.event_id)
        rules = event.to_rules().validate()
        windows = await self._load_windows(session, event.id)
        self._check_offered(business, rules, windows, new_date, start_minute)

        ledger = await self._load_ledger(
            session, event.id, new_date, exclude_booking_id=old.id
        )
        slot = Slot(start_minute, start_minute + rules.duration_minutes)
        if not ledger.is_free(new_date, slot, rules):
            return ReservationResult(
                ReservationStatus.REJECTED,
                conflict=ConflictError(event.id, new_date, start_minute),
            )

        old.transition_to(BookingStatus.CANCELLED)
        # the old row must stop being live before its replacement is inserted
        await session.flush()

        booking = new_booking(
            business_id=business.id,
            event_id=event.id,
            booking_date=new_date,
            start_minute=start_minute,
            duration_minutes=rules.duration_minutes,
            buffer_minutes=rules.buffer_minutes,
            **old.customer_fields(),
        )
        booking.rescheduled_from_id = old.id
        booking.transition_to(BookingStatus.CONFIRMED)
        session.add(booking)
        await session.flush()
        await session.refresh(booking)
        return ReservationResult(ReservationStatus.CONFIRMED, booking=booking)

    def _check_reschedulable(self, booking: Booking) -> None:
        if booking.status != BookingStatus.CONFIRMED.value:
            raise SchedulerValidationError(
                f"Booking in status '{booking.status}' cannot be rescheduled",
                reason="invalid_transition",
            )

    async def _serialize(
        self, session: AsyncSession, event_id: int, booking_date: date
    ) -> None:
        """Take the cross-process lock of the key where the database offers one."""
        if session.get_bind().dialect.name != "postgresql":
            return
        timeout_ms = int(self.lock_timeout * 1000)
        try:
            await session.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))
            await session.execute(
                text("SELECT pg_advisory_xact_lock(:k1, :k2)"),
                {"k1": event_id % 2**31, "k2": booking_date.toordinal()},
            )
        except DBAPIError as e:
            if _sqlstate(e) != LOCK_NOT_AVAILABLE:
                raise
            logger.warning(
                "Advisory lock timeout", event_id=event_id, date=str(booking_date)
            )
            raise LockTimeoutError(
                "Timed out waiting for the reservation lock, retry shortly"
            ) from e

    async def _invalidate(self, business: Business) -> None:
        if self.cache is not None:
            await self.cache.invalidate(str(business.id))

    async def _find_by_key(
        self, session: AsyncSession, business_id: int, key: str
    ) -> Optional[Booking]:
        result = await session.execute(
            select(Booking).where(
                Booking.business_id == business_id, Booking.idempotency_key == key
            )
        )
        return result.scalar_one_or_none()

    async def _get_booking(
        self,
        session: AsyncSession,
        business: Business,
        booking_uuid: UUID,
        for_update: bool = False,
    ) -> Optional[Booking]:
        query = select(Booking).where(
            Booking.uuid == booking_uuid, Booking.business_id == business.id
        )
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def _get_event(
        self, session: AsyncSession, business: Business, event_id: int
    ) -> ServiceEvent:
        result = await session.execute(
            select(ServiceEvent).where(
                ServiceEvent.id == event_id,
                ServiceEvent.business_id == business.id,
                ServiceEvent.is_active.is_(True),
            )
        )
        event = result.scalar_one_or_none()
        if event is None:
            raise EventNotFoundError(
                f"Event {event_id} not found for business {business.id}"
            )
        return event

    async def _load_windows(self, session: AsyncSession, event_id: int) -> list:
        result = await session.execute(
            select(EventAvailability).where(EventAvailability.event_id == event_id)
        )
        return [row.to_window() for row in result.scalars().all()]

    async def _load_ledger(
        self,
        session: AsyncSession,
        event_id: int,
        booking_date: date,
        exclude_booking_id: Optional[int] = None,
    ) -> BookingLedger:
        query = select(
            Booking.booking_date,
            Booking.start_minute,
            Booking.blocked_until_minute,
        ).where(
            Booking.event_id == event_id,
            Booking.booking_date == booking_date,
            Booking.status.in_(BLOCKING_STATUSES),
        )
        if exclude_booking_id is not None:
            query = query.where(Booking.id != exclude_booking_id)
        result = await session.execute(query)
        return BookingLedger.from_rows(result.all())
