from collections import defaultdict
from datetime import date
from typing import Iterable, Iterator, Optional

from app.scheduling.types import EventRules, OccupiedInterval, Slot


class BookingLedger:
    """Occupied intervals of non-cancelled bookings, grouped by date."""

    def __init__(
        self, intervals: Optional[dict[date, Iterable[OccupiedInterval]]] = None
    ):
        self._by_date: dict[date, list[OccupiedInterval]] = defaultdict(list)
        for day, day_intervals in (intervals or {}).items():
            for interval in day_intervals:
                self.add(day, interval)

    @classmethod
    def from_rows(
        cls, rows: Iterable[tuple[date, int, int]]
    ) -> "BookingLedger":
        """Build a ledger from ``(date, start_minute, blocked_until_minute)`` rows."""
        ledger = cls()
        for day, start, end in rows:
            ledger.add(day, OccupiedInterval(start, end))
        return ledger

    def add(self, day: date, interval: OccupiedInterval) -> None:
        intervals = self._by_date[day]
        intervals.append(interval)
        intervals.sort()

    def remove(self, day: date, interval: OccupiedInterval) -> bool:
        intervals = self._by_date.get(day)
        if not intervals or interval not in intervals:
            return False
        intervals.remove(interval)
        return True

    def intervals_for(self, day: date) -> list[OccupiedInterval]:
        return list(self._by_date.get(day, ()))

    def is_free(self, day: date, slot: Slot, rules: EventRules) -> bool:
        """
        A candidate is free when no booked interval intersects the slot
        extended by its own buffer.
        """
        candidate_end = slot.end_minute + rules.buffer_minutes
        for existing in self._by_date.get(day, ()):
            if existing.start_minute >= candidate_end:
                # intervals are sorted by start, nothing further can collide
                break
            if slot.start_minute < existing.end_minute:
                return False
        return True

    def free_slots(
        self, day: date, candidates: Iterable[Slot], rules: EventRules
    ) -> Iterator[Slot]:
        for slot in candidates:
            if self.is_free(day, slot, rules):
                yield slot
