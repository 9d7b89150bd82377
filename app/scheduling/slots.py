"""
Slot generation.

Steps through availability windows on the event's stride and yields the
candidate slots that fit entirely inside a window.
"""

import heapq
from typing import Iterator, Sequence

from app.scheduling.types import AvailabilityWindow, EventRules, Slot


class SlotGenerator:
    """
    Lazy, restartable sequence of candidate slots for one date.

    Every iteration starts over from the first window. Slots come out in
    ascending start order with duplicates (from overlapping windows) removed.

    Args:
        windows: effective windows of the date
        rules: duration, buffer and stride of the event
        not_before: earliest allowed start, in minutes of day
    """

    def __init__(
        self,
        windows: Sequence[AvailabilityWindow],
        rules: EventRules,
        not_before: int = 0,
    ):
        self.windows = tuple(windows)
        self.rules = rules.validate()
        self.not_before = not_before

    def _window_starts(self, window: AvailabilityWindow) -> Iterator[int]:
        duration = self.rules.duration_minutes
        stride = self.rules.slot_interval_minutes
        last_start = window.end_minute - duration

        start = window.start_minute
        if start < self.not_before:
            # stay on the window's stride grid
            steps = -(-(self.not_before - start) // stride)
            start += steps * stride

        while start <= last_start:
            yield start
            start += stride

    def __iter__(self) -> Iterator[Slot]:
        streams = [self._window_starts(w) for w in self.windows if w.is_valid]
        previous = None
        for start in heapq.merge(*streams):
            if start == previous:
                continue
            previous = start
            yield Slot(start, start + self.rules.duration_minutes)

    def contains_start(self, start_minute: int) -> bool:
        """Whether ``start_minute`` is one of the generated candidates."""
        for slot in self:
            if slot.start_minute == start_minute:
                return True
            if slot.start_minute > start_minute:
                return False
        return False
