"""
Window resolution.

Turns an event's configured windows into the effective opening windows of one
calendar date.
"""

from datetime import date
from typing import Iterable

import structlog

from app.scheduling.types import AvailabilityWindow

logger = structlog.get_logger(__name__)


class WindowResolver:
    """Apply override-over-recurring precedence for a single date."""

    def resolve(
        self, windows: Iterable[AvailabilityWindow], day: date
    ) -> list[AvailabilityWindow]:
        """
        Return the effective windows for ``day``, ordered by start.

        Any override window that matches the weekday and whose date range
        covers ``day`` switches the date to override mode, in which recurring
        windows are ignored entirely. Closures and windows with
        ``start >= end`` never produce a window, so an override consisting
        only of a closure leaves the day closed. An empty list means closed,
        not an error.
        """
        weekday = day.isoweekday()
        overrides = []
        recurring = []

        for window in windows:
            if window.day_of_week != weekday:
                continue
            if window.is_recurring:
                recurring.append(window)
            elif window.covers(day):
                overrides.append(window)

        candidates = overrides if overrides else recurring
        effective = [w for w in candidates if w.is_valid]

        dropped = len(candidates) - len(effective)
        if dropped and not any(w.is_closed for w in candidates):
            logger.warning(
                "Ignoring invalid availability windows",
                date=day.isoformat(),
                count=dropped,
            )

        return sorted(effective, key=lambda w: (w.start_minute, w.end_minute))
