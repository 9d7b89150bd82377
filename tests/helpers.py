from datetime import date, time


def weekly(day_of_week: int, start: str, end: str) -> dict:
    """Recurring window row for the ``make_event`` fixture."""
    return {
        "day_of_week": day_of_week,
        "time_start": time.fromisoformat(start),
        "time_end": time.fromisoformat(end),
        "is_recurring": True,
    }


def override(day: date, start: str = None, end: str = None, closed: bool = False) -> dict:
    """Single-date override window row for the ``make_event`` fixture."""
    return {
        "day_of_week": day.isoweekday(),
        "time_start": time.fromisoformat(start) if start else None,
        "time_end": time.fromisoformat(end) if end else None,
        "is_recurring": False,
        "date_effective_from": day,
        "date_effective_to": day,
        "is_closed": closed,
    }
