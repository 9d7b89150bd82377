from datetime import date, datetime, time, tzinfo
from typing import Optional
import re

from app.scheduling.exceptions import SchedulerValidationError
from app.scheduling.types import minute_of_day

_CLOCK_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)(:00)?$")


def _parse_iso_datetime(value: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def parse_local_date(value: Optional[str], tz: tzinfo, field: str = "date") -> date:
    """
    Parse a calendar date given as ``YYYY-MM-DD`` or a full ISO datetime.

    Datetimes carrying an offset are converted to the business zone first,
    naive ones are taken as business-local.
    """
    if value is None or not str(value).strip():
        raise SchedulerValidationError(f"{field} is required", reason="missing_date")
    value = str(value).strip()

    try:
        return date.fromisoformat(value)
    except ValueError:
        pass

    parsed = _parse_iso_datetime(value)
    if parsed is None:
        raise SchedulerValidationError(
            f"Invalid {field} '{value}', expected YYYY-MM-DD",
            reason="invalid_date",
        )
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(tz)
    return parsed.date()


def parse_start_minute(value: str, booking_date: date, tz: tzinfo) -> int:
    """
    Parse a slot start given as ``HH:MM`` or an ISO datetime on ``booking_date``.

    Returns minutes since business-local midnight.
    """
    value = (value or "").strip()
    match = _CLOCK_PATTERN.match(value)
    if match:
        return minute_of_day(time(int(match.group(1)), int(match.group(2))))

    parsed = _parse_iso_datetime(value)
    if parsed is None:
        raise SchedulerValidationError(
            f"Invalid start '{value}', expected HH:MM or an ISO datetime",
            reason="invalid_start",
        )
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(tz)
    if parsed.date() != booking_date:
        raise SchedulerValidationError(
            f"Start {value} does not fall on {booking_date.isoformat()}",
            reason="start_date_mismatch",
        )
    if parsed.second or parsed.microsecond:
        raise SchedulerValidationError(
            "Start must be on a whole minute", reason="invalid_start"
        )
    return minute_of_day(parsed.time())
