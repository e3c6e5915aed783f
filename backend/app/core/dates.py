"""
UTC calendar-date helpers.

Week boundaries are always computed on UTC calendar dates. Nothing in here
reads the process-local timezone: an ISO string authored at +05:30 midnight on
a Monday is a Sunday in UTC and is treated as such.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Annotated, Any

from pydantic import BeforeValidator

from app.core.errors import IntegrityFault, ValidationError

MONDAY = 0
WEEK_SPAN = timedelta(days=6)


def parse_utc_date(value: Any) -> date:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if len(text) == 10:
            try:
                return date.fromisoformat(text)
            except ValueError as exc:
                raise ValidationError(f"Invalid date: {value!r}") from exc
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationError(f"Invalid date: {value!r}") from exc
        return parse_utc_date(parsed)
    raise ValidationError(f"Unsupported date value: {value!r}")


def week_start_of(d: date) -> date:
    return d - timedelta(days=d.weekday())


def week_end_of(week_start: date) -> date:
    return week_start + WEEK_SPAN


def require_monday(d: date, field: str = "week_start") -> date:
    if d.weekday() != MONDAY:
        raise ValidationError(f"{field} must be a Monday (UTC), got {d.isoformat()} ({d.strftime('%A')})", field)
    return d


def check_week_bounds(week_start: date, week_end: date, timesheet_id: Any = None) -> None:
    """Read-time check of a stored week. Never corrects, only reports."""
    if week_start.weekday() != MONDAY:
        raise IntegrityFault(
            f"Timesheet {timesheet_id} week_start {week_start} is not a Monday",
            timesheet_id=timesheet_id,
        )
    if week_end - week_start != WEEK_SPAN:
        raise IntegrityFault(
            f"Timesheet {timesheet_id} week_end {week_end} is not week_start {week_start} + 6 days",
            timesheet_id=timesheet_id,
        )


def require_period(start: date, end: date) -> None:
    if start > end:
        raise ValidationError(f"Period start {start} is after end {end}", "period")


def overlaps(a_start: date, a_end: date, b_start: date, b_end: date) -> bool:
    return a_start <= b_end and b_start <= a_end


def _coerce(value: Any) -> Any:
    # pydantic expects ValueError from validators
    try:
        return parse_utc_date(value)
    except ValidationError as exc:
        raise ValueError(exc.message) from exc


UtcDate = Annotated[date, BeforeValidator(_coerce)]
