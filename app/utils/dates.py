"""Date handling shared by the service and the client.

Measurement dates travel as ISO-8601 timestamps anchored at noon UTC of the
chosen calendar day, so the UTC date part always equals the day the user
picked.
"""
from datetime import date, datetime, time, timedelta, timezone

from app.utils.exceptions import ValidationError

NOON = time(12, 0)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_utc(value: datetime) -> datetime:
    # naive timestamps are taken as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def noon_utc(day: date) -> datetime:
    return datetime.combine(day, NOON, tzinfo=timezone.utc)


def format_day(day: date) -> str:
    return day.isoformat()


def parse_day(value: str) -> date:
    """Parse a strict ``YYYY-MM-DD`` string."""
    try:
        if len(value) != 10:
            raise ValueError(value)
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError("Invalid date format. Please use YYYY-MM-DD format.")


def parse_measurement_timestamp(value: str | None, today: date | None = None) -> datetime:
    """Validate the client supplied measurement date.

    The date part (in UTC) may be today or earlier; the time of day is
    irrelevant for the future check.
    """
    if not value:
        raise ValidationError("Measurement date is required. Please provide a customDate field.")
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("Invalid date format. Please use ISO date format.")
    parsed = to_utc(parsed)
    if parsed.date() > (today or utc_today()):
        raise ValidationError("Measurement date cannot be in the future")
    return parsed


def trailing_window(days: int, today: date | None = None) -> tuple[date, date]:
    end = today or utc_today()
    return end - timedelta(days=days), end
