"""UTC-everywhere time handling and billing-month arithmetic."""

import re
from datetime import date, datetime, timezone

_BILLING_MONTH_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


def now_utc() -> datetime:
    """
    Current time in UTC.

    Use this instead of datetime.now() everywhere.
    """
    return datetime.now(timezone.utc)


def today_utc() -> date:
    """Current calendar date in UTC."""
    return now_utc().date()


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime to UTC.

    Raises ValueError if datetime is naive (no timezone).
    """
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot convert naive datetime to UTC. Datetime must be timezone-aware."
        )
    return dt.astimezone(timezone.utc)


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 datetime string to UTC datetime.

    Raises ValueError if string has no timezone info.
    """
    dt = datetime.fromisoformat(iso_string)
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot parse naive datetime string. "
            "Include timezone offset (e.g., 'Z' or '+00:00')."
        )
    return to_utc(dt)


def parse_billing_month(billing_month: str) -> tuple[int, int]:
    """
    Split a YYYY-MM billing month into (year, month).

    Raises ValueError on anything that is not a valid calendar month.
    """
    match = _BILLING_MONTH_RE.match(billing_month or "")
    if match is None:
        raise ValueError(f"Invalid billing month '{billing_month}' (expected YYYY-MM)")
    return int(match.group(1)), int(match.group(2))


def month_bounds(billing_month: str) -> tuple[datetime, datetime]:
    """
    Half-open UTC range [start, end) covering a billing month.

    Example:
        month_bounds("2024-12") -> (2024-12-01T00:00Z, 2025-01-01T00:00Z)
    """
    year, month = parse_billing_month(billing_month)
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end


def billing_month_of(moment: datetime | date) -> str:
    """Billing month (YYYY-MM) that a date or UTC datetime falls in."""
    if isinstance(moment, datetime):
        moment = to_utc(moment)
    return f"{moment.year:04d}-{moment.month:02d}"
