"""Utility modules for cross-cutting concerns."""

from utils.timezone import (
    now_utc,
    today_utc,
    to_utc,
    parse_iso,
    parse_billing_month,
    month_bounds,
    billing_month_of,
)
