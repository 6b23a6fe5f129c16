"""Tests for utils/timezone.py - UTC-everywhere time handling."""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from utils.timezone import (
    billing_month_of,
    month_bounds,
    now_utc,
    parse_billing_month,
    parse_iso,
    to_utc,
    today_utc,
)


class TestNowUtc:
    """Tests for now_utc()."""

    def test_returns_timezone_aware(self):
        """Result must have tzinfo set (not naive)."""
        result = now_utc()
        assert result.tzinfo is not None

    def test_is_utc(self):
        """Result timezone must be specifically UTC."""
        result = now_utc()
        assert result.tzinfo == timezone.utc

    def test_today_matches_now(self):
        assert today_utc() == now_utc().date()


class TestToUtc:
    """Tests for to_utc()."""

    def test_raises_on_naive(self):
        """Naive datetime must raise ValueError."""
        naive = datetime(2024, 1, 1, 12, 0, 0)
        with pytest.raises(ValueError, match="naive"):
            to_utc(naive)

    def test_converts_other_timezone(self):
        """Chicago 12:00 in January should become UTC 18:00."""
        # Chicago is UTC-6 in January (no DST)
        chicago = datetime(2024, 1, 1, 12, 0, 0, tzinfo=ZoneInfo("America/Chicago"))
        result = to_utc(chicago)
        assert result.tzinfo == timezone.utc
        assert result.hour == 18

    def test_utc_passes_through(self):
        """UTC datetime should pass through unchanged."""
        utc_time = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        result = to_utc(utc_time)
        assert result.tzinfo == timezone.utc
        assert result.hour == 12


class TestParseIso:
    """Tests for parse_iso()."""

    def test_parses_offset(self):
        """Offset is converted to UTC."""
        result = parse_iso("2024-06-01T02:00:00+02:00")
        assert result == datetime(2024, 6, 1, 0, 0, tzinfo=timezone.utc)

    def test_raises_on_naive_string(self):
        with pytest.raises(ValueError, match="naive"):
            parse_iso("2024-06-01T00:00:00")


class TestBillingMonth:
    """Tests for billing month parsing and bounds."""

    def test_parses_year_and_month(self):
        assert parse_billing_month("2024-06") == (2024, 6)

    @pytest.mark.parametrize("value", ["2024-13", "2024-00", "2024-6", "202406", "", None])
    def test_rejects_invalid(self, value):
        with pytest.raises(ValueError, match="billing month"):
            parse_billing_month(value)

    def test_bounds_are_half_open_utc(self):
        start, end = month_bounds("2024-02")
        assert start == datetime(2024, 2, 1, tzinfo=timezone.utc)
        assert end == datetime(2024, 3, 1, tzinfo=timezone.utc)

    def test_december_rolls_over(self):
        start, end = month_bounds("2024-12")
        assert end == datetime(2025, 1, 1, tzinfo=timezone.utc)

    def test_billing_month_of_date(self):
        assert billing_month_of(date(2024, 6, 30)) == "2024-06"

    def test_billing_month_of_datetime_uses_utc(self):
        """23:30 in Chicago on May 31 is already June in UTC."""
        moment = datetime(2024, 5, 31, 23, 30, tzinfo=ZoneInfo("America/Chicago"))
        assert billing_month_of(moment) == "2024-06"
