"""Tests for extracted datetime parsing."""

from datetime import date, datetime, timezone

import pytest

from ics_scraper.domain.datetime_utils import get_zone, parse_event_datetime, to_local_naive

pytestmark = pytest.mark.unit


class TestParseEventDatetime:
    """Test parse_event_datetime."""

    def test_parse_when_iso_date_only_then_all_day(self) -> None:
        """A bare ISO date is a date-only value at midnight."""
        assert parse_event_datetime("2025-07-04") == (datetime(2025, 7, 4), True)

    def test_parse_when_iso_datetime_then_naive_wall_clock(self) -> None:
        """Naive ISO datetimes are taken as local wall clock."""
        assert parse_event_datetime("2025-07-04T19:30:00", "America/New_York") == (datetime(2025, 7, 4, 19, 30), False)

    def test_parse_when_offset_then_converted_to_zone(self) -> None:
        """A UTC value is shown in the paired zone's wall clock."""
        parsed = parse_event_datetime("2025-07-04T23:30:00Z", "America/New_York")
        assert parsed == (datetime(2025, 7, 4, 19, 30), False)

    def test_parse_when_free_form_with_time_then_has_time(self) -> None:
        """Human-written dates with a time keep it."""
        assert parse_event_datetime("June 13, 2025 6:00 PM") == (datetime(2025, 6, 13, 18, 0), False)

    def test_parse_when_free_form_date_only_then_all_day(self) -> None:
        """Human-written dates without a time are date-only."""
        assert parse_event_datetime("June 13, 2025") == (datetime(2025, 6, 13), True)

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("today at 5pm", (datetime(2025, 6, 1, 17, 0), False)),
            ("tonight 8:30pm", (datetime(2025, 6, 1, 20, 30), False)),
            ("tomorrow", (datetime(2025, 6, 2), True)),
        ],
    )
    def test_parse_when_relative_word_then_uses_reference_date(self, value: str, expected: tuple) -> None:
        """today, tonight and tomorrow resolve against the reference date."""
        assert parse_event_datetime(value, reference_date=date(2025, 6, 1)) == expected

    def test_parse_when_datetime_object_then_passed_through(self) -> None:
        """Aware datetimes are converted, naive ones kept."""
        aware = datetime(2025, 1, 10, 17, 0, tzinfo=timezone.utc)
        assert parse_event_datetime(aware, "Europe/Berlin") == (datetime(2025, 1, 10, 18, 0), False)
        assert parse_event_datetime(date(2025, 1, 10)) == (datetime(2025, 1, 10), True)

    @pytest.mark.parametrize("value", [None, "", "   ", "soonish", 42])
    def test_parse_when_unusable_then_none(self, value: object) -> None:
        """Missing, blank and nonsense values are rejected."""
        assert parse_event_datetime(value) is None  # type: ignore[arg-type]


def test_get_zone_accepts_only_iana_names() -> None:
    """Area/Location names and UTC resolve; abbreviations and UNKNOWN do not."""
    assert get_zone("Asia/Tokyo") is not None
    assert get_zone("UTC") is not None
    assert get_zone("EST") is None
    assert get_zone("UNKNOWN") is None
    assert get_zone(None) is None


def test_to_local_naive_without_valid_zone_drops_tzinfo() -> None:
    """An unknown zone keeps the original wall clock."""
    aware = datetime(2025, 1, 10, 17, 0, tzinfo=timezone.utc)
    assert to_local_naive(aware, "UNKNOWN") == datetime(2025, 1, 10, 17, 0)
