"""Tests for ICS generation and parsing."""

import re
from datetime import date, datetime, timedelta, timezone

import pytest
from dateutil.rrule import rrulestr
from icalendar import Calendar

from ics_scraper.calendar.ics_generator import (
    ICSGenerator,
    assign_uids,
    batch_generate_ics,
    generate_ics,
    generate_single_event_ics,
    generate_uid,
    get_ics_headers,
    merge_ics_files,
    parse_ics_events,
    parse_rrule,
    title_hash,
    validate_ics,
)
from ics_scraper.config_models import ICSOptions
from ics_scraper.domain.models import CalendarEvent, Organizer

pytestmark = pytest.mark.unit

START = datetime(2025, 6, 10, 19, 0)


def create_event(title: str = "Spring Gala", **kwargs) -> CalendarEvent:
    kwargs.setdefault("start_time", START)
    kwargs.setdefault("end_time", kwargs["start_time"] + timedelta(hours=2))
    kwargs.setdefault("timezone", "America/New_York")
    kwargs.setdefault("location", "City Hall")
    return CalendarEvent(title=title, **kwargs)


class TestICSGenerator:
    """Test calendar building."""

    def test_build_when_events_then_valid_calendar(self) -> None:
        """Events become VEVENTs in a calendar that validates."""
        result = ICSGenerator().build([create_event(), create_event("Picnic")])

        assert result.added == 2
        assert result.skipped == []
        assert validate_ics(result.content) is True
        assert result.content.count("BEGIN:VEVENT") == 2
        assert "SUMMARY:Spring Gala" in result.content
        assert "DTSTART;TZID=America/New_York:20250610T190000" in result.content
        assert "METHOD:PUBLISH" in result.content
        assert "X-WR-CALNAME:Scraped Events" in result.content

    def test_build_when_vtimezone_enabled_then_embeds_definition(self) -> None:
        """Zones used by events get a VTIMEZONE component."""
        content = generate_ics([create_event()])
        assert "BEGIN:VTIMEZONE" in content
        assert "TZID:America/New_York" in content

    def test_build_when_all_day_then_date_values(self) -> None:
        """All-day events are written as DATE values."""
        event = create_event("Fair", start_time=datetime(2025, 7, 4), end_time=datetime(2025, 7, 5), all_day=True)
        content = generate_ics([event])
        assert "DTSTART;VALUE=DATE:20250704" in content
        assert "DTEND;VALUE=DATE:20250705" in content

    def test_build_when_zone_unknown_then_uses_calendar_zone(self) -> None:
        """Events without a known zone are written in the calendar's zone."""
        event = create_event(timezone="UNKNOWN")
        content = generate_ics([event], ICSOptions(timezone="Europe/Paris"))
        assert "DTSTART;TZID=Europe/Paris:20250610T190000" in content

    def test_build_when_alarms_enabled_then_display_alarm(self) -> None:
        """Every event gets a display reminder at the configured lead time."""
        content = generate_ics([create_event()], ICSOptions(default_alarm_minutes=15))
        assert "BEGIN:VALARM" in content
        assert "ACTION:DISPLAY" in content
        assert "TRIGGER:-PT15M" in content
        assert "ACTION:EMAIL" not in content

    def test_build_when_organizer_has_email_then_email_alarm(self) -> None:
        """An organizer email adds an email reminder."""
        event = create_event(organizer=Organizer(name="Parks Dept", email="parks@example.org"))
        content = generate_ics([event])
        assert "ACTION:EMAIL" in content
        assert "mailto:parks@example.org" in content

    def test_build_when_alarms_disabled_then_none(self) -> None:
        """include_alarms=False writes no VALARM."""
        content = generate_ics([create_event()], ICSOptions(include_alarms=False))
        assert "BEGIN:VALARM" not in content

    def test_build_when_recurring_rule_then_rrule(self) -> None:
        """Supported recurrence parts are written."""
        content = generate_ics([create_event(recurring_rule="FREQ=WEEKLY;COUNT=4;BYDAY=MO")])
        assert "RRULE:" in content
        assert "FREQ=WEEKLY" in content
        assert "BYDAY=MO" in content

    def test_build_when_until_with_zoned_start_then_utc_until(self) -> None:
        """A date UNTIL on a TZID start becomes the end of that day in UTC."""
        event = create_event(
            start_time=datetime(2025, 6, 10, 19, 0),
            timezone="America/Chicago",
            recurring_rule="FREQ=WEEKLY;UNTIL=2025-08-01",
        )
        content = generate_ics([event])
        assert "UNTIL=20250802T045959Z" in content

        vevent = Calendar.from_ical(content).walk("VEVENT")[0]
        dtstart = vevent["DTSTART"].dt
        occurrences = list(rrulestr(vevent["RRULE"].to_ical().decode("utf-8"), dtstart=dtstart))
        assert len(occurrences) == 8
        assert occurrences[-1].date() == date(2025, 7, 29)

    def test_build_when_until_with_all_day_start_then_date_until(self) -> None:
        """All-day starts get a DATE UNTIL even when the rule carries a UTC time."""
        event = create_event(
            "Fair",
            start_time=datetime(2025, 7, 4),
            end_time=datetime(2025, 7, 5),
            all_day=True,
            recurring_rule="FREQ=YEARLY;UNTIL=20280704T120000Z",
        )
        content = generate_ics([event])
        assert "UNTIL=20280704" in content
        assert "UNTIL=20280704T" not in content

        vevent = Calendar.from_ical(content).walk("VEVENT")[0]
        occurrences = list(rrulestr(vevent["RRULE"].to_ical().decode("utf-8"), dtstart=vevent["DTSTART"].dt))
        assert [o.year for o in occurrences] == [2025, 2026, 2027, 2028]

    def test_build_when_bad_event_then_skipped_and_reported(self) -> None:
        """An event that cannot be built is skipped; the rest are kept."""
        bad = create_event("Backwards", end_time=START - timedelta(hours=1))
        result = ICSGenerator().build([bad, create_event()])
        assert result.added == 1
        assert len(result.skipped) == 1
        assert "Backwards" in result.skipped[0]
        assert validate_ics(result.content) is True

    def test_single_event_ics_is_request(self) -> None:
        """Single-event calendars are invitations."""
        assert "METHOD:REQUEST" in generate_single_event_ics(create_event())

    def test_batch_generate_one_calendar_per_group(self) -> None:
        """Each group becomes its own calendar."""
        calendars = batch_generate_ics([[create_event()], [create_event("A"), create_event("B")]])
        assert [c.count("BEGIN:VEVENT") for c in calendars] == [1, 2]


class TestParseIcsEvents:
    """Test reading calendars back."""

    def test_parse_round_trips_core_fields(self) -> None:
        """Title, local times, zone and location survive a round trip."""
        event = create_event(description="Dinner", url="https://example.org/gala", categories=["music"])
        parsed = parse_ics_events(generate_ics(assign_uids([event])))

        assert len(parsed) == 1
        back = parsed[0]
        assert back.title == "Spring Gala"
        assert back.start_time == START
        assert back.end_time == START + timedelta(hours=2)
        assert back.timezone == "America/New_York"
        assert back.location == "City Hall"
        assert back.description == "Dinner"
        assert back.url == "https://example.org/gala"
        assert back.categories == ["music"]
        assert back.uid is not None
        assert back.source == "ics"

    def test_parse_all_day_event(self) -> None:
        """DATE values come back as all-day events."""
        event = create_event("Fair", start_time=datetime(2025, 7, 4), end_time=datetime(2025, 7, 5), all_day=True)
        back = parse_ics_events(generate_ics([event]))[0]
        assert back.all_day is True
        assert back.start_time == datetime(2025, 7, 4)

    def test_parse_placeholder_organizer_email_dropped(self) -> None:
        """The placeholder address for organizers without email is not reported as theirs."""
        event = create_event(organizer=Organizer(name="Parks Dept"))
        back = parse_ics_events(generate_ics([event]))[0]
        assert back.organizer is not None
        assert back.organizer.name == "Parks Dept"
        assert back.organizer.email is None

    def test_merge_combines_calendars(self) -> None:
        """Merging keeps every event from every calendar."""
        merged = merge_ics_files([generate_ics([create_event()]), generate_ics([create_event("Picnic")])])
        assert sorted(e.title for e in parse_ics_events(merged)) == ["Picnic", "Spring Gala"]


class TestParseRrule:
    """Test the supported RRULE subset."""

    def test_parse_rrule_keeps_valid_parts(self) -> None:
        """Valid parts are kept, invalid ones ignored."""
        rule = parse_rrule("RRULE:FREQ=weekly;INTERVAL=2;BYDAY=MO,XX,-1FR;BOGUS=1")
        assert rule == {"freq": "WEEKLY", "interval": 2, "byday": ["MO", "-1FR"]}

    def test_parse_rrule_until_and_count(self) -> None:
        """UNTIL accepts compact dates; COUNT must be positive."""
        rule = parse_rrule("FREQ=DAILY;UNTIL=20250630;COUNT=0")
        assert rule == {"freq": "DAILY", "until": date(2025, 6, 30)}

    def test_parse_rrule_until_with_utc_suffix_then_aware(self) -> None:
        """A trailing Z keeps UNTIL in UTC."""
        rule = parse_rrule("FREQ=DAILY;UNTIL=20250630T235959Z")
        assert rule is not None
        assert rule["until"] == datetime(2025, 6, 30, 23, 59, 59, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", ["", "BYDAY=MO", "FREQ=FORTNIGHTLY", None])
    def test_parse_rrule_without_valid_freq_then_none(self, value: object) -> None:
        """A rule needs a recognised frequency."""
        assert parse_rrule(value) is None  # type: ignore[arg-type]


class TestValidateIcs:
    """Test structural validation."""

    @pytest.mark.parametrize(
        "content",
        [
            "",
            "hello",
            "BEGIN:VCALENDAR\nEND:VCALENDAR",
            "BEGIN:VCALENDAR\nVERSION:2.0\nBEGIN:VEVENT\nEND:VCALENDAR",
        ],
    )
    def test_validate_ics_rejects_broken_calendars(self, content: str) -> None:
        """Missing markers, version or unbalanced events fail."""
        assert validate_ics(content) is False


def test_generate_uid_format() -> None:
    """UIDs carry start millis, a title hash and a random suffix."""
    event = create_event(start_time=datetime(2025, 1, 1, 0, 0), timezone="UTC")
    uid = generate_uid(event)
    start_ms, digest, suffix = uid.split("@")[0].split("-")
    assert start_ms == "1735689600000"
    assert digest == title_hash("Spring Gala")
    assert re.fullmatch(r"[0-9a-f]{8}", digest)
    assert len(suffix) == 7
    assert uid.endswith("@ics-scraper")
    assert generate_uid(event) != uid


def test_assign_uids_keeps_existing() -> None:
    """Events that already have a UID keep it."""
    events = assign_uids([create_event(uid="fixed@example"), create_event("Picnic")])
    assert events[0].uid == "fixed@example"
    assert events[1].uid


def test_get_ics_headers() -> None:
    """Download headers name the file."""
    headers = get_ics_headers("gala.ics")
    assert headers["Content-Type"] == "text/calendar; charset=utf-8"
    assert 'filename="gala.ics"' in headers["Content-Disposition"]


def test_title_hash_is_stable_hex_digest() -> None:
    """The title part of a UID is the first eight hex digits of its SHA-1."""
    assert title_hash("Spring Gala") == title_hash("Spring Gala")
    assert title_hash("Spring Gala") != title_hash("Spring Gala 2")
    assert title_hash("") == "da39a3ee"
