"""RFC 5545 calendar generation with the ``icalendar`` library.

Events carry naive local times plus an IANA zone; the generator attaches the
zone so DTSTART/DTEND are written with a TZID (floating time when the zone is
UNKNOWN, DATE values for all-day events). A failure on one event is logged and
that event is skipped; the rest of the calendar is still produced.
"""

from __future__ import annotations

import hashlib
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Optional, Union

from icalendar import Alarm, Calendar, Event
from icalendar.prop import vCalAddress, vText

from ..config_models import ICSMethod, ICSOptions
from ..core.exceptions import ErrorCode, ICSGenerationError
from ..domain.datetime_utils import get_zone, parse_event_datetime, to_local_naive
from ..domain.models import DEFAULT_EVENT_DURATION, Attendee, CalendarEvent, Organizer

logger = logging.getLogger(__name__)

UID_DOMAIN = "ics-scraper"
PLACEHOLDER_ORGANIZER_EMAIL = "noreply@example.com"

RRULE_FREQUENCIES = frozenset({"SECONDLY", "MINUTELY", "HOURLY", "DAILY", "WEEKLY", "MONTHLY", "YEARLY"})
RRULE_WEEKDAYS = frozenset({"SU", "MO", "TU", "WE", "TH", "FR", "SA"})
_BYDAY_VALUE = re.compile(r"^([+-]?\d{1,2})?(SU|MO|TU|WE|TH|FR|SA)$")


@dataclass
class ICSBuildResult:
    """Serialized calendar plus per-event accounting."""

    content: str
    added: int = 0
    skipped: list[str] = field(default_factory=list)


def title_hash(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()[:8]  # nosec B324


def generate_uid(event: CalendarEvent) -> str:
    """``<start-ms>-<title-hash>-<random>@ics-scraper``."""
    start = event.aware_start()
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    start_ms = int(start.timestamp() * 1000)
    return f"{start_ms}-{title_hash(event.title)}-{uuid.uuid4().hex[:7]}@{UID_DOMAIN}"


def assign_uids(events: list[CalendarEvent]) -> list[CalendarEvent]:
    """Copies of ``events`` where every event has a UID."""
    return [e if e.uid else e.model_copy(update={"uid": generate_uid(e)}) for e in events]


def _parse_until(value: str) -> Union[datetime, date, None]:
    """UNTIL as a date (date-only), an aware UTC datetime (``Z`` suffix) or a naive datetime."""
    parsed = parse_event_datetime(value)
    if parsed is None:
        compact = re.match(r"^(\d{8})(?:T(\d{6}))?Z?$", value)
        if not compact:
            return None
        try:
            parsed = (
                datetime.strptime(compact.group(1) + (compact.group(2) or "000000"), "%Y%m%d%H%M%S"),
                compact.group(2) is None,
            )
        except ValueError:
            return None
    until, date_only = parsed
    if date_only:
        return until.date()
    if value.upper().endswith("Z"):
        return until.replace(tzinfo=timezone.utc)
    return until


def parse_rrule(rrule: str) -> Optional[dict[str, Any]]:
    """Translate the supported RRULE subset into an ``icalendar`` recurrence dict.

    Supported parts: FREQ, INTERVAL, COUNT, UNTIL, BYDAY, BYMONTH, BYMONTHDAY.
    Unsupported or malformed parts are ignored; a rule without a valid FREQ
    yields None.
    """
    if not rrule or not isinstance(rrule, str):
        return None

    rules: dict[str, Any] = {}
    body = re.sub(r"^RRULE:", "", rrule.strip(), flags=re.IGNORECASE)
    for pair in body.split(";"):
        key, _, value = pair.partition("=")
        key, value = key.strip().upper(), value.strip()
        if not key or not value:
            continue

        try:
            if key == "FREQ":
                if value.upper() in RRULE_FREQUENCIES:
                    rules["freq"] = value.upper()
            elif key == "INTERVAL":
                if int(value) > 0:
                    rules["interval"] = int(value)
            elif key == "COUNT":
                if int(value) > 0:
                    rules["count"] = int(value)
            elif key == "UNTIL":
                until = _parse_until(value)
                if until is not None:
                    rules["until"] = until
            elif key == "BYDAY":
                days = [d.strip().upper() for d in value.split(",")]
                valid = [d for d in days if _BYDAY_VALUE.match(d)]
                if valid:
                    rules["byday"] = valid
            elif key == "BYMONTH":
                months = [int(m) for m in value.split(",")]
                if all(1 <= m <= 12 for m in months):
                    rules["bymonth"] = months
            elif key == "BYMONTHDAY":
                days = [int(d) for d in value.split(",")]
                if all(1 <= abs(d) <= 31 for d in days):
                    rules["bymonthday"] = days
        except ValueError:
            logger.debug("Ignoring malformed RRULE part %s=%s", key, value)

    if "freq" not in rules:
        return None
    return rules


def _calendar_address(email: str, name: Optional[str] = None) -> vCalAddress:
    address = vCalAddress(f"mailto:{email}")
    if name:
        address.params["cn"] = vText(name)
    return address


def _organizer_address(organizer: Organizer) -> vCalAddress:
    return _calendar_address(organizer.email or PLACEHOLDER_ORGANIZER_EMAIL, organizer.name or "system")


def _attendee_address(attendee: Attendee) -> vCalAddress:
    address = _calendar_address(attendee.email, attendee.name)
    address.params["rsvp"] = "TRUE" if attendee.rsvp else "FALSE"
    if attendee.status:
        address.params["partstat"] = attendee.status.upper()
    if attendee.role:
        address.params["role"] = attendee.role.upper()
    return address


class ICSGenerator:
    """Builds VCALENDAR documents from validated events."""

    def __init__(self, options: Optional[ICSOptions] = None) -> None:
        self.options = options or ICSOptions()

    def _create_calendar(self, method: Optional[str] = None) -> Calendar:
        options = self.options
        calendar = Calendar()
        calendar.add("prodid", options.prod_id)
        calendar.add("version", "2.0")
        calendar.add("calscale", options.scale)
        calendar.add("method", method or ICSMethod(options.method).value)
        calendar.add("x-wr-calname", options.calendar_name)
        if options.description:
            calendar.add("x-wr-caldesc", options.description)
        if get_zone(options.timezone) is not None:
            calendar.add("x-wr-timezone", options.timezone)
        return calendar

    def _event_zone(self, event: CalendarEvent) -> Optional[tzinfo]:
        return get_zone(event.timezone) or get_zone(self.options.timezone)

    def _until_for_start(self, until: Union[datetime, date], event: CalendarEvent) -> Union[datetime, date]:
        """Match UNTIL to DTSTART: a DATE, a UTC time for TZID starts, or floating."""
        if event.all_day:
            return until.date() if isinstance(until, datetime) else until

        if not isinstance(until, datetime):
            # A date-only UNTIL still includes occurrences on that day
            until = datetime.combine(until, time(23, 59, 59))
        zone = self._event_zone(event)
        if zone is None:
            return to_local_naive(until, None)
        if until.tzinfo is None:
            until = until.replace(tzinfo=zone)
        return until.astimezone(timezone.utc)

    def _event_times(self, event: CalendarEvent) -> tuple[Any, Any]:
        if event.all_day:
            start_day = event.start_time.date()
            end_day = event.end_time.date()
            if end_day <= start_day:
                end_day = start_day + timedelta(days=1)
            return start_day, end_day

        zone = self._event_zone(event)
        if zone is None:
            return event.start_time, event.end_time
        return event.start_time.replace(tzinfo=zone), event.end_time.replace(tzinfo=zone)

    def _build_event(self, event: CalendarEvent) -> Event:
        if event.end_time <= event.start_time:
            raise ValueError("end time must be after start time")

        component = Event()
        component.add("uid", event.uid or generate_uid(event))
        component.add("dtstamp", datetime.now(timezone.utc))
        start, end = self._event_times(event)
        component.add("dtstart", start)
        component.add("dtend", end)
        component.add("summary", event.title)
        if event.description:
            component.add("description", event.description)
        if event.location:
            component.add("location", event.location)
        if event.url:
            component.add("url", event.url)
        component.add("status", event.status)
        if event.categories:
            component.add("categories", event.categories)

        if event.organizer is not None:
            component.add("organizer", _organizer_address(event.organizer))
        for attendee in event.attendees:
            component.add("attendee", _attendee_address(attendee))

        if event.recurring_rule:
            rule = parse_rrule(event.recurring_rule)
            if rule is None:
                logger.debug("Ignoring unsupported recurrence rule for %r: %s", event.title, event.recurring_rule)
            else:
                if "until" in rule:
                    rule["until"] = self._until_for_start(rule["until"], event)
                component.add("rrule", rule)

        if self.options.include_alarms:
            self._add_alarms(component, event)
        return component

    def _add_alarms(self, component: Event, event: CalendarEvent) -> None:
        lead = timedelta(minutes=-abs(self.options.default_alarm_minutes))

        display = Alarm()
        display.add("action", "DISPLAY")
        display.add("trigger", lead)
        display.add("description", f"Reminder: {event.title}")
        component.add_component(display)

        if event.organizer is not None and event.organizer.email:
            email = Alarm()
            email.add("action", "EMAIL")
            email.add("trigger", lead)
            email.add("summary", f"Event Reminder: {event.title}")
            email.add("description", f"Reminder: {event.title}")
            email.add("attendee", _calendar_address(event.organizer.email, event.organizer.name))
            component.add_component(email)

    def build(self, events: list[CalendarEvent], method: Optional[str] = None) -> ICSBuildResult:
        """Serialize events, skipping (and reporting) any that cannot be added."""
        calendar = self._create_calendar(method)
        added = 0
        skipped: list[str] = []

        for event in events:
            try:
                calendar.add_component(self._build_event(event))
                added += 1
            except Exception as e:
                logger.warning("Skipping event %r in ICS output: %s", event.title, e)
                skipped.append(f'Could not add "{event.title}" to calendar: {e}')

        if self.options.include_vtimezone and added:
            try:
                calendar.add_missing_timezones()
            except Exception as e:
                logger.warning("Could not embed VTIMEZONE definitions: %s", e)

        try:
            content = calendar.to_ical().decode("utf-8")
        except Exception as e:
            raise ICSGenerationError(
                f"Failed to serialize calendar: {e}",
                code=ErrorCode.INTERNAL_ERROR,
                details={"events": len(events)},
            ) from e

        logger.debug("Generated ICS with %d events (%d skipped)", added, len(skipped))
        return ICSBuildResult(content=content, added=added, skipped=skipped)


def generate_ics(events: list[CalendarEvent], options: Optional[ICSOptions] = None) -> str:
    return ICSGenerator(options).build(events).content


def generate_single_event_ics(event: CalendarEvent, options: Optional[ICSOptions] = None) -> str:
    """One-event calendar sent as an invitation (METHOD:REQUEST)."""
    return ICSGenerator(options).build([event], method=ICSMethod.REQUEST.value).content


def batch_generate_ics(event_groups: list[list[CalendarEvent]], options: Optional[ICSOptions] = None) -> list[str]:
    generator = ICSGenerator(options)
    return [generator.build(group).content for group in event_groups]


def validate_ics(ics_content: str) -> bool:
    """Structural check plus a full parse with icalendar."""
    if not ics_content or not ics_content.strip():
        return False
    stripped = ics_content.strip()
    if not stripped.startswith("BEGIN:VCALENDAR") or not stripped.endswith("END:VCALENDAR"):
        return False
    if "VERSION:2.0" not in ics_content:
        return False
    if ics_content.count("BEGIN:VEVENT") != ics_content.count("END:VEVENT"):
        return False
    try:
        Calendar.from_ical(ics_content)
    except ValueError as e:
        logger.debug("ICS validation failed: %s", e)
        return False
    return True


def get_ics_headers(filename: str = "events.ics") -> dict[str, str]:
    """HTTP headers for serving ICS text as a download."""
    return {
        "Content-Type": "text/calendar; charset=utf-8",
        "Content-Disposition": f'attachment; filename="{filename}"',
        "Cache-Control": "no-cache, no-store, must-revalidate",
    }


def _decoded_time(component: Any, name: str) -> tuple[Optional[datetime], bool, Optional[str]]:
    prop = component.get(name)
    if prop is None:
        return None, False, None
    value = prop.dt
    if isinstance(value, datetime):
        tzid = prop.params.get("TZID")
        if tzid is None and value.tzinfo is not None:
            tzid = getattr(value.tzinfo, "key", None)
            if tzid is None and value.utcoffset() == timedelta(0):
                tzid = "UTC"
        return to_local_naive(value, tzid), False, tzid
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day), True, None
    return None, False, None


def parse_ics_events(ics_content: str) -> list[CalendarEvent]:
    """Read VEVENTs back into CalendarEvents (title, times, zone, location, details)."""
    calendar = Calendar.from_ical(ics_content)
    events: list[CalendarEvent] = []

    for component in calendar.walk("VEVENT"):
        try:
            start, all_day, tzid = _decoded_time(component, "DTSTART")
            if start is None:
                continue
            end, _, _ = _decoded_time(component, "DTEND")
            if end is None:
                duration = component.get("DURATION")
                end = start + duration.dt if duration is not None else start + DEFAULT_EVENT_DURATION

            organizer = None
            raw_organizer = component.get("ORGANIZER")
            if raw_organizer is not None:
                email = str(raw_organizer).replace("mailto:", "").replace("MAILTO:", "")
                organizer = Organizer(
                    name=str(raw_organizer.params.get("CN", "")),
                    email=None if email == PLACEHOLDER_ORGANIZER_EMAIL else email,
                )

            categories: list[str] = []
            raw_categories = component.get("CATEGORIES")
            if raw_categories is not None:
                for item in raw_categories if isinstance(raw_categories, list) else [raw_categories]:
                    categories.extend(str(c) for c in item.cats)

            rrule = component.get("RRULE")
            events.append(
                CalendarEvent(
                    title=str(component.get("SUMMARY", "")),
                    start_time=start,
                    end_time=end,
                    location=str(component.get("LOCATION", "")) or None,
                    description=str(component.get("DESCRIPTION", "")),
                    timezone=tzid or "UNKNOWN",
                    organizer=organizer,
                    recurring_rule=rrule.to_ical().decode("utf-8") if rrule is not None else None,
                    categories=categories,
                    status=str(component.get("STATUS", "CONFIRMED")).upper(),
                    url=str(component.get("URL")) if component.get("URL") else None,
                    uid=str(component.get("UID")) if component.get("UID") else None,
                    all_day=all_day,
                    source="ics",
                )
            )
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("Skipping unreadable VEVENT: %s", e)
    return events


def merge_ics_files(ics_files: list[str], options: Optional[ICSOptions] = None) -> str:
    """Combine several calendars into one, re-serialized with ``options``."""
    events: list[CalendarEvent] = []
    for content in ics_files:
        try:
            events.extend(parse_ics_events(content))
        except ValueError as e:
            logger.warning("Skipping unparseable calendar during merge: %s", e)
    return generate_ics(events, options)
