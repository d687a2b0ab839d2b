"""Datetime parsing helpers shared by the structured-data and LLM paths.

Extracted times are kept as naive local wall-clock values paired with an IANA
zone name. Strings that carry an explicit offset are converted to the wall clock
of the paired zone so the offset is never applied twice.
"""

import logging
import re
from datetime import date, datetime, timedelta, tzinfo
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

UNKNOWN_TIMEZONE = "UNKNOWN"

_ISO_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_RELATIVE_DAYS = {"today": 0, "tonight": 0, "tomorrow": 1}
_RELATIVE_PREFIX = re.compile(r"^(today|tonight|tomorrow)\b[\s,]*(?:at\s+)?", re.IGNORECASE)

# Two distinct defaults reveal whether the source string carried a time of day
_PROBE_A = datetime(2000, 1, 1, 0, 0, 0)
_PROBE_B = datetime(2000, 1, 1, 1, 1, 1)


def get_zone(name: Optional[str]) -> Optional[tzinfo]:
    """Return a ZoneInfo for ``name`` or None when it is not a valid IANA zone.

    Legacy abbreviations that tzdata still ships (EST, MST, ...) are rejected;
    only ``Area/Location`` names and ``UTC`` count.
    """
    if not name or name == UNKNOWN_TIMEZONE:
        return None
    if name != "UTC" and "/" not in name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def to_local_naive(value: datetime, timezone: Optional[str]) -> datetime:
    """Drop tzinfo, first converting aware values to ``timezone``'s wall clock."""
    if value.tzinfo is None:
        return value
    zone = get_zone(timezone)
    if zone is not None:
        value = value.astimezone(zone)
    return value.replace(tzinfo=None)


def _parse_with_probe(text: str, base: datetime) -> tuple[datetime, bool]:
    """Parse ``text`` and report whether a time of day was present."""
    probe_a = base.replace(hour=_PROBE_A.hour, minute=_PROBE_A.minute, second=_PROBE_A.second)
    probe_b = base.replace(hour=_PROBE_B.hour, minute=_PROBE_B.minute, second=_PROBE_B.second)
    first = date_parser.parse(text, default=probe_a)
    second = date_parser.parse(text, default=probe_b)
    has_time = (first.hour, first.minute) == (second.hour, second.minute)
    return first, has_time


def parse_event_datetime(
    value: Union[str, datetime, date, None],
    timezone: Optional[str] = None,
    reference_date: Optional[date] = None,
) -> Optional[tuple[datetime, bool]]:
    """Parse an extracted start/end value.

    Args:
        value: ISO-8601 string, free-form date string, datetime or date
        timezone: IANA zone the resulting wall clock belongs to
        reference_date: "Today" for resolving relative words like "tomorrow"

    Returns:
        ``(naive_local_datetime, is_date_only)`` or None when unparseable
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_local_naive(value, timezone), False
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day), True
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    if _ISO_DATE_ONLY.match(text):
        try:
            return datetime.fromisoformat(text), True
        except ValueError:
            return None

    base = datetime(2000, 1, 1)
    relative = _RELATIVE_PREFIX.match(text)
    if relative:
        today = reference_date or date.today()
        day = today + timedelta(days=_RELATIVE_DAYS[relative.group(1).lower()])
        base = datetime(day.year, day.month, day.day)
        text = text[relative.end() :].strip()
        if not text:
            return base, True

    try:
        parsed, has_time = _parse_with_probe(text, base)
    except (ValueError, OverflowError):
        logger.debug("Unparseable datetime value: %r", value)
        return None

    if not has_time:
        return parsed.replace(hour=0, minute=0, second=0, microsecond=0, tzinfo=None), True
    return to_local_naive(parsed, timezone), False
