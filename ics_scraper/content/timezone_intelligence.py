"""Timezone inference from free text.

Detection is best-effort: explicit abbreviations win over city names, city names
over US states. The lookup tables are plain data and can be extended or replaced
by subclassing ``TimezoneIntelligence``.

Short codes (state codes, ET/CT/PT, LA) only match when written in upper case;
lower-case matching would fire on ordinary words such as "in", "or" and "me".
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from functools import lru_cache
from typing import ClassVar, Optional
from zoneinfo import ZoneInfo

from ..domain.datetime_utils import UNKNOWN_TIMEZONE, get_zone

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_TIMEZONE = "America/New_York"


@dataclass
class TimezoneDetection:
    timezone: str
    confidence: float
    matched: Optional[str] = None


@dataclass
class TimeValidation:
    valid: bool
    warnings: list[str] = field(default_factory=list)


@lru_cache(maxsize=512)
def _term_pattern(term: str, case_sensitive: bool) -> re.Pattern[str]:
    flags = 0 if case_sensitive else re.IGNORECASE
    return re.compile(rf"(?<![\w/]){re.escape(term)}(?![\w/])", flags)


class TimezoneIntelligence:
    """Infers IANA timezones from event text."""

    CITY_TIMEZONE_MAP: ClassVar[dict[str, str]] = {
        # Major US cities
        "new york": "America/New_York",
        "nyc": "America/New_York",
        "manhattan": "America/New_York",
        "brooklyn": "America/New_York",
        "queens": "America/New_York",
        "los angeles": "America/Los_Angeles",
        "la": "America/Los_Angeles",
        "san francisco": "America/Los_Angeles",
        "sf": "America/Los_Angeles",
        "chicago": "America/Chicago",
        "boston": "America/New_York",
        "washington": "America/New_York",
        "dc": "America/New_York",
        "seattle": "America/Los_Angeles",
        "denver": "America/Denver",
        "phoenix": "America/Phoenix",
        "atlanta": "America/New_York",
        "miami": "America/New_York",
        "dallas": "America/Chicago",
        "houston": "America/Chicago",
        "philadelphia": "America/New_York",
        "detroit": "America/Detroit",
        "minneapolis": "America/Chicago",
        "portland": "America/Los_Angeles",
        "las vegas": "America/Los_Angeles",
        "orlando": "America/New_York",
        "austin": "America/Chicago",
        # International cities
        "london": "Europe/London",
        "paris": "Europe/Paris",
        "berlin": "Europe/Berlin",
        "rome": "Europe/Rome",
        "madrid": "Europe/Madrid",
        "amsterdam": "Europe/Amsterdam",
        "zurich": "Europe/Zurich",
        "vienna": "Europe/Vienna",
        "tokyo": "Asia/Tokyo",
        "seoul": "Asia/Seoul",
        "beijing": "Asia/Shanghai",
        "shanghai": "Asia/Shanghai",
        "hong kong": "Asia/Hong_Kong",
        "singapore": "Asia/Singapore",
        "mumbai": "Asia/Kolkata",
        "bangalore": "Asia/Kolkata",
        "delhi": "Asia/Kolkata",
        "sydney": "Australia/Sydney",
        "melbourne": "Australia/Melbourne",
        "toronto": "America/Toronto",
        "vancouver": "America/Vancouver",
        "montreal": "America/Toronto",
        "sao paulo": "America/Sao_Paulo",
        "mexico city": "America/Mexico_City",
        "buenos aires": "America/Argentina/Buenos_Aires",
        "jerusalem": "Asia/Jerusalem",
        "tel aviv": "Asia/Jerusalem",
    }

    STATE_TIMEZONE_MAP: ClassVar[dict[str, str]] = {
        # Eastern Time
        "ny": "America/New_York",
        "new york": "America/New_York",
        "nj": "America/New_York",
        "new jersey": "America/New_York",
        "pa": "America/New_York",
        "pennsylvania": "America/New_York",
        "ct": "America/New_York",
        "connecticut": "America/New_York",
        "ma": "America/New_York",
        "massachusetts": "America/New_York",
        "ri": "America/New_York",
        "rhode island": "America/New_York",
        "vt": "America/New_York",
        "vermont": "America/New_York",
        "nh": "America/New_York",
        "new hampshire": "America/New_York",
        "me": "America/New_York",
        "maine": "America/New_York",
        "de": "America/New_York",
        "delaware": "America/New_York",
        "md": "America/New_York",
        "maryland": "America/New_York",
        "va": "America/New_York",
        "virginia": "America/New_York",
        "wv": "America/New_York",
        "west virginia": "America/New_York",
        "nc": "America/New_York",
        "north carolina": "America/New_York",
        "sc": "America/New_York",
        "south carolina": "America/New_York",
        "ga": "America/New_York",
        "georgia": "America/New_York",
        "fl": "America/New_York",
        "florida": "America/New_York",
        "oh": "America/New_York",
        "ohio": "America/New_York",
        "mi": "America/Detroit",
        "michigan": "America/Detroit",
        "ky": "America/New_York",
        "kentucky": "America/New_York",
        "in": "America/Indiana/Indianapolis",
        "indiana": "America/Indiana/Indianapolis",
        # Central Time
        "il": "America/Chicago",
        "illinois": "America/Chicago",
        "wi": "America/Chicago",
        "wisconsin": "America/Chicago",
        "mn": "America/Chicago",
        "minnesota": "America/Chicago",
        "ia": "America/Chicago",
        "iowa": "America/Chicago",
        "mo": "America/Chicago",
        "missouri": "America/Chicago",
        "ar": "America/Chicago",
        "arkansas": "America/Chicago",
        "la": "America/Chicago",
        "louisiana": "America/Chicago",
        "ms": "America/Chicago",
        "mississippi": "America/Chicago",
        "al": "America/Chicago",
        "alabama": "America/Chicago",
        "tn": "America/Chicago",
        "tennessee": "America/Chicago",
        "tx": "America/Chicago",
        "texas": "America/Chicago",
        "ok": "America/Chicago",
        "oklahoma": "America/Chicago",
        "ks": "America/Chicago",
        "kansas": "America/Chicago",
        "ne": "America/Chicago",
        "nebraska": "America/Chicago",
        "sd": "America/Chicago",
        "south dakota": "America/Chicago",
        "nd": "America/Chicago",
        "north dakota": "America/Chicago",
        # Mountain Time
        "co": "America/Denver",
        "colorado": "America/Denver",
        "wy": "America/Denver",
        "wyoming": "America/Denver",
        "mt": "America/Denver",
        "montana": "America/Denver",
        "ut": "America/Denver",
        "utah": "America/Denver",
        "nm": "America/Denver",
        "new mexico": "America/Denver",
        "id": "America/Boise",
        "idaho": "America/Boise",
        "az": "America/Phoenix",
        "arizona": "America/Phoenix",
        # Pacific Time
        "ca": "America/Los_Angeles",
        "california": "America/Los_Angeles",
        "or": "America/Los_Angeles",
        "oregon": "America/Los_Angeles",
        "wa": "America/Los_Angeles",
        "washington": "America/Los_Angeles",
        "nv": "America/Los_Angeles",
        "nevada": "America/Los_Angeles",
        # Alaska & Hawaii
        "ak": "America/Anchorage",
        "alaska": "America/Anchorage",
        "hi": "Pacific/Honolulu",
        "hawaii": "Pacific/Honolulu",
    }

    TIMEZONE_ABBREVIATIONS: ClassVar[dict[str, str]] = {
        # US timezones
        "est": "America/New_York",
        "edt": "America/New_York",
        "eastern": "America/New_York",
        "et": "America/New_York",
        "cst": "America/Chicago",
        "cdt": "America/Chicago",
        "central": "America/Chicago",
        "ct": "America/Chicago",
        "mst": "America/Denver",
        "mdt": "America/Denver",
        "mountain": "America/Denver",
        "mt": "America/Denver",
        "pst": "America/Los_Angeles",
        "pdt": "America/Los_Angeles",
        "pacific": "America/Los_Angeles",
        "pt": "America/Los_Angeles",
        "akst": "America/Anchorage",
        "akdt": "America/Anchorage",
        "hst": "Pacific/Honolulu",
        "hdt": "Pacific/Honolulu",
        # International
        "utc": "UTC",
        "gmt": "UTC",
        "bst": "Europe/London",
        "cet": "Europe/Paris",
        "cest": "Europe/Paris",
        "jst": "Asia/Tokyo",
        "kst": "Asia/Seoul",
        "ist": "Asia/Kolkata",
        "aest": "Australia/Sydney",
        "aedt": "Australia/Sydney",
    }

    COUNTRY_PATTERNS: ClassVar[list[tuple[str, str]]] = [
        (r"\b(?:united kingdom|britain|UK)\b", "Europe/London"),
        (r"\b(?:canada|canadian)\b", "America/Toronto"),
        (r"\b(?:australia|australian)\b", "Australia/Sydney"),
    ]

    # Spelled-out zone names need "time" after them so "Central Park" is not a zone
    _SPELLED_ZONES: ClassVar[frozenset[str]] = frozenset({"eastern", "central", "mountain", "pacific"})

    def _abbreviation_pattern(self, abbr: str) -> re.Pattern[str]:
        if abbr in self._SPELLED_ZONES:
            return re.compile(rf"\b{abbr}(?:\s+(?:standard|daylight))?\s+time\b", re.IGNORECASE)
        return _term_pattern(abbr.upper(), True)

    @staticmethod
    def _place_pattern(term: str) -> re.Pattern[str]:
        if len(term) <= 3 and " " not in term:
            return _term_pattern(term.upper(), True)
        return _term_pattern(term, False)

    def _match_abbreviation(self, text: str) -> Optional[tuple[str, str]]:
        for abbr, timezone in self.TIMEZONE_ABBREVIATIONS.items():
            if self._abbreviation_pattern(abbr).search(text):
                if abbr in ("cst", "ist"):
                    timezone = self.resolve_ambiguous_timezone(abbr, text, timezone)
                return abbr, timezone
        return None

    def detect_timezone(self, text: str, fallback: str = DEFAULT_FALLBACK_TIMEZONE) -> str:
        """Return the first timezone evidence found in ``text``, else ``fallback``."""
        if not text:
            return fallback

        abbreviation = self._match_abbreviation(text)
        if abbreviation:
            return abbreviation[1]

        for city, timezone in self.CITY_TIMEZONE_MAP.items():
            if self._place_pattern(city).search(text):
                return timezone

        for state, timezone in self.STATE_TIMEZONE_MAP.items():
            if self._place_pattern(state).search(text):
                return timezone

        for pattern, timezone in self.COUNTRY_PATTERNS:
            if re.search(pattern, text, re.IGNORECASE):
                return timezone

        return fallback

    def detect_timezone_with_confidence(
        self, text: str, fallback: str = DEFAULT_FALLBACK_TIMEZONE
    ) -> TimezoneDetection:
        """Score every kind of evidence and return the most confident match.

        Abbreviations score 0.9 (0.7 for two letters), cities 0.8 (0.6 for short
        names), states 0.5 (0.3 for two-letter codes). No evidence yields the
        fallback with confidence 0.
        """
        best = TimezoneDetection(timezone=fallback, confidence=0.0)
        if not text:
            return best

        for abbr, timezone in self.TIMEZONE_ABBREVIATIONS.items():
            if self._abbreviation_pattern(abbr).search(text):
                if abbr in ("cst", "ist"):
                    timezone = self.resolve_ambiguous_timezone(abbr, text, timezone)
                confidence = 0.9 if len(abbr) > 2 else 0.7
                if confidence > best.confidence:
                    best = TimezoneDetection(timezone, confidence, abbr)

        for city, timezone in self.CITY_TIMEZONE_MAP.items():
            if self._place_pattern(city).search(text):
                confidence = 0.8 if len(city) > 4 else 0.6
                if confidence > best.confidence:
                    best = TimezoneDetection(timezone, confidence, city)

        for state, timezone in self.STATE_TIMEZONE_MAP.items():
            if self._place_pattern(state).search(text):
                confidence = 0.5 if len(state) > 2 else 0.3
                if confidence > best.confidence:
                    best = TimezoneDetection(timezone, confidence, state)

        return best

    def resolve_ambiguous_timezone(
        self, abbreviation: str, context: str, fallback: str = DEFAULT_FALLBACK_TIMEZONE
    ) -> str:
        """Resolve CST (US Central vs China) and IST (India vs Israel) from context."""
        abbr = abbreviation.lower()
        lowered = context.lower()

        if abbr == "cst":
            if any(word in lowered for word in ("china", "beijing", "shanghai")):
                return "Asia/Shanghai"
            return "America/Chicago"

        if abbr == "ist":
            if any(word in lowered for word in ("israel", "jerusalem", "tel aviv")):
                return "Asia/Jerusalem"
            return "Asia/Kolkata"

        return self.TIMEZONE_ABBREVIATIONS.get(abbr, fallback)

    def abbreviation_to_iana(self, abbreviation: str, context: Optional[str] = None) -> Optional[str]:
        if context:
            return self.resolve_ambiguous_timezone(abbreviation, context)
        return self.TIMEZONE_ABBREVIATIONS.get(abbreviation.strip().lower())

    def batch_detect_timezones(
        self, texts: list[str], fallback: str = DEFAULT_FALLBACK_TIMEZONE
    ) -> list[str]:
        """Detect a zone per text, using the combined texts as shared context."""
        combined = " ".join(texts)
        return [
            self.detect_timezone_with_confidence(f"{text} {combined}", fallback).timezone
            for text in texts
        ]


def is_valid_timezone(timezone: Optional[str]) -> bool:
    """True for IANA ``Area/Location`` names and UTC; abbreviations are not zones."""
    return get_zone(timezone) is not None


def normalize_timezone(value: Optional[str]) -> str:
    """Map a zone name or abbreviation to an IANA zone, or ``UNKNOWN``."""
    if not value:
        return UNKNOWN_TIMEZONE
    candidate = value.strip()
    if is_valid_timezone(candidate):
        return candidate
    mapped = _intelligence.abbreviation_to_iana(candidate)
    return mapped if mapped else UNKNOWN_TIMEZONE


def observes_dst(timezone: str) -> bool:
    """Whether the zone's UTC offset differs between January and July."""
    zone = get_zone(timezone)
    if zone is None:
        return False
    winter = datetime(2024, 1, 15, 12, tzinfo=zone).utcoffset()
    summer = datetime(2024, 7, 15, 12, tzinfo=zone).utcoffset()
    return winter != summer


def validate_event_times(
    start: datetime,
    end: datetime,
    timezone: str,
    now: Optional[datetime] = None,
) -> TimeValidation:
    """Sanity-check local event times.

    Invalid only when the end is not after the start; everything else
    (over 24 hours long, in the past, over two years ahead, unknown zone)
    produces warnings.
    """
    if end <= start:
        return TimeValidation(valid=False, warnings=["End time must be after start time"])

    warnings: list[str] = []
    if end - start > timedelta(hours=24):
        warnings.append("Event duration exceeds 24 hours")

    zone = get_zone(timezone)
    if now is None:
        now = datetime.now(zone or ZoneInfo("UTC")).replace(tzinfo=None)

    if start < now - timedelta(hours=24):
        warnings.append("Event appears to be in the past")

    try:
        two_years_ahead = now.replace(year=now.year + 2)
    except ValueError:
        # Feb 29
        two_years_ahead = now.replace(year=now.year + 2, day=28)
    if start > two_years_ahead:
        warnings.append("Event is more than 2 years in the future")

    if zone is None:
        warnings.append(f"Invalid timezone: {timezone}")

    return TimeValidation(valid=True, warnings=warnings)


def create_all_day_event(day: date, timezone: str) -> tuple[datetime, datetime]:
    """Local start (midnight) and end (23:59:59) for an all-day event on ``day``."""
    if not is_valid_timezone(timezone):
        logger.debug("All-day event with unknown timezone %r", timezone)
    start = datetime(day.year, day.month, day.day)
    return start, start.replace(hour=23, minute=59, second=59)


# Shared instance for module-level convenience functions
_intelligence = TimezoneIntelligence()


def detect_timezone(text: str, fallback: str = DEFAULT_FALLBACK_TIMEZONE) -> str:
    return _intelligence.detect_timezone(text, fallback)


def detect_timezone_with_confidence(
    text: str, fallback: str = DEFAULT_FALLBACK_TIMEZONE
) -> TimezoneDetection:
    return _intelligence.detect_timezone_with_confidence(text, fallback)


def resolve_ambiguous_timezone(
    abbreviation: str, context: str, fallback: str = DEFAULT_FALLBACK_TIMEZONE
) -> str:
    return _intelligence.resolve_ambiguous_timezone(abbreviation, context, fallback)


def abbreviation_to_iana(abbreviation: str, context: Optional[str] = None) -> Optional[str]:
    return _intelligence.abbreviation_to_iana(abbreviation, context)


def batch_detect_timezones(texts: list[str], fallback: str = DEFAULT_FALLBACK_TIMEZONE) -> list[str]:
    return _intelligence.batch_detect_timezones(texts, fallback)
