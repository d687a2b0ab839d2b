"""Pattern families used to score page text for event likelihood.

Patterns that describe word lists are case-insensitive; patterns that rely on
capitalization (proper nouns, state codes) are case-sensitive so ordinary prose
does not register as a place or an organization.
"""

import re
from typing import Final

_I = re.IGNORECASE

MONTHS = r"(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*"
WEEKDAYS = r"(?:Monday|Tuesday|Wednesday|Thursday|Friday|Saturday|Sunday)"

TEMPORAL_PATTERNS: Final[list[re.Pattern[str]]] = [
    # ISO 8601
    re.compile(r"\b\d{4}-\d{2}-\d{2}(?:T\d{2}:\d{2}(?::\d{2})?(?:Z|[+-]\d{2}:\d{2})?)?", _I),
    # Month day, year
    re.compile(rf"\b{MONTHS}\s+\d{{1,2}}(?:st|nd|rd|th)?,?\s+\d{{4}}", _I),
    re.compile(r"\b\d{1,2}/\d{1,2}/\d{2,4}"),
    re.compile(r"\b\d{1,2}-\d{1,2}-\d{2,4}"),
    # Weekday, month day
    re.compile(rf"\b{WEEKDAYS},?\s+{MONTHS}\s+\d{{1,2}}", _I),
    # Time of day
    re.compile(r"\b\d{1,2}:\d{2}\s*(?:am|pm)?", _I),
    re.compile(r"\b(?:from|at|starts?\s+at)\s+\d{1,2}(?::\d{2})?\s*(?:am|pm)?", _I),
    re.compile(r"\b\d{1,2}\s*(?:am|pm)\b", _I),
    # Relative
    re.compile(
        r"\b(?:today|tomorrow|tonight|this\s+week|next\s+week|this\s+month|next\s+month|upcoming|soon)\b",
        _I,
    ),
]

LOCATION_PATTERNS: Final[list[re.Pattern[str]]] = [
    # Street addresses
    re.compile(
        r"\b\d+\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\s+"
        r"(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd|Lane|Ln|Drive|Dr|Court|Ct|Plaza|Place|Pl|Way|Circle|Cir)\b"
    ),
    # Venues and buildings
    re.compile(
        r"\b(?:Room|Rm|Building|Bldg|Hall|Auditorium|Theater|Theatre|Center|Centre|Library|Museum|Hotel|Conference\s+Room)"
        r"\s+[A-Z0-9][A-Za-z0-9\-]*(?:\s+[A-Z0-9][A-Za-z0-9\-]*)*"
    ),
    re.compile(r"\b(?:the\s+)?[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\s+(?:Hotel|Hall|Center|Centre|Theater|Theatre|Museum|Library|Park|Arena|Stadium)\b"),
    # Virtual meetings
    re.compile(r"\b(?:Online|Virtual|Zoom|Teams|Google\s+Meet|Webinar|Livestream|Remote|Webcast)\b", _I),
    # City, ST [zip] / City, Country
    re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*,\s*[A-Z]{2}(?:\s+\d{5})?\b"),
    re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*,\s*(?:USA|Canada|UK|Australia)\b"),
    # Campus
    re.compile(r"\b(?:Campus|University|College|School)\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*"),
]

EVENT_KEYWORD_PATTERNS: Final[list[re.Pattern[str]]] = [
    re.compile(
        r"\b(?:event|conference|workshop|seminar|webinar|meeting|session|presentation|talk|lecture|class|course|training)s?\b",
        _I,
    ),
    re.compile(
        r"\b(?:celebration|party|reception|gathering|festival|show|performance|concert|exhibition|expo|fair|gala)s?\b",
        _I,
    ),
    re.compile(r"\b(?:symposium|summit|forum|panel|discussion|debate|roundtable|networking)\b", _I),
    re.compile(
        r"\b(?:register|registration|rsvp|sign\s+up|signup|tickets?|attend|join|participate|reserve)\b",
        _I,
    ),
    re.compile(r"\b(?:hosted\s+by|organized\s+by|presented\s+by|sponsored\s+by)\b", _I),
]

ORGANIZATION_PATTERNS: Final[list[re.Pattern[str]]] = [
    re.compile(
        r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\s+"
        r"(?:University|College|Institute|Foundation|Corporation|Company|Organization|Association|Society|Group|Club)\b"
    ),
    re.compile(
        r"\b(?:Department\s+of|School\s+of|Faculty\s+of|Center\s+for|Institute\s+for)\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*"
    ),
]

# Direct signals of an event announcement, each worth a flat bonus
EVENT_SIGNAL_PATTERNS: Final[list[re.Pattern[str]]] = [
    re.compile(r"\b(?:register|registration|rsvp|sign\s+up|tickets?|attend|join)\b", _I),
    re.compile(r"\b(?:starts?\s+at|from\s+\d|at\s+\d|\d+:\d+)", _I),
    re.compile(r"\b(?:event|conference|workshop|seminar|meeting|session)s?\b", _I),
]

CONTENT_AREA_SELECTORS: Final[dict[str, list[str]]] = {
    "main": ["main", "article", '[role="main"]', ".main", "#main", ".content", "#content"],
    "navigation": ["nav", '[role="navigation"]', ".nav", ".navigation", ".menu", ".navbar"],
    "sidebar": ["aside", '[role="complementary"]', ".sidebar", ".aside"],
    "footer": ["footer", '[role="contentinfo"]', ".footer"],
    "header": ["header", '[role="banner"]', ".header"],
}

UNWANTED_SELECTORS: Final[list[str]] = [
    "script",
    "style",
    "noscript",
    "iframe",
    "svg",
    "template",
    ".advertisement",
    ".ads",
    ".promo",
    ".social-share",
    ".cookie-banner",
]

MAIN_CONTENT_HINTS: Final[re.Pattern[str]] = re.compile(r"main|content|article|post|entry", _I)


def find_all(patterns: list[re.Pattern[str]], text: str, limit: int = 10) -> list[str]:
    """Collect unique matches across ``patterns`` in first-seen order."""
    seen: dict[str, None] = {}
    for pattern in patterns:
        for match in pattern.finditer(text):
            value = match.group(0).strip()
            if value and value not in seen:
                seen[value] = None
                if len(seen) >= limit:
                    return list(seen)
    return list(seen)


def count_pattern_hits(patterns: list[re.Pattern[str]], text: str) -> int:
    """Number of patterns in the family with at least one match."""
    return sum(1 for pattern in patterns if pattern.search(text))
