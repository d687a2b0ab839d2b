"""Structured event data embedded in page markup.

Reads schema.org events from JSON-LD blocks, microdata (``itemprop``) and RDFa
(``property``), plus a line-oriented regex heuristic over plain text. The regex
candidates are low-confidence hints; only markup-derived candidates are upgraded
to calendar events by the pipeline.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from bs4 import BeautifulSoup, Tag

from ..domain.models import StructuredEvent
from .patterns import LOCATION_PATTERNS, TEMPORAL_PATTERNS, find_all

logger = logging.getLogger(__name__)

JSON_LD_CONFIDENCE = 0.9
MARKUP_CONFIDENCE = 0.8
REGEX_CONFIDENCE = 0.5

# Explicit calendar dates only; times of day and relative words are too weak alone
_DATE_ONLY_PATTERNS = TEMPORAL_PATTERNS[:5]
_MAX_REGEX_TITLE = 200


def _is_event_type(value: Any) -> bool:
    if isinstance(value, list):
        return any(_is_event_type(v) for v in value)
    if not isinstance(value, str):
        return False
    name = value.rsplit("/", 1)[-1]
    return name == "Event" or name.endswith("Event")


def _text_of(value: Any) -> Optional[str]:
    """Flatten a schema.org value (string, object or list) to display text."""
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, list):
        for item in value:
            text = _text_of(item)
            if text:
                return text
        return None
    if isinstance(value, dict):
        if value.get("name"):
            return _text_of(value["name"])
        address = value.get("address")
        if isinstance(address, dict):
            parts = [
                address.get(key)
                for key in ("streetAddress", "addressLocality", "addressRegion", "postalCode")
            ]
            joined = ", ".join(str(p).strip() for p in parts if p)
            return joined or None
        return _text_of(address)
    return None


def _json_ld_items(data: Any) -> list[dict[str, Any]]:
    if isinstance(data, list):
        items: list[dict[str, Any]] = []
        for entry in data:
            items.extend(_json_ld_items(entry))
        return items
    if isinstance(data, dict):
        if "@graph" in data:
            return _json_ld_items(data["@graph"])
        return [data]
    return []


def parse_json_ld(data: Any) -> list[StructuredEvent]:
    """Convert a parsed JSON-LD document into event candidates."""
    events: list[StructuredEvent] = []
    for item in _json_ld_items(data):
        if not (_is_event_type(item.get("@type")) or _is_event_type(item.get("type"))):
            continue
        events.append(
            StructuredEvent(
                title=_text_of(item.get("name")),
                start_date=_text_of(item.get("startDate")),
                end_date=_text_of(item.get("endDate")),
                location=_text_of(item.get("location")),
                description=_text_of(item.get("description")),
                organizer=_text_of(item.get("organizer")),
                url=_text_of(item.get("url")),
                source="json-ld",
                confidence=JSON_LD_CONFIDENCE,
                raw=item,
            )
        )
    return events


def _prop_value(el: Tag, attr: str, name: str) -> Optional[str]:
    found = el.select_one(f'[{attr}="{name}"]')
    if found is None:
        return None
    for key in ("content", "datetime"):
        value = found.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    text = found.get_text(" ", strip=True)
    return text or None


def _parse_markup_event(el: Tag, attr: str, source: str) -> Optional[StructuredEvent]:
    title = _prop_value(el, attr, "name")
    start = _prop_value(el, attr, "startDate")
    location = _prop_value(el, attr, "location")
    if not (title or start or location):
        return None
    return StructuredEvent(
        title=title,
        start_date=start,
        end_date=_prop_value(el, attr, "endDate"),
        location=location,
        description=_prop_value(el, attr, "description"),
        url=_prop_value(el, attr, "url"),
        source=source,
        confidence=MARKUP_CONFIDENCE,
    )


def extract_structured_events(soup: BeautifulSoup) -> list[StructuredEvent]:
    """Find JSON-LD, microdata and RDFa events in a parsed document.

    Must run before ``<script>`` elements are stripped.
    """
    events: list[StructuredEvent] = []

    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = script.string or script.get_text()
        if not raw or not raw.strip():
            continue
        try:
            data = json.loads(raw)
        except ValueError:
            logger.debug("Skipping invalid JSON-LD block (%d chars)", len(raw))
            continue
        events.extend(parse_json_ld(data))

    for el in soup.select('[itemtype*="Event"], [itemtype*="event"]'):
        event = _parse_markup_event(el, "itemprop", "microdata")
        if event:
            events.append(event)

    for el in soup.select('[typeof*="Event"], [typeof*="event"]'):
        event = _parse_markup_event(el, "property", "rdfa")
        if event:
            events.append(event)

    events = [e for e in events if e.title or e.start_date or e.location]
    if events:
        logger.debug(
            "Found %d structured events (%s)",
            len(events),
            ", ".join(sorted({e.source for e in events})),
        )
    return events


def extract_regex_events(text: str, max_events: int = 25) -> list[StructuredEvent]:
    """Heuristic candidates: a line with a calendar date, titled by its remainder.

    The title is the line with the date removed, or the previous line when the
    remainder is empty. Locations are searched in the line and the one after it.
    """
    events: list[StructuredEvent] = []
    lines = [line.strip() for line in text.splitlines()]

    for i, line in enumerate(lines):
        if not line:
            continue
        dates = find_all(_DATE_ONLY_PATTERNS, line, limit=1)
        if not dates:
            continue

        remainder = re.sub(r"\s+", " ", line.replace(dates[0], " ")).strip(" -|,:")
        title = remainder or (lines[i - 1] if i > 0 else "")
        next_line = lines[i + 1] if i + 1 < len(lines) else ""
        locations = find_all(LOCATION_PATTERNS, f"{line} {next_line}", limit=1)

        if not title or not re.search(r"[A-Za-z]{3}", title) or len(title) > _MAX_REGEX_TITLE:
            title = ""
        if not title and not locations:
            continue

        events.append(
            StructuredEvent(
                title=title or None,
                start_date=dates[0],
                location=locations[0] if locations else None,
                source="regex",
                confidence=REGEX_CONFIDENCE,
            )
        )
        if len(events) >= max_events:
            break

    return events
