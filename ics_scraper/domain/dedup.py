"""Event deduplication.

Two tiers:
- primary key: normalized title + start time + normalized location
- fallback key: normalized title + start time, used only when the primary pass
  would leave nothing

On a key collision the candidate with more complete information wins; ties keep
the existing entry. ``fuzzy_deduplicate`` adds a similarity-based pass on top.
"""

import logging
import re
from collections.abc import Callable, Iterable
from datetime import timedelta
from typing import Optional

from .models import DEFAULT_LOCATION, CalendarEvent

logger = logging.getLogger(__name__)

FUZZY_TIME_WINDOW = timedelta(seconds=60)
FUZZY_SIMILARITY_THRESHOLD = 0.8

EventKey = tuple[str, ...]


def normalize_text(value: Optional[str]) -> str:
    """Lowercase, trim and collapse internal whitespace."""
    if not value:
        return ""
    return re.sub(r"\s+", " ", value.strip().lower())


def primary_key(event: CalendarEvent) -> EventKey:
    return (
        normalize_text(event.title),
        event.start_time.isoformat(),
        normalize_text(event.location),
    )


def fallback_key(event: CalendarEvent) -> EventKey:
    return (normalize_text(event.title), event.start_time.isoformat())


def completeness_score(event: CalendarEvent) -> int:
    score = len(event.description or "")
    if event.location and event.location != DEFAULT_LOCATION:
        score += 50
    if event.organizer is not None:
        score += 25
    if event.url:
        score += 25
    return score


def has_more_info(candidate: CalendarEvent, existing: CalendarEvent) -> bool:
    """True when ``candidate`` is strictly more complete than ``existing``."""
    return completeness_score(candidate) > completeness_score(existing)


def _dedupe_by(events: Iterable[CalendarEvent], key_func: Callable[[CalendarEvent], EventKey]) -> list[CalendarEvent]:
    unique: dict[EventKey, CalendarEvent] = {}
    for event in events:
        try:
            key = key_func(event)
        except (AttributeError, TypeError, ValueError):
            # Malformed candidates cannot be keyed and are dropped here
            logger.debug("Skipping unkeyable event during dedup: %r", event)
            continue
        existing = unique.get(key)
        if existing is None or has_more_info(event, existing):
            unique[key] = event
    return list(unique.values())


def deduplicate_events(events: list[CalendarEvent]) -> list[CalendarEvent]:
    """Remove duplicates, falling back to a coarser key if the primary pass empties the list."""
    if not events:
        return []

    # Only unvalidated records (model_construct or raw LLM output with a non-string
    # location) fail the primary key; when every one fails, title+time is used
    result = _dedupe_by(events, primary_key)
    if not result:
        logger.warning("Primary dedup removed all %d events; retrying with title+time key", len(events))
        result = _dedupe_by(events, fallback_key)

    if len(result) != len(events):
        logger.debug("Deduplicated %d events to %d", len(events), len(result))
    return result


def levenshtein_distance(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def title_similarity(a: str, b: str) -> float:
    """1 minus the Levenshtein distance normalized by the longer title."""
    a, b = normalize_text(a), normalize_text(b)
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / longest


def is_fuzzy_duplicate(a: CalendarEvent, b: CalendarEvent) -> bool:
    if normalize_text(a.title) == normalize_text(b.title):
        if abs(a.start_time - b.start_time) <= FUZZY_TIME_WINDOW:
            return True
    return (
        a.start_time.date() == b.start_time.date()
        and title_similarity(a.title, b.title) > FUZZY_SIMILARITY_THRESHOLD
    )


def fuzzy_deduplicate(events: list[CalendarEvent]) -> list[CalendarEvent]:
    """Exact dedup followed by a pairwise similarity pass."""
    result: list[CalendarEvent] = []
    for event in deduplicate_events(events):
        for i, existing in enumerate(result):
            if is_fuzzy_duplicate(event, existing):
                if has_more_info(event, existing):
                    result[i] = event
                break
        else:
            result.append(event)

    if len(result) != len(events):
        logger.debug("Fuzzy dedup reduced %d events to %d", len(events), len(result))
    return result


def merge_event_lists(existing: list[CalendarEvent], new: list[CalendarEvent]) -> list[CalendarEvent]:
    """Return the events in ``new`` that are not already in ``existing``.

    Used when accumulating incrementally; matches on the title+start key so a
    re-emitted event with a slightly different location is not reported twice.
    """
    seen = {fallback_key(e) for e in existing}
    added: list[CalendarEvent] = []
    for event in new:
        key = fallback_key(event)
        if key in seen:
            continue
        seen.add(key)
        added.append(event)
    return added
