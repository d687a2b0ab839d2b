"""Prompt text for LLM event extraction."""

from __future__ import annotations

from typing import Optional

from ..domain.models import ExtractionContext

CONTENT_START = "---MARKDOWN CONTENT---"
CONTENT_END = "---END CONTENT---"

SYSTEM_PROMPT = """You are a calendar event extraction specialist. Extract EVERY event from the provided content.

Scan the entire content from beginning to end, including all sections, tables and lists.
Do not stop after a few events: if the content lists 50 events, extract all 50.

Return a single JSON object and nothing else:
{"events": [...], "detectedTimezone": "...", "warnings": [...]}

Each element of "events" has these fields:
- title: event name (string, required)
- startDateTime: LOCAL date-time in ISO 8601 WITHOUT a timezone suffix, e.g. "2025-08-12T18:00:00" (required).
  Use a plain date such as "2025-08-12" for all-day events.
- endDateTime: LOCAL date-time in ISO 8601 without a timezone suffix (optional)
- location: venue, address, "Online" or "Virtual" (string, optional)
- description: short summary (string, may be empty)
- organizer: {"name": ..., "email": ..., "phone": ...} (optional)
- timezone: IANA zone name such as "America/New_York" or "America/Chicago" (required when known)
- recurringRule: RFC 5545 RRULE such as "FREQ=WEEKLY;BYDAY=TU" (optional)
- url: link to the event page (optional)
- categories: list of short category labels (optional)

Top-level fields:
- detectedTimezone: the most likely IANA zone for the page as a whole, or "UNKNOWN"
- warnings: list of strings describing ambiguities

Rules:
- Never emit UTC times ("Z" or "+00:00") unless the source text itself states UTC.
  Times are wall-clock values in the event's own timezone.
- Resolve relative dates ("tomorrow", "next Friday") against the current date given below.
- Infer the timezone from context clues such as city names or abbreviations (CT, EST, PST).
- If the timezone is ambiguous, use "UNKNOWN" and add a warning.
- Output events in the order they appear. If you run out of space, stop after the last
  complete event; you will be asked to continue.
- Only return {"events": []} if the content truly has no events."""

CONTINUE_PROMPT = (
    "continue\n\n"
    "Resume the JSON exactly where the previous response stopped. "
    "Do not repeat events that were already emitted."
)


def build_user_prompt(content: str, context: Optional[ExtractionContext] = None) -> str:
    """Embed ambient hints and the content between explicit delimiters."""
    context = context or ExtractionContext()
    lines = [f"Current date: {context.current_date.isoformat()}"]
    if context.source_url:
        lines.append(f"Source URL: {context.source_url}")
    if context.timezone_hint:
        lines.append(f"Timezone hint: {context.timezone_hint}")
    if context.language:
        lines.append(f"Language: {context.language}")
    if context.additional_context:
        lines.append(f"Additional context: {context.additional_context}")

    return (
        "\n".join(lines)
        + f"\n\n{CONTENT_START}\n{content}\n{CONTENT_END}\n\n"
        + 'Extract all events from the above content and return them as JSON with an "events" array.'
    )
