"""Post-dedup event validation.

Invalid events are not fatal: they land in ``invalid_events`` with one
``ValidationError`` record per failing field and are excluded from ICS output.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..content.timezone_intelligence import validate_event_times
from .datetime_utils import parse_event_datetime
from .models import DEFAULT_EVENT_DURATION, CalendarEvent

logger = logging.getLogger(__name__)

EventInput = Union[CalendarEvent, dict[str, Any]]


@dataclass
class ValidationError:
    """One failing field of one event."""

    event_index: int
    field: str
    message: str
    value: Any = None

    def __str__(self) -> str:
        return f"Event {self.event_index}: {self.field} - {self.message}"


@dataclass
class ValidationResult:
    valid: bool
    errors: list[ValidationError] = field(default_factory=list)
    validated_events: list[CalendarEvent] = field(default_factory=list)
    invalid_events: list[Any] = field(default_factory=list)

    @property
    def warnings(self) -> list[str]:
        return [str(e) for e in self.errors]


def _get(event: EventInput, *names: str) -> Any:
    for name in names:
        value = event.get(name) if isinstance(event, dict) else getattr(event, name, None)
        if value is not None:
            return value
    return None


def _as_datetime(value: Any) -> Optional[datetime]:
    parsed = parse_event_datetime(value)
    return parsed[0] if parsed else None


def _check_event(index: int, event: EventInput) -> list[ValidationError]:
    errors: list[ValidationError] = []

    title = _get(event, "title")
    if not isinstance(title, str) or not title.strip():
        errors.append(ValidationError(index, "title", "Title is required", title))

    raw_start = _get(event, "start_time", "startTime", "startDateTime")
    start = _as_datetime(raw_start)
    if raw_start is None:
        errors.append(ValidationError(index, "start_time", "Start time is required", raw_start))
    elif start is None:
        errors.append(ValidationError(index, "start_time", "Start time is not a valid date", raw_start))

    raw_end = _get(event, "end_time", "endTime", "endDateTime")
    if raw_end is not None:
        end = _as_datetime(raw_end)
        if end is None:
            errors.append(ValidationError(index, "end_time", "End time is not a valid date", raw_end))
        elif start is not None and end <= start:
            errors.append(ValidationError(index, "end_time", "End time must be after start time", raw_end))

    return errors


def _coerce(event: EventInput) -> CalendarEvent:
    if isinstance(event, CalendarEvent):
        return event
    start = _as_datetime(_get(event, "start_time", "startTime", "startDateTime"))
    end = _as_datetime(_get(event, "end_time", "endTime", "endDateTime"))
    data = {
        key: value
        for key, value in event.items()
        if key not in ("startTime", "startDateTime", "endTime", "endDateTime")
    }
    data["start_time"] = start
    data["end_time"] = end or (start + DEFAULT_EVENT_DURATION if start else None)
    return CalendarEvent.model_validate(data)


def validate_events(events: list[EventInput]) -> ValidationResult:
    """Split events into valid and invalid buckets with per-field error records."""
    errors: list[ValidationError] = []
    validated: list[CalendarEvent] = []
    invalid: list[Any] = []

    for index, event in enumerate(events):
        event_errors = _check_event(index, event)
        if not event_errors:
            try:
                validated.append(_coerce(event))
                continue
            except PydanticValidationError as e:
                event_errors.append(ValidationError(index, "event", f"Invalid event data: {e.error_count()} errors"))

        invalid.append(event)
        errors.extend(event_errors)

    if invalid:
        logger.warning("%d of %d events failed validation", len(invalid), len(events))
    return ValidationResult(
        valid=not errors,
        errors=errors,
        validated_events=validated,
        invalid_events=invalid,
    )


def time_warnings(events: list[CalendarEvent], now: Optional[datetime] = None) -> list[str]:
    """Non-fatal sanity warnings: very long, in the past, far future, unknown zone."""
    warnings: list[str] = []
    for event in events:
        check = validate_event_times(event.start_time, event.end_time, event.timezone, now=now)
        warnings.extend(f'"{event.title}": {message}' for message in check.warnings)
    return warnings
