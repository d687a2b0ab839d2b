"""Multi-turn LLM event extraction with truncation recovery.

The model is treated as an untrusted function that may stop mid-document. Each
turn is parsed immediately with the tolerant JSON parser, so events survive a
later failure. When a response looks truncated, the partial reply and a
continuation request are appended to the conversation and the model is asked
to resume, up to ``max_continuations`` times.

Turn loop:
    ACCUMULATING -> truncated?  -> continue (next turn)
                 -> otherwise   -> DONE
    LLM error with events accumulated -> DONE (salvaged, with a warning)
    LLM error with nothing accumulated -> FAILED (error re-raised)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..config_models import DEFAULT_TIMEZONE, AIConfiguration, RetryConfiguration
from ..content.timezone_intelligence import detect_timezone_with_confidence, normalize_timezone
from ..core.async_utils import Deadline, retry_async, run_in_waves
from ..core.exceptions import ErrorCode, ExtractionError, ScraperError
from ..domain.datetime_utils import UNKNOWN_TIMEZONE, parse_event_datetime
from ..domain.dedup import deduplicate_events, merge_event_lists
from ..domain.models import (
    DEFAULT_EVENT_DURATION,
    CalendarEvent,
    EventStatus,
    ExtractionContext,
    Organizer,
    SemanticChunk,
    TokenUsage,
)
from .llm_client import LLMClient, LLMResponse, Message
from .partial_json import has_json_content, parse_partial_json
from .prompts import CONTINUE_PROMPT, SYSTEM_PROMPT, build_user_prompt

logger = logging.getLogger(__name__)

# Claude Haiku 4.5 list pricing, USD per million tokens
INPUT_COST_PER_MTOK = 1.0
OUTPUT_COST_PER_MTOK = 5.0
ESTIMATED_OUTPUT_TOKENS = 2000

# Minimum confidence for a timezone detected from chunk text to become the hint
TIMEZONE_DETECTION_THRESHOLD = 0.5

_CUT_FIELD_NAME = re.compile(r'"(?:tit|titl|start[A-Za-z]*|loc[A-Za-z]*)$')

EventCallback = Callable[[CalendarEvent], Optional[Awaitable[None]]]


# -- payload variants ----------------------------------------------------------


@dataclass
class EventsArrayPayload:
    """``{"events": [...], "detectedTimezone": ..., "warnings": [...]}``"""

    events: list[Any]
    detected_timezone: Optional[str] = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class DirectArrayPayload:
    """A bare ``[...]`` of event records."""

    events: list[Any]


@dataclass
class SingleEventPayload:
    """One event object with at least a title and a start."""

    event: dict[str, Any]


Payload = Union[EventsArrayPayload, DirectArrayPayload, SingleEventPayload]


def _start_value(record: dict[str, Any]) -> Any:
    for key in ("startDateTime", "startTime", "start_time", "start"):
        if record.get(key):
            return record[key]
    return None


def _end_value(record: dict[str, Any]) -> Any:
    for key in ("endDateTime", "endTime", "end_time", "end"):
        if record.get(key):
            return record[key]
    return None


def classify_payload(value: Any) -> Optional[Payload]:
    """Try the three extraction strategies in order."""
    if isinstance(value, dict) and isinstance(value.get("events"), list):
        warnings = value.get("warnings")
        detected = value.get("detectedTimezone")
        return EventsArrayPayload(
            events=value["events"],
            detected_timezone=detected if isinstance(detected, str) else None,
            warnings=[str(w) for w in warnings] if isinstance(warnings, list) else [],
        )
    if isinstance(value, list):
        return DirectArrayPayload(events=value)
    if isinstance(value, dict) and value.get("title") and _start_value(value):
        return SingleEventPayload(event=value)
    return None


def payload_records(payload: Payload) -> list[Any]:
    if isinstance(payload, EventsArrayPayload):
        return payload.events
    if isinstance(payload, DirectArrayPayload):
        return payload.events
    if isinstance(payload, SingleEventPayload):
        return [payload.event]
    raise TypeError(f"Unknown payload type: {type(payload).__name__}")


# -- truncation ----------------------------------------------------------------


@dataclass
class TruncationCheck:
    truncated: bool
    reasons: list[str] = field(default_factory=list)


def _has_unclosed_string(text: str) -> bool:
    in_string = False
    escaped = False
    for char in text:
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = in_string
        elif char == '"':
            in_string = not in_string
    return in_string


def detect_truncation(response: LLMResponse, check_text: bool = True) -> TruncationCheck:
    """Decide whether a response was cut off.

    Token signals (stop reason, output at the cap) are authoritative. Text
    signals only apply to responses that contain JSON; a response without any
    JSON is a natural stop. A clean document ending in ``}`` or ``]`` with
    balanced quotes is not truncated.
    """
    reasons: list[str] = []
    if response.stop_reason == "max_tokens":
        reasons.append("stop_reason=max_tokens")
    if response.max_tokens and response.output_tokens >= response.max_tokens:
        reasons.append("output tokens at cap")

    text = response.text.strip()
    if check_text and has_json_content(text):
        if text.endswith("```"):
            text = text.rstrip("`").strip()
        if not text.endswith(("}", "]")):
            reasons.append("does not end with a closing brace")
        if text.endswith(","):
            reasons.append("ends with a comma")
        if _has_unclosed_string(text):
            reasons.append("unclosed string")
        if _CUT_FIELD_NAME.search(text):
            reasons.append("cut off inside a field name")

    return TruncationCheck(truncated=bool(reasons), reasons=reasons)


# -- record conversion ---------------------------------------------------------


def _organizer_from(value: Any) -> Optional[Organizer]:
    if isinstance(value, dict):
        name = value.get("name") or ""
        email = value.get("email")
        phone = value.get("phone")
        if not (name or email or phone):
            return None
        return Organizer(name=str(name), email=email or None, phone=phone or None)
    if isinstance(value, str) and value.strip():
        return Organizer(name=value.strip())
    return None


def _categories_from(value: Any) -> list[str]:
    if isinstance(value, str):
        return [c.strip() for c in value.split(",") if c.strip()]
    if isinstance(value, list):
        return [str(c).strip() for c in value if str(c).strip()]
    return []


def _status_from(value: Any) -> EventStatus:
    if isinstance(value, str):
        try:
            return EventStatus(value.strip().upper())
        except ValueError:
            pass
    return EventStatus.CONFIRMED


def resolve_record_timezone(
    record: dict[str, Any],
    context: ExtractionContext,
    default_timezone: str,
    detected_timezone: Optional[str] = None,
) -> str:
    """Explicit record zone, then the page-level detection, then the hint, then the default."""
    for candidate in (record.get("timezone"), detected_timezone, context.timezone_hint):
        zone = normalize_timezone(candidate) if isinstance(candidate, str) else UNKNOWN_TIMEZONE
        if zone != UNKNOWN_TIMEZONE:
            return zone
    return default_timezone


def convert_record(
    record: Any,
    context: ExtractionContext,
    default_timezone: str = DEFAULT_TIMEZONE,
    detected_timezone: Optional[str] = None,
) -> Optional[CalendarEvent]:
    """Convert one raw LLM record into a CalendarEvent, or None if unusable."""
    if not isinstance(record, dict):
        return None
    title = record.get("title")
    if not isinstance(title, str) or not title.strip():
        return None

    timezone = resolve_record_timezone(record, context, default_timezone, detected_timezone)
    parsed_start = parse_event_datetime(_start_value(record), timezone, context.current_date)
    if parsed_start is None:
        logger.debug("Dropping %r: unparseable start %r", title, _start_value(record))
        return None
    start, all_day = parsed_start

    end = None
    parsed_end = parse_event_datetime(_end_value(record), timezone, context.current_date)
    if parsed_end is not None:
        end, end_date_only = parsed_end
        if all_day and end_date_only:
            # Date-only ends are inclusive
            end = end + timedelta(days=1)
    if end is None:
        end = start + (timedelta(days=1) if all_day else DEFAULT_EVENT_DURATION)

    try:
        return CalendarEvent(
            title=title.strip(),
            start_time=start,
            end_time=end,
            location=record.get("location") if isinstance(record.get("location"), str) else None,
            description=str(record.get("description") or "").strip(),
            timezone=timezone,
            organizer=_organizer_from(record.get("organizer")),
            recurring_rule=record.get("recurringRule") or record.get("recurring_rule") or None,
            categories=_categories_from(record.get("categories")),
            status=_status_from(record.get("status")),
            url=record.get("url") if isinstance(record.get("url"), str) else None,
            all_day=all_day,
            source="llm",
        )
    except PydanticValidationError as e:
        logger.debug("Dropping %r: %d validation errors", title, e.error_count())
        return None


# -- cost ------------------------------------------------------------------------


def compute_cost(input_tokens: int, output_tokens: int) -> float:
    return (input_tokens / 1_000_000) * INPUT_COST_PER_MTOK + (output_tokens / 1_000_000) * OUTPUT_COST_PER_MTOK


def estimate_cost(content: str, output_tokens: int = ESTIMATED_OUTPUT_TOKENS) -> float:
    """Rough USD cost of one extraction request for ``content``."""
    return compute_cost(math.ceil(len(content) / 4), output_tokens)


# -- engine ----------------------------------------------------------------------


@dataclass
class ExtractionOutcome:
    """Events accumulated by one extraction (or one batch of them)."""

    events: list[CalendarEvent] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    turns: int = 0
    truncated_turns: int = 0
    detected_timezone: Optional[str] = None
    salvaged_error: Optional[ScraperError] = None
    failed_chunks: int = 0


async def _emit(callback: Optional[EventCallback], event: CalendarEvent) -> None:
    if callback is None:
        return
    result = callback(event)
    if inspect.isawaitable(result):
        await result


class ExtractionEngine:
    """Drives the conversational extraction loop over an injected LLMClient."""

    def __init__(
        self,
        client: LLMClient,
        ai_config: Optional[AIConfiguration] = None,
        retry: Optional[RetryConfiguration] = None,
        default_timezone: str = DEFAULT_TIMEZONE,
        auto_detect_timezone: bool = True,
        system_prompt: str = SYSTEM_PROMPT,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.ai_config = ai_config or AIConfiguration()
        self.retry = retry or RetryConfiguration()
        self.default_timezone = default_timezone
        self.auto_detect_timezone = auto_detect_timezone
        self.system_prompt = system_prompt
        self._sleep = sleep

    def resolve_timezone_hint(self, content: str, context: ExtractionContext) -> str:
        """Context hint, else a confident detection from the text, else the default."""
        hint = normalize_timezone(context.timezone_hint) if context.timezone_hint else UNKNOWN_TIMEZONE
        if hint != UNKNOWN_TIMEZONE:
            return hint
        if self.auto_detect_timezone:
            detection = detect_timezone_with_confidence(content, self.default_timezone)
            if detection.confidence >= TIMEZONE_DETECTION_THRESHOLD:
                logger.debug("Detected timezone %s from %r", detection.timezone, detection.matched)
                return detection.timezone
        return self.default_timezone

    async def _complete_once(self, messages: list[Message], deadline: Optional[Deadline]) -> LLMResponse:
        timeout = self.ai_config.request_timeout
        if deadline is not None:
            timeout = deadline.bound(timeout)
        try:
            return await asyncio.wait_for(self.client.complete(self.system_prompt, list(messages)), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ExtractionError(
                f"LLM request timed out after {timeout:.1f}s",
                code=ErrorCode.TIMEOUT,
                retryable=True,
            ) from e
        except ScraperError:
            raise
        except Exception as e:
            # Anything the client raises untyped is a non-retryable API failure
            raise ExtractionError(
                f"LLM client failed: {e}",
                code=ErrorCode.AI_API_ERROR,
                details={"exception": type(e).__name__},
                retryable=False,
            ) from e

    async def _complete(self, messages: list[Message], deadline: Optional[Deadline]) -> LLMResponse:
        return await retry_async(
            lambda: self._complete_once(messages, deadline),
            max_attempts=self.retry.max_attempts,
            initial_delay=self.retry.initial_delay,
            max_delay=self.retry.max_delay,
            backoff_multiplier=self.retry.backoff_multiplier,
            sleep=self._sleep,
            operation="LLM request",
        )

    def _parse_turn(self, text: str, accumulated: str) -> tuple[list[Any], Optional[str], list[str], bool]:
        """Records from this turn's text and from all turns joined.

        A continuation may either restart the JSON document or resume it
        mid-value; parsing both views covers both styles.
        """
        records: list[Any] = []
        warnings: list[str] = []
        detected: Optional[str] = None
        parsed_any = False

        views = [text] if accumulated == text else [text, accumulated]
        for view in views:
            parsed = parse_partial_json(view)
            if parsed is None:
                continue
            payload = classify_payload(parsed.value)
            if payload is None:
                continue
            parsed_any = True
            records.extend(payload_records(payload))
            if isinstance(payload, EventsArrayPayload):
                detected = detected or payload.detected_timezone
                warnings.extend(payload.warnings)
        return records, detected, warnings, parsed_any

    async def extract_events(
        self,
        content: str,
        context: Optional[ExtractionContext] = None,
        deadline: Optional[Deadline] = None,
        on_event: Optional[EventCallback] = None,
    ) -> ExtractionOutcome:
        """Extract events from one chunk or document.

        Raises:
            ExtractionError: The first response had no JSON, or the LLM failed
                before any event was accumulated
        """
        context = context or ExtractionContext()
        context = context.model_copy(update={"timezone_hint": self.resolve_timezone_hint(content, context)})

        messages: list[Message] = [{"role": "user", "content": build_user_prompt(content, context)}]
        outcome = ExtractionOutcome()
        accumulated = ""
        max_turns = self.ai_config.max_continuations + 1

        while outcome.turns < max_turns:
            if deadline is not None and deadline.expired:
                outcome.warnings.append(f"Extraction stopped early after {outcome.turns} turns: deadline reached")
                logger.warning("Deadline reached; keeping %d accumulated events", len(outcome.events))
                break

            try:
                response = await self._complete(messages, deadline)
            except ScraperError as e:
                if outcome.events:
                    outcome.salvaged_error = e
                    outcome.warnings.append(
                        f"LLM error after {outcome.turns} turns ({e.code.value}); kept {len(outcome.events)} events"
                    )
                    logger.warning(
                        "LLM failed on turn %d (%s); salvaging %d events",
                        outcome.turns + 1,
                        e.message,
                        len(outcome.events),
                    )
                    break
                raise

            outcome.turns += 1
            outcome.usage.add(
                TokenUsage(
                    input_tokens=response.input_tokens,
                    output_tokens=response.output_tokens,
                    estimated_cost=compute_cost(response.input_tokens, response.output_tokens),
                )
            )

            text = response.text
            if not has_json_content(text):
                if outcome.turns == 1:
                    raise ExtractionError(
                        "LLM response contained no JSON",
                        code=ErrorCode.AI_INVALID_RESPONSE,
                        details={"preview": text[:200]},
                        retryable=False,
                    )
                logger.info("Turn %d returned no JSON; treating as end of output", outcome.turns)
                break

            accumulated += text
            records, detected, llm_warnings, parsed_any = self._parse_turn(text, accumulated)
            if not parsed_any:
                logger.warning("Could not parse JSON from turn %d; skipping it", outcome.turns)
                outcome.warnings.append(f"Unparseable response on turn {outcome.turns}")
            if detected and outcome.detected_timezone is None and normalize_timezone(detected) != UNKNOWN_TIMEZONE:
                outcome.detected_timezone = normalize_timezone(detected)
            for warning in llm_warnings:
                if warning not in outcome.warnings:
                    outcome.warnings.append(warning)

            converted = [
                event
                for event in (
                    convert_record(r, context, self.default_timezone, outcome.detected_timezone) for r in records
                )
                if event is not None
            ]
            added = merge_event_lists(outcome.events, converted)
            outcome.events.extend(added)
            for event in added:
                await _emit(on_event, event)
            logger.info(
                "Turn %d: %d records, %d new events (%d total)",
                outcome.turns,
                len(records),
                len(added),
                len(outcome.events),
            )

            check = detect_truncation(response)
            if not check.truncated:
                break
            outcome.truncated_turns += 1
            if outcome.turns >= max_turns:
                outcome.warnings.append(
                    f"Reached maximum continuations ({self.ai_config.max_continuations}); output may be incomplete"
                )
                break

            logger.info("Response truncated (%s); requesting continuation", ", ".join(check.reasons))
            messages.append({"role": "assistant", "content": text})
            messages.append({"role": "user", "content": CONTINUE_PROMPT})
            if self.ai_config.continuation_delay > 0:
                await self._sleep(self.ai_config.continuation_delay)

        outcome.events = deduplicate_events(outcome.events)
        return outcome

    async def batch_extract(
        self,
        chunks: Sequence[Union[SemanticChunk, str]],
        context: Optional[ExtractionContext] = None,
        concurrency: int = 3,
        delay: float = 1.0,
        deadline: Optional[Deadline] = None,
        on_event: Optional[EventCallback] = None,
    ) -> ExtractionOutcome:
        """Extract from chunks in parallel waves and merge the results.

        A failed chunk contributes zero events and a warning. The first error is
        re-raised only when every chunk failed and nothing was extracted.
        """
        combined = ExtractionOutcome()
        if not chunks:
            return combined

        emitted: list[CalendarEvent] = []

        async def forward(event: CalendarEvent) -> None:
            if merge_event_lists(emitted, [event]):
                emitted.append(event)
                await _emit(on_event, event)

        async def extract_chunk(chunk: Union[SemanticChunk, str]) -> ExtractionOutcome:
            content = chunk.content if isinstance(chunk, SemanticChunk) else chunk
            return await self.extract_events(content, context, deadline, forward)

        results = await run_in_waves(chunks, extract_chunk, concurrency=concurrency, delay=delay, deadline=deadline, sleep=self._sleep)

        first_error: Optional[BaseException] = None
        for index, result in enumerate(results):
            if isinstance(result, ExtractionOutcome):
                combined.events.extend(result.events)
                combined.warnings.extend(w for w in result.warnings if w not in combined.warnings)
                combined.usage.add(result.usage)
                combined.turns += result.turns
                combined.truncated_turns += result.truncated_turns
                combined.detected_timezone = combined.detected_timezone or result.detected_timezone
                continue
            if not isinstance(result, Exception):
                raise result
            first_error = first_error or result
            combined.failed_chunks += 1
            logger.warning("Chunk %d extraction failed: %s", index + 1, result)
            combined.warnings.append(f"Chunk {index + 1} failed: {result}")

        skipped = len(chunks) - len(results)
        if skipped:
            combined.warnings.append(f"Skipped {skipped} chunks: deadline reached")

        combined.events = deduplicate_events(combined.events)
        if first_error is not None and not combined.events and combined.failed_chunks == len(results):
            raise first_error
        logger.info(
            "Batch extraction: %d chunks, %d events, %d failed chunks",
            len(results),
            len(combined.events),
            combined.failed_chunks,
        )
        return combined
