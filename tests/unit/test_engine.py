"""Tests for the multi-turn LLM extraction engine."""

import asyncio
from datetime import datetime

import pytest

from ics_scraper.config_models import AIConfiguration, RetryConfiguration
from ics_scraper.core.async_utils import Deadline
from ics_scraper.core.exceptions import ErrorCode, ExtractionError
from ics_scraper.domain.models import ExtractionContext
from ics_scraper.extraction.engine import (
    DirectArrayPayload,
    EventsArrayPayload,
    ExtractionEngine,
    SingleEventPayload,
    classify_payload,
    compute_cost,
    convert_record,
    detect_truncation,
    estimate_cost,
)
from ics_scraper.extraction.llm_client import LLMResponse
from tests.fixtures.fakes import FakeLLMClient, llm_events, llm_text, no_sleep

pytestmark = pytest.mark.unit

GALA = {"title": "Spring Gala", "startDateTime": "2025-06-10T19:00:00", "location": "City Hall"}
PICNIC = {"title": "Picnic", "startDateTime": "2025-06-11T12:00:00", "location": "Riverside"}


def create_engine(client: FakeLLMClient, max_continuations: int = 10) -> ExtractionEngine:
    """Engine with no pauses and a single attempt per request."""
    return ExtractionEngine(
        client,
        ai_config=AIConfiguration(continuation_delay=0, max_continuations=max_continuations),
        retry=RetryConfiguration(max_attempts=1, initial_delay=0),
        default_timezone="America/New_York",
        sleep=no_sleep,
    )


class TestDetectTruncation:
    """Test truncation heuristics."""

    def test_detect_when_cut_inside_field_name_then_truncated(self) -> None:
        """A reply ending in the middle of a field name is truncated."""
        check = detect_truncation(llm_text('{"events": [{"title": "A", "loc'))
        assert check.truncated is True
        assert "cut off inside a field name" in check.reasons

    def test_detect_when_clean_short_reply_then_not_truncated(self) -> None:
        """A complete document with a natural stop is not truncated."""
        check = detect_truncation(llm_events([GALA]))
        assert check.truncated is False
        assert check.reasons == []

    def test_detect_when_stop_reason_max_tokens_then_truncated(self) -> None:
        """The max_tokens stop reason is authoritative even for valid JSON."""
        check = detect_truncation(llm_events([GALA], stop_reason="max_tokens"))
        assert check.truncated is True

    def test_detect_when_output_at_token_cap_then_truncated(self) -> None:
        """Output tokens at the cap signal truncation."""
        check = detect_truncation(llm_events([GALA], output_tokens=8192, max_tokens=8192))
        assert check.truncated is True

    def test_detect_when_prose_without_json_then_not_truncated(self) -> None:
        """A reply without JSON is a natural stop."""
        assert detect_truncation(llm_text("No further events.")).truncated is False

    def test_detect_when_escaped_quote_in_value_then_not_truncated(self) -> None:
        """Escaped quotes inside strings do not count as unclosed strings."""
        check = detect_truncation(llm_text('{"events": [{"title": "The \\"Big\\" Show"}]}'))
        assert check.truncated is False

    def test_detect_when_trailing_comma_then_truncated(self) -> None:
        """A reply ending in a comma is cut off."""
        check = detect_truncation(llm_text('{"events": [{"title": "A"},'))
        assert check.truncated is True
        assert "ends with a comma" in check.reasons


class TestClassifyPayload:
    """Test the three payload strategies."""

    def test_classify_when_events_key_then_events_array(self) -> None:
        """An object with an events list is the canonical shape."""
        payload = classify_payload({"events": [GALA], "detectedTimezone": "America/Chicago", "warnings": ["x"]})
        assert isinstance(payload, EventsArrayPayload)
        assert payload.detected_timezone == "America/Chicago"
        assert payload.warnings == ["x"]

    def test_classify_when_bare_list_then_direct_array(self) -> None:
        """A bare list is accepted as events."""
        assert isinstance(classify_payload([GALA]), DirectArrayPayload)

    def test_classify_when_single_event_object_then_single(self) -> None:
        """One object with title and start is a single event."""
        assert isinstance(classify_payload(GALA), SingleEventPayload)

    def test_classify_when_unrelated_object_then_none(self) -> None:
        """Objects matching no strategy are rejected."""
        assert classify_payload({"message": "hello"}) is None


class TestConvertRecord:
    """Test raw record to CalendarEvent conversion."""

    def test_convert_when_no_end_then_default_two_hours(self, extraction_context: ExtractionContext) -> None:
        """A missing end defaults to start plus two hours."""
        event = convert_record(GALA, extraction_context, "America/New_York")
        assert event is not None
        assert event.start_time == datetime(2025, 6, 10, 19, 0)
        assert event.end_time == datetime(2025, 6, 10, 21, 0)
        assert event.timezone == "America/New_York"
        assert event.source == "llm"

    def test_convert_when_date_only_then_all_day(self, extraction_context: ExtractionContext) -> None:
        """Date-only starts become all-day events ending the next day."""
        event = convert_record({"title": "Fair", "startDateTime": "2025-07-04"}, extraction_context)
        assert event is not None
        assert event.all_day is True
        assert event.end_time == datetime(2025, 7, 5)

    def test_convert_when_record_timezone_unknown_then_uses_default(
        self, extraction_context: ExtractionContext
    ) -> None:
        """An UNKNOWN record zone falls back to the engine default."""
        record = {**GALA, "timezone": "UNKNOWN"}
        event = convert_record(record, extraction_context, "America/Denver")
        assert event is not None
        assert event.timezone == "America/Denver"

    def test_convert_when_offset_in_string_then_local_wall_clock(
        self, extraction_context: ExtractionContext
    ) -> None:
        """An explicit offset is converted to the record zone's wall clock, not applied twice."""
        record = {"title": "Talk", "startDateTime": "2025-06-10T18:00:00-05:00", "timezone": "America/Chicago"}
        event = convert_record(record, extraction_context)
        assert event is not None
        assert event.start_time == datetime(2025, 6, 10, 18, 0)
        assert event.start_time.tzinfo is None

    def test_convert_when_relative_date_then_resolved_against_context(
        self, extraction_context: ExtractionContext
    ) -> None:
        """Relative words resolve against the context's current date."""
        event = convert_record({"title": "Standup", "startDateTime": "tomorrow at 9am"}, extraction_context)
        assert event is not None
        assert event.start_time == datetime(2025, 6, 2, 9, 0)

    @pytest.mark.parametrize(
        "record",
        [
            {"startDateTime": "2025-06-10T19:00:00"},
            {"title": "   ", "startDateTime": "2025-06-10T19:00:00"},
            {"title": "No date"},
            {"title": "Bad date", "startDateTime": "not a date at all"},
            "just a string",
        ],
    )
    def test_convert_when_unusable_then_none(self, record: object, extraction_context: ExtractionContext) -> None:
        """Records without a title or a parseable start are dropped."""
        assert convert_record(record, extraction_context) is None

    def test_convert_when_organizer_and_categories_then_mapped(
        self, extraction_context: ExtractionContext
    ) -> None:
        """Optional fields are carried across."""
        record = {
            **GALA,
            "organizer": {"name": "Friends of the Park", "email": "friends@example.org"},
            "categories": "music, outdoor",
            "status": "tentative",
        }
        event = convert_record(record, extraction_context)
        assert event is not None
        assert event.organizer is not None
        assert event.organizer.email == "friends@example.org"
        assert event.categories == ["music", "outdoor"]
        assert event.status == "TENTATIVE"


class TestCost:
    """Test token cost accounting."""

    def test_compute_cost_uses_per_million_pricing(self) -> None:
        """One million tokens each way costs input plus output price."""
        assert compute_cost(1_000_000, 1_000_000) == pytest.approx(6.0)

    def test_estimate_cost_grows_with_content(self) -> None:
        """Longer content costs more."""
        assert estimate_cost("x" * 40_000) > estimate_cost("x" * 400)


class TestExtractEvents:
    """Test the conversational extraction loop."""

    async def test_extract_when_single_clean_reply_then_one_turn(
        self, extraction_context: ExtractionContext
    ) -> None:
        """A clean reply ends the loop after one turn."""
        client = FakeLLMClient([llm_events([GALA, PICNIC])])
        outcome = await create_engine(client).extract_events("Events page", extraction_context)

        assert [e.title for e in outcome.events] == ["Spring Gala", "Picnic"]
        assert outcome.turns == 1
        assert outcome.truncated_turns == 0
        assert outcome.usage.input_tokens == 1000
        assert outcome.usage.estimated_cost > 0

    async def test_extract_when_truncated_then_requests_continuation(
        self, extraction_context: ExtractionContext
    ) -> None:
        """A truncated reply triggers a continuation turn that appends history."""
        first = llm_text(
            '{"events": [{"title": "Spring Gala", "startDateTime": "2025-06-10T19:00:00"}, {"title": "Picnic", "loc',
            stop_reason="max_tokens",
        )
        client = FakeLLMClient([first, llm_events([PICNIC])])
        outcome = await create_engine(client).extract_events("Events page", extraction_context)

        assert [e.title for e in outcome.events] == ["Spring Gala", "Picnic"]
        assert outcome.turns == 2
        assert outcome.truncated_turns == 1
        second_call = client.calls[1]
        assert [m["role"] for m in second_call] == ["user", "assistant", "user"]
        assert second_call[1]["content"] == first.text
        assert second_call[2]["content"].startswith("continue")

    async def test_extract_when_duplicate_records_then_single_event(
        self, extraction_context: ExtractionContext
    ) -> None:
        """The same event listed twice is reported once."""
        client = FakeLLMClient([llm_events([GALA, dict(GALA)])])
        outcome = await create_engine(client).extract_events("Events page", extraction_context)
        assert len(outcome.events) == 1

    async def test_extract_when_error_after_two_turns_then_salvages(
        self, extraction_context: ExtractionContext
    ) -> None:
        """Events from earlier turns survive a later LLM failure."""
        error = ExtractionError("boom", code=ErrorCode.AI_API_ERROR, retryable=False)
        client = FakeLLMClient(
            [
                llm_text('{"events": [{"title": "Spring Gala", "startDateTime": "2025-06-10T19:00:00"}, {"ti', stop_reason="max_tokens"),
                llm_text('{"events": [{"title": "Picnic", "startDateTime": "2025-06-11T12:00:00"}, {"ti', stop_reason="max_tokens"),
                error,
            ]
        )
        outcome = await create_engine(client).extract_events("Events page", extraction_context)

        assert len(outcome.events) == 2
        assert outcome.salvaged_error is error
        assert any("kept 2 events" in w for w in outcome.warnings)

    async def test_extract_when_client_raises_untyped_error_after_two_turns_then_salvages(
        self, extraction_context: ExtractionContext
    ) -> None:
        """A plain exception from the client still keeps earlier events."""
        client = FakeLLMClient(
            [
                llm_text('{"events": [{"title": "Spring Gala", "startDateTime": "2025-06-10T19:00:00"}, {"ti', stop_reason="max_tokens"),
                llm_text('{"events": [{"title": "Picnic", "startDateTime": "2025-06-11T12:00:00"}, {"ti', stop_reason="max_tokens"),
                RuntimeError("connection reset"),
            ]
        )
        outcome = await create_engine(client).extract_events("Events page", extraction_context)

        assert sorted(e.title for e in outcome.events) == ["Picnic", "Spring Gala"]
        assert isinstance(outcome.salvaged_error, ExtractionError)
        assert outcome.salvaged_error.code == ErrorCode.AI_API_ERROR
        assert isinstance(outcome.salvaged_error.__cause__, RuntimeError)
        assert len(client.calls) == 3

    async def test_extract_when_client_raises_untyped_error_first_then_api_error(
        self, extraction_context: ExtractionContext
    ) -> None:
        """Without events the wrapped error propagates and is not retried."""
        client = FakeLLMClient([RuntimeError("connection reset")])
        engine = ExtractionEngine(
            client,
            ai_config=AIConfiguration(continuation_delay=0),
            retry=RetryConfiguration(max_attempts=3, initial_delay=0),
            sleep=no_sleep,
        )
        with pytest.raises(ExtractionError) as exc_info:
            await engine.extract_events("Events page", extraction_context)

        assert exc_info.value.code == ErrorCode.AI_API_ERROR
        assert exc_info.value.retryable is False
        assert len(client.calls) == 1

    async def test_extract_when_error_before_any_event_then_raises(
        self, extraction_context: ExtractionContext
    ) -> None:
        """With nothing accumulated the LLM error propagates."""
        client = FakeLLMClient([ExtractionError("down", code=ErrorCode.AI_API_ERROR)])
        with pytest.raises(ExtractionError):
            await create_engine(client).extract_events("Events page", extraction_context)

    async def test_extract_when_first_reply_has_no_json_then_invalid_response(
        self, extraction_context: ExtractionContext
    ) -> None:
        """A first reply without JSON is an invalid response."""
        client = FakeLLMClient([llm_text("Sorry, I cannot help with that.")])
        with pytest.raises(ExtractionError) as exc_info:
            await create_engine(client).extract_events("Events page", extraction_context)
        assert exc_info.value.code == ErrorCode.AI_INVALID_RESPONSE

    async def test_extract_when_continuation_has_no_json_then_stops(
        self, extraction_context: ExtractionContext
    ) -> None:
        """A later reply without JSON ends the loop normally."""
        client = FakeLLMClient([llm_events([GALA], stop_reason="max_tokens"), llm_text("That is all.")])
        outcome = await create_engine(client).extract_events("Events page", extraction_context)
        assert len(outcome.events) == 1
        assert outcome.turns == 2

    async def test_extract_when_always_truncated_then_stops_at_limit(
        self, extraction_context: ExtractionContext
    ) -> None:
        """The loop makes at most max_continuations + 1 requests."""
        client = FakeLLMClient(responder=lambda _messages: llm_events([GALA], stop_reason="max_tokens"))
        outcome = await create_engine(client, max_continuations=2).extract_events("Events page", extraction_context)

        assert len(client.calls) == 3
        assert len(outcome.events) == 1
        assert any("maximum continuations" in w for w in outcome.warnings)

    async def test_extract_when_ct_in_content_then_chicago_wall_clock(
        self, extraction_context: ExtractionContext
    ) -> None:
        """"6PM CT" makes Chicago the hint and the event keeps 18:00 local."""
        client = FakeLLMClient([llm_events([{"title": "Jazz Night", "startDateTime": "2025-06-13T18:00:00"}])])
        outcome = await create_engine(client).extract_events(
            "Jazz Night, Friday June 13 at 6PM CT", extraction_context
        )

        event = outcome.events[0]
        assert event.timezone == "America/Chicago"
        assert event.start_time == datetime(2025, 6, 13, 18, 0)
        assert "Timezone hint: America/Chicago" in client.calls[0][0]["content"]

    async def test_extract_when_llm_detects_timezone_then_recorded(
        self, extraction_context: ExtractionContext
    ) -> None:
        """A detectedTimezone in the payload applies to records without a zone."""
        client = FakeLLMClient([llm_text('{"events": [' + '{"title": "A", "startDateTime": "2025-06-10T10:00:00"}' + '], "detectedTimezone": "America/Denver"}')])
        outcome = await create_engine(client).extract_events("Events page", extraction_context)
        assert outcome.detected_timezone == "America/Denver"
        assert outcome.events[0].timezone == "America/Denver"

    async def test_extract_when_deadline_expired_then_no_requests(
        self, extraction_context: ExtractionContext
    ) -> None:
        """A cancelled run issues no LLM calls and reports why."""
        cancel = asyncio.Event()
        cancel.set()
        client = FakeLLMClient([])
        outcome = await create_engine(client).extract_events("Events page", extraction_context, Deadline(None, cancel))

        assert outcome.events == []
        assert client.calls == []
        assert any("deadline" in w for w in outcome.warnings)

    async def test_extract_when_on_event_then_streams_each_new_event(
        self, extraction_context: ExtractionContext
    ) -> None:
        """Every new event is reported to the callback as soon as it is parsed."""
        seen: list[str] = []
        client = FakeLLMClient([llm_events([GALA], stop_reason="max_tokens"), llm_events([GALA, PICNIC])])
        await create_engine(client).extract_events(
            "Events page", extraction_context, on_event=lambda e: seen.append(e.title)
        )
        assert seen == ["Spring Gala", "Picnic"]

    async def test_extract_when_retryable_error_then_retried(self, extraction_context: ExtractionContext) -> None:
        """Retryable LLM failures go through the retry combinator."""
        client = FakeLLMClient(
            [ExtractionError("busy", code=ErrorCode.AI_RATE_LIMIT, retryable=True), llm_events([GALA])]
        )
        engine = ExtractionEngine(
            client,
            ai_config=AIConfiguration(continuation_delay=0),
            retry=RetryConfiguration(max_attempts=2, initial_delay=0),
            sleep=no_sleep,
        )
        outcome = await engine.extract_events("Events page", extraction_context)
        assert len(outcome.events) == 1
        assert len(client.calls) == 2


class TestBatchExtract:
    """Test chunked extraction in waves."""

    @staticmethod
    def _responder(messages: list[dict[str, str]]) -> LLMResponse:
        prompt = messages[0]["content"]
        if "broken chunk" in prompt:
            raise ExtractionError("chunk failed", code=ErrorCode.AI_API_ERROR)
        if "gala chunk" in prompt:
            return llm_events([GALA])
        return llm_events([PICNIC, GALA])

    async def test_batch_when_one_chunk_fails_then_keeps_others(
        self, extraction_context: ExtractionContext
    ) -> None:
        """A failing chunk contributes a warning, not an error."""
        client = FakeLLMClient(responder=self._responder)
        outcome = await create_engine(client).batch_extract(
            ["gala chunk", "broken chunk"], extraction_context, concurrency=2, delay=0
        )
        assert [e.title for e in outcome.events] == ["Spring Gala"]
        assert outcome.failed_chunks == 1
        assert any("Chunk 2 failed" in w for w in outcome.warnings)

    async def test_batch_when_all_chunks_fail_then_raises(self, extraction_context: ExtractionContext) -> None:
        """With every chunk failed and no events the first error is raised."""
        client = FakeLLMClient(responder=self._responder)
        with pytest.raises(ExtractionError):
            await create_engine(client).batch_extract(["broken chunk", "broken chunk again"], extraction_context, delay=0)

    async def test_batch_when_chunks_overlap_then_deduplicated(self, extraction_context: ExtractionContext) -> None:
        """Events found in several chunks are merged and streamed once."""
        seen: list[str] = []
        client = FakeLLMClient(responder=self._responder)
        outcome = await create_engine(client).batch_extract(
            ["gala chunk", "other chunk"],
            extraction_context,
            concurrency=1,
            delay=0,
            on_event=lambda e: seen.append(e.title),
        )
        assert sorted(e.title for e in outcome.events) == ["Picnic", "Spring Gala"]
        assert sorted(seen) == ["Picnic", "Spring Gala"]
        assert outcome.turns == 2

    async def test_batch_when_no_chunks_then_empty(self, extraction_context: ExtractionContext) -> None:
        """No chunks means no calls."""
        client = FakeLLMClient([])
        outcome = await create_engine(client).batch_extract([], extraction_context)
        assert outcome.events == []
        assert client.calls == []
