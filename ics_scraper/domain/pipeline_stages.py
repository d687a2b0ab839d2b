"""Concrete implementations of pipeline stages for a scrape run.

This module wraps the fetcher, content processor, extraction engine,
deduplication, validation and ICS generator into the EventProcessor protocol.
``build_scrape_pipeline`` composes them in the standard order.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

from ..calendar.ics_generator import ICSGenerator, assign_uids
from ..config_models import ExtractionMode
from ..content.processor import ContentProcessor, has_event_content
from ..content.timezone_intelligence import detect_timezone_with_confidence
from ..core.exceptions import ContentError, ErrorCode, ScraperError
from ..extraction.engine import ExtractionEngine, ExtractionOutcome
from .dedup import deduplicate_events, fuzzy_deduplicate, merge_event_lists
from .pipeline import EventProcessingPipeline, ProcessingContext, ProcessingResult
from .validation import time_warnings, validate_events

logger = logging.getLogger(__name__)

# Page-level timezone evidence must be at least this confident to replace the default
PAGE_TIMEZONE_CONFIDENCE = 0.5


class PageFetcher(Protocol):
    """Anything that can fetch a page body (``HTMLFetcher`` or a test fake)."""

    async def fetch(
        self,
        url: str,
        headers: Optional[dict[str, str]] = None,
        user_agent: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> str: ...


class FetchStage:
    """Retrieve raw page content, or take pre-fetched content from the config."""

    description = "Fetching page content"

    def __init__(self, fetcher: Optional[PageFetcher]) -> None:
        self._name = "Fetch"
        self.fetcher = fetcher

    @property
    def name(self) -> str:
        return self._name

    async def process(self, context: ProcessingContext) -> ProcessingResult:
        result = ProcessingResult(stage_name=self.name)
        source = context.config.source
        context.source_url = source.url or None

        if source.content:
            context.raw_content = source.content
            result.metadata["content_origin"] = "inline"
            logger.debug("Using %d chars of pre-fetched content", len(source.content))
            return result

        if context.deadline is not None:
            context.deadline.checkpoint(self.name)
        if self.fetcher is None:
            raise ScraperError("No fetcher configured", ErrorCode.CONFIGURATION_ERROR)

        context.raw_content = await self.fetcher.fetch(
            source.url,
            headers=source.headers,
            user_agent=source.user_agent,
            timeout_ms=source.timeout_ms,
        )
        result.metadata["content_origin"] = "fetched"
        result.metadata["content_length"] = len(context.raw_content)
        return result


class ContentProcessingStage:
    """Clean markup, score chunks and collect structured candidates."""

    description = "Analyzing page content"

    def __init__(self, processor: Optional[ContentProcessor] = None) -> None:
        self._name = "ContentProcessing"
        self.processor = processor

    @property
    def name(self) -> str:
        return self._name

    async def process(self, context: ProcessingContext) -> ProcessingResult:
        result = ProcessingResult(stage_name=self.name)
        options = context.config.processing
        processor = self.processor or ContentProcessor(max_chunks=options.max_chunks)

        processed = processor.process(context.raw_content or "")
        context.processed = processed
        context.page_title = processed.metadata.title
        if processed.metadata.language and processed.metadata.language != context.extraction_context.language:
            context.extraction_context = context.extraction_context.model_copy(
                update={"language": processed.metadata.language}
            )
        if processed.degraded:
            result.add_warning("Content processing degraded to plain text")

        if options.timezone.auto_detect and processed.cleaned_text:
            detection = detect_timezone_with_confidence(processed.cleaned_text, options.timezone.default)
            if detection.confidence >= PAGE_TIMEZONE_CONFIDENCE:
                context.detected_timezone = detection.timezone
                logger.debug("Page timezone %s (confidence %.1f)", detection.timezone, detection.confidence)

        if len(processed.chunks) < options.min_chunks and not processed.structured_events:
            if not processed.cleaned_text.strip():
                raise ContentError(
                    "Page contains no extractable text",
                    ErrorCode.INVALID_HTML,
                    details={"url": context.source_url},
                    retryable=False,
                )
            context.extra["document_fallback"] = True
            result.add_warning(
                f"Only {len(processed.chunks)} event chunks found; extracting from the whole document"
            )

        result.metadata.update(
            {
                "chunks": len(processed.chunks),
                "structured_candidates": len(processed.structured_events),
                "has_event_content": has_event_content(processed),
                "quality": processed.quality.as_dict(),
                "token_reduction": processed.metadata.token_reduction,
            }
        )
        return result


class StructuredEventStage:
    """Upgrade markup-derived candidates (JSON-LD, microdata, RDFa) to events."""

    description = "Reading structured event data"

    def __init__(self) -> None:
        self._name = "StructuredEvents"

    @property
    def name(self) -> str:
        return self._name

    async def process(self, context: ProcessingContext) -> ProcessingResult:
        result = ProcessingResult(stage_name=self.name)
        options = context.config.processing
        if not options.use_structured_data or context.processed is None:
            return result

        timezone = context.detected_timezone or options.timezone.default
        candidates = [s for s in context.processed.structured_events if s.source != "regex"]
        result.events_in = len(candidates)

        for candidate in candidates:
            event = candidate.to_calendar_event(timezone)
            if event is None:
                logger.debug("Structured candidate %r not upgradable", candidate.title)
                continue
            if merge_event_lists(context.structured_events, [event]):
                context.structured_events.append(event)
                await context.emit_event(event)

        context.events.extend(context.structured_events)
        result.events = list(context.structured_events)
        result.events_out = len(context.structured_events)
        result.metadata["structured_events"] = len(context.structured_events)
        return result


class ExtractionStage:
    """Run the LLM extraction over the prioritized chunks or the whole document."""

    description = "Extracting events with AI"

    def __init__(self, engine: ExtractionEngine) -> None:
        self._name = "Extraction"
        self.engine = engine

    @property
    def name(self) -> str:
        return self._name

    def _should_skip(self, context: ProcessingContext) -> bool:
        processed = context.processed
        if processed is None:
            return True
        if processed.chunks or context.extra.get("document_fallback"):
            return False
        return bool(context.structured_events)

    async def _forward(self, context: ProcessingContext, event: Any) -> None:
        # Structured events were already reported
        if merge_event_lists(context.structured_events, [event]):
            await context.emit_event(event)

    async def process(self, context: ProcessingContext) -> ProcessingResult:
        result = ProcessingResult(stage_name=self.name, events_in=len(context.events))
        if self._should_skip(context):
            logger.info("No content chunks to send to the LLM; skipping extraction")
            return result

        options = context.config.processing
        processed = context.processed
        if context.detected_timezone and context.detected_timezone != self.engine.default_timezone:
            self.engine.default_timezone = context.detected_timezone

        async def on_event(event: Any) -> None:
            await self._forward(context, event)

        use_document = options.extraction_mode == ExtractionMode.DOCUMENT.value or not processed.chunks
        try:
            if use_document:
                content = processed.optimized_content or processed.cleaned_text
                outcome: ExtractionOutcome = await self.engine.extract_events(
                    content, context.extraction_context, context.deadline, on_event
                )
            else:
                outcome = await self.engine.batch_extract(
                    processed.chunks,
                    context.extraction_context,
                    concurrency=options.batch_size,
                    delay=options.batch_delay,
                    deadline=context.deadline,
                    on_event=on_event,
                )
        except ScraperError as e:
            if not context.structured_events:
                raise
            result.add_warning(f"AI extraction failed ({e.code.value}); keeping structured events only")
            return result

        context.llm_events = outcome.events
        context.events.extend(outcome.events)
        context.token_usage.add(outcome.usage)
        context.detected_timezone = context.detected_timezone or outcome.detected_timezone
        for warning in outcome.warnings:
            result.add_warning(warning)

        result.events = outcome.events
        result.events_out = len(outcome.events)
        result.metadata.update(
            {
                "llm_events": len(outcome.events),
                "llm_turns": outcome.turns,
                "truncated_turns": outcome.truncated_turns,
                "chunks_processed": 1 if use_document else len(processed.chunks),
                "failed_chunks": outcome.failed_chunks,
            }
        )
        return result


class DeduplicationStage:
    """Merge structured and LLM events, removing duplicates."""

    description = "Removing duplicate events"

    def __init__(self, fuzzy: bool = False) -> None:
        self._name = "Deduplication"
        self.fuzzy = fuzzy

    @property
    def name(self) -> str:
        return self._name

    async def process(self, context: ProcessingContext) -> ProcessingResult:
        result = ProcessingResult(stage_name=self.name, events_in=len(context.events))
        fuzzy = self.fuzzy or context.config.processing.fuzzy_dedup
        deduplicated = fuzzy_deduplicate(context.events) if fuzzy else deduplicate_events(context.events)
        context.events = sorted(deduplicated, key=lambda e: e.start_time)

        result.events = context.events
        result.events_out = len(context.events)
        result.events_filtered = result.events_in - result.events_out
        if result.events_filtered > 0:
            logger.debug(
                "Deduplication: %s → %s events (%s duplicates removed)",
                result.events_in,
                result.events_out,
                result.events_filtered,
            )
        return result


class ValidationStage:
    """Drop events that break field invariants, reporting them as warnings."""

    description = "Validating events"

    def __init__(self) -> None:
        self._name = "Validation"

    @property
    def name(self) -> str:
        return self._name

    async def process(self, context: ProcessingContext) -> ProcessingResult:
        result = ProcessingResult(stage_name=self.name, events_in=len(context.events))
        validation = validate_events(context.events)
        context.events = validation.validated_events
        context.invalid_events = validation.invalid_events

        for message in validation.warnings:
            result.add_warning(message)
        for message in time_warnings(context.events):
            result.warnings.append(message)
            logger.debug("[%s] %s", self.name, message)

        result.events = context.events
        result.events_out = len(context.events)
        result.events_filtered = len(validation.invalid_events)
        result.metadata["failed_events"] = len(validation.invalid_events)
        return result


class ICSGenerationStage:
    """Serialize the validated events to ICS text."""

    description = "Generating calendar file"

    def __init__(self, generator: Optional[ICSGenerator] = None, individual: bool = True) -> None:
        self._name = "ICSGeneration"
        self.generator = generator
        self.individual = individual

    @property
    def name(self) -> str:
        return self._name

    async def process(self, context: ProcessingContext) -> ProcessingResult:
        result = ProcessingResult(stage_name=self.name, events_in=len(context.events))
        options = context.config.ics
        context.events = assign_uids(context.events)
        result.events = context.events
        result.events_out = len(context.events)

        if not options.generate_ics:
            return result
        if not context.events:
            result.add_warning("No events found; calendar not generated")
            return result

        generator = self.generator or ICSGenerator(options)
        build = generator.build(context.events)
        context.ics_content = build.content
        for message in build.skipped:
            result.add_warning(message)

        if self.individual:
            for event in context.events:
                single = generator.build([event], method="REQUEST")
                if single.added and event.uid:
                    context.individual_ics[event.uid] = single.content

        result.metadata["ics_events"] = build.added
        return result


def build_scrape_pipeline(
    fetcher: Optional[PageFetcher],
    engine: ExtractionEngine,
    processor: Optional[ContentProcessor] = None,
    generator: Optional[ICSGenerator] = None,
    fuzzy_dedup: bool = False,
) -> EventProcessingPipeline:
    """Compose the standard scrape pipeline."""
    return (
        EventProcessingPipeline(raise_on_error=True)
        .add_stage(FetchStage(fetcher))
        .add_stage(ContentProcessingStage(processor))
        .add_stage(StructuredEventStage())
        .add_stage(ExtractionStage(engine))
        .add_stage(DeduplicationStage(fuzzy=fuzzy_dedup))
        .add_stage(ValidationStage())
        .add_stage(ICSGenerationStage(generator))
    )
