"""Scrape orchestration: the public entry points of ics_scraper.

- ``run_pipeline``: awaitable, returns a ``ScraperResult`` or raises a ``ScraperError``
- ``stream_pipeline``: async generator of ``ProgressEvent`` items ending in
  exactly one ``complete`` or ``error`` item
- ``monitored_scrape``: callback-based progress reporting around ``run_pipeline``
- ``scrape_multiple_sources``: several configurations concurrently

Collaborators (LLM client, fetcher, cache) are injected per call; nothing is
held in module-level state.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional

from .config_models import ScraperConfig
from .core.async_utils import Deadline, gather_with_timeout
from .core.cache import ResponseCache
from .core.config_manager import validate_config
from .core.correlation_id import new_run_id
from .core.exceptions import ConfigurationError, ErrorCode, ScraperError
from .domain.models import (
    CalendarEvent,
    ErrorInfo,
    ExtractionContext,
    ProgressEvent,
    ProgressType,
    ResultMetadata,
    ScraperResult,
)
from .domain.pipeline import ProcessingContext
from .domain.pipeline_stages import PageFetcher, build_scrape_pipeline
from .extraction.engine import ExtractionEngine
from .extraction.llm_client import AnthropicLLMClient, LLMClient
from .html_fetcher import HTMLFetcher

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], Optional[Awaitable[None]]]


async def _notify(callback: Optional[ProgressCallback], item: ProgressEvent) -> None:
    if callback is None:
        return
    result = callback(item)
    if inspect.isawaitable(result):
        await result


def error_info(error: ScraperError) -> ErrorInfo:
    return ErrorInfo(
        code=error.code.value,
        message=error.message,
        details=error.details,
        retryable=error.retryable,
    )


def _build_result(context: ProcessingContext, warnings: list[str], metadata: dict[str, Any], started: float) -> ScraperResult:
    processed = context.processed
    return ScraperResult(
        events=context.events,
        ics_content=context.ics_content,
        individual_ics=context.individual_ics,
        metadata=ResultMetadata(
            total_events=len(context.structured_events) + len(context.llm_events),
            processed_events=len(context.events),
            failed_events=len(context.invalid_events),
            processing_time_ms=(time.perf_counter() - started) * 1000,
            warnings=warnings,
            token_usage=context.token_usage,
            source_url=context.source_url,
            page_title=context.page_title,
            detected_timezone=context.detected_timezone,
            structured_events=len(context.structured_events),
            chunks_processed=metadata.get("chunks_processed", 0),
            quality=processed.quality.as_dict() if processed is not None else {},
        ),
    )


async def run_pipeline(
    config: ScraperConfig,
    *,
    llm_client: Optional[LLMClient] = None,
    fetcher: Optional[PageFetcher] = None,
    cache: Optional[ResponseCache] = None,
    cancel_event: Optional[asyncio.Event] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> ScraperResult:
    """Scrape one page into events and ICS text.

    Args:
        config: Complete run configuration
        llm_client: LLM client; defaults to an Anthropic client built from the config
        fetcher: Page fetcher; defaults to an ``HTMLFetcher`` owned by this call
        cache: Response cache shared across calls by the caller
        cancel_event: Setting it stops further LLM calls; accumulated events are kept
        on_progress: Receives ``status`` and ``event`` progress items in order

    Returns:
        Events, ICS content and run metadata (including non-fatal warnings)

    Raises:
        ConfigurationError: Before any processing when the config is unusable
        ScraperError: When no usable result exists
    """
    run_id = new_run_id()
    started = time.perf_counter()

    problems = validate_config(config, require_api_key=llm_client is None)
    if problems:
        raise ConfigurationError("; ".join(problems), details={"errors": problems})

    options = config.processing
    logger.info("Starting scrape run %s for %s", run_id, config.source.url or "<inline content>")

    owned_client: Optional[AnthropicLLMClient] = None
    if llm_client is None:
        owned_client = AnthropicLLMClient(options.ai)
        llm_client = owned_client

    owned_fetcher: Optional[HTMLFetcher] = None
    if fetcher is None and not config.source.content:
        owned_fetcher = HTMLFetcher(
            retry=options.retry,
            cache=cache if cache is not None else ResponseCache(options.cache),
        )
        fetcher = owned_fetcher

    engine = ExtractionEngine(
        llm_client,
        ai_config=options.ai,
        retry=options.retry,
        default_timezone=options.timezone.default,
        auto_detect_timezone=options.timezone.auto_detect,
    )

    async def on_status(stage: str, message: str) -> None:
        await _notify(on_progress, ProgressEvent(type=ProgressType.STATUS, stage=stage, message=message))

    async def on_event(event: CalendarEvent) -> None:
        await _notify(on_progress, ProgressEvent(type=ProgressType.EVENT, stage="Extraction", event=event))

    context = ProcessingContext(
        config=config,
        deadline=Deadline(options.deadline_seconds, cancel_event),
        extraction_context=ExtractionContext(source_url=config.source.url or None),
        on_event=on_event,
        on_status=on_status,
    )
    pipeline = build_scrape_pipeline(fetcher, engine, fuzzy_dedup=options.fuzzy_dedup)

    try:
        outcome = await pipeline.process(context)
    except ScraperError as e:
        logger.error("Scrape run %s failed: %s", run_id, e.message)
        raise
    finally:
        if owned_fetcher is not None:
            await owned_fetcher.close()
        if owned_client is not None:
            await owned_client.close()

    result = _build_result(context, outcome.warnings, outcome.metadata, started)
    logger.info(
        "Scrape run %s finished: %d events, %d failed, %d warnings in %.0fms",
        run_id,
        result.metadata.processed_events,
        result.metadata.failed_events,
        len(result.warnings),
        result.metadata.processing_time_ms,
    )
    return result


async def stream_pipeline(
    config: ScraperConfig,
    *,
    llm_client: Optional[LLMClient] = None,
    fetcher: Optional[PageFetcher] = None,
    cache: Optional[ResponseCache] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> AsyncIterator[ProgressEvent]:
    """Run the pipeline and yield progress items as they happen.

    Status and event items arrive in order and the sequence ends with exactly
    one ``complete`` (carrying the result) or ``error`` (carrying the typed
    failure). Closing the generator early cancels the run.
    """
    queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()

    async def produce() -> None:
        try:
            result = await run_pipeline(
                config,
                llm_client=llm_client,
                fetcher=fetcher,
                cache=cache,
                cancel_event=cancel_event,
                on_progress=queue.put,
            )
        except ScraperError as e:
            await queue.put(ProgressEvent(type=ProgressType.ERROR, message=e.message, error=error_info(e)))
            return
        except Exception as e:
            logger.exception("Unexpected failure in streaming scrape")
            wrapped = ScraperError(f"Unexpected error: {e}", ErrorCode.INTERNAL_ERROR)
            await queue.put(ProgressEvent(type=ProgressType.ERROR, message=wrapped.message, error=error_info(wrapped)))
            return
        await queue.put(
            ProgressEvent(
                type=ProgressType.COMPLETE,
                message=f"Extracted {len(result.events)} events",
                result=result,
            )
        )

    task = asyncio.create_task(produce())
    try:
        while True:
            item = await queue.get()
            yield item
            if item.is_terminal:
                break
    finally:
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


async def monitored_scrape(
    config: ScraperConfig,
    on_progress: ProgressCallback,
    **kwargs: Any,
) -> ScraperResult:
    """``run_pipeline`` that also reports the terminal item to ``on_progress``."""
    try:
        result = await run_pipeline(config, on_progress=on_progress, **kwargs)
    except ScraperError as e:
        await _notify(on_progress, ProgressEvent(type=ProgressType.ERROR, message=e.message, error=error_info(e)))
        raise
    await _notify(
        on_progress,
        ProgressEvent(type=ProgressType.COMPLETE, message=f"Extracted {len(result.events)} events", result=result),
    )
    return result


@dataclass
class SourceOutcome:
    """Result or error for one configuration of a multi-source scrape."""

    config: ScraperConfig
    result: Optional[ScraperResult] = None
    error: Optional[ScraperError] = None

    @property
    def success(self) -> bool:
        return self.result is not None


async def scrape_multiple_sources(
    configs: list[ScraperConfig],
    *,
    concurrency: int = 3,
    timeout: Optional[float] = None,
    **kwargs: Any,
) -> list[SourceOutcome]:
    """Scrape several sources concurrently; one failing source never affects the others."""
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def scrape_one(config: ScraperConfig) -> SourceOutcome:
        async with semaphore:
            try:
                return SourceOutcome(config=config, result=await run_pipeline(config, **kwargs))
            except ScraperError as e:
                logger.warning("Source %s failed: %s", config.source.url, e.message)
                return SourceOutcome(config=config, error=e)

    results = await gather_with_timeout(*(scrape_one(c) for c in configs), timeout=timeout)
    outcomes: list[SourceOutcome] = []
    for config, result in zip(configs, results):
        if isinstance(result, SourceOutcome):
            outcomes.append(result)
        else:
            logger.error("Unexpected failure scraping %s: %s", config.source.url, result)
            outcomes.append(
                SourceOutcome(config=config, error=ScraperError(str(result), ErrorCode.INTERNAL_ERROR))
            )
    return outcomes
