"""Stage runner for a scrape.

One ``ProcessingContext`` travels through every stage of a run:
fetch -> content processing -> structured events -> LLM extraction ->
deduplication -> validation -> ICS generation.

Each stage only reads what earlier stages left on the context and writes its
own output back, so stages can be exercised one at a time with fakes.

Usage:
    pipeline = EventProcessingPipeline(raise_on_error=True)
    pipeline.add_stage(FetchStage(fetcher)).add_stage(ContentProcessingStage(processor))

    outcome = await pipeline.process(ProcessingContext(config=config))
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from ..config_models import ScraperConfig
from ..core.async_utils import Deadline
from ..core.exceptions import ErrorCode, ScraperError
from .models import CalendarEvent, ExtractionContext, TokenUsage

logger = logging.getLogger(__name__)

EventCallback = Callable[[CalendarEvent], Optional[Awaitable[None]]]
StatusCallback = Callable[[str, str], Optional[Awaitable[None]]]


async def _call_hook(hook: Optional[Callable[..., Any]], *args: Any) -> None:
    if hook is None:
        return
    outcome = hook(*args)
    if inspect.isawaitable(outcome):
        await outcome


@dataclass
class ProcessingContext:
    """Shared state of one scrape run.

    Hooks may be plain functions or coroutines.
    """

    config: ScraperConfig = field(default_factory=ScraperConfig)
    deadline: Optional[Deadline] = None
    extraction_context: ExtractionContext = field(default_factory=ExtractionContext)

    on_event: Optional[EventCallback] = None
    on_status: Optional[StatusCallback] = None

    # Written by the stages, in run order
    raw_content: Optional[str] = None
    processed: Optional[Any] = None  # content.processor.ProcessedContent
    structured_events: list[CalendarEvent] = field(default_factory=list)
    llm_events: list[CalendarEvent] = field(default_factory=list)
    events: list[CalendarEvent] = field(default_factory=list)
    invalid_events: list[Any] = field(default_factory=list)
    ics_content: Optional[str] = None
    individual_ics: dict[str, str] = field(default_factory=dict)

    source_url: Optional[str] = None
    page_title: Optional[str] = None
    detected_timezone: Optional[str] = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)

    # Flags passed from one stage to a later one
    extra: dict[str, Any] = field(default_factory=dict)

    async def emit_event(self, event: CalendarEvent) -> None:
        await _call_hook(self.on_event, event)

    async def emit_status(self, stage: str, message: str) -> None:
        await _call_hook(self.on_status, stage, message)


@dataclass
class ProcessingResult:
    """Outcome of one stage, or of the whole run when aggregated."""

    success: bool = True
    events: list[CalendarEvent] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    error: Optional[ScraperError] = None

    events_in: int = 0
    events_out: int = 0
    events_filtered: int = 0
    stage_name: str = ""

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)
        logger.warning("[%s] %s", self.stage_name, message)

    def add_error(self, message: str, error: Optional[ScraperError] = None) -> None:
        """Record a failure; the first typed error is kept for callers."""
        self.errors.append(message)
        self.success = False
        if error is not None and self.error is None:
            self.error = error
        logger.error("[%s] %s", self.stage_name, message)


class EventProcessor(Protocol):
    """A single step of the scrape.

    A stage receives the shared context, does its one job, writes its output
    back to the context and returns a ``ProcessingResult`` describing what it
    did (event counts, warnings, metadata).
    """

    async def process(self, context: ProcessingContext) -> ProcessingResult: ...

    @property
    def name(self) -> str:
        """Short stage name used in logs and status updates."""
        ...


class EventProcessingPipeline:
    """Runs stages in order over one context.

    With ``raise_on_error`` a ``ScraperError`` raised by a stage propagates
    unchanged and any other exception is wrapped in an INTERNAL_ERROR
    ``ScraperError``. Without it, the first failure is recorded on the returned
    result and later stages are skipped.
    """

    def __init__(self, raise_on_error: bool = False) -> None:
        self.stages: list[EventProcessor] = []
        self.raise_on_error = raise_on_error

    def add_stage(self, stage: EventProcessor) -> EventProcessingPipeline:
        """Append a stage; returns self so calls can be chained."""
        self.stages.append(stage)
        logger.debug("Registered stage %s", stage.name)
        return self

    def _fail(self, result: ProcessingResult, stage: EventProcessor, exc: Exception) -> ProcessingResult:
        error = (
            exc
            if isinstance(exc, ScraperError)
            else ScraperError(
                f"Stage {stage.name} raised exception: {exc}",
                ErrorCode.INTERNAL_ERROR,
                details={"stage": stage.name, "exception": type(exc).__name__},
            )
        )
        if self.raise_on_error:
            if error is exc:
                raise exc
            raise error from exc
        result.add_error(f"Stage {stage.name} failed: {error.message}", error)
        return result

    async def process(self, context: ProcessingContext) -> ProcessingResult:
        """Run every stage and merge their warnings, errors and metadata.

        Raises:
            ScraperError: When ``raise_on_error`` is set and a stage fails
        """
        total = len(self.stages)
        run = ProcessingResult(stage_name="Pipeline")
        logger.debug("Running %d stages", total)

        for position, stage in enumerate(self.stages, start=1):
            logger.debug("Stage %d/%d: %s", position, total, stage.name)
            try:
                await context.emit_status(stage.name, getattr(stage, "description", stage.name))
                outcome = await stage.process(context)
            except Exception as e:
                if not isinstance(e, ScraperError):
                    logger.exception("Unexpected error in stage %s", stage.name)
                return self._fail(run, stage, e)

            logger.debug(
                "%s done: %d in, %d out, %d filtered, %d warnings",
                stage.name,
                outcome.events_in,
                outcome.events_out,
                outcome.events_filtered,
                len(outcome.warnings),
            )
            run.warnings.extend(outcome.warnings)
            run.errors.extend(outcome.errors)
            run.metadata.update(outcome.metadata)

            if not outcome.success:
                run.success = False
                run.error = outcome.error
                logger.error("Stopping after failed stage %s", stage.name)
                if self.raise_on_error:
                    raise outcome.error or ScraperError(
                        "; ".join(outcome.errors) or f"Stage {stage.name} failed",
                        ErrorCode.INTERNAL_ERROR,
                        details={"stage": stage.name},
                    )
                return run

        run.events = context.events
        run.events_out = len(context.events)
        logger.info("Scrape pipeline finished: %d events, %d warnings", run.events_out, len(run.warnings))
        return run

    def clear_stages(self) -> None:
        self.stages.clear()

    def __repr__(self) -> str:
        return f"EventProcessingPipeline(stages={[stage.name for stage in self.stages]})"
