"""Data models for web-page event extraction - ics_scraper."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .datetime_utils import UNKNOWN_TIMEZONE, get_zone, parse_event_datetime

DEFAULT_EVENT_DURATION = timedelta(hours=2)
DEFAULT_LOCATION = "TBD"


class EventStatus(str, Enum):
    """iCalendar VEVENT status values."""

    CONFIRMED = "CONFIRMED"
    TENTATIVE = "TENTATIVE"
    CANCELLED = "CANCELLED"


class ContentType(str, Enum):
    """Classification of a scored content chunk."""

    EVENT = "event"
    ARTICLE = "article"
    NAVIGATION = "navigation"
    TEMPORAL = "temporal"
    LOCATION = "location"
    METADATA = "metadata"


class Organizer(BaseModel):
    """Event organizer."""

    name: str = Field(default="", description="Display name")
    email: Optional[str] = Field(default=None, description="Email address")
    phone: Optional[str] = Field(default=None, description="Phone number")


class Attendee(BaseModel):
    """Event attendee."""

    email: str = Field(..., description="Attendee email address")
    name: Optional[str] = Field(default=None, description="Attendee name")
    rsvp: bool = Field(default=False, description="RSVP requested")
    status: Optional[str] = Field(default=None, description="PARTSTAT value")
    role: Optional[str] = Field(default=None, description="ROLE value")


class CalendarEvent(BaseModel):
    """Canonical extracted event.

    Times are naive local wall-clock values; ``timezone`` names the IANA zone they
    belong to, or ``UNKNOWN`` when no zone could be established.
    """

    title: str = Field(..., description="Event title")
    start_time: datetime = Field(..., description="Local start time")
    end_time: datetime = Field(..., description="Local end time")
    location: str = Field(default=DEFAULT_LOCATION, description="Venue or address")
    description: str = Field(default="", description="Free-text description")
    timezone: str = Field(default=UNKNOWN_TIMEZONE, description="IANA zone or UNKNOWN")
    organizer: Optional[Organizer] = Field(default=None)
    attendees: list[Attendee] = Field(default_factory=list)
    recurring_rule: Optional[str] = Field(default=None, description="RRULE value")
    categories: list[str] = Field(default_factory=list)
    status: EventStatus = Field(default=EventStatus.CONFIRMED)
    url: Optional[str] = Field(default=None)
    uid: Optional[str] = Field(default=None, description="Stable identifier")
    all_day: bool = Field(default=False, description="Date-only event")
    source: str = Field(default="llm", description="Provenance: llm, json-ld, microdata, rdfa")

    model_config = ConfigDict(use_enum_values=True)

    @field_validator("timezone", mode="before")
    @classmethod
    def normalize_timezone(cls, v: Any) -> str:
        """Anything that is not a valid IANA zone becomes UNKNOWN."""
        if isinstance(v, str) and get_zone(v.strip()) is not None:
            return v.strip()
        return UNKNOWN_TIMEZONE

    @field_validator("location", mode="before")
    @classmethod
    def default_location(cls, v: Any) -> str:
        if v is None or (isinstance(v, str) and not v.strip()):
            return DEFAULT_LOCATION
        return str(v).strip()

    @field_validator("description", mode="before")
    @classmethod
    def default_description(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_serializer("start_time", "end_time")
    def serialize_datetime(self, dt: datetime) -> str:
        """Serialize local times to ISO format without offset."""
        return dt.isoformat()

    @property
    def duration(self) -> timedelta:
        return self.end_time - self.start_time

    def aware_start(self) -> datetime:
        """Start time with the event zone attached (naive when UNKNOWN)."""
        zone = get_zone(self.timezone)
        return self.start_time.replace(tzinfo=zone) if zone else self.start_time

    def aware_end(self) -> datetime:
        zone = get_zone(self.timezone)
        return self.end_time.replace(tzinfo=zone) if zone else self.end_time


class ChunkEntities(BaseModel):
    """Entities found in a chunk of page text."""

    dates: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    organizations: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class SourceContext(BaseModel):
    """Where in the page a chunk came from."""

    html_tag: str = Field(default="div")
    css_classes: list[str] = Field(default_factory=list)
    is_main_content: bool = Field(default=False)
    semantic_role: Optional[str] = Field(default=None)

    model_config = ConfigDict(frozen=True)


class SemanticChunk(BaseModel):
    """A scored, bounded slice of page content submitted for extraction."""

    content: str
    token_count: int = 0
    relevance_score: float = Field(default=0.0, ge=0.0, le=1.0)
    event_score: float = Field(default=0.0, ge=0.0, le=1.0)
    content_type: ContentType = ContentType.ARTICLE
    entities: ChunkEntities = Field(default_factory=ChunkEntities)
    source_context: SourceContext = Field(default_factory=SourceContext)

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    @property
    def combined_score(self) -> float:
        return 0.6 * self.event_score + 0.4 * self.relevance_score


class StructuredEvent(BaseModel):
    """Event candidate found in page markup rather than by the LLM."""

    title: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    organizer: Optional[str] = None
    url: Optional[str] = None
    source: str = Field(..., description="json-ld, microdata, rdfa or regex")
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_upgradable(self) -> bool:
        return bool(self.title and self.title.strip() and self.start_date)

    def to_calendar_event(self, default_timezone: str) -> Optional[CalendarEvent]:
        """Upgrade to a CalendarEvent when a title and a parseable start exist."""
        if not self.is_upgradable:
            return None

        parsed = parse_event_datetime(self.start_date, default_timezone)
        if parsed is None:
            return None
        start, all_day = parsed

        end: Optional[datetime] = None
        if self.end_date:
            parsed_end = parse_event_datetime(self.end_date, default_timezone)
            if parsed_end is not None:
                end = parsed_end[0]
                if all_day and parsed_end[1]:
                    end = end + timedelta(days=1)
        if end is None or end <= start:
            end = start + (timedelta(days=1) if all_day else DEFAULT_EVENT_DURATION)

        return CalendarEvent(
            title=self.title.strip() if self.title else "",
            start_time=start,
            end_time=end,
            location=self.location,
            description=self.description,
            timezone=default_timezone,
            organizer=Organizer(name=self.organizer) if self.organizer else None,
            url=self.url,
            all_day=all_day,
            source=self.source,
        )


class ExtractionContext(BaseModel):
    """Ambient hints passed into every LLM call of one run."""

    source_url: Optional[str] = None
    timezone_hint: Optional[str] = None
    current_date: date = Field(default_factory=date.today)
    language: str = "en"
    additional_context: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class TokenUsage(BaseModel):
    """LLM token accounting for a run."""

    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost: float = 0.0

    def add(self, other: TokenUsage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.estimated_cost += other.estimated_cost


class ResultMetadata(BaseModel):
    """Run statistics returned alongside the events."""

    total_events: int = 0
    processed_events: int = 0
    failed_events: int = 0
    processing_time_ms: float = 0.0
    warnings: list[str] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    source_url: Optional[str] = None
    page_title: Optional[str] = None
    detected_timezone: Optional[str] = None
    structured_events: int = 0
    chunks_processed: int = 0
    quality: dict[str, float] = Field(default_factory=dict)


class ScraperResult(BaseModel):
    """Result of one pipeline run."""

    events: list[CalendarEvent] = Field(default_factory=list)
    ics_content: Optional[str] = None
    individual_ics: dict[str, str] = Field(default_factory=dict)
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)

    @property
    def warnings(self) -> list[str]:
        return self.metadata.warnings


class ProgressType(str, Enum):
    STATUS = "status"
    EVENT = "event"
    COMPLETE = "complete"
    ERROR = "error"


class ErrorInfo(BaseModel):
    """Serializable form of a ScraperError."""

    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    retryable: bool = False


class ProgressEvent(BaseModel):
    """One item of the streaming pipeline output."""

    type: ProgressType
    stage: Optional[str] = None
    message: Optional[str] = None
    event: Optional[CalendarEvent] = None
    result: Optional[ScraperResult] = None
    error: Optional[ErrorInfo] = None
    timestamp: datetime = Field(default_factory=datetime.now)

    model_config = ConfigDict(use_enum_values=True)

    @property
    def is_terminal(self) -> bool:
        return self.type in (ProgressType.COMPLETE.value, ProgressType.ERROR.value)
