"""Configuration models for a scrape run.

A ``ScraperConfig`` is built once per run (from the CLI, the environment or an
external caller) and passed explicitly into the pipeline.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_TIMEZONE = "America/New_York"
DEFAULT_MODEL = "claude-haiku-4-5-20251001"


class ICSMethod(str, Enum):
    """iTIP methods supported for generated calendars."""

    PUBLISH = "PUBLISH"
    REQUEST = "REQUEST"
    REPLY = "REPLY"
    CANCEL = "CANCEL"


class ExtractionMode(str, Enum):
    """What the extraction engine receives."""

    CHUNKS = "chunks"  # ranked semantic chunks, batched in waves
    DOCUMENT = "document"  # the optimized document as a single request


class SourceConfiguration(BaseModel):
    """Where and how to fetch the page."""

    url: str = Field(default="", description="Page URL to scrape")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra HTTP headers")
    user_agent: Optional[str] = Field(default=None, description="User-Agent override")
    timeout_ms: int = Field(default=30000, description="HTTP timeout in milliseconds")
    follow_redirects: bool = Field(default=True, description="Follow HTTP redirects")
    content: Optional[str] = Field(
        default=None, description="Pre-fetched HTML or markdown; skips the network fetch"
    )


class RetryConfiguration(BaseModel):
    """Retry policy shared by fetches and LLM calls."""

    max_attempts: int = Field(default=3, description="Total attempts including the first")
    initial_delay: float = Field(default=1.0, description="First backoff delay in seconds")
    max_delay: float = Field(default=30.0, description="Backoff ceiling in seconds")
    backoff_multiplier: float = Field(default=2.0, description="Exponential growth factor")

    @field_validator("max_attempts")
    @classmethod
    def clamp_attempts(cls, v: int) -> int:
        """At least one attempt is always made."""
        return max(1, v)


class CacheConfiguration(BaseModel):
    """Read-through HTTP cache settings."""

    enabled: bool = Field(default=True, description="Enable the response cache")
    ttl: int = Field(default=3600, description="Entry lifetime in seconds")
    max_size: int = Field(default=100, description="Maximum number of cached pages")


class TimezoneConfiguration(BaseModel):
    """Timezone defaults and detection."""

    default: str = Field(default=DEFAULT_TIMEZONE, description="Fallback IANA timezone")
    auto_detect: bool = Field(
        default=True, description="Infer a timezone hint from the page text"
    )


class AIConfiguration(BaseModel):
    """LLM settings."""

    api_key: Optional[str] = Field(default=None, description="Anthropic API key")
    model: str = Field(default=DEFAULT_MODEL, description="Model identifier")
    max_tokens: int = Field(default=8192, description="Output token cap per turn")
    temperature: float = Field(default=0.2, description="Sampling temperature")
    max_continuations: int = Field(
        default=10, description="Maximum continuation turns after a truncated reply"
    )
    continuation_delay: float = Field(
        default=0.5, description="Pause between continuation turns in seconds"
    )
    request_timeout: float = Field(default=120.0, description="Per-request timeout in seconds")


class ProcessingOptions(BaseModel):
    """Pipeline behaviour."""

    batch_size: int = Field(default=3, description="Chunks extracted in parallel per wave")
    batch_delay: float = Field(default=1.0, description="Pause between waves in seconds")
    retry: RetryConfiguration = Field(default_factory=RetryConfiguration)
    cache: CacheConfiguration = Field(default_factory=CacheConfiguration)
    timezone: TimezoneConfiguration = Field(default_factory=TimezoneConfiguration)
    ai: AIConfiguration = Field(default_factory=AIConfiguration)
    deadline_seconds: Optional[float] = Field(
        default=None, description="Overall run deadline; partial results are kept on expiry"
    )
    min_chunks: int = Field(
        default=1, description="Chunks needed before falling back to plain page text"
    )
    max_chunks: int = Field(default=20, description="Upper bound on chunks sent to the LLM")
    extraction_mode: ExtractionMode = Field(default=ExtractionMode.CHUNKS)
    fuzzy_dedup: bool = Field(default=False, description="Add a fuzzy deduplication pass")
    use_structured_data: bool = Field(
        default=True, description="Merge JSON-LD / microdata / RDFa events"
    )

    model_config = ConfigDict(use_enum_values=True)


class ICSOptions(BaseModel):
    """Calendar serialization options."""

    prod_id: str = Field(default="-//ICS-Scraper//Event Calendar//EN")
    calendar_name: str = Field(default="Scraped Events")
    description: str = Field(default="Events automatically extracted from web pages")
    timezone: str = Field(default=DEFAULT_TIMEZONE, description="X-WR-TIMEZONE value")
    include_alarms: bool = Field(default=True)
    default_alarm_minutes: int = Field(default=30, description="Alarm lead time in minutes")
    method: ICSMethod = Field(default=ICSMethod.PUBLISH)
    scale: str = Field(default="GREGORIAN")
    include_vtimezone: bool = Field(default=True, description="Embed VTIMEZONE components")
    generate_ics: bool = Field(default=True, description="Produce ICS text at all")

    model_config = ConfigDict(use_enum_values=True)


class ScraperConfig(BaseModel):
    """Complete configuration for one scrape run."""

    source: SourceConfiguration = Field(default_factory=SourceConfiguration)
    processing: ProcessingOptions = Field(default_factory=ProcessingOptions)
    ics: ICSOptions = Field(default_factory=ICSOptions)
