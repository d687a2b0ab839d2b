"""Shared fixtures for ics_scraper tests.

Everything runs offline: the LLM is a scripted fake and pages are passed
inline through ``SourceConfiguration.content`` or served by httpx.MockTransport.
"""

from collections.abc import Generator
from datetime import date
from typing import Any

import pytest

from ics_scraper.core.correlation_id import run_id_var
from ics_scraper.domain.models import ExtractionContext

ENV_VARS = (
    "ANTHROPIC_API_KEY",
    "SOURCE_URL",
    "SOURCE_USER_AGENT",
    "AI_MODEL",
    "MAX_CONTINUATIONS",
    "BATCH_SIZE",
    "DEADLINE_SECONDS",
    "RETRY_ATTEMPTS",
    "CACHE_ENABLED",
    "CACHE_TTL",
    "DEFAULT_TIMEZONE",
    "DETECT_TIMEZONE",
    "CALENDAR_NAME",
    "INCLUDE_ALARMS",
)


@pytest.fixture
def extraction_context() -> ExtractionContext:
    """Context pinned to a fixed date so relative dates are deterministic."""
    return ExtractionContext(source_url="https://example.org/events", current_date=date(2025, 6, 1))


@pytest.fixture(autouse=True)
def clean_test_environment(monkeypatch: Any) -> Generator[None, Any, None]:
    """Keep developer environment variables out of config tests.

    Every variable is read both bare and with the ICS_SCRAPER_ prefix, so both
    spellings are cleared before each test.
    """
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
        monkeypatch.delenv(f"ICS_SCRAPER_{name}", raising=False)
    for name in ("ICS_SCRAPER_DEBUG", "ICS_SCRAPER_LOG_LEVEL", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture(autouse=True)
def reset_run_id() -> Generator[None, Any, None]:
    """Run ids live in a context variable; clear it between tests."""
    token = run_id_var.set("")
    yield
    run_id_var.reset(token)


def pytest_configure(config: Any) -> None:
    """Register test markers."""
    config.addinivalue_line("markers", "unit: Fast isolated tests of a single module")
    config.addinivalue_line("markers", "integration: Whole-pipeline tests with fake collaborators")
