"""ics_scraper - turn event listings on web pages into ICS calendars.

Imports stay light: the orchestration entry points (and with them httpx,
anthropic and icalendar) load on first attribute access.
"""

__version__ = "0.1.0"

from typing import Any

__all__ = [
    "__version__",
    "monitored_scrape",
    "run_pipeline",
    "scrape_multiple_sources",
    "stream_pipeline",
]

_ORCHESTRATOR_EXPORTS = {"monitored_scrape", "run_pipeline", "scrape_multiple_sources", "stream_pipeline"}


def __getattr__(name: str) -> Any:
    if name in _ORCHESTRATOR_EXPORTS:
        from . import orchestrator

        return getattr(orchestrator, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
