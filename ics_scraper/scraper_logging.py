"""
Logging setup for ics_scraper.

Scrape diagnostics go to stderr stamped with the run id; the HTTP and LLM
client libraries are held at WARNING so request chatter and SDK retries stay
out of the way.
"""

import logging
import os
from typing import Optional

PACKAGE_LOGGER = "ics_scraper"

QUIET_LIBRARIES = (
    "httpx",
    "httpcore",
    "anthropic",
    "asyncio",
    "charset_normalizer",
    "urllib3.connectionpool",
)

LOG_FORMAT = "[%(asctime)s] [%(run_id)s] %(levelname)s - %(name)s - %(message)s"

_LEVEL_NAMES = ("DEBUG", "INFO", "WARNING", "ERROR")
_TRUTHY = ("1", "true", "yes", "on")


class CorrelationIdFilter(logging.Filter):
    """Stamp each record with the run id of the scrape that produced it."""

    def filter(self, record: logging.LogRecord) -> bool:
        from .core.correlation_id import get_run_id

        record.run_id = get_run_id()
        return True


def _debug_requested(debug_mode: bool, force_debug: Optional[bool]) -> bool:
    if force_debug is not None:
        return force_debug
    if os.getenv("ICS_SCRAPER_DEBUG", "").strip().lower() in _TRUTHY:
        return True
    return debug_mode


def _install_handler(root: logging.Logger, level: int) -> None:
    run_filter = CorrelationIdFilter()
    if root.handlers:
        # Someone else configured output (pytest, an embedding app); just add run ids
        for handler in root.handlers:
            if not any(isinstance(f, CorrelationIdFilter) for f in handler.filters):
                handler.addFilter(run_filter)
        return

    stream = logging.StreamHandler()
    stream.setLevel(level)
    stream.setFormatter(logging.Formatter(LOG_FORMAT))
    stream.addFilter(run_filter)
    root.addHandler(stream)


def configure_scraper_logging(debug_mode: bool = False, force_debug: Optional[bool] = None) -> None:
    """
    Set up log levels and the stderr handler.

    Args:
        debug_mode: Log ics_scraper modules at DEBUG
        force_debug: Overrides both ``debug_mode`` and ICS_SCRAPER_DEBUG when not None

    Environment Variables:
        ICS_SCRAPER_DEBUG: '1', 'true', 'yes' or 'on' turns debug logging on
        ICS_SCRAPER_LOG_LEVEL: Root level (DEBUG, INFO, WARNING, ERROR);
            LOG_LEVEL is used when unset
    """
    debug = _debug_requested(debug_mode, force_debug)
    package_level = logging.DEBUG if debug else logging.INFO

    requested = (os.getenv("ICS_SCRAPER_LOG_LEVEL") or os.getenv("LOG_LEVEL", "")).strip().upper()
    root_level = getattr(logging, requested) if requested in _LEVEL_NAMES else package_level

    root = logging.getLogger()
    root.setLevel(root_level)
    _install_handler(root, root_level)

    logging.getLogger(PACKAGE_LOGGER).setLevel(package_level)
    for name in QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    if debug:
        logging.getLogger(PACKAGE_LOGGER).debug("Debug logging enabled")


def reset_logging_to_debug() -> None:
    """Open every relevant logger up to DEBUG, libraries included."""
    for name in ("", PACKAGE_LOGGER, *QUIET_LIBRARIES):
        logging.getLogger(name).setLevel(logging.DEBUG)
    logging.getLogger(PACKAGE_LOGGER).info("All loggers set to DEBUG")


def get_logging_status() -> dict[str, str]:
    """Level names of the root, package and main library loggers."""
    status = {"root": logging.getLevelName(logging.getLogger().level)}
    for name in (PACKAGE_LOGGER, "httpx", "anthropic", "asyncio"):
        status[name] = logging.getLevelName(logging.getLogger(name).level)
    return status
