"""HTTP client construction for page fetches.

Centralizes the browser-like default headers and timeout layout so every
fetcher instance uses the same connection settings.
"""

import logging
from typing import Optional

import httpx

from .correlation_id import get_run_id

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (compatible; ICS-Scraper/1.0; +https://github.com/ics-scraper/ics-scraper)"
)

# Browser-like headers; some sites refuse requests without Accept-Language
DEFAULT_HTML_HEADERS: dict[str, str] = {
    "User-Agent": DEFAULT_USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,text/markdown;q=0.8,*/*;q=0.7",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "DNT": "1",
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
    "Cache-Control": "no-cache",
}

DEFAULT_LIMITS = httpx.Limits(
    max_connections=10,
    max_keepalive_connections=5,
)


def build_timeout(read_seconds: float = 30.0) -> httpx.Timeout:
    """Timeout with separate connect/read/write/pool budgets."""
    return httpx.Timeout(
        connect=min(10.0, read_seconds),
        read=read_seconds,
        write=10.0,
        pool=30.0,
    )


def build_request_headers(
    headers: Optional[dict[str, str]] = None, user_agent: Optional[str] = None
) -> dict[str, str]:
    """Merge caller headers over the defaults and tag the request with the run id."""
    merged = DEFAULT_HTML_HEADERS.copy()
    if headers:
        merged.update(headers)
    if user_agent:
        merged["User-Agent"] = user_agent

    run_id = get_run_id()
    if run_id != "no-run-id":
        merged["X-Request-ID"] = run_id
    return merged


def create_http_client(
    timeout_seconds: float = 30.0,
    follow_redirects: bool = True,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Create an AsyncClient configured for HTML page fetches.

    Args:
        timeout_seconds: Read timeout in seconds
        follow_redirects: Follow 3xx responses
        transport: Optional transport override (tests use httpx.MockTransport)

    Returns:
        New httpx.AsyncClient; the caller owns and must close it
    """
    logger.debug(
        "Creating HTTP client (read timeout %.1fs, redirects=%s)", timeout_seconds, follow_redirects
    )
    return httpx.AsyncClient(
        timeout=build_timeout(timeout_seconds),
        limits=DEFAULT_LIMITS,
        follow_redirects=follow_redirects,
        headers=DEFAULT_HTML_HEADERS,
        transport=transport,
    )
