"""HTTP fetcher for web pages - ics_scraper version."""

import asyncio
import logging
import socket
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .config_models import RetryConfiguration
from .core.async_utils import retry_async, run_in_waves
from .core.cache import ResponseCache, create_cache_key
from .core.config_manager import is_valid_url
from .core.exceptions import ErrorCode, FetchError
from .core.http_client import build_request_headers, build_timeout, create_http_client

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30000

_DNS_FAILURE_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated with hostname",
    "name resolution",
)


def _is_dns_failure(exc: BaseException) -> bool:
    """Walk the exception chain looking for a resolver failure."""
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, socket.gaierror):
            return True
        text = str(current).lower()
        if any(marker in text for marker in _DNS_FAILURE_MARKERS):
            return True
        current = current.__cause__ or current.__context__
    return False


def map_status_error(url: str, status_code: int, reason: str = "") -> FetchError:
    """Translate an HTTP error status into a FetchError with its retry policy."""
    details = {"url": url, "status_code": status_code}
    if status_code == 404:
        return FetchError(
            f"Page not found: {url}", ErrorCode.HTTP_NOT_FOUND, details, retryable=False
        )
    if status_code == 429:
        return FetchError(
            f"Rate limited by {url}", ErrorCode.RATE_LIMIT_EXCEEDED, details, retryable=True
        )
    if 400 <= status_code < 500:
        return FetchError(
            f"HTTP {status_code} {reason} from {url}".strip(),
            ErrorCode.HTTP_CLIENT_ERROR,
            details,
            retryable=False,
        )
    return FetchError(
        f"HTTP {status_code} {reason} from {url}".strip(),
        ErrorCode.HTTP_SERVER_ERROR,
        details,
        retryable=True,
    )


def map_transport_error(url: str, exc: Exception) -> FetchError:
    """Translate an httpx transport exception into a FetchError."""
    details = {"url": url, "error_type": type(exc).__name__}
    if isinstance(exc, httpx.TimeoutException):
        return FetchError(f"Timed out fetching {url}", ErrorCode.TIMEOUT, details, retryable=True)
    if _is_dns_failure(exc):
        return FetchError(
            f"DNS lookup failed for {url}", ErrorCode.DNS_FAILURE, details, retryable=False
        )
    return FetchError(
        f"Network error fetching {url}: {exc}", ErrorCode.NETWORK_ERROR, details, retryable=True
    )


@dataclass
class FetchOutcome:
    """Per-URL result of ``HTMLFetcher.fetch_multiple``."""

    url: str
    content: Optional[str] = None
    error: Optional[FetchError] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.content is not None


class HTMLFetcher:
    """Async HTTP client for downloading web pages with retry and caching."""

    def __init__(
        self,
        retry: Optional[RetryConfiguration] = None,
        cache: Optional[ResponseCache] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize fetcher.

        Args:
            retry: Retry policy for retryable failures
            cache: Optional read-through response cache
            client: Optional externally owned HTTP client (not closed by the fetcher)
            sleep: Awaitable sleep used between retries
        """
        self.retry = retry or RetryConfiguration()
        self.cache = cache
        self.client: Optional[httpx.AsyncClient] = client
        self._owns_client = client is None
        self._sleep = sleep
        logger.debug("HTML fetcher initialized (external client: %s)", not self._owns_client)

    async def __aenter__(self) -> "HTMLFetcher":
        """Async context manager entry."""
        self._ensure_client()
        return self

    async def __aexit__(self, _exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = create_http_client()
            self._owns_client = True
        return self.client

    async def close(self) -> None:
        """Close HTTP client if this fetcher created it."""
        if self.client is not None and self._owns_client and not self.client.is_closed:
            await self.client.aclose()
            logger.debug("Closed HTTP client")
        if self._owns_client:
            self.client = None

    async def fetch(
        self,
        url: str,
        headers: Optional[dict[str, str]] = None,
        user_agent: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        use_cache: bool = True,
        cache_key: Optional[str] = None,
    ) -> str:
        """Fetch page content, serving from cache when possible.

        Args:
            url: http(s) URL to fetch
            headers: Extra request headers
            user_agent: User-Agent override
            timeout_ms: Read timeout in milliseconds
            use_cache: Consult and populate the cache
            cache_key: Explicit cache key (defaults to URL + headers + user agent)

        Returns:
            Response body as text

        Raises:
            FetchError: On invalid URL, HTTP errors, timeouts or empty bodies
        """
        if not is_valid_url(url):
            raise FetchError(
                f"Invalid URL: {url!r}",
                ErrorCode.CONFIGURATION_ERROR,
                {"url": url},
                retryable=False,
            )

        key = cache_key or create_cache_key(url, headers, user_agent)
        if use_cache and self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug("Cache hit for %s (%d chars)", url, len(cached))
                return cached

        timeout_seconds = (timeout_ms or DEFAULT_TIMEOUT_MS) / 1000.0
        request_headers = build_request_headers(headers, user_agent)

        content = await retry_async(
            lambda: self._fetch_once(url, request_headers, timeout_seconds),
            max_attempts=self.retry.max_attempts,
            initial_delay=self.retry.initial_delay,
            max_delay=self.retry.max_delay,
            backoff_multiplier=self.retry.backoff_multiplier,
            sleep=self._sleep,
            operation=f"fetch {url}",
        )

        if use_cache and self.cache is not None:
            self.cache.set(key, content)
        return content

    async def _fetch_once(self, url: str, headers: dict[str, str], timeout_seconds: float) -> str:
        client = self._ensure_client()
        started = time.perf_counter()
        try:
            response = await client.get(url, headers=headers, timeout=build_timeout(timeout_seconds))
        except httpx.TransportError as e:
            raise map_transport_error(url, e) from e

        if response.status_code >= 400:
            raise map_status_error(url, response.status_code, response.reason_phrase)

        content = response.text
        if not content or not content.strip():
            raise FetchError(
                f"Empty response body from {url}",
                ErrorCode.INVALID_HTML,
                {"url": url, "status_code": response.status_code},
                retryable=True,
            )

        logger.debug(
            "Fetched %s - %d chars in %.0fms",
            url,
            len(content),
            (time.perf_counter() - started) * 1000,
        )
        return content

    async def fetch_multiple(
        self,
        urls: list[str],
        concurrency: int = 3,
        delay: float = 1.0,
        **fetch_kwargs: Any,
    ) -> list[FetchOutcome]:
        """Fetch several pages in bounded waves; failures are reported per URL."""

        async def fetch_one(url: str) -> FetchOutcome:
            try:
                return FetchOutcome(url=url, content=await self.fetch(url, **fetch_kwargs))
            except FetchError as e:
                logger.warning("Failed to fetch %s: %s", url, e)
                return FetchOutcome(url=url, error=e)

        results = await run_in_waves(
            urls, fetch_one, concurrency=concurrency, delay=delay, sleep=self._sleep
        )
        outcomes: list[FetchOutcome] = []
        for url, result in zip(urls, results):
            if isinstance(result, BaseException):
                outcomes.append(
                    FetchOutcome(url=url, error=FetchError(str(result), ErrorCode.INTERNAL_ERROR))
                )
            else:
                outcomes.append(result)
        return outcomes

    async def is_url_accessible(self, url: str, timeout_ms: int = 10000) -> bool:
        """Check whether a single GET succeeds, without retries or caching."""
        if not is_valid_url(url):
            return False
        try:
            await self._fetch_once(url, build_request_headers(), timeout_ms / 1000.0)
        except FetchError as e:
            logger.debug("URL not accessible: %s (%s)", url, e.code.value)
            return False
        return True
