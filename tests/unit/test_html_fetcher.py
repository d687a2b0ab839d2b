"""Tests for the page fetcher, its error mapping and the response cache."""

from collections.abc import Callable

import httpx
import pytest

from ics_scraper.config_models import CacheConfiguration, RetryConfiguration
from ics_scraper.core.cache import ResponseCache, create_cache_key
from ics_scraper.core.correlation_id import new_run_id
from ics_scraper.core.exceptions import ErrorCode, FetchError
from ics_scraper.core.http_client import build_request_headers, create_http_client
from ics_scraper.html_fetcher import HTMLFetcher, map_status_error, map_transport_error
from tests.fixtures.fakes import no_sleep

pytestmark = pytest.mark.unit

URL = "https://example.org/events"
PAGE = "<html><body><h1>Events</h1></body></html>"


def create_fetcher(
    handler: Callable[[httpx.Request], httpx.Response],
    attempts: int = 1,
    cache: ResponseCache = None,
) -> HTMLFetcher:
    client = create_http_client(transport=httpx.MockTransport(handler))
    return HTMLFetcher(
        retry=RetryConfiguration(max_attempts=attempts, initial_delay=0, max_delay=0),
        cache=cache,
        client=client,
        sleep=no_sleep,
    )


class TestStatusMapping:
    """Test HTTP status to FetchError mapping."""

    @pytest.mark.parametrize(
        "status,code,retryable",
        [
            (404, ErrorCode.HTTP_NOT_FOUND, False),
            (429, ErrorCode.RATE_LIMIT_EXCEEDED, True),
            (403, ErrorCode.HTTP_CLIENT_ERROR, False),
            (500, ErrorCode.HTTP_SERVER_ERROR, True),
            (503, ErrorCode.HTTP_SERVER_ERROR, True),
        ],
    )
    def test_map_status_error(self, status: int, code: ErrorCode, retryable: bool) -> None:
        """Client errors are final except 429; server errors are retryable."""
        error = map_status_error(URL, status)
        assert error.code == code
        assert error.retryable is retryable
        assert error.details["status_code"] == status

    def test_map_transport_error_timeout(self) -> None:
        """Timeouts are retryable TIMEOUT errors."""
        error = map_transport_error(URL, httpx.ReadTimeout("slow"))
        assert error.code == ErrorCode.TIMEOUT
        assert error.retryable is True

    def test_map_transport_error_dns(self) -> None:
        """Resolver failures are not retried."""
        error = map_transport_error(URL, httpx.ConnectError("[Errno -2] Name or service not known"))
        assert error.code == ErrorCode.DNS_FAILURE
        assert error.retryable is False

    def test_map_transport_error_other(self) -> None:
        """Other transport failures are retryable network errors."""
        error = map_transport_error(URL, httpx.ConnectError("connection refused"))
        assert error.code == ErrorCode.NETWORK_ERROR
        assert error.retryable is True


class TestHTMLFetcher:
    """Test HTMLFetcher.fetch."""

    async def test_fetch_when_ok_then_returns_body(self) -> None:
        """A 200 response returns the page text."""
        fetcher = create_fetcher(lambda request: httpx.Response(200, text=PAGE))
        assert await fetcher.fetch(URL) == PAGE

    async def test_fetch_sends_browser_headers_and_user_agent(self) -> None:
        """Default headers are sent and the user agent can be overridden."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text=PAGE)

        await create_fetcher(handler).fetch(URL, headers={"X-Test": "1"}, user_agent="TestBot/1.0")
        assert seen[0].headers["User-Agent"] == "TestBot/1.0"
        assert seen[0].headers["X-Test"] == "1"
        assert "text/html" in seen[0].headers["Accept"]

    async def test_fetch_when_server_error_then_retried(self) -> None:
        """Retryable failures are retried until success."""
        responses = iter([httpx.Response(503), httpx.Response(200, text=PAGE)])
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return next(responses)

        assert await create_fetcher(handler, attempts=3).fetch(URL) == PAGE
        assert len(calls) == 2

    async def test_fetch_when_not_found_then_not_retried(self) -> None:
        """404 fails immediately."""
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(404)

        with pytest.raises(FetchError) as exc_info:
            await create_fetcher(handler, attempts=3).fetch(URL)
        assert exc_info.value.code == ErrorCode.HTTP_NOT_FOUND
        assert len(calls) == 1

    async def test_fetch_when_transport_fails_then_mapped(self) -> None:
        """Transport exceptions become FetchErrors."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(FetchError) as exc_info:
            await create_fetcher(handler).fetch(URL)
        assert exc_info.value.code == ErrorCode.TIMEOUT

    async def test_fetch_when_empty_body_then_invalid_html(self) -> None:
        """Whitespace-only bodies are rejected."""
        with pytest.raises(FetchError) as exc_info:
            await create_fetcher(lambda request: httpx.Response(200, text="   ")).fetch(URL)
        assert exc_info.value.code == ErrorCode.INVALID_HTML

    async def test_fetch_when_invalid_url_then_configuration_error(self) -> None:
        """Non-http URLs are rejected before any request."""
        fetcher = create_fetcher(lambda request: httpx.Response(200, text=PAGE))
        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch("ftp://example.org/file")
        assert exc_info.value.code == ErrorCode.CONFIGURATION_ERROR

    async def test_fetch_when_cached_then_no_second_request(self) -> None:
        """A cache hit skips the network."""
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(200, text=PAGE)

        cache = ResponseCache(CacheConfiguration(enabled=True))
        fetcher = create_fetcher(handler, cache=cache)
        await fetcher.fetch(URL)
        await fetcher.fetch(URL)
        await fetcher.fetch(URL, use_cache=False)

        assert len(calls) == 2
        assert cache.hits == 1

    async def test_fetch_multiple_reports_per_url(self) -> None:
        """One failing URL does not fail the batch."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/missing":
                return httpx.Response(404)
            return httpx.Response(200, text=PAGE)

        outcomes = await create_fetcher(handler).fetch_multiple(
            [URL, "https://example.org/missing"], delay=0
        )
        assert [o.success for o in outcomes] == [True, False]
        assert outcomes[1].error is not None
        assert outcomes[1].error.code == ErrorCode.HTTP_NOT_FOUND

    async def test_is_url_accessible(self) -> None:
        """Accessibility is a single GET without retries."""
        fetcher = create_fetcher(lambda request: httpx.Response(500))
        assert await fetcher.is_url_accessible(URL) is False
        assert await fetcher.is_url_accessible("not a url") is False

    async def test_close_keeps_external_client_open(self) -> None:
        """An injected client belongs to the caller."""
        client = create_http_client(transport=httpx.MockTransport(lambda request: httpx.Response(200, text=PAGE)))
        async with HTMLFetcher(client=client) as fetcher:
            await fetcher.fetch(URL)
        assert client.is_closed is False
        await client.aclose()


class TestResponseCache:
    """Test TTL and size bounds of the response cache."""

    def test_cache_when_ttl_elapsed_then_miss(self) -> None:
        """Entries expire once their TTL has fully elapsed."""
        now = [1000.0]
        cache = ResponseCache(CacheConfiguration(ttl=60), clock=lambda: now[0])
        cache.set("k", "v")

        now[0] += 59
        assert cache.get("k") == "v"
        now[0] += 1
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_cache_when_full_then_oldest_evicted(self) -> None:
        """Inserting beyond max_size drops the oldest entry."""
        cache = ResponseCache(CacheConfiguration(max_size=2))
        cache.set("a", "1")
        cache.set("b", "2")
        cache.set("c", "3")
        assert cache.has("a") is False
        assert cache.has("b") is True
        assert cache.has("c") is True

    def test_cache_per_entry_ttl_and_stats(self) -> None:
        """A per-entry TTL overrides the default; stats count hits and misses."""
        now = [0.0]
        cache = ResponseCache(CacheConfiguration(ttl=3600), clock=lambda: now[0])
        cache.set("short", "x", ttl=5)
        now[0] = 5
        assert cache.get("short") is None
        assert cache.get("absent") is None
        assert cache.stats() == {"size": 0, "hits": 0, "misses": 2}

    def test_cache_when_disabled_then_stores_nothing(self) -> None:
        """A disabled cache is a no-op."""
        cache = ResponseCache(CacheConfiguration(enabled=False))
        cache.set("k", "v")
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_cache_key_depends_on_headers_and_user_agent(self) -> None:
        """Requests that can return different bodies get different keys."""
        base = create_cache_key(URL)
        assert create_cache_key(URL, {"Accept-Language": "fr"}) != base
        assert create_cache_key(URL, user_agent="Bot") != base
        assert create_cache_key(URL, {"b": "2", "a": "1"}) == create_cache_key(URL, {"a": "1", "b": "2"})


def test_request_headers_carry_run_id() -> None:
    """Requests are tagged with the current run id once one is assigned."""
    assert "X-Request-ID" not in build_request_headers()
    run_id = new_run_id()
    assert build_request_headers()["X-Request-ID"] == run_id
