"""Async orchestration utilities for ics_scraper.

This module provides the shared async patterns used by the fetcher, the
extraction engine and the orchestrator:
- A single retry combinator with exponential backoff and jitter
- An overall deadline / cancellation token
- Bounded parallel "waves" with an inter-wave delay for rate-limited APIs
- Gathering coroutines under a timeout

Usage Example:
    ```python
    from ics_scraper.core.async_utils import Deadline, retry_async, run_in_waves

    html = await retry_async(
        lambda: fetch_once(url),
        max_attempts=3,
        initial_delay=1.0,
        is_retryable=is_retryable_error,
    )

    deadline = Deadline(timeout_seconds=120)
    results = await run_in_waves(chunks, extract_chunk, concurrency=3, delay=1.0, deadline=deadline)
    ```
"""

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Optional, TypeVar, Union

from .exceptions import ErrorCode, ScraperError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# Backoff calculation constants
MAX_BACKOFF_SECONDS = 30.0
JITTER_MIN_FACTOR = 0.1  # Minimum jitter multiplier
JITTER_MAX_FACTOR = 0.3  # Maximum jitter multiplier


def calculate_backoff(
    attempt: int,
    initial_delay: float = 1.0,
    multiplier: float = 2.0,
    max_delay: float = MAX_BACKOFF_SECONDS,
    jitter: bool = True,
) -> float:
    """Calculate the delay before retry number ``attempt`` (zero based).

    Args:
        attempt: Index of the attempt that just failed (0 for the first)
        initial_delay: Delay after the first failure in seconds
        multiplier: Exponential growth factor
        max_delay: Upper bound for the returned delay
        jitter: Add 10-30% random jitter to spread retries

    Returns:
        Delay in seconds, never above ``max_delay``
    """
    base = min(initial_delay * (multiplier**attempt), max_delay)
    if jitter and base > 0:
        # Non-cryptographic randomness is fine for retry spreading
        base += base * random.uniform(JITTER_MIN_FACTOR, JITTER_MAX_FACTOR)  # nosec B311
    return min(base, max_delay)


def is_retryable_error(exc: BaseException) -> bool:
    """Default retry predicate: only ScraperErrors flagged retryable are retried."""
    return isinstance(exc, ScraperError) and exc.retryable


async def retry_async(
    coro_func: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = MAX_BACKOFF_SECONDS,
    backoff_multiplier: float = 2.0,
    is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    jitter: bool = True,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    operation: str = "operation",
) -> T:
    """Retry an async function with exponential backoff.

    The same combinator is used for HTTP fetches and LLM calls; only the
    predicate and the limits differ.

    Args:
        coro_func: Function that returns a fresh coroutine per attempt
        max_attempts: Total number of attempts including the first
        initial_delay: Delay after the first failure in seconds
        max_delay: Maximum delay between attempts in seconds
        backoff_multiplier: Multiplier for exponential backoff
        is_retryable: Predicate deciding whether an exception may be retried
        jitter: Whether to add random jitter to each delay
        sleep: Awaitable sleep function (injectable for tests)
        operation: Label used in log messages

    Returns:
        The function's result

    Raises:
        Exception: The last exception raised, once the predicate rejects it or
            the attempts are exhausted
    """
    attempts = max(1, max_attempts)

    for attempt in range(attempts):
        try:
            result = await coro_func()
            if attempt > 0:
                logger.info("%s succeeded on attempt %d/%d", operation, attempt + 1, attempts)
            return result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not is_retryable(e):
                logger.debug("Not retrying %s after %s", operation, type(e).__name__)
                raise

            if attempt + 1 >= attempts:
                logger.error("%s failed after %d attempts: %s", operation, attempts, e)
                raise

            delay = calculate_backoff(
                attempt, initial_delay, backoff_multiplier, max_delay, jitter=jitter
            )
            logger.warning(
                "Attempt %d/%d of %s failed: %s. Retrying in %.1fs...",
                attempt + 1,
                attempts,
                operation,
                e,
                delay,
            )
            await sleep(delay)

    # Loop always returns or raises
    raise ScraperError(f"{operation} failed", ErrorCode.INTERNAL_ERROR)


class Deadline:
    """Overall deadline and cancellation token for one pipeline run.

    A deadline expires when its time budget is spent or when the optional
    ``cancel_event`` is set. Long-running loops consult ``expired`` before
    issuing further work and keep whatever they have accumulated.
    """

    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._cancel_event = cancel_event
        self.timeout_seconds = timeout_seconds
        self._expires_at = clock() + timeout_seconds if timeout_seconds is not None else None

    @property
    def cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    @property
    def expired(self) -> bool:
        if self.cancelled:
            return True
        return self._expires_at is not None and self._clock() >= self._expires_at

    def remaining(self) -> Optional[float]:
        """Seconds left before expiry, None when unbounded."""
        if self.cancelled:
            return 0.0
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def bound(self, timeout: Optional[float]) -> Optional[float]:
        """Clamp a per-operation timeout to the time remaining."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)

    def checkpoint(self, stage: str = "pipeline") -> None:
        """Raise a retryable TIMEOUT error if the deadline has passed."""
        if self.expired:
            reason = "cancelled" if self.cancelled else "deadline exceeded"
            raise ScraperError(
                f"{stage} aborted: {reason}",
                ErrorCode.TIMEOUT,
                details={"stage": stage},
                retryable=True,
            )

    def __repr__(self) -> str:
        return f"Deadline(timeout_seconds={self.timeout_seconds}, expired={self.expired})"


async def run_in_waves(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    concurrency: int = 3,
    delay: float = 1.0,
    deadline: Optional[Deadline] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> list[Union[R, BaseException]]:
    """Run ``worker`` over ``items`` in bounded parallel waves.

    Each wave runs at most ``concurrency`` workers concurrently; ``delay`` seconds
    separate consecutive waves. Worker exceptions are returned in place of the
    result so one failing item never cancels its siblings. Once the deadline
    expires no further waves are started and the returned list is shorter than
    ``items``.

    Returns:
        Results (or exceptions) in item order for the items that were scheduled
    """
    size = max(1, concurrency)
    results: list[Union[R, BaseException]] = []

    for start in range(0, len(items), size):
        if deadline is not None and deadline.expired:
            logger.warning(
                "Deadline reached; skipping %d of %d items", len(items) - start, len(items)
            )
            break

        if start > 0 and delay > 0:
            await sleep(delay)

        wave = items[start : start + size]
        logger.debug(
            "Running wave %d (%d items, concurrency %d)", start // size + 1, len(wave), size
        )
        wave_results = await asyncio.gather(*(worker(item) for item in wave), return_exceptions=True)
        results.extend(wave_results)

    return results


async def gather_with_timeout(*coros: Awaitable[Any], timeout: Optional[float] = None) -> list[Any]:
    """Gather coroutines, failing with a retryable TIMEOUT error when slow.

    Args:
        *coros: Coroutines to run concurrently
        timeout: Seconds to wait for all of them, None for no limit

    Returns:
        Results in order; exceptions are returned in place of results

    Raises:
        ScraperError: If the timeout elapses before every coroutine completes
    """
    try:
        return await asyncio.wait_for(asyncio.gather(*coros, return_exceptions=True), timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.warning("Gather of %d coroutines timed out after %.1fs", len(coros), timeout or 0)
        raise ScraperError(
            f"Operations did not complete within {timeout}s",
            ErrorCode.TIMEOUT,
            retryable=True,
        ) from e
