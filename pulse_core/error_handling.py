"""
Failure policy for outbound calls.

The orchestrator composes three small combinators instead of nesting
try/except blocks: ``with_timeout`` bounds one attempt, ``retry_with_backoff``
repeats retryable failures, ``with_fallback`` turns the final error into a
degraded result. Errors travel as DataSourceError subclasses until the
orchestrator folds them into a FetchResult.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from .exceptions import DataSourceError, NetworkError, RateLimitedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FetchStatus(str, Enum):
    FRESH = "fresh"        # fetched from the network during this call
    CACHED = "cached"      # served from a fresh cache entry, no network
    FALLBACK = "fallback"  # stale cache entry served after the network failed
    ERROR = "error"


@dataclass
class FetchResult:
    """Outcome of one (source, endpoint) fetch; never raised, always returned"""
    source: str
    endpoint: str
    status: FetchStatus
    payload: Any = None
    fetched_at: Optional[float] = None
    error: Optional[DataSourceError] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status is not FetchStatus.ERROR

    @property
    def key(self) -> str:
        return f"{self.source}:{self.endpoint}"


def backoff_delay(failures: int, base_delay: float, backoff_factor: float, max_delay: float) -> float:
    """Delay after the ``failures``-th consecutive failure (1-based)."""
    if failures <= 0:
        return 0.0
    return min(base_delay * (backoff_factor ** (failures - 1)), max_delay)


async def with_timeout(
    awaitable: Awaitable[T],
    timeout_s: float,
    source_id: str = None,
    endpoint: str = None,
) -> T:
    """Await with a hard timeout; a timeout becomes a retryable NetworkError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_s)
    except asyncio.TimeoutError as e:
        raise NetworkError(
            f"Request timed out after {timeout_s}s",
            source_id=source_id,
            endpoint=endpoint,
            timed_out=True,
        ) from e


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    backoff_factor: float = 2.0,
    max_delay: float = 30.0,
    jitter: float = 0.0,
    exceptions: tuple = (DataSourceError,),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """Retry ``func`` with exponential backoff.

    ``max_retries`` counts retries after the first attempt. Errors whose
    ``retryable`` attribute is false are re-raised immediately. ``jitter``
    adds up to that fraction of the delay at random.
    """
    name = getattr(func, "__name__", "operation")
    for attempt in range(max_retries + 1):
        try:
            return await func()
        except exceptions as e:
            if not getattr(e, "retryable", True):
                logger.warning(f"Non-retryable error in {name}: {e}")
                raise
            if attempt == max_retries:
                logger.warning(f"Max retries ({max_retries}) exceeded for {name}: {e}")
                raise

            delay = backoff_delay(attempt + 1, base_delay, backoff_factor, max_delay)
            if jitter > 0:
                delay += delay * jitter * rng()
            logger.info(f"Attempt {attempt + 1} failed for {name}: {e}. Retrying in {delay:.2f}s")
            await sleep(delay)


async def with_fallback(
    func: Callable[[], Awaitable[T]],
    fallback: Callable[[DataSourceError], T],
) -> T:
    """Run ``func``; on a DataSourceError return ``fallback(error)`` instead."""
    try:
        return await func()
    except DataSourceError as e:
        return fallback(e)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def classify_http_error(
    status_code: int,
    source_id: str = None,
    endpoint: str = None,
    retry_after: Optional[float] = None,
) -> DataSourceError:
    """Map an HTTP error status to the error taxonomy."""
    if status_code == 429:
        return RateLimitedError(source_id, retry_after=retry_after, reason="HTTP 429", endpoint=endpoint)
    if status_code >= 500 or status_code == 408:
        return NetworkError(
            f"Server error {status_code}",
            source_id=source_id,
            endpoint=endpoint,
            status_code=status_code,
            retryable=True,
        )
    if status_code in (401, 403):
        return NetworkError(
            f"Access denied ({status_code})",
            source_id=source_id,
            endpoint=endpoint,
            status_code=status_code,
            retryable=False,
        )
    return NetworkError(
        f"Client error {status_code}",
        source_id=source_id,
        endpoint=endpoint,
        status_code=status_code,
        retryable=False,
    )


def classify_transport_error(error: httpx.HTTPError, source_id: str = None, endpoint: str = None) -> NetworkError:
    """Map an httpx transport failure to a retryable NetworkError."""
    if isinstance(error, httpx.TimeoutException):
        return NetworkError(
            f"Request timed out: {error}",
            source_id=source_id,
            endpoint=endpoint,
            timed_out=True,
        )
    return NetworkError(
        f"Transport error: {type(error).__name__}: {error}",
        source_id=source_id,
        endpoint=endpoint,
    )
