"""
Source fetcher: the only component that talks to upstream sources.

fetch() runs cache lookup, rate-limit admission, the HTTP call with a hard
timeout, retries with backoff, outcome recording and cache write, and folds
every failure into a FetchResult. Nothing raised by a source reaches the
consolidation run.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .data_sources.catalog import ENDPOINTS, EndpointSpec, get_endpoint
from .error_handling import (
    FetchResult, FetchStatus, classify_http_error, classify_transport_error,
    parse_retry_after, retry_with_backoff, with_fallback, with_timeout,
)
from .exceptions import DataSourceError, ParseError, RateLimitedError, SourceDisabledError
from .logging_config import get_source_logger
from .performance_monitor import PerformanceMonitor, RequestOutcome
from .persistence.snapshot_store import SnapshotStore
from .rate_limiter import RateLimitGate
from .response_cache import CacheState, ResponseCache, cache_key
from .source_registry import SourceRegistry
from .config import SourceDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchOptions:
    use_cache: bool = True
    force_refresh: bool = False
    priority: Optional[int] = None


class SourceFetcher:
    def __init__(
        self,
        registry: SourceRegistry,
        gate: RateLimitGate,
        cache: ResponseCache,
        monitor: PerformanceMonitor,
        endpoints: Dict[str, EndpointSpec] = None,
        snapshot_store: SnapshotStore = None,
        client: httpx.AsyncClient = None,
        timeout_s: float = 12.0,
        jitter: float = 0.1,
        user_agent: str = "pulse-data-core",
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self.gate = gate
        self.cache = cache
        self.monitor = monitor
        self.endpoints = ENDPOINTS if endpoints is None else endpoints
        self.snapshot_store = snapshot_store
        self.timeout_s = timeout_s
        self.jitter = jitter
        self.user_agent = user_agent
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._sleep = sleep

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy-loaded HTTP client shared by all sources"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_s),
                follow_redirects=True,
                headers={"User-Agent": self.user_agent, "Accept": "application/json, text/csv, */*"},
            )
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, source_id: str, endpoint: str, options: FetchOptions = None) -> FetchResult:
        """Fetch one endpoint, returning FRESH, CACHED, FALLBACK or ERROR."""
        options = options or FetchOptions()
        key = cache_key(source_id, endpoint)

        try:
            descriptor = self.registry.get(source_id)
            spec = get_endpoint(source_id, endpoint, self.endpoints)
        except DataSourceError as e:
            return FetchResult(source_id, endpoint, FetchStatus.ERROR, error=e)

        if not descriptor.enabled:
            return FetchResult(source_id, endpoint, FetchStatus.ERROR, error=SourceDisabledError(source_id, endpoint))

        if options.use_cache and not options.force_refresh:
            lookup = self.cache.get(key)
            if lookup.state is CacheState.FRESH:
                return FetchResult(
                    source_id, endpoint, FetchStatus.CACHED,
                    payload=lookup.value, fetched_at=lookup.entry.written_at,
                )

        log = get_source_logger(__name__, source_id, endpoint)
        attempts = 0

        async def attempt():
            nonlocal attempts
            attempts += 1
            async with self.gate.slot(source_id, priority=options.priority):
                return await self._request_once(descriptor, spec)
        attempt.__name__ = f"fetch {key}"

        async def fetch_fresh() -> FetchResult:
            policy = descriptor.rate_limit
            payload = await retry_with_backoff(
                attempt,
                max_retries=descriptor.max_retries,
                base_delay=policy.base_backoff_s,
                backoff_factor=policy.backoff_multiplier,
                max_delay=policy.max_backoff_s,
                jitter=self.jitter,
                sleep=self._sleep,
            )
            entry = self.cache.put(key, payload, descriptor.cache_ttl_s)
            self.registry.record_success(source_id)
            await self._persist(key, entry)
            return FetchResult(
                source_id, endpoint, FetchStatus.FRESH,
                payload=payload, fetched_at=entry.written_at, attempts=attempts,
            )

        def fallback(error: DataSourceError) -> FetchResult:
            self.registry.record_failure(source_id, str(error))
            stale = self.cache.get(key)
            if stale.state is not CacheState.ABSENT:
                log.warning(
                    f"Serving cached data for {key} after failure: {error}",
                    extra={"event": "fetch_fallback"}
                )
                return FetchResult(
                    source_id, endpoint, FetchStatus.FALLBACK,
                    payload=stale.value, fetched_at=stale.entry.written_at,
                    error=error, attempts=attempts,
                )
            log.error(f"Fetch failed for {key} with no cached fallback: {error}", extra={"event": "fetch_failed"})
            return FetchResult(source_id, endpoint, FetchStatus.ERROR, error=error, attempts=attempts)

        return await with_fallback(fetch_fresh, fallback)

    async def _request_once(self, descriptor: SourceDescriptor, spec: EndpointSpec) -> Any:
        """One network attempt: GET, status check, decode. Records the outcome."""
        source_id, endpoint = descriptor.id, spec.name
        url = spec.url(descriptor.base_url)
        started_at = self._clock()
        t0 = time.perf_counter()
        status_code = None

        try:
            response = await with_timeout(
                self.client.get(url, params=dict(spec.params) or None),
                self.timeout_s,
                source_id=source_id,
                endpoint=endpoint,
            )
            status_code = response.status_code
            if status_code >= 400:
                raise classify_http_error(
                    status_code, source_id, endpoint,
                    retry_after=parse_retry_after(response.headers.get("Retry-After")),
                )
            try:
                payload = spec.decoder.decode(response.content, source_id=source_id, endpoint=endpoint)
            except DataSourceError:
                raise
            except Exception as e:
                raise ParseError(
                    f"Undecodable {spec.decoder.format} payload: {e}", source_id=source_id, endpoint=endpoint
                ) from e
        except httpx.HTTPError as e:
            error = classify_transport_error(e, source_id, endpoint)
            self._record(source_id, endpoint, started_at, t0, False, status_code, error)
            raise error from e
        except DataSourceError as e:
            self._record(source_id, endpoint, started_at, t0, False, status_code, e)
            raise

        self._record(source_id, endpoint, started_at, t0, True, status_code)
        return payload

    def _record(self, source_id, endpoint, started_at, t0, success, status_code=None, error=None):
        duration_ms = (time.perf_counter() - t0) * 1000
        self.monitor.record(RequestOutcome(
            source=source_id,
            endpoint=endpoint,
            started_at=started_at,
            duration_ms=duration_ms,
            success=success,
            status_code=status_code,
            error_type=type(error).__name__ if error else None,
        ))
        # A payload that fails to decode still means the upstream answered
        transport_ok = success or isinstance(error, ParseError)
        retry_after = error.retry_after if isinstance(error, RateLimitedError) else None
        self.gate.record_outcome(source_id, transport_ok, retry_after=retry_after)

        if success:
            logger.debug(
                f"Fetched {source_id}:{endpoint} in {duration_ms:.0f}ms",
                extra={"source": source_id, "endpoint": endpoint, "response_time_ms": round(duration_ms, 1)}
            )

    async def _persist(self, key: str, entry) -> None:
        if self.snapshot_store is None:
            return
        try:
            await self.snapshot_store.save_cache_entry(key, entry)
        except Exception as e:
            logger.warning(f"Failed to persist cache entry {key}: {e}")
