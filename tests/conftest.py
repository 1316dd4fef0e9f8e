"""
Shared test fixtures for the consolidation service test suite.
Provides a controllable clock, small two-source registries and a fetch stack
wired to an httpx.MockTransport.
"""
import asyncio
import logging
from types import SimpleNamespace

import httpx
import pytest

from pulse_core.config import RateLimitPolicy, Settings, SourceDescriptor
from pulse_core.data_sources.catalog import EndpointSpec
from pulse_core.data_sources.decoders import JSONDecoder
from pulse_core.orchestrator import SourceFetcher
from pulse_core.performance_monitor import PerformanceMonitor
from pulse_core.rate_limiter import RateLimitGate
from pulse_core.response_cache import ResponseCache
from pulse_core.source_registry import SourceRegistry


class FakeClock:
    """Manually advanced clock; ``sleep`` advances it instead of waiting."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def make_descriptor(
    source_id: str,
    priority: int = 1,
    cache_ttl_s: float = 300,
    max_retries: int = 3,
    enabled: bool = True,
    **limits,
) -> SourceDescriptor:
    policy = {"max_per_minute": 60, "max_per_hour": 1000, "max_concurrent": 5,
              "base_backoff_s": 1.0, "backoff_multiplier": 2.0, "max_backoff_s": 60.0}
    policy.update(limits)
    return SourceDescriptor(
        id=source_id,
        name=source_id.title(),
        base_url=f"https://{source_id}.test",
        enabled=enabled,
        priority=priority,
        cache_ttl_s=cache_ttl_s,
        max_retries=max_retries,
        rate_limit=RateLimitPolicy(**policy),
    )


def make_endpoints(*source_ids: str, name: str = "data"):
    return {
        f"{sid}:{name}": EndpointSpec(sid, name, f"/{name}.json", JSONDecoder())
        for sid in source_ids
    }


def build_stack(handler, clock: FakeClock, descriptors=None, endpoints=None, timeout_s: float = 5.0):
    """Registry, gate, cache, monitor and fetcher sharing one clock."""
    if descriptors is None:
        descriptors = {sid: make_descriptor(sid) for sid in ("alpha", "beta")}
    registry = SourceRegistry(descriptors, clock=clock)
    gate = RateLimitGate(registry, clock=clock, sleep=clock.sleep)
    cache = ResponseCache(clock=clock)
    monitor = PerformanceMonitor(clock=clock)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    fetcher = SourceFetcher(
        registry, gate, cache, monitor,
        endpoints=endpoints if endpoints is not None else make_endpoints(*descriptors),
        client=client,
        timeout_s=timeout_s,
        jitter=0.0,
        clock=clock,
        sleep=clock.sleep,
    )
    return SimpleNamespace(registry=registry, gate=gate, cache=cache, monitor=monitor,
                           fetcher=fetcher, client=client, clock=clock)


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep test output readable."""
    logging.disable(logging.CRITICAL)
    yield
    logging.disable(logging.NOTSET)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return SourceRegistry({
        "alpha": make_descriptor("alpha", priority=1),
        "beta": make_descriptor("beta", priority=2),
    })


@pytest.fixture
def test_settings():
    """Settings isolated from the developer's environment and .env file."""
    return Settings(
        _env_file=None,
        APP_ENV="development",
        STORE_BACKEND="memory",
        AUTO_REFRESH_ENABLED=False,
        REFRESH_ON_STARTUP=False,
        SOURCE_OVERRIDES="",
    )
