"""
Service container: the composition root of the consolidation service.

The container builds the whole object graph from Settings once per process
and owns its lifecycle. Consumers (the FastAPI routes, tests) receive it by
reference from ``app.state`` instead of reaching for module globals.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx
from fastapi import Request

from .config import Settings, build_source_descriptors
from .consolidator import DataConsolidator
from .data_sources.catalog import ENDPOINTS, EndpointSpec
from .domain_areas import AREAS, AreaSpec
from .models import ConsolidatedSnapshot, PartialUpdate, RefreshStatus
from .orchestrator import SourceFetcher
from .performance_monitor import PerformanceMonitor
from .persistence import BlobStore, SnapshotStore, create_blob_store
from .rate_limiter import RateLimitGate
from .response_cache import ResponseCache
from .scheduler import RefreshScheduler
from .source_registry import SourceRegistry

logger = logging.getLogger(__name__)


class ServiceContainer:
    """
    Builds and owns the registry, rate limit gate, cache, performance monitor,
    persistence, fetcher, consolidator and scheduler.

    Optional arguments replace the pieces that touch the outside world so
    tests can run the real graph against a mock transport.
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
        blob_store: Optional[BlobStore] = None,
        endpoints: Optional[Dict[str, EndpointSpec]] = None,
        areas: Optional[Sequence[AreaSpec]] = None,
    ):
        self.settings = settings

        self.registry = SourceRegistry(
            build_source_descriptors(settings),
            auto_disable_after=settings.AUTO_DISABLE_AFTER_FAILURES,
        )
        self.gate = RateLimitGate(
            self.registry,
            queue_limit=settings.RATE_LIMIT_QUEUE_LIMIT,
            max_wait_s=settings.MAX_RATE_LIMIT_WAIT_SECONDS,
        )
        self.cache = ResponseCache(max_entries=settings.CACHE_MAX_ENTRIES)
        self.monitor = PerformanceMonitor(settings.performance_thresholds)

        self.blob_store = blob_store or create_blob_store(settings)
        self.snapshot_store = SnapshotStore(
            self.blob_store,
            prefix=settings.STORE_KEY_PREFIX,
            history_limit=settings.SNAPSHOT_HISTORY_LIMIT,
        )

        self.fetcher = SourceFetcher(
            self.registry,
            self.gate,
            self.cache,
            self.monitor,
            endpoints=endpoints if endpoints is not None else ENDPOINTS,
            snapshot_store=self.snapshot_store,
            client=client,
            timeout_s=settings.HTTP_TIMEOUT_SECONDS,
            jitter=settings.RETRY_JITTER_RATIO,
            user_agent=settings.USER_AGENT,
        )
        self.consolidator = DataConsolidator(
            self.fetcher,
            self.registry,
            areas=areas if areas is not None else AREAS,
            weights=settings.quality_weights,
            snapshot_store=self.snapshot_store,
        )
        self.scheduler = RefreshScheduler(
            self.consolidator,
            interval_s=settings.REFRESH_INTERVAL_SECONDS,
            refresh_on_focus=settings.REFRESH_ON_FOCUS,
            refresh_on_reconnect=settings.REFRESH_ON_RECONNECT,
        )
        self._started = False

        logger.info(
            f"ServiceContainer initialized with {len(self.registry.enabled_ids())} enabled sources "
            f"(store: {settings.STORE_BACKEND})"
        )

    async def startup(self) -> None:
        """Bootstrap from the durable store, then start refreshing."""
        entries = await self.snapshot_store.load_cache_entries()
        for key, entry in entries.items():
            self.cache.restore(key, entry)
        if entries:
            logger.info(f"Restored {len(entries)} cache entries from the blob store")

        snapshot = await self.snapshot_store.load_latest_snapshot()
        if snapshot is not None:
            self.consolidator.restore(snapshot)

        if self.settings.AUTO_REFRESH_ENABLED:
            self.scheduler.start()
        if self.settings.REFRESH_ON_STARTUP:
            self.scheduler.trigger("startup")
        self._started = True
        logger.info("ServiceContainer started", extra={"event": "container_started"})

    async def shutdown(self) -> None:
        """Stop the scheduler and close managed clients."""
        await self.scheduler.stop()
        for name, close in (("fetcher", self.fetcher.close), ("blob_store", self.blob_store.close)):
            try:
                await close()
            except Exception as e:
                logger.warning(f"Error closing {name}: {e}")
        self._started = False
        logger.info("ServiceContainer closed all managed services")

    # Snapshot and refresh
    def get_consolidated_snapshot(self) -> ConsolidatedSnapshot:
        return self.consolidator.get_snapshot()

    def get_refresh_status(self) -> RefreshStatus:
        return self.scheduler.get_status()

    def subscribe_to_refresh(self, callback: Callable[[RefreshStatus], None]) -> Callable[[], None]:
        return self.scheduler.subscribe(callback)

    async def refresh_now(self, sources: Optional[List[str]] = None, force_refresh: bool = False) -> RefreshStatus:
        if sources:
            for source_id in sources:
                self.registry.get(source_id)
        return await self.scheduler.refresh_now(sources=sources, force_refresh=force_refresh)

    async def refresh_area(self, area: str) -> PartialUpdate:
        return await self.scheduler.refresh_area(area)

    async def retry_failed(self) -> RefreshStatus:
        return await self.scheduler.retry_failed()

    def on_focus(self) -> bool:
        return self.scheduler.on_focus()

    def on_reconnect(self) -> bool:
        return self.scheduler.on_reconnect()

    def on_offline(self) -> None:
        self.scheduler.on_offline()

    # Observability
    def get_performance_summary(self, source: Optional[str] = None) -> Dict[str, Any]:
        if source is not None:
            self.registry.get(source)
        return self.monitor.get_summary(source)

    def get_alerts(self, include_acknowledged: bool = True) -> List[Dict[str, Any]]:
        return self.monitor.get_alerts(include_acknowledged=include_acknowledged)

    def acknowledge_alert(self, alert_id: str) -> bool:
        return self.monitor.acknowledge(alert_id)

    def get_rate_limit_status(self, source: Optional[str] = None) -> Dict[str, Any]:
        if source is None:
            return self.gate.get_all_status()
        self.registry.get(source)
        return self.gate.get_status(source)

    def get_cache_status(self) -> Dict[str, Any]:
        now = time.time()
        return {
            **self.cache.stats(),
            "keys": {key: ("fresh" if entry.is_fresh(now) else "stale") for key, entry in self.cache.items()},
        }

    # Operator controls
    def list_sources(self) -> List[Dict[str, Any]]:
        return self.registry.describe()

    def set_source_enabled(self, source: str, enabled: bool) -> Dict[str, Any]:
        descriptor = self.registry.set_enabled(source, enabled)
        return {**descriptor.model_dump(), "status": self.registry.status(source).value}

    async def clear_cache(self, prefix: str = "") -> Dict[str, int]:
        """Drop cached responses in memory and in the durable store."""
        if prefix:
            removed = self.cache.invalidate(prefix)
        else:
            removed = len(self.cache)
            self.cache.clear_all()
        persisted = await self.snapshot_store.delete_cache_entries(prefix)
        logger.info(f"Cache cleared (prefix={prefix!r}): {removed} in memory, {persisted} persisted",
                    extra={"event": "cache_cleared"})
        return {"removed": removed, "persisted_removed": persisted}

    def health(self) -> Dict[str, Any]:
        snapshot = self.consolidator.get_snapshot()
        status = self.scheduler.get_status()
        return {
            "status": "healthy" if self._started else "starting",
            "snapshot_version": snapshot.version,
            "data_quality": snapshot.data_quality,
            "last_updated": snapshot.last_updated,
            "is_refreshing": status.is_refreshing,
            "online": status.online,
            "sources_enabled": len(self.registry.enabled_ids()),
            "cache": self.cache.stats(),
            "performance": self.monitor.get_summary()["status"],
        }


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the container built by the app lifespan."""
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise RuntimeError("Service container not initialized")
    return container
