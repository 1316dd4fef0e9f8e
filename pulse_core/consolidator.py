"""
Data consolidator.

A run fetches every (source, endpoint) pair needed by the requested areas
concurrently, merges each area's payloads with its pure merge function,
scores it and swaps a new ConsolidatedSnapshot in wholesale. Concurrency per
source is bounded by the rate limit gate inside the fetcher only.

The consolidator reads results; it never touches cache or rate-limit state.
"""
import asyncio
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .config import QualityWeights
from .domain_areas import AREAS, AreaSpec
from .error_handling import FetchResult, FetchStatus
from .exceptions import ConsolidationPartialFailure, DataSourceError, UnknownAreaError, UnknownSourceError
from .models import AreaResult, ConsolidatedSnapshot, PartialUpdate, RefreshError, SourceContribution
from .orchestrator import FetchOptions, SourceFetcher
from .persistence.snapshot_store import SnapshotStore
from .quality import overall_quality, score_area
from .source_registry import SourceRegistry

logger = logging.getLogger(__name__)

Pair = Tuple[str, str]
ProgressCallback = Callable[[int, int, Optional[str]], None]


class DataConsolidator:
    def __init__(
        self,
        fetcher: SourceFetcher,
        registry: SourceRegistry,
        areas: Sequence[AreaSpec] = AREAS,
        weights: QualityWeights = None,
        snapshot_store: SnapshotStore = None,
        clock: Callable[[], float] = time.time,
    ):
        self.fetcher = fetcher
        self.registry = registry
        self._areas: Dict[str, AreaSpec] = {spec.key: spec for spec in areas}
        self.weights = weights or QualityWeights()
        self.snapshot_store = snapshot_store
        self._clock = clock
        self._snapshot = ConsolidatedSnapshot()

    def get_snapshot(self) -> ConsolidatedSnapshot:
        """Last published snapshot; never blocks on the network."""
        return self._snapshot

    def restore(self, snapshot: ConsolidatedSnapshot) -> None:
        """Adopt a persisted snapshot as the current one (cold start)."""
        self._snapshot = snapshot.model_copy(update={"restored": True})
        logger.info(
            f"Restored snapshot v{snapshot.version} with {len(snapshot.areas)} areas",
            extra={"event": "snapshot_restored", "version": snapshot.version}
        )

    def area_keys(self) -> List[str]:
        return list(self._areas)

    def get_area(self, key: str) -> AreaSpec:
        try:
            return self._areas[key]
        except KeyError:
            raise UnknownAreaError(key) from None

    def areas_for_sources(self, sources: Iterable[str]) -> List[str]:
        wanted = set(sources)
        return [key for key, spec in self._areas.items() if spec.sources & wanted]

    def _is_enabled(self, source_id: str) -> bool:
        try:
            return self.registry.is_enabled(source_id)
        except UnknownSourceError:
            return False

    async def _safe_fetch(self, source_id: str, endpoint: str, options: FetchOptions) -> FetchResult:
        try:
            return await self.fetcher.fetch(source_id, endpoint, options)
        except Exception as e:
            logger.exception(f"Unexpected failure fetching {source_id}:{endpoint}")
            return FetchResult(
                source_id, endpoint, FetchStatus.ERROR,
                error=DataSourceError(f"Unexpected error: {e}", source_id=source_id, endpoint=endpoint),
            )

    async def consolidate_all(self, force_refresh: bool = False,
                              progress: ProgressCallback = None) -> ConsolidatedSnapshot:
        return await self.consolidate_areas(force_refresh=force_refresh, progress=progress)

    async def consolidate_one(self, area: str, force_refresh: bool = True) -> PartialUpdate:
        """Re-fetch a single area and fold it into the current snapshot."""
        self.get_area(area)
        await self.consolidate_areas([area], force_refresh=force_refresh)
        return self.partial_update(area)

    def partial_update(self, area: str) -> PartialUpdate:
        """Current state of one area within the published snapshot."""
        self.get_area(area)
        snapshot = self._snapshot
        result = snapshot.areas.get(area) or AreaResult(
            area=area, status="unavailable", issues=["not refreshed yet"]
        )
        return PartialUpdate(
            area=result,
            snapshot_version=snapshot.version,
            data_quality=snapshot.data_quality,
            errors=[e for e in snapshot.errors if e.area == area],
        )

    async def consolidate_areas(
        self,
        area_keys: Sequence[str] = None,
        force_refresh: bool = False,
        force_sources: Iterable[str] = None,
        progress: ProgressCallback = None,
    ) -> ConsolidatedSnapshot:
        """Run one consolidation over ``area_keys`` (all areas when None).

        Areas not in ``area_keys`` are carried over from the current snapshot.
        ``force_sources`` bypasses the fresh cache for those sources only.
        """
        full_run = area_keys is None
        specs = list(self._areas.values()) if full_run else [self.get_area(k) for k in area_keys]
        forced = set(force_sources or ())
        previous = self._snapshot
        started = time.perf_counter()

        pairs = sorted({pair for spec in specs for pair in spec.inputs})
        fetches: Dict[Pair, asyncio.Future] = {}
        for source_id, endpoint in pairs:
            if not self._is_enabled(source_id):
                continue
            options = FetchOptions(force_refresh=force_refresh or source_id in forced)
            fetches[(source_id, endpoint)] = asyncio.ensure_future(
                self._safe_fetch(source_id, endpoint, options)
            )

        logger.info(
            f"Consolidating {len(specs)} areas from {len(fetches)} source endpoints",
            extra={"event": "consolidation_started", "areas": len(specs), "fetches": len(fetches)}
        )

        async def build(spec: AreaSpec) -> Tuple[AreaResult, List[FetchResult]]:
            inputs = [fetches[pair] for pair in spec.inputs if pair in fetches]
            results = list(await asyncio.gather(*inputs)) if inputs else []
            return self._build_area(spec, results), results

        built: Dict[str, AreaResult] = {}
        run_results: Dict[Pair, FetchResult] = {}
        completed = 0
        if progress:
            progress(completed, len(specs), None)
        for next_done in asyncio.as_completed([build(spec) for spec in specs]):
            area_result, results = await next_done
            built[area_result.area] = area_result
            for result in results:
                run_results[(result.source, result.endpoint)] = result
            completed += 1
            if progress:
                progress(completed, len(specs), area_result.area)

        now = self._clock()
        errors = self._collect_errors(specs, run_results, now)

        if full_run and run_results and not any(r.ok for r in run_results.values()):
            if any(area.data is not None for area in previous.areas.values()):
                logger.warning(
                    "All sources failed; keeping the previous snapshot",
                    extra={"event": "consolidation_outage", "version": previous.version}
                )
                self._snapshot = previous.model_copy(update={"unable_to_refresh": True, "errors": errors})
                return self._snapshot

        areas = {} if full_run else dict(previous.areas)
        areas.update({spec.key: built[spec.key] for spec in specs})
        if not full_run:
            refreshed = {spec.key for spec in specs}
            errors = [e for e in previous.errors if e.area not in refreshed] + errors

        data_quality = overall_quality(
            {key: area.quality for key, area in areas.items()},
            {key: self._areas[key].weight for key in areas if key in self._areas},
        )
        snapshot = ConsolidatedSnapshot(
            version=previous.version + 1,
            areas=areas,
            last_updated=now,
            data_quality=data_quality,
            errors=errors,
        )
        self._snapshot = snapshot

        unavailable = [key for key, area in built.items() if area.status == "unavailable"]
        if unavailable:
            failure = ConsolidationPartialFailure(unavailable)
            logger.warning(str(failure), extra={"event": "consolidation_partial", "areas": failure.areas})

        logger.info(
            f"Snapshot v{snapshot.version} published: quality {data_quality:.2f}, "
            f"{len(errors)} errors in {(time.perf_counter() - started) * 1000:.0f}ms",
            extra={"event": "consolidation_completed", "version": snapshot.version}
        )
        await self._persist(snapshot)
        return snapshot

    def _build_area(self, spec: AreaSpec, results: List[FetchResult]) -> AreaResult:
        now = self._clock()
        contributions = sorted(
            (
                SourceContribution(
                    source=r.source,
                    endpoint=r.endpoint,
                    status=r.status.value,
                    fetched_at=r.fetched_at,
                    error=r.error.message if r.error else None,
                    error_kind=r.error.kind if r.error else None,
                )
                for r in results
            ),
            key=lambda c: (c.source, c.endpoint),
        )
        payloads = {r.key: r.payload for r in results if r.ok}

        if not results:
            return AreaResult(area=spec.key, status="unavailable", updated_at=now,
                              issues=["all contributing sources are disabled"])
        if not payloads:
            return AreaResult(area=spec.key, status="unavailable", contributions=contributions,
                              updated_at=now, issues=["no source delivered data"])

        try:
            data = spec.merge(payloads)
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            logger.error(f"Merge failed for area {spec.key}: {e}", extra={"area": spec.key})
            return AreaResult(area=spec.key, status="unavailable", contributions=contributions,
                              updated_at=now, issues=[f"merge failed: {e}"])

        quality, issues = score_area(contributions, data, spec.expected_fields, self.weights, now)
        degraded = any(r.status in (FetchStatus.FALLBACK, FetchStatus.ERROR) for r in results)
        return AreaResult(
            area=spec.key,
            status="partial" if degraded else "ok",
            data=data,
            quality=quality,
            contributions=contributions,
            updated_at=now,
            issues=issues,
        )

    @staticmethod
    def _collect_errors(specs: Sequence[AreaSpec], results: Dict[Pair, FetchResult], now: float) -> List[RefreshError]:
        errors = []
        for spec in specs:
            for pair in spec.inputs:
                result = results.get(pair)
                if result is None or result.error is None:
                    continue
                errors.append(RefreshError(
                    source=result.source,
                    endpoint=result.endpoint,
                    area=spec.key,
                    message=result.error.message,
                    kind=result.error.kind,
                    retryable=result.error.retryable,
                    timestamp=now,
                ))
        return errors

    async def _persist(self, snapshot: ConsolidatedSnapshot) -> None:
        if self.snapshot_store is None:
            return
        try:
            await self.snapshot_store.save_snapshot(snapshot)
        except Exception as e:
            logger.error(f"Failed to persist snapshot v{snapshot.version}: {e}")
