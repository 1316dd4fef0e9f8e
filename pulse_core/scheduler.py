"""
Refresh scheduler.

Every trigger (timer, manual call, window focus, network reconnect) goes
through one single-flight guard: while a run is in progress further calls
join it instead of starting another consolidation.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Iterable, List, Optional, Set

from .consolidator import DataConsolidator
from .models import PartialUpdate, RefreshError, RefreshProgress, RefreshStatus

logger = logging.getLogger(__name__)

Subscriber = Callable[[RefreshStatus], None]


class RefreshScheduler:
    def __init__(
        self,
        consolidator: DataConsolidator,
        interval_s: float = 300.0,
        refresh_on_focus: bool = True,
        refresh_on_reconnect: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.consolidator = consolidator
        self.interval_s = interval_s
        self.refresh_on_focus = refresh_on_focus
        self.refresh_on_reconnect = refresh_on_reconnect
        self._clock = clock
        self._status = RefreshStatus()
        self._subscribers: List[Subscriber] = []
        self._inflight: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.Task] = None
        self._failed_sources: Set[str] = set()

    @property
    def is_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def is_refreshing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def get_status(self) -> RefreshStatus:
        return self._status.model_copy(deep=True)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register for status updates; returns the unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self) -> None:
        status = self.get_status()
        for callback in list(self._subscribers):
            try:
                callback(status)
            except Exception:
                logger.exception("Refresh subscriber raised; continuing")

    def _on_progress(self, completed: int, total: int, area: Optional[str]) -> None:
        self._status.progress = RefreshProgress(completed=completed, total=total, current_area=area)
        self._publish()

    # Single-flight guard
    def _ensure_run(self, label: str, work: Callable[[], Awaitable[object]]) -> bool:
        """Start ``work`` unless a run is already in flight. True if started."""
        if self.is_refreshing:
            logger.debug(f"Refresh ({label}) joined the run in progress")
            return False
        self._inflight = asyncio.ensure_future(self._run(label, work))
        return True

    async def _run(self, label: str, work: Callable[[], Awaitable[object]]) -> None:
        started = self._clock()
        self._status.is_refreshing = True
        self._status.errors = []
        self._status.progress = RefreshProgress()
        self._publish()
        logger.info(f"Refresh started ({label})", extra={"event": "refresh_started", "trigger": label})

        try:
            await work()
        except Exception as e:
            logger.exception(f"Refresh ({label}) failed")
            self._status.errors = [RefreshError(
                source="scheduler", message=str(e), kind="internal_error", retryable=True, timestamp=self._clock(),
            )]
        else:
            snapshot = self.consolidator.get_snapshot()
            self._status.errors = list(snapshot.errors)
            self._status.unable_to_refresh = snapshot.unable_to_refresh
            if not snapshot.unable_to_refresh:
                self._status.last_successful_refresh = snapshot.last_updated
            self._failed_sources = {e.source for e in snapshot.errors}
        finally:
            now = self._clock()
            self._status.is_refreshing = False
            self._status.last_refresh = now
            self._status.run_count += 1
            self._status.next_refresh = now + self.interval_s if self.is_running else None
            self._publish()
            logger.info(
                f"Refresh finished ({label}) in {now - started:.1f}s with {len(self._status.errors)} errors",
                extra={"event": "refresh_completed", "trigger": label, "errors": len(self._status.errors)}
            )

    def trigger(self, label: str = "manual", sources: Iterable[str] = None, force_refresh: bool = False) -> bool:
        """Start a refresh in the background unless one is running or offline."""
        if not self._status.online:
            logger.info(f"Offline; refresh ({label}) skipped")
            return False
        return self._ensure_run(label, self._work(sources, force_refresh))

    def _work(self, sources: Iterable[str] = None, force_refresh: bool = False, areas: Iterable[str] = None):
        sources = sorted(set(sources)) if sources else None
        if areas:
            area_keys = list(areas)
        elif sources:
            area_keys = self.consolidator.areas_for_sources(sources)
        else:
            area_keys = None

        async def work():
            if area_keys is not None and not area_keys:
                logger.info(f"No area is fed by {', '.join(sources or ())}; nothing to refresh")
                return
            await self.consolidator.consolidate_areas(
                area_keys,
                force_refresh=force_refresh,
                force_sources=sources,
                progress=self._on_progress,
            )

        return work

    async def wait(self) -> None:
        """Wait for the run in flight, if any."""
        if self._inflight is not None:
            await asyncio.shield(self._inflight)

    async def refresh_now(
        self,
        sources: Iterable[str] = None,
        force_refresh: bool = False,
        areas: Iterable[str] = None,
        label: str = "manual",
    ) -> RefreshStatus:
        """Refresh and wait for it; joins the run in flight if there is one.

        ``sources`` limits the run to the areas those sources feed and
        bypasses the fresh cache for them.
        """
        if not self._status.online:
            logger.info(f"Offline; refresh ({label}) skipped")
            return self.get_status()
        self._ensure_run(label, self._work(sources, force_refresh, areas))
        await self.wait()
        return self.get_status()

    async def refresh_area(self, area: str) -> PartialUpdate:
        self.consolidator.get_area(area)
        await self.refresh_now(areas=[area], force_refresh=True, label=f"area {area}")
        return self.consolidator.partial_update(area)

    async def retry_failed(self) -> RefreshStatus:
        """Forced refresh limited to the sources that failed in the last run."""
        if not self._failed_sources:
            return self.get_status()
        return await self.refresh_now(sources=self._failed_sources, force_refresh=True, label="retry failed")

    def clear_errors(self) -> None:
        self._status.errors = []
        self._publish()

    # Timer
    def start(self, interval_s: float = None) -> None:
        if interval_s:
            self.interval_s = interval_s
        if self.is_running:
            return
        self._timer = asyncio.ensure_future(self._timer_loop())
        self._status.next_refresh = self._clock() + self.interval_s
        logger.info(f"Auto refresh every {self.interval_s:.0f}s", extra={"event": "scheduler_started"})

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            await self.refresh_now(label="timer")

    async def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
        self._status.next_refresh = None
        await self.wait()
        logger.info("Scheduler stopped", extra={"event": "scheduler_stopped"})

    # Environment events
    def on_focus(self) -> bool:
        if not self.refresh_on_focus:
            return False
        return self.trigger("focus")

    def on_reconnect(self) -> bool:
        was_offline = not self._status.online
        self._status.online = True
        self._publish()
        if was_offline:
            logger.info("Network back online", extra={"event": "network_online"})
        if not self.refresh_on_reconnect:
            return False
        return self.trigger("reconnect")

    def on_offline(self) -> None:
        if self._status.online:
            logger.warning("Network offline; refreshes paused", extra={"event": "network_offline"})
        self._status.online = False
        self._publish()
