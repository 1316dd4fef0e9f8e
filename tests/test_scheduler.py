import asyncio

import httpx
import pytest

from pulse_core.consolidator import DataConsolidator
from pulse_core.domain_areas import AreaSpec
from pulse_core.exceptions import UnknownAreaError
from pulse_core.scheduler import RefreshScheduler

from conftest import FakeClock, build_stack, make_descriptor


ALPHA = AreaSpec("alpha", "Alpha", (("alpha", "data"),), lambda p: dict(p["alpha:data"]), expected_fields=("count",))
BETA = AreaSpec("beta", "Beta", (("beta", "data"),), lambda p: dict(p["beta:data"]), expected_fields=("count",))


class SlowUpstream:
    """Async handler that answers after a short real delay"""

    def __init__(self, delay=0.0, failing=()):
        self.delay = delay
        self.failing = set(failing)
        self.calls = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        source = request.url.host.split(".")[0]
        self.calls.append(source)
        if self.delay:
            await asyncio.sleep(self.delay)
        if source in self.failing:
            raise httpx.ReadTimeout("read timed out", request=request)
        return httpx.Response(200, json={"count": len(self.calls)})


def make_scheduler(upstream, clock=None, **kwargs):
    clock = clock or FakeClock()
    descriptors = {
        "alpha": make_descriptor("alpha", max_retries=0),
        "beta": make_descriptor("beta", max_retries=0),
    }
    stack = build_stack(upstream, clock, descriptors=descriptors)
    consolidator = DataConsolidator(stack.fetcher, stack.registry, areas=[ALPHA, BETA], clock=clock)
    return RefreshScheduler(consolidator, clock=clock, **kwargs), stack


@pytest.mark.asyncio
class TestSingleFlight:
    """Concurrent triggers share one consolidation run"""

    async def test_overlapping_manual_refreshes_share_one_run(self):
        upstream = SlowUpstream(delay=0.05)
        scheduler, stack = make_scheduler(upstream)

        async def second_call():
            await asyncio.sleep(0.01)
            return await scheduler.refresh_now()

        first, second = await asyncio.gather(scheduler.refresh_now(), second_call())

        assert sorted(upstream.calls) == ["alpha", "beta"]
        assert stack.monitor.get_summary()["sample_count"] == 2
        assert first.run_count == second.run_count == 1
        assert scheduler.consolidator.get_snapshot().version == 1

    async def test_triggers_join_the_run_in_flight(self):
        upstream = SlowUpstream(delay=0.05)
        scheduler, _ = make_scheduler(upstream)

        assert scheduler.trigger("manual") is True
        assert scheduler.is_refreshing
        assert scheduler.on_focus() is False
        assert scheduler.trigger("manual") is False

        await scheduler.wait()
        assert not scheduler.is_refreshing
        assert scheduler.get_status().run_count == 1

    async def test_sequential_refreshes_run_again(self):
        upstream = SlowUpstream()
        scheduler, _ = make_scheduler(upstream)

        await scheduler.refresh_now()
        status = await scheduler.refresh_now()

        assert status.run_count == 2
        assert scheduler.consolidator.get_snapshot().version == 2


@pytest.mark.asyncio
class TestRefreshStatus:
    async def test_errors_reported_per_failed_source(self):
        clock = FakeClock()
        scheduler, _ = make_scheduler(SlowUpstream(failing={"beta"}), clock=clock)

        status = await scheduler.refresh_now()

        assert not status.is_refreshing
        assert [(e.source, e.area) for e in status.errors] == [("beta", "beta")]
        assert status.last_successful_refresh == clock.now
        assert status.unable_to_refresh is False
        assert status.progress.completed == status.progress.total == 2

    async def test_errors_cleared_when_next_run_starts(self):
        upstream = SlowUpstream(failing={"beta"})
        scheduler, _ = make_scheduler(upstream)
        await scheduler.refresh_now()
        assert scheduler.get_status().errors

        upstream.failing.clear()
        seen = []
        scheduler.subscribe(seen.append)
        await scheduler.refresh_now()

        assert seen[0].is_refreshing is True
        assert seen[0].errors == []
        assert seen[-1].errors == []

    async def test_clear_errors(self):
        scheduler, _ = make_scheduler(SlowUpstream(failing={"beta"}))
        await scheduler.refresh_now()
        scheduler.clear_errors()
        assert scheduler.get_status().errors == []

    async def test_subscribers_see_progress_and_can_unsubscribe(self):
        scheduler, _ = make_scheduler(SlowUpstream())
        seen = []
        unsubscribe = scheduler.subscribe(seen.append)

        await scheduler.refresh_now()

        assert seen[0].is_refreshing is True
        assert seen[-1].is_refreshing is False
        assert any(s.progress.completed == 2 for s in seen)

        unsubscribe()
        count = len(seen)
        await scheduler.refresh_now()
        assert len(seen) == count

    async def test_failing_subscriber_does_not_break_refresh(self):
        scheduler, _ = make_scheduler(SlowUpstream())

        def broken(status):
            raise RuntimeError("subscriber bug")

        scheduler.subscribe(broken)
        status = await scheduler.refresh_now()
        assert status.run_count == 1
        assert status.errors == []

    async def test_status_copy_is_detached(self):
        scheduler, _ = make_scheduler(SlowUpstream(failing={"beta"}))
        await scheduler.refresh_now()
        status = scheduler.get_status()
        status.errors.clear()
        assert len(scheduler.get_status().errors) == 1


@pytest.mark.asyncio
class TestTriggers:
    """Offline handling, reconnect, retry and area refresh"""

    async def test_offline_skips_refresh_and_reconnect_triggers_one(self):
        upstream = SlowUpstream()
        scheduler, _ = make_scheduler(upstream)

        scheduler.on_offline()
        status = await scheduler.refresh_now()
        assert status.online is False
        assert status.run_count == 0
        assert scheduler.on_focus() is False
        assert upstream.calls == []

        assert scheduler.on_reconnect() is True
        await scheduler.wait()
        assert scheduler.get_status().online is True
        assert scheduler.get_status().run_count == 1

    async def test_reconnect_refresh_can_be_disabled(self):
        scheduler, _ = make_scheduler(SlowUpstream(), refresh_on_reconnect=False, refresh_on_focus=False)
        scheduler.on_offline()
        assert scheduler.on_reconnect() is False
        assert scheduler.on_focus() is False
        assert scheduler.get_status().online is True

    async def test_retry_failed_refetches_only_failed_sources(self):
        upstream = SlowUpstream(failing={"beta"})
        scheduler, _ = make_scheduler(upstream)
        await scheduler.refresh_now()

        upstream.failing.clear()
        upstream.calls.clear()
        status = await scheduler.retry_failed()

        assert upstream.calls == ["beta"]
        assert status.errors == []
        assert scheduler.consolidator.get_snapshot().areas["beta"].status == "ok"

    async def test_retry_failed_without_failures_is_noop(self):
        upstream = SlowUpstream()
        scheduler, _ = make_scheduler(upstream)
        await scheduler.refresh_now()
        upstream.calls.clear()

        status = await scheduler.retry_failed()

        assert upstream.calls == []
        assert status.run_count == 1

    async def test_refresh_area(self):
        upstream = SlowUpstream()
        scheduler, _ = make_scheduler(upstream)

        update = await scheduler.refresh_area("beta")

        assert upstream.calls == ["beta"]
        assert update.area.status == "ok"
        assert update.snapshot_version == 1
        with pytest.raises(UnknownAreaError):
            await scheduler.refresh_area("gamma")

    async def test_timer_refreshes_until_stopped(self):
        upstream = SlowUpstream()
        scheduler, _ = make_scheduler(upstream)

        scheduler.start(interval_s=0.02)
        assert scheduler.is_running
        await asyncio.sleep(0.15)
        await scheduler.stop()

        runs = scheduler.get_status().run_count
        assert runs >= 2
        assert not scheduler.is_running
        assert scheduler.get_status().next_refresh is None

        await asyncio.sleep(0.05)
        assert scheduler.get_status().run_count == runs
