import asyncio

import pytest

from pulse_core.exceptions import RateLimitedError, UnknownSourceError
from pulse_core.rate_limiter import RateLimitGate
from pulse_core.source_registry import SourceRegistry

from conftest import FakeClock, make_descriptor


def make_gate(clock=None, queue_limit=50, max_wait_s=30.0, **limits):
    registry = SourceRegistry({"alpha": make_descriptor("alpha", **limits)})
    if clock is None:
        return RateLimitGate(registry, queue_limit=queue_limit, max_wait_s=max_wait_s)
    return RateLimitGate(registry, queue_limit=queue_limit, max_wait_s=max_wait_s, clock=clock, sleep=clock.sleep)


class TestAdmission:
    """Sliding-window admission"""

    def test_fresh_gate_admits(self):
        gate = make_gate(FakeClock())
        assert gate.admit("alpha").allowed

    def test_unknown_source_rejected(self):
        gate = make_gate(FakeClock())
        with pytest.raises(UnknownSourceError):
            gate.admit("nope")

    @pytest.mark.asyncio
    async def test_minute_ceiling_blocks_then_clears(self):
        clock = FakeClock()
        gate = make_gate(clock, max_per_minute=3)

        for _ in range(3):
            async with gate.slot("alpha", max_wait_s=0):
                pass

        admission = gate.admit("alpha")
        assert not admission.allowed
        assert admission.reason == "minute window full"
        assert admission.wait_s == pytest.approx(60.0)

        with pytest.raises(RateLimitedError):
            await gate.acquire("alpha", max_wait_s=0)

        clock.advance(60)
        assert gate.admit("alpha").allowed

    @pytest.mark.asyncio
    async def test_trailing_minute_never_exceeds_ceiling(self):
        """Admitted requests in any trailing 60s window stay within max_per_minute"""
        clock = FakeClock()
        gate = make_gate(clock, max_per_minute=5, max_per_hour=10_000)
        admitted = []

        for _ in range(400):
            try:
                await gate.acquire("alpha", max_wait_s=0)
            except RateLimitedError:
                pass
            else:
                admitted.append(clock.now)
                gate.release("alpha")
            clock.advance(0.7)

        assert admitted
        for t in admitted:
            in_window = [a for a in admitted if t - 60 < a <= t]
            assert len(in_window) <= 5

    @pytest.mark.asyncio
    async def test_hour_ceiling(self):
        clock = FakeClock()
        gate = make_gate(clock, max_per_minute=100, max_per_hour=4)
        for _ in range(4):
            await gate.acquire("alpha", max_wait_s=0)
            gate.release("alpha")

        admission = gate.admit("alpha")
        assert not admission.allowed
        assert admission.reason == "hour window full"


@pytest.mark.asyncio
class TestQueueing:
    """Priority queue and concurrency ceiling (real event loop timing)"""

    async def test_waiters_admitted_in_priority_order(self):
        gate = make_gate(max_concurrent=1)
        order = []

        await gate.acquire("alpha")

        async def request(priority):
            async with gate.slot("alpha", priority=priority):
                order.append(priority)
                await asyncio.sleep(0)

        tasks = [asyncio.ensure_future(request(p)) for p in (5, 1, 3)]
        await asyncio.sleep(0.01)
        assert gate.get_status("alpha")["queued"] == 3

        gate.release("alpha")
        await asyncio.wait_for(asyncio.gather(*tasks), timeout=2)

        assert order == [1, 3, 5]
        assert gate.get_status("alpha")["in_flight"] == 0

    async def test_full_queue_fails_fast(self):
        gate = make_gate(queue_limit=1, max_concurrent=1)
        await gate.acquire("alpha")

        waiter = asyncio.ensure_future(gate.acquire("alpha"))
        await asyncio.sleep(0.01)

        with pytest.raises(RateLimitedError) as exc_info:
            await gate.acquire("alpha")
        assert "queue full" in str(exc_info.value)

        gate.release("alpha")
        await asyncio.wait_for(waiter, timeout=2)
        gate.release("alpha")

    async def test_wait_beyond_ceiling_raises(self):
        gate = make_gate(max_concurrent=1, max_wait_s=0.05)
        await gate.acquire("alpha")

        with pytest.raises(RateLimitedError):
            await gate.acquire("alpha")

        assert gate.get_status("alpha")["queued"] == 0
        gate.release("alpha")


class TestBackoff:
    """Failure backoff: base * multiplier ** (failures - 1), capped"""

    def test_exponential_backoff_then_reset(self):
        clock = FakeClock()
        gate = make_gate(clock, base_backoff_s=1.0, backoff_multiplier=2.0, max_backoff_s=60.0)

        assert gate.record_outcome("alpha", False) == 1.0
        assert gate.record_outcome("alpha", False) == 2.0
        assert gate.record_outcome("alpha", False) == 4.0

        status = gate.get_status("alpha")
        assert status["consecutive_failures"] == 3
        assert status["backoff_active"] is True
        assert status["next_backoff_s"] == 8.0
        assert gate.admit("alpha").reason == "backoff"

        assert gate.record_outcome("alpha", True) == 0.0
        status = gate.get_status("alpha")
        assert status["consecutive_failures"] == 0
        assert status["backoff_active"] is False
        assert gate.admit("alpha").allowed

    def test_backoff_is_capped(self):
        gate = make_gate(FakeClock(), base_backoff_s=1.0, backoff_multiplier=10.0, max_backoff_s=15.0)
        delays = [gate.record_outcome("alpha", False) for _ in range(4)]
        assert delays == [1.0, 10.0, 15.0, 15.0]

    def test_retry_after_extends_backoff(self):
        clock = FakeClock()
        gate = make_gate(clock)
        assert gate.record_outcome("alpha", False, retry_after=7.0) == 7.0
        assert gate.get_status("alpha")["backoff_remaining_s"] == pytest.approx(7.0)

        clock.advance(7.0)
        assert gate.admit("alpha").allowed

    def test_status_for_all_sources(self):
        gate = make_gate(FakeClock())
        statuses = gate.get_all_status()
        assert set(statuses) == {"alpha"}
        assert statuses["alpha"]["limits"]["max_per_minute"] == 60
