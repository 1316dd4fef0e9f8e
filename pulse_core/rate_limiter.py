"""
Per-source rate limit gate.

Each source gets a 60 s and a 3600 s sliding window of admission timestamps,
an in-flight counter bounded by the source's concurrency ceiling, and a
failure backoff deadline. Requests that cannot be admitted wait in a
per-source priority queue (lower number first, FIFO within a priority) and
are woken whenever capacity may have freed up.

All state changes happen between awaits, so under asyncio's cooperative
scheduling admission and in-flight accounting are atomic without locks.
"""
import asyncio
import heapq
import itertools
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from .error_handling import backoff_delay
from .exceptions import RateLimitedError
from .source_registry import SourceRegistry

logger = logging.getLogger(__name__)

MINUTE = 60.0
HOUR = 3600.0


@dataclass
class Admission:
    allowed: bool
    wait_s: float = 0.0
    reason: Optional[str] = None


@dataclass(order=True)
class _Waiter:
    priority: int
    seq: int


@dataclass
class RateLimitState:
    minute_window: Deque[float] = field(default_factory=deque)
    hour_window: Deque[float] = field(default_factory=deque)
    in_flight: int = 0
    consecutive_failures: int = 0
    backoff_until: float = 0.0
    queue: List[_Waiter] = field(default_factory=list)
    changed: asyncio.Event = field(default_factory=asyncio.Event)


class RateLimitGate:
    def __init__(
        self,
        registry: SourceRegistry,
        queue_limit: int = 50,
        max_wait_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self.queue_limit = queue_limit
        self.max_wait_s = max_wait_s
        self._clock = clock
        self._sleep = sleep
        self._states: Dict[str, RateLimitState] = {}
        self._seq = itertools.count()

    def _state(self, source_id: str) -> RateLimitState:
        state = self._states.get(source_id)
        if state is None:
            self.registry.get(source_id)
            state = self._states[source_id] = RateLimitState()
        return state

    @staticmethod
    def _prune(state: RateLimitState, now: float) -> None:
        while state.minute_window and now - state.minute_window[0] >= MINUTE:
            state.minute_window.popleft()
        while state.hour_window and now - state.hour_window[0] >= HOUR:
            state.hour_window.popleft()

    def _notify(self, state: RateLimitState) -> None:
        state.changed.set()
        state.changed = asyncio.Event()

    def admit(self, source_id: str) -> Admission:
        """Check whether a request to ``source_id`` could start right now.

        Does not take a slot; ``wait_s`` is how long until a time-based
        limit clears (0 when only the concurrency ceiling is in the way).
        """
        policy = self.registry.get(source_id).rate_limit
        state = self._state(source_id)
        now = self._clock()
        self._prune(state, now)

        if now < state.backoff_until:
            return Admission(False, state.backoff_until - now, "backoff")
        if len(state.minute_window) >= policy.max_per_minute:
            return Admission(False, state.minute_window[0] + MINUTE - now, "minute window full")
        if len(state.hour_window) >= policy.max_per_hour:
            return Admission(False, state.hour_window[0] + HOUR - now, "hour window full")
        if state.in_flight >= policy.max_concurrent:
            return Admission(False, 0.0, "concurrency ceiling")
        return Admission(True)

    def _take_slot(self, state: RateLimitState) -> None:
        now = self._clock()
        state.minute_window.append(now)
        state.hour_window.append(now)
        state.in_flight += 1

    async def _wait_for_change(self, state: RateLimitState, timeout: float) -> None:
        event_wait = asyncio.ensure_future(state.changed.wait())
        timer = asyncio.ensure_future(self._sleep(timeout))
        try:
            await asyncio.wait({event_wait, timer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (event_wait, timer):
                if not task.done():
                    task.cancel()

    async def acquire(self, source_id: str, priority: int = None, max_wait_s: float = None) -> None:
        """Take an in-flight slot for ``source_id``, queueing if necessary.

        Raises RateLimitedError when the queue is full or the expected wait
        exceeds ``max_wait_s``.
        """
        descriptor = self.registry.get(source_id)
        state = self._state(source_id)
        priority = descriptor.priority if priority is None else priority
        max_wait_s = self.max_wait_s if max_wait_s is None else max_wait_s

        if not state.queue and self.admit(source_id).allowed:
            self._take_slot(state)
            return

        if len(state.queue) >= self.queue_limit:
            raise RateLimitedError(source_id, reason=f"queue full ({len(state.queue)} waiting)")

        waiter = _Waiter(priority, next(self._seq))
        heapq.heappush(state.queue, waiter)
        started = self._clock()
        logger.debug(f"Queued request for {source_id} (priority {priority}, depth {len(state.queue)})")

        try:
            while True:
                remaining = max_wait_s - (self._clock() - started)
                if state.queue[0] is waiter:
                    admission = self.admit(source_id)
                    if admission.allowed:
                        heapq.heappop(state.queue)
                        self._take_slot(state)
                        self._notify(state)
                        return
                    if remaining <= 0 or admission.wait_s > remaining:
                        raise RateLimitedError(source_id, retry_after=admission.wait_s, reason=admission.reason)
                    timeout = admission.wait_s if admission.wait_s > 0 else remaining
                else:
                    if remaining <= 0:
                        raise RateLimitedError(source_id, reason="queue wait exceeded ceiling")
                    timeout = remaining
                await self._wait_for_change(state, timeout)
        finally:
            if waiter in state.queue:
                state.queue.remove(waiter)
                heapq.heapify(state.queue)
                self._notify(state)

    def release(self, source_id: str) -> None:
        state = self._state(source_id)
        if state.in_flight > 0:
            state.in_flight -= 1
        self._notify(state)

    @asynccontextmanager
    async def slot(self, source_id: str, priority: int = None, max_wait_s: float = None):
        await self.acquire(source_id, priority=priority, max_wait_s=max_wait_s)
        try:
            yield
        finally:
            self.release(source_id)

    def record_outcome(self, source_id: str, success: bool, retry_after: Optional[float] = None) -> float:
        """Update backoff after a network attempt; returns the backoff applied."""
        policy = self.registry.get(source_id).rate_limit
        state = self._state(source_id)

        if success:
            if state.consecutive_failures:
                logger.info(f"Backoff reset for {source_id} after {state.consecutive_failures} failures")
            state.consecutive_failures = 0
            state.backoff_until = 0.0
            self._notify(state)
            return 0.0

        state.consecutive_failures += 1
        delay = backoff_delay(
            state.consecutive_failures,
            policy.base_backoff_s,
            policy.backoff_multiplier,
            policy.max_backoff_s,
        )
        if retry_after:
            delay = max(delay, min(retry_after, policy.max_backoff_s))
        state.backoff_until = max(state.backoff_until, self._clock() + delay)
        logger.info(
            f"Backoff for {source_id}: {delay:.1f}s after {state.consecutive_failures} consecutive failures",
            extra={"event": "rate_limit_backoff", "source": source_id, "backoff_s": delay}
        )
        return delay

    def get_status(self, source_id: str) -> Dict[str, Any]:
        policy = self.registry.get(source_id).rate_limit
        state = self._state(source_id)
        now = self._clock()
        self._prune(state, now)
        backoff_remaining = max(0.0, state.backoff_until - now)
        return {
            "source": source_id,
            "requests_last_minute": len(state.minute_window),
            "requests_last_hour": len(state.hour_window),
            "in_flight": state.in_flight,
            "queued": len(state.queue),
            "consecutive_failures": state.consecutive_failures,
            "backoff_active": backoff_remaining > 0,
            "backoff_remaining_s": round(backoff_remaining, 3),
            "next_backoff_s": backoff_delay(
                state.consecutive_failures + 1,
                policy.base_backoff_s,
                policy.backoff_multiplier,
                policy.max_backoff_s,
            ),
            "limits": policy.model_dump(),
        }

    def get_all_status(self) -> Dict[str, Dict[str, Any]]:
        return {source_id: self.get_status(source_id) for source_id in self.registry.ids()}
