"""
Source registry and per-source health tracking.

Descriptors are immutable pydantic models; toggling ``enabled`` swaps in a
copy. Health follows consecutive *final* fetch failures (after retries and
before fallback), the same counting a circuit breaker does, and can switch a
persistently failing source off when AUTO_DISABLE_AFTER_FAILURES is set.
"""
import logging
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Callable, Dict, List, Optional

from .config import SourceDescriptor
from .exceptions import UnknownSourceError

logger = logging.getLogger(__name__)

DOWN_AFTER_FAILURES = 3


class HealthStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    DOWN = "down"
    DISABLED = "disabled"


@dataclass
class SourceHealth:
    consecutive_failures: int = 0
    total_successes: int = 0
    total_failures: int = 0
    last_success_at: Optional[float] = None
    last_failure_at: Optional[float] = None
    last_error: Optional[str] = None
    auto_disabled: bool = False


class SourceRegistry:
    def __init__(
        self,
        descriptors: Dict[str, SourceDescriptor],
        auto_disable_after: int = 0,
        clock: Callable[[], float] = time.time,
    ):
        self._descriptors: Dict[str, SourceDescriptor] = dict(descriptors)
        self._health: Dict[str, SourceHealth] = {sid: SourceHealth() for sid in descriptors}
        self.auto_disable_after = auto_disable_after
        self._clock = clock

    def get(self, source_id: str) -> SourceDescriptor:
        try:
            return self._descriptors[source_id]
        except KeyError:
            raise UnknownSourceError(f"Unknown source: {source_id}", source_id=source_id) from None

    def ids(self) -> List[str]:
        return list(self._descriptors)

    def descriptors(self) -> List[SourceDescriptor]:
        return sorted(self._descriptors.values(), key=lambda d: (d.priority, d.id))

    def is_enabled(self, source_id: str) -> bool:
        return self.get(source_id).enabled

    def enabled_ids(self) -> List[str]:
        return [d.id for d in self.descriptors() if d.enabled]

    def set_enabled(self, source_id: str, enabled: bool, reason: str = "operator") -> SourceDescriptor:
        descriptor = self.get(source_id)
        if descriptor.enabled != enabled:
            descriptor = descriptor.model_copy(update={"enabled": enabled})
            self._descriptors[source_id] = descriptor
            logger.info(
                f"Source {source_id} {'enabled' if enabled else 'disabled'} ({reason})",
                extra={"event": "source_toggled", "source": source_id, "enabled": enabled, "reason": reason}
            )
        if enabled:
            self._health[source_id] = SourceHealth()
        return descriptor

    def record_success(self, source_id: str) -> None:
        health = self._health[source_id]
        health.consecutive_failures = 0
        health.total_successes += 1
        health.last_success_at = self._clock()
        health.last_error = None

    def record_failure(self, source_id: str, error: str = None) -> bool:
        """Count a final failure; returns True when this failure disabled the source."""
        health = self._health[source_id]
        health.consecutive_failures += 1
        health.total_failures += 1
        health.last_failure_at = self._clock()
        health.last_error = error

        if (self.auto_disable_after > 0
                and health.consecutive_failures >= self.auto_disable_after
                and self.get(source_id).enabled):
            self.set_enabled(source_id, False, reason="auto")
            health.auto_disabled = True
            logger.warning(
                f"Source {source_id} auto-disabled after {health.consecutive_failures} consecutive failures",
                extra={"event": "source_auto_disabled", "source": source_id, "last_error": error}
            )
            return True
        return False

    def status(self, source_id: str) -> HealthStatus:
        if not self.get(source_id).enabled:
            return HealthStatus.DISABLED
        failures = self._health[source_id].consecutive_failures
        if failures >= DOWN_AFTER_FAILURES:
            return HealthStatus.DOWN
        if failures > 0:
            return HealthStatus.DEGRADED
        return HealthStatus.OK

    def health(self, source_id: str) -> SourceHealth:
        self.get(source_id)
        return self._health[source_id]

    def describe(self) -> List[dict]:
        """Operator view of every source with its health."""
        return [
            {
                **descriptor.model_dump(),
                "status": self.status(descriptor.id).value,
                "health": asdict(self._health[descriptor.id]),
            }
            for descriptor in self.descriptors()
        ]
