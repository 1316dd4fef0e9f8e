"""
Performance tracker for outbound source requests.

Records latency and outcome of every network attempt, keeps a bounded
retention window, and evaluates threshold alerts after every record.
Alerts are deduplicated per (source, condition) while the condition holds
and resolved when it clears.
"""
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .config import PerformanceThresholds

logger = logging.getLogger(__name__)


@dataclass
class RequestOutcome:
    """Single outbound request measurement"""
    source: str
    endpoint: str
    started_at: float
    duration_ms: float
    success: bool
    status_code: Optional[int] = None
    error_type: Optional[str] = None


class AlertLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class PerformanceAlert:
    id: str
    source: str
    condition: str
    level: AlertLevel
    message: str
    value: float
    threshold: float
    raised_at: float
    resolved_at: Optional[float] = None
    acknowledged: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["level"] = self.level.value
        return data


def _percentile(sorted_values: List[float], q: float) -> float:
    n = len(sorted_values)
    return sorted_values[min(n - 1, int(n * q))]


def summarize(samples: List[RequestOutcome]) -> Dict[str, Any]:
    if not samples:
        return {
            "sample_count": 0,
            "avg_ms": None,
            "p50_ms": None,
            "p95_ms": None,
            "p99_ms": None,
            "success_rate": None,
            "error_rate": None,
        }
    durations = sorted(s.duration_ms for s in samples)
    successes = sum(1 for s in samples if s.success)
    n = len(samples)
    return {
        "sample_count": n,
        "avg_ms": sum(durations) / n,
        "p50_ms": _percentile(durations, 0.5),
        "p95_ms": _percentile(durations, 0.95),
        "p99_ms": _percentile(durations, 0.99),
        "success_rate": successes / n,
        "error_rate": (n - successes) / n,
    }


class PerformanceMonitor:
    """
    Rolling per-source performance aggregates with threshold alerting

    Alert conditions, evaluated per source over the rolling window:
    - avg_latency: average latency above max_avg_ms (warning)
    - p95_latency: p95 latency above max_p95_ms (warning)
    - success_rate: success rate below min_success_rate (critical)
    - degradation: average latency of the latest degradation window at least
      degradation_factor times the window before it (warning)
    """

    def __init__(self, thresholds: PerformanceThresholds = None, clock: Callable[[], float] = time.time):
        self.thresholds = thresholds or PerformanceThresholds()
        self._clock = clock
        self.outcomes: Deque[RequestOutcome] = deque(maxlen=self.thresholds.max_samples)
        self._active: Dict[Tuple[str, str], PerformanceAlert] = {}
        self._history: Deque[PerformanceAlert] = deque(maxlen=500)
        self._alert_ids = itertools.count(1)
        self.total_requests = 0
        self.failed_requests = 0

        logger.info(
            f"Performance monitor initialized (avg ceiling: {self.thresholds.max_avg_ms}ms, "
            f"p95 ceiling: {self.thresholds.max_p95_ms}ms, success floor: {self.thresholds.min_success_rate:.0%})"
        )

    def record(self, outcome: RequestOutcome) -> None:
        self.outcomes.append(outcome)
        self.total_requests += 1
        if not outcome.success:
            self.failed_requests += 1
        self._prune(self._clock())
        self._evaluate(outcome.source)

    def _prune(self, now: float) -> None:
        cutoff = now - self.thresholds.retention_s
        while self.outcomes and self.outcomes[0].started_at < cutoff:
            self.outcomes.popleft()

    def _samples(self, source: str = None, since: float = None, until: float = None) -> List[RequestOutcome]:
        return [
            o for o in self.outcomes
            if (source is None or o.source == source)
            and (since is None or o.started_at > since)
            and (until is None or o.started_at <= until)
        ]

    def get_summary(self, source: str = None) -> Dict[str, Any]:
        """Aggregates over the retained outcomes, overall or for one source."""
        self._prune(self._clock())
        summary = summarize(self._samples(source))
        summary["source"] = source
        if source is None:
            summary["sources"] = {
                src: summarize(self._samples(src))
                for src in sorted({o.source for o in self.outcomes})
            }
            summary["status"] = self._get_overall_status()
        return summary

    def _get_overall_status(self) -> str:
        if not self.outcomes:
            return "initializing"
        if any(a.level is AlertLevel.CRITICAL for a in self._active.values()):
            return "critical"
        if self._active:
            return "degraded"
        return "healthy"

    def _evaluate(self, source: str) -> None:
        t = self.thresholds
        now = self._clock()
        window = summarize(self._samples(source, since=now - t.window_s))
        enough = window["sample_count"] >= t.min_samples

        checks = [
            ("avg_latency", AlertLevel.WARNING,
             enough and window["avg_ms"] > t.max_avg_ms,
             window["avg_ms"], t.max_avg_ms,
             "average latency {value:.0f}ms above {threshold:.0f}ms"),
            ("p95_latency", AlertLevel.WARNING,
             enough and window["p95_ms"] > t.max_p95_ms,
             window["p95_ms"], t.max_p95_ms,
             "p95 latency {value:.0f}ms above {threshold:.0f}ms"),
            ("success_rate", AlertLevel.CRITICAL,
             enough and window["success_rate"] < t.min_success_rate,
             window["success_rate"], t.min_success_rate,
             "success rate {value:.1%} below {threshold:.1%}"),
        ]

        current = summarize(self._samples(source, since=now - t.degradation_window_s))
        prior = summarize(self._samples(source, since=now - 2 * t.degradation_window_s,
                                        until=now - t.degradation_window_s))
        degraded = (
            current["sample_count"] >= t.min_samples
            and prior["sample_count"] >= t.min_samples
            and prior["avg_ms"] > 0
            and current["avg_ms"] >= t.degradation_factor * prior["avg_ms"]
        )
        ratio = current["avg_ms"] / prior["avg_ms"] if degraded else 0.0
        checks.append(
            ("degradation", AlertLevel.WARNING, degraded, ratio, t.degradation_factor,
             "latency {value:.1f}x the previous window (threshold {threshold:.1f}x)")
        )

        for condition, level, active, value, threshold, template in checks:
            key = (source, condition)
            if active and key not in self._active:
                alert = PerformanceAlert(
                    id=f"alert-{next(self._alert_ids)}",
                    source=source,
                    condition=condition,
                    level=level,
                    message=f"{source}: " + template.format(value=value, threshold=threshold),
                    value=value,
                    threshold=threshold,
                    raised_at=now,
                )
                self._active[key] = alert
                self._history.append(alert)
                logger.warning(
                    f"PERFORMANCE ALERT [{level.value}] {alert.message}",
                    extra={"event": "performance_alert", "source": source, "condition": condition}
                )
            elif not active and key in self._active:
                alert = self._active.pop(key)
                alert.resolved_at = now
                notice = PerformanceAlert(
                    id=f"alert-{next(self._alert_ids)}",
                    source=source,
                    condition=condition,
                    level=AlertLevel.INFO,
                    message=f"{source}: {condition} recovered",
                    value=0.0 if value is None else value,
                    threshold=threshold,
                    raised_at=now,
                    resolved_at=now,
                )
                self._history.append(notice)
                logger.info(notice.message, extra={"event": "performance_alert_resolved", "source": source})

    def get_alerts(self, include_acknowledged: bool = True) -> List[Dict[str, Any]]:
        """Currently active alerts, most severe first."""
        order = {AlertLevel.CRITICAL: 0, AlertLevel.WARNING: 1, AlertLevel.INFO: 2}
        alerts = sorted(self._active.values(), key=lambda a: (order[a.level], a.raised_at))
        return [a.to_dict() for a in alerts if include_acknowledged or not a.acknowledged]

    def get_alert_history(self, limit: int = 50) -> List[Dict[str, Any]]:
        return [a.to_dict() for a in list(self._history)[-limit:]]

    def acknowledge(self, alert_id: str) -> bool:
        for alert in self._active.values():
            if alert.id == alert_id:
                alert.acknowledged = True
                return True
        return False

    def reset_statistics(self) -> None:
        self.outcomes.clear()
        self._active.clear()
        self._history.clear()
        self.total_requests = 0
        self.failed_requests = 0
        logger.info("Performance statistics reset")
