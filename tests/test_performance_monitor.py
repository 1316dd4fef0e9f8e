import pytest

from pulse_core.config import PerformanceThresholds
from pulse_core.performance_monitor import PerformanceMonitor, RequestOutcome, summarize

from conftest import FakeClock


def make_monitor(clock, **overrides):
    thresholds = dict(max_avg_ms=100, max_p95_ms=500, min_success_rate=0.8, degradation_factor=2.0,
                      window_s=60, degradation_window_s=10, min_samples=3)
    thresholds.update(overrides)
    return PerformanceMonitor(PerformanceThresholds(**thresholds), clock=clock)


def outcome(clock, duration_ms, success=True, source="alpha"):
    return RequestOutcome(source=source, endpoint="data", started_at=clock.now,
                          duration_ms=duration_ms, success=success)


class TestSummaries:
    def test_empty_summary(self):
        summary = summarize([])
        assert summary["sample_count"] == 0
        assert summary["avg_ms"] is None
        assert summary["success_rate"] is None

    def test_aggregates(self):
        clock = FakeClock()
        samples = [outcome(clock, ms, success=ms != 40) for ms in (10, 20, 30, 40)]
        summary = summarize(samples)
        assert summary["sample_count"] == 4
        assert summary["avg_ms"] == 25
        assert summary["p50_ms"] == 30
        assert summary["p95_ms"] == 40
        assert summary["success_rate"] == 0.75
        assert summary["error_rate"] == 0.25

    def test_per_source_breakdown(self):
        clock = FakeClock()
        monitor = make_monitor(clock)
        monitor.record(outcome(clock, 10, source="alpha"))
        monitor.record(outcome(clock, 30, source="beta"))

        overall = monitor.get_summary()
        assert overall["sample_count"] == 2
        assert set(overall["sources"]) == {"alpha", "beta"}
        assert overall["status"] == "healthy"
        assert monitor.get_summary("beta")["avg_ms"] == 30

    def test_retention_prunes_old_samples(self):
        clock = FakeClock()
        monitor = make_monitor(clock, retention_s=100)
        monitor.record(outcome(clock, 10))
        clock.advance(101)
        assert monitor.get_summary()["sample_count"] == 0


class TestAlerts:
    """Threshold alerts, dedup and recovery"""

    def test_avg_latency_alert_raised_once_and_resolved(self):
        clock = FakeClock()
        monitor = make_monitor(clock)

        for _ in range(5):
            monitor.record(outcome(clock, 200))

        alerts = monitor.get_alerts()
        assert [a["condition"] for a in alerts] == ["avg_latency"]
        assert alerts[0]["level"] == "warning"

        for _ in range(10):
            monitor.record(outcome(clock, 10))

        assert monitor.get_alerts() == []
        history = monitor.get_alert_history()
        assert [a["level"] for a in history] == ["warning", "info"]
        assert "recovered" in history[-1]["message"]

    def test_no_alert_below_min_samples(self):
        clock = FakeClock()
        monitor = make_monitor(clock)
        monitor.record(outcome(clock, 5000))
        monitor.record(outcome(clock, 5000))
        assert monitor.get_alerts() == []

    def test_success_rate_alert_is_critical_and_acknowledgeable(self):
        clock = FakeClock()
        monitor = make_monitor(clock)
        for _ in range(3):
            monitor.record(outcome(clock, 10, success=False))

        alerts = monitor.get_alerts()
        assert len(alerts) == 1
        assert alerts[0]["condition"] == "success_rate"
        assert alerts[0]["level"] == "critical"
        assert monitor.get_summary()["status"] == "critical"

        assert monitor.acknowledge(alerts[0]["id"]) is True
        assert monitor.get_alerts(include_acknowledged=False) == []
        assert len(monitor.get_alerts()) == 1
        assert monitor.acknowledge("alert-unknown") is False

    def test_p95_alert(self):
        clock = FakeClock()
        monitor = make_monitor(clock, max_avg_ms=10_000)
        for ms in (10, 10, 10, 10, 2000):
            monitor.record(outcome(clock, ms))
        assert [a["condition"] for a in monitor.get_alerts()] == ["p95_latency"]

    def test_degradation_against_prior_window(self):
        clock = FakeClock()
        monitor = make_monitor(clock, max_avg_ms=10_000, max_p95_ms=10_000)

        for _ in range(3):
            monitor.record(outcome(clock, 50))
        clock.advance(10)
        for _ in range(3):
            monitor.record(outcome(clock, 150))

        alerts = monitor.get_alerts()
        assert [a["condition"] for a in alerts] == ["degradation"]
        assert alerts[0]["value"] == pytest.approx(3.0)

    def test_alerts_are_per_source(self):
        clock = FakeClock()
        monitor = make_monitor(clock)
        for _ in range(3):
            monitor.record(outcome(clock, 10, success=False, source="alpha"))
            monitor.record(outcome(clock, 10, source="beta"))

        assert {a["source"] for a in monitor.get_alerts()} == {"alpha"}

    def test_reset_statistics(self):
        clock = FakeClock()
        monitor = make_monitor(clock)
        for _ in range(3):
            monitor.record(outcome(clock, 10, success=False))
        monitor.reset_statistics()
        assert monitor.get_alerts() == []
        assert monitor.get_summary()["status"] == "initializing"
