"""
HTTP surface tests: the real container graph behind FastAPI's TestClient,
with upstream calls answered by an httpx.MockTransport.
"""
import httpx
import pytest
from fastapi.testclient import TestClient

from pulse_core.api.v1.endpoints import limiter
from pulse_core.data_sources.catalog import ENDPOINTS
from pulse_core.dependencies import ServiceContainer
from pulse_core.domain_areas import AreaSpec
from pulse_core.main import create_app

SUMMARY = {"gaza": {"killed": {"total": 100}, "injured": {"total": 250}}}

TEST_AREA = AreaSpec(
    key="gaza.test",
    title="Gaza test area",
    inputs=(("tech4palestine", "summary"),),
    merge=lambda p: {"killed": p["tech4palestine:summary"]["gaza"]["killed"]["total"]},
    expected_fields=("killed",),
)


class Upstream:
    def __init__(self):
        self.status = 200
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.status != 200:
            return httpx.Response(self.status)
        return httpx.Response(200, json=SUMMARY)


@pytest.fixture(autouse=True)
def reset_rate_limits():
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def client(test_settings, upstream):
    def container_factory(settings):
        return ServiceContainer(
            settings,
            client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
            endpoints={"tech4palestine:summary": ENDPOINTS["tech4palestine:summary"]},
            areas=(TEST_AREA,),
        )

    settings = test_settings.model_copy(update={"MANUAL_REFRESH_RATE_LIMIT": "1000/minute"})
    with TestClient(create_app(settings, container_factory)) as test_client:
        yield test_client


class TestSnapshotEndpoints:
    def test_empty_snapshot_before_first_refresh(self, client):
        response = client.get("/api/v1/snapshot")
        assert response.status_code == 200
        assert response.json()["version"] == 0
        assert response.json()["areas"] == {}

    def test_manual_refresh_publishes_snapshot(self, client, upstream):
        response = client.post("/api/v1/refresh")
        assert response.status_code == 200
        status = response.json()
        assert status["run_count"] == 1
        assert status["is_refreshing"] is False
        assert status["errors"] == []

        snapshot = client.get("/api/v1/snapshot").json()
        assert snapshot["version"] == 1
        assert snapshot["areas"]["gaza.test"]["data"] == {"killed": 100}
        assert snapshot["areas"]["gaza.test"]["status"] == "ok"
        assert upstream.calls == 1

        area = client.get("/api/v1/snapshot/areas/gaza.test")
        assert area.status_code == 200
        assert area.json()["quality"] == 1.0

    def test_refresh_with_body_and_unknown_source(self, client):
        response = client.post("/api/v1/refresh", json={"sources": ["tech4palestine"], "force_refresh": True})
        assert response.status_code == 200

        response = client.post("/api/v1/refresh", json={"sources": ["nope"]})
        assert response.status_code == 404

    def test_unknown_and_unrefreshed_areas(self, client):
        assert client.get("/api/v1/snapshot/areas/nowhere").status_code == 404
        assert client.get("/api/v1/snapshot/areas/gaza.test").status_code == 404
        assert client.post("/api/v1/refresh/areas/nowhere").status_code == 404

    def test_area_refresh(self, client):
        response = client.post("/api/v1/refresh/areas/gaza.test")
        assert response.status_code == 200
        body = response.json()
        assert body["snapshot_version"] == 1
        assert body["area"]["data"] == {"killed": 100}

    def test_failed_refresh_reported_and_retried(self, client, upstream):
        upstream.status = 404
        status = client.post("/api/v1/refresh").json()
        assert [e["source"] for e in status["errors"]] == ["tech4palestine"]
        assert client.get("/api/v1/snapshot").json()["areas"]["gaza.test"]["status"] == "unavailable"

        upstream.status = 200
        status = client.post("/api/v1/refresh/retry-failed").json()
        assert status["errors"] == []
        assert client.get("/api/v1/snapshot/areas/gaza.test").json()["data"] == {"killed": 100}

    def test_refresh_status(self, client):
        status = client.get("/api/v1/refresh/status").json()
        assert status["run_count"] == 0
        assert status["online"] is True


class TestEvents:
    def test_offline_skips_manual_refresh(self, client, upstream):
        assert client.post("/api/v1/events/offline").json() == {"online": False}
        status = client.post("/api/v1/refresh").json()
        assert status["online"] is False
        assert status["run_count"] == 0
        assert upstream.calls == 0

    def test_focus_triggers_background_refresh(self, client):
        assert client.post("/api/v1/events/focus").json() == {"refresh_started": True}

    def test_online_event(self, client):
        client.post("/api/v1/events/offline")
        body = client.post("/api/v1/events/online").json()
        assert body["online"] is True
        assert body["refresh_started"] is True


class TestOperatorEndpoints:
    def test_list_sources(self, client):
        body = client.get("/api/v1/sources").json()
        ids = [s["id"] for s in body["sources"]]
        assert body["total_sources"] == len(ids)
        assert "tech4palestine" in ids
        who = next(s for s in body["sources"] if s["id"] == "who")
        assert who["enabled"] is False
        assert who["status"] == "disabled"

    def test_enable_and_disable_source(self, client):
        response = client.post("/api/v1/sources/who/enable")
        assert response.status_code == 200
        assert response.json()["enabled"] is True
        assert response.json()["status"] == "ok"

        response = client.post("/api/v1/sources/who/disable")
        assert response.json()["enabled"] is False
        assert client.post("/api/v1/sources/nope/enable").status_code == 404

    def test_disabled_source_makes_area_unavailable(self, client, upstream):
        client.post("/api/v1/sources/tech4palestine/disable")
        client.post("/api/v1/refresh")
        assert upstream.calls == 0
        snapshot = client.get("/api/v1/snapshot").json()
        assert snapshot["areas"]["gaza.test"]["status"] == "unavailable"

    def test_clear_cache(self, client, upstream):
        client.post("/api/v1/refresh")
        body = client.delete("/api/v1/cache", params={"prefix": "tech4palestine:"}).json()
        assert body == {"removed": 1, "persisted_removed": 1}
        assert client.delete("/api/v1/cache").json() == {"removed": 0, "persisted_removed": 0}

    def test_cached_response_reused(self, client, upstream):
        client.post("/api/v1/refresh")
        client.post("/api/v1/refresh")
        assert upstream.calls == 1
        client.post("/api/v1/refresh", json={"force_refresh": True})
        assert upstream.calls == 2


class TestMonitoringEndpoints:
    def test_performance_summary(self, client):
        client.post("/api/v1/refresh")
        overall = client.get("/api/v1/monitoring/performance").json()
        assert overall["sample_count"] == 1
        per_source = client.get("/api/v1/monitoring/performance", params={"source": "tech4palestine"}).json()
        assert per_source["success_rate"] == 1.0
        assert client.get("/api/v1/monitoring/performance", params={"source": "nope"}).status_code == 404

    def test_alerts(self, client):
        assert client.get("/api/v1/monitoring/alerts").json() == {"alerts": [], "count": 0}
        assert client.post("/api/v1/monitoring/alerts/alert-404/ack").status_code == 404

    def test_rate_limit_status(self, client):
        body = client.get("/api/v1/monitoring/rate-limits/tech4palestine").json()
        assert body["limits"]["max_per_minute"] == 60
        assert client.get("/api/v1/monitoring/rate-limits/nope").status_code == 404

        all_sources = client.get("/api/v1/monitoring/rate-limits").json()
        assert "tech4palestine" in all_sources
        assert "who" in all_sources

    def test_cache_status(self, client):
        assert client.get("/api/v1/cache").json()["size"] == 0
        client.post("/api/v1/refresh")
        body = client.get("/api/v1/cache").json()
        assert body["size"] == 1
        assert body["keys"] == {"tech4palestine:summary": "fresh"}

    def test_health(self, client):
        body = client.get("/api/v1/health").json()
        assert body["status"] == "healthy"
        assert body["snapshot_version"] == 0
        assert body["sources_enabled"] >= 1


def test_manual_refresh_limit_comes_from_settings(test_settings, upstream, monkeypatch):
    monkeypatch.setenv("MANUAL_REFRESH_RATE_LIMIT", "1000/minute")
    settings = test_settings.model_copy(update={"MANUAL_REFRESH_RATE_LIMIT": "2/minute"})

    def container_factory(settings):
        return ServiceContainer(
            settings,
            client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
            endpoints={"tech4palestine:summary": ENDPOINTS["tech4palestine:summary"]},
            areas=(TEST_AREA,),
        )

    with TestClient(create_app(settings, container_factory)) as client:
        assert client.post("/api/v1/refresh").status_code == 200
        assert client.post("/api/v1/refresh").status_code == 200
        assert client.post("/api/v1/refresh").status_code == 429


def test_snapshot_survives_restart(test_settings, upstream):
    """A second app sharing the blob store starts from the persisted snapshot."""
    from pulse_core.persistence import InMemoryBlobStore

    blobs = InMemoryBlobStore()

    def container_factory(settings):
        return ServiceContainer(
            settings,
            client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
            blob_store=blobs,
            endpoints={"tech4palestine:summary": ENDPOINTS["tech4palestine:summary"]},
            areas=(TEST_AREA,),
        )

    with TestClient(create_app(test_settings, container_factory)) as client:
        client.post("/api/v1/refresh")

    with TestClient(create_app(test_settings, container_factory)) as client:
        snapshot = client.get("/api/v1/snapshot").json()
        assert snapshot["version"] == 1
        assert snapshot["restored"] is True
        client.post("/api/v1/refresh")
        assert upstream.calls == 1
