"""
HTTP API tests through FastAPI's TestClient.
"""

import time

import pytest
from fastapi.testclient import TestClient

from risk_engine.database.store import activity_store, alert_store
from risk_engine.main import app
from risk_engine.routes.alerts import get_alert_manager
from risk_engine.routes.analysis import get_activity_store
from risk_engine.services.alert_manager import AlertManager
from risk_engine.services.analysis_host import AnalysisHost
from risk_engine.services.background_worker import BackgroundAnalysisWorker, get_worker


RECOMMENDATION = {
    "id": "rec-abc",
    "category": "data_exfiltration",
    "title": "Bulk export",
    "description": "Large export to USB",
    "severity": "high",
    "confidence": 0.8,
    "affectedUsers": ["alice"],
}


def _records(count):
    return [
        {
            "username": f"user{i % 4}",
            "timestamp": f"2024-01-{1 + i % 20:02d}T{(i * 5) % 24:02d}:00:00Z",
            "riskScore": 2200 if i % 11 == 0 else 300,
            "integration": "gmail",
            "activity": "Email sent",
        }
        for i in range(count)
    ]


@pytest.fixture
def worker():
    worker = BackgroundAnalysisWorker(AnalysisHost(chunk_size=25))
    worker.start()
    yield worker
    worker.stop()


@pytest.fixture
def client(session_factory, clock, worker):
    app.dependency_overrides[get_alert_manager] = lambda: AlertManager(alert_store(session_factory), clock=clock)
    app.dependency_overrides[get_activity_store] = lambda: activity_store(session_factory)
    app.dependency_overrides[get_worker] = lambda: worker
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealth:
    def test_health(self, client):
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestAnalysisRoutes:
    def test_normalize_and_persist(self, client, session_factory):
        response = client.post(
            "/api/v1/analysis/normalize",
            json={"records": [{"date": "01/02/2024", "time": "13:30", "user": "Ann"}], "persist": True},
        )
        assert response.status_code == 200
        body = response.json()
        activity = body["activities"][0]
        assert activity["hour"] == 13
        assert activity["timestamp"].startswith("2024-02-01")
        assert body["persisted"] == 1
        assert activity_store(session_factory).count() == 1

    def test_normalize_csv_content(self, client):
        response = client.post(
            "/api/v1/analysis/normalize",
            json={"content": "activityId,user,date,time,riskScore\n7,Bob,03/04/2024,08:00,2100"},
        )
        activity = response.json()["activities"][0]
        assert activity["severity"] == "critical"
        assert activity["id"] == "7"

    def test_synchronous_run(self, client):
        response = client.post(
            "/api/v1/analysis/run",
            json={"data": {"records": _records(40)}, "config": {"modelEpochs": 3}},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["processingStats"]["activities"] == 40
        assert "recommendations" in body["report"]
        assert body["errors"] == []

    def test_background_job(self, client):
        job_id = client.post("/api/v1/analysis/jobs", json={"data": {"records": _records(30)}}).json()["jobId"]
        messages = []
        deadline = time.monotonic() + 30
        while time.monotonic() < deadline:
            response = client.get(f"/api/v1/analysis/jobs/{job_id}/messages")
            assert response.status_code == 200
            messages.extend(response.json()["messages"])
            if messages and messages[-1]["type"] == "complete":
                break
            time.sleep(0.02)
        assert messages[-1]["type"] == "complete"
        # delivered jobs are released
        assert client.get(f"/api/v1/analysis/jobs/{job_id}/messages").status_code == 404

    def test_cancelled_job_is_released(self, client):
        job_id = client.post("/api/v1/analysis/jobs", json={"data": {"records": _records(200)}}).json()["jobId"]
        response = client.delete(f"/api/v1/analysis/jobs/{job_id}")
        assert response.json() == {"jobId": job_id, "cancelled": True}
        assert client.get(f"/api/v1/analysis/jobs/{job_id}/messages").status_code == 404

    def test_unknown_job(self, client):
        assert client.get("/api/v1/analysis/jobs/nope/messages").status_code == 404
        assert client.delete("/api/v1/analysis/jobs/nope").status_code == 404


class TestAlertRoutes:
    def test_refresh_review_and_resolve(self, client):
        created = client.post("/api/v1/alerts/refresh", json={"recommendations": [RECOMMENDATION]}).json()
        assert len(created) == 1
        alert_id = created[0]["id"]
        assert created[0]["threatType"] == "Data Exfiltration"

        again = client.post("/api/v1/alerts/refresh", json={"recommendations": [RECOMMENDATION]}).json()
        assert again == []

        reviewing = client.post(f"/api/v1/alerts/{alert_id}/review", json={"reviewer": "sam"})
        assert reviewing.json()["status"] == "reviewing"

        assigned = client.post(f"/api/v1/alerts/{alert_id}/assign", json={"reviewer": "kim"})
        assert assigned.json()["assignedTo"] == "kim"

        resolved = client.post(f"/api/v1/alerts/{alert_id}/action", json={"action": "dismissed", "comments": "noise"})
        assert resolved.json()["status"] == "dismissed"

        conflict = client.post(f"/api/v1/alerts/{alert_id}/review", json={})
        assert conflict.status_code == 409

    def test_list_and_filter(self, client):
        client.post("/api/v1/alerts/refresh", json={"recommendations": [RECOMMENDATION]})
        assert len(client.get("/api/v1/alerts").json()) == 1
        assert client.get("/api/v1/alerts", params={"severity": "low"}).json() == []
        assert len(client.get("/api/v1/alerts", params={"limit": 5, "status": "pending"}).json()) == 1

    def test_missing_alert(self, client):
        assert client.post("/api/v1/alerts/ML-missing/review", json={}).status_code == 404
        assert client.get("/api/v1/alerts/ML-missing").status_code == 404

    def test_clear(self, client):
        client.post("/api/v1/alerts/refresh", json={"recommendations": [RECOMMENDATION]})
        assert client.delete("/api/v1/alerts").json() == {"removed": 1}
        assert client.get("/api/v1/alerts").json() == []
