import pytest
from fastapi.testclient import TestClient

from main import create_app
from racky.jobs.types import JobType
from racky.services import register

API = "/api/v1"


@pytest.fixture()
def client(services):
    register(services)
    with TestClient(create_app()) as test_client:
        yield test_client


def _enqueue(client, domain="sync", job_type="marketplace-sync", **body):
    body.setdefault("workspace_id", "ws-1")
    body.setdefault("payload", {"connection_id": "conn-1", "marketplace": "ebay"})
    return client.post(f"{API}/jobs/{domain}/{job_type}", json=body)


def test_root(client):
    response = client.get(f"{API}/")
    assert response.status_code == 200
    assert "version" in response.json()


def test_enqueue_and_read_back(client, services, publisher):
    response = _enqueue(client, priority="high")
    assert response.status_code == 202
    job_id = response.json()["job_id"]
    assert response.json()["status"] == "queued"

    response = client.get(f"{API}/queues/sync.marketplace/jobs/{job_id}", params={"workspace_id": "ws-1"})
    assert response.status_code == 200
    assert response.json()["status"] == "queued"
    assert response.json()["priority"] == "high"

    services.registry.register(JobType.MARKETPLACE_SYNC, lambda ctx: {"synced": 3})
    services.consumer.handle(publisher.last_job_message().encode())

    job = client.get(f"{API}/queues/sync.marketplace/jobs/{job_id}", params={"workspace_id": "ws-1"}).json()
    assert job["status"] == "completed"
    assert job["progress"] == 100

    timeline = client.get(f"{API}/jobs/{job_id}/timeline", params={"workspace_id": "ws-1"}).json()
    assert [e["event"] for e in timeline] == ["queued", "started", "completed"]


def test_other_workspace_cannot_see_job(client):
    job_id = _enqueue(client).json()["job_id"]

    response = client.get(f"{API}/queues/sync.marketplace/jobs/{job_id}", params={"workspace_id": "ws-2"})
    assert response.status_code == 404
    response = client.post(f"{API}/jobs/{job_id}/cancel", params={"workspace_id": "ws-2"})
    assert response.status_code == 404


def test_invalid_payload_is_422(client):
    response = _enqueue(client, payload={"marketplace": "ebay"})
    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["errors"][0]["field"] == "connection_id"


def test_wrong_domain_is_422(client):
    assert _enqueue(client, domain="products").status_code == 422


def test_broker_outage_is_503_with_job_id(client, publisher):
    publisher.fail = True
    response = _enqueue(client)
    assert response.status_code == 503
    assert response.json()["detail"]["job_id"]


def test_cancel(client):
    job_id = _enqueue(client).json()["job_id"]
    response = client.post(f"{API}/jobs/{job_id}/cancel", params={"workspace_id": "ws-1"})
    assert response.status_code == 200
    assert response.json()["cancel_requested"] is True


def test_list_jobs_with_counts(client):
    for _ in range(3):
        _enqueue(client)

    body = client.get(f"{API}/jobs", params={"workspace_id": "ws-1", "per_page": 2}).json()
    assert body["total"] == 3
    assert len(body["jobs"]) == 2
    assert body["pages"] == 2
    assert body["counts"]["queued"] == 3

    assert client.get(f"{API}/jobs", params={"workspace_id": "ws-1", "status": "paused"}).status_code == 422
    assert client.get(f"{API}/jobs", params={"workspace_id": "ws-1", "sort": "bogus"}).status_code == 422


def test_queue_stats(client):
    _enqueue(client)
    stats = client.get(f"{API}/queues/sync.marketplace/stats", params={"workspace_id": "ws-1"}).json()
    assert stats == {"waiting": 1, "active": 0, "completed": 0, "failed": 0}

    assert client.get(f"{API}/queues/unknown/stats").status_code == 404
    assert client.get(f"{API}/queues/stats").json()["sync.marketplace"]["waiting"] == 1


def test_health_with_unreachable_broker(client):
    response = client.get(f"{API}/health")
    assert response.status_code == 200
    assert response.json()["overall"] == "unhealthy"

    broker = client.get(f"{API}/health/broker").json()
    assert broker["overview"]["is_healthy"] is False
    assert broker["management_api"] is False


def test_metrics_endpoints(client):
    assert client.get(f"{API}/metrics/performance", params={"timeframe": "1h"}).json() == []
    assert client.get(f"{API}/metrics/performance", params={"timeframe": "1y"}).status_code == 422
    assert client.get(f"{API}/metrics/throughput").json() == []
    assert client.get(f"{API}/metrics/errors").json() == []


def test_recent_events(client):
    job_id = _enqueue(client).json()["job_id"]
    _enqueue(client, workspace_id="ws-2")

    events = client.get(f"{API}/events", params={"workspace_id": "ws-1", "event": "queued"}).json()
    assert [(e["job_id"], e["event"]) for e in events] == [(job_id, "queued")]

    assert len(client.get(f"{API}/events").json()) == 2
    assert client.get(f"{API}/events", params={"event": "paused"}).status_code == 422


def test_pause_resume_and_clean_queue(client):
    response = client.post(f"{API}/queues/products.batch/pause")
    assert response.status_code == 200
    assert response.json() == {"queue_name": "products.batch", "paused": True}
    assert client.get(f"{API}/queues/paused").json() == ["products.batch"]

    assert client.post(f"{API}/queues/products.batch/resume").json()["paused"] is False
    assert client.get(f"{API}/queues/paused").json() == []
    assert client.post(f"{API}/queues/unknown/pause").status_code == 404

    _enqueue(client)
    cleaned = client.post(f"{API}/queues/sync.marketplace/clean", params={"grace_seconds": 0}).json()
    assert cleaned == {"queue_name": "sync.marketplace", "completed": 0, "failed": 0}
    assert client.post(f"{API}/queues/unknown/clean").status_code == 404
