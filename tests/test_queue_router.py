import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from app.db.session import get_db
from app.routers import queue
from app.services.metrics_aggregator import MetricsAggregator, MetricsPublisher
from app.services.queue_runner import QueueRunner

from conftest import OTHER_PROJECT, PROJECT, seed_leads

BASE = f"/api/v1/queue/{PROJECT}"
UTC_SETTINGS = {
    "maxConcurrentProcessing": 1,
    "workingHours": {"start": "09:00", "end": "17:00", "timezone": "UTC"},
}


@pytest_asyncio.fixture
async def client(session_factory, bulk, gateway, locks, clock):
    app = FastAPI()
    app.include_router(queue.router)
    app.state.bulk_operations = bulk
    app.state.queue_runner = QueueRunner(session_factory, gateway, locks=locks, clock=clock)
    app.state.metrics_aggregator = MetricsAggregator(clock)
    app.state.metrics_publisher = MetricsPublisher()

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_sync_enqueue_and_background_tick(client, gateway):
    response = await client.put(f"{BASE}/settings", json=UTC_SETTINGS, headers={"X-Actor-Id": "ops"})
    assert response.status_code == 200
    assert response.json()["maxConcurrentProcessing"] == 1

    response = await client.post(f"{BASE}/leads/sync", json={"leads": [
        {"lead_id": "A", "heat_score": 9, "phone": "+15550100"},
        {"lead_id": "B", "heat_score": "3", "phone": "+15550101"},
    ]})
    assert response.json() == {"created": 2, "updated": 0}

    response = await client.post(f"{BASE}/enqueue", json={"lead_ids": ["A", "B"]}, headers={"X-Actor-Id": "ops"})
    assert response.status_code == 200
    body = response.json()
    assert (body["success"], body["action"], body["affected"]) == (True, "bulk_queue", 2)

    # the on-demand tick ran with one slot
    assert gateway.calls == ["A"]
    leads = {lead["lead_id"]: lead for lead in (await client.get(f"{BASE}/leads")).json()}
    assert leads["A"]["queue_status"] == "completed"
    assert (leads["B"]["queue_status"], leads["B"]["queue_position"]) == ("queued", 1)
    assert leads["B"]["priority"] == "low"

    audit = (await client.get(f"{BASE}/audit", params={"limit": 50})).json()
    bulk_entry = next(entry for entry in audit if entry["action"] == "bulk_queue")
    assert bulk_entry["actor"] == "ops"
    assert bulk_entry["lead_ids"] == ["A", "B"]


@pytest.mark.asyncio
async def test_error_mapping(client, session_factory):
    await seed_leads(session_factory, PROJECT, [("A", 5), ("B", 5)])
    await seed_leads(session_factory, OTHER_PROJECT, [("X", 5)])

    assert (await client.post(f"{BASE}/enqueue", json={"lead_ids": ["ghost"]})).status_code == 404
    assert (await client.post(f"{BASE}/enqueue", json={"lead_ids": ["X"]})).status_code == 403
    assert (await client.post(f"{BASE}/enqueue", json={"lead_ids": ["A", "A"]})).status_code == 400
    assert (await client.post(f"{BASE}/reorder", json={"lead_ids": ["A"], "new_positions": [1, 2]})).status_code == 400
    assert (await client.put(f"{BASE}/settings", json={"maxConcurrentProcessing": 0})).status_code == 422
    # request body validation
    assert (await client.post(f"{BASE}/enqueue", json={"lead_ids": []})).status_code == 422


@pytest.mark.asyncio
async def test_settings_default_when_unset(client):
    body = (await client.get(f"{BASE}/settings")).json()
    assert body["maxConcurrentProcessing"] == 5
    assert body["retryAttempts"] == 3
    assert body["priorityWeights"] == {"urgent": 4, "high": 3, "medium": 2, "low": 1}


@pytest.mark.asyncio
async def test_pause_resume_and_metrics(client, session_factory, gateway):
    await client.put(f"{BASE}/settings", json=UTC_SETTINGS)
    await seed_leads(session_factory, PROJECT, [("A", 5)])

    assert (await client.post(f"{BASE}/pause")).json()["processingEnabled"] is False
    await client.post(f"{BASE}/enqueue", json={"lead_ids": ["A"]})
    tick = (await client.post(f"{BASE}/tick")).json()
    assert tick["ran"] is False
    assert gateway.calls == []

    metrics = (await client.get(f"{BASE}/metrics")).json()
    assert (metrics["depth"], metrics["success_rate"]) == (1, 0.0)

    assert (await client.post(f"{BASE}/resume")).json()["processingEnabled"] is True
    tick = (await client.post(f"{BASE}/tick")).json()
    assert tick["completed"] == ["A"]

    metrics = (await client.get(f"{BASE}/metrics")).json()
    assert (metrics["completed_today"], metrics["success_rate"]) == (1, 1.0)
    assert (await client.get(f"{BASE}/metrics/latest")).status_code == 404


@pytest.mark.asyncio
async def test_sync_rejects_lead_without_heat_score(client):
    response = await client.post(f"{BASE}/leads/sync", json={"leads": [{"lead_id": "A", "status": "new"}]})
    assert response.status_code == 422
    assert (await client.get(f"{BASE}/leads")).json() == []


@pytest.mark.asyncio
async def test_processing_targets_round_trip_and_validation(client):
    payload = dict(UTC_SETTINGS, processingTargets={"targetLeadsPerWorkDay": 20, "maxDailyCapacity": 30})
    response = await client.put(f"{BASE}/settings", json=payload)
    assert response.status_code == 200

    targets = (await client.get(f"{BASE}/settings")).json()["processingTargets"]
    assert (targets["targetLeadsPerWorkDay"], targets["maxDailyCapacity"]) == (20, 30)

    payload = dict(UTC_SETTINGS, processingTargets={"targetLeadsPerWorkDay": 40, "maxDailyCapacity": 30})
    assert (await client.put(f"{BASE}/settings", json=payload)).status_code == 422

    metrics = (await client.get(f"{BASE}/metrics")).json()
    assert (metrics["daily_target"], metrics["remaining_daily_capacity"]) == (20, 20)
