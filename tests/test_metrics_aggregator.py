import asyncio
from datetime import timedelta

import pytest

from app.clients.whatsapp_gateway import SendResult
from app.models.queue_audit_entry import QueueAuditEntry
from app.services.metrics_aggregator import MetricsAggregator, MetricsPublisher, MetricsRefresher
from app.services.queue_runner import QueueRunner
from app.services.settings_service import QueueSettingsService

from conftest import NOW, PROJECT, seed_leads, utc_settings


class FakeRedis:
    def __init__(self):
        self.values = {}
        self.published = []

    async def set(self, key, value, ex=None):
        self.values[key] = value

    async def get(self, key):
        return self.values.get(key)

    async def publish(self, channel, message):
        self.published.append((channel, message))


def _outcome(action, count=1, duration=1.0):
    return QueueAuditEntry(
        project_id=PROJECT,
        action=action,
        lead_ids=[f"L{i}" for i in range(count)],
        metadata_json={"duration_seconds": duration},
        actor="system:scheduler",
        timestamp=NOW,
    )


async def _compute(session_factory, aggregator):
    async with session_factory() as db:
        settings = await QueueSettingsService(db).get(PROJECT)
        return await aggregator.compute(db, PROJECT, settings)


@pytest.mark.asyncio
async def test_empty_project_has_zero_success_rate(session_factory, clock):
    metrics = await _compute(session_factory, MetricsAggregator(clock))

    assert metrics.depth == 0
    assert metrics.success_rate == 0.0
    assert metrics.avg_processing_time_seconds == 0.0
    assert metrics.health == "healthy"
    assert metrics.last_updated == NOW


@pytest.mark.asyncio
async def test_metrics_after_dispatch_round(session_factory, bulk, gateway, locks, clock):
    settings = utc_settings(max_concurrent_processing=2, retry_attempts=1, retry_delay_minutes=5)
    await seed_leads(session_factory, PROJECT, [("A", 9), ("B", 9), ("C", 9)], settings=settings)
    await bulk.enqueue(PROJECT, ["A", "B", "C"])
    gateway.results["A"] = SendResult.failure("rejected")
    await QueueRunner(session_factory, gateway, locks=locks, clock=clock).tick(PROJECT)

    aggregator = MetricsAggregator(clock)
    metrics = await _compute(session_factory, aggregator)

    assert metrics.depth == 2
    assert metrics.processing == 0
    assert metrics.completed_today == 1
    assert metrics.failed_today == 1
    assert metrics.success_rate == 0.5
    assert metrics.waiting_for_retry == 1
    assert metrics.permanently_failed == 0
    assert metrics.health == "healthy"
    assert metrics.is_business_day is True
    assert metrics.next_processing_time == NOW

    # recomputation is idempotent
    assert await _compute(session_factory, aggregator) == metrics


@pytest.mark.asyncio
async def test_outcomes_before_local_midnight_are_not_today(session_factory, bulk, gateway, locks, clock):
    await seed_leads(session_factory, PROJECT, [("A", 5)], settings=utc_settings())
    await bulk.enqueue(PROJECT, ["A"])
    await QueueRunner(session_factory, gateway, locks=locks, clock=clock).tick(PROJECT)

    clock.advance(days=1)
    metrics = await _compute(session_factory, MetricsAggregator(clock))

    assert metrics.completed_today == 0


def test_health_thresholds():
    settings = utc_settings()
    build = MetricsAggregator.build

    critical = build(PROJECT, [], [_outcome("dispatch_failure", 11)], settings, NOW)
    assert critical.health == "critical"

    warning = build(
        PROJECT, [],
        [_outcome("dispatch_success", 4), _outcome("dispatch_failure", 6)],
        settings, NOW,
    )
    assert warning.health == "warning"
    assert warning.success_rate == 0.4

    healthy = build(
        PROJECT, [],
        [_outcome("dispatch_success", 9, duration=2.0), _outcome("dispatch_failure", 1, duration=4.0)],
        settings, NOW,
    )
    assert healthy.health == "healthy"
    assert healthy.avg_processing_time_seconds == 3.0


def test_closed_calendar_is_reported():
    settings = utc_settings()
    saturday = NOW + timedelta(days=3)
    metrics = MetricsAggregator.build(PROJECT, [], [], settings, saturday)
    assert metrics.is_business_day is False
    assert metrics.next_processing_time == NOW + timedelta(days=5, hours=-3)


@pytest.mark.asyncio
async def test_publisher_notifies_subscribers_and_redis():
    redis = FakeRedis()
    publisher = MetricsPublisher(redis=redis, cache_ttl=60)
    metrics = MetricsAggregator.build(PROJECT, [], [], utc_settings(), NOW)

    received = []

    async def async_subscriber(m):
        received.append(("async", m.project_id))

    def broken_subscriber(m):
        raise RuntimeError("subscriber bug")

    unsubscribe = publisher.subscribe(lambda m: received.append(("sync", m.project_id)))
    publisher.subscribe(broken_subscriber)
    publisher.subscribe(async_subscriber)

    await publisher.publish(metrics)

    assert received == [("sync", PROJECT), ("async", PROJECT)]
    assert redis.published[0][0] == f"queue_metrics:{PROJECT}"
    assert await publisher.latest(PROJECT) == metrics

    unsubscribe()
    await publisher.publish(metrics)
    assert received.count(("sync", PROJECT)) == 1


@pytest.mark.asyncio
async def test_publisher_without_redis_has_no_cache():
    assert await MetricsPublisher().latest(PROJECT) is None


@pytest.mark.asyncio
async def test_refresher_refreshes_every_project(session_factory, bulk, clock):
    await seed_leads(session_factory, PROJECT, [("A", 5)], settings=utc_settings())
    await bulk.enqueue(PROJECT, ["A"])

    publisher = MetricsPublisher()
    received = []
    publisher.subscribe(received.append)
    refresher = MetricsRefresher(session_factory, MetricsAggregator(clock), publisher, interval_seconds=60)

    refreshed = await refresher.refresh_all()

    assert [m.project_id for m in refreshed] == [PROJECT]
    assert received[0].depth == 1

    await refresher.start()
    assert refresher.running
    await refresher.stop()
    assert not refresher.running
    await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_metrics_report_remaining_daily_capacity(session_factory, bulk, gateway, locks, clock):
    settings = utc_settings(processing_targets={"target_leads_per_work_day": 5, "max_daily_capacity": 5})
    await seed_leads(session_factory, PROJECT, [("A", 9), ("B", 2)], settings=settings)
    await bulk.enqueue(PROJECT, ["A", "B"])
    await QueueRunner(session_factory, gateway, locks=locks, clock=clock).tick(PROJECT)

    metrics = await _compute(session_factory, MetricsAggregator(clock))

    assert (metrics.daily_target, metrics.promoted_today, metrics.remaining_daily_capacity) == (5, 2, 3)
