import inspect
import logging
from datetime import datetime
from typing import Awaitable, Callable, Iterable, List, Optional, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings as app_settings
from app.core.enums import AuditAction, QueueStatus
from app.crud import queue_lead as crud_queue_lead
from app.db.base_class import utcnow
from app.models.queue_audit_entry import QueueAuditEntry
from app.models.queue_lead import QueueLead
from app.schemas.queue import QueueMetrics
from app.schemas.queue_settings import QueueSettings
from app.services.audit_logger import AuditLogger
from app.services.business_hours import BusinessCalendar
from app.services.queue_store import QueueRecordStore
from app.services.retry_policy import RetryPolicy
from app.services.settings_service import QueueSettingsService

logger = logging.getLogger(__name__)

OUTCOME_ACTIONS = (AuditAction.DISPATCH_SUCCESS, AuditAction.DISPATCH_FAILURE)
TODAY_ACTIONS = OUTCOME_ACTIONS + (AuditAction.DISPATCH_BATCH,)

MetricsSubscriber = Callable[[QueueMetrics], Union[None, Awaitable[None]]]


def _health(failed_today: int, success_rate: float, outcomes: int) -> str:
    if failed_today > 10 or (outcomes and success_rate < 0.25):
        return "critical"
    if failed_today > 5 or (outcomes and success_rate < 0.5):
        return "warning"
    return "healthy"


class MetricsAggregator:
    """
        Recomputes QueueMetrics from a store snapshot plus today's dispatch
        outcomes in the audit log. Read-only and idempotent: computing twice
        against the same state gives the same numbers.

        - success_rate = completed_today / (completed_today + failed_today),
          0.0 when there were no outcomes today.
        - failed_today counts failed attempts, including ones that were retried.
        - the daily budget is the calendar's daily target minus the leads
          promoted since local midnight.
        - "today" starts at local midnight in the project's timezone.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    async def compute(self, db: AsyncSession, project_id: str, settings: QueueSettings) -> QueueMetrics:
        now = self.clock()
        calendar = BusinessCalendar(settings)
        leads = await QueueRecordStore(db).get(project_id)
        entries = await AuditLogger(db).entries_since(
            project_id, calendar.day_start(now), actions=TODAY_ACTIONS
        )
        return self.build(project_id, leads, entries, settings, now)

    @staticmethod
    def build(
        project_id: str,
        leads: Iterable[QueueLead],
        entries: Iterable[QueueAuditEntry],
        settings: QueueSettings,
        now: datetime,
    ) -> QueueMetrics:
        leads = list(leads)
        depth = sum(1 for lead in leads if lead.queue_status == QueueStatus.QUEUED.value)
        processing = sum(1 for lead in leads if lead.queue_status == QueueStatus.PROCESSING.value)
        waiting = sum(1 for lead in leads if RetryPolicy.is_waiting_for_retry(lead, now))
        permanently_failed = sum(1 for lead in leads if lead.queue_status == QueueStatus.FAILED.value)

        completed_today = failed_today = promoted_today = 0
        durations: List[float] = []
        for entry in entries:
            if entry.action == AuditAction.DISPATCH_BATCH.value:
                promoted_today += len(entry.lead_ids)
                continue
            if entry.action == AuditAction.DISPATCH_SUCCESS.value:
                completed_today += len(entry.lead_ids)
            elif entry.action == AuditAction.DISPATCH_FAILURE.value:
                failed_today += len(entry.lead_ids)
            else:
                continue
            duration = (entry.metadata_json or {}).get("duration_seconds")
            if isinstance(duration, (int, float)):
                durations.append(float(duration))

        outcomes = completed_today + failed_today
        success_rate = completed_today / outcomes if outcomes else 0.0
        avg_processing = round(sum(durations) / len(durations), 3) if durations else 0.0

        calendar = BusinessCalendar(settings)
        daily_target = calendar.daily_target(now)
        return QueueMetrics(
            project_id=project_id,
            depth=depth,
            processing=processing,
            completed_today=completed_today,
            failed_today=failed_today,
            success_rate=round(success_rate, 4),
            avg_processing_time_seconds=avg_processing,
            last_updated=now,
            waiting_for_retry=waiting,
            permanently_failed=permanently_failed,
            health=_health(failed_today, success_rate, outcomes),
            is_business_day=calendar.is_business_day(now),
            next_processing_time=calendar.next_processing_time(now),
            daily_target=daily_target,
            promoted_today=promoted_today,
            remaining_daily_capacity=max(daily_target - promoted_today, 0),
        )


class MetricsPublisher:
    """
        Pushes freshly computed metrics to consumers.

        In-process consumers register with `subscribe()`. When a Redis client
        is configured, each snapshot is also published on
        `queue_metrics:{project_id}` and cached under
        `queue_metrics:latest:{project_id}` for pollers.
    """

    def __init__(self, redis: Optional[Redis] = None, cache_ttl: int = app_settings.METRICS_CACHE_TTL_SECONDS):
        self.redis = redis
        self.cache_ttl = cache_ttl
        self._subscribers: List[MetricsSubscriber] = []

    @staticmethod
    def channel(project_id: str) -> str:
        return f"queue_metrics:{project_id}"

    @staticmethod
    def cache_key(project_id: str) -> str:
        return f"queue_metrics:latest:{project_id}"

    def subscribe(self, callback: MetricsSubscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    async def publish(self, metrics: QueueMetrics) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(metrics)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Metrics subscriber %r failed: %s", callback, e, exc_info=True)

        if self.redis is not None:
            payload = metrics.model_dump_json()
            await self.redis.set(self.cache_key(metrics.project_id), payload, ex=self.cache_ttl)
            await self.redis.publish(self.channel(metrics.project_id), payload)

    async def latest(self, project_id: str) -> Optional[QueueMetrics]:
        if self.redis is None:
            return None
        cached = await self.redis.get(self.cache_key(project_id))
        if not cached:
            return None
        return QueueMetrics.model_validate_json(cached)


class MetricsRefresher:
    """
        Recomputes and publishes metrics for every project on an interval.

        Lifecycle is explicit: `start()` registers the interval job and starts
        the scheduler, `stop()` shuts it down. Nothing runs between the two.
    """

    JOB_ID = "queue_metrics_refresh"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        aggregator: MetricsAggregator,
        publisher: MetricsPublisher,
        interval_seconds: int = app_settings.METRICS_REFRESH_SECONDS,
    ):
        self.session_factory = session_factory
        self.aggregator = aggregator
        self.publisher = publisher
        self.interval_seconds = interval_seconds
        self.scheduler = AsyncIOScheduler()
        self._initialized = False

    @property
    def running(self) -> bool:
        return self._initialized

    async def start(self):
        if self._initialized:
            return
        self.scheduler.add_job(
            self.refresh_all,
            IntervalTrigger(seconds=self.interval_seconds),
            id=self.JOB_ID,
            name="Refresh queue metrics",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        self._initialized = True
        logger.info("Queue metrics refresher started (every %ss)", self.interval_seconds)

    async def stop(self):
        if self._initialized:
            self.scheduler.shutdown(wait=False)
            self._initialized = False
            logger.info("Queue metrics refresher stopped")

    async def refresh(self, project_id: str) -> QueueMetrics:
        async with self.session_factory() as db:
            settings = await QueueSettingsService(db).get(project_id)
            metrics = await self.aggregator.compute(db, project_id, settings)
        await self.publisher.publish(metrics)
        return metrics

    async def refresh_all(self) -> List[QueueMetrics]:
        async with self.session_factory() as db:
            project_ids = await crud_queue_lead.get_project_ids(db)

        refreshed = []
        for project_id in project_ids:
            try:
                refreshed.append(await self.refresh(project_id))
            except Exception as e:
                logger.error("Error refreshing metrics for project %s: %s", project_id, e, exc_info=True)
                continue
        return refreshed
