import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.clients.whatsapp_gateway import MessagingGateway
from app.core.config import settings as app_settings
from app.crud import queue_lead as crud_queue_lead
from app.db.base_class import utcnow
from app.schemas.queue_settings import QueueSettings
from app.services.audit_logger import AuditLogger
from app.services.dispatcher import Dispatcher
from app.services.locks import ProjectLocks
from app.services.queue_scheduler import QueueScheduler
from app.services.queue_store import QueueRecordStore
from app.services.settings_service import QueueSettingsService

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    project_id: str
    ran: bool = False
    promoted: List[str] = field(default_factory=list)
    completed: List[str] = field(default_factory=list)
    retrying: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class QueueRunner:
    """
        Drives the automation loop for every project.

        One tick for a project:
        1. under the project lock, load settings and promote one batch
           (QueueScheduler), committed together with its audit entry;
        2. outside the lock, hand the batch to the Dispatcher, which applies
           each outcome under the lock as it arrives.

        At most one tick per project is in flight; an overlapping tick for the
        same project is skipped, not queued. Different projects tick
        concurrently. Paused projects (`processing_enabled` off) are skipped.
    """

    JOB_ID = "queue_tick"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: MessagingGateway,
        locks: Optional[ProjectLocks] = None,
        scheduler: Optional[QueueScheduler] = None,
        clock: Callable[[], datetime] = utcnow,
        tick_seconds: int = app_settings.QUEUE_TICK_SECONDS,
        on_tick: Optional[Callable] = None,
    ):
        self.session_factory = session_factory
        self.locks = locks or ProjectLocks()
        self.scheduler = scheduler or QueueScheduler()
        self.clock = clock
        self.tick_seconds = tick_seconds
        self.dispatcher = Dispatcher(gateway, session_factory, self.locks, clock=clock)
        self.on_tick = on_tick
        self._ticking: Set[str] = set()
        self._job_scheduler = AsyncIOScheduler()
        self._initialized = False

    @property
    def running(self) -> bool:
        return self._initialized

    # ---------------- LIFECYCLE ----------------
    async def start(self):
        if self._initialized:
            return
        self._job_scheduler.add_job(
            self.tick_all,
            IntervalTrigger(seconds=self.tick_seconds),
            id=self.JOB_ID,
            name="Lead queue tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._job_scheduler.start()
        self._initialized = True
        logger.info("Queue runner started (tick every %ss)", self.tick_seconds)

    async def stop(self):
        if self._initialized:
            self._job_scheduler.shutdown(wait=False)
            self._initialized = False
            logger.info("Queue runner stopped")

    # ---------------- TICKS ----------------
    async def tick(self, project_id: str) -> TickResult:
        result = TickResult(project_id=project_id)
        if project_id in self._ticking:
            logger.debug("Tick for project %s already in flight, skipping", project_id)
            return result

        self._ticking.add(project_id)
        try:
            async with self.locks.for_project(project_id):
                async with self.session_factory() as db:
                    settings = await QueueSettingsService(db).get(project_id)
                    if not settings.processing_enabled:
                        logger.debug("Project %s is paused, skipping tick", project_id)
                        return result
                    batch = await self.scheduler.promote(
                        QueueRecordStore(db), AuditLogger(db), project_id, settings, self.clock()
                    )
                    await db.commit()

            result.ran = True
            result.promoted = [lead.lead_id for lead in batch]
            if batch:
                report = await self.dispatcher.dispatch(project_id, batch, settings)
                result.completed = report.completed
                result.retrying = report.retrying
                result.failed = report.failed
        finally:
            self._ticking.discard(project_id)

        if self.on_tick is not None and result.promoted:
            try:
                await self.on_tick(project_id)
            except Exception as e:
                logger.error("Post-tick hook failed for project %s: %s", project_id, e, exc_info=True)
        return result

    async def tick_all(self) -> List[TickResult]:
        async with self.session_factory() as db:
            project_ids = await crud_queue_lead.get_project_ids(db)

        outcomes = await asyncio.gather(
            *(self.tick(project_id) for project_id in project_ids),
            return_exceptions=True,
        )
        results = []
        for project_id, outcome in zip(project_ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Tick failed for project %s: %s", project_id, outcome, exc_info=outcome)
                continue
            results.append(outcome)
        return results

    # ---------------- PAUSE / RESUME ----------------
    async def _set_processing_enabled(self, project_id: str, enabled: bool, actor: str) -> QueueSettings:
        async with self.locks.for_project(project_id):
            async with self.session_factory() as db:
                updated = await QueueSettingsService(db).set_processing_enabled(project_id, enabled, actor)
                await db.commit()
        logger.info("Project %s %s by %s", project_id, "resumed" if enabled else "paused", actor)
        return updated

    async def pause(self, project_id: str, actor: str = "unknown") -> QueueSettings:
        """Stop promoting new batches. In-flight sends still complete."""
        return await self._set_processing_enabled(project_id, False, actor)

    async def resume(self, project_id: str, actor: str = "unknown") -> QueueSettings:
        return await self._set_processing_enabled(project_id, True, actor)

    async def update_settings(self, project_id: str, new_settings: QueueSettings, actor: str = "unknown") -> QueueSettings:
        async with self.locks.for_project(project_id):
            async with self.session_factory() as db:
                updated = await QueueSettingsService(db).update(project_id, new_settings, actor)
                await db.commit()
        return updated
