import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.enums import ACTIVE_QUEUE_STATUSES, AuditAction, Priority, QueueStatus
from app.core.exceptions import InvalidArgument
from app.db.base_class import as_naive_utc, utcnow
from app.schemas.queue import LeadSnapshot
from app.services.audit_logger import AuditLogger
from app.services.locks import ProjectLocks
from app.services.queue_store import QueueRecordStore

logger = logging.getLogger(__name__)


@dataclass
class BulkResult:
    action: str
    affected: int
    audit_entry_id: int


class BulkOperationsFacade:
    """
        The only mutation surface exposed to operators.

        Every operation:
        1. validates all ids exist (NotFound) and belong to the caller's
           project (Forbidden), plus operation-specific checks (InvalidArgument);
        2. mutates through QueueRecordStore;
        3. writes exactly one AuditEntry for the whole batch.

        Each call runs under the project lock in a single transaction, so a
        failure at any step leaves the store untouched.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: ProjectLocks,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.clock = clock

    @asynccontextmanager
    async def _transaction(self, project_id: str):
        async with self.locks.for_project(project_id):
            async with self.session_factory() as db:
                try:
                    yield db
                    await db.commit()
                except Exception:
                    await db.rollback()
                    raise

    async def enqueue(
        self,
        project_id: str,
        lead_ids: Sequence[str],
        scheduled_date: Optional[datetime] = None,
        actor: str = "unknown",
    ) -> BulkResult:
        """Queue leads at the tail. Priority is derived from heat score; attempts restart at 0."""
        scheduled_date = as_naive_utc(scheduled_date)
        async with self._transaction(project_id) as db:
            store = QueueRecordStore(db)
            leads = await store.get_many(project_id, list(lead_ids))

            already_active = [lead.lead_id for lead in leads if lead.queue_status in ACTIVE_QUEUE_STATUSES]
            if already_active:
                raise InvalidArgument(f"Leads already in queue: {', '.join(already_active)}")

            now = self.clock()
            tail = await store.next_tail_position(project_id)
            for offset, lead in enumerate(leads):
                lead.queue_status = QueueStatus.QUEUED.value
                lead.priority = Priority.from_heat_score(lead.heat_score).value
                lead.attempts = 0
                lead.scheduled_date = scheduled_date
                lead.queue_position = tail + offset
                lead.enqueued_at = now
                lead.processing_started_at = None
                lead.last_error = None
            await store.upsert_all(leads)

            entry = await AuditLogger(db).record(
                project_id,
                AuditAction.BULK_QUEUE,
                [lead.lead_id for lead in leads],
                actor=actor,
                metadata={
                    "scheduled_date": scheduled_date.isoformat() if scheduled_date else None,
                    "queue_count": len(leads),
                    "priorities": {lead.lead_id: lead.priority for lead in leads},
                },
                timestamp=now,
            )
        logger.info("Project %s: %s queued %d lead(s)", project_id, actor, len(leads))
        return BulkResult(AuditAction.BULK_QUEUE.value, len(leads), entry.entry_id)

    async def remove(self, project_id: str, lead_ids: Sequence[str], actor: str = "unknown") -> BulkResult:
        """
        Take leads out of the queue from any state.

        A lead removed while `processing` keeps its in-flight send; the
        dispatcher sees it is no longer processing and discards the outcome.
        """
        async with self._transaction(project_id) as db:
            store = QueueRecordStore(db)
            leads = await store.get_many(project_id, list(lead_ids))

            previous = {lead.lead_id: lead.queue_status for lead in leads}
            for lead in leads:
                lead.queue_status = QueueStatus.NOT_QUEUED.value
                lead.scheduled_date = None
                lead.queue_position = None
                lead.processing_started_at = None
            await store.upsert_all(leads)

            entry = await AuditLogger(db).record(
                project_id,
                AuditAction.BULK_REMOVE,
                [lead.lead_id for lead in leads],
                actor=actor,
                metadata={"removed_count": len(leads), "previous_status": previous},
                timestamp=self.clock(),
            )
        logger.info("Project %s: %s removed %d lead(s) from queue", project_id, actor, len(leads))
        return BulkResult(AuditAction.BULK_REMOVE.value, len(leads), entry.entry_id)

    async def reprioritize(
        self,
        project_id: str,
        lead_ids: Sequence[str],
        priority: Priority,
        actor: str = "unknown",
    ) -> BulkResult:
        priority = Priority(priority)
        async with self._transaction(project_id) as db:
            store = QueueRecordStore(db)
            leads = await store.get_many(project_id, list(lead_ids))

            previous = {lead.lead_id: lead.priority for lead in leads}
            for lead in leads:
                lead.priority = priority.value
            await store.upsert_all(leads)

            entry = await AuditLogger(db).record(
                project_id,
                AuditAction.BULK_REPRIORITIZE,
                [lead.lead_id for lead in leads],
                actor=actor,
                metadata={"priority": priority.value, "previous_priority": previous},
                timestamp=self.clock(),
            )
        return BulkResult(AuditAction.BULK_REPRIORITIZE.value, len(leads), entry.entry_id)

    async def reorder(
        self,
        project_id: str,
        lead_ids: Sequence[str],
        new_positions: Sequence[int],
        actor: str = "unknown",
    ) -> BulkResult:
        """
        Replace the project's queue order.

        `lead_ids` must name every lead in the active queue exactly once and
        `new_positions` must be a permutation of 1..N. Anything partial or
        duplicated raises InvalidArgument and nothing changes.
        """
        lead_ids = list(lead_ids)
        new_positions = list(new_positions)
        if len(lead_ids) != len(new_positions):
            raise InvalidArgument(
                f"lead_ids ({len(lead_ids)}) and new_positions ({len(new_positions)}) differ in length"
            )

        async with self._transaction(project_id) as db:
            store = QueueRecordStore(db)
            leads = await store.get_many(project_id, lead_ids)

            active_ids = {
                lead.lead_id for lead in await store.get(project_id)
                if lead.queue_status in ACTIVE_QUEUE_STATUSES
            }
            if set(lead_ids) != active_ids:
                raise InvalidArgument(
                    "reorder must list exactly the leads currently in the queue "
                    f"({len(active_ids)} expected, {len(lead_ids)} given)"
                )
            if sorted(new_positions) != list(range(1, len(active_ids) + 1)):
                raise InvalidArgument(f"new_positions must be a permutation of 1..{len(active_ids)}")

            for lead, position in zip(leads, new_positions):
                lead.queue_position = position
            await store.upsert_all(leads)

            entry = await AuditLogger(db).record(
                project_id,
                AuditAction.BULK_REORDER,
                lead_ids,
                actor=actor,
                metadata={"positions": dict(zip(lead_ids, new_positions))},
                timestamp=self.clock(),
            )
        return BulkResult(AuditAction.BULK_REORDER.value, len(leads), entry.entry_id)

    async def sync_leads(self, project_id: str, snapshots: List[LeadSnapshot], actor: str = "unknown") -> dict:
        """Register or refresh leads from the external lead store."""
        async with self._transaction(project_id) as db:
            store = QueueRecordStore(db)
            created = updated = 0
            for snapshot in snapshots:
                _, was_created = await store.register(project_id, snapshot)
                if was_created:
                    created += 1
                else:
                    updated += 1
            await AuditLogger(db).record(
                project_id,
                AuditAction.LEAD_SYNC,
                [snapshot.lead_id for snapshot in snapshots],
                actor=actor,
                metadata={"created": created, "updated": updated},
                timestamp=self.clock(),
            )
        return {"created": created, "updated": updated}
