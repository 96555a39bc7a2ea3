import logging
from typing import Iterable, List, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import ACTIVE_QUEUE_STATUSES, LeadStatus, QueueStatus
from app.core.exceptions import Forbidden, InvalidArgument, NotFound
from app.crud import queue_lead as crud_queue_lead
from app.models.queue_lead import QueueLead
from app.schemas.queue import LeadSnapshot

logger = logging.getLogger(__name__)

# Fields owned by the queue; upsert() copies only these
QUEUE_FIELDS = (
    "queue_status",
    "priority",
    "scheduled_date",
    "attempts",
    "queue_position",
    "enqueued_at",
    "processing_started_at",
    "last_error",
)


class QueueRecordStore:
    """
        Holds the queue projection of each lead (QueueLead rows).

        Guarantees:
        - `queue_position` is a permutation of 1..N over the project's active
          queue (queued + processing leads) after every mutation, and NULL for
          every other lead. Renumbering runs inside the caller's transaction,
          so it commits or rolls back together with the triggering change.
        - `upsert` never creates leads; unknown ids raise NotFound. New leads
          only enter through `register`, fed by the external lead store.

        The store flushes but never commits; the owning service decides the
        transaction boundary.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # ---------------- READ ----------------
    async def get(self, project_id: str) -> List[QueueLead]:
        return await crud_queue_lead.get_project_leads(self.db, project_id)

    async def get_lead(self, lead_id: str) -> QueueLead:
        lead = await crud_queue_lead.get_queue_lead(self.db, lead_id)
        if not lead:
            raise NotFound(f"Lead {lead_id} not found")
        return lead

    async def get_many(self, project_id: str, lead_ids: Sequence[str]) -> List[QueueLead]:
        """
        Fetch leads in the requested order, validating every id up front.

        Raises InvalidArgument on an empty or duplicated id list, NotFound if
        any id is unknown and Forbidden if any lead belongs to another project.
        """
        if not lead_ids:
            raise InvalidArgument("lead_ids must not be empty")
        if len(set(lead_ids)) != len(lead_ids):
            raise InvalidArgument("lead_ids contains duplicates")

        found = {lead.lead_id: lead for lead in await crud_queue_lead.get_queue_leads_by_ids(self.db, lead_ids)}
        missing = [lead_id for lead_id in lead_ids if lead_id not in found]
        if missing:
            raise NotFound(f"Unknown lead ids: {', '.join(missing)}")

        foreign = [lead_id for lead_id in lead_ids if found[lead_id].project_id != project_id]
        if foreign:
            raise Forbidden(f"Leads not in project {project_id}: {', '.join(foreign)}")

        return [found[lead_id] for lead_id in lead_ids]

    async def next_tail_position(self, project_id: str) -> int:
        positions = [
            lead.queue_position
            for lead in await self.get(project_id)
            if lead.queue_status in ACTIVE_QUEUE_STATUSES and lead.queue_position is not None
        ]
        return max(positions, default=0) + 1

    # ---------------- WRITE ----------------
    async def register(self, project_id: str, snapshot: LeadSnapshot) -> Tuple[QueueLead, bool]:
        """Create or refresh the external facts of a lead. Returns (lead, created)."""
        facts = {
            "status": LeadStatus.parse(snapshot.status, snapshot.lead_id).value,
            "heat_score": float(snapshot.heat_score),
            "full_name": snapshot.full_name,
            "phone": snapshot.phone,
            "bant_status": snapshot.bant_status,
        }

        lead = await crud_queue_lead.get_queue_lead(self.db, snapshot.lead_id)
        if lead is None:
            lead = await crud_queue_lead.create_queue_lead(
                self.db, project_id, {"lead_id": snapshot.lead_id, **facts}
            )
            return lead, True

        if lead.project_id != project_id:
            raise Forbidden(f"Lead {snapshot.lead_id} belongs to another project")
        for key, value in facts.items():
            setattr(lead, key, value)
        await self.db.flush()
        return lead, False

    async def upsert(self, lead: QueueLead) -> QueueLead:
        return (await self.upsert_all([lead]))[0]

    async def upsert_all(self, leads: Iterable[QueueLead]) -> List[QueueLead]:
        """Persist queue-owned fields of known leads and renumber their projects."""
        stored_leads = []
        projects = set()
        for lead in leads:
            stored = await crud_queue_lead.get_queue_lead(self.db, lead.lead_id)
            if stored is None:
                raise NotFound(f"Lead {lead.lead_id} not found")
            if stored is not lead:
                for field in QUEUE_FIELDS:
                    setattr(stored, field, getattr(lead, field))
            stored_leads.append(stored)
            projects.add(stored.project_id)

        for project_id in projects:
            await self.renumber(project_id)
        return stored_leads

    async def set_status(self, lead_id: str, queue_status: QueueStatus) -> QueueLead:
        lead = await self.get_lead(lead_id)
        queue_status = QueueStatus(queue_status)

        joining = (
            queue_status.value in ACTIVE_QUEUE_STATUSES
            and lead.queue_status not in ACTIVE_QUEUE_STATUSES
        )
        if joining:
            lead.queue_position = await self.next_tail_position(lead.project_id)
        lead.queue_status = queue_status.value

        await self.renumber(lead.project_id)
        return lead

    async def renumber(self, project_id: str) -> None:
        """Compact active-queue positions to 1..N, keeping their relative order."""
        leads = await self.get(project_id)

        active = [lead for lead in leads if lead.queue_status in ACTIVE_QUEUE_STATUSES]
        active.sort(key=lambda lead: (
            lead.queue_position is None,
            lead.queue_position or 0,
            lead.enqueued_at is None,
            lead.enqueued_at.timestamp() if lead.enqueued_at else 0,
            lead.lead_id,
        ))
        for position, lead in enumerate(active, start=1):
            if lead.queue_position != position:
                lead.queue_position = position

        for lead in leads:
            if lead.queue_status not in ACTIVE_QUEUE_STATUSES and lead.queue_position is not None:
                lead.queue_position = None

        await self.db.flush()
