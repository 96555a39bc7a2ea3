# app/crud/queue_lead.py
from typing import Iterable, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.core.enums import QueueStatus
from app.models.queue_lead import QueueLead


# --- Fetch one lead ---
async def get_queue_lead(db: AsyncSession, lead_id: str) -> Optional[QueueLead]:
    result = await db.execute(select(QueueLead).where(QueueLead.lead_id == lead_id))
    return result.scalar_one_or_none()


# --- Fetch many leads by id (any project) ---
async def get_queue_leads_by_ids(db: AsyncSession, lead_ids: Iterable[str]) -> List[QueueLead]:
    ids = list(lead_ids)
    if not ids:
        return []
    result = await db.execute(select(QueueLead).where(QueueLead.lead_id.in_(ids)))
    return list(result.scalars().all())


# --- All leads of a project, queue order first ---
async def get_project_leads(db: AsyncSession, project_id: str) -> List[QueueLead]:
    result = await db.execute(
        select(QueueLead)
        .where(QueueLead.project_id == project_id)
        .order_by(
            QueueLead.queue_position.is_(None),
            QueueLead.queue_position,
            QueueLead.lead_id,
        )
    )
    return list(result.scalars().all())


# --- Insert a new queue projection ---
async def create_queue_lead(db: AsyncSession, project_id: str, lead_data: dict) -> QueueLead:
    lead = QueueLead(
        project_id=project_id,
        queue_status=QueueStatus.NOT_QUEUED.value,
        attempts=0,
        **lead_data,
    )
    db.add(lead)
    await db.flush()
    return lead


# --- Distinct projects that own any queue lead ---
async def get_project_ids(db: AsyncSession) -> List[str]:
    result = await db.execute(select(QueueLead.project_id).distinct())
    return [row[0] for row in result.all()]
