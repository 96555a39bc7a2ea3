# crud/queue_audit.py
from typing import List, Optional, Sequence
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.db.base_class import utcnow
from app.models.queue_audit_entry import QueueAuditEntry


# Append a new entry. Entries are never updated or deleted.
async def create_audit_entry(
    db: AsyncSession,
    project_id: str,
    action: str,
    lead_ids: Sequence[str],
    actor: str,
    metadata: Optional[dict] = None,
    timestamp: Optional[datetime] = None,
) -> QueueAuditEntry:
    entry = QueueAuditEntry(
        project_id=project_id,
        action=action,
        lead_ids=list(lead_ids),
        metadata_json=metadata or {},
        actor=actor,
        timestamp=timestamp or utcnow(),
    )
    db.add(entry)
    await db.flush()
    return entry


# List entries for a project, newest first
async def get_audit_entries(
    db: AsyncSession,
    project_id: str,
    since: Optional[datetime] = None,
    actions: Optional[Sequence[str]] = None,
    limit: Optional[int] = None,
) -> List[QueueAuditEntry]:
    stmt = select(QueueAuditEntry).where(QueueAuditEntry.project_id == project_id)
    if since is not None:
        stmt = stmt.where(QueueAuditEntry.timestamp >= since)
    if actions:
        stmt = stmt.where(QueueAuditEntry.action.in_(list(actions)))
    stmt = stmt.order_by(QueueAuditEntry.timestamp.desc(), QueueAuditEntry.entry_id.desc())
    if limit:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())
