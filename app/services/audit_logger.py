import logging
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import AuditAction
from app.crud import queue_audit as crud_audit
from app.models.queue_audit_entry import QueueAuditEntry

logger = logging.getLogger(__name__)
audit_log = logging.getLogger("app.audit")


class AuditLogger:
    """
        Append-only audit trail of queue transitions and bulk operations.

        Entries are written in the caller's session so they commit atomically
        with the change they describe. Each entry is also echoed to the
        `app.audit` logger for the external log sink.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        project_id: str,
        action: AuditAction,
        lead_ids: Sequence[str],
        actor: str,
        metadata: Optional[dict] = None,
        timestamp: Optional[datetime] = None,
    ) -> QueueAuditEntry:
        entry = await crud_audit.create_audit_entry(
            self.db,
            project_id=project_id,
            action=AuditAction(action).value,
            lead_ids=lead_ids,
            actor=actor,
            metadata=metadata,
            timestamp=timestamp,
        )
        audit_log.info(
            "%s project=%s actor=%s leads=%d entry=%s",
            entry.action, project_id, actor, len(entry.lead_ids), entry.entry_id,
        )
        return entry

    async def entries_since(
        self,
        project_id: str,
        since: datetime,
        actions: Optional[Sequence[AuditAction]] = None,
    ) -> List[QueueAuditEntry]:
        return await crud_audit.get_audit_entries(
            self.db,
            project_id,
            since=since,
            actions=[AuditAction(a).value for a in actions] if actions else None,
        )

    async def recent(self, project_id: str, limit: int = 100) -> List[QueueAuditEntry]:
        return await crud_audit.get_audit_entries(self.db, project_id, limit=limit)

    async def promoted_since(self, project_id: str, since: datetime) -> int:
        """Number of leads promoted to processing since `since`, retries included."""
        entries = await self.entries_since(project_id, since, actions=[AuditAction.DISPATCH_BATCH])
        return sum(len(entry.lead_ids) for entry in entries)
