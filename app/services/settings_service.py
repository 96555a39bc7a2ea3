import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import AuditAction
from app.crud import queue_settings as crud_settings
from app.schemas.queue_settings import QueueSettings
from app.services.audit_logger import AuditLogger

logger = logging.getLogger(__name__)


class QueueSettingsService:
    """Loads and stores per-project QueueSettings, validating at the boundary."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, project_id: str) -> QueueSettings:
        record = await crud_settings.get_settings_record(self.db, project_id)
        if record is None:
            return QueueSettings()
        return QueueSettings.from_record(record)

    async def update(self, project_id: str, new_settings: QueueSettings, actor: str) -> QueueSettings:
        # Re-validate: callers may hand in a model built with model_construct()
        validated = QueueSettings.load(new_settings.model_dump())
        await crud_settings.upsert_settings_record(self.db, project_id, validated.to_record_values())
        await AuditLogger(self.db).record(
            project_id,
            AuditAction.SETTINGS_UPDATED,
            [],
            actor=actor,
            metadata=validated.model_dump(mode="json"),
        )
        logger.info("Queue settings updated for project %s by %s", project_id, actor)
        return validated

    async def set_processing_enabled(self, project_id: str, enabled: bool, actor: str) -> QueueSettings:
        current = await self.get(project_id)
        values = current.to_record_values()
        values["processing_enabled"] = enabled
        await crud_settings.upsert_settings_record(self.db, project_id, values)
        await AuditLogger(self.db).record(
            project_id,
            AuditAction.QUEUE_RESUMED if enabled else AuditAction.QUEUE_PAUSED,
            [],
            actor=actor,
        )
        return current.model_copy(update={"processing_enabled": enabled})
