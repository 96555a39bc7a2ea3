# crud/queue_settings.py
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.models.queue_settings import QueueSettingsRecord


async def get_settings_record(db: AsyncSession, project_id: str) -> Optional[QueueSettingsRecord]:
    result = await db.execute(
        select(QueueSettingsRecord).where(QueueSettingsRecord.project_id == project_id)
    )
    return result.scalar_one_or_none()


async def upsert_settings_record(db: AsyncSession, project_id: str, values: dict) -> QueueSettingsRecord:
    record = await get_settings_record(db, project_id)
    if record:
        for key, value in values.items():
            setattr(record, key, value)
    else:
        record = QueueSettingsRecord(project_id=project_id, **values)
        db.add(record)
    await db.flush()
    return record
