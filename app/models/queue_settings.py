# models/queue_settings.py
from sqlalchemy import Column, String, Integer, Boolean, DateTime, JSON, CheckConstraint
from app.db.base_class import Base, utcnow


class QueueSettingsRecord(Base):
    """Persisted QueueSettings, one row per project."""
    __tablename__ = "queue_settings"

    project_id = Column(String(64), primary_key=True)
    max_concurrent_processing = Column(Integer, nullable=False, default=5)
    retry_attempts = Column(Integer, nullable=False, default=3)
    retry_delay_minutes = Column(Integer, nullable=False, default=30)
    working_hours_start = Column(String(5), nullable=False, default="09:00")
    working_hours_end = Column(String(5), nullable=False, default="17:00")
    timezone = Column(String(64), nullable=False, default="America/New_York")
    enable_weekends = Column(Boolean, nullable=False, default=False)
    weekend_ignores_working_hours = Column(Boolean, nullable=False, default=False)
    priority_weights = Column(JSON, nullable=False, default=dict)
    custom_holidays = Column(JSON, nullable=False, default=list)
    processing_targets = Column(JSON, nullable=False, default=dict)
    dispatch_timeout_seconds = Column(Integer, nullable=False, default=30)
    processing_enabled = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("max_concurrent_processing >= 1", name="chk_settings_concurrency"),
        CheckConstraint("retry_attempts >= 0", name="chk_settings_retry_attempts"),
        CheckConstraint("retry_delay_minutes > 0", name="chk_settings_retry_delay"),
    )
