# models/queue_audit_entry.py
from sqlalchemy import Column, String, Integer, DateTime, JSON, Index
from app.db.base_class import Base, utcnow


class QueueAuditEntry(Base):
    """Append-only record of a queue state transition or bulk operation."""
    __tablename__ = "queue_audit_log"

    entry_id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(String(64), nullable=False)
    action = Column(String(40), nullable=False)
    lead_ids = Column(JSON, nullable=False, default=list)
    # `metadata` is reserved on declarative classes
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    actor = Column(String(100), nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_audit_project_time", "project_id", "timestamp"),
        Index("idx_audit_action", "action"),
    )
