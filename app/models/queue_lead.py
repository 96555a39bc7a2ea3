# models/queue_lead.py
from sqlalchemy import Column, String, Integer, Float, DateTime, Text, CheckConstraint, Index
from app.db.base_class import Base, utcnow


class QueueLead(Base):
    """
    Queue projection of a CRM lead.

    The lead's identity and CRM facts (status, heat_score) are owned by the
    external lead store; everything prefixed `queue_` plus priority, attempts
    and the scheduling timestamps is owned by the queue.
    """
    __tablename__ = "queue_leads"

    lead_id = Column(String(64), primary_key=True)
    project_id = Column(String(64), nullable=False)

    # --- external facts (read-only for the queue) ---
    full_name = Column(String(200), nullable=True)
    phone = Column(String(32), nullable=True)
    status = Column(String(20), nullable=False, default="new")
    heat_score = Column(Float, nullable=False, default=0.0)
    bant_status = Column(String(50), nullable=True)

    # --- queue state ---
    queue_status = Column(String(20), nullable=False, default="not_queued")
    priority = Column(String(10), nullable=False, default="low")
    scheduled_date = Column(DateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    queue_position = Column(Integer, nullable=True)
    enqueued_at = Column(DateTime, nullable=True)
    processing_started_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('new','contacted','qualified','converted','lost','unknown')",
            name="chk_queue_lead_status"
        ),
        CheckConstraint(
            "queue_status IN ('not_queued','queued','processing','completed','failed')",
            name="chk_queue_status"
        ),
        CheckConstraint("priority IN ('low','medium','high','urgent')", name="chk_queue_priority"),
        CheckConstraint("attempts >= 0", name="chk_queue_attempts"),
        Index("idx_queue_project_status", "project_id", "queue_status"),
        Index("idx_queue_position", "project_id", "queue_position"),
    )

    def __repr__(self) -> str:
        return (
            f"<QueueLead {self.lead_id} {self.queue_status} "
            f"prio={self.priority} pos={self.queue_position} attempts={self.attempts}>"
        )
