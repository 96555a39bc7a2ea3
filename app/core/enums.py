# app/core/enums.py
import logging
from enum import Enum

logger = logging.getLogger(__name__)


class QueueStatus(str, Enum):
    NOT_QUEUED = "not_queued"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Leads that hold a queue_position
ACTIVE_QUEUE_STATUSES = (QueueStatus.QUEUED.value, QueueStatus.PROCESSING.value)


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @classmethod
    def from_heat_score(cls, heat_score: float) -> "Priority":
        if heat_score > 8:
            return cls.URGENT
        if heat_score > 6:
            return cls.HIGH
        if heat_score > 4:
            return cls.MEDIUM
        return cls.LOW


# Draw order used to break weighted round-robin ties
PRIORITY_ORDER = (Priority.URGENT, Priority.HIGH, Priority.MEDIUM, Priority.LOW)


class LeadStatus(str, Enum):
    """CRM lifecycle stage. Informational only, the queue never mutates it."""
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    CONVERTED = "converted"
    LOST = "lost"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw, lead_id: str = "?") -> "LeadStatus":
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            logger.warning("Unknown CRM status %r for lead %s, recording as 'unknown'", raw, lead_id)
            return cls.UNKNOWN


class AuditAction(str, Enum):
    BULK_QUEUE = "bulk_queue"
    BULK_REMOVE = "bulk_remove"
    BULK_REPRIORITIZE = "bulk_reprioritize"
    BULK_REORDER = "bulk_reorder"
    LEAD_SYNC = "lead_sync"
    DISPATCH_BATCH = "dispatch_batch"
    DISPATCH_SUCCESS = "dispatch_success"
    DISPATCH_FAILURE = "dispatch_failure"
    DISPATCH_OUTCOME_DISCARDED = "dispatch_outcome_discarded"
    SETTINGS_UPDATED = "settings_updated"
    QUEUE_PAUSED = "queue_paused"
    QUEUE_RESUMED = "queue_resumed"


SYSTEM_ACTOR = "system:scheduler"
