from typing import Any, Dict, List, Literal, Optional
from datetime import datetime
from pydantic import BaseModel, Field


QueueStatusLiteral = Literal["not_queued", "queued", "processing", "completed", "failed"]
PriorityLiteral = Literal["low", "medium", "high", "urgent"]


# --- Lead sync (external lead store -> queue) ---
class LeadSnapshot(BaseModel):
    """CRM facts the queue needs, normalised at the store boundary."""
    lead_id: str = Field(min_length=1, max_length=64)
    # absent or unrecognised statuses are recorded as "unknown" by the store
    status: Optional[str] = None
    heat_score: float
    full_name: Optional[str] = None
    phone: Optional[str] = None
    bant_status: Optional[str] = None


class LeadSyncRequest(BaseModel):
    leads: List[LeadSnapshot]


class LeadSyncResponse(BaseModel):
    created: int
    updated: int


# --- Queue lead view ---
class QueueLeadOut(BaseModel):
    lead_id: str
    project_id: str
    full_name: Optional[str] = None
    phone: Optional[str] = None
    status: str
    heat_score: float
    queue_status: QueueStatusLiteral
    priority: PriorityLiteral
    scheduled_date: Optional[datetime] = None
    attempts: int
    queue_position: Optional[int] = None
    last_error: Optional[str] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# --- Bulk operations ---
class EnqueueRequest(BaseModel):
    lead_ids: List[str] = Field(min_length=1)
    scheduled_date: Optional[datetime] = None


class RemoveRequest(BaseModel):
    lead_ids: List[str] = Field(min_length=1)


class ReprioritizeRequest(BaseModel):
    lead_ids: List[str] = Field(min_length=1)
    priority: PriorityLiteral


class ReorderRequest(BaseModel):
    lead_ids: List[str]
    new_positions: List[int]


class BulkOperationResponse(BaseModel):
    success: bool
    action: str
    affected: int
    audit_entry_id: int


# --- Metrics ---
class QueueMetrics(BaseModel):
    project_id: str
    depth: int
    processing: int
    completed_today: int
    failed_today: int
    success_rate: float
    avg_processing_time_seconds: float
    last_updated: datetime
    waiting_for_retry: int = 0
    permanently_failed: int = 0
    health: Literal["healthy", "warning", "critical"] = "healthy"
    is_business_day: bool = True
    next_processing_time: Optional[datetime] = None
    daily_target: int = 0
    promoted_today: int = 0
    remaining_daily_capacity: int = 0

    model_config = {"from_attributes": True}


# --- Audit ---
class AuditEntryOut(BaseModel):
    entry_id: int
    project_id: str
    action: str
    lead_ids: List[str]
    metadata: Dict[str, Any] = Field(validation_alias="metadata_json")
    actor: str
    timestamp: datetime

    model_config = {"from_attributes": True}


class TickResponse(BaseModel):
    project_id: str
    ran: bool
    promoted: List[str]
    completed: List[str]
    retrying: List[str]
    failed: List[str]
