from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Header, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
import logging
import traceback

from app.core.exceptions import ConfigurationError
from app.db.session import get_db
from app.schemas.queue import (
    AuditEntryOut,
    BulkOperationResponse,
    EnqueueRequest,
    LeadSyncRequest,
    LeadSyncResponse,
    QueueLeadOut,
    QueueMetrics,
    RemoveRequest,
    ReorderRequest,
    ReprioritizeRequest,
    TickResponse,
)
from app.schemas.queue_settings import QueueSettings
from app.services.audit_logger import AuditLogger
from app.services.bulk_operations import BulkOperationsFacade, BulkResult
from app.services.metrics_aggregator import MetricsAggregator, MetricsPublisher
from app.services.queue_runner import QueueRunner
from app.services.queue_store import QueueRecordStore
from app.services.settings_service import QueueSettingsService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/queue", tags=["Lead Queue"])


# --- app.state wiring ---
def get_bulk_operations(request: Request) -> BulkOperationsFacade:
    return request.app.state.bulk_operations


def get_runner(request: Request) -> QueueRunner:
    return request.app.state.queue_runner


def get_aggregator(request: Request) -> MetricsAggregator:
    return request.app.state.metrics_aggregator


def get_publisher(request: Request) -> MetricsPublisher:
    return request.app.state.metrics_publisher


def get_actor(x_actor_id: Optional[str] = Header(default=None)) -> str:
    return x_actor_id or "unknown"

def _bulk_response(result: BulkResult) -> BulkOperationResponse:
    return BulkOperationResponse(
        success=True,
        action=result.action,
        affected=result.affected,
        audit_entry_id=result.audit_entry_id,
    )


# ---------------- LEADS ----------------
@router.post(
    "/{project_id}/leads/sync",
    response_model=LeadSyncResponse,
    summary="Sync leads from the CRM",
    description="Registers new leads and refreshes status and heat score of known ones. Queue state is untouched.",
)
async def sync_leads(
    project_id: str,
    request: LeadSyncRequest,
    bulk: BulkOperationsFacade = Depends(get_bulk_operations),
    actor: str = Depends(get_actor),
):
    try:
        return await bulk.sync_leads(project_id, request.leads, actor=actor)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except Exception as e:
        logger.error("Error in sync_leads: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.get(
    "/{project_id}/leads",
    response_model=List[QueueLeadOut],
    summary="List queue leads",
    description="Returns every lead of the project, active queue first in position order.",
)
async def list_leads(project_id: str, db: AsyncSession = Depends(get_db)):
    try:
        return await QueueRecordStore(db).get(project_id)
    except Exception as e:
        logger.error("Error in list_leads: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


# ---------------- BULK OPERATIONS ----------------
@router.post("/{project_id}/enqueue", response_model=BulkOperationResponse, summary="Queue leads")
async def enqueue_leads(
    project_id: str,
    request: EnqueueRequest,
    background_tasks: BackgroundTasks,
    bulk: BulkOperationsFacade = Depends(get_bulk_operations),
    runner: QueueRunner = Depends(get_runner),
    actor: str = Depends(get_actor),
):
    try:
        result = await bulk.enqueue(project_id, request.lead_ids, request.scheduled_date, actor=actor)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error("Error in enqueue_leads: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")
    background_tasks.add_task(runner.tick, project_id)
    return _bulk_response(result)


@router.post("/{project_id}/remove", response_model=BulkOperationResponse, summary="Remove leads from the queue")
async def remove_leads(
    project_id: str,
    request: RemoveRequest,
    background_tasks: BackgroundTasks,
    bulk: BulkOperationsFacade = Depends(get_bulk_operations),
    runner: QueueRunner = Depends(get_runner),
    actor: str = Depends(get_actor),
):
    try:
        result = await bulk.remove(project_id, request.lead_ids, actor=actor)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error("Error in remove_leads: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")
    # freed slots can be refilled right away
    background_tasks.add_task(runner.tick, project_id)
    return _bulk_response(result)


@router.post("/{project_id}/reprioritize", response_model=BulkOperationResponse, summary="Change lead priority")
async def reprioritize_leads(
    project_id: str,
    request: ReprioritizeRequest,
    bulk: BulkOperationsFacade = Depends(get_bulk_operations),
    actor: str = Depends(get_actor),
):
    try:
        result = await bulk.reprioritize(project_id, request.lead_ids, request.priority, actor=actor)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error("Error in reprioritize_leads: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")
    return _bulk_response(result)


@router.post(
    "/{project_id}/reorder",
    response_model=BulkOperationResponse,
    summary="Reorder the queue",
    description="lead_ids must list the whole active queue; new_positions must be a permutation of 1..N.",
)
async def reorder_queue(
    project_id: str,
    request: ReorderRequest,
    bulk: BulkOperationsFacade = Depends(get_bulk_operations),
    actor: str = Depends(get_actor),
):
    try:
        result = await bulk.reorder(project_id, request.lead_ids, request.new_positions, actor=actor)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error("Error in reorder_queue: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")
    return _bulk_response(result)


# ---------------- SETTINGS ----------------
@router.get("/{project_id}/settings", response_model=QueueSettings, response_model_by_alias=True)
async def get_settings(project_id: str, db: AsyncSession = Depends(get_db)):
    try:
        return await QueueSettingsService(db).get(project_id)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        logger.error("Error in get_settings: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.put(
    "/{project_id}/settings",
    response_model=QueueSettings,
    response_model_by_alias=True,
    summary="Replace queue settings",
    description="Values outside their documented bounds are rejected with 422, never clamped.",
)
async def update_settings(
    project_id: str,
    payload: dict = Body(...),
    runner: QueueRunner = Depends(get_runner),
    actor: str = Depends(get_actor),
):
    try:
        new_settings = QueueSettings.load(payload)
        return await runner.update_settings(project_id, new_settings, actor=actor)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        logger.error("Error in update_settings: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


# ---------------- AUTOMATION ----------------
@router.post("/{project_id}/tick", response_model=TickResponse, summary="Run one automation tick now")
async def run_tick(project_id: str, runner: QueueRunner = Depends(get_runner)):
    try:
        result = await runner.tick(project_id)
    except Exception as e:
        logger.error("Error in run_tick: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")
    return TickResponse(
        project_id=result.project_id,
        ran=result.ran,
        promoted=result.promoted,
        completed=result.completed,
        retrying=result.retrying,
        failed=result.failed,
    )


@router.post("/{project_id}/pause", response_model=QueueSettings, response_model_by_alias=True)
async def pause_queue(project_id: str, runner: QueueRunner = Depends(get_runner), actor: str = Depends(get_actor)):
    try:
        return await runner.pause(project_id, actor=actor)
    except Exception as e:
        logger.error("Error in pause_queue: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.post("/{project_id}/resume", response_model=QueueSettings, response_model_by_alias=True)
async def resume_queue(project_id: str, runner: QueueRunner = Depends(get_runner), actor: str = Depends(get_actor)):
    try:
        return await runner.resume(project_id, actor=actor)
    except Exception as e:
        logger.error("Error in resume_queue: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


# ---------------- OBSERVABILITY ----------------
@router.get(
    "/{project_id}/metrics",
    response_model=QueueMetrics,
    summary="Current queue metrics",
    description="Recomputes depth, today's outcomes, health and the remaining daily processing budget.",
)
async def get_metrics(
    project_id: str,
    db: AsyncSession = Depends(get_db),
    aggregator: MetricsAggregator = Depends(get_aggregator),
):
    try:
        settings = await QueueSettingsService(db).get(project_id)
        return await aggregator.compute(db, project_id, settings)
    except Exception as e:
        logger.error("Error in get_metrics: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.get(
    "/{project_id}/metrics/latest",
    response_model=QueueMetrics,
    summary="Last published metrics",
    description="Returns the snapshot cached by the periodic metrics refresh, without recomputing.",
)
async def get_latest_metrics(project_id: str, publisher: MetricsPublisher = Depends(get_publisher)):
    try:
        metrics = await publisher.latest(project_id)
    except Exception as e:
        logger.error("Error in get_latest_metrics: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")
    if metrics is None:
        raise HTTPException(status_code=404, detail=f"No metrics published yet for project {project_id}")
    return metrics


@router.get("/{project_id}/audit", response_model=List[AuditEntryOut])
async def get_audit_log(
    project_id: str,
    limit: int = Query(100, ge=1, le=1000, description="Number of most recent entries to return"),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await AuditLogger(db).recent(project_id, limit=limit)
    except Exception as e:
        logger.error("Error in get_audit_log: %s\n%s", e, traceback.format_exc())
        raise HTTPException(status_code=500, detail="Internal Server Error")
