import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.clients.whatsapp_gateway import MessagingGateway, SendResult
from app.core.enums import AuditAction, QueueStatus, SYSTEM_ACTOR
from app.core.exceptions import DispatchFailure
from app.db.base_class import utcnow
from app.models.queue_lead import QueueLead
from app.schemas.queue_settings import QueueSettings
from app.services.audit_logger import AuditLogger
from app.services.locks import ProjectLocks
from app.services.queue_store import QueueRecordStore
from app.services.retry_policy import PermanentFailure, RetryAfter, RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class DispatchOutcome:
    lead_id: str
    result: SendResult
    duration_seconds: float


@dataclass
class DispatchReport:
    completed: List[str] = field(default_factory=list)
    retrying: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    discarded: List[str] = field(default_factory=list)


class Dispatcher:
    """
        Sends the leads promoted by the scheduler and routes each outcome.

        - success -> completed, `dispatch_success` entry
        - failure -> RetryPolicy decides between a delayed retry (back to
          queued) and permanent failure, `dispatch_failure` entry with reason
        - no answer within `dispatch_timeout_seconds` -> failure, reason "timeout"

        Only leads handed in by the scheduler for the current tick are sent.
        Sends run concurrently without holding the project lock; each outcome
        is applied under the lock in its own transaction. If a lead was taken
        out of `processing` while its send was in flight (bulk remove), the
        outcome is audited as discarded and causes no transition.
    """

    def __init__(
        self,
        gateway: MessagingGateway,
        session_factory: async_sessionmaker[AsyncSession],
        locks: ProjectLocks,
        clock: Callable = utcnow,
    ):
        self.gateway = gateway
        self.session_factory = session_factory
        self.locks = locks
        self.clock = clock

    async def dispatch(
        self,
        project_id: str,
        batch: List[QueueLead],
        settings: QueueSettings,
    ) -> DispatchReport:
        report = DispatchReport()
        await asyncio.gather(*(
            self._dispatch_one(project_id, lead, settings, report) for lead in batch
        ))
        logger.info(
            "Project %s dispatch: %d completed, %d retrying, %d failed, %d discarded",
            project_id, len(report.completed), len(report.retrying),
            len(report.failed), len(report.discarded),
        )
        return report

    async def _dispatch_one(
        self,
        project_id: str,
        lead: QueueLead,
        settings: QueueSettings,
        report: DispatchReport,
    ) -> None:
        outcome = await self._send(lead, settings.dispatch_timeout_seconds)
        async with self.locks.for_project(project_id):
            await self._apply_outcome(project_id, outcome, settings, report)

    async def _send(self, lead: QueueLead, timeout_seconds: float) -> DispatchOutcome:
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(self.gateway.send(lead), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            result = SendResult.failure("timeout")
        except DispatchFailure as e:
            result = SendResult.failure(e.reason)
        except Exception as e:
            logger.error("Unexpected error sending lead %s: %s", lead.lead_id, e, exc_info=True)
            result = SendResult.failure(f"unexpected_error: {e}")
        return DispatchOutcome(
            lead_id=lead.lead_id,
            result=result,
            duration_seconds=round(time.monotonic() - started, 3),
        )

    async def _apply_outcome(
        self,
        project_id: str,
        outcome: DispatchOutcome,
        settings: QueueSettings,
        report: DispatchReport,
    ) -> None:
        async with self.session_factory() as db:
            store = QueueRecordStore(db)
            audit = AuditLogger(db)
            now = self.clock()
            lead = await store.get_lead(outcome.lead_id)

            if lead.queue_status != QueueStatus.PROCESSING.value:
                await audit.record(
                    project_id,
                    AuditAction.DISPATCH_OUTCOME_DISCARDED,
                    [lead.lead_id],
                    actor=SYSTEM_ACTOR,
                    metadata={
                        "success": outcome.result.success,
                        "reason": outcome.result.reason,
                        "queue_status": lead.queue_status,
                    },
                    timestamp=now,
                )
                await db.commit()
                logger.info("Discarded outcome for lead %s (now %s)", lead.lead_id, lead.queue_status)
                report.discarded.append(lead.lead_id)
                return

            if outcome.result.success:
                lead.queue_status = QueueStatus.COMPLETED.value
                lead.scheduled_date = None
                lead.last_error = None
                await store.upsert(lead)
                await audit.record(
                    project_id,
                    AuditAction.DISPATCH_SUCCESS,
                    [lead.lead_id],
                    actor=SYSTEM_ACTOR,
                    metadata={
                        "attempt": lead.attempts,
                        "duration_seconds": outcome.duration_seconds,
                        "message_id": outcome.result.message_id,
                    },
                    timestamp=now,
                )
                report.completed.append(lead.lead_id)
            else:
                reason = outcome.result.reason or "unknown"
                decision = RetryPolicy(settings).decide(lead.attempts)
                lead.last_error = reason
                metadata = {
                    "reason": reason,
                    "attempt": lead.attempts,
                    "duration_seconds": outcome.duration_seconds,
                }
                if isinstance(decision, RetryAfter):
                    lead.queue_status = QueueStatus.QUEUED.value
                    lead.scheduled_date = decision.next_attempt_at(now)
                    metadata["retry_at"] = lead.scheduled_date.isoformat()
                    report.retrying.append(lead.lead_id)
                elif isinstance(decision, PermanentFailure):
                    lead.queue_status = QueueStatus.FAILED.value
                    lead.scheduled_date = None
                    metadata["permanent"] = decision.reason
                    report.failed.append(lead.lead_id)
                    logger.warning(
                        "Lead %s permanently failed after %d attempt(s): %s",
                        lead.lead_id, lead.attempts, reason,
                    )
                await store.upsert(lead)
                await audit.record(
                    project_id,
                    AuditAction.DISPATCH_FAILURE,
                    [lead.lead_id],
                    actor=SYSTEM_ACTOR,
                    metadata=metadata,
                    timestamp=now,
                )

            await db.commit()
