import logging
from collections import deque
from datetime import datetime
from typing import Dict, Iterable, List

from app.core.enums import AuditAction, PRIORITY_ORDER, Priority, QueueStatus, SYSTEM_ACTOR
from app.models.queue_lead import QueueLead
from app.schemas.queue_settings import PriorityWeights, QueueSettings
from app.services.audit_logger import AuditLogger
from app.services.business_hours import BusinessCalendar
from app.services.queue_store import QueueRecordStore
from app.services.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)


class WeightedRoundRobin:
    """
    Smooth weighted round-robin over priority tiers.

    Every draw adds each available tier's weight to its running credit, picks
    the tier with the most credit and charges it the total weight of the
    round. With weights 4:3:2:1 and all tiers non-empty, every 10 draws yield
    4 urgent, 3 high, 2 medium and 1 low, interleaved rather than batched.
    Ties go to the more urgent tier.
    """

    def __init__(self):
        self._credit: Dict[Priority, int] = {p: 0 for p in PRIORITY_ORDER}

    def next(self, weights: PriorityWeights, available: Iterable[Priority]) -> Priority:
        available = set(available)
        tiers = [p for p in PRIORITY_ORDER if p in available]
        if not tiers:
            raise ValueError("no priority tier available")
        for tier in PRIORITY_ORDER:
            if tier not in available:
                # an emptied tier starts from zero when it refills
                self._credit[tier] = 0

        total = 0
        for tier in tiers:
            weight = weights.weight_of(tier)
            self._credit[tier] += weight
            total += weight

        chosen = max(tiers, key=lambda p: self._credit[p])
        self._credit[chosen] -= total
        return chosen


class QueueScheduler:
    """
        Selects the next batch of queued leads to promote to `processing`.

        Selection per tick:
        1. Free slots = max_concurrent_processing - leads already processing,
           further capped by what is left of the day's processing target.
        2. Candidates: queued leads whose scheduled_date is empty or due, and
           only while the project's business calendar allows dispatch.
        3. Candidates are partitioned by priority and drawn with weighted
           round-robin (proportional, not strict precedence), FIFO by
           queue_position within a tier.

        The round-robin credit is kept per project across ticks, so a low tier
        keeps its share even when only one slot frees up per tick.
    """

    def __init__(self):
        self._rr_by_project: Dict[str, WeightedRoundRobin] = {}

    def _round_robin(self, project_id: str) -> WeightedRoundRobin:
        if project_id not in self._rr_by_project:
            self._rr_by_project[project_id] = WeightedRoundRobin()
        return self._rr_by_project[project_id]

    def select_batch(
        self,
        project_id: str,
        leads: List[QueueLead],
        settings: QueueSettings,
        now: datetime,
        promoted_today: int = 0,
    ) -> List[QueueLead]:
        processing = sum(1 for lead in leads if lead.queue_status == QueueStatus.PROCESSING.value)
        slots = settings.max_concurrent_processing - processing
        if slots <= 0:
            return []

        calendar = BusinessCalendar(settings)
        if not calendar.can_dispatch(now):
            logger.debug("Project %s outside its dispatch window, nothing selected", project_id)
            return []

        remaining_today = calendar.daily_target(now) - promoted_today
        if remaining_today <= 0:
            logger.info("Project %s reached its daily processing target", project_id)
            return []
        slots = min(slots, remaining_today)

        candidates = sorted(
            (lead for lead in leads if RetryPolicy.is_eligible(lead, now)),
            key=lambda lead: (lead.queue_position is None, lead.queue_position or 0, lead.lead_id),
        )
        partitions: Dict[Priority, deque] = {p: deque() for p in PRIORITY_ORDER}
        for lead in candidates:
            partitions[Priority(lead.priority)].append(lead)

        rr = self._round_robin(project_id)
        selected: List[QueueLead] = []
        while len(selected) < slots:
            available = [p for p in PRIORITY_ORDER if partitions[p]]
            if not available:
                break
            tier = rr.next(settings.priority_weights, available)
            selected.append(partitions[tier].popleft())
        return selected

    async def promote(
        self,
        store: QueueRecordStore,
        audit: AuditLogger,
        project_id: str,
        settings: QueueSettings,
        now: datetime,
    ) -> List[QueueLead]:
        """Promote one batch from a single store snapshot and audit it as one entry."""
        snapshot = await store.get(project_id)
        promoted_today = await audit.promoted_since(project_id, BusinessCalendar(settings).day_start(now))
        batch = self.select_batch(project_id, snapshot, settings, now, promoted_today)
        if not batch:
            return []

        for lead in batch:
            lead.queue_status = QueueStatus.PROCESSING.value
            lead.attempts += 1
            lead.processing_started_at = now
        await store.upsert_all(batch)

        await audit.record(
            project_id,
            AuditAction.DISPATCH_BATCH,
            [lead.lead_id for lead in batch],
            actor=SYSTEM_ACTOR,
            metadata={
                "priorities": {lead.lead_id: lead.priority for lead in batch},
                "attempts": {lead.lead_id: lead.attempts for lead in batch},
            },
            timestamp=now,
        )
        logger.info("Project %s: promoted %d lead(s) to processing", project_id, len(batch))
        return batch
