from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Union

from app.core.enums import QueueStatus
from app.models.queue_lead import QueueLead
from app.schemas.queue_settings import QueueSettings


@dataclass(frozen=True)
class RetryAfter:
    delay: timedelta

    def next_attempt_at(self, failed_at: datetime) -> datetime:
        return failed_at + self.delay


@dataclass(frozen=True)
class PermanentFailure:
    reason: str = "retries_exhausted"


RetryDecision = Union[RetryAfter, PermanentFailure]


class RetryPolicy:
    """
        Decides what happens to a lead whose dispatch just failed.

        `attempts` already counts the failed attempt (the scheduler increments
        it on promotion), so a lead gets `retry_attempts + 1` attempts in total.

        A retrying lead goes back to `queued` with a future `scheduled_date`.
        Whether a queued lead is eligible now or still waiting for its retry is
        decided purely by comparing that date with the current time.
    """

    def __init__(self, settings: QueueSettings):
        self.settings = settings

    def decide(self, attempts: int) -> RetryDecision:
        if attempts <= self.settings.retry_attempts:
            return RetryAfter(delay=timedelta(minutes=self.settings.retry_delay_minutes))
        return PermanentFailure()

    @staticmethod
    def is_eligible(lead: QueueLead, now: datetime) -> bool:
        return (
            lead.queue_status == QueueStatus.QUEUED.value
            and (lead.scheduled_date is None or lead.scheduled_date <= now)
        )

    @staticmethod
    def is_waiting_for_retry(lead: QueueLead, now: datetime) -> bool:
        return (
            lead.queue_status == QueueStatus.QUEUED.value
            and lead.scheduled_date is not None
            and lead.scheduled_date > now
        )
