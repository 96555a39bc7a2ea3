from datetime import datetime, timedelta

from app.models.queue_lead import QueueLead
from app.services.retry_policy import PermanentFailure, RetryAfter, RetryPolicy

from conftest import utc_settings

NOW = datetime(2026, 10, 14, 12, 0)


def _queued(scheduled_date=None):
    return QueueLead(lead_id="L1", project_id="p", queue_status="queued", scheduled_date=scheduled_date)


def test_retries_while_attempts_within_budget():
    policy = RetryPolicy(utc_settings(retry_attempts=2, retry_delay_minutes=5))

    for attempts in (1, 2):
        decision = policy.decide(attempts)
        assert isinstance(decision, RetryAfter)
        assert decision.next_attempt_at(NOW) == NOW + timedelta(minutes=5)

    assert isinstance(policy.decide(3), PermanentFailure)


def test_zero_retry_attempts_fails_on_first_failure():
    policy = RetryPolicy(utc_settings(retry_attempts=0))
    assert policy.decide(1) == PermanentFailure(reason="retries_exhausted")


def test_eligible_vs_waiting_for_retry():
    due = _queued(NOW - timedelta(seconds=1))
    waiting = _queued(NOW + timedelta(minutes=5))
    unscheduled = _queued()

    assert RetryPolicy.is_eligible(due, NOW)
    assert RetryPolicy.is_eligible(unscheduled, NOW)
    assert not RetryPolicy.is_eligible(waiting, NOW)

    assert RetryPolicy.is_waiting_for_retry(waiting, NOW)
    assert not RetryPolicy.is_waiting_for_retry(due, NOW)


def test_scheduled_exactly_now_is_eligible():
    assert RetryPolicy.is_eligible(_queued(NOW), NOW)


def test_only_queued_leads_are_eligible():
    lead = QueueLead(lead_id="L1", project_id="p", queue_status="failed", scheduled_date=None)
    assert not RetryPolicy.is_eligible(lead, NOW)
