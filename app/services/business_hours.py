from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from app.schemas.queue_settings import QueueSettings

# Horizon for next_processing_time(); a calendar with no window in two weeks is
# treated as closed
SEARCH_DAYS = 14


class BusinessCalendar:
    """
        Working-hours and business-day rules for one project.

        All inputs and outputs are naive UTC; conversions to the project's
        timezone happen here only.

        - A day is a business day unless it is a custom holiday, or a weekend
          while `enable_weekends` is off.
        - Dispatch is allowed on a business day inside working hours. On an
          enabled weekend, `weekend_ignores_working_hours` lifts the
          working-hours window for the whole day.
        - A window whose end is not after its start wraps past midnight.
    """

    def __init__(self, settings: QueueSettings):
        self.settings = settings
        self.tz = settings.working_hours.tz
        self.start = settings.working_hours.start_time
        self.end = settings.working_hours.end_time

    def local(self, now: datetime) -> datetime:
        return now.replace(tzinfo=timezone.utc).astimezone(self.tz)

    def _to_utc(self, local_dt: datetime) -> datetime:
        return local_dt.astimezone(timezone.utc).replace(tzinfo=None)

    @staticmethod
    def _is_weekend(day: date) -> bool:
        return day.weekday() >= 5

    def is_weekend(self, now: datetime) -> bool:
        return self._is_weekend(self.local(now).date())

    def is_holiday(self, now: datetime) -> bool:
        return self.local(now).date() in self.settings.custom_holidays

    def is_business_day(self, now: datetime) -> bool:
        day = self.local(now).date()
        if day in self.settings.custom_holidays:
            return False
        return self.settings.enable_weekends or not self._is_weekend(day)

    def within_working_hours(self, now: datetime) -> bool:
        clock = self.local(now).time().replace(tzinfo=None)
        if self.start < self.end:
            return self.start <= clock < self.end
        # overnight window, e.g. 22:00-06:00
        return clock >= self.start or clock < self.end

    def can_dispatch(self, now: datetime) -> bool:
        if not self.is_business_day(now):
            return False
        if self.within_working_hours(now):
            return True
        return self.settings.weekend_ignores_working_hours and self.is_weekend(now)

    def day_start(self, now: datetime) -> datetime:
        """Local midnight of `now`'s project day, in naive UTC."""
        local_day = self.local(now).date()
        return self._to_utc(datetime.combine(local_day, time(0, 0), tzinfo=self.tz))

    def next_processing_time(self, now: datetime) -> Optional[datetime]:
        if self.can_dispatch(now):
            return now

        local_now = self.local(now)
        for offset in range(SEARCH_DAYS + 1):
            day = local_now.date() + timedelta(days=offset)
            for clock in (time(0, 0), self.start):
                candidate = datetime.combine(day, clock, tzinfo=self.tz)
                if candidate <= local_now:
                    continue
                candidate_utc = self._to_utc(candidate)
                if self.can_dispatch(candidate_utc):
                    return candidate_utc
        return None

    def daily_target(self, now: datetime) -> int:
        """
        Leads the project may promote on `now`'s local day.

        An override wins over the work-day target. Enabled weekends get
        `weekend_target_percentage` of the target, rounded down. Closed days
        get 0. Every figure is capped at `max_daily_capacity`.
        """
        targets = self.settings.processing_targets
        if targets.override_daily_target:
            return min(targets.override_daily_target, targets.max_daily_capacity)
        if not self.is_business_day(now):
            return 0
        if self.is_weekend(now):
            weekend_target = targets.target_leads_per_work_day * targets.weekend_target_percentage // 100
            return min(weekend_target, targets.max_daily_capacity)
        return min(targets.target_leads_per_work_day, targets.max_daily_capacity)
