from datetime import date, time
from typing import Any, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from app.core.enums import Priority
from app.core.exceptions import ConfigurationError


class _CamelModel(BaseModel):
    # The settings UI speaks camelCase; python code uses snake_case
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class WorkingHours(_CamelModel):
    start: str = "09:00"
    end: str = "17:00"
    timezone: str = "America/New_York"

    @field_validator("start", "end")
    @classmethod
    def _check_clock(cls, value: str) -> str:
        try:
            time.fromisoformat(value)
        except ValueError:
            raise ValueError(f"invalid time of day {value!r}, expected HH:MM")
        return value

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone {value!r}")
        return value

    @property
    def start_time(self) -> time:
        return time.fromisoformat(self.start)

    @property
    def end_time(self) -> time:
        return time.fromisoformat(self.end)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class PriorityWeights(_CamelModel):
    urgent: PositiveInt = 4
    high: PositiveInt = 3
    medium: PositiveInt = 2
    low: PositiveInt = 1

    def weight_of(self, priority: Priority) -> int:
        return getattr(self, Priority(priority).value)


class ProcessingTargets(_CamelModel):
    """How many leads a project may promote per day."""
    target_leads_per_work_day: PositiveInt = 50
    max_daily_capacity: PositiveInt = 100
    override_daily_target: Optional[PositiveInt] = None
    # share of the work-day target allowed on an enabled weekend
    weekend_target_percentage: int = Field(100, ge=0, le=100)

    @model_validator(mode="after")
    def _check_capacity(self):
        if self.max_daily_capacity < self.target_leads_per_work_day:
            raise ValueError("max_daily_capacity must be at least target_leads_per_work_day")
        return self


class QueueSettings(_CamelModel):
    """
    Per-project queue configuration.

    Values are validated against their documented bounds and rejected, never
    clamped. Use `QueueSettings.load()` at trust boundaries to get a
    ConfigurationError instead of a pydantic ValidationError.
    """
    max_concurrent_processing: int = Field(5, ge=1)
    retry_attempts: int = Field(3, ge=0)
    retry_delay_minutes: int = Field(30, gt=0)
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    enable_weekends: bool = False
    weekend_ignores_working_hours: bool = False
    priority_weights: PriorityWeights = Field(default_factory=PriorityWeights)
    custom_holidays: List[date] = Field(default_factory=list)
    processing_targets: ProcessingTargets = Field(default_factory=ProcessingTargets)
    dispatch_timeout_seconds: int = Field(30, gt=0)
    processing_enabled: bool = True

    @model_validator(mode="after")
    def _check_weekend_flags(self):
        if self.weekend_ignores_working_hours and not self.enable_weekends:
            raise ValueError("weekend_ignores_working_hours requires enable_weekends")
        return self

    @classmethod
    def load(cls, data: Mapping[str, Any]) -> "QueueSettings":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid queue settings: {e}") from e

    @classmethod
    def from_record(cls, record) -> "QueueSettings":
        """Build settings from a QueueSettingsRecord row."""
        return cls.load({
            "max_concurrent_processing": record.max_concurrent_processing,
            "retry_attempts": record.retry_attempts,
            "retry_delay_minutes": record.retry_delay_minutes,
            "working_hours": {
                "start": record.working_hours_start,
                "end": record.working_hours_end,
                "timezone": record.timezone,
            },
            "enable_weekends": record.enable_weekends,
            "weekend_ignores_working_hours": record.weekend_ignores_working_hours,
            "priority_weights": record.priority_weights or {},
            "custom_holidays": record.custom_holidays or [],
            "processing_targets": record.processing_targets or {},
            "dispatch_timeout_seconds": record.dispatch_timeout_seconds,
            "processing_enabled": record.processing_enabled,
        })

    def to_record_values(self) -> dict:
        return {
            "max_concurrent_processing": self.max_concurrent_processing,
            "retry_attempts": self.retry_attempts,
            "retry_delay_minutes": self.retry_delay_minutes,
            "working_hours_start": self.working_hours.start,
            "working_hours_end": self.working_hours.end,
            "timezone": self.working_hours.timezone,
            "enable_weekends": self.enable_weekends,
            "weekend_ignores_working_hours": self.weekend_ignores_working_hours,
            "priority_weights": self.priority_weights.model_dump(),
            "custom_holidays": [d.isoformat() for d in self.custom_holidays],
            "processing_targets": self.processing_targets.model_dump(),
            "dispatch_timeout_seconds": self.dispatch_timeout_seconds,
            "processing_enabled": self.processing_enabled,
        }
