"""Notification preference and request schemas."""

from datetime import datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

from streakkeeper.config import settings
from streakkeeper.domain import NotificationCategory


class NotificationPreferences(BaseModel):
    """Per-user notification settings. Times are wall-clock in ``timezone``."""
    enable_daily_reminders: bool = True
    daily_reminder_time: time = time(9, 0)

    enable_at_risk_alerts: bool = True
    at_risk_threshold_hours: int = Field(default=24, ge=0)
    cooldown_hours: int = Field(default=settings.NOTIFICATION_COOLDOWN_HOURS, ge=0)

    enable_milestone_alerts: bool = True

    enable_weekly_summary: bool = True
    weekly_summary_day: int = Field(default=1, ge=0, le=6)  # 0 = Sunday ... 6 = Saturday
    weekly_summary_time: time = time(18, 0)

    quiet_hours_start: time | None = time(23, 0)
    quiet_hours_end: time | None = time(7, 0)

    timezone: str = "UTC"  # IANA name

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class NotificationRequestOut(BaseModel):
    user_id: str
    category: NotificationCategory
    title: str
    body: str
    trigger_at: datetime
    dedupe_key: str
    relationship_id: str | None = None
    repeats: str | None = None

    model_config = {"from_attributes": True}
