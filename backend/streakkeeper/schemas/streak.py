"""Streak-related Pydantic schemas for the HTTP layer."""

from datetime import datetime

from pydantic import BaseModel, Field

from streakkeeper.domain import RecoveryItemKind, RewardKind, StreakEventKind, StreakStatus
from streakkeeper.schemas.notification import NotificationPreferences, NotificationRequestOut


# --- requests ---------------------------------------------------------------

class ActivityCreate(BaseModel):
    kind: StreakEventKind = StreakEventKind.APP_LOGIN
    occurred_at: datetime | None = None  # defaults to now
    event_id: str | None = Field(default=None, max_length=64)


class ContactCreate(BaseModel):
    kind: str = "message"  # message | call | meeting | other
    occurred_at: datetime | None = None
    event_id: str | None = Field(default=None, max_length=64)


class FrequencyUpdate(BaseModel):
    days: int


class AtTime(BaseModel):
    now: datetime | None = None


class RecoveryItemUse(BaseModel):
    relationship_id: str
    now: datetime | None = None


class NotificationPlanRequest(BaseModel):
    preferences: NotificationPreferences | None = None
    now: datetime | None = None


# --- responses --------------------------------------------------------------

class UserStreakOut(BaseModel):
    user_id: str
    current_streak_days: int
    longest_streak_days: int
    multiplier: float
    total_points: int
    level: int
    points_to_next_level: int
    last_activity_date: datetime | None

    model_config = {"from_attributes": True}


class RelationshipStreakOut(BaseModel):
    relationship_id: str
    contact_frequency_days: int
    current_streak: int
    longest_streak: int
    last_contact_date: datetime | None
    next_contact_due_date: datetime | None
    grace_period_ends: datetime | None
    status: StreakStatus

    model_config = {"from_attributes": True}


class StreakEventOut(BaseModel):
    event_id: str
    user_id: str
    kind: StreakEventKind
    occurred_at: datetime
    relationship_id: str | None
    points_earned: int

    model_config = {"from_attributes": True}


class MilestoneOut(BaseModel):
    id: int | None
    relationship_id: str | None
    threshold_days: int
    milestone_type: str
    reward_kind: str
    reward_amount: int
    claimed: bool
    achieved_at: datetime | None

    model_config = {"from_attributes": True}


class RewardOut(BaseModel):
    id: int | None
    kind: RewardKind
    value: str
    amount: int
    awarded_at: datetime | None
    redeemed: bool
    redeemed_at: datetime | None

    model_config = {"from_attributes": True}


class RecoveryItemOut(BaseModel):
    id: int | None
    kind: RecoveryItemKind
    quantity: int
    premium_only: bool
    expires_at: datetime | None

    model_config = {"from_attributes": True}


class StreakOutcomeOut(BaseModel):
    user_streak: UserStreakOut | None
    relationship_streak: RelationshipStreakOut | None
    event: StreakEventOut | None
    confirmed: bool
    queued: bool
    duplicate: bool
    milestones: list[MilestoneOut]
    notifications: list[NotificationRequestOut]

    model_config = {"from_attributes": True}


class UserStreakSnapshotOut(BaseModel):
    user_streak: UserStreakOut | None
    confirmed: bool

    model_config = {"from_attributes": True}


class RelationshipListOut(BaseModel):
    relationship_streaks: list[RelationshipStreakOut]
    confirmed: bool

    model_config = {"from_attributes": True}


class SweepOut(BaseModel):
    streaks: list[RelationshipStreakOut]
    changed: list[str]
    confirmed: bool

    model_config = {"from_attributes": True}


class StreakStatsOut(BaseModel):
    active_streaks: int
    at_risk_streaks: int
    broken_streaks: int
    average_streak_length: float
    longest_current_streak: int

    model_config = {"from_attributes": True}


class SuggestedContactOut(BaseModel):
    relationship_id: str
    last_contact_date: datetime | None
    next_contact_due_date: datetime | None
    priority: str

    model_config = {"from_attributes": True}


class ClaimOut(BaseModel):
    milestone: MilestoneOut
    reward: RewardOut | None
    already_claimed: bool

    model_config = {"from_attributes": True}


class RecoveryOut(BaseModel):
    item: RecoveryItemOut
    relationship_streak: RelationshipStreakOut

    model_config = {"from_attributes": True}


class SyncFailureOut(BaseModel):
    event_id: str
    kind: StreakEventKind
    occurred_at: datetime
    relationship_id: str | None
    attempts: int
    reason: str
    failed_at: datetime

    model_config = {"from_attributes": True}


class SyncOut(BaseModel):
    applied: int
    duplicates: int
    failures: list[SyncFailureOut]
    remaining: int
    notifications: list[NotificationRequestOut]

    model_config = {"from_attributes": True}
