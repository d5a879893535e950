"""Domain model for the streak engine.

Plain dataclasses, UTC only, with no storage concerns. Rows and cache
documents are translated to and from these in ``storage/mapping.py``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class StreakStatus(str, Enum):
    ACTIVE = "active"
    AT_RISK = "at_risk"
    BROKEN = "broken"


class StreakEventKind(str, Enum):
    APP_LOGIN = "app_login"
    APP_ACTION = "app_action"
    CONTACT_MESSAGE = "contact_message"
    CONTACT_CALL = "contact_call"
    CONTACT_MEETING = "contact_meeting"
    CONTACT_OTHER = "contact_other"

    @property
    def is_contact(self) -> bool:
        return self.value.startswith("contact_")

    @classmethod
    def contact(cls, name: str) -> "StreakEventKind":
        """Resolve ``message``/``call``/``meeting``/``other`` (or a full kind value)."""
        value = name if name.startswith("contact_") else f"contact_{name}"
        return cls(value)


class RewardKind(str, Enum):
    POINTS = "points"
    FEATURE = "feature"
    BADGE = "badge"


class RecoveryItemKind(str, Enum):
    FREEZE = "streak_freeze"
    SAVER = "streak_saver"


class NotificationCategory(str, Enum):
    DAILY = "streak_daily"
    AT_RISK = "streak_at_risk"
    MILESTONE = "streak_milestone"
    WEEKLY_SUMMARY = "streak_weekly_summary"
    SYNC_FAILURE = "sync_failure"


@dataclass
class UserStreak:
    user_id: str
    current_streak_days: int = 0
    longest_streak_days: int = 0
    multiplier: float = 1.0
    total_points: int = 0
    level: int = 1
    points_to_next_level: int = 100
    last_activity_date: Optional[datetime] = None
    version: int = 0


@dataclass
class RelationshipStreak:
    user_id: str
    relationship_id: str
    contact_frequency_days: int
    current_streak: int = 0
    longest_streak: int = 0
    last_contact_date: Optional[datetime] = None
    next_contact_due_date: Optional[datetime] = None
    grace_period_ends: Optional[datetime] = None
    status: StreakStatus = StreakStatus.ACTIVE
    version: int = 0


@dataclass(frozen=True)
class StreakEvent:
    """Immutable fact; append-only."""

    event_id: str
    user_id: str
    kind: StreakEventKind
    occurred_at: datetime
    relationship_id: Optional[str] = None
    points_earned: int = 0


@dataclass
class StreakMilestone:
    user_id: str
    threshold_days: int
    milestone_type: str
    reward_kind: str
    reward_amount: int
    relationship_id: Optional[str] = None
    claimed: bool = False
    achieved_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class UserReward:
    user_id: str
    kind: RewardKind
    value: str
    amount: int = 1
    awarded_at: Optional[datetime] = None
    redeemed: bool = False
    redeemed_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class StreakRecoveryItem:
    user_id: str
    kind: RecoveryItemKind
    quantity: int = 0
    premium_only: bool = False
    expires_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class NotificationRequest:
    """What to show and when; delivery is somebody else's job."""

    user_id: str
    category: NotificationCategory
    title: str
    body: str
    trigger_at: datetime
    dedupe_key: str
    relationship_id: Optional[str] = None
    repeats: Optional[str] = None  # "daily" | "weekly"


@dataclass
class NotificationRecord:
    category: NotificationCategory
    dedupe_key: str
    sent_at: datetime
    relationship_id: Optional[str] = None


@dataclass
class SyncFailure:
    event_id: str
    user_id: str
    kind: StreakEventKind
    occurred_at: datetime
    attempts: int
    reason: str
    failed_at: datetime
    relationship_id: Optional[str] = None


@dataclass
class StreakOutcome:
    """Result of an engine operation.

    ``confirmed`` is False when the state is a locally computed projection that
    still waits in the offline queue; the UI may show it, but it is replaced by
    the authoritative state once the queue has been synced.
    """

    user_streak: Optional[UserStreak] = None
    relationship_streak: Optional[RelationshipStreak] = None
    event: Optional[StreakEvent] = None
    confirmed: bool = True
    queued: bool = False
    duplicate: bool = False
    milestones: list[StreakMilestone] = field(default_factory=list)
    notifications: list[NotificationRequest] = field(default_factory=list)


@dataclass
class StreakStats:
    active_streaks: int = 0
    at_risk_streaks: int = 0
    broken_streaks: int = 0
    average_streak_length: float = 0.0
    longest_current_streak: int = 0


@dataclass
class SuggestedContact:
    relationship_id: str
    last_contact_date: Optional[datetime]
    next_contact_due_date: Optional[datetime]
    priority: str  # "high" | "medium" | "low"


@dataclass
class StreakSnapshot:
    """Streak state for reads; ``confirmed`` is False when served from the local cache."""

    user_streak: Optional[UserStreak] = None
    relationship_streaks: list[RelationshipStreak] = field(default_factory=list)
    confirmed: bool = True


@dataclass
class SweepResult:
    streaks: list[RelationshipStreak] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)  # relationship ids whose state moved
    confirmed: bool = True


@dataclass
class SyncReport:
    applied: int = 0
    duplicates: int = 0
    failures: list[SyncFailure] = field(default_factory=list)
    remaining: int = 0
    notifications: list[NotificationRequest] = field(default_factory=list)
