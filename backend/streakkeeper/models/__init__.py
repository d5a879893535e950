"""Database models package."""

from streakkeeper.models.streak import UserStreakRecord, RelationshipStreakRecord, StreakEventRecord
from streakkeeper.models.reward import StreakMilestoneRecord, UserRewardRecord, RecoveryItemRecord

__all__ = [
    "UserStreakRecord",
    "RelationshipStreakRecord",
    "StreakEventRecord",
    "StreakMilestoneRecord",
    "UserRewardRecord",
    "RecoveryItemRecord",
]
