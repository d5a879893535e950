"""Translation between storage shapes and the domain model.

ORM rows (``streakkeeper.models``) and the JSON documents kept in the local
cache are only ever turned into domain dataclasses here, and back.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

from streakkeeper.domain import (
    NotificationCategory,
    NotificationRecord,
    RecoveryItemKind,
    RelationshipStreak,
    RewardKind,
    StreakEvent,
    StreakEventKind,
    StreakMilestone,
    StreakRecoveryItem,
    StreakStatus,
    SyncFailure,
    UserReward,
    UserStreak,
)
from streakkeeper.models import (
    RecoveryItemRecord,
    RelationshipStreakRecord,
    StreakEventRecord,
    StreakMilestoneRecord,
    UserRewardRecord,
    UserStreakRecord,
)
from streakkeeper.models.reward import USER_SCOPE


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # Some drivers (sqlite) hand back naive datetimes for timezone-aware columns
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = _utc(value)
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return _utc(datetime.fromisoformat(value)) if value else None


def scope_key(relationship_id: Optional[str]) -> str:
    return relationship_id if relationship_id is not None else USER_SCOPE


# ---------------------------------------------------------------------------
# ORM rows -> domain
# ---------------------------------------------------------------------------


def user_streak_from_row(row: UserStreakRecord) -> UserStreak:
    return UserStreak(
        user_id=row.user_id,
        current_streak_days=row.current_streak_days,
        longest_streak_days=row.longest_streak_days,
        multiplier=row.current_multiplier,
        total_points=row.total_points,
        level=row.level,
        points_to_next_level=row.points_to_next_level,
        last_activity_date=_utc(row.last_activity_date),
        version=row.version,
    )


def relationship_streak_from_row(row: RelationshipStreakRecord) -> RelationshipStreak:
    return RelationshipStreak(
        user_id=row.user_id,
        relationship_id=row.relationship_id,
        contact_frequency_days=row.contact_frequency_days,
        current_streak=row.current_streak,
        longest_streak=row.longest_streak,
        last_contact_date=_utc(row.last_contact_date),
        next_contact_due_date=_utc(row.next_contact_due_date),
        grace_period_ends=_utc(row.grace_period_ends),
        status=StreakStatus(row.streak_status),
        version=row.version,
    )


def event_from_row(row: StreakEventRecord) -> StreakEvent:
    return StreakEvent(
        event_id=row.event_id,
        user_id=row.user_id,
        kind=StreakEventKind(row.event_type),
        occurred_at=_utc(row.event_date),
        relationship_id=row.relationship_id,
        points_earned=row.points_earned,
    )


def milestone_from_row(row: StreakMilestoneRecord) -> StreakMilestone:
    return StreakMilestone(
        id=row.id,
        user_id=row.user_id,
        relationship_id=row.relationship_id,
        threshold_days=row.streak_days,
        milestone_type=row.milestone_type,
        reward_kind=row.reward_type,
        reward_amount=row.reward_amount,
        claimed=row.is_claimed,
        achieved_at=_utc(row.achieved_at),
    )


def reward_from_row(row: UserRewardRecord) -> UserReward:
    return UserReward(
        id=row.id,
        user_id=row.user_id,
        kind=RewardKind(row.reward_type),
        value=row.reward_value,
        amount=row.amount,
        awarded_at=_utc(row.awarded_at),
        redeemed=row.is_redeemed,
        redeemed_at=_utc(row.redeemed_at),
    )


def recovery_item_from_row(row: RecoveryItemRecord) -> StreakRecoveryItem:
    return StreakRecoveryItem(
        id=row.id,
        user_id=row.user_id,
        kind=RecoveryItemKind(row.item_type),
        quantity=row.quantity,
        premium_only=row.is_premium,
        expires_at=_utc(row.expires_at),
    )


# ---------------------------------------------------------------------------
# domain -> ORM column values
# ---------------------------------------------------------------------------


def user_streak_values(streak: UserStreak) -> dict[str, Any]:
    """Columns owned by the streak rule. Points and level move only through
    the atomic increment."""
    return {
        "current_streak_days": streak.current_streak_days,
        "longest_streak_days": streak.longest_streak_days,
        "current_multiplier": streak.multiplier,
        "last_activity_date": _utc(streak.last_activity_date),
    }


def relationship_streak_values(streak: RelationshipStreak) -> dict[str, Any]:
    return {
        "contact_frequency_days": streak.contact_frequency_days,
        "current_streak": streak.current_streak,
        "longest_streak": streak.longest_streak,
        "last_contact_date": _utc(streak.last_contact_date),
        "next_contact_due_date": _utc(streak.next_contact_due_date),
        "grace_period_ends": _utc(streak.grace_period_ends),
        "streak_status": streak.status.value,
    }


def event_to_row(event: StreakEvent) -> StreakEventRecord:
    return StreakEventRecord(
        event_id=event.event_id,
        user_id=event.user_id,
        relationship_id=event.relationship_id,
        event_type=event.kind.value,
        event_date=_utc(event.occurred_at),
        points_earned=event.points_earned,
    )


def milestone_to_row(milestone: StreakMilestone) -> StreakMilestoneRecord:
    row = StreakMilestoneRecord(
        user_id=milestone.user_id,
        relationship_id=milestone.relationship_id,
        scope_key=scope_key(milestone.relationship_id),
        milestone_type=milestone.milestone_type,
        streak_days=milestone.threshold_days,
        reward_type=milestone.reward_kind,
        reward_amount=milestone.reward_amount,
        is_claimed=milestone.claimed,
    )
    if milestone.achieved_at is not None:
        row.achieved_at = _utc(milestone.achieved_at)
    return row


def reward_to_row(reward: UserReward) -> UserRewardRecord:
    row = UserRewardRecord(
        user_id=reward.user_id,
        reward_type=reward.kind.value,
        reward_value=reward.value,
        amount=reward.amount,
        is_redeemed=reward.redeemed,
        redeemed_at=_utc(reward.redeemed_at),
    )
    if reward.awarded_at is not None:
        row.awarded_at = _utc(reward.awarded_at)
    return row


# ---------------------------------------------------------------------------
# Local cache documents (JSON strings)
# ---------------------------------------------------------------------------


def user_streak_to_doc(streak: UserStreak) -> str:
    return json.dumps({
        "user_id": streak.user_id,
        "current_streak_days": streak.current_streak_days,
        "longest_streak_days": streak.longest_streak_days,
        "multiplier": streak.multiplier,
        "total_points": streak.total_points,
        "level": streak.level,
        "points_to_next_level": streak.points_to_next_level,
        "last_activity_date": _iso(streak.last_activity_date),
        "version": streak.version,
    })


def user_streak_from_doc(doc: str) -> UserStreak:
    data = json.loads(doc)
    data["last_activity_date"] = _parse(data.get("last_activity_date"))
    return UserStreak(**data)


def relationship_streak_to_doc(streak: RelationshipStreak) -> str:
    return json.dumps({
        "user_id": streak.user_id,
        "relationship_id": streak.relationship_id,
        "contact_frequency_days": streak.contact_frequency_days,
        "current_streak": streak.current_streak,
        "longest_streak": streak.longest_streak,
        "last_contact_date": _iso(streak.last_contact_date),
        "next_contact_due_date": _iso(streak.next_contact_due_date),
        "grace_period_ends": _iso(streak.grace_period_ends),
        "status": streak.status.value,
        "version": streak.version,
    })


def relationship_streak_from_doc(doc: str) -> RelationshipStreak:
    data = json.loads(doc)
    for key in ("last_contact_date", "next_contact_due_date", "grace_period_ends"):
        data[key] = _parse(data.get(key))
    data["status"] = StreakStatus(data["status"])
    return RelationshipStreak(**data)


def event_to_doc(event: StreakEvent) -> str:
    return json.dumps({
        "event_id": event.event_id,
        "user_id": event.user_id,
        "kind": event.kind.value,
        "occurred_at": _iso(event.occurred_at),
        "relationship_id": event.relationship_id,
        "points_earned": event.points_earned,
    })


def event_from_doc(doc: str) -> StreakEvent:
    data = json.loads(doc)
    return StreakEvent(
        event_id=data["event_id"],
        user_id=data["user_id"],
        kind=StreakEventKind(data["kind"]),
        occurred_at=_parse(data["occurred_at"]),
        relationship_id=data.get("relationship_id"),
        points_earned=data.get("points_earned", 0),
    )


def sync_failure_to_doc(failure: SyncFailure) -> str:
    return json.dumps({
        "event_id": failure.event_id,
        "user_id": failure.user_id,
        "kind": failure.kind.value,
        "occurred_at": _iso(failure.occurred_at),
        "attempts": failure.attempts,
        "reason": failure.reason,
        "failed_at": _iso(failure.failed_at),
        "relationship_id": failure.relationship_id,
    })


def sync_failure_from_doc(doc: str) -> SyncFailure:
    data = json.loads(doc)
    return SyncFailure(
        event_id=data["event_id"],
        user_id=data["user_id"],
        kind=StreakEventKind(data["kind"]),
        occurred_at=_parse(data["occurred_at"]),
        attempts=data["attempts"],
        reason=data["reason"],
        failed_at=_parse(data["failed_at"]),
        relationship_id=data.get("relationship_id"),
    )


def notification_record_to_doc(record: NotificationRecord) -> str:
    return json.dumps({
        "category": record.category.value,
        "dedupe_key": record.dedupe_key,
        "sent_at": _iso(record.sent_at),
        "relationship_id": record.relationship_id,
    })


def notification_record_from_doc(doc: str) -> NotificationRecord:
    data = json.loads(doc)
    return NotificationRecord(
        category=NotificationCategory(data["category"]),
        dedupe_key=data["dedupe_key"],
        sent_at=_parse(data["sent_at"]),
        relationship_id=data.get("relationship_id"),
    )
