"""Streak calculator - pure state transitions, no I/O.

Every function takes the current state and returns a new one; inputs are
never mutated. All arithmetic is in UTC: "days since" means the difference of
UTC calendar dates, and due/grace deadlines are absolute instants.
"""

from __future__ import annotations

import math
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from streakkeeper.domain import (
    RelationshipStreak,
    StreakEventKind,
    StreakStatus,
    UserStreak,
)

GRACE_PERIOD_DAYS = 2

CONTACT_BASE_POINTS = {
    StreakEventKind.CONTACT_MESSAGE: 15,
    StreakEventKind.CONTACT_CALL: 20,
    StreakEventKind.CONTACT_MEETING: 30,
    StreakEventKind.CONTACT_OTHER: 10,
}

# (minimum current streak, bonus factor), checked in order
STREAK_POINT_BONUSES = [(10, 1.5), (5, 1.2)]

MULTIPLIER_STRIDE = 5
MULTIPLIER_STEP = 0.1

FIRST_LEVEL_COST = 100


def to_utc(moment: datetime) -> datetime:
    """Normalize to an aware UTC datetime; naive values are taken as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def utc_day(moment: datetime) -> date:
    return to_utc(moment).date()


def calendar_days_between(earlier: datetime, later: datetime) -> int:
    return (utc_day(later) - utc_day(earlier)).days


# ---------------------------------------------------------------------------
# Relationship streaks
# ---------------------------------------------------------------------------


def schedule_from(
    streak: RelationshipStreak,
    last_contact: datetime,
    grace_period_days: int = GRACE_PERIOD_DAYS,
) -> RelationshipStreak:
    """Recompute due date and grace deadline from a contact instant."""
    due = last_contact + timedelta(days=streak.contact_frequency_days)
    return replace(
        streak,
        last_contact_date=last_contact,
        next_contact_due_date=due,
        grace_period_ends=due + timedelta(days=grace_period_days),
    )


def _missed_deadline(
    streak: RelationshipStreak,
    now: datetime,
    gap: int,
    grace_period_days: int,
) -> bool:
    # a stored deadline may have been pushed back by a freeze or saver
    if streak.grace_period_ends is not None:
        return utc_day(now) > utc_day(streak.grace_period_ends)
    return gap > streak.contact_frequency_days + grace_period_days


def apply_contact(
    streak: RelationshipStreak,
    now: datetime,
    grace_period_days: int = GRACE_PERIOD_DAYS,
) -> RelationshipStreak:
    """Next state of a relationship streak after a contact at ``now``.

    - no previous contact, or a contact after the grace deadline: reset to 1
    - a gap of at least one calendar day: extend by one
    - same calendar day: count unchanged (the event still earns points)

    The grace deadline is the stored ``grace_period_ends`` when there is one,
    so an extension from a recovery item carries through to the next contact.
    An event older than the last recorded contact only earns points; it never
    moves the schedule backwards.
    """
    now = to_utc(now)
    current = streak.current_streak
    last = streak.last_contact_date

    if last is None:
        current = 1
    else:
        gap = calendar_days_between(last, now)
        if gap < 0:
            return replace(streak)
        if _missed_deadline(streak, now, gap, grace_period_days):
            current = 1
        elif gap >= 1:
            current += 1

    updated = replace(
        streak,
        current_streak=current,
        longest_streak=max(streak.longest_streak, current),
        status=StreakStatus.ACTIVE,
    )
    return schedule_from(updated, now, grace_period_days)


def apply_sweep(streak: RelationshipStreak, now: datetime) -> RelationshipStreak:
    """Daily status check. Idempotent for a fixed ``now``."""
    if streak.grace_period_ends is None or streak.next_contact_due_date is None:
        return replace(streak)

    now = to_utc(now)
    if now > to_utc(streak.grace_period_ends):
        return replace(streak, status=StreakStatus.BROKEN, current_streak=0)
    if now > to_utc(streak.next_contact_due_date):
        return replace(streak, status=StreakStatus.AT_RISK)
    return replace(streak, status=StreakStatus.ACTIVE)


def contact_points(kind: StreakEventKind, current_streak: int) -> int:
    """Points for a contact event, scaled by the streak held before it."""
    base = CONTACT_BASE_POINTS.get(kind, CONTACT_BASE_POINTS[StreakEventKind.CONTACT_OTHER])
    for minimum, factor in STREAK_POINT_BONUSES:
        if current_streak >= minimum:
            return _floor(base * factor)
    return base


# ---------------------------------------------------------------------------
# User streaks
# ---------------------------------------------------------------------------


def apply_user_activity(streak: UserStreak, now: datetime) -> UserStreak:
    """Next state of the user-level streak: at most one increment per UTC day."""
    now = to_utc(now)
    current = streak.current_streak_days
    multiplier = streak.multiplier
    last = streak.last_activity_date

    if last is None:
        current = 1
        multiplier = 1.0
    else:
        days = calendar_days_between(last, now)
        if days < 0:
            return replace(streak)
        if days > 1:
            current = 1
            multiplier = 1.0
        elif days == 1:
            current += 1
            if current % MULTIPLIER_STRIDE == 0:
                multiplier = round(multiplier + MULTIPLIER_STEP, 2)

    return replace(
        streak,
        current_streak_days=current,
        longest_streak_days=max(streak.longest_streak_days, current),
        multiplier=multiplier,
        last_activity_date=now,
    )


def activity_points(multiplier: float, base: int = 10) -> int:
    return _floor(base * multiplier)


# ---------------------------------------------------------------------------
# Levels
# ---------------------------------------------------------------------------


def next_level_cost(level: int) -> int:
    """Points needed to leave ``level``."""
    if level <= 1:
        return FIRST_LEVEL_COST
    return math.floor(100 * (1 + level * 0.5))


def level_for_points(total_points: int) -> tuple[int, int]:
    """Return ``(level, points_to_next_level)`` for a point total."""
    level = 1
    remaining = max(0, total_points)
    cost = next_level_cost(level)
    while remaining >= cost:
        remaining -= cost
        level += 1
        cost = next_level_cost(level)
    return level, cost - remaining


def with_points(streak: UserStreak, total_points: int) -> UserStreak:
    level, to_next = level_for_points(total_points)
    return replace(streak, total_points=total_points, level=level, points_to_next_level=to_next)


def hours_until(deadline: Optional[datetime], now: datetime) -> Optional[float]:
    if deadline is None:
        return None
    return (to_utc(deadline) - to_utc(now)).total_seconds() / 3600.0


def _floor(value: float) -> int:
    # 15 * 1.2 must come out as 18, not 17
    return math.floor(round(value, 6))
