"""Notification scheduler - decides what to notify about and when.

Pure functions over streak state, preferences and the notification history.
Nothing here delivers anything; callers pass the resulting
``NotificationRequest`` objects to a ``NotificationDelivery``.
"""

from __future__ import annotations

from datetime import datetime, time, timedelta
from typing import Iterable, Mapping, Optional

from streakkeeper.core.calculator import hours_until, to_utc
from streakkeeper.domain import (
    NotificationCategory,
    NotificationRecord,
    NotificationRequest,
    RelationshipStreak,
    StreakMilestone,
    StreakStats,
    StreakStatus,
    SyncFailure,
)
from streakkeeper.schemas.notification import NotificationPreferences

APP_NAME = "StreakKeeper"


def hours_until_break(streak: RelationshipStreak, now: datetime) -> Optional[float]:
    return hours_until(streak.grace_period_ends, now)


def _in_window(clock: time, start: time, end: time) -> bool:
    if start > end:  # wraps midnight, e.g. 23:00-07:00
        return clock >= start or clock < end
    return start <= clock < end


def is_in_quiet_hours(moment: datetime, prefs: NotificationPreferences) -> bool:
    if prefs.quiet_hours_start is None or prefs.quiet_hours_end is None:
        return False
    if prefs.quiet_hours_start == prefs.quiet_hours_end:
        return False
    local = to_utc(moment).astimezone(prefs.tz)
    return _in_window(local.time().replace(tzinfo=None), prefs.quiet_hours_start, prefs.quiet_hours_end)


def defer_past_quiet_hours(moment: datetime, prefs: NotificationPreferences) -> datetime:
    """Move ``moment`` to the end of the quiet window it falls in (UTC result)."""
    moment = to_utc(moment)
    if not is_in_quiet_hours(moment, prefs):
        return moment
    local = moment.astimezone(prefs.tz)
    end = datetime.combine(local.date(), prefs.quiet_hours_end, tzinfo=prefs.tz)
    if end <= local:
        end = datetime.combine(local.date() + timedelta(days=1), prefs.quiet_hours_end, tzinfo=prefs.tz)
    return to_utc(end)


def has_recent_notification(
    history: Iterable[NotificationRecord],
    category: NotificationCategory,
    now: datetime,
    cooldown_hours: int,
    relationship_id: Optional[str] = None,
) -> bool:
    cutoff = to_utc(now) - timedelta(hours=cooldown_hours)
    for record in history:
        if record.category != category or record.relationship_id != relationship_id:
            continue
        if to_utc(record.sent_at) > cutoff:
            return True
    return False


def select_at_risk(
    streaks: Iterable[RelationshipStreak],
    prefs: NotificationPreferences,
    history: Iterable[NotificationRecord],
    now: datetime,
) -> list[RelationshipStreak]:
    """At-risk streaks that break within the threshold and were not alerted
    about within the cooldown window. Soonest to break first."""
    history = list(history)
    selected = []
    for streak in streaks:
        if streak.status != StreakStatus.AT_RISK:
            continue
        hours = hours_until_break(streak, now)
        if hours is None or hours <= 0 or hours > prefs.at_risk_threshold_hours:
            continue
        if has_recent_notification(
            history, NotificationCategory.AT_RISK, now, prefs.cooldown_hours, streak.relationship_id
        ):
            continue
        selected.append(streak)
    return sorted(selected, key=lambda s: to_utc(s.grace_period_ends))


def _next_local(now: datetime, prefs: NotificationPreferences, at: time, weekday: Optional[int] = None) -> datetime:
    local_now = to_utc(now).astimezone(prefs.tz)
    days_ahead = 0
    if weekday is not None:
        today = (local_now.weekday() + 1) % 7  # Sunday = 0
        days_ahead = (weekday - today) % 7
    candidate = datetime.combine(local_now.date() + timedelta(days=days_ahead), at, tzinfo=prefs.tz)
    if candidate <= local_now:
        candidate += timedelta(days=7 if weekday is not None else 1)
    return defer_past_quiet_hours(to_utc(candidate), prefs)


def next_daily_reminder(prefs: NotificationPreferences, now: datetime) -> Optional[datetime]:
    """Next daily reminder strictly after ``now``, or None when disabled."""
    if not prefs.enable_daily_reminders:
        return None
    return _next_local(now, prefs, prefs.daily_reminder_time)


def next_weekly_summary(prefs: NotificationPreferences, now: datetime) -> Optional[datetime]:
    if not prefs.enable_weekly_summary:
        return None
    return _next_local(now, prefs, prefs.weekly_summary_time, weekday=prefs.weekly_summary_day)


# ---------------------------------------------------------------------------
# Request builders
# ---------------------------------------------------------------------------


def at_risk_request(
    streak: RelationshipStreak, name: str, prefs: NotificationPreferences, now: datetime
) -> NotificationRequest:
    hours = hours_until_break(streak, now) or 0.0
    trigger = defer_past_quiet_hours(now, prefs)
    if streak.grace_period_ends is not None and trigger >= to_utc(streak.grace_period_ends):
        trigger = to_utc(now)
    deadline = to_utc(streak.grace_period_ends).strftime("%Y%m%d%H%M") if streak.grace_period_ends else "none"
    return NotificationRequest(
        user_id=streak.user_id,
        category=NotificationCategory.AT_RISK,
        title=f"Streak at Risk: {name}",
        body=f"Your {streak.current_streak} day streak with {name} will break in {round(hours)} hours!",
        trigger_at=trigger,
        dedupe_key=f"at_risk:{streak.user_id}:{streak.relationship_id}:{deadline}",
        relationship_id=streak.relationship_id,
    )


def milestone_request(
    milestone: StreakMilestone,
    now: datetime,
    name: Optional[str] = None,
    prefs: Optional[NotificationPreferences] = None,
) -> NotificationRequest:
    days = milestone.threshold_days
    if milestone.relationship_id is None:
        title = f"{days} Day Streak Milestone!"
        body = f"Amazing! You've maintained your {APP_NAME} streak for {days} days."
    else:
        name = name or milestone.relationship_id
        title = f"{days} Day Streak with {name}!"
        body = f"You've maintained consistent contact with {name} for {days} days."
    trigger = defer_past_quiet_hours(now, prefs) if prefs else to_utc(now)
    scope = milestone.relationship_id or "user"
    return NotificationRequest(
        user_id=milestone.user_id,
        category=NotificationCategory.MILESTONE,
        title=title,
        body=body,
        trigger_at=trigger,
        dedupe_key=f"milestone:{milestone.user_id}:{scope}:{days}",
        relationship_id=milestone.relationship_id,
    )


def sync_failure_request(failure: SyncFailure, now: datetime) -> NotificationRequest:
    return NotificationRequest(
        user_id=failure.user_id,
        category=NotificationCategory.SYNC_FAILURE,
        title="Some activity could not be synced",
        body=(
            f"We couldn't save your {failure.kind.value.replace('_', ' ')} from "
            f"{to_utc(failure.occurred_at):%b %d}. Please log it again."
        ),
        trigger_at=to_utc(now),
        dedupe_key=f"sync_failure:{failure.user_id}:{failure.event_id}",
        relationship_id=failure.relationship_id,
    )


def daily_request(user_id: str, trigger_at: datetime) -> NotificationRequest:
    return NotificationRequest(
        user_id=user_id,
        category=NotificationCategory.DAILY,
        title=f"Maintain Your {APP_NAME} Streak!",
        body="Don't forget to check in today to keep your connection streak going.",
        trigger_at=trigger_at,
        dedupe_key=f"daily:{user_id}:{trigger_at:%Y%m%d}",
        repeats="daily",
    )


def weekly_request(user_id: str, trigger_at: datetime, stats: Optional[StreakStats] = None) -> NotificationRequest:
    body = "See how your relationship streaks are doing and who needs your attention this week."
    if stats is not None and (stats.active_streaks or stats.at_risk_streaks):
        body = (
            f"{stats.active_streaks} active and {stats.at_risk_streaks} at-risk streaks. "
            "See who needs your attention this week."
        )
    return NotificationRequest(
        user_id=user_id,
        category=NotificationCategory.WEEKLY_SUMMARY,
        title=f"Your Weekly {APP_NAME} Summary",
        body=body,
        trigger_at=trigger_at,
        dedupe_key=f"weekly:{user_id}:{trigger_at:%Y%m%d}",
        repeats="weekly",
    )


def build_notification_plan(
    user_id: str,
    streaks: Iterable[RelationshipStreak],
    prefs: NotificationPreferences,
    history: Iterable[NotificationRecord],
    now: datetime,
    *,
    names: Optional[Mapping[str, str]] = None,
    stats: Optional[StreakStats] = None,
) -> list[NotificationRequest]:
    """Everything that should be scheduled for ``user_id`` as of ``now``.

    Requests whose ``dedupe_key`` already appears in the history are dropped.
    """
    history = list(history)
    names = names or {}
    seen = {record.dedupe_key for record in history}
    plan: list[NotificationRequest] = []

    if prefs.enable_at_risk_alerts:
        for streak in select_at_risk(streaks, prefs, history, now):
            name = names.get(streak.relationship_id) or streak.relationship_id
            plan.append(at_risk_request(streak, name, prefs, now))

    daily_at = next_daily_reminder(prefs, now)
    if daily_at is not None:
        plan.append(daily_request(user_id, daily_at))

    weekly_at = next_weekly_summary(prefs, now)
    if weekly_at is not None:
        plan.append(weekly_request(user_id, weekly_at, stats))

    return [request for request in plan if request.dedupe_key not in seen]


def to_record(request: NotificationRequest, sent_at: datetime) -> NotificationRecord:
    return NotificationRecord(
        category=request.category,
        dedupe_key=request.dedupe_key,
        sent_at=to_utc(sent_at),
        relationship_id=request.relationship_id,
    )
