"""Tests for notification timing, selection and deduplication."""

from datetime import datetime, time, timedelta, timezone

import pytest
from pydantic import ValidationError

from streakkeeper.domain import (
    NotificationCategory,
    NotificationRecord,
    RelationshipStreak,
    StreakMilestone,
    StreakStatus,
)
from streakkeeper.schemas.notification import NotificationPreferences
from streakkeeper.services import notification_scheduler as scheduler

from conftest import NOW

UTC = timezone.utc


def _at_risk(rel_id="rel-1", breaks_in_hours=10.0, status=StreakStatus.AT_RISK, current=6):
    grace_ends = NOW + timedelta(hours=breaks_in_hours)
    return RelationshipStreak(
        user_id="u1",
        relationship_id=rel_id,
        contact_frequency_days=7,
        current_streak=current,
        longest_streak=current,
        last_contact_date=grace_ends - timedelta(days=9),
        next_contact_due_date=grace_ends - timedelta(days=2),
        grace_period_ends=grace_ends,
        status=status,
    )


# ---------------------------------------------------------------------------
# Quiet hours
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "moment, quiet",
    [
        (datetime(2026, 3, 10, 23, 30, tzinfo=UTC), True),
        (datetime(2026, 3, 10, 2, 0, tzinfo=UTC), True),
        (datetime(2026, 3, 10, 6, 59, tzinfo=UTC), True),
        (datetime(2026, 3, 10, 7, 0, tzinfo=UTC), False),
        (datetime(2026, 3, 10, 12, 0, tzinfo=UTC), False),
    ],
)
def test_quiet_hours_wrap_midnight(moment, quiet):
    assert scheduler.is_in_quiet_hours(moment, NotificationPreferences()) is quiet


def test_quiet_hours_same_day_window():
    prefs = NotificationPreferences(quiet_hours_start=time(13, 0), quiet_hours_end=time(14, 0))
    assert scheduler.is_in_quiet_hours(datetime(2026, 3, 10, 13, 30, tzinfo=UTC), prefs)
    assert not scheduler.is_in_quiet_hours(datetime(2026, 3, 10, 23, 30, tzinfo=UTC), prefs)


def test_quiet_hours_disabled():
    prefs = NotificationPreferences(quiet_hours_start=None, quiet_hours_end=None)
    assert not scheduler.is_in_quiet_hours(datetime(2026, 3, 10, 2, 0, tzinfo=UTC), prefs)


def test_quiet_hours_use_user_timezone():
    prefs = NotificationPreferences(timezone="America/New_York")
    # 03:00 UTC is 23:00 the evening before in New York (EDT)
    moment = datetime(2026, 3, 10, 3, 0, tzinfo=UTC)
    assert scheduler.is_in_quiet_hours(moment, prefs)
    assert scheduler.defer_past_quiet_hours(moment, prefs) == datetime(2026, 3, 10, 11, 0, tzinfo=UTC)


def test_defer_leaves_daytime_alone():
    assert scheduler.defer_past_quiet_hours(NOW, NotificationPreferences()) == NOW


def test_defer_before_midnight_moves_to_next_morning():
    moment = datetime(2026, 3, 10, 23, 15, tzinfo=UTC)
    assert scheduler.defer_past_quiet_hours(moment, NotificationPreferences()) == datetime(
        2026, 3, 11, 7, 0, tzinfo=UTC
    )


def test_unknown_timezone_rejected():
    with pytest.raises(ValidationError):
        NotificationPreferences(timezone="Mars/Olympus_Mons")


# ---------------------------------------------------------------------------
# At-risk selection
# ---------------------------------------------------------------------------


def test_select_at_risk_within_threshold_soonest_first():
    streaks = [
        _at_risk("rel-1", breaks_in_hours=20),
        _at_risk("rel-2", breaks_in_hours=5),
        _at_risk("rel-3", breaks_in_hours=30),
        _at_risk("rel-4", breaks_in_hours=5, status=StreakStatus.ACTIVE),
        _at_risk("rel-5", breaks_in_hours=-1),
    ]
    selected = scheduler.select_at_risk(streaks, NotificationPreferences(), [], NOW)
    assert [s.relationship_id for s in selected] == ["rel-2", "rel-1"]


def test_select_at_risk_respects_cooldown_per_relationship():
    history = [
        NotificationRecord(
            category=NotificationCategory.AT_RISK,
            dedupe_key="at_risk:u1:rel-1:x",
            sent_at=NOW - timedelta(hours=3),
            relationship_id="rel-1",
        ),
        NotificationRecord(
            category=NotificationCategory.AT_RISK,
            dedupe_key="at_risk:u1:rel-2:x",
            sent_at=NOW - timedelta(hours=13),
            relationship_id="rel-2",
        ),
    ]
    selected = scheduler.select_at_risk(
        [_at_risk("rel-1"), _at_risk("rel-2")], NotificationPreferences(), history, NOW
    )
    assert [s.relationship_id for s in selected] == ["rel-2"]


def test_at_risk_request_text_and_key():
    request = scheduler.at_risk_request(_at_risk(current=6), "Alex", NotificationPreferences(), NOW)
    assert request.title == "Streak at Risk: Alex"
    assert request.body == "Your 6 day streak with Alex will break in 10 hours!"
    assert request.trigger_at == NOW
    assert request.dedupe_key == "at_risk:u1:rel-1:202603102200"


def test_at_risk_alert_not_deferred_past_the_break():
    late = datetime(2026, 3, 10, 23, 30, tzinfo=UTC)
    streak = _at_risk()
    streak.grace_period_ends = datetime(2026, 3, 11, 5, 0, tzinfo=UTC)
    request = scheduler.at_risk_request(streak, "Alex", NotificationPreferences(), late)
    assert request.trigger_at == late


def test_at_risk_alert_deferred_when_break_is_later():
    late = datetime(2026, 3, 10, 23, 30, tzinfo=UTC)
    streak = _at_risk()
    streak.grace_period_ends = datetime(2026, 3, 11, 15, 0, tzinfo=UTC)
    request = scheduler.at_risk_request(streak, "Alex", NotificationPreferences(), late)
    assert request.trigger_at == datetime(2026, 3, 11, 7, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Recurring reminders
# ---------------------------------------------------------------------------


def test_next_daily_reminder_is_tomorrow_when_time_passed():
    assert scheduler.next_daily_reminder(NotificationPreferences(), NOW) == datetime(2026, 3, 11, 9, 0, tzinfo=UTC)


def test_next_daily_reminder_later_today():
    prefs = NotificationPreferences(daily_reminder_time=time(20, 0))
    assert scheduler.next_daily_reminder(prefs, NOW) == datetime(2026, 3, 10, 20, 0, tzinfo=UTC)


def test_daily_reminder_disabled():
    prefs = NotificationPreferences(enable_daily_reminders=False)
    assert scheduler.next_daily_reminder(prefs, NOW) is None


def test_daily_reminder_inside_quiet_hours_is_deferred():
    prefs = NotificationPreferences(daily_reminder_time=time(6, 0))
    assert scheduler.next_daily_reminder(prefs, NOW) == datetime(2026, 3, 11, 7, 0, tzinfo=UTC)


def test_next_weekly_summary_defaults_to_monday_evening():
    # NOW is a Tuesday, so the next Monday is six days out
    assert scheduler.next_weekly_summary(NotificationPreferences(), NOW) == datetime(
        2026, 3, 16, 18, 0, tzinfo=UTC
    )


def test_weekly_summary_later_today():
    prefs = NotificationPreferences(weekly_summary_day=2)
    assert scheduler.next_weekly_summary(prefs, NOW) == datetime(2026, 3, 10, 18, 0, tzinfo=UTC)


def test_weekly_summary_sunday():
    prefs = NotificationPreferences(weekly_summary_day=0)
    assert scheduler.next_weekly_summary(prefs, NOW) == datetime(2026, 3, 15, 18, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Milestones and plans
# ---------------------------------------------------------------------------


def test_milestone_request_for_relationship():
    milestone = StreakMilestone(
        user_id="u1",
        relationship_id="rel-1",
        threshold_days=7,
        milestone_type="relationship_streak_7_days",
        reward_kind="points",
        reward_amount=100,
    )
    request = scheduler.milestone_request(milestone, NOW, "Alex")
    assert request.title == "7 Day Streak with Alex!"
    assert request.dedupe_key == "milestone:u1:rel-1:7"
    assert request.category == NotificationCategory.MILESTONE


def test_milestone_request_for_user_streak():
    milestone = StreakMilestone(
        user_id="u1",
        threshold_days=30,
        milestone_type="streak_30_days",
        reward_kind="streak_freeze",
        reward_amount=1,
    )
    request = scheduler.milestone_request(milestone, NOW)
    assert request.title == "30 Day Streak Milestone!"
    assert "StreakKeeper" in request.body
    assert request.dedupe_key == "milestone:u1:user:30"


def test_plan_contains_at_risk_daily_and_weekly():
    plan = scheduler.build_notification_plan(
        "u1", [_at_risk()], NotificationPreferences(), [], NOW, names={"rel-1": "Alex"}
    )
    categories = [r.category for r in plan]
    assert categories == [
        NotificationCategory.AT_RISK,
        NotificationCategory.DAILY,
        NotificationCategory.WEEKLY_SUMMARY,
    ]
    assert plan[0].title == "Streak at Risk: Alex"
    assert plan[1].repeats == "daily"


def test_plan_drops_requests_already_in_history():
    prefs = NotificationPreferences()
    first = scheduler.build_notification_plan("u1", [], prefs, [], NOW)
    history = [scheduler.to_record(r, NOW) for r in first]

    assert scheduler.build_notification_plan("u1", [], prefs, history, NOW) == []


def test_plan_respects_disabled_alerts():
    prefs = NotificationPreferences(
        enable_at_risk_alerts=False, enable_daily_reminders=False, enable_weekly_summary=False
    )
    assert scheduler.build_notification_plan("u1", [_at_risk()], prefs, [], NOW) == []
