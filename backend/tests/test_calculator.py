"""Tests for the streak calculator - pure transitions, points and levels."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from streakkeeper.core import calculator
from streakkeeper.domain import RelationshipStreak, StreakEventKind, StreakStatus, UserStreak

from conftest import NOW, days_ago


def _relationship(last_contact=None, current=0, longest=None, frequency=7, status=StreakStatus.ACTIVE):
    streak = RelationshipStreak(
        user_id="u1",
        relationship_id="rel-1",
        contact_frequency_days=frequency,
        current_streak=current,
        longest_streak=current if longest is None else longest,
        status=status,
    )
    if last_contact is not None:
        streak = calculator.schedule_from(streak, last_contact)
    return streak


# ---------------------------------------------------------------------------
# Relationship contact rule
# ---------------------------------------------------------------------------


def test_first_contact_starts_streak_and_schedule():
    streak = calculator.apply_contact(_relationship(), NOW)

    assert streak.current_streak == 1
    assert streak.longest_streak == 1
    assert streak.status == StreakStatus.ACTIVE
    assert streak.last_contact_date == NOW
    assert streak.next_contact_due_date == NOW + timedelta(days=7)
    assert streak.grace_period_ends == NOW + timedelta(days=9)


def test_contact_next_day_extends_streak():
    streak = calculator.apply_contact(_relationship(days_ago(1), current=4), NOW)
    assert streak.current_streak == 5
    assert streak.longest_streak == 5


def test_same_day_contact_keeps_count_but_reschedules():
    earlier = NOW - timedelta(hours=3)
    streak = calculator.apply_contact(_relationship(earlier, current=4), NOW)

    assert streak.current_streak == 4
    assert streak.last_contact_date == NOW
    assert streak.next_contact_due_date == NOW + timedelta(days=7)


@pytest.mark.parametrize("prior", [1, 6, 12, 400])
def test_contact_after_grace_resets_to_one(prior):
    """A gap longer than frequency + grace resets regardless of the prior length."""
    streak = calculator.apply_contact(_relationship(days_ago(10), current=prior), NOW)
    assert streak.current_streak == 1
    assert streak.longest_streak == prior
    assert streak.status == StreakStatus.ACTIVE


def test_contact_on_last_grace_day_still_counts():
    streak = calculator.apply_contact(_relationship(days_ago(9), current=3), NOW)
    assert streak.current_streak == 4


def test_contact_revives_at_risk_streak():
    streak = calculator.apply_contact(_relationship(days_ago(8), current=3, status=StreakStatus.AT_RISK), NOW)
    assert streak.status == StreakStatus.ACTIVE
    assert streak.current_streak == 4


def test_extended_grace_deadline_keeps_streak_alive():
    """A deadline pushed back by a recovery item outlives frequency + grace."""
    streak = _relationship(days_ago(11), current=12, status=StreakStatus.AT_RISK)
    extended = replace(streak, grace_period_ends=streak.grace_period_ends + timedelta(days=7))

    assert calculator.apply_contact(streak, NOW).current_streak == 1
    assert calculator.apply_contact(extended, NOW).current_streak == 13


def test_contact_older_than_last_contact_changes_nothing():
    current = _relationship(NOW, current=3)
    assert calculator.apply_contact(current, days_ago(2)) == current


def test_apply_contact_does_not_mutate_input():
    original = _relationship(days_ago(1), current=2)
    snapshot = replace(original)
    calculator.apply_contact(original, NOW)
    assert original == snapshot


def test_day_boundary_uses_utc_calendar_days():
    late = datetime(2026, 3, 9, 23, 50, tzinfo=timezone.utc)
    early = datetime(2026, 3, 10, 0, 10, tzinfo=timezone.utc)
    streak = calculator.apply_contact(_relationship(late, current=2), early)
    assert streak.current_streak == 3


def test_non_utc_input_is_normalised():
    # 20:00 in UTC-5 on 9 March is 01:00 UTC on 10 March
    eastern = timezone(timedelta(hours=-5))
    local = datetime(2026, 3, 9, 20, 0, tzinfo=eastern)
    streak = calculator.apply_contact(_relationship(datetime(2026, 3, 9, 12, tzinfo=timezone.utc), current=1), local)

    assert streak.current_streak == 2
    assert streak.last_contact_date.tzinfo == timezone.utc


def test_longest_never_below_current():
    streak = _relationship()
    moment = NOW
    for gap in [0, 1, 1, 3, 12, 1, 0, 9, 10, 1, 2]:
        moment = moment + timedelta(days=gap)
        streak = calculator.apply_contact(streak, moment)
        assert streak.longest_streak >= streak.current_streak
        streak = calculator.apply_sweep(streak, moment + timedelta(days=8))
        assert streak.longest_streak >= streak.current_streak


# ---------------------------------------------------------------------------
# Daily sweep
# ---------------------------------------------------------------------------


def test_sweep_breaks_streak_past_grace():
    streak = calculator.apply_sweep(_relationship(days_ago(10), current=5), NOW)
    assert streak.status == StreakStatus.BROKEN
    assert streak.current_streak == 0
    assert streak.longest_streak == 5


def test_sweep_marks_at_risk_past_due():
    streak = calculator.apply_sweep(_relationship(days_ago(8), current=5), NOW)
    assert streak.status == StreakStatus.AT_RISK
    assert streak.current_streak == 5


def test_sweep_keeps_on_time_streak_active():
    streak = calculator.apply_sweep(_relationship(days_ago(3), current=5, status=StreakStatus.AT_RISK), NOW)
    assert streak.status == StreakStatus.ACTIVE


@pytest.mark.parametrize("last_contact", [days_ago(3), days_ago(8), days_ago(10)])
def test_sweep_is_idempotent(last_contact):
    once = calculator.apply_sweep(_relationship(last_contact, current=5), NOW)
    twice = calculator.apply_sweep(once, NOW)
    assert once == twice


def test_sweep_without_contact_is_noop():
    streak = _relationship()
    assert calculator.apply_sweep(streak, NOW) == streak


# ---------------------------------------------------------------------------
# User streak
# ---------------------------------------------------------------------------


def test_first_activity_starts_user_streak():
    streak = calculator.apply_user_activity(UserStreak(user_id="u1"), NOW)
    assert streak.current_streak_days == 1
    assert streak.longest_streak_days == 1
    assert streak.multiplier == 1.0
    assert streak.last_activity_date == NOW


def test_fifth_day_bumps_multiplier():
    """Day 24 -> 25 crosses a multiple of five, so the multiplier grows by 0.1."""
    before = UserStreak(
        user_id="u1",
        current_streak_days=24,
        longest_streak_days=24,
        multiplier=1.4,
        last_activity_date=days_ago(1),
    )
    after = calculator.apply_user_activity(before, NOW)

    assert after.current_streak_days == 25
    assert after.multiplier == pytest.approx(1.5)
    assert after.longest_streak_days == 25


def test_non_multiple_day_keeps_multiplier():
    before = UserStreak(user_id="u1", current_streak_days=2, longest_streak_days=2, last_activity_date=days_ago(1))
    after = calculator.apply_user_activity(before, NOW)
    assert after.current_streak_days == 3
    assert after.multiplier == 1.0


def test_missed_day_resets_user_streak_and_multiplier():
    before = UserStreak(
        user_id="u1",
        current_streak_days=12,
        longest_streak_days=12,
        multiplier=1.2,
        last_activity_date=days_ago(2),
    )
    after = calculator.apply_user_activity(before, NOW)

    assert after.current_streak_days == 1
    assert after.multiplier == 1.0
    assert after.longest_streak_days == 12


def test_same_day_activity_only_moves_timestamp():
    earlier = NOW - timedelta(hours=2)
    before = UserStreak(user_id="u1", current_streak_days=3, longest_streak_days=3, last_activity_date=earlier)
    after = calculator.apply_user_activity(before, NOW)

    assert after.current_streak_days == 3
    assert after.last_activity_date == NOW


# ---------------------------------------------------------------------------
# Points and levels
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "kind, streak, expected",
    [
        (StreakEventKind.CONTACT_MESSAGE, 0, 15),
        (StreakEventKind.CONTACT_MESSAGE, 5, 18),
        (StreakEventKind.CONTACT_MESSAGE, 10, 22),
        (StreakEventKind.CONTACT_CALL, 4, 20),
        (StreakEventKind.CONTACT_CALL, 9, 24),
        (StreakEventKind.CONTACT_MEETING, 10, 45),
        (StreakEventKind.CONTACT_OTHER, 0, 10),
    ],
)
def test_contact_points(kind, streak, expected):
    assert calculator.contact_points(kind, streak) == expected


def test_activity_points_follow_multiplier():
    assert calculator.activity_points(1.0) == 10
    assert calculator.activity_points(1.1) == 11
    assert calculator.activity_points(1.5, base=15) == 22


def test_level_costs():
    assert calculator.next_level_cost(1) == 100
    assert calculator.next_level_cost(2) == 200
    assert calculator.next_level_cost(3) == 250
    assert calculator.next_level_cost(4) == 300


@pytest.mark.parametrize(
    "total, expected",
    [
        (0, (1, 100)),
        (99, (1, 1)),
        (100, (2, 200)),
        (150, (2, 150)),
        (300, (3, 250)),
        (550, (4, 300)),
    ],
)
def test_level_for_points(total, expected):
    assert calculator.level_for_points(total) == expected
