"""Summary numbers and contact suggestions shown next to the streak list."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

from streakkeeper.core.calculator import calendar_days_between
from streakkeeper.domain import RelationshipStreak, StreakStats, StreakStatus, SuggestedContact


def streak_stats(streaks: Iterable[RelationshipStreak]) -> StreakStats:
    stats = StreakStats()
    live_lengths = []
    for streak in streaks:
        if streak.status == StreakStatus.BROKEN:
            stats.broken_streaks += 1
            continue
        if streak.status == StreakStatus.AT_RISK:
            stats.at_risk_streaks += 1
        else:
            stats.active_streaks += 1
        live_lengths.append(streak.current_streak)

    if live_lengths:
        stats.average_streak_length = round(sum(live_lengths) / len(live_lengths), 2)
        stats.longest_current_streak = max(live_lengths)
    return stats


def suggest_contacts(
    streaks: Iterable[RelationshipStreak], now: datetime, limit: int = 3
) -> list[SuggestedContact]:
    """Unbroken relationships closest to their due date first."""
    candidates = [
        s for s in streaks
        if s.status != StreakStatus.BROKEN and s.next_contact_due_date is not None
    ]
    candidates.sort(key=lambda s: s.next_contact_due_date)

    suggestions = []
    for streak in candidates[:limit]:
        days_until_due = calendar_days_between(now, streak.next_contact_due_date)
        if days_until_due <= 1:
            priority = "high"
        elif days_until_due <= 3:
            priority = "medium"
        else:
            priority = "low"
        suggestions.append(
            SuggestedContact(
                relationship_id=streak.relationship_id,
                last_contact_date=streak.last_contact_date,
                next_contact_due_date=streak.next_contact_due_date,
                priority=priority,
            )
        )
    return suggestions
