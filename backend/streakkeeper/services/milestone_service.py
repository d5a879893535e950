"""Milestone service - loads the milestone reward table from YAML and records
newly reached milestones exactly once per (entity, threshold)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import yaml

from streakkeeper.config import settings
from streakkeeper.domain import NotificationRequest, RewardKind, StreakMilestone
from streakkeeper.schemas.milestone import MilestoneTable
from streakkeeper.schemas.notification import NotificationPreferences
from streakkeeper.services import notification_scheduler
from streakkeeper.services.reward_ledger import RewardLedger
from streakkeeper.storage.remote import RemoteSession

log = logging.getLogger(__name__)

_table_cache: dict[str, MilestoneTable] = {}


def load_milestone_table(path: Optional[str] = None) -> MilestoneTable:
    """Load (and cache) the milestone reward table."""
    path = path or settings.MILESTONE_TABLE_PATH
    if path in _table_cache:
        return _table_cache[path]

    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"Milestone table not found: {file_path}")

    with open(file_path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    table = MilestoneTable(**raw)
    _table_cache[path] = table
    return table


def milestone_type(days: int, relationship_id: Optional[str] = None) -> str:
    if relationship_id is None:
        return f"streak_{days}_days"
    return f"relationship_streak_{days}_days"


@dataclass
class MilestoneAward:
    milestone: StreakMilestone
    notification: NotificationRequest


class MilestoneEvaluator:
    def __init__(self, ledger: RewardLedger, table: Optional[MilestoneTable] = None):
        self.ledger = ledger
        self.table = table or load_milestone_table()

    async def evaluate(
        self,
        tx: RemoteSession,
        user_id: str,
        streak_length: int,
        now: datetime,
        *,
        relationship_id: Optional[str] = None,
        display_name: Optional[str] = None,
        prefs: Optional[NotificationPreferences] = None,
    ) -> Optional[MilestoneAward]:
        """Record the highest threshold ``streak_length`` has reached, if new.

        Only that single threshold is considered; lower ones that were skipped
        (e.g. after a streak freeze) are not back-filled. Returns None when the
        threshold is already on record.
        """
        config = self.table.highest_reached(streak_length)
        if config is None:
            return None

        kind = milestone_type(config.days, relationship_id)
        existing = await tx.find_milestone(user_id, relationship_id, kind)
        if existing is not None:
            log.debug("Milestone %s already recorded for %s", kind, relationship_id or user_id)
            return None

        milestone = await tx.insert_milestone(StreakMilestone(
            user_id=user_id,
            relationship_id=relationship_id,
            threshold_days=config.days,
            milestone_type=kind,
            reward_kind=config.reward_label,
            reward_amount=config.amount,
            claimed=False,
            achieved_at=now,
        ))
        await self.ledger.issue_reward(tx, user_id, RewardKind.BADGE, 1, now, value=kind)

        log.info(
            "Milestone reached",
            extra={"user_id": user_id, "relationship_id": relationship_id, "milestone": kind},
        )
        return MilestoneAward(
            milestone=milestone,
            notification=notification_scheduler.milestone_request(milestone, now, display_name, prefs),
        )
