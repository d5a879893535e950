"""Reward ledger - issued rewards, point totals and levels, recovery items."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

from streakkeeper.config import settings
from streakkeeper.core.calculator import apply_sweep, level_for_points, to_utc
from streakkeeper.core.errors import (
    AlreadyClaimedError,
    InvalidStateError,
    NoItemAvailableError,
    NotFoundError,
)
from streakkeeper.domain import (
    RecoveryItemKind,
    RelationshipStreak,
    RewardKind,
    StreakMilestone,
    StreakRecoveryItem,
    StreakStatus,
    UserReward,
)
from streakkeeper.storage.remote import RemoteSession, RemoteStore

log = logging.getLogger(__name__)

RECOVERY_FEATURES = {kind.value: kind for kind in RecoveryItemKind}


@dataclass
class ClaimResult:
    milestone: StreakMilestone
    reward: Optional[UserReward] = None
    already_claimed: bool = False


@dataclass
class RecoveryResult:
    item: StreakRecoveryItem
    relationship_streak: RelationshipStreak


class RewardLedger:
    def __init__(
        self,
        remote: RemoteStore,
        *,
        freeze_extension_days: int = settings.FREEZE_EXTENSION_DAYS,
        saver_extension_days: int = settings.SAVER_EXTENSION_DAYS,
        saver_expiry_days: int = settings.SAVER_EXPIRY_DAYS,
    ):
        self.remote = remote
        self.extension_days = {
            RecoveryItemKind.FREEZE: freeze_extension_days,
            RecoveryItemKind.SAVER: saver_extension_days,
        }
        self.saver_expiry_days = saver_expiry_days

    async def issue_reward(
        self,
        tx: RemoteSession,
        user_id: str,
        kind: RewardKind,
        amount: int,
        now: datetime,
        *,
        value: Optional[str] = None,
    ) -> UserReward:
        """Append a reward row and apply its effect inside ``tx``.

        Points are added to the user's total and the level is re-derived from
        it. Recovery-item features go straight into the inventory. Both count as
        redeemed on issue; other features wait for ``redeem_reward``.
        """
        now = to_utc(now)
        redeemed = True

        if kind == RewardKind.POINTS:
            value = str(amount)
            await self.add_points(tx, user_id, amount)
        elif kind == RewardKind.FEATURE:
            if not value:
                raise InvalidStateError("reward", "feature rewards need a value")
            item_kind = RECOVERY_FEATURES.get(value)
            if item_kind is not None:
                await self._stock_item(tx, user_id, item_kind, amount, now)
            else:
                redeemed = False
        else:
            value = value or "badge"

        reward = await tx.insert_reward(UserReward(
            user_id=user_id,
            kind=kind,
            value=value,
            amount=amount,
            awarded_at=now,
            redeemed=redeemed,
            redeemed_at=now if redeemed else None,
        ))
        log.info("Issued %s reward %s x%d to %s", kind.value, value, amount, user_id)
        return reward

    async def add_points(self, tx: RemoteSession, user_id: str, amount: int) -> int:
        """Atomic increment of the point total; level follows from the new total."""
        if amount <= 0:
            return 0
        total = await tx.increment_points(user_id, amount)
        level, to_next = level_for_points(total)
        await tx.set_level(user_id, level, to_next)
        return total

    async def _stock_item(
        self, tx: RemoteSession, user_id: str, kind: RecoveryItemKind, quantity: int, now: datetime
    ) -> StreakRecoveryItem:
        is_saver = kind == RecoveryItemKind.SAVER
        return await tx.add_recovery_items(
            user_id,
            kind,
            quantity,
            premium_only=is_saver,
            expires_at=now + timedelta(days=self.saver_expiry_days) if is_saver else None,
        )

    async def claim_milestone(self, user_id: str, milestone_id: int, now: datetime) -> ClaimResult:
        """Mark a milestone claimed and issue its stored reward.

        Claiming twice is not an error: the second call reports
        ``already_claimed`` and issues nothing.
        """
        async def work(tx: RemoteSession) -> ClaimResult:
            milestone = await tx.get_milestone(user_id, milestone_id)
            if milestone is None:
                raise NotFoundError(f"Milestone {milestone_id} not found")
            if not await tx.mark_milestone_claimed(user_id, milestone_id):
                raise AlreadyClaimedError(milestone_id)

            if milestone.reward_kind == RewardKind.POINTS.value:
                reward = await self.issue_reward(tx, user_id, RewardKind.POINTS, milestone.reward_amount, now)
            else:
                reward = await self.issue_reward(
                    tx, user_id, RewardKind.FEATURE, milestone.reward_amount or 1, now,
                    value=milestone.reward_kind,
                )
            return ClaimResult(milestone=replace(milestone, claimed=True), reward=reward)

        try:
            return await self.remote.transaction(work)
        except AlreadyClaimedError:
            log.info("Milestone %s already claimed by %s", milestone_id, user_id)
            milestone = await self.remote.transaction(lambda tx: tx.get_milestone(user_id, milestone_id))
            return ClaimResult(milestone=milestone, already_claimed=True)

    async def use_recovery_item(
        self, user_id: str, item_id: int, relationship_id: str, now: datetime
    ) -> RecoveryResult:
        """Spend one recovery item to push back a relationship's grace deadline."""
        now = to_utc(now)

        async def work(tx: RemoteSession) -> RecoveryResult:
            item = await tx.get_recovery_item(user_id, item_id)
            if item is None:
                raise NotFoundError(f"Recovery item {item_id} not found")
            if item.quantity <= 0:
                raise NoItemAvailableError(item_id)
            if item.expires_at is not None and to_utc(item.expires_at) <= now:
                raise NoItemAvailableError(item_id, "expired")

            streak = await tx.get_relationship_streak(user_id, relationship_id)
            if streak is None:
                raise NotFoundError(f"No streak for relationship {relationship_id}")
            if streak.status == StreakStatus.BROKEN or streak.grace_period_ends is None:
                raise InvalidStateError("relationship_streak", "only a live streak can be protected")

            extended = replace(
                streak,
                grace_period_ends=streak.grace_period_ends + timedelta(days=self.extension_days[item.kind]),
            )
            extended = apply_sweep(extended, now)
            if extended.status == StreakStatus.BROKEN:
                raise InvalidStateError("relationship_streak", "the extension would not save this streak")

            if not await tx.consume_recovery_item(user_id, item_id):
                raise NoItemAvailableError(item_id)
            saved = await tx.save_relationship_streak(extended)
            return RecoveryResult(item=replace(item, quantity=item.quantity - 1), relationship_streak=saved)

        result = await self.remote.transaction(work)
        log.info(
            "Used %s on relationship %s, grace now ends %s",
            result.item.kind.value, relationship_id, result.relationship_streak.grace_period_ends,
        )
        return result

    async def redeem_reward(self, user_id: str, reward_id: int, now: datetime) -> UserReward:
        async def work(tx: RemoteSession) -> UserReward:
            reward = await tx.get_reward(user_id, reward_id)
            if reward is None:
                raise NotFoundError(f"Reward {reward_id} not found")
            if reward.redeemed:
                return reward
            await tx.mark_reward_redeemed(user_id, reward_id, to_utc(now))
            return await tx.get_reward(user_id, reward_id)

        return await self.remote.transaction(work)

    async def list_milestones(self, user_id: str, *, claimed: Optional[bool] = None) -> list[StreakMilestone]:
        return await self.remote.transaction(lambda tx: tx.list_milestones(user_id, claimed=claimed))

    async def list_rewards(
        self,
        user_id: str,
        *,
        redeemed: Optional[bool] = None,
        kind: Optional[RewardKind] = None,
    ) -> list[UserReward]:
        rewards = await self.remote.transaction(lambda tx: tx.list_rewards(user_id, redeemed=redeemed))
        if kind is not None:
            rewards = [r for r in rewards if r.kind == kind]
        return rewards

    async def list_recovery_items(self, user_id: str) -> list[StreakRecoveryItem]:
        return await self.remote.transaction(lambda tx: tx.list_recovery_items(user_id))
