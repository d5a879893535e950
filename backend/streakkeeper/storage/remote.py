"""Remote store client - authoritative relational storage for streak data.

``RemoteStore.transaction`` runs a unit of work inside one database
transaction with a bounded timeout. Row operations live on ``RemoteSession``;
they hold no business rules. Driver and network failures are translated into
``RemoteUnavailableError`` here and nowhere else.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from streakkeeper.config import settings
from streakkeeper.core.errors import ConcurrentUpdateError, RemoteUnavailableError
from streakkeeper.core.retry import RetryPolicy
from streakkeeper.domain import (
    RecoveryItemKind,
    RelationshipStreak,
    StreakEvent,
    StreakMilestone,
    StreakRecoveryItem,
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
from streakkeeper.storage import mapping

log = logging.getLogger(__name__)

T = TypeVar("T")


def foreground_policy() -> RetryPolicy:
    """Short retry policy for calls a user is waiting on."""
    return RetryPolicy(
        max_attempts=settings.FOREGROUND_RETRY_ATTEMPTS,
        base_delay=settings.FOREGROUND_RETRY_BASE_DELAY,
        max_delay=settings.FOREGROUND_RETRY_BASE_DELAY * 4,
        jitter=settings.RETRY_JITTER,
    )


class RemoteSession:
    """Row CRUD bound to one open transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _scalar(self, stmt):
        # Conditional updates bypass the identity map, so reads always refresh
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def _scalars(self, stmt) -> list:
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def _update(self, stmt) -> int:
        result = await self.session.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount

    # --- user streaks -------------------------------------------------------

    async def get_user_streak(self, user_id: str) -> Optional[UserStreak]:
        row = await self._scalar(select(UserStreakRecord).where(UserStreakRecord.user_id == user_id))
        return mapping.user_streak_from_row(row) if row else None

    async def save_user_streak(self, streak: UserStreak) -> UserStreak:
        """Insert (version 0) or update conditionally on the version that was read."""
        values = mapping.user_streak_values(streak)
        if streak.version == 0:
            row = UserStreakRecord(user_id=streak.user_id, version=1, **values)
            self.session.add(row)
            await self.session.flush()
            return mapping.user_streak_from_row(row)

        updated = await self._update(
            update(UserStreakRecord)
            .where(
                UserStreakRecord.user_id == streak.user_id,
                UserStreakRecord.version == streak.version,
            )
            .values(version=streak.version + 1, **values)
        )
        if updated != 1:
            raise ConcurrentUpdateError("user_streak", streak.version)
        return replace(streak, version=streak.version + 1)

    async def increment_points(self, user_id: str, amount: int) -> int:
        """Atomically add ``amount`` to the user's point total; returns the new total."""
        updated = await self._update(
            update(UserStreakRecord)
            .where(UserStreakRecord.user_id == user_id)
            .values(total_points=UserStreakRecord.total_points + amount)
        )
        if updated == 0:
            self.session.add(UserStreakRecord(user_id=user_id, total_points=max(0, amount), version=1))
            await self.session.flush()
        streak = await self.get_user_streak(user_id)
        return streak.total_points

    async def set_level(self, user_id: str, level: int, points_to_next_level: int) -> None:
        await self._update(
            update(UserStreakRecord)
            .where(UserStreakRecord.user_id == user_id)
            .values(level=level, points_to_next_level=points_to_next_level)
        )

    # --- relationship streaks -----------------------------------------------

    async def get_relationship_streak(self, user_id: str, relationship_id: str) -> Optional[RelationshipStreak]:
        row = await self._scalar(
            select(RelationshipStreakRecord).where(
                RelationshipStreakRecord.user_id == user_id,
                RelationshipStreakRecord.relationship_id == relationship_id,
            )
        )
        return mapping.relationship_streak_from_row(row) if row else None

    async def list_relationship_streaks(self, user_id: str) -> list[RelationshipStreak]:
        rows = await self._scalars(
            select(RelationshipStreakRecord)
            .where(RelationshipStreakRecord.user_id == user_id)
            .order_by(RelationshipStreakRecord.relationship_id)
        )
        return [mapping.relationship_streak_from_row(r) for r in rows]

    async def save_relationship_streak(self, streak: RelationshipStreak) -> RelationshipStreak:
        values = mapping.relationship_streak_values(streak)
        if streak.version == 0:
            row = RelationshipStreakRecord(
                user_id=streak.user_id,
                relationship_id=streak.relationship_id,
                version=1,
                **values,
            )
            self.session.add(row)
            await self.session.flush()
            return mapping.relationship_streak_from_row(row)

        updated = await self._update(
            update(RelationshipStreakRecord)
            .where(
                RelationshipStreakRecord.user_id == streak.user_id,
                RelationshipStreakRecord.relationship_id == streak.relationship_id,
                RelationshipStreakRecord.version == streak.version,
            )
            .values(version=streak.version + 1, **values)
        )
        if updated != 1:
            raise ConcurrentUpdateError(f"relationship_streak {streak.relationship_id}", streak.version)
        return replace(streak, version=streak.version + 1)

    # --- events -------------------------------------------------------------

    async def has_event(self, event_id: str) -> bool:
        row = await self._scalar(select(StreakEventRecord.id).where(StreakEventRecord.event_id == event_id))
        return row is not None

    async def append_event(self, event: StreakEvent) -> None:
        self.session.add(mapping.event_to_row(event))
        await self.session.flush()

    async def list_events(self, user_id: str, relationship_id: Optional[str] = None) -> list[StreakEvent]:
        stmt = select(StreakEventRecord).where(StreakEventRecord.user_id == user_id)
        if relationship_id is not None:
            stmt = stmt.where(StreakEventRecord.relationship_id == relationship_id)
        rows = await self._scalars(stmt.order_by(StreakEventRecord.event_date, StreakEventRecord.id))
        return [mapping.event_from_row(r) for r in rows]

    # --- milestones ---------------------------------------------------------

    async def find_milestone(
        self, user_id: str, relationship_id: Optional[str], milestone_type: str
    ) -> Optional[StreakMilestone]:
        row = await self._scalar(
            select(StreakMilestoneRecord).where(
                StreakMilestoneRecord.user_id == user_id,
                StreakMilestoneRecord.scope_key == mapping.scope_key(relationship_id),
                StreakMilestoneRecord.milestone_type == milestone_type,
            )
        )
        return mapping.milestone_from_row(row) if row else None

    async def insert_milestone(self, milestone: StreakMilestone) -> StreakMilestone:
        """Insert a milestone row. A concurrent duplicate fails the unique
        constraint and surfaces as IntegrityError from the flush."""
        row = mapping.milestone_to_row(milestone)
        self.session.add(row)
        await self.session.flush()
        return mapping.milestone_from_row(row)

    async def get_milestone(self, user_id: str, milestone_id: int) -> Optional[StreakMilestone]:
        row = await self._scalar(
            select(StreakMilestoneRecord).where(
                StreakMilestoneRecord.id == milestone_id,
                StreakMilestoneRecord.user_id == user_id,
            )
        )
        return mapping.milestone_from_row(row) if row else None

    async def list_milestones(self, user_id: str, *, claimed: Optional[bool] = None) -> list[StreakMilestone]:
        stmt = select(StreakMilestoneRecord).where(StreakMilestoneRecord.user_id == user_id)
        if claimed is not None:
            stmt = stmt.where(StreakMilestoneRecord.is_claimed == claimed)
        rows = await self._scalars(stmt.order_by(StreakMilestoneRecord.achieved_at.desc(), StreakMilestoneRecord.id.desc()))
        return [mapping.milestone_from_row(r) for r in rows]

    async def mark_milestone_claimed(self, user_id: str, milestone_id: int) -> bool:
        """Flip ``is_claimed`` false -> true. False when it was already true."""
        updated = await self._update(
            update(StreakMilestoneRecord)
            .where(
                StreakMilestoneRecord.id == milestone_id,
                StreakMilestoneRecord.user_id == user_id,
                StreakMilestoneRecord.is_claimed.is_(False),
            )
            .values(is_claimed=True)
        )
        return updated == 1

    # --- rewards ------------------------------------------------------------

    async def insert_reward(self, reward: UserReward) -> UserReward:
        row = mapping.reward_to_row(reward)
        self.session.add(row)
        await self.session.flush()
        return mapping.reward_from_row(row)

    async def get_reward(self, user_id: str, reward_id: int) -> Optional[UserReward]:
        row = await self._scalar(
            select(UserRewardRecord).where(
                UserRewardRecord.id == reward_id,
                UserRewardRecord.user_id == user_id,
            )
        )
        return mapping.reward_from_row(row) if row else None

    async def list_rewards(self, user_id: str, *, redeemed: Optional[bool] = None) -> list[UserReward]:
        stmt = select(UserRewardRecord).where(UserRewardRecord.user_id == user_id)
        if redeemed is not None:
            stmt = stmt.where(UserRewardRecord.is_redeemed == redeemed)
        rows = await self._scalars(stmt.order_by(UserRewardRecord.id))
        return [mapping.reward_from_row(r) for r in rows]

    async def mark_reward_redeemed(self, user_id: str, reward_id: int, now: datetime) -> bool:
        updated = await self._update(
            update(UserRewardRecord)
            .where(
                UserRewardRecord.id == reward_id,
                UserRewardRecord.user_id == user_id,
                UserRewardRecord.is_redeemed.is_(False),
            )
            .values(is_redeemed=True, redeemed_at=now)
        )
        return updated == 1

    # --- recovery items -----------------------------------------------------

    async def get_recovery_item(self, user_id: str, item_id: int) -> Optional[StreakRecoveryItem]:
        row = await self._scalar(
            select(RecoveryItemRecord).where(
                RecoveryItemRecord.id == item_id,
                RecoveryItemRecord.user_id == user_id,
            )
        )
        return mapping.recovery_item_from_row(row) if row else None

    async def find_recovery_item(self, user_id: str, kind: RecoveryItemKind) -> Optional[StreakRecoveryItem]:
        row = await self._scalar(
            select(RecoveryItemRecord).where(
                RecoveryItemRecord.user_id == user_id,
                RecoveryItemRecord.item_type == kind.value,
            )
        )
        return mapping.recovery_item_from_row(row) if row else None

    async def list_recovery_items(self, user_id: str, *, available_only: bool = True) -> list[StreakRecoveryItem]:
        stmt = select(RecoveryItemRecord).where(RecoveryItemRecord.user_id == user_id)
        if available_only:
            stmt = stmt.where(RecoveryItemRecord.quantity > 0)
        rows = await self._scalars(stmt.order_by(RecoveryItemRecord.id))
        return [mapping.recovery_item_from_row(r) for r in rows]

    async def add_recovery_items(
        self,
        user_id: str,
        kind: RecoveryItemKind,
        quantity: int,
        *,
        premium_only: bool = False,
        expires_at: Optional[datetime] = None,
    ) -> StreakRecoveryItem:
        """Increment the inventory row for ``kind``, creating it if absent."""
        values = {"quantity": RecoveryItemRecord.quantity + quantity}
        if expires_at is not None:
            values["expires_at"] = expires_at
        updated = await self._update(
            update(RecoveryItemRecord)
            .where(
                RecoveryItemRecord.user_id == user_id,
                RecoveryItemRecord.item_type == kind.value,
            )
            .values(**values)
        )
        if updated == 0:
            self.session.add(RecoveryItemRecord(
                user_id=user_id,
                item_type=kind.value,
                quantity=quantity,
                is_premium=premium_only,
                expires_at=expires_at,
            ))
            await self.session.flush()
        return await self.find_recovery_item(user_id, kind)

    async def consume_recovery_item(self, user_id: str, item_id: int) -> bool:
        """Decrement by one; never below zero. False when nothing was left."""
        updated = await self._update(
            update(RecoveryItemRecord)
            .where(
                RecoveryItemRecord.id == item_id,
                RecoveryItemRecord.user_id == user_id,
                RecoveryItemRecord.quantity > 0,
            )
            .values(quantity=RecoveryItemRecord.quantity - 1)
        )
        return updated == 1


class RemoteStore:
    """Entry point to the remote store: one ``transaction`` per unit of work."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        timeout: float = settings.REMOTE_TIMEOUT_SECONDS,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.session_factory = session_factory
        self.timeout = timeout
        self.retry_policy = retry_policy if retry_policy is not None else foreground_policy()

    async def transaction(
        self,
        work: Callable[[RemoteSession], Awaitable[T]],
        *,
        retry: bool = True,
    ) -> T:
        """Run ``work`` in a transaction; commit on success, roll back on error.

        Lost conditional updates and transient failures are retried under the
        store's retry policy. Once it is used up the last error propagates.
        """
        if not retry:
            return await self._attempt(work)
        return await self.retry_policy.run(lambda: self._attempt(work))

    async def _attempt(self, work: Callable[[RemoteSession], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(self._run(work), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise RemoteUnavailableError(f"remote store did not answer within {self.timeout}s") from exc
        except (OperationalError, InterfaceError, OSError) as exc:
            log.warning("Remote store unavailable: %s", exc.__class__.__name__)
            raise RemoteUnavailableError(f"remote store unavailable: {exc.__class__.__name__}") from exc
        except IntegrityError as exc:
            # A concurrent writer inserted the same unique row first. The retry
            # re-reads and finds it, so the work becomes a no-op.
            log.info("Unique constraint hit, retrying against fresh state")
            raise ConcurrentUpdateError("unique row", 0) from exc

    async def _run(self, work: Callable[[RemoteSession], Awaitable[T]]) -> T:
        async with self.session_factory() as session:
            async with session.begin():
                return await work(RemoteSession(session))
