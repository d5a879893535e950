"""Reward tables - milestones, issued rewards, and recovery item inventory."""

from datetime import datetime

from sqlalchemy import Boolean, Integer, String, DateTime, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from streakkeeper.db.database import Base

USER_SCOPE = "user"


class StreakMilestoneRecord(Base):
    __tablename__ = "streak_milestones"
    # scope_key is "user" or the relationship id; NULLs never collide in a
    # unique index, so the nullable relationship_id can't carry the constraint
    __table_args__ = (
        UniqueConstraint("user_id", "scope_key", "milestone_type", name="uq_streak_milestone"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    relationship_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    scope_key: Mapped[str] = mapped_column(String(64), default=USER_SCOPE)
    milestone_type: Mapped[str] = mapped_column(String(50))  # e.g. "relationship_streak_7_days"
    streak_days: Mapped[int] = mapped_column(Integer)
    reward_type: Mapped[str] = mapped_column(String(30))
    reward_amount: Mapped[int] = mapped_column(Integer, default=0)
    is_claimed: Mapped[bool] = mapped_column(Boolean, default=False)

    achieved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UserRewardRecord(Base):
    __tablename__ = "user_rewards"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    reward_type: Mapped[str] = mapped_column(String(20))  # points | feature | badge
    reward_value: Mapped[str] = mapped_column(String(50))
    amount: Mapped[int] = mapped_column(Integer, default=1)
    is_redeemed: Mapped[bool] = mapped_column(Boolean, default=False)
    redeemed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    awarded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class RecoveryItemRecord(Base):
    __tablename__ = "streak_recovery_items"
    __table_args__ = (UniqueConstraint("user_id", "item_type", name="uq_recovery_item"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    item_type: Mapped[str] = mapped_column(String(30))  # streak_freeze | streak_saver
    quantity: Mapped[int] = mapped_column(Integer, default=0)
    is_premium: Mapped[bool] = mapped_column(Boolean, default=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
