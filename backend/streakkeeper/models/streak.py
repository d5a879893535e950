"""Streak tables - user streaks, relationship streaks, and the append-only event log."""

from datetime import datetime

from sqlalchemy import Float, Integer, String, DateTime, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from streakkeeper.db.database import Base


class UserStreakRecord(Base):
    __tablename__ = "user_streaks"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)

    current_streak_days: Mapped[int] = mapped_column(Integer, default=0)
    longest_streak_days: Mapped[int] = mapped_column(Integer, default=0)
    current_multiplier: Mapped[float] = mapped_column(Float, default=1.0)

    total_points: Mapped[int] = mapped_column(Integer, default=0)
    level: Mapped[int] = mapped_column(Integer, default=1)
    points_to_next_level: Mapped[int] = mapped_column(Integer, default=100)

    last_activity_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Bumped on every write; updates are conditional on the version that was read
    version: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class RelationshipStreakRecord(Base):
    __tablename__ = "relationship_streaks"
    __table_args__ = (UniqueConstraint("user_id", "relationship_id", name="uq_relationship_streak"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    relationship_id: Mapped[str] = mapped_column(String(64))

    current_streak: Mapped[int] = mapped_column(Integer, default=0)
    longest_streak: Mapped[int] = mapped_column(Integer, default=0)
    contact_frequency_days: Mapped[int] = mapped_column(Integer)
    streak_status: Mapped[str] = mapped_column(String(20), default="active")  # active | at_risk | broken

    last_contact_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_contact_due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    grace_period_ends: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class StreakEventRecord(Base):
    """Immutable streak event. Rows are inserted, never updated."""
    __tablename__ = "streak_events"

    id: Mapped[int] = mapped_column(primary_key=True)
    # Client-generated; lets a replayed event be recognised as already applied
    event_id: Mapped[str] = mapped_column(String(64), unique=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    relationship_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_type: Mapped[str] = mapped_column(String(30))
    event_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    points_earned: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
