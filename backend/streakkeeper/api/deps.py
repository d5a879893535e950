"""Shared FastAPI dependencies."""

from fastapi import Request

from streakkeeper.services.streak_engine import StreakEngine


def get_streak_engine(request: Request) -> StreakEngine:
    """The engine built during app startup."""
    return request.app.state.engine
