"""Streak endpoints - record activity and contacts, read state, manage rewards."""

from fastapi import APIRouter, Depends, Query

from streakkeeper.api.deps import get_streak_engine
from streakkeeper.domain import RewardKind
from streakkeeper.schemas.notification import NotificationRequestOut
from streakkeeper.schemas.streak import (
    ActivityCreate,
    AtTime,
    ClaimOut,
    ContactCreate,
    FrequencyUpdate,
    MilestoneOut,
    NotificationPlanRequest,
    RecoveryItemOut,
    RecoveryItemUse,
    RecoveryOut,
    RelationshipListOut,
    RelationshipStreakOut,
    RewardOut,
    StreakEventOut,
    StreakOutcomeOut,
    StreakStatsOut,
    SuggestedContactOut,
    SweepOut,
    SyncFailureOut,
    SyncOut,
    UserStreakSnapshotOut,
)
from streakkeeper.services.streak_engine import StreakEngine

router = APIRouter()


# --- sync (registered before the /{user_id} routes) -------------------------

@router.post("/sync", response_model=SyncOut)
async def sync(engine: StreakEngine = Depends(get_streak_engine)):
    """Replay events queued while the remote store was unreachable."""
    report = await engine.sync()
    return SyncOut.model_validate(report)


@router.get("/sync/pending", response_model=list[StreakEventOut])
async def list_pending(engine: StreakEngine = Depends(get_streak_engine)):
    """Events recorded on this device that the remote store has not seen yet."""
    events = await engine.pending_events()
    return [StreakEventOut.model_validate(e) for e in events]


# --- events -----------------------------------------------------------------

@router.post("/{user_id}/activity", response_model=StreakOutcomeOut)
async def record_activity(
    user_id: str,
    data: ActivityCreate,
    engine: StreakEngine = Depends(get_streak_engine),
):
    outcome = await engine.record_user_activity(
        user_id, data.occurred_at, kind=data.kind, event_id=data.event_id
    )
    return StreakOutcomeOut.model_validate(outcome)


@router.post("/{user_id}/contacts/{relationship_id}", response_model=StreakOutcomeOut)
async def record_contact(
    user_id: str,
    relationship_id: str,
    data: ContactCreate,
    engine: StreakEngine = Depends(get_streak_engine),
):
    outcome = await engine.record_contact_event(
        user_id, relationship_id, data.kind, data.occurred_at, event_id=data.event_id
    )
    return StreakOutcomeOut.model_validate(outcome)


@router.put("/{user_id}/contacts/{relationship_id}/frequency", response_model=RelationshipStreakOut)
async def set_frequency(
    user_id: str,
    relationship_id: str,
    data: FrequencyUpdate,
    engine: StreakEngine = Depends(get_streak_engine),
):
    streak = await engine.set_contact_frequency(user_id, relationship_id, data.days)
    return RelationshipStreakOut.model_validate(streak)


@router.post("/{user_id}/sweep", response_model=SweepOut)
async def run_sweep(
    user_id: str,
    data: AtTime | None = None,
    engine: StreakEngine = Depends(get_streak_engine),
):
    result = await engine.run_daily_sweep(user_id, data.now if data else None)
    return SweepOut.model_validate(result)


# --- reads ------------------------------------------------------------------

@router.get("/{user_id}", response_model=UserStreakSnapshotOut)
async def get_user_streak(user_id: str, engine: StreakEngine = Depends(get_streak_engine)):
    snapshot = await engine.get_user_streak(user_id)
    return UserStreakSnapshotOut.model_validate(snapshot)


@router.get("/{user_id}/relationships", response_model=RelationshipListOut)
async def list_relationships(user_id: str, engine: StreakEngine = Depends(get_streak_engine)):
    snapshot = await engine.list_relationship_streaks(user_id)
    return RelationshipListOut.model_validate(snapshot)


@router.get("/{user_id}/stats", response_model=StreakStatsOut)
async def get_stats(user_id: str, engine: StreakEngine = Depends(get_streak_engine)):
    return StreakStatsOut.model_validate(await engine.streak_stats(user_id))


@router.get("/{user_id}/suggestions", response_model=list[SuggestedContactOut])
async def get_suggestions(
    user_id: str,
    limit: int = Query(default=3, ge=1, le=20),
    engine: StreakEngine = Depends(get_streak_engine),
):
    suggestions = await engine.suggested_contacts(user_id, limit=limit)
    return [SuggestedContactOut.model_validate(s) for s in suggestions]


# --- milestones and rewards -------------------------------------------------

@router.get("/{user_id}/milestones", response_model=list[MilestoneOut])
async def list_milestones(
    user_id: str,
    claimed: bool | None = None,
    engine: StreakEngine = Depends(get_streak_engine),
):
    milestones = await engine.ledger.list_milestones(user_id, claimed=claimed)
    return [MilestoneOut.model_validate(m) for m in milestones]


@router.post("/{user_id}/milestones/{milestone_id}/claim", response_model=ClaimOut)
async def claim_milestone(
    user_id: str,
    milestone_id: int,
    engine: StreakEngine = Depends(get_streak_engine),
):
    """Claim a milestone's reward. Claiming again returns ``already_claimed``."""
    result = await engine.claim_milestone(user_id, milestone_id)
    return ClaimOut.model_validate(result)


@router.get("/{user_id}/rewards", response_model=list[RewardOut])
async def list_rewards(
    user_id: str,
    kind: RewardKind | None = None,
    redeemed: bool | None = None,
    engine: StreakEngine = Depends(get_streak_engine),
):
    rewards = await engine.ledger.list_rewards(user_id, redeemed=redeemed, kind=kind)
    return [RewardOut.model_validate(r) for r in rewards]


@router.get("/{user_id}/achievements", response_model=list[RewardOut])
async def list_achievements(user_id: str, engine: StreakEngine = Depends(get_streak_engine)):
    """Badges earned by reaching milestones."""
    rewards = await engine.ledger.list_rewards(user_id, kind=RewardKind.BADGE)
    return [RewardOut.model_validate(r) for r in rewards]


@router.post("/{user_id}/rewards/{reward_id}/redeem", response_model=RewardOut)
async def redeem_reward(
    user_id: str,
    reward_id: int,
    data: AtTime | None = None,
    engine: StreakEngine = Depends(get_streak_engine),
):
    reward = await engine.redeem_reward(user_id, reward_id, data.now if data else None)
    return RewardOut.model_validate(reward)


@router.get("/{user_id}/recovery-items", response_model=list[RecoveryItemOut])
async def list_recovery_items(user_id: str, engine: StreakEngine = Depends(get_streak_engine)):
    items = await engine.ledger.list_recovery_items(user_id)
    return [RecoveryItemOut.model_validate(i) for i in items]


@router.post("/{user_id}/recovery-items/{item_id}/use", response_model=RecoveryOut)
async def use_recovery_item(
    user_id: str,
    item_id: int,
    data: RecoveryItemUse,
    engine: StreakEngine = Depends(get_streak_engine),
):
    result = await engine.use_recovery_item(user_id, item_id, data.relationship_id, data.now)
    return RecoveryOut.model_validate(result)


@router.get("/{user_id}/events", response_model=list[StreakEventOut])
async def list_events(
    user_id: str,
    relationship_id: str | None = Query(default=None),
    engine: StreakEngine = Depends(get_streak_engine),
):
    events = await engine.list_events(user_id, relationship_id)
    return [StreakEventOut.model_validate(e) for e in events]


# --- sync failures and notifications ----------------------------------------

@router.get("/{user_id}/sync-failures", response_model=list[SyncFailureOut])
async def list_sync_failures(user_id: str, engine: StreakEngine = Depends(get_streak_engine)):
    failures = await engine.sync_failures(user_id)
    return [SyncFailureOut.model_validate(f) for f in failures]


@router.post("/{user_id}/notifications/plan", response_model=list[NotificationRequestOut])
async def plan_notifications(
    user_id: str,
    data: NotificationPlanRequest | None = None,
    engine: StreakEngine = Depends(get_streak_engine),
):
    data = data or NotificationPlanRequest()
    plan = await engine.plan_notifications(user_id, data.now, data.preferences)
    return [NotificationRequestOut.model_validate(r) for r in plan]
