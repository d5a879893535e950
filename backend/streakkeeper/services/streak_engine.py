"""Streak engine - applies streak events and keeps remote state, the local
cache and the offline queue consistent.

Every recording operation loads current state from the remote store, runs the
calculator, persists the new state together with the event in one
transaction, evaluates milestones and mirrors the result into the local
cache. When the remote store can't be reached the event is queued and the
caller gets a locally computed projection (``confirmed=False``) instead.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Union

from streakkeeper.config import settings
from streakkeeper.core import calculator, stats
from streakkeeper.core.errors import (
    CacheUnavailableError,
    ConcurrentUpdateError,
    InvalidStateError,
    RemoteUnavailableError,
)
from streakkeeper.domain import (
    NotificationRequest,
    RelationshipStreak,
    StreakEvent,
    StreakEventKind,
    StreakOutcome,
    StreakSnapshot,
    StreakStats,
    StreakStatus,
    SuggestedContact,
    SweepResult,
    SyncFailure,
    SyncReport,
    UserReward,
    UserStreak,
)
from streakkeeper.schemas.notification import NotificationPreferences
from streakkeeper.services import notification_scheduler
from streakkeeper.services.collaborators import (
    Connectivity,
    ManualConnectivity,
    NotificationDelivery,
    RelationshipDirectory,
)
from streakkeeper.services.milestone_service import MilestoneEvaluator
from streakkeeper.services.offline_queue import OfflineEventQueue
from streakkeeper.services.reward_ledger import ClaimResult, RecoveryResult, RewardLedger
from streakkeeper.storage.local_cache import LocalCache
from streakkeeper.storage.remote import RemoteSession, RemoteStore

log = logging.getLogger(__name__)

APP_EVENT_KINDS = (StreakEventKind.APP_LOGIN, StreakEventKind.APP_ACTION)


class StreakEngine:
    def __init__(
        self,
        remote: RemoteStore,
        cache: LocalCache,
        *,
        connectivity: Optional[Connectivity] = None,
        directory: Optional[RelationshipDirectory] = None,
        delivery: Optional[NotificationDelivery] = None,
        ledger: Optional[RewardLedger] = None,
        milestones: Optional[MilestoneEvaluator] = None,
        queue: Optional[OfflineEventQueue] = None,
        preferences: Optional[NotificationPreferences] = None,
        grace_period_days: int = settings.GRACE_PERIOD_DAYS,
        default_frequency_days: int = settings.DEFAULT_CONTACT_FREQUENCY_DAYS,
        activity_base_points: int = settings.ACTIVITY_BASE_POINTS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.remote = remote
        self.cache = cache
        self.connectivity = connectivity or ManualConnectivity()
        self.directory = directory
        self.delivery = delivery
        self.ledger = ledger or RewardLedger(remote)
        self.milestones = milestones or MilestoneEvaluator(self.ledger)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.queue = queue or OfflineEventQueue(cache, self.connectivity, clock=self.clock)
        self.preferences = preferences or NotificationPreferences()
        self.grace_period_days = grace_period_days
        self.default_frequency_days = default_frequency_days
        self.activity_base_points = activity_base_points

        self._locks: dict[str, asyncio.Lock] = {}
        self.connectivity.on_reconnect(self.sync)

    def _now(self, now: Optional[datetime]) -> datetime:
        return calculator.to_utc(now) if now is not None else self.clock()

    # ------------------------------------------------------------------
    # Per-entity serialisation
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _entity_locks(self, user_id: str, relationship_id: Optional[str] = None):
        keys = [f"user:{user_id}"]
        if relationship_id is not None:
            keys.append(f"relationship:{user_id}:{relationship_id}")
        async with AsyncExitStack() as stack:
            for key in keys:  # fixed order: user before relationship
                await stack.enter_async_context(self._locks.setdefault(key, asyncio.Lock()))
            yield

    # ------------------------------------------------------------------
    # Recording events
    # ------------------------------------------------------------------

    async def record_user_activity(
        self,
        user_id: str,
        now: Optional[datetime] = None,
        *,
        kind: StreakEventKind = StreakEventKind.APP_LOGIN,
        event_id: Optional[str] = None,
    ) -> StreakOutcome:
        """Log app activity for the daily user streak."""
        if kind not in APP_EVENT_KINDS:
            raise InvalidStateError("kind", f"{kind.value} is not an app activity")
        event = StreakEvent(
            event_id=event_id or uuid.uuid4().hex,
            user_id=user_id,
            kind=kind,
            occurred_at=self._now(now),
        )
        return await self._record(event)

    async def record_contact_event(
        self,
        user_id: str,
        relationship_id: str,
        kind: Union[StreakEventKind, str] = StreakEventKind.CONTACT_MESSAGE,
        now: Optional[datetime] = None,
        *,
        event_id: Optional[str] = None,
    ) -> StreakOutcome:
        """Log contact with a relationship. Counts as app activity as well."""
        if isinstance(kind, str) and not isinstance(kind, StreakEventKind):
            try:
                kind = StreakEventKind.contact(kind)
            except ValueError as exc:
                raise InvalidStateError("kind", f"unknown contact kind {kind!r}") from exc
        if not kind.is_contact:
            raise InvalidStateError("kind", f"{kind.value} is not a contact event")
        if not relationship_id:
            raise InvalidStateError("relationship_id", "must not be empty")

        event = StreakEvent(
            event_id=event_id or uuid.uuid4().hex,
            user_id=user_id,
            kind=kind,
            occurred_at=self._now(now),
            relationship_id=relationship_id,
        )
        return await self._record(event)

    async def _record(self, event: StreakEvent) -> StreakOutcome:
        if self.connectivity.is_online():
            # Older queued events go first so per-relationship order holds
            if await self.queue.pending_count():
                await self.sync(foreground=True)

            if not await self.queue.pending_count():
                try:
                    async with self._entity_locks(event.user_id, event.relationship_id):
                        outcome = await self._apply_remote(event)
                except (RemoteUnavailableError, ConcurrentUpdateError) as exc:
                    log.warning("Remote write failed, queueing event %s: %s", event.event_id, exc)
                else:
                    await self._mirror(outcome.user_streak, outcome.relationship_streak)
                    await self._emit(event.user_id, outcome.notifications)
                    return outcome

        async with self._entity_locks(event.user_id, event.relationship_id):
            return await self._queue_with_projection(event)

    async def _apply_remote(self, event: StreakEvent, *, retry: bool = True) -> StreakOutcome:
        name = None
        if event.relationship_id is not None:
            name = await self._display_name(event.relationship_id)

        async def work(tx: RemoteSession) -> StreakOutcome:
            if await tx.has_event(event.event_id):
                log.info("Event %s already applied", event.event_id)
                return StreakOutcome(
                    user_streak=await tx.get_user_streak(event.user_id),
                    relationship_streak=(
                        await tx.get_relationship_streak(event.user_id, event.relationship_id)
                        if event.relationship_id else None
                    ),
                    event=event,
                    duplicate=True,
                )

            user = await tx.get_user_streak(event.user_id) or UserStreak(user_id=event.user_id)
            relationship = None
            if event.kind.is_contact:
                relationship = await tx.get_relationship_streak(event.user_id, event.relationship_id)
            next_user, next_relationship, points = self._calculate(event, user, relationship)

            recorded = replace(event, points_earned=points)
            await tx.append_event(recorded)
            await tx.save_user_streak(next_user)
            if next_relationship is not None:
                next_relationship = await tx.save_relationship_streak(next_relationship)
            await self.ledger.add_points(tx, event.user_id, points)

            awards = []
            award = await self.milestones.evaluate(
                tx, event.user_id, next_user.current_streak_days, event.occurred_at,
                prefs=self.preferences,
            )
            if award:
                awards.append(award)
            if next_relationship is not None:
                award = await self.milestones.evaluate(
                    tx, event.user_id, next_relationship.current_streak, event.occurred_at,
                    relationship_id=event.relationship_id, display_name=name, prefs=self.preferences,
                )
                if award:
                    awards.append(award)

            return StreakOutcome(
                user_streak=await tx.get_user_streak(event.user_id),
                relationship_streak=next_relationship,
                event=recorded,
                milestones=[a.milestone for a in awards],
                notifications=(
                    [a.notification for a in awards] if self.preferences.enable_milestone_alerts else []
                ),
            )

        outcome = await self.remote.transaction(work, retry=retry)
        if not outcome.duplicate:
            log.info(
                "Applied streak event",
                extra={
                    "event_id": event.event_id,
                    "kind": event.kind.value,
                    "user_streak": outcome.user_streak.current_streak_days,
                    "relationship_streak": (
                        outcome.relationship_streak.current_streak if outcome.relationship_streak else None
                    ),
                },
            )
        return outcome

    def _calculate(
        self,
        event: StreakEvent,
        user: UserStreak,
        relationship: Optional[RelationshipStreak],
    ) -> tuple[UserStreak, Optional[RelationshipStreak], int]:
        """Next user streak, next relationship streak (contact events) and points."""
        next_user = calculator.apply_user_activity(user, event.occurred_at)
        if not event.kind.is_contact:
            return next_user, None, calculator.activity_points(next_user.multiplier, self.activity_base_points)

        if relationship is None:
            relationship = RelationshipStreak(
                user_id=event.user_id,
                relationship_id=event.relationship_id,
                contact_frequency_days=self.default_frequency_days,
            )
        points = calculator.contact_points(event.kind, relationship.current_streak)
        next_relationship = calculator.apply_contact(relationship, event.occurred_at, self.grace_period_days)
        return next_user, next_relationship, points

    async def _queue_with_projection(self, event: StreakEvent) -> StreakOutcome:
        user = await self.cache.get_user_streak(event.user_id) or UserStreak(user_id=event.user_id)
        relationship = None
        if event.kind.is_contact:
            relationship = await self.cache.get_relationship_streak(event.user_id, event.relationship_id)
        next_user, next_relationship, points = self._calculate(event, user, relationship)
        next_user = calculator.with_points(next_user, next_user.total_points + points)

        recorded = replace(event, points_earned=points)
        await self.queue.enqueue(recorded)
        await self._mirror(next_user, next_relationship)
        return StreakOutcome(
            user_streak=next_user,
            relationship_streak=next_relationship,
            event=recorded,
            confirmed=False,
            queued=True,
        )

    # ------------------------------------------------------------------
    # Sweep and frequency
    # ------------------------------------------------------------------

    async def run_daily_sweep(self, user_id: str, now: Optional[datetime] = None) -> SweepResult:
        """Re-derive ACTIVE / AT_RISK / BROKEN for every relationship of ``user_id``.

        Offline, the sweep runs over the cached snapshot only and is not queued;
        the next online sweep recomputes it from authoritative state.
        """
        now = self._now(now)

        async def work(tx: RemoteSession) -> SweepResult:
            result = SweepResult()
            for streak in await tx.list_relationship_streaks(user_id):
                swept = calculator.apply_sweep(streak, now)
                if (swept.status, swept.current_streak) != (streak.status, streak.current_streak):
                    swept = await tx.save_relationship_streak(swept)
                    result.changed.append(streak.relationship_id)
                result.streaks.append(swept)
            return result

        if self.connectivity.is_online():
            try:
                result = await self.remote.transaction(work)
            except RemoteUnavailableError as exc:
                log.warning("Sweep for %s falls back to the cached snapshot: %s", user_id, exc)
            else:
                await self._mirror_relationships(user_id, result.streaks)
                if result.changed:
                    log.info("Daily sweep for %s changed %d streak(s)", user_id, len(result.changed))
                return result

        result = SweepResult(confirmed=False)
        for streak in await self.cache.get_relationship_streaks(user_id):
            swept = calculator.apply_sweep(streak, now)
            if (swept.status, swept.current_streak) != (streak.status, streak.current_streak):
                result.changed.append(streak.relationship_id)
            result.streaks.append(swept)
        await self._mirror_relationships(user_id, result.streaks)
        return result

    async def set_contact_frequency(
        self, user_id: str, relationship_id: str, days: int, now: Optional[datetime] = None
    ) -> RelationshipStreak:
        """Change the target cadence and reschedule due date and grace deadline."""
        if days <= 0:
            raise InvalidStateError("contact_frequency_days", "must be greater than zero")
        now = self._now(now)

        async def work(tx: RemoteSession) -> RelationshipStreak:
            streak = await tx.get_relationship_streak(user_id, relationship_id)
            if streak is None:
                streak = RelationshipStreak(
                    user_id=user_id, relationship_id=relationship_id, contact_frequency_days=days
                )
            streak = replace(streak, contact_frequency_days=days)
            if streak.last_contact_date is not None:
                streak = calculator.schedule_from(streak, streak.last_contact_date, self.grace_period_days)
                if streak.status != StreakStatus.BROKEN:
                    streak = calculator.apply_sweep(streak, now)
            return await tx.save_relationship_streak(streak)

        async with self._entity_locks(user_id, relationship_id):
            streak = await self.remote.transaction(work)
        await self._mirror(None, streak)
        log.info("Contact frequency for %s set to %d day(s)", relationship_id, days)
        return streak

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _prefer_remote(self, user_id: str, work, fallback):
        """Remote read when reachable (draining the queue first), cache otherwise."""
        if self.connectivity.is_online():
            if await self.queue.pending_count():
                await self.sync(foreground=True)
            if not await self.queue.pending_count():
                try:
                    return await self.remote.transaction(work), True
                except RemoteUnavailableError as exc:
                    log.warning("Serving cached streaks for %s: %s", user_id, exc)
        return await fallback(), False

    async def get_user_streak(self, user_id: str) -> StreakSnapshot:
        user, confirmed = await self._prefer_remote(
            user_id,
            lambda tx: tx.get_user_streak(user_id),
            lambda: self.cache.get_user_streak(user_id),
        )
        if confirmed and user is not None:
            await self._mirror(user, None)
        return StreakSnapshot(user_streak=user, confirmed=confirmed)

    async def list_relationship_streaks(self, user_id: str) -> StreakSnapshot:
        streaks, confirmed = await self._prefer_remote(
            user_id,
            lambda tx: tx.list_relationship_streaks(user_id),
            lambda: self.cache.get_relationship_streaks(user_id),
        )
        if confirmed:
            await self._mirror_relationships(user_id, streaks)
        return StreakSnapshot(relationship_streaks=streaks, confirmed=confirmed)

    async def streak_stats(self, user_id: str) -> StreakStats:
        snapshot = await self.list_relationship_streaks(user_id)
        return stats.streak_stats(snapshot.relationship_streaks)

    async def suggested_contacts(
        self, user_id: str, now: Optional[datetime] = None, limit: int = 3
    ) -> list[SuggestedContact]:
        snapshot = await self.list_relationship_streaks(user_id)
        return stats.suggest_contacts(snapshot.relationship_streaks, self._now(now), limit)

    # ------------------------------------------------------------------
    # Rewards
    # ------------------------------------------------------------------

    async def claim_milestone(self, user_id: str, milestone_id: int, now: Optional[datetime] = None) -> ClaimResult:
        async with self._entity_locks(user_id):
            result = await self.ledger.claim_milestone(user_id, milestone_id, self._now(now))
        if not result.already_claimed:
            await self._refresh_user(user_id)
        return result

    async def redeem_reward(self, user_id: str, reward_id: int, now: Optional[datetime] = None) -> UserReward:
        return await self.ledger.redeem_reward(user_id, reward_id, self._now(now))

    async def use_recovery_item(
        self,
        user_id: str,
        item_id: int,
        relationship_id: str,
        now: Optional[datetime] = None,
    ) -> RecoveryResult:
        async with self._entity_locks(user_id, relationship_id):
            result = await self.ledger.use_recovery_item(user_id, item_id, relationship_id, self._now(now))
        await self._mirror(None, result.relationship_streak)
        return result

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(self, now: Optional[datetime] = None, *, foreground: bool = False) -> SyncReport:
        """Replay the offline queue and swap cached projections for remote state.

        ``foreground`` is set when a user request drains the queue before its
        own write; see ``OfflineEventQueue.replay``.
        """
        now = self._now(now)
        replay = await self.queue.replay(self._apply_queued, foreground=foreground)

        report = SyncReport(
            applied=len(replay.applied),
            duplicates=len(replay.duplicates),
            failures=replay.failures,
            remaining=replay.remaining,
        )
        touched = {o.event.user_id for o in replay.applied}
        touched |= {e.user_id for e in replay.duplicates}
        touched |= {f.user_id for f in replay.failures}
        for user_id in sorted(touched):
            await self._refresh_user(user_id, with_relationships=True)

        for outcome in replay.applied:
            report.notifications.extend(outcome.notifications)
        report.notifications.extend(
            notification_scheduler.sync_failure_request(f, now) for f in replay.failures
        )
        for user_id in sorted(touched):
            await self._emit(user_id, [n for n in report.notifications if n.user_id == user_id])
        return report

    async def _apply_queued(self, event: StreakEvent) -> StreakOutcome:
        # The replay policy owns retries here, so the store tries once per attempt
        async with self._entity_locks(event.user_id, event.relationship_id):
            return await self._apply_remote(event, retry=False)

    async def sync_failures(self, user_id: str) -> list[SyncFailure]:
        return await self.cache.sync_failures(user_id)

    async def pending_events(self) -> list[StreakEvent]:
        return await self.queue.pending()

    async def list_events(self, user_id: str, relationship_id: Optional[str] = None) -> list[StreakEvent]:
        """Applied events from the remote log, oldest first. Queued events are not included."""
        return await self.remote.transaction(lambda tx: tx.list_events(user_id, relationship_id))

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def plan_notifications(
        self,
        user_id: str,
        now: Optional[datetime] = None,
        prefs: Optional[NotificationPreferences] = None,
    ) -> list[NotificationRequest]:
        """Decide at-risk alerts, the daily reminder and the weekly summary,
        hand them to delivery (if configured) and record them in history."""
        now = self._now(now)
        prefs = prefs or self.preferences
        snapshot = await self.list_relationship_streaks(user_id)
        history = await self.cache.notification_history(user_id)

        names = {}
        for streak in notification_scheduler.select_at_risk(snapshot.relationship_streaks, prefs, history, now):
            names[streak.relationship_id] = await self._display_name(streak.relationship_id)

        plan = notification_scheduler.build_notification_plan(
            user_id,
            snapshot.relationship_streaks,
            prefs,
            history,
            now,
            names=names,
            stats=stats.streak_stats(snapshot.relationship_streaks),
        )
        await self._emit(user_id, plan, now)
        return plan

    async def _emit(
        self, user_id: str, requests: Iterable[NotificationRequest], now: Optional[datetime] = None
    ) -> None:
        requests = list(requests)
        if not requests:
            return
        now = self._now(now)
        if self.delivery is not None:
            for request in requests:
                try:
                    await self.delivery.schedule(request)
                except Exception:
                    # Delivery is best effort; the history still dedupes the next plan
                    log.exception("Notification delivery failed for %s", request.dedupe_key)
        try:
            await self.cache.append_notifications(
                user_id, [notification_scheduler.to_record(r, now) for r in requests]
            )
        except CacheUnavailableError as exc:
            log.warning("Could not record notification history for %s: %s", user_id, exc)

    async def _display_name(self, relationship_id: str) -> str:
        if self.directory is None:
            return relationship_id
        return await self.directory.display_name(relationship_id) or relationship_id

    # ------------------------------------------------------------------
    # Local cache mirroring
    # ------------------------------------------------------------------

    async def _mirror(
        self, user: Optional[UserStreak], relationship: Optional[RelationshipStreak]
    ) -> None:
        try:
            if user is not None:
                await self.cache.put_user_streak(user)
            if relationship is not None:
                await self.cache.put_relationship_streak(relationship)
        except CacheUnavailableError as exc:
            log.warning("Local cache mirror failed: %s", exc)

    async def _mirror_relationships(self, user_id: str, streaks: list[RelationshipStreak]) -> None:
        try:
            await self.cache.replace_relationship_streaks(user_id, streaks)
        except CacheUnavailableError as exc:
            log.warning("Local cache mirror failed: %s", exc)

    async def _refresh_user(self, user_id: str, *, with_relationships: bool = False) -> None:
        """Overwrite the cached snapshot with authoritative state."""
        async def work(tx: RemoteSession):
            user = await tx.get_user_streak(user_id)
            streaks = await tx.list_relationship_streaks(user_id) if with_relationships else None
            return user, streaks

        try:
            user, streaks = await self.remote.transaction(work)
        except RemoteUnavailableError as exc:
            log.warning("Could not refresh cached streaks for %s: %s", user_id, exc)
            return
        await self._mirror(user, None)
        if streaks is not None:
            await self._mirror_relationships(user_id, streaks)
