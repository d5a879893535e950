"""Offline event queue - a per-device FIFO of events the remote store has not
seen yet, replayed in recorded order once connectivity returns."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from streakkeeper.config import settings
from streakkeeper.core.errors import ReplayExhaustedError, StreakError, is_retryable
from streakkeeper.core.retry import RetryPolicy
from streakkeeper.domain import StreakEvent, StreakOutcome, SyncFailure
from streakkeeper.services.collaborators import Connectivity
from streakkeeper.storage.local_cache import LocalCache

log = logging.getLogger(__name__)

ApplyEvent = Callable[[StreakEvent], Awaitable[StreakOutcome]]


def replay_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.REPLAY_MAX_ATTEMPTS,
        base_delay=settings.REPLAY_BASE_DELAY,
        max_delay=settings.REPLAY_MAX_DELAY,
        jitter=settings.RETRY_JITTER,
    )


@dataclass
class ReplayReport:
    applied: list[StreakOutcome] = field(default_factory=list)
    duplicates: list[StreakEvent] = field(default_factory=list)
    failures: list[SyncFailure] = field(default_factory=list)
    remaining: int = 0
    halted: bool = False  # stopped early; the head event is still queued


class OfflineEventQueue:
    def __init__(
        self,
        cache: LocalCache,
        connectivity: Connectivity,
        policy: Optional[RetryPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.cache = cache
        self.connectivity = connectivity
        self.policy = policy or replay_policy()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._replay_lock = asyncio.Lock()

    async def enqueue(self, event: StreakEvent) -> int:
        """Append ``event``; returns the queue length."""
        size = await self.cache.push_pending(event)
        log.info("Queued %s event %s (%d pending)", event.kind.value, event.event_id, size)
        return size

    async def pending(self) -> list[StreakEvent]:
        return await self.cache.pending()

    async def pending_count(self) -> int:
        return await self.cache.pending_count()

    async def replay(self, apply: ApplyEvent, *, foreground: bool = False) -> ReplayReport:
        """Apply queued events one at a time, oldest first.

        An event leaves the queue once it is applied, recognised as a
        duplicate, or given up on. Giving up records a ``SyncFailure``; the
        event is never dropped without one. Only one replay runs at a time.

        A ``foreground`` replay runs inside a user request: each event gets a
        single attempt and a retryable failure stops the replay with the event
        still queued. Only background replays spend the retry budget.
        """
        policy = RetryPolicy(max_attempts=1) if foreground else self.policy
        async with self._replay_lock:
            report = ReplayReport()
            while True:
                if not self.connectivity.is_online():
                    report.halted = True
                    break
                event = await self.cache.peek_pending()
                if event is None:
                    break

                attempts = 1

                def count_retry(attempt: int, exc: BaseException) -> None:
                    nonlocal attempts
                    attempts = attempt + 1

                try:
                    outcome = await policy.run(
                        lambda: apply(event),
                        retry_if=lambda exc: is_retryable(exc) and self.connectivity.is_online(),
                        on_retry=count_retry,
                    )
                except StreakError as exc:
                    if is_retryable(exc) and (foreground or not self.connectivity.is_online()):
                        # keep the event for the next replay
                        report.halted = True
                        break
                    failure = await self._give_up(event, attempts, exc)
                    report.failures.append(failure)
                    continue

                await self.cache.pop_pending()
                if outcome.duplicate:
                    log.info("Replay skipped already applied event %s", event.event_id)
                    report.duplicates.append(event)
                else:
                    report.applied.append(outcome)

            report.remaining = await self.cache.pending_count()
            log.info(
                "Replay finished",
                extra={
                    "applied": len(report.applied),
                    "duplicates": len(report.duplicates),
                    "failed": len(report.failures),
                    "remaining": report.remaining,
                },
            )
            return report

    async def _give_up(self, event: StreakEvent, attempts: int, exc: StreakError) -> SyncFailure:
        error = ReplayExhaustedError(event.event_id, attempts, exc) if is_retryable(exc) else exc
        failure = SyncFailure(
            event_id=event.event_id,
            user_id=event.user_id,
            kind=event.kind,
            occurred_at=event.occurred_at,
            attempts=attempts,
            reason=f"{error.code}: {error.message}",
            failed_at=self.clock(),
            relationship_id=event.relationship_id,
        )
        await self.cache.add_sync_failure(failure)
        await self.cache.pop_pending()
        log.warning("Dropped event %s from the offline queue: %s", event.event_id, failure.reason)
        return failure
