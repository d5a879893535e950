"""Local cache - last-known streak snapshots, the pending event queue, sync
failures and notification history, kept in Redis.

Key layout (``prefix`` defaults to ``streaks``)::

    {prefix}:user:{user_id}               string  UserStreak JSON
    {prefix}:relationships:{user_id}      hash    relationship_id -> RelationshipStreak JSON
    {prefix}:pending:{device_id}          list    StreakEvent JSON, FIFO
    {prefix}:sync_failures:{user_id}      list    SyncFailure JSON
    {prefix}:notifications:{user_id}      list    NotificationRecord JSON, newest last

No business logic lives here.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Iterable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from streakkeeper.config import settings
from streakkeeper.core.errors import CacheUnavailableError
from streakkeeper.domain import (
    NotificationRecord,
    RelationshipStreak,
    StreakEvent,
    SyncFailure,
    UserStreak,
)
from streakkeeper.storage import mapping


class LocalCache:
    def __init__(
        self,
        client: redis.Redis,
        *,
        prefix: str = settings.CACHE_KEY_PREFIX,
        device_id: str = settings.DEVICE_ID,
        snapshot_ttl: int = settings.CACHE_SNAPSHOT_TTL,
    ):
        self.client = client
        self.prefix = prefix
        self.device_id = device_id
        self.snapshot_ttl = snapshot_ttl

    # --- keys ---------------------------------------------------------------

    def _user_key(self, user_id: str) -> str:
        return f"{self.prefix}:user:{user_id}"

    def _relationships_key(self, user_id: str) -> str:
        return f"{self.prefix}:relationships:{user_id}"

    def _pending_key(self) -> str:
        return f"{self.prefix}:pending:{self.device_id}"

    def _failures_key(self, user_id: str) -> str:
        return f"{self.prefix}:sync_failures:{user_id}"

    def _notifications_key(self, user_id: str) -> str:
        return f"{self.prefix}:notifications:{user_id}"

    @asynccontextmanager
    async def _guard(self, action: str):
        try:
            yield
        except RedisError as exc:
            raise CacheUnavailableError(f"local cache {action} failed: {exc.__class__.__name__}") from exc

    # --- snapshots ----------------------------------------------------------

    async def get_user_streak(self, user_id: str) -> Optional[UserStreak]:
        async with self._guard("read"):
            doc = await self.client.get(self._user_key(user_id))
        return mapping.user_streak_from_doc(doc) if doc else None

    async def put_user_streak(self, streak: UserStreak) -> None:
        async with self._guard("write"):
            await self.client.set(
                self._user_key(streak.user_id),
                mapping.user_streak_to_doc(streak),
                ex=self.snapshot_ttl,
            )

    async def get_relationship_streak(self, user_id: str, relationship_id: str) -> Optional[RelationshipStreak]:
        async with self._guard("read"):
            doc = await self.client.hget(self._relationships_key(user_id), relationship_id)
        return mapping.relationship_streak_from_doc(doc) if doc else None

    async def get_relationship_streaks(self, user_id: str) -> list[RelationshipStreak]:
        async with self._guard("read"):
            docs = await self.client.hgetall(self._relationships_key(user_id))
        streaks = [mapping.relationship_streak_from_doc(d) for d in docs.values()]
        return sorted(streaks, key=lambda s: s.relationship_id)

    async def put_relationship_streak(self, streak: RelationshipStreak) -> None:
        key = self._relationships_key(streak.user_id)
        async with self._guard("write"):
            pipe = self.client.pipeline(transaction=True)
            pipe.hset(key, streak.relationship_id, mapping.relationship_streak_to_doc(streak))
            pipe.expire(key, self.snapshot_ttl)
            await pipe.execute()

    async def replace_relationship_streaks(self, user_id: str, streaks: Iterable[RelationshipStreak]) -> None:
        """Swap the whole relationship snapshot for ``user_id`` in one step."""
        key = self._relationships_key(user_id)
        docs = {s.relationship_id: mapping.relationship_streak_to_doc(s) for s in streaks}
        async with self._guard("write"):
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(key)
            if docs:
                pipe.hset(key, mapping=docs)
                pipe.expire(key, self.snapshot_ttl)
            await pipe.execute()

    # --- pending events -----------------------------------------------------

    async def push_pending(self, event: StreakEvent) -> int:
        async with self._guard("write"):
            return await self.client.rpush(self._pending_key(), mapping.event_to_doc(event))

    async def peek_pending(self) -> Optional[StreakEvent]:
        async with self._guard("read"):
            doc = await self.client.lindex(self._pending_key(), 0)
        return mapping.event_from_doc(doc) if doc else None

    async def pop_pending(self) -> Optional[StreakEvent]:
        async with self._guard("write"):
            doc = await self.client.lpop(self._pending_key())
        return mapping.event_from_doc(doc) if doc else None

    async def pending(self) -> list[StreakEvent]:
        async with self._guard("read"):
            docs = await self.client.lrange(self._pending_key(), 0, -1)
        return [mapping.event_from_doc(d) for d in docs]

    async def pending_count(self) -> int:
        async with self._guard("read"):
            return await self.client.llen(self._pending_key())

    # --- sync failures ------------------------------------------------------

    async def add_sync_failure(
        self, failure: SyncFailure, limit: int = settings.SYNC_FAILURE_HISTORY_LIMIT
    ) -> None:
        """Record a dropped event, keeping only the newest ``limit`` per user."""
        key = self._failures_key(failure.user_id)
        async with self._guard("write"):
            pipe = self.client.pipeline(transaction=True)
            pipe.rpush(key, mapping.sync_failure_to_doc(failure))
            pipe.ltrim(key, -limit, -1)
            await pipe.execute()

    async def sync_failures(self, user_id: str) -> list[SyncFailure]:
        async with self._guard("read"):
            docs = await self.client.lrange(self._failures_key(user_id), 0, -1)
        return [mapping.sync_failure_from_doc(d) for d in docs]

    # --- notification history -----------------------------------------------

    async def append_notifications(
        self,
        user_id: str,
        records: Iterable[NotificationRecord],
        limit: int = settings.NOTIFICATION_HISTORY_LIMIT,
    ) -> None:
        docs = [mapping.notification_record_to_doc(r) for r in records]
        if not docs:
            return
        key = self._notifications_key(user_id)
        async with self._guard("write"):
            pipe = self.client.pipeline(transaction=True)
            pipe.rpush(key, *docs)
            pipe.ltrim(key, -limit, -1)
            await pipe.execute()

    async def notification_history(self, user_id: str) -> list[NotificationRecord]:
        async with self._guard("read"):
            docs = await self.client.lrange(self._notifications_key(user_id), 0, -1)
        return [mapping.notification_record_from_doc(d) for d in docs]
