"""Tests for the offline event queue and its replay loop."""

from datetime import timedelta

from streakkeeper.core.errors import InvalidStateError, RemoteUnavailableError
from streakkeeper.domain import StreakEvent, StreakEventKind, StreakOutcome
from streakkeeper.services.offline_queue import OfflineEventQueue

from conftest import NOW, fast_policy


def _event(n, kind=StreakEventKind.CONTACT_MESSAGE):
    return StreakEvent(
        event_id=f"evt-{n}",
        user_id="u1",
        kind=kind,
        occurred_at=NOW + timedelta(minutes=n),
        relationship_id="rel-1",
    )


def _queue(cache, connectivity, attempts=3):
    return OfflineEventQueue(cache, connectivity, policy=fast_policy(attempts), clock=lambda: NOW)


async def test_enqueue_keeps_fifo_order(cache, connectivity):
    queue = _queue(cache, connectivity)
    for n in range(3):
        assert await queue.enqueue(_event(n)) == n + 1

    pending = await queue.pending()
    assert [e.event_id for e in pending] == ["evt-0", "evt-1", "evt-2"]
    assert pending[0].occurred_at == NOW


async def test_replay_applies_in_recorded_order(cache, connectivity):
    queue = _queue(cache, connectivity)
    for n in range(3):
        await queue.enqueue(_event(n))
    seen = []

    async def apply(event):
        seen.append(event.event_id)
        return StreakOutcome(event=event)

    report = await queue.replay(apply)

    assert seen == ["evt-0", "evt-1", "evt-2"]
    assert len(report.applied) == 3
    assert report.remaining == 0
    assert not report.halted


async def test_replay_does_nothing_while_offline(cache, connectivity):
    queue = _queue(cache, connectivity)
    await queue.enqueue(_event(0))
    await connectivity.set_online(False)

    async def apply(event):
        raise AssertionError("must not be called offline")

    report = await queue.replay(apply)
    assert report.halted
    assert report.remaining == 1


async def test_replay_halts_and_keeps_event_when_connection_drops(cache, connectivity):
    queue = _queue(cache, connectivity)
    await queue.enqueue(_event(0))
    await queue.enqueue(_event(1))

    async def apply(event):
        await connectivity.set_online(False)
        raise RemoteUnavailableError("connection lost")

    report = await queue.replay(apply)

    assert report.halted
    assert report.failures == []
    assert [e.event_id for e in await queue.pending()] == ["evt-0", "evt-1"]


async def test_foreground_replay_tries_once_and_keeps_event(cache, connectivity):
    queue = _queue(cache, connectivity, attempts=5)
    await queue.enqueue(_event(0))
    await queue.enqueue(_event(1))
    calls = []

    async def apply(event):
        calls.append(event.event_id)
        raise RemoteUnavailableError("remote store is down")

    report = await queue.replay(apply, foreground=True)

    assert calls == ["evt-0"]
    assert report.halted
    assert report.failures == []
    assert report.remaining == 2
    assert await cache.sync_failures("u1") == []


async def test_replay_records_failure_after_exhausting_attempts(cache, connectivity):
    queue = _queue(cache, connectivity, attempts=3)
    await queue.enqueue(_event(0))
    await queue.enqueue(_event(1))
    calls = []

    async def apply(event):
        calls.append(event.event_id)
        if event.event_id == "evt-0":
            raise RemoteUnavailableError("timeout")
        return StreakOutcome(event=event)

    report = await queue.replay(apply)

    assert calls == ["evt-0", "evt-0", "evt-0", "evt-1"]
    assert len(report.failures) == 1
    failure = report.failures[0]
    assert failure.event_id == "evt-0"
    assert failure.attempts == 3
    assert failure.reason.startswith("replay_exhausted")
    assert failure.failed_at == NOW
    assert len(report.applied) == 1
    assert await cache.sync_failures("u1") == [failure]


async def test_replay_gives_up_immediately_on_permanent_error(cache, connectivity):
    queue = _queue(cache, connectivity, attempts=5)
    await queue.enqueue(_event(0))
    calls = []

    async def apply(event):
        calls.append(event.event_id)
        raise InvalidStateError("relationship_id", "unknown relationship")

    report = await queue.replay(apply)

    assert calls == ["evt-0"]
    assert report.failures[0].attempts == 1
    assert report.failures[0].reason.startswith("invalid_state")
    assert report.remaining == 0


async def test_replay_counts_duplicates_separately(cache, connectivity):
    queue = _queue(cache, connectivity)
    await queue.enqueue(_event(0))
    await queue.enqueue(_event(1))

    async def apply(event):
        return StreakOutcome(event=event, duplicate=event.event_id == "evt-0")

    report = await queue.replay(apply)

    assert [e.event_id for e in report.duplicates] == ["evt-0"]
    assert len(report.applied) == 1
    assert await queue.pending_count() == 0
