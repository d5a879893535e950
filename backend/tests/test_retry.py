"""Tests for the bounded retry policy."""

import random

import pytest

from streakkeeper.core.errors import InvalidStateError, RemoteUnavailableError
from streakkeeper.core.retry import RetryPolicy


def _policy(attempts=3, **kwargs):
    delays = []

    async def record_sleep(delay):
        delays.append(delay)

    policy = RetryPolicy(max_attempts=attempts, sleep=record_sleep, **kwargs)
    return policy, delays


def test_delay_doubles_and_caps_without_jitter():
    policy = RetryPolicy(base_delay=0.5, max_delay=3.0, jitter=0)
    assert [policy.delay_for(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_jitter_stays_within_bounds():
    policy = RetryPolicy(base_delay=1.0, jitter=0.25, rng=random.Random(7))
    for _ in range(50):
        assert 0.75 <= policy.delay_for(1) <= 1.25


async def test_run_retries_transient_errors_until_success():
    policy, delays = _policy(attempts=3, base_delay=0.1, jitter=0)
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise RemoteUnavailableError("timeout")
        return "ok"

    assert await policy.run(flaky) == "ok"
    assert len(calls) == 3
    assert delays == [0.1, 0.2]


async def test_run_reraises_after_last_attempt():
    policy, delays = _policy(attempts=2, base_delay=0, jitter=0)
    seen = []

    async def always_down():
        raise RemoteUnavailableError("refused")

    with pytest.raises(RemoteUnavailableError):
        await policy.run(always_down, on_retry=lambda attempt, exc: seen.append(attempt))
    assert seen == [1]
    assert len(delays) == 1


async def test_run_does_not_retry_permanent_errors():
    policy, delays = _policy(attempts=5)
    calls = []

    async def invalid():
        calls.append(1)
        raise InvalidStateError("frequency", "must be positive")

    with pytest.raises(InvalidStateError):
        await policy.run(invalid)
    assert len(calls) == 1
    assert delays == []


async def test_retry_if_overrides_default_predicate():
    policy, _ = _policy(attempts=4, base_delay=0)
    calls = []

    async def down():
        calls.append(1)
        raise RemoteUnavailableError("down")

    with pytest.raises(RemoteUnavailableError):
        await policy.run(down, retry_if=lambda exc: False)
    assert len(calls) == 1
