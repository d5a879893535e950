"""Bounded retry with exponential backoff and jitter."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from streakkeeper.core.errors import is_retryable

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 30.0
    jitter: float = 0.25  # fraction of the delay added or removed at random
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    rng: random.Random = field(default_factory=random.Random)

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if self.jitter and delay:
            delay += delay * self.jitter * self.rng.uniform(-1.0, 1.0)
        return max(0.0, delay)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        retry_if: Callable[[BaseException], bool] = is_retryable,
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
    ) -> T:
        """Run ``operation`` until it succeeds, fails for good, or attempts run out.

        The last exception is re-raised once ``max_attempts`` is reached.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as exc:
                if attempt >= self.max_attempts or not retry_if(exc):
                    raise
                delay = self.delay_for(attempt)
                log.debug("Retrying after %s (attempt %d, %.2fs)", type(exc).__name__, attempt, delay)
                if on_retry is not None:
                    on_retry(attempt, exc)
                await self.sleep(delay)
                attempt += 1
