"""Adaptive rate limiting for GitHub API calls.

All calls scheduled through an `AdaptiveRateLimiter` run one at a time, are spaced at least `min_interval_ms` apart and
draw from a call budget that refills on a fixed interval. After each successful response the limiter re-tunes itself from
the `x-ratelimit-remaining` and `x-ratelimit-reset` headers so the remaining budget is spread evenly until the reset.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from logging import Logger
from typing import TypeVar

from fastmcp.utilities.logging import get_logger
from pydantic import BaseModel, Field

T = TypeVar("T")

DEFAULT_MIN_INTERVAL_MS = 1000
DEFAULT_MIN_INTERVAL_FLOOR_MS = 250
DEFAULT_CALL_BUDGET = 5000
DEFAULT_BUDGET_REFILL_AMOUNT = 5000
DEFAULT_BUDGET_REFILL_INTERVAL_MS = 60 * 60 * 1000

RATE_LIMIT_REMAINING_HEADER = "x-ratelimit-remaining"
RATE_LIMIT_RESET_HEADER = "x-ratelimit-reset"


class RateLimiterState(BaseModel):
    """The tunable state of the limiter. Times are in milliseconds on the limiter's clock."""

    min_interval_ms: int = Field(default=DEFAULT_MIN_INTERVAL_MS)
    call_budget: int = Field(default=DEFAULT_CALL_BUDGET)
    budget_refill_amount: int = Field(default=DEFAULT_BUDGET_REFILL_AMOUNT)
    budget_refill_interval_ms: int = Field(default=DEFAULT_BUDGET_REFILL_INTERVAL_MS)
    budget_refilled_at: float = Field(default=0.0, description="When the budget was last refilled.")
    last_call_at: float | None = Field(default=None, description="When the most recent call started.")


def parse_rate_limit_headers(headers: Mapping[str, str]) -> tuple[int, int] | None:
    """Return (remaining, reset epoch seconds) from response headers, or None if either is missing or malformed."""

    remaining = headers.get(RATE_LIMIT_REMAINING_HEADER)
    reset = headers.get(RATE_LIMIT_RESET_HEADER)

    if remaining is None or reset is None:
        return None

    try:
        return int(remaining), int(reset)
    except ValueError:
        return None


class AdaptiveRateLimiter:
    state: RateLimiterState
    min_interval_floor_ms: int
    logger: Logger

    def __init__(
        self,
        state: RateLimiterState | None = None,
        min_interval_floor_ms: int = DEFAULT_MIN_INTERVAL_FLOOR_MS,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        logger: Logger | None = None,
    ):
        """Create a limiter.

        Args:
            state: The starting state, defaults to GitHub's standard authenticated budget.
            min_interval_floor_ms: The smallest spacing re-tuning may choose.
            clock: Returns the current epoch time in seconds. Defaults to `time.time`.
            sleep: Awaitable sleep in seconds. Defaults to `asyncio.sleep`.
            logger: The logger to use.
        """

        self._clock = clock or time.time
        self._sleep = sleep or asyncio.sleep
        self._lock = asyncio.Lock()
        self.min_interval_floor_ms = min_interval_floor_ms
        self.logger = logger or get_logger(name=__name__)
        self.state = state or RateLimiterState(budget_refilled_at=self._now_ms())

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _refill_budget(self, now_ms: float) -> None:
        if now_ms - self.state.budget_refilled_at >= self.state.budget_refill_interval_ms:
            self.state.call_budget = self.state.budget_refill_amount
            self.state.budget_refilled_at = now_ms

    def _delay_until_next_call_ms(self) -> float:
        """How long the next call must wait, or 0 if it may start now."""

        now_ms = self._now_ms()

        self._refill_budget(now_ms)

        if self.state.call_budget <= 0:
            return self.state.budget_refilled_at + self.state.budget_refill_interval_ms - now_ms

        if self.state.last_call_at is None:
            return 0

        return max(0.0, self.state.last_call_at + self.state.min_interval_ms - now_ms)

    async def schedule(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run the operation once the limiter allows it. Only one scheduled operation is ever in flight."""

        async with self._lock:
            while (delay_ms := self._delay_until_next_call_ms()) > 0:
                self.logger.debug(f"Rate limiter delaying next call by {delay_ms:.0f}ms")
                await self._sleep(delay_ms / 1000)

            self.state.last_call_at = self._now_ms()
            self.state.call_budget -= 1

            return await operation()

    def update_from_headers(self, headers: Mapping[str, str]) -> None:
        """Re-tune the limiter from a successful response's rate limit headers."""

        if not (parsed := parse_rate_limit_headers(headers)):
            return

        remaining, reset_epoch_seconds = parsed

        self.update(remaining=remaining, reset_in_ms=reset_epoch_seconds * 1000 - self._now_ms())

    def update(self, remaining: int, reset_in_ms: float) -> None:
        """Spread the remaining budget evenly until the reset, or pause entirely until the reset when none is left."""

        if remaining > 0:
            self.state.min_interval_ms = max(self.min_interval_floor_ms, int(reset_in_ms // remaining))
            self.state.call_budget = remaining
            return

        if reset_in_ms > 0:
            self.logger.warning(f"Rate limit exhausted, pausing calls for {reset_in_ms / 1000:.0f}s until reset")
            self.state.call_budget = 0
            self.state.budget_refilled_at = self._now_ms()
            self.state.budget_refill_interval_ms = int(reset_in_ms)
