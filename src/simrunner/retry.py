"""Bounded exponential backoff for transient remote failures."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .config import RetrySettings
from .errors import TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]
ClockFunc = Callable[[], float]


@dataclass
class RetryPolicy:
    """Retry an async operation while it fails with a transient error.

    Only :class:`TransientNetworkError` is retried; bare ``TimeoutError`` and
    ``ConnectionError`` from collaborators are treated as transient too and
    normalized to it. Every other exception propagates on the first attempt.

    Attributes:
        max_attempts: Total attempts, including the first one.
        base_delay: Delay in seconds before the second attempt.
        multiplier: Growth factor applied to the delay after each attempt.
        max_delay: Upper bound for a single delay.
        max_elapsed: Stop retrying once this many seconds have passed, or
            would have passed after the next delay.
        jitter: Fraction of the delay randomized in both directions
            (``0.5`` means +/-50%).
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0
    max_elapsed: float = 60.0
    jitter: float = 0.5
    sleep: SleepFunc = asyncio.sleep
    clock: ClockFunc = time.monotonic
    rng: Optional[random.Random] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")

    @classmethod
    def from_settings(cls, settings: RetrySettings, **overrides: Any) -> "RetryPolicy":
        values = dict(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            multiplier=settings.multiplier,
            max_delay=settings.max_delay,
            max_elapsed=settings.max_elapsed,
            jitter=settings.jitter,
        )
        values.update(overrides)
        return cls(**values)

    @classmethod
    def quick(cls, **overrides: Any) -> "RetryPolicy":
        """Short policy for cheap commands such as status queries."""
        values = dict(max_attempts=2, base_delay=0.2, multiplier=2.0, max_delay=2.0)
        values.update(overrides)
        return cls(**values)

    @classmethod
    def files(cls, **overrides: Any) -> "RetryPolicy":
        """Patient policy for file transfers."""
        values = dict(
            max_attempts=5,
            base_delay=2.0,
            multiplier=1.5,
            max_delay=60.0,
            max_elapsed=300.0,
        )
        values.update(overrides)
        return cls(**values)

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after failed attempt number ``attempt`` (1-based)."""
        delay = min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)
        if self.jitter and delay:
            rng = self.rng or random
            delay *= 1 + rng.uniform(-self.jitter, self.jitter)
        return max(0.0, delay)

    async def call(
        self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Await ``func(*args, **kwargs)``, retrying transient failures.

        Raises:
            TransientNetworkError: The attempt or time budget ran out. Its
                ``attempts`` attribute holds the number of attempts made.
        """
        started = self.clock()
        attempt = 0
        name = getattr(func, "__name__", "operation")
        while True:
            attempt += 1
            try:
                return await func(*args, **kwargs)
            except TransientNetworkError as e:
                error = e
            except (TimeoutError, ConnectionError) as e:
                error = TransientNetworkError(str(e) or type(e).__name__)
                error.__cause__ = e

            if attempt >= self.max_attempts:
                break
            delay = self.delay_for(attempt)
            if self.clock() - started + delay > self.max_elapsed:
                logger.debug("Retry time budget exhausted for %s", name)
                break
            logger.debug(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                name,
                attempt,
                self.max_attempts,
                error.message,
                delay,
            )
            await self.sleep(delay)

        error.attempts = attempt
        error.message = f"{error.message} (gave up after {attempt} attempt(s))"
        raise error
