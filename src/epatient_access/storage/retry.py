"""Bounded retry with exponential backoff for transient storage faults."""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 0.05
    max_delay: float = 1.0
    multiplier: float = 2.0
    jitter: float = 0.1

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = min(self.initial_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)
        return delay

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        retry_on: tuple[type[BaseException], ...],
        description: str = "storage operation",
    ) -> T:
        """Await ``operation``, retrying on ``retry_on`` until attempts run out.

        The last error is re-raised once ``max_attempts`` is reached; errors
        outside ``retry_on`` propagate immediately.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except retry_on as e:
                if attempt >= self.max_attempts:
                    logger.error(
                        "%s failed after %d attempts: %s", description, attempt, type(e).__name__
                    )
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s hit transient %s (attempt %d/%d), retrying in %.3fs",
                    description,
                    type(e).__name__,
                    attempt,
                    self.max_attempts,
                    delay,
                )
                await asyncio.sleep(delay)
                attempt += 1

