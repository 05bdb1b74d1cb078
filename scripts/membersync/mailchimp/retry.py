"""Exponential backoff with jitter for remote writes."""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, Iterator, Optional, TypeVar

from scripts.membersync.errors import RemoteError

logger = logging.getLogger("membersync.mailchimp.retry")

T = TypeVar("T")


class RetryPolicy:
    """Up to ``retries`` extra attempts after the first one.

    Delays grow as ``base_delay * 2**attempt``, capped at ``max_delay``,
    each multiplied by a random factor in [0.5, 1.5).
    """

    def __init__(
        self,
        retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        if retries < 0:
            raise ValueError("retries must be >= 0")
        self.retries = retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._rng = rng or random.Random()

    @classmethod
    def none(cls) -> "RetryPolicy":
        return cls(retries=0)

    def delays(self) -> Iterator[float]:
        for attempt in range(self.retries):
            delay = min(self.max_delay, self.base_delay * (2 ** attempt))
            yield delay * self._rng.uniform(0.5, 1.5)

    def call(self, fn: Callable[[], T], description: str = "request") -> T:
        """Call fn, retrying retryable RemoteErrors. 4xx errors raise at once."""
        delays = self.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except RemoteError as exc:
                if not exc.retryable:
                    raise
                delay = next(delays, None)
                if delay is None:
                    logger.error(
                        "%s failed after %d attempts: %s", description, attempt, exc
                    )
                    raise
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    description, attempt, self.retries + 1, delay, exc,
                )
                self._sleep(delay)
