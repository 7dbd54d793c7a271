"""Per-domain request windows and bounded exponential backoff."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import replace
from typing import Awaitable, Callable, Dict, Optional

from .advisory_config import AdvisoryConfig
from .models import FetchResult


Attempt = Callable[[], Awaitable[FetchResult]]
Sleep = Callable[[float], Awaitable[None]]


class RateRetryController:
    """Wrap single fetch attempts with a domain window and retry policy.

    One controller instance is owned by the batch worker for a whole run, so
    the domain windows persist across URLs and strategies.
    """

    def __init__(
        self,
        min_interval: float = 2.0,
        max_attempts: int = 3,
        backoff_initial: float = 1.0,
        backoff_max: float = 8.0,
        jitter: float = 0.5,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        rng: Optional[random.Random] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.min_interval = max(0.0, min_interval)
        self.max_attempts = max(1, max_attempts)
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.jitter = jitter
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._log = logger if logger is not None else logging.getLogger(__name__)
        self._last_contact: Dict[str, float] = {}

    @classmethod
    def from_config(cls, config: AdvisoryConfig, **kwargs) -> "RateRetryController":
        return cls(
            min_interval=config.min_interval,
            max_attempts=config.max_attempts,
            backoff_initial=config.backoff_initial,
            backoff_max=config.backoff_max,
            jitter=config.jitter,
            **kwargs,
        )

    def remaining_window(self, domain: str) -> float:
        last = self._last_contact.get(domain)
        if last is None:
            return 0.0
        return max(0.0, last + self.min_interval - self._clock())

    async def wait_for_window(self, domain: str) -> float:
        """Block until the domain window opens and claim it. Returns the wait."""

        wait = self.remaining_window(domain)
        if wait > 0:
            self._log.debug("rate window: waiting %.2fs for %s", wait, domain)
            await self._sleep(wait)
        self._last_contact[domain] = self._clock()
        return wait

    def backoff_delay(self, attempt: int) -> float:
        base = min(self.backoff_initial * (2 ** max(0, attempt - 1)), self.backoff_max)
        return base + self._rng.uniform(0.0, self.jitter) if self.jitter > 0 else base

    async def execute(self, domain: str, attempt: Attempt) -> FetchResult:
        started = self._clock()
        result: Optional[FetchResult] = None
        for number in range(1, self.max_attempts + 1):
            await self.wait_for_window(domain)
            result = await attempt()
            if result.success or result.error is None or not result.error.retryable:
                break
            if number == self.max_attempts:
                self._log.info(
                    "giving up on %s after %d attempts (%s)",
                    result.url,
                    number,
                    result.describe_error(),
                )
                break
            delay = self.backoff_delay(number)
            self._log.info(
                "retrying %s via %s in %.2fs (attempt %d/%d, %s)",
                result.url,
                result.strategy_used.value,
                delay,
                number + 1,
                self.max_attempts,
                result.describe_error(),
            )
            await self._sleep(delay)
        assert result is not None
        return replace(result, attempts=number, elapsed=max(0.0, self._clock() - started))


__all__ = ["RateRetryController"]
