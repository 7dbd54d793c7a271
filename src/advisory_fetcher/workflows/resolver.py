"""Per-URL composition: fetch through the strategy chain, then extract."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional

import aiohttp

from .advisory_config import AdvisoryConfig
from .extractors import ExtractorRegistry
from .models import (
    AdvisoryResult,
    AdvisoryStatus,
    CapabilitySet,
    ErrorKind,
    FetchResult,
    StageTimings,
)
from .rate_limit import RateRetryController
from .strategies import FetchStrategyChain


def status_for(fetch: FetchResult) -> AdvisoryStatus:
    if fetch.success:
        return AdvisoryStatus.SUCCESS
    if fetch.error is ErrorKind.BLOCKED:
        return AdvisoryStatus.BLOCKED
    if fetch.error is ErrorKind.EMPTY_CONTENT:
        return AdvisoryStatus.EMPTY
    return AdvisoryStatus.FAILED


class AdvisoryResolver:
    def __init__(
        self,
        chain: FetchStrategyChain,
        registry: Optional[ExtractorRegistry] = None,
        *,
        courtesy_min: float = 0.5,
        courtesy_max: float = 1.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.chain = chain
        self.registry = registry or ExtractorRegistry(logger=logger)
        self.courtesy_min = max(0.0, courtesy_min)
        self.courtesy_max = max(self.courtesy_min, courtesy_max)
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._log = logger if logger is not None else logging.getLogger(__name__)

    @classmethod
    def from_config(
        cls,
        config: AdvisoryConfig,
        *,
        controller: Optional[RateRetryController] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "AdvisoryResolver":
        controller = controller or RateRetryController.from_config(config, logger=logger)
        chain = FetchStrategyChain.from_config(config, controller, logger=logger)
        return cls(
            chain,
            ExtractorRegistry(logger=logger),
            courtesy_min=config.courtesy_min,
            courtesy_max=config.courtesy_max,
            logger=logger,
        )

    async def resolve(
        self,
        url: str,
        capabilities: CapabilitySet,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> AdvisoryResult:
        started = time.perf_counter()
        try:
            fetch = await self.chain.fetch(url, capabilities, session)
            fetch_elapsed = time.perf_counter() - started
            status = status_for(fetch)
            if not fetch.success:
                result = AdvisoryResult(
                    url=url,
                    status=status,
                    error=fetch.describe_error(),
                    error_kind=fetch.error,
                    timings=StageTimings(fetch=fetch_elapsed, total=time.perf_counter() - started),
                    strategy_used=fetch.strategy_used,
                    attempts=fetch.attempts,
                )
                self._log.info("%s %s (%s)", status.value, url, result.error)
                return result

            extract_started = time.perf_counter()
            record = self.registry.extract(fetch.content, url, suspect=fetch.suspect)
            extract_elapsed = time.perf_counter() - extract_started
            self._log.info(
                "Success %s via %s (%s, quality %d, %d links)",
                url,
                fetch.strategy_used.value,
                record.source_used,
                record.quality_score,
                len(record.download_links),
            )
            return AdvisoryResult(
                url=url,
                status=status,
                remediation=record,
                timings=StageTimings(
                    fetch=fetch_elapsed,
                    extract=extract_elapsed,
                    total=time.perf_counter() - started,
                ),
                strategy_used=fetch.strategy_used,
                attempts=fetch.attempts,
            )
        finally:
            await self._courtesy_delay()

    async def _courtesy_delay(self) -> None:
        if self.courtesy_max <= 0:
            return
        await self._sleep(self._rng.uniform(self.courtesy_min, self.courtesy_max))


__all__ = ["AdvisoryResolver", "status_for"]
