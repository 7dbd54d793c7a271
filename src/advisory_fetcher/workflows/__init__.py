"""High-level exports for the advisory fetcher workflows."""

from .advisory_config import AdvisoryConfig
from .capabilities import CapabilityProber, get_capability_status, recommended_strategy_hint
from .errors import AdvisoryFetcherError, DatasetIOError
from .extractors import ExtractorRegistry
from .models import (
    AdvisoryResult,
    AdvisoryStatus,
    BatchSummary,
    CapabilitySet,
    ErrorKind,
    FetchResult,
    RemediationRecord,
    StrategyKind,
)
from .orchestrator import BatchOrchestrator, run_batch, write_audit
from .rate_limit import RateRetryController
from .resolver import AdvisoryResolver
from .strategies import FetchStrategyChain

__all__ = [
    "AdvisoryConfig",
    "AdvisoryFetcherError",
    "AdvisoryResolver",
    "AdvisoryResult",
    "AdvisoryStatus",
    "BatchOrchestrator",
    "BatchSummary",
    "CapabilityProber",
    "CapabilitySet",
    "DatasetIOError",
    "ErrorKind",
    "ExtractorRegistry",
    "FetchResult",
    "FetchStrategyChain",
    "RateRetryController",
    "RemediationRecord",
    "StrategyKind",
    "get_capability_status",
    "recommended_strategy_hint",
    "run_batch",
    "write_audit",
]
