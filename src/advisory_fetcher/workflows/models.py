"""Data containers shared by the resolution pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple


class StrategyKind(str, Enum):
    DYNAMIC_RENDER = "dynamic_render"
    SOURCE_API = "source_api"
    STATIC_HTTP = "static_http"


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    SERVER_ERROR = "server_error"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    MALFORMED_URL = "malformed_url"
    BLOCKED = "blocked"
    FORBIDDEN = "forbidden"
    HTTP_ERROR = "http_error"
    EMPTY_CONTENT = "empty_content"
    RENDER_ERROR = "render_error"
    API_ERROR = "api_error"
    INTERNAL_ERROR = "internal_error"

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_ERRORS

    @property
    def stops_chain(self) -> bool:
        return self in CHAIN_STOPPING_ERRORS


RETRYABLE_ERRORS = frozenset(
    {ErrorKind.TIMEOUT, ErrorKind.CONNECTION, ErrorKind.SERVER_ERROR, ErrorKind.RATE_LIMITED}
)
# No other strategy can recover a page that does not exist.
CHAIN_STOPPING_ERRORS = frozenset({ErrorKind.NOT_FOUND, ErrorKind.MALFORMED_URL})


class AdvisoryStatus(str, Enum):
    SUCCESS = "Success"
    FAILED = "Failed"
    BLOCKED = "Blocked"
    EMPTY = "Empty"


@dataclass(frozen=True)
class FetchResult:
    """Outcome of fetching one URL with one strategy (after retries)."""

    url: str
    success: bool
    strategy_used: StrategyKind
    content: str = ""
    status_code: Optional[int] = None
    error: Optional[ErrorKind] = None
    elapsed: float = 0.0
    attempts: int = 1
    content_type: str = "text/html"
    suspect: bool = False
    detail: Optional[str] = None

    @classmethod
    def failure(
        cls,
        url: str,
        strategy: StrategyKind,
        error: ErrorKind,
        *,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
    ) -> "FetchResult":
        return cls(
            url=url,
            success=False,
            strategy_used=strategy,
            status_code=status_code,
            error=error,
            detail=detail,
        )

    def describe_error(self) -> Optional[str]:
        if self.error is None:
            return None
        parts = [self.error.value]
        if self.status_code is not None:
            parts.append(f"HTTP {self.status_code}")
        if self.detail:
            parts.append(self.detail)
        return ": ".join(parts)


def clean_links(links: Iterable[str]) -> FrozenSet[str]:
    """Strip whitespace and drop empty entries; the frozenset removes duplicates."""

    cleaned = set()
    for link in links or ():
        value = (link or "").strip()
        if value:
            cleaned.add(value)
    return frozenset(cleaned)


@dataclass(frozen=True)
class RemediationRecord:
    source_used: str
    patch_id: Optional[str] = None
    affected_versions: Optional[str] = None
    remediation_text: Optional[str] = None
    download_links: FrozenSet[str] = field(default_factory=frozenset)
    quality_score: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "download_links", clean_links(self.download_links))

    def summary(self) -> str:
        """Human-readable one-line summary used in the output column."""

        parts: List[str] = []
        if self.patch_id:
            parts.append(self.patch_id)
        if self.affected_versions:
            parts.append(f"versions: {self.affected_versions}")
        if self.remediation_text:
            text = " ".join(self.remediation_text.split())
            if len(text) > 160:
                text = text[:157].rstrip() + "..."
            parts.append(f"fix: {text}")
        return " | ".join(parts)


@dataclass(frozen=True)
class StageTimings:
    fetch: float = 0.0
    extract: float = 0.0
    total: float = 0.0


@dataclass(frozen=True)
class AdvisoryResult:
    url: str
    status: AdvisoryStatus
    remediation: Optional[RemediationRecord] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    timings: StageTimings = field(default_factory=StageTimings)
    strategy_used: Optional[StrategyKind] = None
    attempts: int = 0

    @property
    def download_links(self) -> FrozenSet[str]:
        if self.remediation is None:
            return frozenset()
        return self.remediation.download_links

    def status_label(self) -> str:
        if self.status is AdvisoryStatus.SUCCESS or self.error_kind is None:
            return self.status.value
        return f"{self.status.value}({self.error_kind.value})"


@dataclass(frozen=True)
class CapabilitySet:
    dynamic_render_available: bool
    source_api_available: bool
    notes: Tuple[str, ...] = ()

    def allows(self, kind: StrategyKind) -> bool:
        if kind is StrategyKind.DYNAMIC_RENDER:
            return self.dynamic_render_available
        if kind is StrategyKind.SOURCE_API:
            return self.source_api_available
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dynamic_render_available": self.dynamic_render_available,
            "source_api_available": self.source_api_available,
            "notes": list(self.notes),
        }


@dataclass
class BatchStats:
    success_count: int = 0
    failed_count: int = 0
    blocked_count: int = 0
    empty_count: int = 0
    links_found_count: int = 0
    error_breakdown: Dict[str, int] = field(default_factory=dict)

    def record(self, result: AdvisoryResult) -> None:
        if result.status is AdvisoryStatus.SUCCESS:
            self.success_count += 1
        elif result.status is AdvisoryStatus.BLOCKED:
            self.blocked_count += 1
        elif result.status is AdvisoryStatus.EMPTY:
            self.empty_count += 1
        else:
            self.failed_count += 1
        if result.error_kind is not None:
            key = result.error_kind.value
            self.error_breakdown[key] = self.error_breakdown.get(key, 0) + 1


@dataclass
class BatchRun:
    """Run-scoped state owned by the background worker."""

    unique_urls: List[str]
    results_by_url: Dict[str, AdvisoryResult] = field(default_factory=dict)
    current: int = 0
    stats: BatchStats = field(default_factory=BatchStats)

    @property
    def total(self) -> int:
        return len(self.unique_urls)

    def store(self, result: AdvisoryResult) -> None:
        self.results_by_url[result.url] = result
        self.current += 1
        self.stats.record(result)


@dataclass(frozen=True)
class BatchSummary:
    total_urls: int = 0
    success_count: int = 0
    failed_count: int = 0
    empty_count: int = 0
    blocked_count: int = 0
    links_found_count: int = 0
    elapsed_seconds: float = 0.0
    record_count: int = 0
    already_processed: bool = False
    error_breakdown: Dict[str, int] = field(default_factory=dict)
    backup_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_urls": self.total_urls,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "empty_count": self.empty_count,
            "blocked_count": self.blocked_count,
            "links_found_count": self.links_found_count,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "record_count": self.record_count,
            "already_processed": self.already_processed,
            "error_breakdown": dict(self.error_breakdown),
            "backup_path": self.backup_path,
        }


__all__ = [
    "AdvisoryResult",
    "AdvisoryStatus",
    "BatchRun",
    "BatchStats",
    "BatchSummary",
    "CapabilitySet",
    "ErrorKind",
    "FetchResult",
    "RemediationRecord",
    "StageTimings",
    "StrategyKind",
    "clean_links",
]
