"""Batch orchestration: dedupe URLs, resolve on one worker thread, merge back.

The calling (control) thread never touches the network. It starts a single
worker thread, which runs its own asyncio loop and resolves the unique URLs
sequentially, and then consumes the messages the worker publishes on a
``queue.Queue``: one ``ProgressMessage`` per URL and a final
``CompletedMessage`` carrying the run-scoped result cache.
"""

from __future__ import annotations

import asyncio
import json
import logging
import queue
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

import aiohttp

from ..core.keys import (
    K_DOWNLOAD_LINKS,
    K_EXTRACTED_SUMMARY,
    K_JOIN,
    K_PROCESSED_AT,
    K_URL_STATUS,
    OUTPUT_COLUMNS,
)
from .advisory_config import AdvisoryConfig
from .advisory_utils import normalize_url, split_url_cell, unique_in_order
from .capabilities import CapabilityProber
from .errors import AdvisoryFetcherError, DatasetIOError
from .models import (
    AdvisoryResult,
    AdvisoryStatus,
    BatchRun,
    BatchStats,
    BatchSummary,
    CapabilitySet,
    ErrorKind,
)
from .records import RecordSet, ensure_writable, load_records, write_backup, write_records
from .resolver import AdvisoryResolver
from .strategies import default_headers


@dataclass(frozen=True)
class ProgressMessage:
    current: int
    total: int
    url: str
    result: AdvisoryResult


@dataclass(frozen=True)
class CompletedMessage:
    results_by_url: Dict[str, AdvisoryResult]
    stats: BatchStats
    capabilities: Optional[CapabilitySet] = None


@dataclass(frozen=True)
class WorkerFailedMessage:
    error: str


WorkerMessage = Union[ProgressMessage, CompletedMessage, WorkerFailedMessage]
ProgressHook = Callable[[ProgressMessage], None]
ResolverFactory = Callable[[], AdvisoryResolver]


def is_already_processed(records: RecordSet) -> bool:
    if K_PROCESSED_AT not in records.fieldnames:
        return False
    return any((row.get(K_PROCESSED_AT) or "").strip() for row in records.rows)


def extract_unique_urls(records: RecordSet, url_column: str) -> Tuple[List[str], List[List[str]]]:
    """Flatten and dedupe URLs across all records in first-seen order.

    Returns the unique URL list and, per record, that record's own URLs.
    """
    if url_column not in records.fieldnames:
        raise DatasetIOError(f"Dataset has no '{url_column}' column")
    per_row: List[List[str]] = []
    flat: List[str] = []
    for row in records.rows:
        urls = unique_in_order(normalize_url(token) for token in split_url_cell(row.get(url_column)))
        per_row.append(urls)
        flat.extend(urls)
    return unique_in_order(flat), per_row


def merge_results(
    records: RecordSet,
    per_row_urls: List[List[str]],
    results_by_url: Dict[str, AdvisoryResult],
    processed_at: str,
) -> None:
    """Write links, summaries, statuses and the completion marker into each row."""

    records.ensure_columns(OUTPUT_COLUMNS)
    for row, urls in zip(records.rows, per_row_urls):
        links = set()
        summaries: List[str] = []
        statuses: List[str] = []
        for url in urls:
            result = results_by_url.get(url)
            if result is None:
                statuses.append(AdvisoryStatus.FAILED.value)
                continue
            links |= result.download_links
            if result.remediation is not None:
                text = result.remediation.summary()
                if text:
                    summaries.append(text)
            statuses.append(result.status_label())
        row[K_DOWNLOAD_LINKS] = K_JOIN.join(sorted(links))
        row[K_EXTRACTED_SUMMARY] = K_JOIN.join(unique_in_order(summaries))
        row[K_URL_STATUS] = K_JOIN.join(statuses)
        row[K_PROCESSED_AT] = processed_at


class BatchOrchestrator:
    def __init__(
        self,
        config: Optional[AdvisoryConfig] = None,
        *,
        resolver_factory: Optional[ResolverFactory] = None,
        capabilities: Optional[CapabilitySet] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config or AdvisoryConfig.from_env()
        self._log = logger if logger is not None else logging.getLogger(__name__)
        self._resolver_factory = resolver_factory or (
            lambda: AdvisoryResolver.from_config(self.config, logger=self._log)
        )
        self._capabilities = capabilities

    def run(
        self,
        records: RecordSet,
        force_rerun: bool = False,
        progress_hook: Optional[ProgressHook] = None,
    ) -> BatchSummary:
        started = time.perf_counter()
        if is_already_processed(records) and not force_rerun:
            self._log.warning("dataset already processed; pass force_rerun to run again")
            return BatchSummary(record_count=len(records), already_processed=True)

        unique_urls, per_row_urls = extract_unique_urls(records, self.config.url_column)
        self._log.info("%d records reference %d unique URLs", len(records), len(unique_urls))

        if unique_urls:
            completed = self._run_worker(unique_urls, progress_hook)
            results_by_url, stats = completed.results_by_url, completed.stats
        else:
            results_by_url, stats = {}, BatchStats()

        processed_at = datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
        merge_results(records, per_row_urls, results_by_url, processed_at)

        all_links = set()
        for result in results_by_url.values():
            all_links |= result.download_links
        return BatchSummary(
            total_urls=len(unique_urls),
            success_count=stats.success_count,
            failed_count=stats.failed_count,
            empty_count=stats.empty_count,
            blocked_count=stats.blocked_count,
            links_found_count=len(all_links),
            elapsed_seconds=time.perf_counter() - started,
            record_count=len(records),
            error_breakdown=dict(stats.error_breakdown),
        )

    def _run_worker(self, urls: List[str], progress_hook: Optional[ProgressHook]) -> CompletedMessage:
        channel: "queue.Queue[WorkerMessage]" = queue.Queue()
        worker = threading.Thread(
            target=self._worker_main,
            args=(list(urls), channel),
            name="advisory-batch-worker",
            daemon=True,
        )
        worker.start()
        completed: Optional[CompletedMessage] = None
        while completed is None:
            try:
                message = channel.get(timeout=self.config.poll_interval)
            except queue.Empty:
                if not worker.is_alive() and channel.empty():
                    raise AdvisoryFetcherError("batch worker exited without reporting completion")
                continue
            if isinstance(message, ProgressMessage):
                if progress_hook is not None:
                    try:
                        progress_hook(message)
                    except Exception:
                        self._log.exception("progress hook failed")
            elif isinstance(message, CompletedMessage):
                completed = message
            elif isinstance(message, WorkerFailedMessage):
                worker.join()
                raise AdvisoryFetcherError(f"batch worker failed: {message.error}")
        worker.join()
        return completed

    def _worker_main(self, urls: List[str], channel: "queue.Queue[WorkerMessage]") -> None:
        try:
            asyncio.run(self._resolve_all(urls, channel))
        except Exception as exc:
            self._log.exception("batch worker crashed")
            channel.put(WorkerFailedMessage(error=f"{type(exc).__name__}: {exc}"))

    async def _resolve_all(self, urls: List[str], channel: "queue.Queue[WorkerMessage]") -> None:
        capabilities = self._capabilities or CapabilityProber(self.config).probe()
        self._log.info(
            "capabilities: dynamic_render=%s source_api=%s",
            capabilities.dynamic_render_available,
            capabilities.source_api_available,
        )
        resolver = self._resolver_factory()
        run = BatchRun(unique_urls=urls)
        async with aiohttp.ClientSession(headers=default_headers(self.config)) as session:
            for url in run.unique_urls:
                if url in run.results_by_url:
                    continue
                try:
                    result = await resolver.resolve(url, capabilities, session)
                except Exception as exc:  # a single URL never aborts the batch
                    self._log.exception("resolver crashed on %s", url)
                    result = AdvisoryResult(
                        url=url,
                        status=AdvisoryStatus.FAILED,
                        error=f"unexpected {type(exc).__name__}: {exc}",
                        error_kind=ErrorKind.INTERNAL_ERROR,
                    )
                run.store(result)
                channel.put(ProgressMessage(run.current, run.total, url, result))
        channel.put(
            CompletedMessage(
                results_by_url=dict(run.results_by_url),
                stats=replace(run.stats, error_breakdown=dict(run.stats.error_breakdown)),
                capabilities=capabilities,
            )
        )


def run_batch(
    dataset_path: Union[str, Path],
    force_rerun: bool = False,
    create_backup: bool = False,
    *,
    config: Optional[AdvisoryConfig] = None,
    progress_hook: Optional[ProgressHook] = None,
    orchestrator: Optional[BatchOrchestrator] = None,
) -> BatchSummary:
    """Load, pre-flight, resolve, back up and persist one dataset.

    Raises:
        DatasetIOError: the dataset is missing, unreadable, empty, locked or
            not writable. Raised before any network activity.
        AdvisoryFetcherError: the batch worker died before completing; the
            dataset is left as it was.
    """
    path = Path(dataset_path)
    records = load_records(path)
    ensure_writable(path)
    orchestrator = orchestrator or BatchOrchestrator(config)
    summary = orchestrator.run(records, force_rerun=force_rerun, progress_hook=progress_hook)
    if summary.already_processed:
        return summary
    backup: Optional[Path] = write_backup(path) if create_backup else None
    write_records(path, records)
    return replace(summary, backup_path=str(backup) if backup else None)


def write_audit(summary: BatchSummary, path: Union[str, Path], *, dataset: Optional[Union[str, Path]] = None) -> Path:
    """Persist the batch summary as JSON next to other run artifacts."""

    audit_path = Path(path)
    payload: Dict[str, object] = {
        "generated_at": datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
        **summary.to_dict(),
    }
    if dataset is not None:
        payload["dataset"] = str(dataset)
    audit_path.parent.mkdir(parents=True, exist_ok=True)
    audit_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    return audit_path


__all__ = [
    "BatchOrchestrator",
    "CompletedMessage",
    "ProgressMessage",
    "WorkerFailedMessage",
    "extract_unique_urls",
    "is_already_processed",
    "merge_results",
    "run_batch",
    "write_audit",
]
