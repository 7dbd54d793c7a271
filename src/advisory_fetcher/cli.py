from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import typer

from .workflows.advisory_config import AdvisoryConfig
from .workflows.capabilities import get_capability_status, recommended_strategy_hint
from .workflows.doctor import build_doctor_report, format_doctor_report
from .workflows.errors import AdvisoryFetcherError, DatasetIOError
from .workflows.models import BatchSummary
from .workflows.orchestrator import ProgressMessage, run_batch, write_audit

app = typer.Typer(add_help_option=False, no_args_is_help=False)


def _minimal_help() -> str:
    return """Advisory fetcher

Usage:
  advisory-fetcher run <DATASET> [--force] [--backup] [--url-column <COL>] [--json] [--audit <PATH>] [--verbose]
  advisory-fetcher status [--json]
  advisory-fetcher doctor

Common options:
  --force         Re-run a dataset that already carries processed_at.
  --backup        Copy the dataset to <name>.bak-<UTC stamp> before writing.
  --url-column    Column holding advisory URLs (default: advisory_url).
  --json          Print the batch summary JSON to stdout only.
  --audit <PATH>  Also write the batch summary JSON to PATH.

Discoverability:
  --help-full     Expanded help + env vars + output columns.
  --find <query>  Search commands, flags, env vars, columns.
  --doctor        Run environment diagnostics and exit.
"""


def _help_full() -> str:
    return """Advisory fetcher CLI

Commands:
  run      Resolve every advisory URL in a CSV dataset and merge results back.
  status   Show which fetch strategies are available on this machine.
  doctor   Print capability and environment diagnostics.

Output columns (added to the dataset):
  download_links     Sorted, deduplicated patch download links ("; " joined).
  extracted_summary  Patch id, affected versions and fix text per URL.
  url_status         Success, Failed(<kind>), Blocked(<kind>) or Empty(<kind>) per URL.
  processed_at       UTC completion marker; a second run is skipped unless --force.

Important env vars:
  ADVISORY_TIMEOUT
  ADVISORY_MIN_INTERVAL
  ADVISORY_MAX_ATTEMPTS
  ADVISORY_COURTESY_MIN / ADVISORY_COURTESY_MAX
  ADVISORY_URL_COLUMN
  ADVISORY_DISABLE_DYNAMIC_RENDER
  ADVISORY_DISABLE_SOURCE_API
  PLAYWRIGHT_BROWSERS_PATH
  GITHUB_TOKEN

Troubleshooting:
  - If Playwright or its Chromium build is missing, JavaScript-rendered advisories yield thin content.
  - A locked or read-only dataset aborts before any network traffic (exit 3).
  - A batch worker that dies without finishing exits 4; the dataset is left untouched.
  - Use `doctor` to see remedies for missing capabilities.
"""


_FIND_INDEX = [
    ("command", "run", "Resolve advisory URLs in a dataset and merge results back."),
    ("command", "status", "Show available fetch strategies."),
    ("command", "doctor", "Print capability and environment diagnostics."),
    ("flag", "--force", "Re-run an already processed dataset."),
    ("flag", "--backup", "Write a timestamped backup before saving."),
    ("flag", "--url-column", "Column holding advisory URLs."),
    ("flag", "--json", "Print summary JSON to stdout only."),
    ("flag", "--audit", "Write summary JSON to a file."),
    ("flag", "--verbose", "Enable debug logging."),
    ("flag", "--help-full", "Expanded help, env vars, output columns."),
    ("flag", "--find", "Search commands, flags, env vars, columns."),
    ("flag", "--doctor", "Run environment diagnostics and exit."),
    ("env", "ADVISORY_TIMEOUT", "Per-request timeout in seconds."),
    ("env", "ADVISORY_MIN_INTERVAL", "Minimum seconds between contacts to one domain."),
    ("env", "ADVISORY_MAX_ATTEMPTS", "Attempts per strategy for transient errors."),
    ("env", "ADVISORY_URL_COLUMN", "Default URL column name."),
    ("env", "ADVISORY_DISABLE_DYNAMIC_RENDER", "Never launch a headless browser."),
    ("env", "ADVISORY_DISABLE_SOURCE_API", "Skip MSRC and GitHub advisory APIs."),
    ("env", "PLAYWRIGHT_BROWSERS_PATH", "Where Playwright browsers are installed."),
    ("env", "GITHUB_TOKEN", "Authenticate GitHub advisory API calls."),
    ("column", "download_links", "Patch download links."),
    ("column", "extracted_summary", "Patch id, versions and fix text."),
    ("column", "url_status", "Per-URL outcome."),
    ("column", "processed_at", "Completion marker."),
]


def _run_find(query: str) -> str:
    needle = (query or "").strip().lower()
    if not needle:
        return ""
    lines = []
    for category, name, desc in _FIND_INDEX:
        haystack = f"{category} {name} {desc}".lower()
        if needle in haystack:
            lines.append(f"{category} {name} - {desc}")
    return "\n".join(lines)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _echo_progress(message: ProgressMessage) -> None:
    result = message.result
    typer.echo(
        f"[{message.current}/{message.total}] {result.status_label()} {message.url}",
        err=True,
    )


def _format_summary(summary: BatchSummary) -> str:
    if summary.already_processed:
        return (
            f"Dataset already processed ({summary.record_count} records); "
            "pass --force to run it again."
        )
    lines = [
        f"Records: {summary.record_count}",
        f"Unique URLs: {summary.total_urls}",
        f"Success: {summary.success_count}  Failed: {summary.failed_count}  "
        f"Blocked: {summary.blocked_count}  Empty: {summary.empty_count}",
        f"Download links found: {summary.links_found_count}",
        f"Elapsed: {summary.elapsed_seconds:.1f}s",
    ]
    if summary.error_breakdown:
        breakdown = ", ".join(f"{k}={v}" for k, v in sorted(summary.error_breakdown.items()))
        lines.append(f"Errors: {breakdown}")
    if summary.backup_path:
        lines.append(f"Backup: {summary.backup_path}")
    return "\n".join(lines)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    help: bool = typer.Option(False, "--help", "-h", is_eager=True, help="Show minimal help."),
    help_full: bool = typer.Option(False, "--help-full", is_eager=True, help="Show expanded help."),
    find: Optional[str] = typer.Option(None, "--find", is_eager=True, help="Search commands, flags, env vars, columns."),
    doctor: bool = typer.Option(False, "--doctor", is_eager=True, help="Run environment diagnostics and exit."),
) -> None:
    if help_full:
        typer.echo(_help_full())
        raise typer.Exit(code=0)
    if find is not None:
        output = _run_find(find)
        if output:
            typer.echo(output)
        raise typer.Exit(code=0)
    if doctor:
        report = build_doctor_report()
        typer.echo(format_doctor_report(report))
        raise typer.Exit(code=0 if report.get("ok", True) else 2)
    if help or ctx.invoked_subcommand is None:
        typer.echo(_minimal_help())
        raise typer.Exit(code=0)


@app.command("doctor", add_help_option=True)
def doctor_cmd() -> None:
    """Print capability and environment diagnostics."""
    report = build_doctor_report()
    typer.echo(format_doctor_report(report))
    raise typer.Exit(code=0 if report.get("ok", True) else 2)


@app.command("status", add_help_option=True)
def status_cmd(
    json_out: bool = typer.Option(False, "--json", help="Print capability JSON to stdout only."),
) -> None:
    """Show which fetch strategies are available."""
    caps = get_capability_status()
    hint = recommended_strategy_hint(caps)
    if json_out:
        payload = {**caps.to_dict(), "hint": hint}
        sys.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")
        raise typer.Exit(code=0)
    typer.echo(f"dynamic_render: {'available' if caps.dynamic_render_available else 'unavailable'}")
    typer.echo(f"source_api: {'available' if caps.source_api_available else 'unavailable'}")
    for note in caps.notes:
        typer.echo(f"  note: {note}")
    typer.echo(f"strategy order: {hint}")
    raise typer.Exit(code=0)


@app.command("run", add_help_option=True)
def run_cmd(
    dataset: Path = typer.Argument(..., help="CSV dataset with an advisory URL column."),
    force: bool = typer.Option(False, "--force", help="Re-run an already processed dataset."),
    backup: bool = typer.Option(False, "--backup", help="Write a timestamped backup before saving."),
    url_column: Optional[str] = typer.Option(None, "--url-column", help="Column holding advisory URLs."),
    json_out: bool = typer.Option(False, "--json", help="Print summary JSON to stdout only."),
    audit: Optional[Path] = typer.Option(None, "--audit", help="Write summary JSON to this path."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Resolve every advisory URL in DATASET and merge the results back."""
    _configure_logging(verbose)
    config = AdvisoryConfig.from_env()
    if url_column:
        config.url_column = url_column
    try:
        config.validate()
    except ValueError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2)
    try:
        summary = run_batch(
            dataset,
            force_rerun=force,
            create_backup=backup,
            config=config,
            progress_hook=None if json_out else _echo_progress,
        )
    except DatasetIOError as exc:
        if not json_out:
            typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)
    except AdvisoryFetcherError as exc:
        typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=4)
    if audit is not None:
        write_audit(summary, audit, dataset=dataset)
    if json_out:
        sys.stdout.write(json.dumps(summary.to_dict(), ensure_ascii=False) + "\n")
    else:
        typer.echo(_format_summary(summary))
    raise typer.Exit(code=0)
