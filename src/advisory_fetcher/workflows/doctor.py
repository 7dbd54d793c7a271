from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .advisory_config import AdvisoryConfig
from .capabilities import (
    chromium_installed,
    playwright_package_available,
    probe_capabilities,
    recommended_strategy_hint,
)


_SECRET_TOKENS = ("key", "token", "secret", "password", "pass")


def _is_secret_name(name: str) -> bool:
    lowered = (name or "").lower()
    return any(token in lowered for token in _SECRET_TOKENS)


def redact_value(value: str, keep: int = 4) -> str:
    raw = (value or "").strip()
    if not raw:
        return ""
    if len(raw) <= keep * 2:
        return "*" * len(raw)
    return f"{raw[:keep]}...{raw[-keep:]}"


def _redacted_env_value(name: str, value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return redact_value(value) if _is_secret_name(name) else value


def _env_present(*names: str) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


def _check_writable(path: Path) -> bool:
    try:
        if path.exists():
            return os.access(path, os.W_OK)
        parent = path.parent
        if not parent.exists():
            return False
        return os.access(parent, os.W_OK)
    except OSError:
        return False


def build_doctor_report(
    config: Optional[AdvisoryConfig] = None,
    *,
    dataset: Optional[Path] = None,
) -> Dict[str, Any]:
    """Collect capability and environment checks.

    ``ok`` turns false only when a ``warn`` level check is missing; the CLI
    maps that to exit code 2.
    """
    cfg = config or AdvisoryConfig.from_env()
    caps = probe_capabilities(cfg)
    report: Dict[str, Any] = {
        "generated_at": datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
        "ok": True,
        "checks": [],
        "capabilities": caps.to_dict(),
        "hint": recommended_strategy_hint(caps),
    }

    def add_check(
        name: str,
        status: bool,
        *,
        detail: Optional[str] = None,
        remedy: Optional[str] = None,
        level: str = "warn",
        value: Optional[str] = None,
    ) -> None:
        entry = {
            "name": name,
            "status": "ok" if status else "missing",
            "level": level,
            "detail": detail,
        }
        if remedy:
            entry["remedy"] = remedy
        if value is not None:
            entry["value"] = _redacted_env_value(name, value)
        report["checks"].append(entry)
        if not status and level == "warn":
            report["ok"] = False

    if cfg.disable_dynamic_render:
        add_check(
            "playwright",
            True,
            detail="Dynamic render disabled via ADVISORY_DISABLE_DYNAMIC_RENDER",
            level="info",
        )
    else:
        package_ok = playwright_package_available()
        add_check(
            "playwright",
            package_ok,
            detail="Playwright package importable" if package_ok else "Playwright package not installed",
            remedy="pip install playwright",
            level="warn",
        )
        browser_ok = package_ok and chromium_installed(cfg.playwright_browsers_path)
        add_check(
            "chromium",
            browser_ok,
            detail="JavaScript-rendered advisories enabled" if browser_ok else "JavaScript-rendered advisories will yield thin content",
            remedy="Run `playwright install --with-deps chromium`.",
            level="warn",
            value=cfg.playwright_browsers_path,
        )

    add_check(
        "source_api",
        caps.source_api_available,
        detail="MSRC and GitHub advisory APIs enabled" if caps.source_api_available else "Source APIs disabled",
        remedy="Unset ADVISORY_DISABLE_SOURCE_API to query vendor APIs directly.",
        level="info",
    )

    gh_token = _env_present("GITHUB_TOKEN", "GH_TOKEN")
    add_check(
        "GITHUB_TOKEN",
        bool(gh_token),
        detail="GitHub auth available" if gh_token else "GitHub auth missing",
        remedy="Set GITHUB_TOKEN to reduce GitHub advisory API rate limits.",
        level="info",
        value=gh_token,
    )

    add_check("ADVISORY_URL_COLUMN", True, detail=f"URL column: {cfg.url_column}", level="info")
    add_check(
        "ADVISORY_MIN_INTERVAL",
        cfg.min_interval >= 1.0,
        detail=f"{cfg.min_interval:.2f}s between contacts per domain",
        remedy="Vendors throttle aggressive clients; keep the interval at 1s or more.",
        level="info",
    )

    if dataset is not None:
        writable = _check_writable(Path(dataset))
        add_check(
            "dataset",
            writable,
            detail=str(dataset),
            remedy="Close any program holding the dataset and check file permissions.",
            level="warn",
        )

    return report


def format_doctor_report(report: Dict[str, Any]) -> str:
    lines: List[str] = []
    lines.append("Advisory fetcher doctor")
    lines.append(f"Generated: {report.get('generated_at')}")
    lines.append("Values are redacted where applicable.")
    lines.append("")
    for check in report.get("checks", []):
        name = check.get("name", "check")
        status = check.get("status", "unknown")
        level = check.get("level", "info")
        detail = check.get("detail")
        value = check.get("value")
        label = f"{name}: {status}"
        if value:
            label = f"{label} ({value})"
        lines.append(f"- [{level}] {label}")
        if detail:
            lines.append(f"  detail: {detail}")
        remedy = check.get("remedy")
        if remedy and status != "ok":
            lines.append(f"  remedy: {remedy}")
    hint = report.get("hint")
    if hint:
        lines.append("")
        lines.append(f"Strategy order: {hint}")
    return "\n".join(lines).rstrip() + "\n"
