"""Detect which optional fetch strategies are usable on this machine."""

from __future__ import annotations

import importlib.util
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from .advisory_config import AdvisoryConfig
from .models import CapabilitySet, StrategyKind

logger = logging.getLogger(__name__)


def _default_browsers_dir() -> Path:
    home = Path.home()
    if sys.platform.startswith("win"):
        base = os.getenv("LOCALAPPDATA") or str(home / "AppData" / "Local")
        return Path(base) / "ms-playwright"
    if sys.platform == "darwin":
        return home / "Library" / "Caches" / "ms-playwright"
    return home / ".cache" / "ms-playwright"


def playwright_package_available() -> bool:
    try:
        return importlib.util.find_spec("playwright") is not None
    except (ImportError, ValueError):
        return False


def chromium_installed(browsers_path: Optional[str] = None) -> bool:
    """Return True when a Playwright Chromium build exists on disk.

    ``PLAYWRIGHT_BROWSERS_PATH=0`` means browsers live inside the package.
    """
    try:
        if browsers_path == "0":
            spec = importlib.util.find_spec("playwright")
            if spec is None or not spec.submodule_search_locations:
                return False
            root = Path(list(spec.submodule_search_locations)[0]) / "driver" / "package" / ".local-browsers"
        else:
            root = Path(browsers_path) if browsers_path else _default_browsers_dir()
        if not root.is_dir():
            return False
        return any(child.is_dir() and child.name.startswith("chromium") for child in root.iterdir())
    except (OSError, ImportError, ValueError):
        return False


def probe_capabilities(config: Optional[AdvisoryConfig] = None) -> CapabilitySet:
    """Inspect the environment; absence of a capability is a normal outcome."""

    cfg = config or AdvisoryConfig.from_env()
    notes: List[str] = []

    dynamic = False
    if cfg.disable_dynamic_render:
        notes.append("dynamic render disabled by configuration")
    elif not playwright_package_available():
        notes.append("playwright package not installed")
    elif not chromium_installed(cfg.playwright_browsers_path):
        notes.append("playwright chromium build not installed")
    else:
        dynamic = True

    source_api = not cfg.disable_source_api
    if not source_api:
        notes.append("source API disabled by configuration")

    caps = CapabilitySet(
        dynamic_render_available=dynamic,
        source_api_available=source_api,
        notes=tuple(notes),
    )
    logger.debug("capabilities probed: %s", caps)
    return caps


class CapabilityProber:
    """Probe once and memoize for the lifetime of one batch run."""

    def __init__(self, config: Optional[AdvisoryConfig] = None) -> None:
        self.config = config
        self._cached: Optional[CapabilitySet] = None

    def probe(self) -> CapabilitySet:
        if self._cached is None:
            self._cached = probe_capabilities(self.config)
        return self._cached

    def reset(self) -> None:
        self._cached = None


def get_capability_status(config: Optional[AdvisoryConfig] = None) -> CapabilitySet:
    """Capability status for onboarding flows (always a fresh probe)."""

    return probe_capabilities(config)


def recommended_strategy_hint(caps: CapabilitySet) -> str:
    if caps.dynamic_render_available and caps.source_api_available:
        return (
            f"{StrategyKind.SOURCE_API.value} > {StrategyKind.DYNAMIC_RENDER.value} > "
            f"{StrategyKind.STATIC_HTTP.value}: all strategies available"
        )
    if caps.dynamic_render_available:
        return (
            f"{StrategyKind.DYNAMIC_RENDER.value} > {StrategyKind.STATIC_HTTP.value}: "
            "enable the source API for faster MSRC/GitHub lookups"
        )
    if caps.source_api_available:
        return (
            f"{StrategyKind.SOURCE_API.value} > {StrategyKind.STATIC_HTTP.value}: "
            "install Playwright (`pip install playwright && playwright install chromium`) "
            "for JavaScript-rendered advisories"
        )
    return (
        f"{StrategyKind.STATIC_HTTP.value} only: JavaScript-rendered advisories will "
        "yield thin content"
    )


__all__ = [
    "CapabilityProber",
    "chromium_installed",
    "get_capability_status",
    "playwright_package_available",
    "probe_capabilities",
    "recommended_strategy_hint",
]
