"""Advisory fetcher defaults (domains, markers, status codes, run knobs).

Centralizes static defaults so the strategy and extractor modules have no
embedded magic strings. ``AdvisoryConfig`` is the run-scoped knob set; build
one with :meth:`AdvisoryConfig.from_env` or construct it directly in tests.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from ..core.keys import K_ADVISORY_URL

load_dotenv(override=False)

# Sources that only render advisory content client-side.
DYNAMIC_RENDER_DOMAINS = {
    "msrc.microsoft.com",
    "portal.msrc.microsoft.com",
    "security.paloaltonetworks.com",
    "www.fortiguard.com",
    "fortiguard.com",
    "sec.cloudapps.cisco.com",
    "support.broadcom.com",
    "kb.cert.org",
}

# Bodies that indicate a bot-detection interstitial rather than content.
BOT_BLOCK_TOKENS = (
    "cf-error-details",
    "you are unable to access",
    "you have been blocked",
    "attention required! | cloudflare",
    "checking your browser before accessing",
    "verify you are human",
    "access denied</title>",
    "request unsuccessful. incapsula",
    "captcha-delivery",
    "<title>just a moment",
    "_cf_chl_opt",
    "cf-chl-",
    "challenge-error-text",
    "enable javascript and cookies to continue",
)

INTERSTITIAL_TITLES = ("just a moment", "attention required")

# Placeholders served when JavaScript is required to see the page.
JS_PLACEHOLDER_TOKENS = (
    "please enable javascript",
    "javascript is required",
    "you need to enable javascript",
    "__next_data__",
    'id="root"></div>',
    'id="app"></div>',
)

# A body carrying none of these is unlikely to be an advisory.
ADVISORY_MARKERS = (
    "cve-",
    "advisory",
    "vulnerab",
    "security update",
    "patch",
    "remediation",
    "fixed in",
    "affected",
)

NOT_FOUND_STATUS_CODES = {404, 410}
BLOCK_STATUS_CODES = {401, 403}
RATE_LIMIT_STATUS_CODES = {429}
TIMEOUT_STATUS_CODES = {408}

MSRC_API_BASE = "https://api.msrc.microsoft.com/sug/v2.0/en-US"
GITHUB_API_BASE = "https://api.github.com"
UPDATE_CATALOG_SEARCH = "https://catalog.update.microsoft.com/v7/site/Search.aspx?q={kb}"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


def _env_int(name: str, default: int = 0) -> int:
    try:
        raw = os.getenv(name, "")
        return int(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float = 0.0) -> float:
    try:
        raw = os.getenv(name, "")
        return float(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: str = "0") -> bool:
    raw = os.getenv(name, default)
    return str(raw).strip().lower() not in {"0", "false", "no", "off", ""}


@dataclass
class AdvisoryConfig:
    """Configuration parameters for one batch run."""

    timeout: float = 30.0
    min_interval: float = 2.0
    max_attempts: int = 3
    backoff_initial: float = 1.0
    backoff_max: float = 8.0
    jitter: float = 0.5
    courtesy_min: float = 0.5
    courtesy_max: float = 1.5
    min_content_chars: int = 512
    url_column: str = K_ADVISORY_URL
    user_agent: str = DEFAULT_USER_AGENT
    accept_language: str = "en-US,en;q=0.9"
    poll_interval: float = 0.1
    playwright_browsers_path: Optional[str] = None
    disable_dynamic_render: bool = False
    disable_source_api: bool = False

    @classmethod
    def from_env(cls) -> "AdvisoryConfig":
        base = cls()
        return cls(
            timeout=_env_float("ADVISORY_TIMEOUT", base.timeout),
            min_interval=_env_float("ADVISORY_MIN_INTERVAL", base.min_interval),
            max_attempts=max(1, _env_int("ADVISORY_MAX_ATTEMPTS", base.max_attempts)),
            backoff_initial=_env_float("ADVISORY_BACKOFF_INITIAL", base.backoff_initial),
            backoff_max=_env_float("ADVISORY_BACKOFF_MAX", base.backoff_max),
            jitter=_env_float("ADVISORY_JITTER", base.jitter),
            courtesy_min=_env_float("ADVISORY_COURTESY_MIN", base.courtesy_min),
            courtesy_max=_env_float("ADVISORY_COURTESY_MAX", base.courtesy_max),
            min_content_chars=_env_int("ADVISORY_MIN_CONTENT_CHARS", base.min_content_chars),
            url_column=os.getenv("ADVISORY_URL_COLUMN") or base.url_column,
            user_agent=os.getenv("ADVISORY_USER_AGENT") or base.user_agent,
            poll_interval=_env_float("ADVISORY_POLL_INTERVAL", base.poll_interval),
            playwright_browsers_path=os.getenv("PLAYWRIGHT_BROWSERS_PATH") or None,
            disable_dynamic_render=_env_bool("ADVISORY_DISABLE_DYNAMIC_RENDER"),
            disable_source_api=_env_bool("ADVISORY_DISABLE_SOURCE_API"),
        )

    def validate(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.min_interval < 0 or self.backoff_initial < 0 or self.jitter < 0:
            raise ValueError("intervals and delays cannot be negative")
        if self.backoff_max < self.backoff_initial:
            raise ValueError("backoff_max cannot be smaller than backoff_initial")
        if self.courtesy_max < self.courtesy_min:
            raise ValueError("courtesy_max cannot be smaller than courtesy_min")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
