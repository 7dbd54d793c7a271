"""Helper utilities for advisory sources that publish a JSON API."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import quote, urlparse

from .advisory_config import GITHUB_API_BASE, MSRC_API_BASE

_CVE_RE = re.compile(r"(CVE-\d{4}-\d{4,})", re.IGNORECASE)
_GHSA_RE = re.compile(r"(GHSA(?:-[23456789cfghjmpqrvwx]{4}){3})", re.IGNORECASE)


@dataclass
class ApiRequest:
    """Encapsulates how an advisory URL maps onto a vendor API call."""

    original_url: str
    api_url: str
    source: str
    identifier: str
    headers: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


def _github_headers() -> Dict[str, str]:
    headers = {
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
    }
    token = os.getenv("GITHUB_TOKEN") or os.getenv("GH_TOKEN")
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def msrc_api_url(cve_id: str) -> str:
    query = quote(f"cveNumber eq '{cve_id.upper()}'", safe="")
    return f"{MSRC_API_BASE}/affectedProduct?$filter={query}"


def prepare_api_request(url: str) -> Optional[ApiRequest]:
    """Return an ApiRequest when the URL belongs to a source with a JSON API."""

    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    host = (parsed.hostname or "").lower()
    path = parsed.path or ""

    if host in {"msrc.microsoft.com", "portal.msrc.microsoft.com"}:
        if "/vulnerability/" not in path.lower():
            return None
        match = _CVE_RE.search(path)
        if not match:
            return None
        cve_id = match.group(1).upper()
        return ApiRequest(
            original_url=url,
            api_url=msrc_api_url(cve_id),
            source="msrc",
            identifier=cve_id,
            headers={"Accept": "application/json"},
            metadata={"msrc_cve": cve_id},
        )

    if host in {"github.com", "www.github.com"}:
        match = _GHSA_RE.search(path)
        if not match:
            return None
        ghsa_id = "GHSA" + match.group(1)[4:].lower()
        return ApiRequest(
            original_url=url,
            api_url=f"{GITHUB_API_BASE}/advisories/{ghsa_id}",
            source="github_advisory",
            identifier=ghsa_id,
            headers=_github_headers(),
            metadata={"ghsa_id": ghsa_id},
        )
    return None


__all__ = ["ApiRequest", "msrc_api_url", "prepare_api_request"]
