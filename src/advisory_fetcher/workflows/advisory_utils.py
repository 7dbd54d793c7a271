"""Shared helper functions used by the resolution pipeline."""

from __future__ import annotations

import re
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from .advisory_config import ADVISORY_MARKERS, BOT_BLOCK_TOKENS, JS_PLACEHOLDER_TOKENS

_CELL_SPLIT = re.compile(r"[;|\s]+")
_KB_MARKER = re.compile(r"\bkb\s?\d{6,7}\b", re.IGNORECASE)


def idna_normalize(host: str) -> str:
    """Return a lowercase, IDNA-normalized host name."""

    h = (host or "").strip().rstrip(".").lower()
    if not h:
        return ""
    try:
        h = h.encode("idna").decode("ascii")
    except UnicodeError:
        pass
    return h


def normalize_url(u: str) -> str:
    """Normalize a URL for cache/dedup purposes.

    - Avoid rewriting path characters (path-sensitive sites can 404)
    - Lower-case host
    - Remove default ports and fragments
    """
    raw = (u or "").strip()
    try:
        p = urlparse(raw)
        host = idna_normalize(p.hostname) if p.hostname else None
        port = p.port
    except ValueError:
        return raw
    path = p.path or ""
    if path and any(ch.isspace() for ch in path):
        path = "".join(path.split())
    netloc = host if host else p.netloc
    if port and not ((p.scheme == "http" and port == 80) or (p.scheme == "https" and port == 443)):
        netloc = f"{netloc}:{port}"
    if p.username or p.password:
        netloc = p.netloc
    return urlunparse(p._replace(scheme=p.scheme.lower(), netloc=netloc, path=path, fragment=""))


def is_valid_url(url: str) -> bool:
    try:
        p = urlparse(url or "")
        return p.scheme in {"http", "https"} and bool(p.hostname)
    except ValueError:
        return False


def domain_of(url: str) -> str:
    try:
        return idna_normalize(urlparse(url or "").hostname or "")
    except ValueError:
        return ""


def split_url_cell(value: Optional[str]) -> List[str]:
    """Split a delimiter-joined cell into raw URL tokens (order kept)."""

    if not value:
        return []
    return [token for token in _CELL_SPLIT.split(value.strip()) if token]


def unique_in_order(items: Iterable[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            out.append(item)
    return out


def has_block_signature(text: str) -> bool:
    lowered = (text or "").lower()
    return any(token in lowered for token in BOT_BLOCK_TOKENS)


_SOFT_404_TEMPLATES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    (
        "github_pages_404",
        (
            "page not found · github pages",
            "the site configured at this address",
        ),
    ),
    (
        "s3_nosuchkey",
        ("<code>nosuchkey</code>",),
    ),
    (
        "generic_not_found",
        (
            "page not found",
            "requested url was not found on this server",
        ),
    ),
    (
        "msrc_not_found",
        (
            "security update guide",
            "the page you requested cannot be found",
        ),
    ),
)


def detect_soft_404(text: str) -> Optional[str]:
    """Return a template id when the body matches a known soft-404 page."""
    if not text:
        return None
    lowered = text.lower()
    for template_id, tokens in _SOFT_404_TEMPLATES:
        if all(token in lowered for token in tokens):
            return template_id
    return None


def looks_like_js_placeholder(text: str) -> bool:
    lowered = (text or "").lower()
    return any(token in lowered for token in JS_PLACEHOLDER_TOKENS)


def has_advisory_markers(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in ADVISORY_MARKERS) or bool(_KB_MARKER.search(lowered))


def is_suspect_content(text: str, min_chars: int) -> bool:
    """Thin content without advisory markers, or a JavaScript placeholder."""

    body = text or ""
    if looks_like_js_placeholder(body):
        return True
    return len(body) < min_chars and not has_advisory_markers(body)


def sanity_check() -> None:
    assert idna_normalize("ExAmple.COM") == "example.com"
    assert normalize_url("HTTPS://Example.com:443/a#frag") == "https://example.com/a"
    assert split_url_cell("a; b|c\nd") == ["a", "b", "c", "d"]
    assert not is_valid_url("ftp://example.com/x")


sanity_check()

__all__ = [
    "detect_soft_404",
    "domain_of",
    "has_advisory_markers",
    "has_block_signature",
    "idna_normalize",
    "is_suspect_content",
    "is_valid_url",
    "looks_like_js_placeholder",
    "normalize_url",
    "split_url_cell",
    "unique_in_order",
]
