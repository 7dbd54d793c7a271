"""HTML normalization helpers shared by fetch strategies and extractors.

Deterministic and provider-agnostic: decode bytes, repair mojibake and pull
visible or main-body text out of brittle advisory markup.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Mapping, Optional

import ftfy
from bs4 import BeautifulSoup
from charset_normalizer import from_bytes

try:  # Trafilatura is preferred for main-text extraction
    import trafilatura  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    trafilatura = None  # type: ignore

try:  # readability-lxml fallback
    from readability import Document  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    Document = None  # type: ignore

__all__ = [
    "decode_bytes_auto",
    "minimal_text_fix",
    "make_soup",
    "visible_text",
    "main_text",
]

_ZERO_WIDTH = {0x200B, 0x200C, 0x200D, 0x2060, 0xFEFF}
_REMOVE = {0x00, 0x0B, 0x0C}
_C1_TO_SPACE = {cp: " " for cp in range(0x80, 0xA0)}
_TRANSLATE = {**{cp: None for cp in _ZERO_WIDTH | _REMOVE}, **_C1_TO_SPACE}


def decode_bytes_auto(body: bytes, headers: Optional[Mapping[str, str]] = None) -> str:
    """Decode HTTP bytes using charset header hints with charset-normalizer fallback."""

    if not body:
        return ""
    enc = None
    if headers:
        ct = headers.get("content-type", "") or headers.get("Content-Type", "")
        match = re.search(r"charset=([^\s;]+)", ct, re.I)
        if match:
            enc = match.group(1).strip(' "\'').lower()
    if enc:
        try:
            return body.decode(enc, errors="replace")
        except LookupError:
            pass
    result = from_bytes(body).best()
    if result is None:
        return body.decode("utf-8", errors="replace")
    return str(result)


def minimal_text_fix(text: str) -> str:
    """Fix mojibake and strip zero-width/control noise without collapsing structure."""

    if not text:
        return ""
    normalized = unicodedata.normalize("NFC", text)
    fixed = ftfy.fix_text(normalized, normalization="NFC")
    return fixed.translate(_TRANSLATE)


def make_soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "lxml")


def visible_text(html: str) -> str:
    """Body text with script/style/noscript removed, whitespace collapsed."""

    soup = make_soup(html)
    for tag in soup.find_all(["script", "style", "noscript", "template"]):
        tag.extract()
    root = soup.body or soup
    return " ".join(root.get_text(" ", strip=True).split())


def main_text(html: str, url: Optional[str] = None) -> str:
    """Main readable text: trafilatura, then readability, then visible text."""

    if not html or not html.strip():
        return ""
    if trafilatura is not None:
        try:
            extracted = trafilatura.extract(
                html,
                url=url,
                include_comments=False,
                include_tables=True,
                favor_recall=True,
            )
        except Exception:  # pragma: no cover - trafilatura internal
            extracted = None
        if extracted:
            return minimal_text_fix(extracted)
    if Document is not None:
        try:
            summary = Document(html).summary(html_partial=True)
        except Exception:  # pragma: no cover - readability internal
            summary = ""
        text = make_soup(summary).get_text(" ", strip=True) if summary else ""
        if text:
            return minimal_text_fix(text)
    return minimal_text_fix(visible_text(html))
