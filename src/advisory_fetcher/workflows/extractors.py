"""Source-specific remediation extractors selected by URL shape.

The registry is a closed set: one extractor per known advisory source plus a
generic catch-all. ``select_extractor`` is a pure function of the URL, and
``ExtractorRegistry.extract`` always follows the specific extractor with the
generic fallback pass so identifiers embedded in the URL are never lost.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Pattern, Sequence, Set, Tuple
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from .advisory_config import UPDATE_CATALOG_SEARCH
from .html_normalize import main_text, make_soup, minimal_text_fix, visible_text
from .models import RemediationRecord

logger = logging.getLogger(__name__)

# Identifier patterns, most specific first.
PATCH_ID_PATTERNS: Tuple[Tuple[str, Pattern[str]], ...] = (
    ("kb", re.compile(r"\bKB[-\s]?(\d{6,7})\b", re.IGNORECASE)),
    ("ghsa", re.compile(r"\b(GHSA(?:-[23456789cfghjmpqrvwx]{4}){3})\b", re.IGNORECASE)),
    ("rhsa", re.compile(r"\b(RH[SBE]A-\d{4}:\d{4,})\b", re.IGNORECASE)),
    ("usn", re.compile(r"\b(USN-\d{3,5}-\d{1,2})\b", re.IGNORECASE)),
    ("dsa", re.compile(r"\b(D[SL]A-\d{3,5}-\d{1,2})\b", re.IGNORECASE)),
    ("vmsa", re.compile(r"\b(VMSA-\d{4}-\d{4})\b", re.IGNORECASE)),
    ("ms_bulletin", re.compile(r"\b(MS\d{2}-\d{3})\b", re.IGNORECASE)),
    ("cve", re.compile(r"\b(CVE-\d{4}-\d{4,})\b", re.IGNORECASE)),
)

_CATALOG_LINK = re.compile(r"https?://(?:www\.)?catalog\.update\.microsoft\.com/[^\s\"'<>]+", re.IGNORECASE)
_DOWNLOAD_SUFFIXES = (".msu", ".msi", ".exe", ".cab", ".zip", ".tar.gz", ".tgz", ".rpm", ".deb", ".pkg", ".dmg", ".jar")
_DOWNLOAD_PATH_HINTS = ("/download", "/downloads/", "/releases/", "/patches/", "/hotfix", "/updates/")

_FIXED_VERSION_PATTERNS = (
    re.compile(r"(?:fixed|patched|resolved|addressed) in (?:version |v|release )?(\d+(?:\.\d+)+(?:[-.][a-z0-9]+)?)", re.IGNORECASE),
    re.compile(r"(?:upgrade|update) to (?:version |v|release )?(\d+(?:\.\d+)+(?:[-.][a-z0-9]+)?)(?: or later)?", re.IGNORECASE),
)
_AFFECTED_VERSION_PATTERNS = (
    re.compile(r"versions? (\d+(?:\.\d+)+) (?:through|to) (\d+(?:\.\d+)+)", re.IGNORECASE),
    re.compile(r"(?:versions? |releases? )?(?:prior to|before|earlier than|up to) (?:version )?(\d+(?:\.\d+)+)", re.IGNORECASE),
    re.compile(r"(<=?\s*\d+(?:\.\d+)+)"),
)
_REMEDIATION_HEADINGS = re.compile(
    r"^\s*(remediation|solution|solutions|resolution|mitigation|mitigations|workarounds?|fix|fixes|"
    r"recommendations?|how to get this update|patches|updates? information)\b",
    re.IGNORECASE,
)
_MAX_REMEDIATION_CHARS = 1200


def _first_group(match: "re.Match[str]") -> str:
    return next((g for g in match.groups() if g), match.group(0))


def find_patch_id(text: str, kinds: Optional[Sequence[str]] = None) -> Optional[str]:
    """Return the first identifier found in ``text`` in pattern priority order."""

    if not text:
        return None
    for kind, pattern in PATCH_ID_PATTERNS:
        if kinds is not None and kind not in kinds:
            continue
        match = pattern.search(text)
        if match:
            value = _first_group(match)
            if kind == "kb":
                return f"KB{value}"
            if kind == "ghsa":
                return "GHSA" + value[4:].lower()
            return value.upper()
    return None


def patch_id_from_url(url: str) -> Optional[str]:
    try:
        parsed = urlparse(url or "")
    except ValueError:
        return None
    haystack = f"{parsed.path} {parsed.query}".replace("%3A", ":").replace("%3a", ":")
    return find_patch_id(haystack)


def find_affected_versions(text: str) -> Optional[str]:
    if not text:
        return None
    fixed: List[str] = []
    for pattern in _FIXED_VERSION_PATTERNS:
        fixed.extend(pattern.findall(text))
    affected: List[str] = []
    for pattern in _AFFECTED_VERSION_PATTERNS:
        for match in pattern.findall(text):
            if isinstance(match, tuple):
                affected.append(f"{match[0]} - {match[1]}")
            else:
                affected.append(match.replace(" ", ""))
    parts: List[str] = []
    if affected:
        parts.append("affected " + ", ".join(_dedup(affected)[:5]))
    if fixed:
        parts.append("fixed " + ", ".join(_dedup(fixed)[:5]))
    return "; ".join(parts) or None


def _dedup(items: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    out: List[str] = []
    for item in items:
        key = item.strip()
        if key and key not in seen:
            seen.add(key)
            out.append(key)
    return out


def _truncate(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    cleaned = " ".join(minimal_text_fix(text).split())
    if not cleaned:
        return None
    if len(cleaned) > _MAX_REMEDIATION_CHARS:
        cleaned = cleaned[: _MAX_REMEDIATION_CHARS - 3].rstrip() + "..."
    return cleaned


def is_download_link(href: str) -> bool:
    lowered = (href or "").lower()
    if not lowered.startswith(("http://", "https://")):
        return False
    if _CATALOG_LINK.match(href):
        return True
    path = urlparse(lowered).path
    if path.endswith(_DOWNLOAD_SUFFIXES):
        return True
    return any(hint in path for hint in _DOWNLOAD_PATH_HINTS)


def anchor_hrefs(soup: BeautifulSoup, base_url: str) -> List[str]:
    links: List[str] = []
    for anchor in soup.find_all("a", href=True):
        href = (anchor.get("href") or "").strip()
        if not href or href.startswith(("#", "javascript:", "mailto:")):
            continue
        links.append(urljoin(base_url, href))
    return links


def section_text(soup: BeautifulSoup, heading: Pattern[str] = _REMEDIATION_HEADINGS) -> Optional[str]:
    """Text following the first heading whose label matches ``heading``."""

    for tag in soup.find_all(["h1", "h2", "h3", "h4", "h5", "dt", "strong", "th"]):
        label = tag.get_text(" ", strip=True)
        if not label or len(label) > 80 or not heading.match(label):
            continue
        chunks: List[str] = []
        for sibling in tag.find_all_next():
            if sibling is tag:
                continue
            if sibling.name in {"h1", "h2", "h3"} and sibling.get_text(strip=True):
                break
            if sibling.name in {"p", "li", "dd", "td", "pre"}:
                text = sibling.get_text(" ", strip=True)
                if text:
                    chunks.append(text)
            if sum(len(c) for c in chunks) > _MAX_REMEDIATION_CHARS:
                break
        if chunks:
            return " ".join(_dedup(chunks))
    return None


def _load_json(content: str) -> Optional[Any]:
    stripped = (content or "").lstrip()
    if not stripped.startswith(("{", "[")):
        return None
    try:
        return json.loads(stripped)
    except ValueError:
        return None


def quality_score(record: RemediationRecord, suspect: bool = False) -> int:
    """Deterministic diagnostic score in 0..100; never gates success."""

    score = 0
    if record.patch_id:
        score += 25
    if record.affected_versions:
        score += 25
    if record.remediation_text:
        score += 25
    if record.download_links:
        score += 25
    if suspect:
        score -= 15
    return max(0, min(100, score))


class Extractor:
    """Base class; subclasses set ``name`` and ``url_pattern``."""

    name = "base"
    url_pattern: Optional[Pattern[str]] = None

    def matches(self, url: str) -> bool:
        return bool(self.url_pattern and self.url_pattern.search(url or ""))

    def extract(self, content: str, url: str) -> RemediationRecord:
        raise NotImplementedError


class GenericExtractor(Extractor):
    """Best-effort heuristics for unknown layouts."""

    name = "generic"

    def matches(self, url: str) -> bool:
        return True

    def extract(self, content: str, url: str) -> RemediationRecord:
        payload = _load_json(content)
        if payload is not None:
            text = json.dumps(payload, ensure_ascii=False)
            links = [m.group(0) for m in re.finditer(r"https?://[^\s\"'<>\\]+", text)]
            return RemediationRecord(
                source_used=self.name,
                patch_id=find_patch_id(text),
                affected_versions=find_affected_versions(text),
                download_links=frozenset(link for link in links if is_download_link(link)),
            )
        soup = make_soup(content)
        body = visible_text(content)
        remediation = section_text(soup)
        if not remediation:
            sentences = [
                s.strip()
                for s in re.split(r"(?<=[.!?])\s+", main_text(content, url))
                if re.search(r"\b(upgrade|update to|install|apply|patch(?:ed)?|fixed in)\b", s, re.IGNORECASE)
            ]
            remediation = " ".join(_dedup(sentences)[:4]) or None
        links = [href for href in anchor_hrefs(soup, url) if is_download_link(href)]
        links.extend(m.group(0) for m in _CATALOG_LINK.finditer(content or ""))
        return RemediationRecord(
            source_used=self.name,
            patch_id=find_patch_id(body),
            affected_versions=find_affected_versions(body),
            remediation_text=_truncate(remediation),
            download_links=frozenset(links),
        )


class MsrcExtractor(Extractor):
    """Microsoft Security Update Guide (rendered page or affectedProduct API)."""

    name = "msrc"
    url_pattern = re.compile(r"^https?://(?:portal\.)?msrc\.microsoft\.com/", re.IGNORECASE)

    def extract(self, content: str, url: str) -> RemediationRecord:
        payload = _load_json(content)
        if isinstance(payload, dict) and isinstance(payload.get("value"), list):
            return self._from_api(payload["value"])
        soup = make_soup(content)
        body = visible_text(content)
        kbs = _dedup(f"KB{m}" for m in re.findall(r"\b(?:KB)?(\d{7})\b", " ".join(
            a.get_text(" ", strip=True) for a in soup.find_all("a")
        )))
        links = [href for href in anchor_hrefs(soup, url) if _CATALOG_LINK.match(href)]
        links.extend(UPDATE_CATALOG_SEARCH.format(kb=kb) for kb in kbs)
        builds = _dedup(re.findall(r"\b(10\.0\.\d{4,5}\.\d{1,5})\b", body))
        remediation = section_text(soup) or (
            f"Install security update(s) {', '.join(kbs)}." if kbs else None
        )
        return RemediationRecord(
            source_used=self.name,
            patch_id=kbs[0] if kbs else find_patch_id(body, ("kb", "cve")),
            affected_versions=("fixed build " + ", ".join(builds[:5])) if builds else find_affected_versions(body),
            remediation_text=_truncate(remediation),
            download_links=frozenset(links),
        )

    def _from_api(self, rows: List[Dict[str, Any]]) -> RemediationRecord:
        kbs: List[str] = []
        links: List[str] = []
        builds: List[str] = []
        products: List[str] = []
        remediation: List[str] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            product = row.get("product")
            if product:
                products.append(str(product))
            fixed = row.get("fixedBuildNumber")
            if fixed:
                builds.append(str(fixed))
            for article in row.get("kbArticles") or []:
                if not isinstance(article, dict):
                    continue
                name = str(article.get("articleName") or "").strip()
                if name.isdigit():
                    kbs.append(f"KB{name}")
                download = str(article.get("downloadUrl") or "").strip()
                if download:
                    links.append(download)
                elif name.isdigit():
                    links.append(UPDATE_CATALOG_SEARCH.format(kb=f"KB{name}"))
                label = article.get("downloadName")
                if label and name:
                    remediation.append(f"{label} KB{name}" if name.isdigit() else f"{label} {name}")
        kbs = _dedup(kbs)
        affected = None
        if products or builds:
            affected_parts = []
            if products:
                affected_parts.append(", ".join(_dedup(products)[:5]))
            if builds:
                affected_parts.append("fixed build " + ", ".join(_dedup(builds)[:5]))
            affected = "; ".join(affected_parts)
        return RemediationRecord(
            source_used=self.name,
            patch_id=kbs[0] if kbs else None,
            affected_versions=affected,
            remediation_text=_truncate("; ".join(_dedup(remediation))),
            download_links=frozenset(links),
        )


class MicrosoftSupportExtractor(Extractor):
    """support.microsoft.com KB articles."""

    name = "microsoft_support"
    url_pattern = re.compile(r"^https?://support\.microsoft\.com/", re.IGNORECASE)

    def extract(self, content: str, url: str) -> RemediationRecord:
        soup = make_soup(content)
        title = soup.title.get_text(" ", strip=True) if soup.title else ""
        heading = soup.find("h1")
        heading_text = heading.get_text(" ", strip=True) if heading else ""
        body = visible_text(content)
        patch_id = find_patch_id(f"{title} {heading_text}", ("kb",)) or find_patch_id(body, ("kb",))
        links = [href for href in anchor_hrefs(soup, url) if is_download_link(href)]
        if patch_id:
            links.append(UPDATE_CATALOG_SEARCH.format(kb=patch_id))
        builds = _dedup(re.findall(r"OS Builds? (\d{4,5}\.\d{1,5}(?: and \d{4,5}\.\d{1,5})?)", body))
        return RemediationRecord(
            source_used=self.name,
            patch_id=patch_id,
            affected_versions=("OS build " + ", ".join(builds)) if builds else find_affected_versions(body),
            remediation_text=_truncate(section_text(soup)),
            download_links=frozenset(links),
        )


class GithubAdvisoryExtractor(Extractor):
    """GitHub global and repository security advisories (HTML or API JSON)."""

    name = "github_advisory"
    url_pattern = re.compile(r"^https?://(?:www\.)?github\.com/(?:advisories/|[^/]+/[^/]+/security/advisories/)GHSA-", re.IGNORECASE)

    def extract(self, content: str, url: str) -> RemediationRecord:
        payload = _load_json(content)
        if isinstance(payload, dict) and payload.get("ghsa_id"):
            return self._from_api(payload)
        soup = make_soup(content)
        body = visible_text(content)
        ranges: List[str] = []
        patched: List[str] = []
        for label in soup.find_all(["h2", "h3", "h4", "dt", "div"]):
            text = label.get_text(" ", strip=True).lower()
            if text not in {"affected versions", "patched versions"}:
                continue
            value_tag = label.find_next(["code", "dd", "div", "span"])
            value = value_tag.get_text(" ", strip=True) if value_tag else ""
            if value:
                (ranges if text == "affected versions" else patched).append(value)
        links = [
            href
            for href in anchor_hrefs(soup, url)
            if re.search(r"/(commit|releases|pull)/", href) or is_download_link(href)
        ]
        affected = self._versions(_dedup(ranges), _dedup(patched)) or find_affected_versions(body)
        remediation = None
        if patched:
            remediation = f"Upgrade to a patched version: {', '.join(_dedup(patched))}."
        return RemediationRecord(
            source_used=self.name,
            patch_id=find_patch_id(body, ("ghsa",)),
            affected_versions=affected,
            remediation_text=_truncate(remediation or section_text(soup)),
            download_links=frozenset(links),
        )

    @staticmethod
    def _versions(ranges: List[str], patched: List[str]) -> Optional[str]:
        parts = []
        if ranges:
            parts.append("affected " + ", ".join(ranges))
        if patched:
            parts.append("fixed " + ", ".join(patched))
        return "; ".join(parts) or None

    def _from_api(self, payload: Dict[str, Any]) -> RemediationRecord:
        ranges: List[str] = []
        patched: List[str] = []
        steps: List[str] = []
        for vuln in payload.get("vulnerabilities") or []:
            if not isinstance(vuln, dict):
                continue
            package = vuln.get("package") or {}
            name = package.get("name") if isinstance(package, dict) else None
            vrange = vuln.get("vulnerable_version_range")
            first = vuln.get("first_patched_version")
            if isinstance(first, dict):
                first = first.get("identifier")
            if vrange:
                ranges.append(f"{name} {vrange}" if name else str(vrange))
            if first:
                patched.append(f"{name} {first}" if name else str(first))
                steps.append(f"Upgrade {name or 'the package'} to {first} or later.")
        references = [str(ref) for ref in payload.get("references") or [] if isinstance(ref, str)]
        links = [
            ref for ref in references if re.search(r"/(commit|releases|pull)/", ref) or is_download_link(ref)
        ]
        return RemediationRecord(
            source_used=self.name,
            patch_id=str(payload.get("ghsa_id")),
            affected_versions=self._versions(_dedup(ranges), _dedup(patched)),
            remediation_text=_truncate(" ".join(_dedup(steps))),
            download_links=frozenset(links),
        )


class RedHatExtractor(Extractor):
    """Red Hat errata (RHSA/RHBA/RHEA)."""

    name = "redhat"
    url_pattern = re.compile(r"^https?://access\.redhat\.com/errata/", re.IGNORECASE)

    def extract(self, content: str, url: str) -> RemediationRecord:
        soup = make_soup(content)
        body = visible_text(content)
        products: List[str] = []
        heading = soup.find(lambda tag: tag.name in {"h2", "h3"} and "affected products" in tag.get_text(" ", strip=True).lower())
        if heading is not None:
            listing = heading.find_next(["ul", "table"])
            if listing is not None:
                products = [li.get_text(" ", strip=True) for li in listing.find_all(["li", "td"]) if li.get_text(strip=True)]
        links = [
            href
            for href in anchor_hrefs(soup, url)
            if is_download_link(href) or "/downloads/content/" in href or href.endswith(".rpm")
        ]
        return RemediationRecord(
            source_used=self.name,
            patch_id=find_patch_id(f"{url} {body}", ("rhsa",)),
            affected_versions=", ".join(_dedup(products)[:8]) or find_affected_versions(body),
            remediation_text=_truncate(section_text(soup)),
            download_links=frozenset(links),
        )


class UbuntuExtractor(Extractor):
    """Ubuntu security notices (USN)."""

    name = "ubuntu"
    url_pattern = re.compile(r"^https?://(?:www\.)?ubuntu\.com/security/notices/USN-", re.IGNORECASE)

    def extract(self, content: str, url: str) -> RemediationRecord:
        soup = make_soup(content)
        body = visible_text(content)
        packages: List[str] = []
        for anchor in soup.find_all("a", href=True):
            href = anchor.get("href") or ""
            if "launchpad.net" in href and "/+source/" in href:
                label = anchor.get_text(" ", strip=True)
                if label:
                    packages.append(label)
        links = [
            href
            for href in anchor_hrefs(soup, url)
            if is_download_link(href) or ("launchpad.net" in href and "/+source/" in href)
        ]
        heading = re.compile(r"^\s*(update instructions|how to fix|solution)\b", re.IGNORECASE)
        return RemediationRecord(
            source_used=self.name,
            patch_id=find_patch_id(f"{url} {body}", ("usn",)),
            affected_versions=", ".join(_dedup(packages)[:8]) or find_affected_versions(body),
            remediation_text=_truncate(section_text(soup, heading) or section_text(soup)),
            download_links=frozenset(links),
        )


SPECIFIC_EXTRACTORS: Tuple[Extractor, ...] = (
    MsrcExtractor(),
    MicrosoftSupportExtractor(),
    GithubAdvisoryExtractor(),
    RedHatExtractor(),
    UbuntuExtractor(),
)
GENERIC_EXTRACTOR = GenericExtractor()


def select_extractor(
    url: str,
    extractors: Sequence[Extractor] = SPECIFIC_EXTRACTORS,
    default: Extractor = GENERIC_EXTRACTOR,
) -> Extractor:
    for extractor in extractors:
        if extractor.matches(url):
            return extractor
    return default


class ExtractorRegistry:
    """Run the selected extractor and then the generic fallback pass."""

    def __init__(
        self,
        extractors: Sequence[Extractor] = SPECIFIC_EXTRACTORS,
        generic: Extractor = GENERIC_EXTRACTOR,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.extractors = tuple(extractors)
        self.generic = generic
        self._log = logger if logger is not None else logging.getLogger(__name__)

    def select(self, url: str) -> Extractor:
        return select_extractor(url, self.extractors, self.generic)

    def extract(self, content: str, url: str, suspect: bool = False) -> RemediationRecord:
        extractor = self.select(url)
        try:
            record = extractor.extract(content, url)
        except Exception as exc:  # malformed markup must not fail a fetched URL
            self._log.warning("%s extractor failed for %s: %s", extractor.name, url, exc)
            record = RemediationRecord(source_used=extractor.name)
        record = self._fallback(record, content, url, extractor)
        return replace(record, quality_score=quality_score(record, suspect))

    def _fallback(self, record: RemediationRecord, content: str, url: str, extractor: Extractor) -> RemediationRecord:
        updates: Dict[str, Any] = {}
        if not record.patch_id:
            from_url = patch_id_from_url(url)
            if from_url:
                updates["patch_id"] = from_url
        if extractor is not self.generic:
            try:
                generic = self.generic.extract(content, url)
            except Exception as exc:
                self._log.debug("generic pass failed for %s: %s", url, exc)
                generic = RemediationRecord(source_used=self.generic.name)
            for field_name in ("patch_id", "affected_versions", "remediation_text"):
                if not getattr(record, field_name) and field_name not in updates and getattr(generic, field_name):
                    updates[field_name] = getattr(generic, field_name)
            extra_links = generic.download_links - record.download_links
            if extra_links:
                updates["download_links"] = record.download_links | extra_links
            if updates:
                updates["source_used"] = f"{record.source_used}+{self.generic.name}"
        if not updates:
            return record
        return replace(record, **updates)


__all__ = [
    "Extractor",
    "ExtractorRegistry",
    "GENERIC_EXTRACTOR",
    "GenericExtractor",
    "GithubAdvisoryExtractor",
    "MicrosoftSupportExtractor",
    "MsrcExtractor",
    "RedHatExtractor",
    "SPECIFIC_EXTRACTORS",
    "UbuntuExtractor",
    "find_affected_versions",
    "find_patch_id",
    "is_download_link",
    "patch_id_from_url",
    "quality_score",
    "select_extractor",
]
