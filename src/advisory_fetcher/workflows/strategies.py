from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Dict, List, Mapping, Optional

import aiohttp

from .advisory_config import (
    BLOCK_STATUS_CODES,
    DYNAMIC_RENDER_DOMAINS,
    INTERSTITIAL_TITLES,
    NOT_FOUND_STATUS_CODES,
    RATE_LIMIT_STATUS_CODES,
    TIMEOUT_STATUS_CODES,
    AdvisoryConfig,
)
from .advisory_utils import (
    detect_soft_404,
    domain_of,
    has_block_signature,
    is_suspect_content,
    is_valid_url,
)
from .html_normalize import decode_bytes_auto
from .models import CapabilitySet, ErrorKind, FetchResult, StrategyKind
from .rate_limit import RateRetryController
from .source_api import prepare_api_request

logger = logging.getLogger(__name__)

try:  # Playwright is optional; fallback gracefully if unavailable
    from playwright.async_api import async_playwright  # type: ignore
except Exception:  # pragma: no cover - handled at runtime
    async_playwright = None  # type: ignore


def default_headers(config: AdvisoryConfig) -> Dict[str, str]:
    return {
        "User-Agent": config.user_agent,
        "Accept-Language": config.accept_language,
        "Accept": "text/html,application/xhtml+xml,application/json;q=0.9,*/*;q=0.8",
        "Accept-Encoding": "gzip, deflate",
    }


def classify_http(
    url: str,
    strategy: StrategyKind,
    status: int,
    text: str,
    content_type: str,
    min_content_chars: int,
) -> FetchResult:
    """Turn an HTTP status + body into a success or an ErrorKind failure."""

    blocked = has_block_signature(text)
    if status in NOT_FOUND_STATUS_CODES:
        return FetchResult.failure(url, strategy, ErrorKind.NOT_FOUND, status_code=status)
    if status in BLOCK_STATUS_CODES or (status >= 500 and blocked):
        kind = ErrorKind.BLOCKED if blocked else ErrorKind.FORBIDDEN
        return FetchResult.failure(url, strategy, kind, status_code=status)
    if status in TIMEOUT_STATUS_CODES:
        return FetchResult.failure(url, strategy, ErrorKind.TIMEOUT, status_code=status)
    if status in RATE_LIMIT_STATUS_CODES:
        return FetchResult.failure(url, strategy, ErrorKind.RATE_LIMITED, status_code=status)
    if status >= 500:
        return FetchResult.failure(url, strategy, ErrorKind.SERVER_ERROR, status_code=status)
    if not 200 <= status < 300:
        return FetchResult.failure(url, strategy, ErrorKind.HTTP_ERROR, status_code=status)
    if not (text or "").strip():
        return FetchResult.failure(url, strategy, ErrorKind.EMPTY_CONTENT, status_code=status)
    if blocked:
        return FetchResult.failure(
            url, strategy, ErrorKind.BLOCKED, status_code=status, detail="bot challenge page"
        )
    soft_404 = detect_soft_404(text)
    if soft_404:
        return FetchResult.failure(
            url, strategy, ErrorKind.NOT_FOUND, status_code=status, detail=f"soft 404 ({soft_404})"
        )
    suspect = "json" not in content_type.lower() and is_suspect_content(text, min_content_chars)
    return FetchResult(
        url=url,
        success=True,
        strategy_used=strategy,
        content=text,
        status_code=status,
        content_type=content_type,
        suspect=suspect,
    )


class FetchStrategy:
    """One way of retrieving a page. Implementations never raise for network trouble."""

    kind: StrategyKind

    async def fetch(self, url: str, session: Optional[aiohttp.ClientSession]) -> FetchResult:
        raise NotImplementedError


class StaticHttpStrategy(FetchStrategy):
    kind = StrategyKind.STATIC_HTTP

    def __init__(self, config: AdvisoryConfig) -> None:
        self.config = config

    async def fetch(self, url: str, session: Optional[aiohttp.ClientSession]) -> FetchResult:
        if session is None:
            async with aiohttp.ClientSession(headers=default_headers(self.config)) as own:
                return await self._get(url, own)
        return await self._get(url, session)

    async def _get(self, url: str, session: aiohttp.ClientSession) -> FetchResult:
        started = time.perf_counter()
        try:
            async with session.get(
                url,
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                allow_redirects=True,
            ) as resp:
                status = resp.status
                content_type = resp.headers.get("Content-Type", "text/html").split(";")[0]
                raw_bytes = await resp.read()
                text = decode_bytes_auto(raw_bytes, resp.headers)
        except asyncio.TimeoutError:
            return FetchResult.failure(url, self.kind, ErrorKind.TIMEOUT, detail=f"no response in {self.config.timeout}s")
        except aiohttp.InvalidURL as exc:
            return FetchResult.failure(url, self.kind, ErrorKind.MALFORMED_URL, detail=str(exc))
        except aiohttp.ClientConnectionError as exc:
            return FetchResult.failure(url, self.kind, ErrorKind.CONNECTION, detail=str(exc) or type(exc).__name__)
        except aiohttp.ClientError as exc:
            return FetchResult.failure(url, self.kind, ErrorKind.HTTP_ERROR, detail=str(exc) or type(exc).__name__)
        result = classify_http(url, self.kind, status, text, content_type, self.config.min_content_chars)
        logger.debug("static fetch %s -> %s in %.2fs", url, status, time.perf_counter() - started)
        return result


class SourceApiStrategy(FetchStrategy):
    kind = StrategyKind.SOURCE_API

    def __init__(self, config: AdvisoryConfig) -> None:
        self.config = config

    async def fetch(self, url: str, session: Optional[aiohttp.ClientSession]) -> FetchResult:
        request = prepare_api_request(url)
        if request is None:
            return FetchResult.failure(url, self.kind, ErrorKind.API_ERROR, detail="no API mapping for URL")
        if session is None:
            async with aiohttp.ClientSession(headers=default_headers(self.config)) as own:
                return await self._get(url, request.api_url, request.headers, own)
        return await self._get(url, request.api_url, request.headers, session)

    async def _get(
        self,
        url: str,
        api_url: str,
        headers: Mapping[str, str],
        session: aiohttp.ClientSession,
    ) -> FetchResult:
        try:
            async with session.get(
                api_url,
                headers=dict(headers),
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            ) as resp:
                status = resp.status
                body = await resp.text(errors="replace")
                remaining = resp.headers.get("X-RateLimit-Remaining")
        except asyncio.TimeoutError:
            return FetchResult.failure(url, self.kind, ErrorKind.TIMEOUT, detail=api_url)
        except aiohttp.ClientConnectionError as exc:
            return FetchResult.failure(url, self.kind, ErrorKind.CONNECTION, detail=str(exc) or type(exc).__name__)
        except aiohttp.ClientError as exc:
            return FetchResult.failure(url, self.kind, ErrorKind.API_ERROR, detail=str(exc) or type(exc).__name__)

        if status in RATE_LIMIT_STATUS_CODES or (status == 403 and remaining == "0"):
            return FetchResult.failure(url, self.kind, ErrorKind.RATE_LIMITED, status_code=status)
        if status >= 500:
            return FetchResult.failure(url, self.kind, ErrorKind.SERVER_ERROR, status_code=status)
        if status != 200:
            # An API miss says nothing about the advisory page itself.
            return FetchResult.failure(url, self.kind, ErrorKind.API_ERROR, status_code=status, detail=api_url)
        try:
            payload = json.loads(body)
        except ValueError:
            return FetchResult.failure(url, self.kind, ErrorKind.API_ERROR, status_code=status, detail="invalid JSON")
        if not payload or (isinstance(payload, dict) and payload.get("value") == []):
            return FetchResult.failure(url, self.kind, ErrorKind.EMPTY_CONTENT, status_code=status, detail=api_url)
        return FetchResult(
            url=url,
            success=True,
            strategy_used=self.kind,
            content=body,
            status_code=status,
            content_type="application/json",
        )


def _classify_render_exception(exc: Exception) -> ErrorKind:
    if isinstance(exc, asyncio.TimeoutError) or type(exc).__name__ == "TimeoutError":
        return ErrorKind.TIMEOUT
    message = str(exc)
    if "ERR_NAME_NOT_RESOLVED" in message or "ERR_CONNECTION" in message or "ERR_TIMED_OUT" in message:
        return ErrorKind.CONNECTION
    if "ERR_INVALID_URL" in message:
        return ErrorKind.MALFORMED_URL
    return ErrorKind.RENDER_ERROR


class DynamicRenderStrategy(FetchStrategy):
    kind = StrategyKind.DYNAMIC_RENDER

    def __init__(self, config: AdvisoryConfig) -> None:
        self.config = config

    async def fetch(self, url: str, session: Optional[aiohttp.ClientSession]) -> FetchResult:
        if async_playwright is None:
            return FetchResult.failure(url, self.kind, ErrorKind.RENDER_ERROR, detail="playwright not installed")
        try:
            status, content_type, content = await self._render(url)
        except Exception as exc:  # playwright raises its own Error hierarchy
            kind = _classify_render_exception(exc)
            logger.debug("render failed for %s: %s", url, exc)
            return FetchResult.failure(url, self.kind, kind, detail=str(exc).splitlines()[0] if str(exc) else None)
        return classify_http(url, self.kind, status, content, content_type, self.config.min_content_chars)

    async def _render(self, url: str):
        timeout_ms = int(self.config.timeout * 1000)
        async with async_playwright() as p:  # type: ignore[misc]
            browser = await p.chromium.launch(headless=True)
            # Align context with a typical desktop browser profile. This reduces
            # false-positive bot detection without attempting to evade provider
            # controls.
            context = await browser.new_context(
                user_agent=self.config.user_agent,
                viewport={"width": 1920, "height": 1080},
                locale="en-US",
                java_script_enabled=True,
            )
            page = await context.new_page()
            try:
                response = await page.goto(url, timeout=timeout_ms, wait_until="domcontentloaded")
                title = ((await page.title()) or "").lower()
                if any(marker in title for marker in INTERSTITIAL_TITLES):
                    await page.wait_for_timeout(2000)
                    second = await page.goto(url, timeout=timeout_ms, wait_until="networkidle")
                    if second is not None:
                        response = second
                else:
                    try:
                        await page.wait_for_load_state("networkidle", timeout=min(timeout_ms, 15000))
                    except Exception as exc:  # long-polling pages never go idle
                        logger.debug("networkidle not reached for %s: %s", url, exc)
                content = await page.content()
                status = response.status if response else 200
                content_type = response.headers.get("content-type", "text/html") if response else "text/html"
            finally:
                await context.close()
                await browser.close()
        return status, content_type.split(";")[0], content


def build_default_strategies(config: AdvisoryConfig) -> Dict[StrategyKind, FetchStrategy]:
    return {
        StrategyKind.SOURCE_API: SourceApiStrategy(config),
        StrategyKind.DYNAMIC_RENDER: DynamicRenderStrategy(config),
        StrategyKind.STATIC_HTTP: StaticHttpStrategy(config),
    }


class FetchStrategyChain:
    """Try strategies in priority order; each attempt goes through the controller."""

    def __init__(
        self,
        strategies: Mapping[StrategyKind, FetchStrategy],
        controller: RateRetryController,
        *,
        dynamic_domains=frozenset(DYNAMIC_RENDER_DOMAINS),
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.strategies = dict(strategies)
        self.controller = controller
        self.dynamic_domains = {d.lower() for d in dynamic_domains}
        self._log = logger if logger is not None else logging.getLogger(__name__)

    @classmethod
    def from_config(
        cls,
        config: AdvisoryConfig,
        controller: RateRetryController,
        logger: Optional[logging.Logger] = None,
    ) -> "FetchStrategyChain":
        return cls(build_default_strategies(config), controller, logger=logger)

    def requires_render(self, url: str) -> bool:
        return domain_of(url) in self.dynamic_domains

    def plan(self, url: str, capabilities: CapabilitySet) -> List[StrategyKind]:
        order: List[StrategyKind] = []
        if prepare_api_request(url) is not None:
            order.append(StrategyKind.SOURCE_API)
        if self.requires_render(url):
            order.extend([StrategyKind.DYNAMIC_RENDER, StrategyKind.STATIC_HTTP])
        else:
            order.extend([StrategyKind.STATIC_HTTP, StrategyKind.DYNAMIC_RENDER])
        return [kind for kind in order if capabilities.allows(kind) and kind in self.strategies]

    async def fetch(
        self,
        url: str,
        capabilities: CapabilitySet,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> FetchResult:
        if not is_valid_url(url):
            return FetchResult.failure(
                url, StrategyKind.STATIC_HTTP, ErrorKind.MALFORMED_URL, detail="expected an absolute http(s) URL"
            )
        plan = self.plan(url, capabilities)
        if not plan:
            return FetchResult.failure(url, StrategyKind.STATIC_HTTP, ErrorKind.HTTP_ERROR, detail="no usable strategy")
        domain = domain_of(url)
        provisional: Optional[FetchResult] = None
        last: Optional[FetchResult] = None
        for index, kind in enumerate(plan):
            strategy = self.strategies[kind]
            result = await self.controller.execute(domain, lambda: strategy.fetch(url, session))
            if result.success:
                if result.suspect and StrategyKind.DYNAMIC_RENDER in plan[index + 1:]:
                    self._log.debug("thin content from %s for %s; trying render", kind.value, url)
                    provisional = provisional or result
                    continue
                return result
            last = result
            self._log.info("%s failed for %s: %s", kind.value, url, result.describe_error())
            if result.error is not None and result.error.stops_chain:
                # A definitive miss outranks thin content seen earlier.
                provisional = None
                break
        if provisional is not None:
            return provisional
        assert last is not None
        return last


__all__ = [
    "DynamicRenderStrategy",
    "FetchStrategy",
    "FetchStrategyChain",
    "SourceApiStrategy",
    "StaticHttpStrategy",
    "build_default_strategies",
    "classify_http",
    "default_headers",
]
