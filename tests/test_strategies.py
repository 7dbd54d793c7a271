import asyncio
import logging

import aiohttp

from advisory_fetcher.workflows import strategies
from advisory_fetcher.workflows.advisory_config import AdvisoryConfig
from advisory_fetcher.workflows.models import CapabilitySet, ErrorKind, FetchResult, StrategyKind
from advisory_fetcher.workflows.rate_limit import RateRetryController
from advisory_fetcher.workflows.strategies import (
    DynamicRenderStrategy,
    FetchStrategy,
    FetchStrategyChain,
    classify_http,
)

ALL = CapabilitySet(dynamic_render_available=True, source_api_available=True)
STATIC_ONLY = CapabilitySet(dynamic_render_available=False, source_api_available=False)

ADVISORY_HTML = "<html><body><h1>Security advisory CVE-2024-1234</h1>" + "<p>Fixed in 2.4.1.</p>" * 60 + "</body></html>"


class ScriptedStrategy(FetchStrategy):
    def __init__(self, kind: StrategyKind, *outcomes) -> None:
        self.kind = kind
        self.outcomes = list(outcomes)
        self.calls = []

    async def fetch(self, url, session):
        self.calls.append(url)
        outcome = self.outcomes[min(len(self.calls), len(self.outcomes)) - 1]
        if isinstance(outcome, ErrorKind):
            return FetchResult.failure(url, self.kind, outcome)
        if outcome == "thin":
            return FetchResult(url=url, success=True, strategy_used=self.kind, content="<div id=\"root\"></div>", suspect=True)
        return FetchResult(url=url, success=True, strategy_used=self.kind, content=ADVISORY_HTML)


async def _no_sleep(_seconds: float) -> None:
    return None


def _chain(*scripted: ScriptedStrategy) -> FetchStrategyChain:
    controller = RateRetryController(min_interval=0.0, max_attempts=3, jitter=0.0, sleep=_no_sleep)
    return FetchStrategyChain({s.kind: s for s in scripted}, controller)


def test_plan_prefers_api_then_render_for_js_domains() -> None:
    chain = _chain(
        ScriptedStrategy(StrategyKind.SOURCE_API, "ok"),
        ScriptedStrategy(StrategyKind.DYNAMIC_RENDER, "ok"),
        ScriptedStrategy(StrategyKind.STATIC_HTTP, "ok"),
    )

    plan = chain.plan("https://msrc.microsoft.com/update-guide/vulnerability/CVE-2024-21412", ALL)

    assert plan == [StrategyKind.SOURCE_API, StrategyKind.DYNAMIC_RENDER, StrategyKind.STATIC_HTTP]


def test_plan_static_first_for_plain_pages_and_honours_capabilities() -> None:
    chain = _chain(
        ScriptedStrategy(StrategyKind.DYNAMIC_RENDER, "ok"),
        ScriptedStrategy(StrategyKind.STATIC_HTTP, "ok"),
    )

    assert chain.plan("https://vendor.example/advisory/1", ALL) == [
        StrategyKind.STATIC_HTTP,
        StrategyKind.DYNAMIC_RENDER,
    ]
    assert chain.plan("https://msrc.microsoft.com/update-guide/", STATIC_ONLY) == [StrategyKind.STATIC_HTTP]


def test_chain_falls_back_after_blocked_strategy() -> None:
    render = ScriptedStrategy(StrategyKind.DYNAMIC_RENDER, ErrorKind.BLOCKED)
    static = ScriptedStrategy(StrategyKind.STATIC_HTTP, "ok")
    chain = _chain(render, static)

    result = asyncio.run(chain.fetch("https://security.paloaltonetworks.com/CVE-2024-3400", ALL))

    assert result.success is True
    assert result.strategy_used is StrategyKind.STATIC_HTTP
    assert len(render.calls) == 1


def test_thin_static_content_is_provisional_until_render_tried() -> None:
    static = ScriptedStrategy(StrategyKind.STATIC_HTTP, "thin")
    render = ScriptedStrategy(StrategyKind.DYNAMIC_RENDER, "ok")
    chain = _chain(static, render)

    result = asyncio.run(chain.fetch("https://vendor.example/advisory/1", ALL))

    assert result.strategy_used is StrategyKind.DYNAMIC_RENDER
    assert result.suspect is False


def test_thin_content_accepted_when_render_unavailable() -> None:
    static = ScriptedStrategy(StrategyKind.STATIC_HTTP, "thin")
    chain = _chain(static, ScriptedStrategy(StrategyKind.DYNAMIC_RENDER, "ok"))

    result = asyncio.run(chain.fetch("https://msrc.microsoft.com/update-guide/", STATIC_ONLY))

    assert result.success is True
    assert result.suspect is True
    assert result.strategy_used is StrategyKind.STATIC_HTTP


def test_provisional_result_kept_when_render_fails() -> None:
    static = ScriptedStrategy(StrategyKind.STATIC_HTTP, "thin")
    render = ScriptedStrategy(StrategyKind.DYNAMIC_RENDER, ErrorKind.RENDER_ERROR)
    chain = _chain(static, render)

    result = asyncio.run(chain.fetch("https://vendor.example/advisory/2", ALL))

    assert result.success is True
    assert result.strategy_used is StrategyKind.STATIC_HTTP


def test_not_found_stops_chain_without_retry(caplog) -> None:
    static = ScriptedStrategy(StrategyKind.STATIC_HTTP, ErrorKind.NOT_FOUND)
    render = ScriptedStrategy(StrategyKind.DYNAMIC_RENDER, "ok")
    chain = _chain(static, render)

    with caplog.at_level(logging.INFO):
        result = asyncio.run(chain.fetch("https://vendor.example/gone", ALL))

    assert result.success is False
    assert result.error is ErrorKind.NOT_FOUND
    assert result.attempts == 1
    assert render.calls == []
    assert "retrying" not in caplog.text


def test_transient_failures_are_retried_within_strategy() -> None:
    static = ScriptedStrategy(StrategyKind.STATIC_HTTP, ErrorKind.TIMEOUT, ErrorKind.TIMEOUT, "ok")
    chain = _chain(static)

    result = asyncio.run(chain.fetch("https://vendor.example/slow", STATIC_ONLY))

    assert result.success is True
    assert result.attempts == 3


def test_malformed_url_never_reaches_a_strategy() -> None:
    static = ScriptedStrategy(StrategyKind.STATIC_HTTP, "ok")
    chain = _chain(static)

    result = asyncio.run(chain.fetch("not a url", ALL))

    assert result.error is ErrorKind.MALFORMED_URL
    assert static.calls == []


def test_classify_http_maps_status_codes() -> None:
    url = "https://vendor.example/a"
    kind = StrategyKind.STATIC_HTTP

    assert classify_http(url, kind, 404, "", "text/html", 10).error is ErrorKind.NOT_FOUND
    assert classify_http(url, kind, 403, "Attention Required! | Cloudflare", "text/html", 10).error is ErrorKind.BLOCKED
    assert classify_http(url, kind, 403, "nope", "text/html", 10).error is ErrorKind.FORBIDDEN
    assert classify_http(url, kind, 429, "", "text/html", 10).error is ErrorKind.RATE_LIMITED
    assert classify_http(url, kind, 503, "", "text/html", 10).error is ErrorKind.SERVER_ERROR
    assert classify_http(url, kind, 200, "   ", "text/html", 10).error is ErrorKind.EMPTY_CONTENT
    ok = classify_http(url, kind, 200, ADVISORY_HTML, "text/html", 10)
    assert ok.success is True and ok.suspect is False


def test_soft_404_is_not_found() -> None:
    body = "<title>Security Update Guide</title><p>The page you requested cannot be found.</p>"

    result = classify_http("https://msrc.microsoft.com/x", StrategyKind.DYNAMIC_RENDER, 200, body, "text/html", 10)

    assert result.error is ErrorKind.NOT_FOUND


def test_render_strategy_reports_missing_playwright(monkeypatch) -> None:
    monkeypatch.setattr(strategies, "async_playwright", None, raising=False)
    strategy = DynamicRenderStrategy(AdvisoryConfig())

    result = asyncio.run(strategy.fetch("https://msrc.microsoft.com/update-guide/", None))

    assert result.success is False
    assert result.error is ErrorKind.RENDER_ERROR


CF_CHALLENGE = (
    "<!DOCTYPE html><html><head><title>Just a moment...</title></head><body>"
    "<div id=\"challenge-error-text\">Enable JavaScript and cookies to continue</div>"
    "<script>window._cf_chl_opt={cvId: '3'};</script></body></html>"
)


def test_challenge_page_is_blocked_for_any_status() -> None:
    url = "https://vendor.example/advisory/9"
    kind = StrategyKind.STATIC_HTTP

    assert classify_http(url, kind, 503, CF_CHALLENGE, "text/html", 512).error is ErrorKind.BLOCKED
    assert classify_http(url, kind, 403, CF_CHALLENGE, "text/html", 512).error is ErrorKind.BLOCKED
    assert classify_http(url, kind, 200, CF_CHALLENGE, "text/html", 512).error is ErrorKind.BLOCKED


class ChallengeStrategy(FetchStrategy):
    kind = StrategyKind.STATIC_HTTP

    def __init__(self) -> None:
        self.calls = []

    async def fetch(self, url, session):
        self.calls.append(url)
        return classify_http(url, self.kind, 503, CF_CHALLENGE, "text/html", 512)


def test_challenge_wall_is_contacted_once() -> None:
    wall = ChallengeStrategy()
    chain = _chain(wall)

    result = asyncio.run(chain.fetch("https://vendor.example/advisory/9", STATIC_ONLY))

    assert result.error is ErrorKind.BLOCKED
    assert len(wall.calls) == 1


def test_render_not_found_overrides_thin_static_content() -> None:
    static = ScriptedStrategy(StrategyKind.STATIC_HTTP, "thin")
    render = ScriptedStrategy(StrategyKind.DYNAMIC_RENDER, ErrorKind.NOT_FOUND)
    chain = _chain(static, render)

    result = asyncio.run(chain.fetch("https://vendor.example/advisory/3", ALL))

    assert result.success is False
    assert result.error is ErrorKind.NOT_FOUND
    assert result.strategy_used is StrategyKind.DYNAMIC_RENDER


class FakeResponse:
    def __init__(self, status: int, body: bytes, content_type: str = "text/html; charset=utf-8") -> None:
        self.status = status
        self._body = body
        self.headers = {"Content-Type": content_type}

    async def read(self) -> bytes:
        return self._body


class FakeRequest:
    def __init__(self, response=None, error=None) -> None:
        self.response = response
        self.error = error

    async def __aenter__(self):
        if self.error is not None:
            raise self.error
        return self.response

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, response=None, error=None) -> None:
        self.request = FakeRequest(response, error)
        self.urls = []

    def get(self, url, **kwargs):
        self.urls.append(url)
        return self.request


def _static_fetch(session: FakeSession):
    strategy = strategies.StaticHttpStrategy(AdvisoryConfig(timeout=5.0))
    return asyncio.run(strategy.fetch("https://vendor.example/advisory/1", session))


def test_static_http_translates_network_errors() -> None:
    timeout = _static_fetch(FakeSession(error=asyncio.TimeoutError()))
    refused = _static_fetch(FakeSession(error=aiohttp.ClientConnectionError("connection refused")))
    invalid = _static_fetch(FakeSession(error=aiohttp.InvalidURL("https://vendor.example/%zz")))

    assert timeout.error is ErrorKind.TIMEOUT
    assert timeout.error.retryable
    assert refused.error is ErrorKind.CONNECTION
    assert refused.detail == "connection refused"
    assert invalid.error is ErrorKind.MALFORMED_URL
    assert invalid.error.stops_chain


def test_static_http_classifies_response_body() -> None:
    ok = _static_fetch(FakeSession(FakeResponse(200, ADVISORY_HTML.encode("utf-8"))))
    gone = _static_fetch(FakeSession(FakeResponse(410, b"<p>gone</p>")))

    assert ok.success is True
    assert ok.content_type == "text/html"
    assert "CVE-2024-1234" in ok.content
    assert gone.error is ErrorKind.NOT_FOUND
    assert gone.status_code == 410


class FakePage:
    def __init__(self, browser: "FakeBrowser") -> None:
        self.browser = browser

    async def goto(self, url, timeout=None, wait_until=None):
        self.browser.gotos.append(wait_until)
        if self.browser.goto_error is not None:
            raise self.browser.goto_error
        self.browser.visits += 1
        return self.browser.responses[min(self.browser.visits, len(self.browser.responses)) - 1]

    async def title(self):
        return self.browser.titles[self.browser.visits - 1]

    async def wait_for_timeout(self, ms):
        self.browser.waits.append(ms)

    async def wait_for_load_state(self, state, timeout=None):
        self.browser.load_states.append(state)

    async def content(self):
        return self.browser.pages[self.browser.visits - 1]


class FakeContext:
    def __init__(self, browser: "FakeBrowser") -> None:
        self.browser = browser

    async def new_page(self):
        return FakePage(self.browser)

    async def close(self):
        self.browser.closed.append("context")


class FakeBrowser:
    def __init__(self, titles, pages, responses, goto_error=None) -> None:
        self.titles = titles
        self.pages = pages
        self.responses = responses
        self.goto_error = goto_error
        self.visits = 0
        self.gotos = []
        self.waits = []
        self.load_states = []
        self.closed = []

    async def new_context(self, **kwargs):
        return FakeContext(self)

    async def close(self):
        self.closed.append("browser")


class FakeRenderResponse:
    def __init__(self, status: int) -> None:
        self.status = status
        self.headers = {"content-type": "text/html; charset=utf-8"}


def _fake_playwright(browser: FakeBrowser):
    class Chromium:
        async def launch(self, headless=True):
            return browser

    class Driver:
        chromium = Chromium()

        async def __aenter__(self):
            return self

        async def __aexit__(self, *exc):
            return False

    return lambda: Driver()


def test_render_waits_out_interstitial_then_classifies(monkeypatch) -> None:
    browser = FakeBrowser(
        titles=["Just a moment...", "CVE-2024-1234 advisory"],
        pages=[CF_CHALLENGE, ADVISORY_HTML],
        responses=[FakeRenderResponse(503), FakeRenderResponse(200)],
    )
    monkeypatch.setattr(strategies, "async_playwright", _fake_playwright(browser), raising=False)

    result = asyncio.run(DynamicRenderStrategy(AdvisoryConfig()).fetch("https://msrc.microsoft.com/x", None))

    assert result.success is True
    assert result.strategy_used is StrategyKind.DYNAMIC_RENDER
    assert result.content_type == "text/html"
    assert browser.gotos == ["domcontentloaded", "networkidle"]
    assert browser.waits == [2000]
    assert browser.closed == ["context", "browser"]


def test_render_classifies_rendered_status(monkeypatch) -> None:
    browser = FakeBrowser(titles=["Not found"], pages=["<p>missing</p>"], responses=[FakeRenderResponse(404)])
    monkeypatch.setattr(strategies, "async_playwright", _fake_playwright(browser), raising=False)

    result = asyncio.run(DynamicRenderStrategy(AdvisoryConfig()).fetch("https://msrc.microsoft.com/y", None))

    assert result.error is ErrorKind.NOT_FOUND
    assert result.status_code == 404
    assert browser.load_states == ["networkidle"]
    assert browser.closed == ["context", "browser"]


def test_render_errors_close_browser(monkeypatch) -> None:
    browser = FakeBrowser(titles=[], pages=[], responses=[], goto_error=asyncio.TimeoutError())
    monkeypatch.setattr(strategies, "async_playwright", _fake_playwright(browser), raising=False)

    result = asyncio.run(DynamicRenderStrategy(AdvisoryConfig()).fetch("https://msrc.microsoft.com/z", None))

    assert result.error is ErrorKind.TIMEOUT
    assert browser.closed == ["context", "browser"]
