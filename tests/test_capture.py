from __future__ import annotations

import asyncio
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from playwright.async_api import Error as PlaywrightError

from page_mirror.capture import (
    PLACEHOLDER_HTML,
    RESOURCE_TIMING_SCRIPT,
    SCROLL_STEP_SCRIPT,
    NetworkIdleTracker,
    capture_viewports,
    choose_canonical,
    merge_passes,
)
from page_mirror.config import CaptureConfig
from page_mirror.models import CapturePassResult, Provenance, StepOutcome, Viewport

TARGET = "https://example.com/"

FAST = dict(
    idle_window=0.01,
    idle_ceiling=0.5,
    settle_delay=0,
    scroll_pause=0,
    click_pause=0,
    inter_pass_delay=0,
    max_scroll_steps=5,
    interaction_selectors=(".toggle",),
)


class FakeRequest:
    def __init__(self, url: str, resource_type: str) -> None:
        self.url = url
        self.resource_type = resource_type
        self.method = "GET"


class FakeConsoleMessage:
    def __init__(self, type_: str, text: str) -> None:
        self.type = type_
        self.text = text


class FakeHandle:
    def __init__(self, page: "FakePage") -> None:
        self.page = page

    async def click(self, timeout: float = 0, force: bool = False) -> None:
        self.page.clicks += 1
        if self.page.navigate_on_click:
            self.page.url = TARGET + "elsewhere/"
            self.page.emit("framenavigated", self.page.main_frame)
            raise PlaywrightError("Execution context was destroyed")
        self.page.load([("https://example.com/img/revealed.png", "image")])


class FakePage:
    def __init__(
        self,
        html: str,
        resources: Sequence[Tuple[str, str]] = (),
        timing: Sequence[str] = (),
        navigate_on_click: bool = False,
        fail_navigation: bool = False,
        console: Sequence[str] = (),
    ) -> None:
        self.html = html
        self.resources = list(resources)
        self.timing = list(timing)
        self.navigate_on_click = navigate_on_click
        self.fail_navigation = fail_navigation
        self.console = list(console)
        self.handlers: Dict[str, List] = defaultdict(list)
        self.main_frame = object()
        self.url = "about:blank"
        self.scrolls = 0
        self.clicks = 0
        self.screenshots: List[str] = []

    def on(self, event: str, handler) -> None:
        self.handlers[event].append(handler)

    def emit(self, event: str, payload) -> None:
        for handler in list(self.handlers[event]):
            handler(payload)

    def load(self, resources: Sequence[Tuple[str, str]]) -> None:
        for url, resource_type in resources:
            request = FakeRequest(url, resource_type)
            self.emit("request", request)
            self.emit("requestfinished", request)

    def set_default_navigation_timeout(self, timeout: float) -> None:
        self.navigation_timeout = timeout

    async def goto(self, url: str, wait_until: Optional[str] = None, timeout: float = 0):
        if self.fail_navigation:
            raise PlaywrightError("net::ERR_NAME_NOT_RESOLVED")
        self.url = url
        self.emit("framenavigated", self.main_frame)
        self.load(self.resources)
        for text in self.console:
            self.emit("console", FakeConsoleMessage("error", text))
        self.emit("console", FakeConsoleMessage("log", "ready"))

    async def evaluate(self, script: str):
        if script == RESOURCE_TIMING_SCRIPT:
            return list(self.timing)
        if script == SCROLL_STEP_SCRIPT:
            self.scrolls += 1
            return self.scrolls < 3
        return 0

    async def query_selector_all(self, selector: str):
        return [FakeHandle(self)] if selector == ".toggle" else []

    async def content(self) -> str:
        return self.html

    async def screenshot(self, path: str, full_page: bool = False) -> None:
        Path(path).write_bytes(b"\x89PNG")
        self.screenshots.append(path)


class FakeContext:
    def __init__(self, page: FakePage) -> None:
        self.page = page
        self.closed = False

    async def new_page(self) -> FakePage:
        return self.page

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    def __init__(self, pages: Sequence[FakePage]) -> None:
        self.pages = list(pages)
        self.contexts: List[FakeContext] = []
        self.viewports: List[dict] = []

    async def new_context(self, viewport=None, user_agent=None) -> FakeContext:
        self.viewports.append(viewport)
        context = FakeContext(self.pages[len(self.contexts)])
        self.contexts.append(context)
        return context


def _html(body: str) -> str:
    return f"<html><head></head><body>{body}</body></html>"


def test_navigation_during_click_only_skips_that_step(tmp_path):
    pages = [
        FakePage(_html('<img src="/img/mobile.png">'), [("https://example.com/app.js", "script")]),
        FakePage(_html('<img src="/img/tablet.png">'), navigate_on_click=True),
        FakePage(_html('<img src="/img/desktop.png">'), timing=["https://example.com/lazy.css"]),
    ]
    config = CaptureConfig(
        viewports=(
            Viewport("mobile", 390, 844),
            Viewport("tablet", 768, 1024),
            Viewport("desktop", 1366, 900),
        ),
        screenshot_dir=tmp_path / "shots",
        **FAST,
    )
    browser = FakeBrowser(pages)

    passes = asyncio.run(capture_viewports(browser, TARGET, config))

    assert [p.viewport.label for p in passes] == ["mobile", "tablet", "desktop"]
    assert all(p.navigated for p in passes)
    assert all(context.closed for context in browser.contexts)
    assert browser.viewports[1] == {"width": 768, "height": 1024}

    tablet = passes[1]
    skipped = [s for s in tablet.steps if s.outcome is StepOutcome.SKIPPED_NAVIGATION]
    assert [s.name for s in skipped] == ["click .toggle #0"]
    assert tablet.final_url == TARGET + "elsewhere/"

    desktop = passes[2]
    assert "desktop.png" in desktop.html
    assert desktop.resource_urls == ["https://example.com/lazy.css"]
    assert "https://example.com/img/revealed.png" in [r.url for r in desktop.network_requests]
    assert all(s.outcome is StepOutcome.SUCCESS for s in desktop.steps)
    assert desktop.screenshot_path == str(tmp_path / "shots" / "desktop.png")


def test_scrolling_stops_when_page_stops_moving():
    page = FakePage(_html(""))
    config = CaptureConfig(viewports=(Viewport("only", 800, 600),), **FAST)
    passes = asyncio.run(capture_viewports(FakeBrowser([page]), TARGET, config))

    scroll_steps = [s for s in passes[0].steps if s.name.startswith("scroll-") and s.name != "scroll-top"]
    assert len(scroll_steps) == 3
    assert page.scrolls == 3


def test_failed_navigation_yields_placeholder_pass():
    pages = [
        FakePage(_html(""), fail_navigation=True),
        FakePage(_html('<link rel="stylesheet" href="/site.css">'), console=["boom"]),
    ]
    config = CaptureConfig(
        viewports=(Viewport("mobile", 390, 844), Viewport("desktop", 1366, 900)), **FAST
    )
    passes = asyncio.run(capture_viewports(FakeBrowser(pages), TARGET, config))

    assert passes[0].navigated is False
    assert passes[0].html == PLACEHOLDER_HTML
    assert "ERR_NAME_NOT_RESOLVED" in passes[0].error
    assert passes[1].navigated
    assert [m.text for m in passes[1].console_errors] == ["boom"]


def test_network_idle_tracker_waits_for_quiet_window():
    async def scenario():
        page = FakePage(_html(""))
        tracker = NetworkIdleTracker()
        tracker.attach(page)
        request = FakeRequest("https://example.com/slow.js", "script")
        page.emit("request", request)
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, page.emit, "requestfinished", request)
        settled = await tracker.wait_for_idle(idle_window=0.05, ceiling=2.0)

        page.emit("request", FakeRequest("https://example.com/stream", "fetch"))
        stalled = await tracker.wait_for_idle(idle_window=0.05, ceiling=0.2)
        return settled, stalled

    settled, stalled = asyncio.run(scenario())
    assert settled is True
    assert stalled is False


def _pass(label: str, width: int, html: str, navigated: bool = True, **kwargs) -> CapturePassResult:
    return CapturePassResult(
        viewport=Viewport(label, width, 800),
        final_url=TARGET,
        html=html,
        navigated=navigated,
        **kwargs,
    )


def test_choose_canonical_prefers_largest_navigated_viewport():
    passes = [
        _pass("mobile", 390, "m"),
        _pass("wide", 1920, "w", navigated=False),
        _pass("desktop", 1366, "d"),
    ]
    assert choose_canonical(passes).viewport.label == "desktop"
    assert choose_canonical([_pass("x", 1, "", navigated=False)]) is None


def test_merge_passes_unions_every_viewport():
    mobile = _pass(
        "mobile", 390, _html('<img src="/img/m.png">'),
        resource_urls=["https://example.com/fonts/a.woff2", TARGET],
    )
    desktop = _pass("desktop", 1366, _html('<img src="/img/d.png">'))
    evidence = merge_passes([mobile, desktop], TARGET)

    urls = {c.url for c in evidence.candidates}
    assert {"https://example.com/img/m.png", "https://example.com/img/d.png"} <= urls
    assert "https://example.com/fonts/a.woff2" in urls
    assert TARGET not in urls
    assert evidence.canonical_html == desktop.html
    assert "https://example.com/fonts/a.woff2" in evidence.urls_by_viewport["mobile"]
    assert "https://example.com/fonts/a.woff2" not in evidence.urls_by_viewport["desktop"]
    network = [c for c in evidence.candidates if c.provenance is Provenance.NETWORK]
    assert [c.url for c in network] == ["https://example.com/fonts/a.woff2"]
