"""Rendering passes that observe every resource a page loads per viewport."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from playwright.async_api import Browser, Error as PlaywrightError, Page, async_playwright

from .config import CaptureConfig
from .errors import InteractionInterrupted, NavigationFailed
from .extract import asset_type_for, extract_from_html
from .models import (
    AssetType,
    CapturePassResult,
    Candidate,
    ConsoleMessage,
    NetworkRequest,
    Provenance,
    RuntimeEvidence,
    StepOutcome,
    StepResult,
    Viewport,
)
from .utils import normalize_url

logger = logging.getLogger("page_mirror")

PLACEHOLDER_HTML = "<html><head></head><body></body></html>"

RESOURCE_TYPES: Dict[str, AssetType] = {
    "stylesheet": AssetType.CSS,
    "script": AssetType.JS,
    "image": AssetType.IMAGE,
    "font": AssetType.FONT,
    "media": AssetType.MEDIA,
}
NON_ASSET_RESOURCE_TYPES = {"document", "xhr", "fetch", "websocket", "eventsource", "ping"}

RESOURCE_TIMING_SCRIPT = (
    "() => performance.getEntriesByType('resource').map(e => e.name).filter(Boolean)"
)
EXPAND_DETAILS_SCRIPT = """() => {
  let opened = 0;
  document.querySelectorAll('details:not([open])').forEach(d => { d.open = true; opened++; });
  return opened;
}"""
SCROLL_STEP_SCRIPT = """() => {
  const el = document.scrollingElement || document.documentElement;
  const before = el.scrollTop;
  window.scrollBy(0, Math.max(1, Math.floor(window.innerHeight * 0.9)));
  return el.scrollTop > before;
}"""
SCROLL_TOP_SCRIPT = "() => window.scrollTo(0, 0)"


class NetworkIdleTracker:
    """Track in-flight requests and wait for a sustained quiet window."""

    def __init__(self) -> None:
        self.in_flight = 0
        self._changed = asyncio.Event()

    def attach(self, page: Page) -> None:
        page.on("request", self._on_request)
        page.on("requestfinished", self._on_settled)
        page.on("requestfailed", self._on_settled)

    def _on_request(self, _request: Any) -> None:
        self.in_flight += 1
        self._changed.set()

    def _on_settled(self, _request: Any) -> None:
        self.in_flight = max(0, self.in_flight - 1)
        self._changed.set()

    async def wait_for_idle(self, idle_window: float, ceiling: float) -> bool:
        """Return True once no request was in flight for ``idle_window`` seconds.

        Any request that starts during the window restarts the wait. Returns
        False when ``ceiling`` seconds pass first.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + ceiling
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            self._changed.clear()
            timeout = min(idle_window, remaining) if self.in_flight == 0 else remaining
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                if self.in_flight == 0 and timeout >= idle_window:
                    return True
                if loop.time() >= deadline:
                    return False


class NavigationWatch:
    """Count main-frame navigations so step failures can be attributed to them."""

    def __init__(self, page: Page) -> None:
        self.page = page
        self.count = 0
        page.on("framenavigated", self._on_navigated)

    def _on_navigated(self, frame: Any) -> None:
        if frame is self.page.main_frame:
            self.count += 1


async def run_step(
    name: str,
    action: Callable[[], Awaitable[Any]],
    page: Page,
    watch: NavigationWatch,
) -> Tuple[StepResult, Any]:
    """Run one interaction step, converting renderer failures into a result."""
    navigations = watch.count
    url_before = page.url
    try:
        value = await action()
    except PlaywrightError as exc:
        if watch.count != navigations or page.url != url_before:
            interrupted = InteractionInterrupted(name, str(exc))
            logger.info("%s", interrupted)
            return StepResult(name, StepOutcome.SKIPPED_NAVIGATION, interrupted), None
        logger.debug("Step %s failed: %s", name, exc)
        return StepResult(name, StepOutcome.FAILED, exc), None
    return StepResult(name, StepOutcome.SUCCESS), value


async def activate_content(
    page: Page, config: CaptureConfig, watch: NavigationWatch
) -> List[StepResult]:
    """Expand disclosures, scroll to the bottom and click heuristic toggles."""
    steps: List[StepResult] = []

    result, _ = await run_step(
        "expand-details", lambda: page.evaluate(EXPAND_DETAILS_SCRIPT), page, watch
    )
    steps.append(result)

    for index in range(config.max_scroll_steps):
        result, moved = await run_step(
            f"scroll-{index + 1}", lambda: page.evaluate(SCROLL_STEP_SCRIPT), page, watch
        )
        steps.append(result)
        if result.outcome is not StepOutcome.SUCCESS or not moved:
            break
        if config.scroll_pause:
            await asyncio.sleep(config.scroll_pause)

    result, _ = await run_step(
        "scroll-top", lambda: page.evaluate(SCROLL_TOP_SCRIPT), page, watch
    )
    steps.append(result)

    for selector in config.interaction_selectors:
        result, handles = await run_step(
            f"query {selector}",
            lambda selector=selector: page.query_selector_all(selector),
            page,
            watch,
        )
        steps.append(result)
        for position, handle in enumerate((handles or [])[: config.max_clicks_per_selector]):
            result, _ = await run_step(
                f"click {selector} #{position}",
                lambda handle=handle: handle.click(
                    timeout=config.click_timeout * 1000, force=True
                ),
                page,
                watch,
            )
            steps.append(result)
            if result.outcome is StepOutcome.SUCCESS and config.click_pause:
                await asyncio.sleep(config.click_pause)
    return steps


async def read_dom(page: Page, tracker: NetworkIdleTracker, config: CaptureConfig) -> str:
    """Return the rendered markup, or an empty placeholder document."""
    for attempt in range(2):
        try:
            return await page.content()
        except PlaywrightError as exc:
            logger.warning(
                "Could not read DOM (attempt %d): %s", attempt + 1, exc
            )
            await tracker.wait_for_idle(config.idle_window, config.idle_ceiling)
    return PLACEHOLDER_HTML


async def read_resource_timing(page: Page) -> List[str]:
    try:
        entries = await page.evaluate(RESOURCE_TIMING_SCRIPT)
    except PlaywrightError as exc:
        logger.warning("Could not read resource timing entries: %s", exc)
        return []
    return [str(entry) for entry in entries or []]


async def capture_pass(
    browser: Browser, url: str, viewport: Viewport, config: CaptureConfig
) -> CapturePassResult:
    """Render ``url`` once at ``viewport`` and record what the page loaded."""
    context = await browser.new_context(
        viewport=viewport.as_playwright(), user_agent=config.user_agent
    )
    try:
        page = await context.new_page()
        page.set_default_navigation_timeout(config.navigation_timeout * 1000)

        requests_seen: List[NetworkRequest] = []
        console_errors: List[ConsoleMessage] = []
        tracker = NetworkIdleTracker()
        tracker.attach(page)
        watch = NavigationWatch(page)

        def on_request(request: Any) -> None:
            requests_seen.append(
                NetworkRequest(
                    url=request.url,
                    resource_type=request.resource_type,
                    method=request.method,
                    viewport=viewport.label,
                )
            )

        def on_console(message: Any) -> None:
            if message.type == "error":
                console_errors.append(ConsoleMessage(message.text, viewport.label))

        page.on("request", on_request)
        page.on("console", on_console)
        page.on(
            "pageerror",
            lambda error: console_errors.append(ConsoleMessage(str(error), viewport.label)),
        )

        try:
            await page.goto(
                url,
                wait_until="domcontentloaded",
                timeout=config.navigation_timeout * 1000,
            )
        except PlaywrightError as exc:
            failure = NavigationFailed(url, viewport.label, str(exc))
            logger.warning("%s", failure)
            return CapturePassResult(
                viewport=viewport,
                final_url=url,
                html=PLACEHOLDER_HTML,
                console_errors=console_errors,
                navigated=False,
                error=str(failure),
            )

        if not await tracker.wait_for_idle(config.idle_window, config.idle_ceiling):
            logger.debug(
                "Network never went idle for %s; continuing after %.1fs",
                viewport.label,
                config.idle_ceiling,
            )
        steps = await activate_content(page, config, watch)
        await tracker.wait_for_idle(config.idle_window, config.idle_ceiling)
        if config.settle_delay:
            await asyncio.sleep(config.settle_delay)

        html = await read_dom(page, tracker, config)
        resource_urls = await read_resource_timing(page)
        screenshot_path = await _take_screenshot(page, viewport, config, watch, steps)

        return CapturePassResult(
            viewport=viewport,
            final_url=page.url or url,
            html=html,
            resource_urls=resource_urls,
            network_requests=list(requests_seen),
            console_errors=list(console_errors),
            steps=steps,
            screenshot_path=screenshot_path,
        )
    finally:
        await context.close()


async def _take_screenshot(
    page: Page,
    viewport: Viewport,
    config: CaptureConfig,
    watch: NavigationWatch,
    steps: List[StepResult],
) -> Optional[str]:
    if config.screenshot_dir is None:
        return None
    config.screenshot_dir.mkdir(parents=True, exist_ok=True)
    destination = config.screenshot_dir / config.screenshot_template.format(
        label=viewport.label
    )
    result, _ = await run_step(
        "screenshot",
        lambda: page.screenshot(path=str(destination), full_page=True),
        page,
        watch,
    )
    steps.append(result)
    return str(destination) if result.outcome is StepOutcome.SUCCESS else None


async def capture_viewports(
    browser: Browser, url: str, config: CaptureConfig
) -> List[CapturePassResult]:
    """Capture every configured viewport in order, one pass at a time."""
    passes: List[CapturePassResult] = []
    for index, viewport in enumerate(config.viewports):
        if index and config.inter_pass_delay:
            await asyncio.sleep(config.inter_pass_delay)
        logger.info(
            "Capturing %s at %s (%dx%d)", url, viewport.label, viewport.width, viewport.height
        )
        try:
            result = await capture_pass(browser, url, viewport, config)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Unexpected error capturing %s for %s", url, viewport.label)
            result = CapturePassResult(
                viewport=viewport,
                final_url=url,
                html=PLACEHOLDER_HTML,
                navigated=False,
                error="unexpected renderer failure",
            )
        interrupted = sum(
            1 for step in result.steps if step.outcome is StepOutcome.SKIPPED_NAVIGATION
        )
        logger.info(
            "%s: %d network requests, %d timing entries, %d console errors, %d interrupted steps",
            viewport.label,
            len(result.network_requests),
            len(result.resource_urls),
            len(result.console_errors),
            interrupted,
        )
        passes.append(result)
    return passes


async def run_capture(url: str, config: CaptureConfig) -> List[CapturePassResult]:
    """Launch a browser and capture every viewport of ``url``."""
    async with async_playwright() as playwright:
        browser = await playwright.chromium.launch(headless=config.headless)
        try:
            return await capture_viewports(browser, url, config)
        finally:
            await browser.close()


def runtime_candidate(
    url: str, resource_type: Optional[str], document_keys: Set[str]
) -> Optional[Candidate]:
    """Turn an observed request into an asset candidate, or None for non-assets."""
    if not url.lower().startswith(("http://", "https://")):
        return None
    if normalize_url(url) in document_keys:
        return None
    if resource_type in RESOURCE_TYPES:
        return Candidate(url, RESOURCE_TYPES[resource_type], Provenance.NETWORK)
    asset_type = asset_type_for(url)
    if asset_type is AssetType.OTHER:
        return None
    if resource_type in NON_ASSET_RESOURCE_TYPES and asset_type not in (
        AssetType.CSS,
        AssetType.JS,
    ):
        return None
    return Candidate(url, asset_type, Provenance.NETWORK)


def choose_canonical(passes: Sequence[CapturePassResult]) -> Optional[CapturePassResult]:
    """Largest successfully navigated viewport; later passes win ties."""
    best: Optional[CapturePassResult] = None
    for result in passes:
        if not result.navigated:
            continue
        if best is None or result.viewport.area >= best.viewport.area:
            best = result
    return best


def merge_passes(passes: Sequence[CapturePassResult], target_url: str) -> RuntimeEvidence:
    """Union DOM candidates, timing entries and network requests of all passes."""
    document_keys = {normalize_url(target_url)}
    document_keys.update(normalize_url(p.final_url) for p in passes if p.navigated)

    candidates: List[Candidate] = []
    urls_by_viewport: Dict[str, frozenset] = {}
    for result in passes:
        found: List[Candidate] = []
        if result.navigated:
            found.extend(extract_from_html(result.html, result.final_url))
        observed = [(url, None) for url in result.resource_urls]
        observed.extend((req.url, req.resource_type) for req in result.network_requests)
        for url, resource_type in observed:
            candidate = runtime_candidate(url, resource_type, document_keys)
            if candidate is not None:
                found.append(candidate)
        candidates.extend(found)
        urls_by_viewport[result.viewport.label] = frozenset(
            normalize_url(c.url) for c in found
        )

    canonical = choose_canonical(passes)
    if canonical is None and passes:
        canonical = passes[-1]
    return RuntimeEvidence(
        candidates=candidates,
        urls_by_viewport=urls_by_viewport,
        canonical_html=canonical.html if canonical else PLACEHOLDER_HTML,
        canonical_url=canonical.final_url if canonical else target_url,
    )
