from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from playwright.sync_api import sync_playwright

from trailguard.constants import DEFAULT_BROWSERS, DEFAULT_PAGE_TIMEOUT_MS, DEFAULT_TEST_SIZE, VIEWPORT_PRESETS

LOGGER = logging.getLogger("trailguard.browser")

_SIZE_PATTERN = re.compile(r"^(\d+)x(\d+)$")

CI_CHROMIUM_ARGS = [
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-gpu",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
]


def parse_viewport_size(value: str) -> Dict[str, int]:
    """Resolve a preset name (``xs``..``xl``) or ``WIDTHxHEIGHT`` into a viewport."""
    normalized = value.strip().lower()
    if normalized in VIEWPORT_PRESETS:
        return dict(VIEWPORT_PRESETS[normalized])
    match = _SIZE_PATTERN.match(normalized)
    if not match:
        raise ValueError(
            f"Invalid viewport size '{value}'. Use a preset ({', '.join(VIEWPORT_PRESETS)}) or WIDTHxHEIGHT"
        )
    width, height = int(match.group(1)), int(match.group(2))
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid viewport size '{value}'. Width and height must be positive")
    return {"width": width, "height": height}


def resolve_test_sizes(sizes: Optional[Sequence[str]]) -> List[str]:
    """Validate every size up front so a bad entry fails before any browser opens."""
    resolved = list(sizes) if sizes else [DEFAULT_TEST_SIZE]
    for size in resolved:
        parse_viewport_size(size)
    return resolved


def browser_launch_options(browser_name: str, headless: bool) -> Dict[str, Any]:
    options: Dict[str, Any] = {"headless": headless}
    if browser_name == "chromium":
        options["args"] = list(CI_CHROMIUM_ARGS)
    return options


@dataclass
class BrowserSession:
    browser: Any
    context: Any
    page: Any
    viewport: Dict[str, int]

    def close(self) -> None:
        try:
            self.context.close()
        finally:
            self.browser.close()


class PlaywrightSessionFactory:
    """Open one browser session per viewport on a shared Playwright driver."""

    def __init__(self, browser_name: str = "chromium", headless: bool = True) -> None:
        if browser_name not in DEFAULT_BROWSERS:
            raise ValueError(f"Unsupported browser '{browser_name}'")
        self.browser_name = browser_name
        self.headless = headless
        self._playwright = None
        self._manager = None

    def _ensure_started(self) -> Any:
        if self._playwright is None:
            self._manager = sync_playwright()
            self._playwright = self._manager.start()
        return self._playwright

    def open(self, viewport: Dict[str, int]) -> BrowserSession:
        playwright = self._ensure_started()
        browser_type = getattr(playwright, self.browser_name)
        LOGGER.info("Launching %s (%dx%d)", self.browser_name, viewport["width"], viewport["height"])
        browser = browser_type.launch(**browser_launch_options(self.browser_name, self.headless))
        context = browser.new_context(viewport=viewport)
        page = context.new_page()
        page.set_default_timeout(DEFAULT_PAGE_TIMEOUT_MS)
        return BrowserSession(browser=browser, context=context, page=page, viewport=dict(viewport))

    def shutdown(self) -> None:
        if self._manager is not None:
            self._manager.__exit__(None, None, None)
        self._manager = None
        self._playwright = None
