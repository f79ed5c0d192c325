"""Browser automation for the verify phase, using Playwright's sync API."""

from __future__ import annotations

import logging
from pathlib import Path

from playwright.sync_api import Browser, Error as PlaywrightError, Page, Playwright
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from autopilot.adapters.base import BrowserDriver
from autopilot.errors import CollaboratorError, ReadinessTimeout, ToolUnavailable

logger = logging.getLogger(__name__)


class PlaywrightBrowserDriver(BrowserDriver):
    """Headless Chromium page; launched lazily on first navigation.

    Element refs are Playwright selectors (CSS, ``text=``, ``role=``).
    """

    def __init__(self, *, headless: bool = True, action_timeout_seconds: float = 10.0) -> None:
        self.headless = headless
        self.action_timeout_ms = int(action_timeout_seconds * 1000)
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._page: Page | None = None

    def _ensure_page(self) -> Page:
        if self._page is not None:
            return self._page
        try:
            self._playwright = sync_playwright().start()
            self._browser = self._playwright.chromium.launch(headless=self.headless)
        except PlaywrightError as exc:
            self.close()
            raise ToolUnavailable("browser", str(exc).splitlines()[0]) from exc
        self._page = self._browser.new_page()
        self._page.set_default_timeout(self.action_timeout_ms)
        return self._page

    def _current_page(self) -> Page:
        if self._page is None:
            raise CollaboratorError("No page loaded; call navigate first.", tool="browser")
        return self._page

    def navigate(self, url: str) -> None:
        page = self._ensure_page()
        try:
            page.goto(url, wait_until="commit")
        except PlaywrightError as exc:
            raise CollaboratorError(f"Navigation to {url} failed: {exc}", tool="browser") from exc

    def wait_ready(self, timeout: float) -> None:
        page = self._current_page()
        try:
            page.wait_for_load_state("networkidle", timeout=timeout * 1000)
        except PlaywrightTimeoutError as exc:
            raise ReadinessTimeout(page.url, timeout) from exc

    def snapshot(self) -> str:
        return self._current_page().locator("body").aria_snapshot()

    def screenshot(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._current_page().screenshot(path=str(path), full_page=True)
        return path

    def fill(self, ref: str, value: str) -> None:
        try:
            self._current_page().fill(ref, value)
        except PlaywrightError as exc:
            raise CollaboratorError(f"fill {ref} failed: {exc}", tool="browser") from exc

    def click(self, ref: str) -> None:
        try:
            self._current_page().click(ref)
        except PlaywrightError as exc:
            raise CollaboratorError(f"click {ref} failed: {exc}", tool="browser") from exc

    def close(self) -> None:
        if self._browser is not None:
            self._browser.close()
            self._browser = None
        if self._playwright is not None:
            self._playwright.stop()
            self._playwright = None
        self._page = None
