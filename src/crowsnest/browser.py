"""Single-browser session with a stack of active tabs.

All operations act on the *active* tab: the main page, or the innermost tab
opened through :meth:`BrowserSession.new_tab`. One session owns one browser
process and must only be driven from one thread at a time.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from typing import Any, TypeVar

from bs4 import BeautifulSoup
from playwright.sync_api import Error as PlaywrightError

from crowsnest.config import Settings
from crowsnest.snapshot import parse_document, render_snapshot

log = logging.getLogger(__name__)

T = TypeVar("T")

_TAB_POLL_INTERVAL_MS = 100
_OPEN_TAB_SCRIPT = "url => { window.open(url, '_blank'); }"


class BrowserError(Exception):
    """Base class for browser failures."""


class BrowserNotStartedError(BrowserError, RuntimeError):
    """An operation was invoked before :meth:`BrowserSession.start`."""


class NavigationError(BrowserError):
    """Navigating the active tab failed."""


class ElementNotFoundError(BrowserError):
    """A click target was missing or could not be clicked."""


class TabOpenTimeoutError(BrowserError):
    """A newly opened tab did not register before the timeout."""


class BrowserSession(AbstractContextManager["BrowserSession"]):
    def __init__(
        self,
        *,
        headless: bool = True,
        page_load_wait_ms: int = 2_500,
        request_delay_ms: int = 2_000,
        tab_open_timeout_ms: int = 5_000,
        navigation_timeout_ms: int = 45_000,
    ):
        self.headless = headless
        self.page_load_wait_ms = page_load_wait_ms
        self.request_delay_ms = request_delay_ms
        self.tab_open_timeout_ms = tab_open_timeout_ms
        self.navigation_timeout_ms = navigation_timeout_ms

        self._lock = threading.RLock()
        self._playwright: Any = None
        self._browser: Any = None
        self._context: Any = None
        self._main_page: Any = None
        self._tab_stack: list[Any] = []

    @classmethod
    def from_settings(cls, settings: Settings) -> "BrowserSession":
        return cls(
            headless=settings.headless,
            page_load_wait_ms=settings.page_load_wait_ms,
            request_delay_ms=settings.request_delay_ms,
            tab_open_timeout_ms=settings.tab_open_timeout_ms,
            navigation_timeout_ms=settings.navigation_timeout_ms,
        )

    # lifecycle

    def _launch(self) -> tuple[Any, Any, Any, Any]:
        from playwright.sync_api import sync_playwright

        playwright = sync_playwright().start()
        browser = playwright.chromium.launch(headless=self.headless)
        context = browser.new_context()
        page = context.new_page()
        return playwright, browser, context, page

    @property
    def started(self) -> bool:
        return self._main_page is not None

    def start(self) -> None:
        with self._lock:
            if self.started:
                return
            self._playwright, self._browser, self._context, self._main_page = self._launch()
            log.info("browser started (headless=%s)", self.headless)

    def close(self) -> None:
        with self._lock:
            if not self.started:
                return
            for closer in (self._context, self._browser):
                try:
                    closer.close()
                except PlaywrightError as exc:
                    log.warning("browser close failed: %s", exc)
            if self._playwright is not None:
                self._playwright.stop()
            self._playwright = self._browser = self._context = self._main_page = None
            self._tab_stack.clear()

    def __exit__(self, exc_type, exc, exc_tb) -> None:
        self.close()

    # tabs

    @property
    def active_tab(self) -> Any:
        if not self.started:
            raise BrowserNotStartedError("Browser not started")
        if self._tab_stack:
            return self._tab_stack[-1]
        return self._main_page

    @property
    def tab_depth(self) -> int:
        return len(self._tab_stack)

    def _delay_request(self) -> None:
        if self.request_delay_ms > 0:
            time.sleep(self.request_delay_ms / 1000)

    def _settle(self, page: Any) -> None:
        if self.page_load_wait_ms > 0:
            page.wait_for_timeout(self.page_load_wait_ms)

    def _wait_for_new_tab(self, opener: Any, known_tabs: list[Any]) -> Any:
        deadline = time.monotonic() + self.tab_open_timeout_ms / 1000
        while time.monotonic() < deadline:
            for page in self._context.pages:
                if all(page is not known for known in known_tabs):
                    return page
            opener.wait_for_timeout(_TAB_POLL_INTERVAL_MS)
        raise TabOpenTimeoutError(f"Timeout waiting for new tab to open after {self.tab_open_timeout_ms}ms")

    @contextmanager
    def new_tab(self, url: str) -> Iterator[Any]:
        """Open ``url`` in a new tab and make it the active tab for the block.

        The previous active tab is restored on every exit path and the new tab
        is closed; a failure to close it is logged, not raised.

        Tabs left over from an earlier open that timed out are closed first so
        they are never mistaken for the tab being opened.
        """
        with self._lock:
            opener = self.active_tab
            self._close_stray_tabs()
            self._delay_request()
            known_tabs = list(self._context.pages)
            try:
                opener.evaluate(_OPEN_TAB_SCRIPT, url)
            except PlaywrightError as exc:
                raise NavigationError(f"Failed to open tab for {url}: {exc}") from exc

            try:
                tab = self._wait_for_new_tab(opener, known_tabs)
            except TabOpenTimeoutError:
                self._close_stray_tabs()
                raise
            try:
                tab.wait_for_load_state("domcontentloaded", timeout=self.navigation_timeout_ms)
                self._settle(tab)
            except PlaywrightError as exc:
                self._close_tab(tab)
                raise NavigationError(f"Failed to load {url} in new tab: {exc}") from exc
            except BaseException:
                self._close_tab(tab)
                raise

            self._tab_stack.append(tab)
            try:
                yield tab
            finally:
                popped = self._tab_stack.pop()
                self._close_tab(popped)

    def with_new_tab(self, url: str, body: Callable[[], T]) -> T:
        with self.new_tab(url):
            return body()

    def _close_stray_tabs(self) -> None:
        owned = [self._main_page, *self._tab_stack]
        for page in list(self._context.pages):
            if all(page is not tab for tab in owned):
                log.warning("closing stray tab %s", page.url)
                self._close_tab(page)

    @staticmethod
    def _close_tab(tab: Any) -> None:
        try:
            tab.close()
        except PlaywrightError as exc:
            log.warning("failed to close tab: %s", exc)

    # page operations

    def navigate_to(self, url: str) -> None:
        with self._lock:
            page = self.active_tab
            self._delay_request()
            try:
                page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
            except PlaywrightError as exc:
                raise NavigationError(f"Failed to navigate to {url}: {exc}") from exc
            self._settle(page)

    def get_current_url(self) -> str:
        with self._lock:
            url = self.active_tab.url
            if not url:
                raise NavigationError("Active tab has no URL")
            return url

    def get_html(self) -> str:
        with self._lock:
            return self.active_tab.content()

    def get_document(self) -> BeautifulSoup:
        """Parse the active tab's DOM with links resolved to absolute URLs."""
        with self._lock:
            page = self.active_tab
            return parse_document(page.content(), page.url)

    def get_snapshot(self, include_interactive: bool = True) -> str:
        with self._lock:
            page = self.active_tab
            return render_snapshot(
                page.content(),
                url=page.url,
                title=page.title(),
                include_interactive=include_interactive,
            )

    def click(self, selector: str) -> None:
        with self._lock:
            page = self.active_tab
            try:
                locator = page.locator(selector)
                if locator.count() == 0:
                    raise ElementNotFoundError(f"Failed to click '{selector}': no matching element")
                locator.first.click(timeout=self.navigation_timeout_ms)
            except PlaywrightError as exc:
                raise ElementNotFoundError(f"Failed to click '{selector}': {exc}") from exc
            self._settle(page)
