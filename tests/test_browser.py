import logging

import pytest
from playwright.sync_api import Error as PlaywrightError

from crowsnest.browser import (
    BrowserNotStartedError,
    BrowserSession,
    ElementNotFoundError,
    NavigationError,
    TabOpenTimeoutError,
)


class FakeLocator:
    def __init__(self, page, selector):
        self.page = page
        self.selector = selector

    def count(self):
        return 1 if self.selector in self.page.clickable else 0

    @property
    def first(self):
        return self

    def click(self, timeout=None):
        self.page.clicked.append(self.selector)


class FakePage:
    def __init__(self, context, url="about:blank"):
        self.context = context
        self.url = url
        self.clickable: set[str] = set()
        self.clicked: list[str] = []
        self.closed = False
        self.fail_close = False
        self.crashed = False

    def goto(self, url, wait_until=None, timeout=None):
        if url in self.context.broken_urls:
            raise PlaywrightError(f"net::ERR_NAME_NOT_RESOLVED at {url}")
        self.url = url

    def wait_for_timeout(self, ms):
        if self.crashed:
            raise PlaywrightError("Target crashed")

    def wait_for_load_state(self, state=None, timeout=None):
        pass

    def evaluate(self, script, url):
        if not self.context.block_new_tabs:
            tab = FakePage(self.context, url)
            tab.crashed = self.context.crash_new_tabs
            self.context.pages.append(tab)

    def content(self):
        return self.context.sites.get(self.url, "<html><body></body></html>")

    def title(self):
        return f"Title of {self.url}"

    def locator(self, selector):
        return FakeLocator(self, selector)

    def close(self):
        if self.fail_close:
            raise PlaywrightError("Target page has been closed")
        self.closed = True
        self.context.pages.remove(self)


class FakeContext:
    def __init__(self):
        self.pages: list[FakePage] = []
        self.sites: dict[str, str] = {}
        self.broken_urls: set[str] = set()
        self.block_new_tabs = False
        self.crash_new_tabs = False
        self.closed = False

    def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


class FakePlaywright:
    def __init__(self):
        self.stopped = False

    def stop(self):
        self.stopped = True


@pytest.fixture
def fake_context():
    return FakeContext()


@pytest.fixture
def session(monkeypatch, fake_context):
    launches = []

    def fake_launch(self):
        launches.append(self)
        page = FakePage(fake_context)
        fake_context.pages.append(page)
        return FakePlaywright(), FakeBrowser(), fake_context, page

    monkeypatch.setattr(BrowserSession, "_launch", fake_launch)
    browser = BrowserSession(page_load_wait_ms=0, request_delay_ms=0, tab_open_timeout_ms=50)
    browser.launches = launches
    yield browser
    browser.close()


def test_operations_before_start_are_programmer_errors(session) -> None:
    with pytest.raises(BrowserNotStartedError, match="Browser not started"):
        session.get_html()
    with pytest.raises(BrowserNotStartedError):
        session.navigate_to("https://jobs.example.com/")
    with pytest.raises(BrowserNotStartedError):
        session.with_new_tab("https://jobs.example.com/1", lambda: None)


def test_start_is_idempotent(session) -> None:
    session.start()
    session.start()
    assert len(session.launches) == 1
    assert session.started


def test_navigate_and_read_current_page(session, fake_context) -> None:
    fake_context.sites["https://jobs.example.com/search"] = (
        '<html><body><a href="/jobs/1">Engineer</a></body></html>'
    )
    session.start()

    session.navigate_to("https://jobs.example.com/search")

    assert session.get_current_url() == "https://jobs.example.com/search"
    assert session.get_document().select_one("a")["href"] == "https://jobs.example.com/jobs/1"
    assert "## Page: Title of https://jobs.example.com/search" in session.get_snapshot()


def test_navigation_failure_raises_navigation_error(session, fake_context) -> None:
    fake_context.broken_urls.add("https://down.example.com/")
    session.start()

    with pytest.raises(NavigationError, match="down.example.com"):
        session.navigate_to("https://down.example.com/")


def test_with_new_tab_switches_and_restores_active_tab(session, fake_context) -> None:
    session.start()
    session.navigate_to("https://jobs.example.com/search")
    main_page = session.active_tab

    seen = session.with_new_tab("https://jobs.example.com/1", session.get_current_url)

    assert seen == "https://jobs.example.com/1"
    assert session.active_tab is main_page
    assert session.tab_depth == 0
    assert fake_context.pages == [main_page]


def test_with_new_tab_restores_active_tab_when_body_raises(session, fake_context) -> None:
    session.start()
    main_page = session.active_tab

    def body():
        raise ValueError("extraction blew up")

    with pytest.raises(ValueError, match="extraction blew up"):
        session.with_new_tab("https://jobs.example.com/1", body)

    assert session.active_tab is main_page
    assert session.tab_depth == 0
    assert fake_context.pages == [main_page]


def test_nested_tabs_restore_in_lifo_order(session) -> None:
    session.start()
    main_page = session.active_tab

    with session.new_tab("https://jobs.example.com/1") as outer:
        assert session.active_tab is outer
        with session.new_tab("https://jobs.example.com/2") as inner:
            assert session.active_tab is inner
            assert session.tab_depth == 2
        assert session.active_tab is outer
        assert inner.closed

    assert session.active_tab is main_page
    assert outer.closed


def test_tab_close_failure_is_logged_not_raised(session, fake_context, caplog) -> None:
    session.start()
    main_page = session.active_tab

    with caplog.at_level(logging.WARNING, logger="crowsnest.browser"):
        with session.new_tab("https://jobs.example.com/1") as tab:
            tab.fail_close = True

    assert session.active_tab is main_page
    assert "failed to close tab" in caplog.text


def test_new_tab_timeout(session, fake_context) -> None:
    fake_context.block_new_tabs = True
    session.start()
    main_page = session.active_tab

    with pytest.raises(TabOpenTimeoutError, match="50ms"):
        session.with_new_tab("https://jobs.example.com/1", lambda: None)

    assert session.active_tab is main_page
    assert session.tab_depth == 0


def test_tab_that_fails_to_settle_is_closed(session, fake_context) -> None:
    fake_context.crash_new_tabs = True
    session.page_load_wait_ms = 100
    session.start()
    main_page = session.active_tab

    with pytest.raises(NavigationError, match="Target crashed"):
        session.with_new_tab("https://jobs.example.com/1", lambda: None)

    assert session.active_tab is main_page
    assert session.tab_depth == 0
    assert fake_context.pages == [main_page]


def test_tab_is_closed_when_settling_is_interrupted(session, fake_context, monkeypatch) -> None:
    session.start()
    main_page = session.active_tab

    def interrupted(page):
        raise KeyboardInterrupt

    monkeypatch.setattr(session, "_settle", interrupted)

    with pytest.raises(KeyboardInterrupt):
        session.with_new_tab("https://jobs.example.com/1", lambda: None)

    assert session.tab_depth == 0
    assert fake_context.pages == [main_page]


def test_tab_registering_after_timeout_is_not_adopted(session, fake_context, caplog) -> None:
    fake_context.block_new_tabs = True
    session.start()
    main_page = session.active_tab
    with pytest.raises(TabOpenTimeoutError):
        session.with_new_tab("https://jobs.example.com/1", lambda: None)

    late_tab = FakePage(fake_context, "https://jobs.example.com/1")
    fake_context.pages.append(late_tab)
    fake_context.block_new_tabs = False

    with caplog.at_level(logging.WARNING, logger="crowsnest.browser"):
        seen = session.with_new_tab("https://jobs.example.com/2", session.get_current_url)

    assert seen == "https://jobs.example.com/2"
    assert late_tab.closed
    assert fake_context.pages == [main_page]
    assert "closing stray tab https://jobs.example.com/1" in caplog.text


def test_click_missing_element_is_distinct_error(session) -> None:
    session.start()
    session.active_tab.clickable.add("#next")

    session.click("#next")
    assert session.active_tab.clicked == ["#next"]

    with pytest.raises(ElementNotFoundError) as excinfo:
        session.click("#missing")
    assert not isinstance(excinfo.value, NavigationError)


def test_close_releases_everything(session, fake_context) -> None:
    session.start()
    session.close()

    assert not session.started
    assert fake_context.closed
    with pytest.raises(BrowserNotStartedError):
        session.get_current_url()
