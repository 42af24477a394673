"""
Shared fakes: a scripted remote site and Playwright-shaped browser doubles.
"""

import re
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Set, Tuple
from urllib.parse import urlparse

import pytest
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeout

from crawler.config import Credentials, DomainSettings, SiteSettings
from crawler.diff import WatchField
from crawler.infra.pool import BrowserPool
from crawler.interfaces import Parser

BASE = "https://powerplayusa.net"
LOGIN_HTML = "<html><head><title>Login | PPUSA</title></head><body>Sign in</body></html>"
NOT_FOUND_HTML = "<html><head><title>Not found</title></head><body>404</body></html>"


def entity_html(name: str, **fields: str) -> str:
    cells = "".join(f'<span class="{k}">{v}</span>' for k, v in fields.items())
    return f"<html><head><title>{name} | PPUSA</title></head><body>{cells}</body></html>"


class FakeResponse:
    def __init__(self, status: int = 200):
        self.status = status


class FakeSite:
    """The remote web application as seen by every fake browser."""

    def __init__(self):
        self.pages: Dict[str, str] = {"/": entity_html("Home")}
        self.statuses: Dict[str, int] = {}
        self.redirects: Dict[str, str] = {}
        self.login_selectors: Set[str] = {
            'input[name="email"]',
            'input[name="password"]',
            'button[type="submit"]',
        }
        self.inputs: List[Dict[str, Any]] = []
        self.email = "user@example.com"
        self.password = "hunter2"
        self.valid_cookie: Optional[Tuple[str, str]] = None
        self.timeout_paths: Set[str] = set()
        self.lost_paths: Set[str] = set()
        self.visits: List[str] = []
        self.handles: List["FakeHandle"] = []

    def expire_sessions(self) -> None:
        for handle in self.handles:
            handle.logged_in = False


class FakeKeyboard:
    def __init__(self, page: "FakePage"):
        self.page = page

    async def type(self, text: str, delay: float = 0) -> None:
        self.page.typed[self.page.focused] = self.page.typed.get(self.page.focused, "") + text

    async def press(self, key: str) -> None:
        if key == "Enter":
            self.page.submit()


class FakePage:
    def __init__(self, handle: "FakeHandle"):
        self.handle = handle
        self.site = handle.site
        self.url = "about:blank"
        self.html = ""
        self.closed = False
        self.focused: Optional[str] = None
        self.typed: Dict[Optional[str], str] = {}
        self.keyboard = FakeKeyboard(self)

    @property
    def on_login(self) -> bool:
        return urlparse(self.url).path == "/login"

    def _land(self, path: str, html: Optional[str]) -> FakeResponse:
        self.url = BASE + path
        self.html = html if html is not None else NOT_FOUND_HTML
        return FakeResponse(self.site.statuses.get(path, 200 if html is not None else 404))

    async def goto(self, url: str, wait_until: str = "load", timeout: float = 0) -> FakeResponse:
        path = urlparse(url).path or "/"
        self.site.visits.append(path)
        if not self.handle.alive or path in self.site.lost_paths:
            raise PlaywrightError("Target page, context or browser has been closed")
        if path in self.site.timeout_paths:
            raise PlaywrightTimeout(f"Timeout {timeout}ms exceeded.")
        if path == "/login":
            return self._land("/login", LOGIN_HTML)
        if not self.handle.logged_in:
            cookie = self.site.valid_cookie
            if cookie and any((c["name"], c["value"]) == cookie for c in self.handle.cookies):
                self.handle.logged_in = True
            else:
                return self._land("/login", LOGIN_HTML)
        path = self.site.redirects.get(path, path)
        return self._land(path, self.site.pages.get(path))

    async def wait_for_selector(self, selector: str, timeout: float = 0, **kwargs):
        parts = [s.strip() for s in selector.split(",")]
        if self.on_login and any(p in self.site.login_selectors for p in parts):
            return object()
        raise PlaywrightTimeout(f"Timeout {timeout}ms exceeded waiting for {selector}")

    async def query_selector(self, selector: str):
        if self.on_login and selector in self.site.login_selectors:
            return object()
        return None

    async def evaluate(self, script: str, arg: Any = None):
        return list(self.site.inputs)

    async def focus(self, selector: str) -> None:
        self.focused = selector

    async def click(self, selector: str) -> None:
        self.submit()

    def submit(self) -> None:
        email = self.typed.get('input[name="email"]')
        password = self.typed.get('input[name="password"]')
        if email == self.site.email and password == self.site.password:
            self.handle.logged_in = True
            self._land("/", self.site.pages.get("/"))

    @asynccontextmanager
    async def expect_navigation(self, **kwargs):
        yield None

    async def content(self) -> str:
        return self.html

    async def title(self) -> str:
        match = re.search(r"<title>(.*?)</title>", self.html)
        return match.group(1) if match else ""

    async def inner_text(self, selector: str) -> str:
        return re.sub(r"<[^>]+>", " ", self.html)

    async def close(self) -> None:
        self.closed = True


class FakeHandle:
    def __init__(self, site: FakeSite):
        self.site = site
        self.alive = True
        self.closed = False
        self.logged_in = False
        self.cookies: List[Dict[str, Any]] = []
        self.pages: List[FakePage] = []
        site.handles.append(self)

    async def new_page(self) -> FakePage:
        if not self.alive:
            raise PlaywrightError("Browser has been closed")
        page = FakePage(self)
        self.pages.append(page)
        return page

    async def add_cookies(self, cookies: List[Dict[str, Any]]) -> None:
        self.cookies.extend(cookies)

    async def probe(self) -> bool:
        return self.alive

    async def close(self) -> None:
        self.closed = True
        self.alive = False


class FakeLauncher:
    def __init__(self, site: FakeSite):
        self.site = site
        self.launched: List[FakeHandle] = []

    async def __call__(self) -> FakeHandle:
        handle = FakeHandle(self.site)
        self.launched.append(handle)
        return handle


class TitleParser(Parser):
    """Record = page title; the not-found page is a miss."""

    name = "TitleParser"
    watch_fields = (WatchField("position", "Position"),)

    def parse(self, html: str) -> Optional[Dict[str, Any]]:
        match = re.search(r"<title>(.*?)\s*\|", html)
        if not match:
            return None
        record: Dict[str, Any] = {"name": match.group(1)}
        position = re.search(r'<span class="position">(.*?)</span>', html)
        if position:
            record["position"] = position.group(1)
        return record


class ScriptedFetcher:
    """Fetcher double: ``records`` by path, everything else misses."""

    def __init__(self, records: Optional[Dict[str, Dict[str, Any]]] = None):
        self.records = records or {}
        self.paths: List[str] = []

    async def fetch(self, path: str, parser: Parser) -> Optional[Dict[str, Any]]:
        self.paths.append(path)
        record = self.records.get(path)
        return dict(record) if record is not None else None

    def probed_ids(self) -> List[int]:
        return sorted(int(p.rsplit("/", 1)[1]) for p in self.paths)


class RecordingSink:
    name = "RecordingSink"

    def __init__(self):
        self.reports = []

    async def handle(self, report) -> None:
        self.reports.append(report)

    async def close(self) -> None:
        pass


@pytest.fixture
def site() -> FakeSite:
    return FakeSite()


@pytest.fixture
def site_settings() -> SiteSettings:
    return SiteSettings(base_url=BASE, field_timeout_ms=10, nav_timeout_ms=100)


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(email="user@example.com", password="hunter2")


@pytest.fixture
def launcher(site) -> FakeLauncher:
    return FakeLauncher(site)


@pytest.fixture
def pool(launcher) -> BrowserPool:
    return BrowserPool(launcher, max_size=3, idle_timeout=300.0)


def make_domain(**overrides: Any) -> DomainSettings:
    values: Dict[str, Any] = {
        "name": "profiles",
        "parser": "test.TitleParser",
        "path": "/users/{id}",
        "start_id": 1000,
        "consecutive_miss_limit": 5,
        "batch_size": 8,
        "concurrency": 3,
    }
    values.update(overrides)
    return DomainSettings(**values)
