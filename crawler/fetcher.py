"""
Page fetcher: one entity page per call, on a pooled and authenticated browser.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from playwright.async_api import Error as PlaywrightError, Page

from .auth import SessionAuthenticator, close_page, first_line, path_of
from .config import SiteSettings
from .errors import ConnectionLostError
from .infra.browser import is_connection_lost
from .infra.pool import BrowserPool, PoolEntry
from .interfaces import Parser

logger = logging.getLogger(__name__)


class PageFetcher:
    """Fetches and parses entity pages; any per-item problem is a miss (``None``).

    Authentication happens once per pool entry and is repeated only when a
    fetch lands back on the login surface.
    """

    def __init__(self, pool: BrowserPool, authenticator: SessionAuthenticator, site: SiteSettings) -> None:
        self.pool = pool
        self.authenticator = authenticator
        self.site = site

    async def fetch(self, path: str, parser: Parser) -> Optional[Dict[str, Any]]:
        async with self.pool.borrow() as entry:
            await self._ensure_session(entry)
            html = await self._load(entry, path)
            if html is None and not entry.authenticated:
                logger.info("Session expired on browser #%d, logging in again", entry.entry_id)
                await self._ensure_session(entry)
                html = await self._load(entry, path)
        if html is None:
            return None
        try:
            return parser.parse(html)
        except Exception as e:  # noqa: BLE001
            logger.warning("Parser %s raised on %s: %s", parser.name, path, e)
            return None

    async def _ensure_session(self, entry: PoolEntry) -> None:
        if entry.authenticated:
            return
        session = await self.authenticator.authenticate(entry, self.site.auth_target)
        await session.close()

    async def _load(self, entry: PoolEntry, path: str) -> Optional[str]:
        url = self.site.absolute(path)
        try:
            page = await entry.handle.new_page()
        except PlaywrightError as e:
            entry.mark_unhealthy()
            raise ConnectionLostError(url=url, detail=first_line(e)) from e
        try:
            return await self._navigate(entry, page, url)
        finally:
            await close_page(page)

    async def _navigate(self, entry: PoolEntry, page: Page, url: str) -> Optional[str]:
        try:
            response = await page.goto(url, wait_until=self.site.wait_until, timeout=self.site.nav_timeout_ms)
        except PlaywrightError as e:
            if is_connection_lost(e):
                entry.mark_unhealthy()
                raise ConnectionLostError(url=url, detail=first_line(e)) from e
            logger.debug("Miss %s: %s", url, first_line(e))
            return None

        if self.authenticator.is_login_url(page.url):
            entry.authenticated = False
            return None
        if response is not None and response.status >= 400:
            logger.debug("Miss %s: HTTP %d", url, response.status)
            return None
        if path_of(page.url).rstrip("/") != path_of(url).rstrip("/"):
            logger.debug("Miss %s: landed on %s", url, page.url)
            return None

        try:
            return await page.content()
        except PlaywrightError as e:
            if is_connection_lost(e):
                entry.mark_unhealthy()
                raise ConnectionLostError(url=url, detail=first_line(e)) from e
            return None
