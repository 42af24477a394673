"""
browser.py - Async Playwright launcher for pooled, "stealth" crawl browsers.

Key points
----------
* One Playwright driver per launcher; every launch yields a
  :class:`BrowserHandle` (browser + default context).
* `stealth` flag: fixed UA, removes navigator.webdriver, blocks heavy
  resource types on crawl pages.
* Launch is retried `launch_retries` extra times with a fixed backoff; when
  every attempt fails a :class:`~crawler.errors.LaunchFailedError` is raised.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

try:
    from playwright.async_api import (
        async_playwright,
        Browser,
        BrowserContext,
        Error as PlaywrightError,
        Page,
        Playwright,
        Route,
    )
except ImportError as e:  # pragma: no cover
    raise ImportError(
        "Package 'playwright' is required.  Install with:  pip install playwright"
    ) from e

from ..config import BrowserSettings, SiteSettings
from ..errors import LaunchFailedError

logger = logging.getLogger(__name__)

BASE_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-zygote",
    "--disable-blink-features=AutomationControlled",
    "--disable-extensions",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--window-size=1920,1080",
]

STEALTH_SCRIPT = """
// Remove webdriver property
Object.defineProperty(navigator, 'webdriver', {
  get: () => undefined
});
// Chrome headless fix for plugins and languages
Object.defineProperty(navigator, 'plugins', {
  get: () => [1, 2, 3, 4, 5],
});
Object.defineProperty(navigator, 'languages', {
  get: () => ['en-US', 'en'],
});
"""

_CONNECTION_LOST = re.compile(
    r"target (page, context or browser )?(has been )?closed|browser has been closed"
    r"|connection closed|browser closed|has been disconnected",
    re.IGNORECASE,
)


def is_connection_lost(exc: BaseException) -> bool:
    """True when a Playwright error means the browser (not the page load) is gone."""
    return isinstance(exc, PlaywrightError) and bool(_CONNECTION_LOST.search(str(exc)))


class BrowserHandle:
    """A launched browser plus the context every page of it shares."""

    def __init__(
        self,
        browser: Browser,
        context: BrowserContext,
        *,
        timeout_ms: int,
    ) -> None:
        self.browser = browser
        self.context = context
        self.timeout_ms = timeout_ms

    async def new_page(self) -> Page:
        page = await self.context.new_page()
        page.set_default_timeout(self.timeout_ms)
        page.set_default_navigation_timeout(self.timeout_ms)
        return page

    async def add_cookies(self, cookies: List[Dict[str, Any]]) -> None:
        await self.context.add_cookies(cookies)

    async def probe(self) -> bool:
        """Liveness check: connected and able to enumerate its open pages."""
        if not self.browser.is_connected():
            return False
        _ = [len(ctx.pages) for ctx in self.browser.contexts]
        return True

    async def close(self) -> None:
        try:
            await self.context.close()
        finally:
            await self.browser.close()


class BrowserLauncher:
    """
    Starts browsers with the defaults every crawl needs.

    Examples
    --------
    launcher = BrowserLauncher(settings.browser, settings.site)
    handle = await launcher.launch()
    page = await handle.new_page()
    """

    def __init__(self, browser: BrowserSettings, site: SiteSettings) -> None:
        self.settings = browser
        self.site = site
        self._playwright: Optional[Playwright] = None
        self._start_lock = asyncio.Lock()

    async def _driver(self) -> Playwright:
        async with self._start_lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            return self._playwright

    async def launch(self) -> BrowserHandle:
        """Launch a browser, retrying transient failures with a fixed backoff."""
        attempts = self.settings.launch_retries + 1
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                return await self._launch_once()
            except asyncio.CancelledError:  # pragma: no cover
                raise
            except Exception as e:  # noqa: BLE001
                last_error = str(e).splitlines()[0] if str(e) else type(e).__name__
                if attempt == attempts:
                    break
                logger.warning(
                    "Browser launch failed (attempt %d/%d - will retry in %.1fs): %s",
                    attempt,
                    attempts,
                    self.settings.launch_backoff_s,
                    last_error,
                )
                await asyncio.sleep(self.settings.launch_backoff_s)
        logger.error("Browser launch failed after %d attempts: %s", attempts, last_error)
        raise LaunchFailedError(attempts=attempts, last_error=last_error)

    async def _launch_once(self) -> BrowserHandle:
        playwright = await self._driver()
        browser_type = self.settings.browser_type.lower()
        if browser_type not in ("chromium", "firefox", "webkit"):  # pragma: no cover
            raise ValueError(f"Unsupported browser type: {browser_type}")
        launcher = getattr(playwright, browser_type)

        browser = await launcher.launch(
            headless=self.settings.headless,
            args=[*BASE_ARGS, *self.settings.args] if browser_type == "chromium" else self.settings.args,
            ignore_default_args=["--enable-automation"] if browser_type == "chromium" else None,
        )

        context_kwargs: Dict[str, Any] = {
            "ignore_https_errors": True,
            "user_agent": self.site.user_agent,
            "locale": self.site.accept_language.split(",")[0],
            "extra_http_headers": {"Accept-Language": self.site.accept_language},
            "viewport": {"width": 1920, "height": 1080},
        }
        if self.site.timezone:
            context_kwargs["timezone_id"] = self.site.timezone

        try:
            context = await browser.new_context(**context_kwargs)
            if self.settings.stealth:
                await context.add_init_script(STEALTH_SCRIPT)
            if self.settings.block_resources:
                blocked = frozenset(t.lower() for t in self.settings.block_resources)

                async def _block(route: Route) -> None:
                    if route.request.resource_type in blocked:
                        await route.abort()
                    else:
                        await route.continue_()

                await context.route("**/*", _block)
        except Exception:
            await browser.close()
            raise

        logger.info(
            "Browser launched: %s (headless=%s, stealth=%s)",
            browser_type,
            self.settings.headless,
            self.settings.stealth,
        )
        return BrowserHandle(browser, context, timeout_ms=self.site.nav_timeout_ms)

    async def stop(self) -> None:
        """Stop the Playwright driver; call after every handle is closed."""
        async with self._start_lock:
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None
                logger.info("Playwright stopped")
