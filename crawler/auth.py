"""
Session authenticator: turns a pooled browser and a target location into an
authenticated, navigated page - or a typed, diagnosable failure.

The flow is one linear state machine with a single fallback branch::

    START -> COOKIE_ATTEMPT (only with a stored session token)
               success -> AUTHENTICATED
               failure -> FORM_LOGIN
          -> FORM_LOGIN -> FIELD_DETECT -> CREDENTIALS_SUBMIT -> TARGET_VERIFY
               -> AUTHENTICATED | FAILED

Every step appends an :class:`~crawler.models.Action`, failed or not; the
trail is attached to the raised error. A lost browser connection ends the
trail with a FAILED action after the failing step's own entry. Login
is attempted once per call; callers decide whether to try again.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, NoReturn, Optional, Sequence, Tuple
from urllib.parse import urlparse

from playwright.async_api import (
    Error as PlaywrightError,
    Page,
    TimeoutError as PlaywrightTimeout,
)

from .config import Credentials, SiteSettings
from .errors import (
    ConnectionLostError,
    CrawlError,
    FieldsNotFoundError,
    MissingCredentialsError,
    RedirectAwayError,
    RejectedError,
)
from .infra.browser import is_connection_lost
from .infra.pool import PoolEntry
from .login_form import (
    DEFAULT_CANDIDATES,
    FieldCandidate,
    FieldRole,
    detect_challenge,
    locate_first,
    selectors_for,
    snapshot_inputs,
)
from .models import ActionLog, PageSnapshot

logger = logging.getLogger(__name__)

SNAPSHOT_TEXT_LIMIT = 500


class AuthState(str, Enum):
    START = "START"
    COOKIE_ATTEMPT = "COOKIE_ATTEMPT"
    FORM_LOGIN = "FORM_LOGIN"
    FIELD_DETECT = "FIELD_DETECT"
    CREDENTIALS_SUBMIT = "CREDENTIALS_SUBMIT"
    TARGET_VERIFY = "TARGET_VERIFY"
    AUTHENTICATED = "AUTHENTICATED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ContextRule:
    """Intermediate page to visit before retrying a target whose path matches."""

    pattern: str
    via: str

    def resolve(self, path: str) -> Optional[str]:
        match = re.match(self.pattern, path)
        return self.via.format(*match.groups()) if match else None


DEFAULT_CONTEXT_RULES: Sequence[ContextRule] = (
    ContextRule(r"^/parties/(\d+)", "/parties/{0}"),
)


@dataclass(eq=False)
class Session:
    """An authenticated page bound to one pool entry; owned by a single caller."""

    entry: PoolEntry
    page: Page
    actions: ActionLog
    html: str
    final_url: str
    authenticated: bool = True
    last_used: float = field(default_factory=time.monotonic)

    async def close(self) -> None:
        await close_page(self.page)


@dataclass(frozen=True)
class _LoginFields:
    identity: str
    secret: str
    submit: Optional[str]


def path_of(url: str) -> str:
    return urlparse(url).path or "/"


def first_line(exc: BaseException) -> str:
    text = str(exc).strip()
    return text.splitlines()[0] if text else type(exc).__name__


async def close_page(page: Page) -> None:
    try:
        await page.close()
    except PlaywrightError as e:
        logger.debug("Ignoring page close error: %s", e)


async def capture_snapshot(page: Page) -> PageSnapshot:
    """Title and truncated body text of wherever the page ended up."""
    snapshot = PageSnapshot()
    try:
        snapshot.url = page.url
        snapshot.title = await page.title()
        text = await page.inner_text("body")
        snapshot.text = " ".join(text.split())[:SNAPSHOT_TEXT_LIMIT]
    except PlaywrightError as e:
        logger.debug("Page snapshot incomplete: %s", e)
    return snapshot


class SessionAuthenticator:
    """Cookie fast-path first, full credential form second, then target verification."""

    def __init__(
        self,
        site: SiteSettings,
        credentials: Credentials,
        *,
        candidates: Sequence[FieldCandidate] = DEFAULT_CANDIDATES,
        context_rules: Sequence[ContextRule] = DEFAULT_CONTEXT_RULES,
        type_delay_ms: int = 15,
    ) -> None:
        self.site = site
        self.credentials = credentials
        self.candidates = tuple(candidates)
        self.context_rules = tuple(context_rules)
        self.type_delay_ms = type_delay_ms
        self._login_re = re.compile(rf"{re.escape(site.login_path.rstrip('/'))}\b", re.IGNORECASE)

    # ------------------------------------------------------------------ #
    async def authenticate(self, entry: PoolEntry, target: str) -> Session:
        """Authenticate ``entry``'s browser and land on ``target``.

        Raises one of the :mod:`crawler.errors` variants on failure; the page
        opened for the attempt is closed before the error propagates.
        """
        actions = ActionLog()
        target_url = self.site.absolute(target)
        actions.record(AuthState.START.value, True, target_url=target_url, browser=entry.entry_id)

        try:
            page = await entry.handle.new_page()
        except PlaywrightError as e:
            entry.mark_unhealthy()
            raise ConnectionLostError(
                url=target_url, detail=first_line(e), actions=actions.snapshot()
            ) from e

        try:
            return await self._run(entry, page, target_url, actions)
        except CrawlError as exc:
            exc.actions = actions.snapshot()
            if exc.snapshot is None:
                exc.snapshot = await capture_snapshot(page)
            logger.warning("Authentication failed [%s] for %s", exc.reason, target_url)
            await close_page(page)
            raise
        except PlaywrightError as e:
            # lost connections, plus context-level calls (cookies, content)
            # that no step handles; either way the entry is not reusable
            entry.mark_unhealthy()
            actions.record(
                AuthState.FAILED.value,
                False,
                error=first_line(e),
                connection_lost=is_connection_lost(e),
                final_url=page.url,
            )
            snapshot = await capture_snapshot(page)
            await close_page(page)
            logger.warning("Authentication aborted for %s: %s", target_url, first_line(e))
            raise ConnectionLostError(
                url=target_url,
                detail=first_line(e),
                actions=actions.snapshot(),
                snapshot=snapshot,
            ) from e

    def is_login_url(self, url: str) -> bool:
        return bool(self._login_re.search(path_of(url)))

    # ------------------------------------------------------------------ #
    async def _run(self, entry: PoolEntry, page: Page, target_url: str, actions: ActionLog) -> Session:
        if self.credentials.cookie_value:
            if await self._cookie_attempt(entry, page, target_url, actions):
                return await self._authenticated(entry, page, actions, via="cookie")

        if not self.credentials.has_login:
            raise MissingCredentialsError(
                has_identity=bool(self.credentials.email),
                has_secret=bool(self.credentials.password and self.credentials.password.get_secret_value()),
            )

        await self._form_login(page, actions)
        fields = await self._detect_fields(page, actions)
        await self._submit_credentials(page, fields, actions)
        await self._verify_target(page, target_url, actions)
        return await self._authenticated(entry, page, actions, via="form")

    async def _goto(self, page: Page, url: str) -> None:
        await page.goto(url, wait_until=self.site.wait_until, timeout=self.site.nav_timeout_ms)

    async def _cookie_attempt(
        self, entry: PoolEntry, page: Page, target_url: str, actions: ActionLog
    ) -> bool:
        step = AuthState.COOKIE_ATTEMPT.value
        cookies = parse_session_cookies(self.credentials.cookie_value, self.site.cookie_name)
        if not cookies:
            actions.record(step, False, detail="no-cookies")
            return False

        host = self.site.host
        await entry.handle.add_cookies(
            [
                {"name": name, "value": value, "domain": host, "path": "/", "httpOnly": False}
                for name, value in cookies
            ]
        )
        actions.record(step, True, detail="cookie-apply", names=[n for n, _ in cookies], domain=host)

        try:
            await self._goto(page, target_url)
        except PlaywrightError as e:
            if is_connection_lost(e):
                raise
            actions.record(step, False, detail="cookie-check", error=first_line(e))
            return False

        accepted = not self.is_login_url(page.url)
        actions.record(step, accepted, detail="cookie-check", final_url=page.url)
        return accepted

    async def _form_login(self, page: Page, actions: ActionLog) -> None:
        step = AuthState.FORM_LOGIN.value
        login_url = self.site.absolute(self.site.login_path)
        try:
            await self._goto(page, login_url)
        except PlaywrightError as e:
            actions.record(step, False, login_url=login_url, error=first_line(e), final_url=page.url)
            if is_connection_lost(e):
                raise
            raise FieldsNotFoundError(
                identity_selector=None,
                secret_selector=None,
                tried=[],
                navigation_error=first_line(e),
            ) from e
        actions.record(step, True, login_url=page.url)

    async def _detect_fields(self, page: Page, actions: ActionLog) -> _LoginFields:
        step = AuthState.FIELD_DETECT.value
        timeout = self.site.field_timeout_ms
        identity_candidates = selectors_for(FieldRole.IDENTITY, self.candidates)
        secret_candidates = selectors_for(FieldRole.SECRET, self.candidates)
        tried = identity_candidates + secret_candidates

        try:
            identity = await locate_first(page, identity_candidates, timeout)
            secret = await locate_first(page, secret_candidates, timeout)
        except PlaywrightError as e:
            actions.record(step, False, tried=tried, error=first_line(e), final_url=page.url)
            raise
        if not identity or not secret:
            inputs = await snapshot_inputs(page)
            challenge = detect_challenge(inputs)
            actions.record(
                step,
                False,
                identity=identity,
                secret=secret,
                tried=tried,
                challenge=challenge,
                final_url=page.url,
            )
            raise FieldsNotFoundError(
                identity_selector=identity,
                secret_selector=secret,
                tried=tried,
                inputs=inputs,
                challenge=challenge,
            )

        submit = await locate_first(page, selectors_for(FieldRole.SUBMIT, self.candidates), timeout)
        actions.record(step, True, identity=identity, secret=secret, submit=submit, tried=tried)
        return _LoginFields(identity=identity, secret=secret, submit=submit)

    async def _submit_credentials(self, page: Page, fields: _LoginFields, actions: ActionLog) -> None:
        step = AuthState.CREDENTIALS_SUBMIT.value
        email = self.credentials.email or ""
        password = self.credentials.password.get_secret_value() if self.credentials.password else ""

        try:
            await page.focus(fields.identity)
            await page.keyboard.type(email, delay=self.type_delay_ms)
            await page.focus(fields.secret)
            await page.keyboard.type(password, delay=self.type_delay_ms)
        except PlaywrightError as e:
            self._submit_failed(page, actions, "typed", e)
        actions.record(step, True, detail="typed", identity_length=len(email))

        try:
            async with page.expect_navigation(
                wait_until=self.site.wait_until, timeout=self.site.nav_timeout_ms
            ):
                if fields.submit:
                    await page.click(fields.submit)
                else:
                    await page.keyboard.press("Enter")
        except PlaywrightTimeout:
            # no navigation is not fatal by itself; the login check below decides
            logger.debug("No navigation after credential submit")
        except PlaywrightError as e:
            self._submit_failed(page, actions, "submitted", e)

        final_url = page.url
        rejected = self.is_login_url(final_url)
        actions.record(
            step,
            not rejected,
            detail="submitted",
            submit=fields.submit or "Enter",
            final_url=final_url,
        )
        if rejected:
            raise RejectedError(final_url=final_url)

    @staticmethod
    def _submit_failed(page: Page, actions: ActionLog, detail: str, error: PlaywrightError) -> NoReturn:
        actions.record(
            AuthState.CREDENTIALS_SUBMIT.value,
            False,
            detail=detail,
            error=first_line(error),
            final_url=page.url,
        )
        if is_connection_lost(error):
            raise error
        raise RejectedError(final_url=page.url, detail=first_line(error)) from error

    def _strategies(self, target_url: str) -> List[Tuple[str, Optional[str]]]:
        expected = path_of(target_url)
        strategies: List[Tuple[str, Optional[str]]] = [("direct", None)]
        for rule in self.context_rules:
            via = rule.resolve(expected)
            if via:
                strategies.append(("context", self.site.absolute(via)))
                break
        strategies.append(("root", self.site.absolute("/")))
        return strategies

    async def _verify_target(self, page: Page, target_url: str, actions: ActionLog) -> None:
        step = AuthState.TARGET_VERIFY.value
        expected = path_of(target_url)

        for strategy, via in self._strategies(target_url):
            try:
                if via:
                    await self._goto(page, via)
                    actions.record(step, True, strategy=strategy, detail="via", final_url=page.url)
                await self._goto(page, target_url)
            except PlaywrightError as e:
                if is_connection_lost(e):
                    raise
                actions.record(step, False, strategy=strategy, error=first_line(e))
                continue
            reached = path_of(page.url) == expected
            actions.record(step, reached, strategy=strategy, final_url=page.url, expected_path=expected)
            if reached:
                return

        raise RedirectAwayError(final_url=page.url, expected_path=expected)

    async def _authenticated(self, entry: PoolEntry, page: Page, actions: ActionLog, *, via: str) -> Session:
        html = await page.content()
        entry.authenticated = True
        actions.record(AuthState.AUTHENTICATED.value, True, via=via, final_url=page.url)
        logger.info("Login ok via %s: %s", via, page.url)
        return Session(entry=entry, page=page, actions=actions, html=html, final_url=page.url)


def parse_session_cookies(raw: str, default_name: str) -> List[Tuple[str, str]]:
    """Split ``"a=1; b=2"`` into pairs; a bare token becomes ``default_name=token``."""
    cookies: List[Tuple[str, str]] = []
    for segment in (s.strip() for s in (raw or "").split(";")):
        if not segment:
            continue
        if "=" not in segment:
            cookies.append((default_name, segment))
            continue
        name, _, value = segment.partition("=")
        name, value = name.strip(), value.strip()
        prefix = f"{default_name}="
        if value.lower().startswith(prefix.lower()):
            value = value[len(prefix):]
        if name and value:
            cookies.append((name, value))
    return cookies


def cookie_names(raw: str, default_name: str) -> Dict[str, int]:
    """Occurrences per cookie name; used in the startup config log."""
    counts: Dict[str, int] = {}
    for name, _ in parse_session_cookies(raw, default_name):
        counts[name] = counts.get(name, 0) + 1
    return counts
