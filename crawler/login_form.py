"""
Login-form field candidates and anti-automation markers.

Candidates are plain data: a prioritized list of ``(selector, role)`` pairs.
For each role the first candidate present on the page wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from playwright.async_api import Error as PlaywrightError, Page

from .infra.browser import is_connection_lost

logger = logging.getLogger(__name__)


class FieldRole(str, Enum):
    IDENTITY = "identity"
    SECRET = "secret"
    SUBMIT = "submit"


@dataclass(frozen=True)
class FieldCandidate:
    selector: str
    role: FieldRole


DEFAULT_CANDIDATES: Sequence[FieldCandidate] = (
    FieldCandidate('input[name="email"]', FieldRole.IDENTITY),
    FieldCandidate("#email", FieldRole.IDENTITY),
    FieldCandidate('input[type="email"]', FieldRole.IDENTITY),
    FieldCandidate('input[name="username"]', FieldRole.IDENTITY),
    FieldCandidate('input[name="password"]', FieldRole.SECRET),
    FieldCandidate("#password", FieldRole.SECRET),
    FieldCandidate('input[type="password"]', FieldRole.SECRET),
    FieldCandidate('button[type="submit"]', FieldRole.SUBMIT),
    FieldCandidate('input[type="submit"]', FieldRole.SUBMIT),
    FieldCandidate('form button', FieldRole.SUBMIT),
)

# substring -> challenge label, checked against input names and ids
CHALLENGE_MARKERS: Mapping[str, str] = {
    "turnstile": "cloudflare-turnstile",
    "cf-": "cloudflare-turnstile",
    "captcha": "captcha",
    "challenge": "challenge",
}

INPUT_SNAPSHOT_JS = """
(max) => Array.from(document.querySelectorAll('input')).slice(0, max).map((el) => ({
  type: el.getAttribute('type') || null,
  name: el.getAttribute('name') || null,
  id: el.id || null,
  placeholder: el.getAttribute('placeholder') || null,
  visible: !!(el.offsetWidth || el.offsetHeight || el.getClientRects().length),
}))
"""


def selectors_for(role: FieldRole, candidates: Iterable[FieldCandidate] = DEFAULT_CANDIDATES) -> List[str]:
    return [c.selector for c in candidates if c.role is role]


def detect_challenge(inputs: Iterable[Mapping[str, Any]]) -> Optional[str]:
    """Name the anti-automation challenge whose marker appears in an input name/id."""
    for field in inputs:
        haystack = " ".join(str(field.get(k) or "") for k in ("name", "id")).lower()
        for marker, label in CHALLENGE_MARKERS.items():
            if marker in haystack:
                return label
    return None


async def locate_first(page: Page, selectors: Sequence[str], timeout_ms: int) -> Optional[str]:
    """Wait for any selector to attach, then return the highest-priority one present."""
    if not selectors:
        return None
    try:
        await page.wait_for_selector(", ".join(selectors), timeout=timeout_ms)
    except PlaywrightError as e:
        if is_connection_lost(e):
            raise
        return None
    for selector in selectors:
        if await page.query_selector(selector) is not None:
            return selector
    return None


async def snapshot_inputs(page: Page, limit: int = 10) -> List[Dict[str, Any]]:
    try:
        return list(await page.evaluate(INPUT_SNAPSHOT_JS, limit))
    except PlaywrightError as e:
        logger.debug("Input snapshot failed: %s", e)
        return []
