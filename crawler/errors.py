"""
Typed failures surfaced by the browser pool and the session authenticator.

Every variant carries the action trail of the attempt and a best-effort
snapshot of the page it ended on. ``reason`` is the stable tag callers
switch on.
"""

from __future__ import annotations

from typing import Any, ClassVar, Dict, List, Optional, Sequence

from .models import Action, PageSnapshot, format_actions


class CrawlError(Exception):
    """Base class for errors that abort a domain pass."""

    reason: ClassVar[str] = "crawl-error"

    def __init__(
        self,
        message: str,
        *,
        actions: Sequence[Action] = (),
        snapshot: Optional[PageSnapshot] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.actions: List[Action] = list(actions)
        self.snapshot = snapshot

    def payload(self) -> Dict[str, Any]:
        return {}

    def describe(self) -> str:
        """Multi-line diagnostic report: reason, payload, page snapshot, action trail."""
        lines = [f"{type(self).__name__} [{self.reason}]: {self.message}"]
        for key, value in self.payload().items():
            lines.append(f"  {key}: {value!r}")
        if self.snapshot is not None:
            lines.append(f"  page: {self.snapshot.url} | {self.snapshot.title!r}")
            if self.snapshot.text:
                lines.append(f"  text: {self.snapshot.text!r}")
        if self.actions:
            lines.append("  actions:")
            lines.extend(f"    {line}" for line in format_actions(self.actions).splitlines())
        return "\n".join(lines)


class AuthenticationError(CrawlError):
    reason: ClassVar[str] = "authentication"


class ResourceError(CrawlError):
    reason: ClassVar[str] = "resource"


class MissingCredentialsError(AuthenticationError):
    reason: ClassVar[str] = "missing-credentials"

    def __init__(self, *, has_identity: bool, has_secret: bool, **kwargs: Any) -> None:
        super().__init__("Missing login credentials (email/password)", **kwargs)
        self.has_identity = has_identity
        self.has_secret = has_secret

    def payload(self) -> Dict[str, Any]:
        return {"has_identity": self.has_identity, "has_secret": self.has_secret}


class FieldsNotFoundError(AuthenticationError):
    reason: ClassVar[str] = "fields-not-found"

    def __init__(
        self,
        *,
        identity_selector: Optional[str],
        secret_selector: Optional[str],
        tried: Sequence[str],
        inputs: Sequence[Dict[str, Any]] = (),
        challenge: Optional[str] = None,
        navigation_error: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        if navigation_error:
            message = f"Login page did not load: {navigation_error}"
        elif challenge:
            message = f"Automation challenge detected ({challenge}); login form hidden"
        else:
            message = "Login fields not found"
        super().__init__(message, **kwargs)
        self.identity_selector = identity_selector
        self.secret_selector = secret_selector
        self.tried = list(tried)
        self.inputs = list(inputs)
        self.challenge = challenge
        self.navigation_error = navigation_error

    @property
    def challenge_detected(self) -> bool:
        return self.challenge is not None

    def payload(self) -> Dict[str, Any]:
        return {
            "identity_selector": self.identity_selector,
            "secret_selector": self.secret_selector,
            "tried": self.tried,
            "challenge": self.challenge,
            "inputs": self.inputs,
            "navigation_error": self.navigation_error,
        }


class RejectedError(AuthenticationError):
    reason: ClassVar[str] = "rejected"

    def __init__(self, *, final_url: str, detail: Optional[str] = None, **kwargs: Any) -> None:
        message = "Credentials rejected (still on login page)"
        if detail:
            message = f"Credential submit failed: {detail}"
        super().__init__(message, **kwargs)
        self.final_url = final_url
        self.detail = detail

    def payload(self) -> Dict[str, Any]:
        return {"final_url": self.final_url, "detail": self.detail}


class RedirectAwayError(AuthenticationError):
    reason: ClassVar[str] = "redirect-away"

    def __init__(self, *, final_url: str, expected_path: str, **kwargs: Any) -> None:
        super().__init__("Authenticated but redirected away from target", **kwargs)
        self.final_url = final_url
        self.expected_path = expected_path

    def payload(self) -> Dict[str, Any]:
        return {"final_url": self.final_url, "expected_path": self.expected_path}


class LaunchFailedError(ResourceError):
    reason: ClassVar[str] = "launch-failed"

    def __init__(self, *, attempts: int, last_error: str, **kwargs: Any) -> None:
        super().__init__(f"Browser launch failed after {attempts} attempt(s): {last_error}", **kwargs)
        self.attempts = attempts
        self.last_error = last_error

    def payload(self) -> Dict[str, Any]:
        return {"attempts": self.attempts, "last_error": self.last_error}


class ConnectionLostError(ResourceError):
    reason: ClassVar[str] = "connection-lost"

    def __init__(self, *, url: str, detail: str, **kwargs: Any) -> None:
        super().__init__(f"Browser connection lost while loading {url}: {detail}", **kwargs)
        self.url = url
        self.detail = detail

    def payload(self) -> Dict[str, Any]:
        return {"url": self.url, "detail": self.detail}
