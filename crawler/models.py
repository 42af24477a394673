"""
Core data models for the crawl cache.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class Action(BaseModel):
    """One step of an authentication attempt, kept for failure reports."""

    model_config = ConfigDict(frozen=True)

    step: str
    success: bool
    timestamp: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)

    def describe(self) -> str:
        mark = "ok" if self.success else "FAIL"
        details = ", ".join(f"{k}={v!r}" for k, v in self.data.items())
        line = f"{self.timestamp.isoformat()} [{mark}] {self.step}"
        return f"{line} ({details})" if details else line


class ActionLog:
    """Append-only trail of :class:`Action` records."""

    def __init__(self) -> None:
        self._actions: List[Action] = []

    def record(self, step: str, success: bool, **data: Any) -> Action:
        action = Action(step=step, success=success, data=data)
        self._actions.append(action)
        return action

    @property
    def last(self) -> Optional[Action]:
        return self._actions[-1] if self._actions else None

    def steps(self) -> List[str]:
        return [a.step for a in self._actions]

    def snapshot(self) -> List[Action]:
        return list(self._actions)

    def __iter__(self) -> Iterator[Action]:
        return iter(list(self._actions))

    def __len__(self) -> int:
        return len(self._actions)


def format_actions(actions: List[Action]) -> str:
    return "\n".join(a.describe() for a in actions)


class PageSnapshot(BaseModel):
    """Best-effort capture of where a failed attempt ended up."""

    url: str = ""
    title: str = ""
    text: str = ""


class Snapshot(BaseModel):
    """The persisted record set of one domain."""

    model_config = ConfigDict(populate_by_name=True)

    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    records: Dict[int, Dict[str, Any]] = Field(default_factory=dict)

    def known_ids(self) -> List[int]:
        return sorted(self.records)


class PassStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMED_OUT = "timed-out"


class CrawlReport(BaseModel):
    """Outcome of one domain pass (or of a skipped / timed-out tick)."""

    model_config = ConfigDict(populate_by_name=True)

    domain: str
    status: PassStatus = PassStatus.OK
    checked: int = 0
    found: int = 0
    discovered: int = 0
    changed: List[str] = Field(default_factory=list)
    changes_total: int = Field(default=0, alias="changesTotal")
    change_counts: Dict[str, int] = Field(default_factory=dict, alias="changeCounts")
    elapsed_seconds: float = Field(default=0.0, alias="elapsedSeconds")
    stop_reason: Optional[str] = Field(default=None, alias="stopReason")
    persisted: bool = False
    error: Optional[str] = None
    finished_at: datetime = Field(default_factory=utcnow, alias="finishedAt")

    @property
    def ok(self) -> bool:
        return self.status is PassStatus.OK

    def summary(self) -> str:
        """Render the report as the human-readable message sent upward."""
        if self.status is PassStatus.SKIPPED:
            return f"{self.domain}: skipped ({self.error or 'a crawl pass is already running'})"
        if self.status is PassStatus.TIMED_OUT:
            return f"{self.domain}: timed out after {self.elapsed_seconds:.0f}s ({self.error})"
        if self.status is PassStatus.FAILED:
            return (
                f"{self.domain} update failed after {self.elapsed_seconds:.0f}s: {self.error}"
            )

        head = (
            f"{self.domain} update complete. Checked {self.checked}, found {self.found} "
            f"({self.discovered} new). Time: {self.elapsed_seconds:.0f}s."
        )
        if not self.changes_total:
            return head
        bits = ", ".join(f"{label}: {n}" for label, n in self.change_counts.items())
        lines = "\n".join(self.changed)
        more = self.changes_total - len(self.changed)
        tail = f"\n… and {more} more." if more > 0 else ""
        return f"{head} Changes ({bits}):\n```\n{lines}{tail}\n```"
