"""
Change detection between two snapshots of a domain.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import BaseModel


def render_value(value: Any) -> str:
    """Default rendering: lists and dicts flattened, missing shown as a dash."""
    if value is None or value == "":
        return "—"
    if isinstance(value, dict):
        return ", ".join(f"{k}: {render_value(v)}" for k, v in sorted(value.items()))
    if isinstance(value, (list, tuple)):
        return ", ".join(render_value(v) for v in value) or "—"
    return str(value)


def lookup(record: Mapping[str, Any], path: str) -> Any:
    """Follow a dotted ``path`` into nested mappings."""
    value: Any = record
    for part in path.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


@dataclass(frozen=True)
class WatchField:
    """A record field whose changes are reported."""

    path: str
    label: str
    render: Callable[[Any], str] = render_value

    def value(self, record: Mapping[str, Any]) -> str:
        return self.render(lookup(record, self.path))


class ChangeDelta(BaseModel):
    record_id: int
    name: str
    field: str
    before: Optional[str] = None
    after: Optional[str] = None
    added: bool = False

    def describe(self) -> str:
        if self.added:
            return f"+ {self.name} (new)"
        return f"{self.field} {self.before} → {self.after}"


def diff_snapshots(
    before: Mapping[int, Mapping[str, Any]],
    after: Mapping[int, Mapping[str, Any]],
    watch: Sequence[WatchField],
    name_key: str = "name",
) -> List[ChangeDelta]:
    """Compare two record sets on ``watch``.

    Records present only in ``after`` are reported once as additions; records
    missing from ``after`` are not reported (a miss never deletes).
    """
    deltas: List[ChangeDelta] = []
    for record_id in sorted(after):
        new = after[record_id]
        name = str(new.get(name_key) or record_id)
        old = before.get(record_id)
        if old is None:
            deltas.append(ChangeDelta(record_id=record_id, name=name, field="", added=True))
            continue
        for field in watch:
            was, now = field.value(old), field.value(new)
            if was != now:
                deltas.append(
                    ChangeDelta(record_id=record_id, name=name, field=field.label, before=was, after=now)
                )
    return deltas


def summarize(deltas: Iterable[ChangeDelta]) -> Dict[str, int]:
    """Number of changes per watch label (``New`` for additions)."""
    counts = Counter("New" if d.added else d.field for d in deltas)
    return dict(counts)


def format_changes(deltas: Sequence[ChangeDelta], limit: Optional[int] = None) -> List[str]:
    """One line per record: ``- Name: Governor A → B; EV 3 → 4``."""
    lines: List[str] = []
    grouped: Dict[int, List[ChangeDelta]] = {}
    for delta in deltas:
        grouped.setdefault(delta.record_id, []).append(delta)
    for record_id, group in grouped.items():
        if group[0].added:
            lines.append(f"- {group[0].name}: new")
        else:
            lines.append(f"- {group[0].name}: " + "; ".join(d.describe() for d in group))
        if limit is not None and len(lines) >= limit:
            break
    return lines
