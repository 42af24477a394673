"""
JSON snapshot store: one live file per domain plus timestamped backups.
"""

from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from .models import Snapshot, utcnow

logger = logging.getLogger(__name__)

STAMP_FORMAT = "%Y-%m-%dT%H-%M-%S-%fZ"


class SnapshotStore:
    """Reads and writes ``<data_dir>/<name>.json`` atomically."""

    def __init__(self, data_dir: Path, name: str, *, keep_backups: int = 0) -> None:
        self.data_dir = Path(data_dir)
        self.name = name
        self.keep_backups = keep_backups

    @property
    def path(self) -> Path:
        return self.data_dir / f"{self.name}.json"

    def load(self) -> Snapshot:
        """Current snapshot; a missing file is an empty one.

        An unreadable file is moved aside (``.corrupt-<stamp>``) rather than
        silently overwritten by the next save.
        """
        if not self.path.exists():
            return Snapshot()
        try:
            return Snapshot.model_validate_json(self.path.read_bytes())
        except (ValidationError, ValueError) as e:
            aside = self.path.with_name(f"{self.path.name}.corrupt-{self._stamp()}")
            logger.error("Snapshot %s unreadable (%s), moved to %s", self.path, e, aside.name)
            os.replace(self.path, aside)
            return Snapshot()

    def save(self, snapshot: Snapshot) -> Path:
        """Write the live file via temp file + rename."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        payload = snapshot.model_dump_json(by_alias=True, indent=2)
        fd, tmp = tempfile.mkstemp(prefix=f".{self.name}.", suffix=".tmp", dir=self.data_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.info("Saved %d %s record(s) to %s", len(snapshot.records), self.name, self.path)
        return self.path

    def backup(self, snapshot: Snapshot) -> Optional[Path]:
        """Best-effort immutable copy; failures are logged, never raised."""
        target = self.data_dir / f"{self.name}.{self._stamp(snapshot.updated_at)}.json"
        try:
            target.write_text(snapshot.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning("Backup of %s failed: %s", self.name, e)
            return None
        logger.debug("Wrote backup %s", target.name)
        self.prune_backups()
        return target

    def backups(self) -> List[Path]:
        """Existing backups, oldest first."""
        if not self.data_dir.exists():
            return []
        prefix = f"{self.name}."
        found = [
            p
            for p in self.data_dir.glob(f"{self.name}.*.json")
            if p.name.startswith(prefix) and self._is_stamp(p.name[len(prefix):-len(".json")])
        ]
        return sorted(found, key=lambda p: p.name)

    def prune_backups(self) -> int:
        if not self.keep_backups:
            return 0
        stale = self.backups()[: -self.keep_backups]
        removed = 0
        for path in stale:
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.warning("Could not remove old backup %s: %s", path.name, e)
        return removed

    @staticmethod
    def _stamp(when: Optional[datetime] = None) -> str:
        return (when or utcnow()).strftime(STAMP_FORMAT)

    @staticmethod
    def _is_stamp(text: str) -> bool:
        try:
            datetime.strptime(text, STAMP_FORMAT)
        except ValueError:
            return False
        return True
