"""
One incremental pass over a domain's ID space: refresh what is known,
discover what is new, merge, diff, persist and report.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .batching import chunked, run_batch
from .config import DomainSettings
from .diff import diff_snapshots, format_changes, summarize
from .fetcher import PageFetcher
from .interfaces import Parser
from .models import CrawlReport, PassStatus, Snapshot, utcnow
from .store import SnapshotStore

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


@dataclass
class DiscoveryResult:
    checked: int = 0
    found: int = 0
    stop_reason: Optional[str] = None


class DomainCrawler:
    """Runs passes for a single domain against its own store."""

    def __init__(
        self,
        domain: DomainSettings,
        parser: Parser,
        fetcher: PageFetcher,
        store: SnapshotStore,
        *,
        report_limit: int = 20,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.domain = domain
        self.parser = parser
        self.fetcher = fetcher
        self.store = store
        self.report_limit = report_limit
        self._clock = clock

    @property
    def name(self) -> str:
        return self.domain.name

    def url_path(self, record_id: int) -> str:
        return self.domain.path.format(id=record_id)

    async def fetch(self, record_id: int) -> Optional[Record]:
        return await self.fetcher.fetch(self.url_path(record_id), self.parser)

    # ------------------------------------------------------------------ #
    async def run_pass(self, *, should_persist: Callable[[], bool] = lambda: True) -> CrawlReport:
        """Refresh every known record, then probe for new ones.

        Authentication and resource errors propagate; the caller turns them
        into a failed report. Nothing is written in that case.
        """
        started = self._clock()
        before = self.store.load()
        records: Dict[int, Record] = dict(before.records)
        known = before.known_ids()
        logger.info("%s pass started: %d known record(s)", self.name, len(known))

        refreshed, checked = await self._refresh(known, records)
        discovery = await self._discover(known, records)
        checked += discovery.checked

        deltas = diff_snapshots(before.records, records, self.parser.watch_fields, self.parser.name_key)
        lines = format_changes(deltas)

        persisted = False
        if should_persist():
            snapshot = Snapshot(updated_at=utcnow(), records=records)
            self.store.save(snapshot)
            self.store.backup(snapshot)
            persisted = True
        else:
            logger.error("%s pass finished after its tick timed out; snapshot not written", self.name)

        report = CrawlReport(
            domain=self.name,
            status=PassStatus.OK,
            checked=checked,
            found=refreshed + discovery.found,
            discovered=discovery.found,
            changed=lines[: self.report_limit],
            changes_total=len(lines),
            change_counts=summarize(deltas),
            elapsed_seconds=self._clock() - started,
            stop_reason=discovery.stop_reason,
            persisted=persisted,
        )
        logger.info(
            "%s pass done: checked %d, found %d (%d new), %d change line(s), stop: %s",
            self.name,
            report.checked,
            report.found,
            report.discovered,
            report.changes_total,
            report.stop_reason,
        )
        return report

    # ------------------------------------------------------------------ #
    async def _refresh(self, known: List[int], records: Dict[int, Record]) -> Tuple[int, int]:
        found = checked = 0
        for batch in chunked(known, self.domain.batch_size):
            results = await run_batch(batch, self.fetch, self.domain.concurrency)
            checked += len(batch)
            for record_id, record in zip(batch, results):
                # a miss leaves the previous record in place
                if record is not None:
                    records[record_id] = self._stamp(record_id, record)
                    found += 1
        return found, checked

    async def _discover(self, known: List[int], records: Dict[int, Record]) -> DiscoveryResult:
        domain = self.domain
        result = DiscoveryResult()
        next_id = max(known[-1] + 1 if known else domain.start_id, domain.start_id)
        deadline = (
            self._clock() + domain.discovery_timeout_seconds
            if domain.discovery_timeout_seconds
            else None
        )
        misses = 0

        while result.stop_reason is None:
            if domain.max_id is not None and next_id > domain.max_id:
                result.stop_reason = "max-id"
                break
            if deadline is not None and self._clock() >= deadline:
                result.stop_reason = "discovery-timeout"
                break

            last_id = next_id + domain.batch_size - 1
            if domain.max_id is not None:
                last_id = min(last_id, domain.max_id)
            batch = list(range(next_id, last_id + 1))
            results = await run_batch(batch, self.fetch, domain.concurrency)
            result.checked += len(batch)
            next_id = last_id + 1

            # in ID order; anything past the stopping point is discarded
            for record_id, record in zip(batch, results):
                if record is None:
                    misses += 1
                    if misses >= domain.consecutive_miss_limit:
                        result.stop_reason = "consecutive-misses"
                        break
                    continue
                misses = 0
                if domain.max_new_per_pass is not None and result.found >= domain.max_new_per_pass:
                    result.stop_reason = "max-new"
                    break
                records[record_id] = self._stamp(record_id, record)
                result.found += 1

        logger.info(
            "%s discovery: %d probed, %d new, stopped on %s",
            self.name,
            result.checked,
            result.found,
            result.stop_reason,
        )
        return result

    @staticmethod
    def _stamp(record_id: int, record: Record) -> Record:
        return {**record, "id": record_id, "updatedAt": utcnow().isoformat()}
