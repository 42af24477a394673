"""
Orchestrator for scheduled crawl ticks: run guard, tick timeout, sequential
domain passes and report delivery.
"""

from __future__ import annotations

import asyncio
import logging
import time
import traceback
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from .crawl import DomainCrawler
from .errors import CrawlError
from .infra.scheduler import Scheduler
from .interfaces import ReportSink
from .models import CrawlReport, PassStatus, utcnow

logger = logging.getLogger(__name__)

TICK_JOB_ID = "crawl-tick"


class GuardPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    TIMED_OUT = "timed-out"


@dataclass(frozen=True)
class GuardState:
    phase: GuardPhase = GuardPhase.IDLE
    started_at: Optional[float] = None
    timed_out_at: Optional[float] = None
    generation: int = 0


class RunGuard:
    """At most one tick at a time; a timed-out tick stops owning the guard.

    Each started tick gets a generation number. Work belonging to an older
    generation can still finish, but :meth:`is_current` is False for it.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.state = GuardState()

    @property
    def running(self) -> bool:
        return self.state.phase is GuardPhase.RUNNING

    def try_start(self) -> Optional[int]:
        if self.running:
            return None
        generation = self.state.generation + 1
        self.state = GuardState(GuardPhase.RUNNING, started_at=self._clock(), generation=generation)
        return generation

    def finish(self, generation: int) -> None:
        if self.is_current(generation):
            self.state = replace(self.state, phase=GuardPhase.IDLE)

    def time_out(self, generation: int) -> None:
        if self.is_current(generation):
            self.state = replace(self.state, phase=GuardPhase.TIMED_OUT, timed_out_at=self._clock())

    def is_current(self, generation: int) -> bool:
        return self.running and self.state.generation == generation


class CrawlScheduler:
    """Runs every enabled domain once per tick, strictly one after another."""

    def __init__(
        self,
        crawlers: Sequence[DomainCrawler],
        *,
        sinks: Sequence[ReportSink] = (),
        tick_timeout: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.crawlers = list(crawlers)
        self.sinks = list(sinks)
        self.tick_timeout = tick_timeout
        self._clock = clock
        self.guard = RunGuard(clock)
        self.last_reports: List[CrawlReport] = []
        self.last_run_at = None
        self._late: Optional[asyncio.Task] = None
        self._scheduler: Optional[Scheduler] = None

    async def run_tick(self) -> List[CrawlReport]:
        """One scheduled tick.

        Returns a single skipped report when a tick is already running, and a
        single timed-out report when the hard timeout expires; in-flight work
        of a timed-out tick keeps running but can no longer persist.
        """
        generation = self.guard.try_start()
        if generation is None:
            logger.warning("Crawl tick skipped: previous tick still running")
            report = CrawlReport(
                domain="all",
                status=PassStatus.SKIPPED,
                error="a crawl pass is already running",
            )
            await self._emit(report)
            return [report]

        started = self._clock()
        self.last_run_at = utcnow()
        task = asyncio.create_task(self._run_domains(generation))
        done, _ = await asyncio.wait({task}, timeout=self.tick_timeout)
        if task in done:
            self.guard.finish(generation)
            reports = task.result()
            self.last_reports = reports
            return reports

        self.guard.time_out(generation)
        elapsed = self._clock() - started
        logger.error(
            "Crawl tick timed out after %.0fs; guard released, passes still in flight will not persist",
            elapsed,
        )
        task.add_done_callback(self._log_late_completion)
        self._late = task
        report = CrawlReport(
            domain="all",
            status=PassStatus.TIMED_OUT,
            elapsed_seconds=elapsed,
            error=f"tick exceeded {self.tick_timeout:.0f}s",
        )
        await self._emit(report)
        self.last_reports = [report]
        return [report]

    async def _run_domains(self, generation: int) -> List[CrawlReport]:
        reports: List[CrawlReport] = []
        for crawler in self.crawlers:
            if not self.guard.is_current(generation):
                logger.warning("Tick timed out; not starting %s or any later domain", crawler.name)
                break
            if not crawler.domain.enabled:
                logger.info("Skipping disabled domain %s", crawler.name)
                continue
            report = await self._run_domain(crawler, generation)
            reports.append(report)
            # reports of a timed-out tick are logged only
            if self.guard.is_current(generation):
                await self._emit(report)
            else:
                logger.info("Late report: %s", report.summary())
        return reports

    async def _run_domain(self, crawler: DomainCrawler, generation: int) -> CrawlReport:
        started = self._clock()
        try:
            return await crawler.run_pass(should_persist=lambda: self.guard.is_current(generation))
        except CrawlError as e:
            logger.error("%s pass aborted:\n%s", crawler.name, e.describe())
            error = f"[{e.reason}] {e.message}"
        except Exception as e:  # noqa: BLE001
            logger.error(f"{crawler.name} pass failed: {e}")
            logger.debug(traceback.format_exc())
            error = str(e) or type(e).__name__
        return CrawlReport(
            domain=crawler.name,
            status=PassStatus.FAILED,
            elapsed_seconds=self._clock() - started,
            error=error,
        )

    async def _emit(self, report: CrawlReport) -> None:
        for sink in self.sinks:
            try:
                await sink.handle(report)
            except Exception as e:  # noqa: BLE001
                logger.error(f"Sink {sink.name} failed: {e}")

    def _log_late_completion(self, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("Timed-out crawl tick was cancelled")
        elif task.exception() is not None:
            logger.error("Timed-out crawl tick failed late: %s", task.exception())
        else:
            logger.warning("Timed-out crawl tick finished late (%d report(s))", len(task.result()))

    def schedule(self, scheduler: Scheduler, cron: str) -> None:
        scheduler.add_cron_job(self.run_tick, cron, job_id=TICK_JOB_ID, name="crawl tick")
        self._scheduler = scheduler
        logger.info(f"Scheduled crawl tick with schedule '{cron}'")

    def status(self) -> Dict[str, Any]:
        state = self.guard.state
        next_run = self._scheduler.next_run(TICK_JOB_ID) if self._scheduler else None
        return {
            "phase": state.phase.value,
            "generation": state.generation,
            "started_at": state.started_at,
            "timed_out_at": state.timed_out_at,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "next_run_at": next_run.isoformat() if next_run else None,
            "domains": [c.name for c in self.crawlers],
            "last_reports": [r.model_dump(mode="json", by_alias=True) for r in self.last_reports],
        }
