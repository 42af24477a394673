"""
Tests for the crawl scheduler: run guard, tick timeout, failure isolation.
"""

import asyncio
from types import SimpleNamespace

import pytest

from crawler.errors import LaunchFailedError, RejectedError
from crawler.infra.scheduler import Scheduler
from crawler.models import CrawlReport, PassStatus
from crawler.orchestrator import CrawlScheduler, GuardPhase, RunGuard, TICK_JOB_ID

from conftest import RecordingSink


class FakeCrawler:
    def __init__(self, name, *, gate=None, error=None, enabled=True):
        self.domain = SimpleNamespace(name=name, enabled=enabled)
        self.name = name
        self.gate = gate
        self.error = error
        self.calls = 0
        self.persist_decisions = []

    async def run_pass(self, *, should_persist=lambda: True):
        self.calls += 1
        if self.gate is not None and self.calls == 1:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        self.persist_decisions.append(should_persist())
        return CrawlReport(domain=self.name, checked=1, found=1)


def test_run_guard_generations():
    guard = RunGuard(clock=lambda: 1.0)
    first = guard.try_start()
    assert guard.try_start() is None

    guard.time_out(first)
    assert guard.state.phase is GuardPhase.TIMED_OUT
    assert not guard.is_current(first)

    second = guard.try_start()
    assert second == first + 1
    guard.finish(first)
    assert guard.is_current(second)
    guard.finish(second)
    assert guard.state.phase is GuardPhase.IDLE


async def test_second_tick_while_running_is_skipped():
    gate = asyncio.Event()
    sink = RecordingSink()
    scheduler = CrawlScheduler([FakeCrawler("profiles", gate=gate)], sinks=[sink])

    first = asyncio.create_task(scheduler.run_tick())
    await asyncio.sleep(0)
    skipped = await scheduler.run_tick()

    assert len(skipped) == 1
    assert skipped[0].status is PassStatus.SKIPPED
    assert sink.reports[0].status is PassStatus.SKIPPED

    gate.set()
    reports = await first
    assert [r.status for r in reports] == [PassStatus.OK]
    assert scheduler.guard.state.phase is GuardPhase.IDLE


async def test_tick_timeout_frees_guard_and_blocks_late_persist():
    gate = asyncio.Event()
    crawler = FakeCrawler("profiles", gate=gate)
    sink = RecordingSink()
    scheduler = CrawlScheduler([crawler], sinks=[sink], tick_timeout=0.05)

    reports = await scheduler.run_tick()
    assert reports[0].status is PassStatus.TIMED_OUT
    assert scheduler.guard.state.phase is GuardPhase.TIMED_OUT

    # the guard is free again; the next tick runs normally
    next_reports = await scheduler.run_tick()
    assert next_reports[0].status is PassStatus.OK

    gate.set()
    await asyncio.sleep(0.01)
    assert crawler.persist_decisions == [True, False]
    assert [r.status for r in sink.reports] == [PassStatus.TIMED_OUT, PassStatus.OK]


async def test_timed_out_tick_starts_no_further_domains():
    gate = asyncio.Event()
    slow = FakeCrawler("profiles", gate=gate)
    later = FakeCrawler("states")
    scheduler = CrawlScheduler([slow, later], tick_timeout=0.05)

    reports = await scheduler.run_tick()
    assert reports[0].status is PassStatus.TIMED_OUT

    gate.set()
    await asyncio.sleep(0.01)
    assert slow.persist_decisions == [False]
    assert later.calls == 0


async def test_failed_domain_does_not_stop_later_domains():
    rejected = FakeCrawler("profiles", error=RejectedError(final_url="https://powerplayusa.net/login"))
    states = FakeCrawler("states")
    scheduler = CrawlScheduler([rejected, states])

    reports = await scheduler.run_tick()

    assert [r.status for r in reports] == [PassStatus.FAILED, PassStatus.OK]
    assert reports[0].error.startswith("[rejected]")
    assert states.calls == 1


async def test_resource_and_unexpected_errors_become_failed_reports():
    launch = FakeCrawler("a", error=LaunchFailedError(attempts=3, last_error="boom"))
    broken = FakeCrawler("b", error=ValueError("bad html"))
    scheduler = CrawlScheduler([launch, broken])

    reports = await scheduler.run_tick()

    assert [r.status for r in reports] == [PassStatus.FAILED, PassStatus.FAILED]
    assert "[launch-failed]" in reports[0].error
    assert reports[1].error == "bad html"
    assert "failed" in reports[1].summary()


async def test_disabled_domain_is_skipped():
    scheduler = CrawlScheduler([FakeCrawler("profiles", enabled=False), FakeCrawler("states")])

    reports = await scheduler.run_tick()

    assert [r.domain for r in reports] == ["states"]


async def test_sink_failure_is_swallowed():
    class BrokenSink(RecordingSink):
        async def handle(self, report):
            raise RuntimeError("discord down")

    good = RecordingSink()
    scheduler = CrawlScheduler([FakeCrawler("states")], sinks=[BrokenSink(), good])

    reports = await scheduler.run_tick()

    assert reports[0].ok
    assert len(good.reports) == 1


async def test_status_reports_guard_and_last_run():
    scheduler = CrawlScheduler([FakeCrawler("states")])
    await scheduler.run_tick()

    status = scheduler.status()

    assert status["phase"] == "idle"
    assert status["generation"] == 1
    assert status["domains"] == ["states"]
    assert status["last_reports"][0]["elapsedSeconds"] == 0.0


async def test_schedule_registers_cron_job():
    scheduler = Scheduler(timezone="UTC")
    crawl = CrawlScheduler([FakeCrawler("states")])

    crawl.schedule(scheduler, "0 * * * *")

    assert TICK_JOB_ID in scheduler.list_jobs()
    assert crawl.status()["next_run_at"] is None
    with pytest.raises(ValueError):
        crawl.schedule(scheduler, "not a cron")
