"""
Tests for the browser pool and launcher: reuse, health probing, eviction,
launch retries and shutdown.
"""

import pytest

from crawler.config import BrowserSettings, SiteSettings
from crawler.errors import LaunchFailedError
from crawler.infra import browser as browser_module
from crawler.infra.browser import BrowserLauncher
from crawler.infra.pool import BrowserPool

from conftest import FakeHandle, FakeLauncher


class Clock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


async def test_release_then_acquire_reuses_instance(pool, launcher):
    first = await pool.acquire()
    await pool.release(first)
    second = await pool.acquire()

    assert second is first
    assert second.uses == 2
    assert len(launcher.launched) == 1


async def test_failed_probe_discards_stale_instance(pool, launcher):
    stale = await pool.acquire()
    await pool.release(stale)
    stale.handle.alive = False

    fresh = await pool.acquire()
    assert fresh is not stale
    assert stale.handle.closed

    await pool.release(fresh)
    again = await pool.acquire()
    assert again is fresh
    assert len(launcher.launched) == 2


async def test_probe_exception_counts_as_failure(site):
    class ExplodingHandle(FakeHandle):
        async def probe(self) -> bool:
            raise RuntimeError("probe blew up")

    handles = []

    async def launch():
        handle = ExplodingHandle(site) if not handles else FakeHandle(site)
        handles.append(handle)
        return handle

    pool = BrowserPool(launch)
    entry = await pool.acquire()
    await pool.release(entry)

    replacement = await pool.acquire()
    assert replacement.handle is handles[1]
    assert handles[0].closed


async def test_release_beyond_capacity_closes(site):
    pool = BrowserPool(FakeLauncher(site), max_size=1)
    a = await pool.acquire()
    b = await pool.acquire()

    await pool.release(a)
    await pool.release(b)

    assert pool.stats()["idle"] == 1
    assert not a.handle.closed
    assert b.handle.closed


async def test_unhealthy_entry_is_not_pooled(pool):
    entry = await pool.acquire()
    entry.mark_unhealthy()
    await pool.release(entry)

    assert entry.handle.closed
    assert pool.stats()["idle"] == 0


async def test_double_release_is_ignored(pool):
    entry = await pool.acquire()
    await pool.release(entry)
    await pool.release(entry)

    assert pool.stats() == {"idle": 1, "borrowed": 0, "max_size": 3, "created": 1}


async def test_evict_expired_closes_idle_entries(site):
    clock = Clock()
    pool = BrowserPool(FakeLauncher(site), idle_timeout=300.0, clock=clock)
    old = await pool.acquire()
    await pool.release(old)

    clock.now = 200.0
    assert await pool.evict_expired() == 0

    clock.now = 301.0
    assert await pool.evict_expired() == 1
    assert old.handle.closed

    fresh = await pool.acquire()
    assert fresh is not old


async def test_acquire_evicts_before_reuse(site):
    clock = Clock()
    launcher = FakeLauncher(site)
    pool = BrowserPool(launcher, idle_timeout=10.0, clock=clock)
    entry = await pool.acquire()
    await pool.release(entry)

    clock.now = 60.0
    replacement = await pool.acquire()

    assert replacement is not entry
    assert len(launcher.launched) == 2


async def test_close_all_closes_idle_and_borrowed(pool):
    idle = await pool.acquire()
    borrowed = await pool.acquire()
    await pool.release(idle)

    await pool.close_all()

    assert idle.handle.closed
    assert borrowed.handle.closed
    with pytest.raises(RuntimeError):
        await pool.acquire()


async def test_launch_failure_propagates(site):
    async def launch():
        raise LaunchFailedError(attempts=3, last_error="chromium missing")

    pool = BrowserPool(launch)
    with pytest.raises(LaunchFailedError) as info:
        await pool.acquire()
    assert info.value.payload() == {"attempts": 3, "last_error": "chromium missing"}


async def test_borrow_context_manager_releases(pool):
    async with pool.borrow() as entry:
        assert pool.stats()["borrowed"] == 1
    assert pool.stats()["borrowed"] == 0
    assert pool.stats()["idle"] == 1
    assert not entry.handle.closed


class FlakyLaunch:
    def __init__(self, failures, handle=None):
        self.failures = failures
        self.handle = handle
        self.attempts = 0

    async def __call__(self):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise RuntimeError(f"chromium exited with code 1 (attempt {self.attempts})\nstack")
        return self.handle


@pytest.fixture
def sleeps(monkeypatch):
    calls = []

    async def fake_sleep(seconds):
        calls.append(seconds)

    monkeypatch.setattr(browser_module.asyncio, "sleep", fake_sleep)
    return calls


def make_launcher(monkeypatch, launch):
    launcher = BrowserLauncher(BrowserSettings(launch_retries=2, launch_backoff_s=1.5), SiteSettings())
    monkeypatch.setattr(launcher, "_launch_once", launch)
    return launcher


async def test_launch_retries_with_fixed_backoff(site, monkeypatch, sleeps):
    handle = FakeHandle(site)
    launch = FlakyLaunch(failures=2, handle=handle)

    assert await make_launcher(monkeypatch, launch).launch() is handle
    assert launch.attempts == 3
    assert sleeps == [1.5, 1.5]


async def test_launch_gives_up_after_retries(monkeypatch, sleeps):
    launch = FlakyLaunch(failures=10)

    with pytest.raises(LaunchFailedError) as info:
        await make_launcher(monkeypatch, launch).launch()

    assert launch.attempts == 3
    assert sleeps == [1.5, 1.5]
    assert info.value.payload() == {
        "attempts": 3,
        "last_error": "chromium exited with code 1 (attempt 3)",
    }
    assert info.value.reason == "launch-failed"
