"""
Main entry point for the crawl cache with scheduling support.
"""

import asyncio
import inspect
import logging
import os
import signal
import sys
from dataclasses import dataclass
from typing import List, Optional

import discord
from dotenv import load_dotenv

# Add project root to PYTHONPATH so imports work when running this script directly
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from crawler.auth import SessionAuthenticator, cookie_names
from crawler.config import Settings, load_settings
from crawler.crawl import DomainCrawler
from crawler.fetcher import PageFetcher
from crawler.infra.browser import BrowserLauncher
from crawler.infra.pool import BrowserPool
from crawler.infra.scheduler import Scheduler
from crawler.interfaces import ReportSink
from crawler.orchestrator import CrawlScheduler
from crawler.plugin_loader import get as get_parser, list_available, refresh_registry
from crawler.store import SnapshotStore
from sinks.discord_sink import DiscordReportSink
from sinks.log_sink import LoggingReportSink

logger = logging.getLogger(__name__)


@dataclass
class App:
    settings: Settings
    launcher: BrowserLauncher
    pool: BrowserPool
    crawl: CrawlScheduler
    sinks: List[ReportSink]
    discord_client: Optional[discord.Client] = None


def build_app(settings: Settings) -> App:
    """Wire launcher, pool, authenticator, fetcher and one crawler per domain."""
    launcher = BrowserLauncher(settings.browser, settings.site)
    pool = BrowserPool(
        launcher.launch,
        max_size=settings.browser.pool_size,
        idle_timeout=settings.browser.idle_timeout_s,
    )
    authenticator = SessionAuthenticator(settings.site, settings.credentials)
    fetcher = PageFetcher(pool, authenticator, settings.site)

    refresh_registry()
    available = list_available()
    logger.info(f"Discovered {len(available)} parser classes:")
    for name, cls in available.items():
        logger.info(f"  - {name}: {cls.__name__}")

    crawlers = []
    for domain in settings.domains:
        parser_cls = get_parser(domain.parser)
        if "base_url" in inspect.signature(parser_cls).parameters:
            parser = parser_cls(base_url=settings.site.base_url)
        else:
            parser = parser_cls()
        store = SnapshotStore(settings.crawl.data_dir, domain.name, keep_backups=domain.keep_backups)
        crawlers.append(
            DomainCrawler(domain, parser, fetcher, store, report_limit=settings.crawl.report_limit)
        )
        logger.info(
            f"  - {domain.name}: {domain.path} from {domain.start_id}"
            f" (max {domain.max_id or 'unbounded'}, batch {domain.batch_size}/{domain.concurrency})"
            f"{'' if domain.enabled else ' [disabled]'}"
        )

    sinks: List[ReportSink] = [LoggingReportSink()]
    client = None
    if settings.discord_token and settings.discord_log_channel_id:
        client = discord.Client(intents=discord.Intents.default())
        sinks.append(DiscordReportSink(client, settings.discord_log_channel_id))

    crawl = CrawlScheduler(crawlers, sinks=sinks, tick_timeout=settings.crawl.tick_timeout_s)
    return App(settings, launcher, pool, crawl, sinks, client)


async def shutdown(app: App) -> None:
    logger.info("Shutting down...")
    await app.pool.close_all()
    await app.launcher.stop()
    for sink in app.sinks:
        try:
            await sink.close()
        except Exception as e:
            logger.error(f"Error closing sink {sink.name}: {e}")
    logger.info("Shutdown complete")


async def run_once(app: App) -> None:
    """Single tick without the scheduler."""
    try:
        reports = await app.crawl.run_tick()
        logger.info(f"Run complete: {sum(r.ok for r in reports)}/{len(reports)} domain(s) ok")
    finally:
        await shutdown(app)


async def stop_task(task: Optional[asyncio.Task], label: str) -> None:
    if task and not task.done():
        logger.info(f"Stopping {label}...")
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


def log_task_failure(task: asyncio.Task) -> None:
    """Done callback: surface the exception of a background task nobody awaits."""
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Background task {task.get_name()} failed: {error!r}")


async def main():
    """Main entry point with scheduler and optional Discord report channel."""
    load_dotenv()

    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s"
    )
    # settings were loaded before logging was configured; repeat the essentials
    creds = settings.credentials
    logger.info(
        "Config: base=%s login=%s email=%s password=%s cookies=%s",
        settings.site.base_url,
        settings.site.login_path,
        "set" if creds.email else "not set",
        "set" if creds.password else "not set",
        cookie_names(creds.cookie_value, settings.site.cookie_name) or "none",
    )

    app = build_app(settings)

    bot_task = None
    if app.discord_client is not None:
        logger.info("Starting Discord client for report delivery...")
        bot_task = asyncio.create_task(app.discord_client.start(settings.discord_token.get_secret_value()))
        try:
            await asyncio.wait_for(app.discord_client.wait_until_ready(), timeout=30)
        except asyncio.TimeoutError:
            logger.warning("Discord client not ready after 30s; reports may only reach the log")

    if os.getenv("SCHEDULER_MODE", "enabled") == "disabled":
        logger.info("Starting crawl cache (one-time run)...")
        try:
            await run_once(app)
        finally:
            await stop_task(bot_task, "Discord client")
        return

    scheduler = Scheduler(timezone=settings.crawl.timezone)

    # Setup graceful shutdown
    stop_event = asyncio.Event()
    startup_task: Optional[asyncio.Task] = None

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        asyncio.get_running_loop().add_signal_handler(sig, signal_handler)

    try:
        await scheduler.start()
        app.crawl.schedule(scheduler, settings.crawl.cron)
        scheduler.add_interval_job(
            app.pool.evict_expired,
            seconds=max(30, int(settings.browser.idle_timeout_s)),
            job_id="browser-eviction",
        )

        if settings.crawl.run_on_startup:
            logger.info("Running startup crawl tick...")
            startup_task = asyncio.create_task(app.crawl.run_tick(), name="startup-tick")
            startup_task.add_done_callback(log_task_failure)

        await stop_event.wait()

    except Exception as e:
        logger.error(f"Error in main loop: {e}")
    finally:
        await scheduler.stop()
        await stop_task(startup_task, "startup crawl tick")
        await stop_task(bot_task, "Discord client")
        await shutdown(app)


if __name__ == "__main__":
    asyncio.run(main())
