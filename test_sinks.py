"""
Tests for report sinks: Discord chunking and log levels.
"""

import logging

from crawler.models import CrawlReport, PassStatus
from sinks.discord_sink import MESSAGE_LIMIT, DiscordReportSink, chunk_message
from sinks.log_sink import LoggingReportSink


class FakeChannel:
    def __init__(self):
        self.sent = []

    async def send(self, text):
        self.sent.append(text)


class FakeClient:
    def __init__(self, channel):
        self.channel = channel

    def get_channel(self, channel_id):
        return self.channel

    async def fetch_channel(self, channel_id):
        raise AssertionError("cached channel expected")


def test_short_message_is_one_chunk():
    assert chunk_message("hello") == ["hello"]


def test_long_message_splits_on_lines():
    text = "\n".join(f"- Person {i}: Position Citizen → Mayor" for i in range(200))

    chunks = chunk_message(text)

    assert len(chunks) > 1
    assert all(len(c) <= MESSAGE_LIMIT for c in chunks)
    assert "".join(chunks) == text
    assert all(c.endswith("\n") for c in chunks[:-1])


def test_single_oversized_line_is_cut():
    chunks = chunk_message("x" * 4500)
    assert [len(c) for c in chunks] == [1900, 1900, 700]


async def test_discord_sink_prefixes_failures():
    channel = FakeChannel()
    sink = DiscordReportSink(FakeClient(channel), channel_id=42)

    await sink.handle(CrawlReport(domain="states", status=PassStatus.FAILED, error="[rejected] bad login"))
    await sink.handle(CrawlReport(domain="states", checked=3, found=3))

    assert channel.sent[0].startswith("**Error:** states update failed")
    assert channel.sent[1].startswith("states update complete. Checked 3, found 3")


async def test_discord_sink_without_channel_is_noop():
    await DiscordReportSink().handle(CrawlReport(domain="states"))


async def test_log_sink_levels(caplog):
    sink = LoggingReportSink()
    with caplog.at_level(logging.INFO, logger="sinks.log_sink"):
        await sink.handle(CrawlReport(domain="profiles"))
        await sink.handle(CrawlReport(domain="all", status=PassStatus.SKIPPED))
        await sink.handle(CrawlReport(domain="all", status=PassStatus.TIMED_OUT, error="tick exceeded 10s"))

    assert [r.levelno for r in caplog.records] == [logging.INFO, logging.WARNING, logging.ERROR]
