"""
Discord sink for posting crawl reports to a log channel.
"""

import logging
from typing import List, Optional

import discord

from crawler.interfaces import ReportSink
from crawler.models import CrawlReport, PassStatus


logger = logging.getLogger(__name__)

MESSAGE_LIMIT = 2000
CHUNK_SIZE = 1900


def chunk_message(text: str, size: int = CHUNK_SIZE) -> List[str]:
    """Split on line boundaries where possible so code fences stay readable."""
    if len(text) <= MESSAGE_LIMIT:
        return [text]
    chunks: List[str] = []
    current = ""
    for line in text.splitlines(keepends=True):
        while len(line) > size:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:size])
            line = line[size:]
        if len(current) + len(line) > size:
            chunks.append(current)
            current = ""
        current += line
    if current:
        chunks.append(current)
    return chunks


class DiscordReportSink(ReportSink):
    """Sink that sends crawl reports to a Discord channel."""

    name = "DiscordReportSink"

    def __init__(self, client: Optional[discord.Client] = None, channel_id: Optional[int] = None):
        self.client = client
        self.channel_id = channel_id

    async def handle(self, report: CrawlReport) -> None:
        """Post the report summary; failures are logged and never raised."""
        if not self.client or not self.channel_id:
            logger.warning("Discord client or channel not configured, skipping report")
            return

        try:
            channel = self.client.get_channel(self.channel_id)
            if channel is None:
                channel = await self.client.fetch_channel(self.channel_id)
            text = report.summary()
            if report.status in (PassStatus.FAILED, PassStatus.TIMED_OUT):
                text = f"**Error:** {text}"
            for chunk in chunk_message(text):
                await channel.send(chunk)
        except Exception as e:
            logger.error(f"Failed to send Discord report: {e}")

    async def close(self) -> None:
        if self.client and not self.client.is_closed():
            await self.client.close()
