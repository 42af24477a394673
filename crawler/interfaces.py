"""
Core interfaces for the crawl cache.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Sequence

from .diff import WatchField
from .models import CrawlReport


class Parser(ABC):
    """Turns one rendered entity page into a record.

    Parsers are plugins: every concrete subclass under ``plugins/`` is
    registered by :mod:`crawler.plugin_loader` as ``plugin_name.ClassName``.
    """

    #: fields compared between passes to build the change report
    watch_fields: Sequence[WatchField] = ()
    #: record key used as the human-readable label in change lines
    name_key: str = "name"

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name for this parser."""
        pass

    @abstractmethod
    def parse(self, html: str) -> Optional[Dict[str, Any]]:
        """Extract a record, or return ``None`` when the page is not an entity.

        Must not raise on unexpected markup.
        """
        pass


class ReportSink(ABC):
    """Destination for crawl reports."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name for this sink."""
        pass

    @abstractmethod
    async def handle(self, report: CrawlReport) -> None:
        """Deliver a report."""
        pass

    async def close(self) -> None:
        """Release any resources held by the sink."""
        pass
