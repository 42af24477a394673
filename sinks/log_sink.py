"""
Log sink - every crawl report goes to the application log.
"""

import logging

from crawler.interfaces import ReportSink
from crawler.models import CrawlReport, PassStatus


logger = logging.getLogger(__name__)


class LoggingReportSink(ReportSink):
    """Writes report summaries at INFO, failures at ERROR."""

    name = "LoggingReportSink"

    async def handle(self, report: CrawlReport) -> None:
        level = logging.INFO
        if report.status in (PassStatus.FAILED, PassStatus.TIMED_OUT):
            level = logging.ERROR
        elif report.status is PassStatus.SKIPPED:
            level = logging.WARNING
        logger.log(level, report.summary())
