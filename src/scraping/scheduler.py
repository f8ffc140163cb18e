"""Periodic maintenance loops run by ``main.py serve``."""

import asyncio
import logging
import sqlite3
from typing import Protocol

logger = logging.getLogger(__name__)


class TimeoutSweeper(Protocol):
    def sweep_timeouts(self, threshold_minutes: int) -> int: ...


async def run_timeout_sweeper(
    orchestrator: TimeoutSweeper,
    threshold_minutes: int,
    interval_minutes: int,
) -> None:
    """Fail stuck IN_PROGRESS jobs every ``interval_minutes`` until cancelled."""
    logger.info(
        "Timeout sweeper started (threshold=%d min, interval=%d min)",
        threshold_minutes, interval_minutes,
    )
    while True:
        try:
            swept = orchestrator.sweep_timeouts(threshold_minutes)
        except sqlite3.Error:
            logger.exception("Error while checking for timed-out jobs")
        else:
            if swept:
                logger.warning("Marked %d scraping jobs as timed out", swept)
            else:
                logger.debug("No timed-out jobs found")
        await asyncio.sleep(interval_minutes * 60)
