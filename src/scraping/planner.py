"""Search windows for scraping jobs.

Strategy: FULL_PROFILE jobs search one 7-night stay 30 days out. PRICE_SAMPLE
jobs are spread over the next year, 12 monthly samples:
  - first check-in 30 days from today
  - 7 nights each
  - 30 days between check-ins
"""

import logging
from datetime import date, timedelta

from src.core.schemas import TimeWindow

logger = logging.getLogger(__name__)

LEAD_DAYS = 30
NIGHTS = 7
SAMPLE_COUNT = 12
SAMPLE_INTERVAL_DAYS = 30


def default_window(today: date | None = None) -> TimeWindow:
    """Search window for FULL_PROFILE jobs and retries."""
    today = today or date.today()
    return TimeWindow.starting(today + timedelta(days=LEAD_DAYS), NIGHTS)


def sampling_schedule(today: date | None = None) -> list[TimeWindow]:
    """Return the 12 price-sampling windows, earliest first."""
    today = today or date.today()
    first = today + timedelta(days=LEAD_DAYS)
    windows = [
        TimeWindow.starting(first + timedelta(days=i * SAMPLE_INTERVAL_DAYS), NIGHTS)
        for i in range(SAMPLE_COUNT)
    ]
    logger.debug(
        "Generated %d price sample windows from %s to %s",
        len(windows), windows[0].start, windows[-1].end,
    )
    return windows
