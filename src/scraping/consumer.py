"""Result ingestion: applies worker completion/failure messages to the store.

Delivery is at-least-once, so every handler here is safe to run again for the
same message:
  - job status/count are overwritten with the reported values
  - listings are upserted on (platform, platform_property_id)
  - availability and price rows are keyed on their scrape timestamp, so a
    replay inserts nothing while a new scrape appends
"""

import logging
import sqlite3
from typing import Any

import pydantic

from src.core.db import get_job, mark_location_scraped, save_scraped_property, update_job
from src.core.errors import NotFoundError
from src.scraping.events import JobCompletedEvent, JobFailedEvent, ScrapedProperty
from src.scraping.job import Job
from src.scraping.notifications import DataUpdateBus, DataUpdated

logger = logging.getLogger(__name__)


class ScrapingResultConsumer:
    """Transport-independent handlers for result messages."""

    def __init__(self, conn: sqlite3.Connection, notifications: DataUpdateBus | None = None) -> None:
        self._conn = conn
        self._notifications = notifications or DataUpdateBus()

    def on_completed(self, event: JobCompletedEvent) -> int:
        """Mark the job completed and merge the returned listings.

        Raises NotFoundError if the job is unknown, so the transport can
        dead-letter the message. Returns the number of listings saved.
        """
        logger.info(
            "Received job completed event: job_id=%s, properties_found=%d",
            event.job_id, event.properties_found,
        )
        job = self._load(event.job_id)
        # The worker's count is recorded as-is, even if some records fail below.
        job = job.record_completion(event.properties_found, event.occurred_at)
        update_job(self._conn, job)

        saved = 0
        for index, raw in enumerate(event.properties):
            try:
                record = ScrapedProperty.model_validate(raw)
                save_scraped_property(self._conn, job.location_id, record, event.occurred_at)
            except (pydantic.ValidationError, ValueError, sqlite3.Error) as exc:
                logger.error(
                    "Skipping property #%d (%s) for job %s: %s",
                    index, _describe(raw), job.id, exc,
                )
                continue
            saved += 1

        mark_location_scraped(self._conn, job.location_id, event.occurred_at)
        logger.info("Saved %d/%d properties for job %s", saved, len(event.properties), job.id)

        self._notifications.publish(DataUpdated(location_id=job.location_id, properties_count=saved))
        return saved

    def on_failed(self, event: JobFailedEvent) -> Job:
        """Mark the job failed with the worker's error message."""
        logger.warning(
            "Received job failed event: job_id=%s, error=%s",
            event.job_id, event.error_message,
        )
        job = self._load(event.job_id)
        job = job.record_failure(event.error_message, event.occurred_at)
        update_job(self._conn, job)
        logger.info("Marked scraping job as failed: job_id=%s", job.id)
        return job

    def _load(self, job_id: str) -> Job:
        job = get_job(self._conn, job_id)
        if job is None:
            raise NotFoundError("ScrapingJob", job_id)
        return job


def _describe(raw: Any) -> str:
    if isinstance(raw, dict):
        return f"{raw.get('platform')}/{raw.get('platformId', raw.get('platform_id'))}"
    return type(raw).__name__
