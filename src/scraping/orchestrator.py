"""Orchestrator: job creation, fan-out, retry, and timeout sweeping.

Announce sequence for every job (create and retry):
  1. Persist the job as PENDING
  2. Publish JobCreated to the worker fleet
  3a. Published  -> start() and persist IN_PROGRESS, unless a result already landed
  3b. Broker down -> fail() and persist FAILED, then re-raise TransportError

Steps 2 and 3 are not atomic. A crash in between leaves a PENDING job that was
announced; the result consumer tolerates that and the sweeper handles stuck
IN_PROGRESS jobs.
"""

import logging
import sqlite3
from datetime import date, datetime, timedelta
from typing import Protocol, assert_never

from src.core.db import (
    find_timed_out_jobs,
    get_job,
    get_location,
    insert_job,
    list_jobs,
    update_job,
    update_job_if_status,
)
from src.core.errors import NotFoundError, ScrapingError, TransportError
from src.core.schemas import JobKind, JobStatus, Location, Platform, TimeWindow, parse_job_kind, parse_platform
from src.scraping.events import JobCreatedEvent
from src.scraping.job import Job
from src.scraping.planner import default_window, sampling_schedule

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    def announce(self, event: JobCreatedEvent) -> None: ...


class ScrapingOrchestrator:
    """Owns the scraping job lifecycle on the coordinator side."""

    def __init__(self, conn: sqlite3.Connection, publisher: Publisher) -> None:
        self._conn = conn
        self._publisher = publisher

    # --- creation ---------------------------------------------------------

    def create_job(
        self,
        location_id: str,
        platform: Platform | str,
        kind: JobKind | str = JobKind.FULL_PROFILE,
        window: TimeWindow | None = None,
    ) -> Job:
        """Create, persist, and announce a job for an existing location.

        ``window`` defaults to the standard window for ``kind``. Raises
        ValidationError, NotFoundError, or TransportError (after the job has
        been recorded as FAILED).
        """
        platform = parse_platform(platform)
        kind = parse_job_kind(kind)
        location = self._require_location(location_id)
        _warn_if_unbounded(location)
        return self._create(location, platform, kind, window)

    def create_jobs_for_all_platforms(
        self,
        location_id: str,
        kind: JobKind | str = JobKind.FULL_PROFILE,
    ) -> list[Job]:
        """One job per platform. A failing platform is logged and skipped."""
        kind = parse_job_kind(kind)
        location = self._require_location(location_id)
        _warn_if_unbounded(location)
        return self._fan_out(location, kind)

    def schedule_price_sampling(self, location_id: str, today: date | None = None) -> list[Job]:
        """PRICE_SAMPLE jobs for every (sampling window, platform) pair."""
        location = self._require_location(location_id)
        _warn_if_unbounded(location)
        return self._sample(location, today)

    def run_full_analysis(self, location_id: str) -> list[Job]:
        """Deep profile on every platform, then the full price sampling schedule.

        Raises NotFoundError for an unknown location; individual job failures
        are logged and never stop the fan-out.
        """
        location = self._require_location(location_id)
        logger.info("Orchestrating full analysis for location %s (%s)", location.id, location.name)
        _warn_if_unbounded(location)
        jobs = self._fan_out(location, JobKind.FULL_PROFILE)
        jobs.extend(self._sample(location))
        logger.info("Full analysis for location %s: %d jobs announced", location_id, len(jobs))
        return jobs

    # --- lifecycle maintenance -------------------------------------------

    def retry(self, job_id: str) -> Job:
        """Reset a FAILED job to PENDING and announce it again with a fresh window."""
        logger.info("Retrying scraping job: %s", job_id)
        job = self.get_job(job_id).reset()
        update_job(self._conn, job)

        location = self._require_location(job.location_id)
        job = self._announce(job, location, default_window())
        logger.info("Successfully retried scraping job: %s", job_id)
        return job

    def sweep_timeouts(self, threshold_minutes: int) -> int:
        """Fail IN_PROGRESS jobs started more than ``threshold_minutes`` ago.

        Returns the number of jobs actually failed. A job whose result arrives
        between the scan and the write keeps that result.
        """
        threshold = datetime.now() - timedelta(minutes=threshold_minutes)
        timed_out = find_timed_out_jobs(self._conn, threshold)
        logger.info("Found %d timed-out jobs (threshold: %d minutes)", len(timed_out), threshold_minutes)

        failed = 0
        for job in timed_out:
            expired = job.fail(f"Job timed out after {threshold_minutes} minutes")
            if not update_job_if_status(self._conn, expired, JobStatus.IN_PROGRESS):
                logger.info("Job %s left IN_PROGRESS before it could be timed out", job.id)
                continue
            logger.warning("Marked job as timed out: %s", job.id)
            failed += 1
        return failed

    # --- queries ----------------------------------------------------------

    def get_job(self, job_id: str) -> Job:
        job = get_job(self._conn, job_id)
        if job is None:
            raise NotFoundError("ScrapingJob", job_id)
        return job

    def list_jobs(
        self,
        location_id: str | None = None,
        status: JobStatus | None = None,
    ) -> list[Job]:
        return list_jobs(self._conn, location_id=location_id, status=status)

    # --- internals --------------------------------------------------------

    def _create(
        self,
        location: Location,
        platform: Platform,
        kind: JobKind,
        window: TimeWindow | None = None,
    ) -> Job:
        if window is None:
            window = self._window_for(kind)

        logger.info(
            "Creating %s job for location %s (%s): platform=%s, window=%s..%s",
            kind.value, location.id, location.name, platform.value, window.start, window.end,
        )
        job = Job(location_id=location.id, platform=platform, kind=kind)
        insert_job(self._conn, job)
        job = self._announce(job, location, window)
        logger.info("Created and published %s job: %s", kind.value, job.id)
        return job

    def _fan_out(self, location: Location, kind: JobKind) -> list[Job]:
        logger.info("Creating %s jobs for all platforms for location %s", kind.value, location.id)
        jobs = [
            job
            for platform in Platform
            if (job := self._try_create(location, platform, kind)) is not None
        ]
        logger.info("Created %d %s jobs for location %s", len(jobs), kind.value, location.id)
        return jobs

    def _sample(self, location: Location, today: date | None = None) -> list[Job]:
        windows = sampling_schedule(today)
        jobs: list[Job] = []
        for window in windows:
            for platform in Platform:
                job = self._try_create(location, platform, JobKind.PRICE_SAMPLE, window)
                if job is not None:
                    jobs.append(job)
        logger.info(
            "Scheduled %d/%d price sample jobs for location %s",
            len(jobs), len(windows) * len(Platform), location.id,
        )
        return jobs

    def _announce(self, job: Job, location: Location, window: TimeWindow) -> Job:
        event = JobCreatedEvent.for_job(job.id, job.kind, job.platform, location, window)
        if location.bounding_box is None:
            logger.debug("Announcing job %s without a bounding box", job.id)
        try:
            self._publisher.announce(event)
        except TransportError as exc:
            logger.error("Failed to publish scraping job %s: %s", job.id, exc)
            update_job(self._conn, job.fail(f"Failed to publish job to queue: {exc}"))
            raise
        started = job.start()
        if update_job_if_status(self._conn, started, JobStatus.PENDING):
            return started
        # a worker result was ingested in between; it wins
        logger.info("Job %s already left PENDING; keeping its stored state", job.id)
        return self.get_job(job.id)

    def _try_create(
        self,
        location: Location,
        platform: Platform,
        kind: JobKind,
        window: TimeWindow | None = None,
    ) -> Job | None:
        try:
            return self._create(location, platform, kind, window)
        except (ScrapingError, sqlite3.Error) as exc:
            logger.error(
                "Failed to create %s job for location %s platform %s: %s",
                kind.value, location.id, platform.value, exc,
            )
            return None

    def _require_location(self, location_id: str) -> Location:
        location = get_location(self._conn, location_id)
        if location is None:
            raise NotFoundError("Location", location_id)
        return location

    @staticmethod
    def _window_for(kind: JobKind) -> TimeWindow:
        match kind:
            case JobKind.FULL_PROFILE:
                return default_window()
            case JobKind.PRICE_SAMPLE:
                return sampling_schedule()[0]
            case _:
                assert_never(kind)


def _warn_if_unbounded(location: Location) -> None:
    if location.bounding_box is None:
        logger.warning("Location %s has no bounding box; scraping may be less accurate", location.id)
