"""Fleet-wide refresh campaigns, throttled and cancellable.

The coordinator is the only owner of the in-flight BatchRun. Its worker task
is the single writer; pollers get immutable BatchProgress snapshots. One
coordinator per process means one campaign per process.
"""

import asyncio
import contextlib
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Protocol

from src.core.db import find_stale_locations, list_locations
from src.core.errors import StateConflictError, ValidationError
from src.core.schemas import BatchProgress, BatchRun, BatchStatus, BatchStrategy, Location

logger = logging.getLogger(__name__)


class AnalysisRunner(Protocol):
    def run_full_analysis(self, location_id: str) -> object: ...


class BatchCoordinator:
    """Drives ``run_full_analysis`` across many locations with a delay between them.

    Each ``run_full_analysis`` call is synchronous and runs on the event loop, so
    a cancel or progress poll issued during a location is served once that
    location finishes. Cancellation takes effect at the delay that follows.

    Usage::

        coordinator = BatchCoordinator(orchestrator, conn, default_stale_days=30)
        batch_id = await coordinator.start(BatchStrategy.STALE_ONLY, delay_minutes=10)
        coordinator.progress()
        await coordinator.cancel()
    """

    def __init__(
        self,
        orchestrator: AnalysisRunner,
        conn: sqlite3.Connection,
        default_stale_days: int = 30,
    ) -> None:
        self._orchestrator = orchestrator
        self._conn = conn
        self._default_stale_days = default_stale_days
        self._run: BatchRun | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._run is not None and self._run.status is BatchStatus.RUNNING

    async def start(
        self,
        strategy: BatchStrategy | str,
        delay_minutes: int,
        stale_days: int | None = None,
    ) -> str:
        """Start a campaign in the background and return its ID immediately.

        Raises StateConflictError if a campaign is running and ValidationError
        for bad arguments or an empty candidate set. Nothing between the
        running check and claiming the slot awaits, so concurrent callers on
        the event loop cannot both get through.
        """
        if self.is_running:
            msg = f"Batch scraping is already in progress. Batch ID: {self._run.id}"  # type: ignore[union-attr]
            raise StateConflictError(msg)
        try:
            strategy = BatchStrategy(strategy)
        except ValueError:
            msg = f"Unknown batch strategy: {strategy}"
            raise ValidationError(msg) from None
        if delay_minutes < 0:
            msg = "delay_minutes must not be negative"
            raise ValidationError(msg)

        locations = self._candidates(strategy, stale_days)
        if not locations:
            logger.warning("No locations found for batch strategy: %s", strategy.value)
            msg = "No locations available for batch scraping"
            raise ValidationError(msg)

        run = BatchRun(
            strategy=strategy,
            total_locations=len(locations),
            delay_minutes=delay_minutes,
        )
        self._run = run
        logger.info(
            "Starting batch scraping: batch_id=%s, strategy=%s, total_locations=%d, delay_minutes=%d",
            run.id, strategy.value, len(locations), delay_minutes,
        )
        self._task = asyncio.create_task(self._process(run, locations), name=f"batch-{run.id}")
        self._task.add_done_callback(lambda _task: self._settle(run))
        return run.id

    def progress(self) -> BatchProgress:
        """Snapshot of the current (or last) campaign with an ETA."""
        run = self._run
        if run is None:
            return BatchProgress.not_started()

        now = datetime.now()
        processed = run.processed_locations
        estimated = None
        if processed > 0 and run.total_locations > 0:
            per_location = (now - run.started_at) / processed
            estimated = now + per_location * (run.total_locations - processed)
        percentage = processed * 100.0 / run.total_locations if run.total_locations else 0.0

        return BatchProgress(
            batch_id=run.id,
            status=run.status,
            total_locations=run.total_locations,
            completed_locations=run.completed_locations,
            failed_locations=run.failed_locations,
            current_location_id=run.current_location_id,
            started_at=run.started_at,
            estimated_completion=estimated,
            delay_minutes=run.delay_minutes,
            progress_percentage=percentage,
        )

    async def cancel(self) -> None:
        """Interrupt the running campaign; it ends FAILED."""
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        if self._run is not None:
            self._settle(self._run)

    async def wait(self) -> BatchProgress:
        """Wait for the current campaign to finish and return its final snapshot."""
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        return self.progress()

    def _candidates(self, strategy: BatchStrategy, stale_days: int | None) -> list[Location]:
        if strategy is BatchStrategy.ALL_LOCATIONS:
            logger.info("Fetching all locations")
            return list_locations(self._conn)
        days = stale_days if stale_days is not None else self._default_stale_days
        if days < 1:
            msg = "stale_days must be at least 1"
            raise ValidationError(msg)
        logger.info("Fetching stale locations (older than %d days)", days)
        return find_stale_locations(self._conn, datetime.now() - timedelta(days=days))

    @staticmethod
    def _settle(run: BatchRun) -> None:
        """Close out a run whose task ended without recording a final status.

        Happens when the task is cancelled before its first step runs.
        """
        if run.status is not BatchStatus.RUNNING:
            return
        logger.warning("Batch %s stopped before recording a final status", run.id)
        run.status = BatchStatus.FAILED
        run.finished_at = datetime.now()

    async def _process(self, run: BatchRun, locations: list[Location]) -> None:
        try:
            for index, location in enumerate(locations):
                run.current_location_id = location.id
                logger.info(
                    "Processing location %d/%d: %s (%s)",
                    index + 1, run.total_locations, location.name, location.id,
                )
                try:
                    self._orchestrator.run_full_analysis(location.id)
                except Exception:
                    logger.exception("Failed to process location %s (%s)", location.id, location.name)
                    run.failed_locations += 1
                else:
                    run.completed_locations += 1

                if index < len(locations) - 1:
                    logger.debug("Waiting %d minutes before next location", run.delay_minutes)
                    await asyncio.sleep(run.delay_minutes * 60)
        except asyncio.CancelledError:
            logger.warning(
                "Batch %s interrupted at location %s", run.id, run.current_location_id,
            )
            run.status = BatchStatus.FAILED
            run.finished_at = datetime.now()
            raise
        except Exception:
            logger.exception("Batch %s failed with unexpected error", run.id)
            run.status = BatchStatus.FAILED
            run.finished_at = datetime.now()
            return

        run.status = BatchStatus.COMPLETED
        run.current_location_id = None
        run.finished_at = datetime.now()
        logger.info(
            "Batch scraping completed: batch_id=%s, total=%d, completed=%d, failed=%d, duration=%s",
            run.id, run.total_locations, run.completed_locations, run.failed_locations,
            run.finished_at - run.started_at,
        )
