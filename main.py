"""CLI entry point for the scraping coordinator."""

import argparse
import asyncio
import contextlib
import logging
import sqlite3
import sys
import threading

from kombu import Connection

from src.analysis.cache import AnalysisCache
from src.core.config import Settings
from src.core.db import init_db, insert_location
from src.core.errors import ScrapingError
from src.core.schemas import BatchStatus, BatchStrategy, BoundingBox, JobKind, JobStatus, Location, Platform
from src.messaging.listener import ResultListener
from src.messaging.publisher import JobPublisher
from src.messaging.topology import Topology
from src.scraping.batch import BatchCoordinator
from src.scraping.consumer import ScrapingResultConsumer
from src.scraping.job import Job
from src.scraping.notifications import DataUpdateBus
from src.scraping.orchestrator import ScrapingOrchestrator
from src.scraping.scheduler import run_timeout_sweeper

logger = logging.getLogger(__name__)


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        default="config/settings.yaml",
        help="Path to settings YAML file (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Scraping coordinator - dispatch scraping jobs and ingest their results",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- serve ---
    serve_parser = subparsers.add_parser(
        "serve",
        help="Consume worker results and sweep timed-out jobs until interrupted",
    )
    _add_common(serve_parser)

    # --- add-location ---
    location_parser = subparsers.add_parser("add-location", help="Register a location to scrape")
    _add_common(location_parser)
    location_parser.add_argument("--name", required=True, help="Display name of the location")
    location_parser.add_argument("--lat", type=float, required=True, help="Latitude")
    location_parser.add_argument("--lng", type=float, required=True, help="Longitude")
    location_parser.add_argument(
        "--bbox",
        type=float,
        nargs=4,
        metavar=("SW_LNG", "SW_LAT", "NE_LNG", "NE_LAT"),
        help="Optional bounding box passed to the scrapers",
    )

    # --- create-job ---
    create_parser = subparsers.add_parser("create-job", help="Create and announce one scraping job")
    _add_common(create_parser)
    create_parser.add_argument("--location", required=True, help="Location ID")
    create_parser.add_argument(
        "--platform",
        choices=[p.value for p in Platform] + ["ALL"],
        default="ALL",
        help="Platform to scrape, or ALL for one job per platform (default: ALL)",
    )
    create_parser.add_argument(
        "--kind",
        choices=[k.value for k in JobKind],
        default=JobKind.FULL_PROFILE.value,
        help="Job kind (default: FULL_PROFILE)",
    )

    # --- analyze ---
    analyze_parser = subparsers.add_parser(
        "analyze",
        help="Full profile on every platform plus the 12-window price sampling schedule",
    )
    _add_common(analyze_parser)
    analyze_parser.add_argument("--location", required=True, help="Location ID")

    # --- jobs ---
    jobs_parser = subparsers.add_parser("jobs", help="List scraping jobs")
    _add_common(jobs_parser)
    jobs_parser.add_argument("--location", help="Only jobs for this location ID")
    jobs_parser.add_argument("--status", choices=[s.value for s in JobStatus], help="Only jobs in this status")
    jobs_parser.add_argument("--id", dest="job_id", help="Show a single job")

    # --- retry ---
    retry_parser = subparsers.add_parser("retry", help="Retry a failed scraping job")
    _add_common(retry_parser)
    retry_parser.add_argument("--job", required=True, help="Job ID")

    # --- sweep ---
    sweep_parser = subparsers.add_parser("sweep", help="Fail jobs stuck in progress")
    _add_common(sweep_parser)
    sweep_parser.add_argument(
        "--threshold",
        type=int,
        help="Minutes after which an in-progress job times out (default: from config)",
    )

    # --- batch ---
    batch_parser = subparsers.add_parser("batch", help="Run a throttled refresh over many locations")
    _add_common(batch_parser)
    batch_parser.add_argument(
        "--strategy",
        choices=[s.value for s in BatchStrategy],
        default=BatchStrategy.STALE_ONLY.value,
        help="Which locations to refresh (default: STALE_ONLY)",
    )
    batch_parser.add_argument("--delay", type=int, help="Minutes between locations (default: from config)")
    batch_parser.add_argument("--stale-days", type=int, help="Staleness threshold in days (default: from config)")

    return parser.parse_args(argv)


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def format_job(job: Job) -> str:
    line = f"{job.id}  {job.platform.value:<8} {job.kind.value:<13} {job.status.value:<11}"
    if job.properties_found is not None:
        line += f"  properties={job.properties_found}"
    if job.error_message:
        line += f"  error={job.error_message!r}"
    return line


def cmd_add_location(args: argparse.Namespace, conn: sqlite3.Connection) -> None:
    bbox = None
    if args.bbox:
        sw_lng, sw_lat, ne_lng, ne_lat = args.bbox
        bbox = BoundingBox(sw_lng=sw_lng, sw_lat=sw_lat, ne_lng=ne_lng, ne_lat=ne_lat)
    location = Location(name=args.name, latitude=args.lat, longitude=args.lng, bounding_box=bbox)
    insert_location(conn, location)
    print(f"Location '{location.name}' registered: {location.id}")


def cmd_jobs(args: argparse.Namespace, orchestrator: ScrapingOrchestrator) -> None:
    if args.job_id:
        job = orchestrator.get_job(args.job_id)
        print(format_job(job))
        print(f"  started={job.started_at} completed={job.completed_at} took={job.execution_time()}")
        return
    status = JobStatus(args.status) if args.status else None
    jobs = orchestrator.list_jobs(location_id=args.location, status=status)
    for job in jobs:
        print(format_job(job))
    print(f"{len(jobs)} jobs")


def run_command(args: argparse.Namespace, settings: Settings) -> None:
    """Handle every subcommand that talks to the broker but does not serve."""
    conn = init_db(settings.database.path)
    try:
        if args.command == "add-location":
            cmd_add_location(args, conn)
            return

        topology = Topology(settings.broker)
        with Connection(settings.broker.url) as broker:
            orchestrator = ScrapingOrchestrator(conn, JobPublisher(broker, topology))

            if args.command == "create-job":
                if args.platform == "ALL":
                    jobs = orchestrator.create_jobs_for_all_platforms(args.location, args.kind)
                else:
                    jobs = [orchestrator.create_job(args.location, args.platform, args.kind)]
                for job in jobs:
                    print(format_job(job))
            elif args.command == "analyze":
                jobs = orchestrator.run_full_analysis(args.location)
                print(f"{len(jobs)} jobs announced for location {args.location}")
            elif args.command == "jobs":
                cmd_jobs(args, orchestrator)
            elif args.command == "retry":
                print(format_job(orchestrator.retry(args.job)))
            elif args.command == "sweep":
                threshold = args.threshold or settings.scraping.timeout_minutes
                print(f"{orchestrator.sweep_timeouts(threshold)} jobs timed out")
            elif args.command == "batch":
                asyncio.run(run_batch(args, settings, orchestrator, conn))
    finally:
        conn.close()


async def run_batch(
    args: argparse.Namespace,
    settings: Settings,
    orchestrator: ScrapingOrchestrator,
    conn: sqlite3.Connection,
) -> None:
    """Run one campaign in the foreground, logging progress until it ends."""
    coordinator = BatchCoordinator(orchestrator, conn, settings.batch.stale_threshold_days)
    delay = args.delay if args.delay is not None else settings.batch.delay_minutes
    batch_id = await coordinator.start(args.strategy, delay, args.stale_days)
    print(f"Batch {batch_id} started")

    try:
        while coordinator.is_running:
            await asyncio.sleep(settings.batch.progress_interval_seconds)
            p = coordinator.progress()
            logger.info(
                "Batch %s: %d/%d done (%d failed), %.1f%%, ETA %s",
                p.batch_id, p.completed_locations + p.failed_locations, p.total_locations,
                p.failed_locations, p.progress_percentage, p.estimated_completion,
            )
    finally:
        await coordinator.cancel()

    final = await coordinator.wait()
    print(
        f"Batch {final.batch_id} {final.status.value}: {final.completed_locations} completed, "
        f"{final.failed_locations} failed of {final.total_locations}"
    )
    if final.status is not BatchStatus.COMPLETED:
        sys.exit(1)


async def serve(settings: Settings) -> None:
    """Consume results in a worker thread and sweep timeouts on the event loop.

    The listener thread gets its own SQLite and broker connections; neither is
    shared across threads.
    """
    topology = Topology(settings.broker)
    cache = AnalysisCache(settings.cache.ttl_seconds)
    notifications = DataUpdateBus()
    notifications.subscribe(cache.on_data_updated)

    listener_ready = threading.Event()
    listener: ResultListener | None = None

    def consume() -> None:
        nonlocal listener
        db = init_db(settings.database.path)
        try:
            with Connection(settings.broker.url) as broker:
                topology.declare(broker)
                listener = ResultListener(broker, topology, ScrapingResultConsumer(db, notifications))
                listener_ready.set()
                listener.run()
        finally:
            listener_ready.set()
            db.close()

    conn = init_db(settings.database.path)
    with Connection(settings.broker.url) as broker:
        orchestrator = ScrapingOrchestrator(conn, JobPublisher(broker, topology))
        consumer_future = asyncio.get_running_loop().run_in_executor(None, consume)
        sweeper = asyncio.create_task(
            run_timeout_sweeper(
                orchestrator,
                settings.scraping.timeout_minutes,
                settings.scraping.sweep_interval_minutes,
            )
        )
        logger.info("Serving results from '%s'", settings.broker.result_queue)
        try:
            await consumer_future
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            listener_ready.wait()
            if listener is not None:
                listener.should_stop = True
            conn.close()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    setup_logging(args.verbose)

    try:
        settings = Settings.from_yaml(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        if args.command == "serve":
            asyncio.run(serve(settings))
        else:
            run_command(args, settings)
    except ScrapingError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    main()
