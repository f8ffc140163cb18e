"""SQLite database layer for locations, scraping jobs, and scraped listing data."""

import sqlite3
from datetime import datetime
from pathlib import Path

from src.core.schemas import BoundingBox, JobStatus, Location, Platform
from src.scraping.events import MonthlyAvailability, ScrapedPriceSample, ScrapedProperty
from src.scraping.job import Completed, Failed, InProgress, Job, Pending

_LOCATIONS_TABLE = """
CREATE TABLE IF NOT EXISTS locations (
    id              TEXT PRIMARY KEY,
    name            TEXT NOT NULL,
    latitude        REAL NOT NULL,
    longitude       REAL NOT NULL,
    bbox_sw_lng     REAL,
    bbox_sw_lat     REAL,
    bbox_ne_lng     REAL,
    bbox_ne_lat     REAL,
    last_scraped_at TEXT,
    created_at      TEXT NOT NULL
);
"""

_JOBS_TABLE = """
CREATE TABLE IF NOT EXISTS scraping_jobs (
    id               TEXT PRIMARY KEY,
    location_id      TEXT NOT NULL,
    platform         TEXT NOT NULL,
    job_kind         TEXT NOT NULL,
    status           TEXT NOT NULL,
    started_at       TEXT,
    completed_at     TEXT,
    properties_found INTEGER,
    error_message    TEXT,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL
);
"""

_JOBS_INDEX = """
CREATE INDEX IF NOT EXISTS idx_scraping_jobs_status_started
    ON scraping_jobs (status, started_at);
"""

_PROPERTIES_TABLE = """
CREATE TABLE IF NOT EXISTS properties (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    location_id          TEXT    NOT NULL,
    platform             TEXT    NOT NULL,
    platform_property_id TEXT    NOT NULL,
    latitude             REAL    NOT NULL,
    longitude            REAL    NOT NULL,
    title                TEXT,
    property_type        TEXT,
    price                REAL,
    currency             TEXT,
    bedrooms             INTEGER,
    bathrooms            INTEGER,
    guests               INTEGER,
    rating               REAL,
    review_count         INTEGER,
    is_superhost         INTEGER,
    image_url            TEXT,
    property_url         TEXT,
    created_at           TEXT    NOT NULL,
    updated_at           TEXT    NOT NULL,
    UNIQUE(platform, platform_property_id)
);
"""

_AVAILABILITY_TABLE = """
CREATE TABLE IF NOT EXISTS property_availability (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    property_id         INTEGER NOT NULL REFERENCES properties(id) ON DELETE CASCADE,
    month               TEXT    NOT NULL,
    total_days          INTEGER NOT NULL,
    available_days      INTEGER NOT NULL,
    booked_days         INTEGER NOT NULL,
    blocked_days        INTEGER NOT NULL,
    estimated_occupancy REAL    NOT NULL,
    scraped_at          TEXT    NOT NULL,
    UNIQUE(property_id, month, scraped_at)
);
"""

_PRICE_SAMPLES_TABLE = """
CREATE TABLE IF NOT EXISTS price_samples (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    property_id       INTEGER NOT NULL REFERENCES properties(id) ON DELETE CASCADE,
    price             REAL    NOT NULL CHECK (price >= 0),
    currency          TEXT    NOT NULL DEFAULT 'EUR',
    search_date_start TEXT    NOT NULL,
    search_date_end   TEXT    NOT NULL,
    number_of_nights  INTEGER NOT NULL CHECK (number_of_nights > 0),
    sampled_at        TEXT    NOT NULL,
    UNIQUE(property_id, search_date_start, search_date_end, sampled_at)
);
"""


def init_db(path: str | Path) -> sqlite3.Connection:
    """Create the database and tables, returning a connection."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    for ddl in (
        _LOCATIONS_TABLE,
        _JOBS_TABLE,
        _JOBS_INDEX,
        _PROPERTIES_TABLE,
        _AVAILABILITY_TABLE,
        _PRICE_SAMPLES_TABLE,
    ):
        conn.execute(ddl)
    conn.commit()
    return conn


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value is not None else None


# ---------------------------------------------------------------------------
# Locations
# ---------------------------------------------------------------------------


def insert_location(conn: sqlite3.Connection, location: Location) -> None:
    bbox = location.bounding_box
    conn.execute(
        """
        INSERT INTO locations
            (id, name, latitude, longitude,
             bbox_sw_lng, bbox_sw_lat, bbox_ne_lng, bbox_ne_lat,
             last_scraped_at, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            location.id,
            location.name,
            location.latitude,
            location.longitude,
            bbox.sw_lng if bbox else None,
            bbox.sw_lat if bbox else None,
            bbox.ne_lng if bbox else None,
            bbox.ne_lat if bbox else None,
            _iso(location.last_scraped_at),
            location.created_at.isoformat(),
        ),
    )
    conn.commit()


def _row_to_location(row: sqlite3.Row) -> Location:
    bbox = None
    if row["bbox_sw_lng"] is not None:
        bbox = BoundingBox(
            sw_lng=row["bbox_sw_lng"],
            sw_lat=row["bbox_sw_lat"],
            ne_lng=row["bbox_ne_lng"],
            ne_lat=row["bbox_ne_lat"],
        )
    return Location(
        id=row["id"],
        name=row["name"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        bounding_box=bbox,
        last_scraped_at=_parse(row["last_scraped_at"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def get_location(conn: sqlite3.Connection, location_id: str) -> Location | None:
    row = conn.execute("SELECT * FROM locations WHERE id = ?", (location_id,)).fetchone()
    return _row_to_location(row) if row is not None else None


def list_locations(conn: sqlite3.Connection) -> list[Location]:
    rows = conn.execute("SELECT * FROM locations ORDER BY created_at, id").fetchall()
    return [_row_to_location(r) for r in rows]


def find_stale_locations(conn: sqlite3.Connection, threshold: datetime) -> list[Location]:
    """Locations never scraped, or last scraped before ``threshold``; oldest first."""
    rows = conn.execute(
        """
        SELECT * FROM locations
        WHERE last_scraped_at IS NULL OR last_scraped_at < ?
        ORDER BY last_scraped_at IS NOT NULL, last_scraped_at, created_at
        """,
        (threshold.isoformat(),),
    ).fetchall()
    return [_row_to_location(r) for r in rows]


def mark_location_scraped(conn: sqlite3.Connection, location_id: str, at: datetime) -> None:
    conn.execute(
        "UPDATE locations SET last_scraped_at = ? WHERE id = ?",
        (at.isoformat(), location_id),
    )
    conn.commit()


# ---------------------------------------------------------------------------
# Scraping jobs
# ---------------------------------------------------------------------------


def _job_params(job: Job) -> dict[str, object]:
    return {
        "id": job.id,
        "location_id": job.location_id,
        "platform": job.platform.value,
        "job_kind": job.kind.value,
        "status": job.status.value,
        "started_at": _iso(job.started_at),
        "completed_at": _iso(job.completed_at),
        "properties_found": job.properties_found,
        "error_message": job.error_message,
        "created_at": job.created_at.isoformat(),
        "updated_at": datetime.now().isoformat(),
    }


def insert_job(conn: sqlite3.Connection, job: Job) -> None:
    conn.execute(
        """
        INSERT INTO scraping_jobs
            (id, location_id, platform, job_kind, status, started_at, completed_at,
             properties_found, error_message, created_at, updated_at)
        VALUES
            (:id, :location_id, :platform, :job_kind, :status, :started_at, :completed_at,
             :properties_found, :error_message, :created_at, :updated_at)
        """,
        _job_params(job),
    )
    conn.commit()


def update_job(conn: sqlite3.Connection, job: Job) -> None:
    """Persist the job's lifecycle fields. The job must already exist."""
    conn.execute(
        """
        UPDATE scraping_jobs SET
            status = :status,
            started_at = :started_at,
            completed_at = :completed_at,
            properties_found = :properties_found,
            error_message = :error_message,
            updated_at = :updated_at
        WHERE id = :id
        """,
        _job_params(job),
    )
    conn.commit()


def update_job_if_status(conn: sqlite3.Connection, job: Job, expected: JobStatus) -> bool:
    """Persist ``job`` only while the stored row still has status ``expected``.

    Returns False when another writer moved the job first; nothing is written then.
    """
    params = _job_params(job)
    params["expected"] = expected.value
    cursor = conn.execute(
        """
        UPDATE scraping_jobs SET
            status = :status,
            started_at = :started_at,
            completed_at = :completed_at,
            properties_found = :properties_found,
            error_message = :error_message,
            updated_at = :updated_at
        WHERE id = :id AND status = :expected
        """,
        params,
    )
    conn.commit()
    return cursor.rowcount == 1


def _row_to_job(row: sqlite3.Row) -> Job:
    status = JobStatus(row["status"])
    started_at = _parse(row["started_at"])
    completed_at = _parse(row["completed_at"])
    state: Pending | InProgress | Completed | Failed
    if status is JobStatus.PENDING:
        state = Pending()
    elif status is JobStatus.IN_PROGRESS:
        state = InProgress(started_at=started_at)
    elif status is JobStatus.COMPLETED:
        state = Completed(
            started_at=started_at,
            completed_at=completed_at,
            properties_found=row["properties_found"],
        )
    else:
        state = Failed(
            started_at=started_at,
            completed_at=completed_at,
            error_message=row["error_message"] or "",
        )
    return Job(
        id=row["id"],
        location_id=row["location_id"],
        platform=row["platform"],
        kind=row["job_kind"],
        state=state,
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def get_job(conn: sqlite3.Connection, job_id: str) -> Job | None:
    row = conn.execute("SELECT * FROM scraping_jobs WHERE id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row is not None else None


def list_jobs(
    conn: sqlite3.Connection,
    location_id: str | None = None,
    status: JobStatus | None = None,
) -> list[Job]:
    """Return jobs, newest first, optionally filtered by location and/or status."""
    clauses: list[str] = []
    params: list[str] = []
    if location_id is not None:
        clauses.append("location_id = ?")
        params.append(location_id)
    if status is not None:
        clauses.append("status = ?")
        params.append(status.value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"SELECT * FROM scraping_jobs {where} ORDER BY created_at DESC, id",  # noqa: S608
        params,
    ).fetchall()
    return [_row_to_job(r) for r in rows]


def find_timed_out_jobs(conn: sqlite3.Connection, threshold: datetime) -> list[Job]:
    """In-progress jobs that started before ``threshold``."""
    rows = conn.execute(
        """
        SELECT * FROM scraping_jobs
        WHERE status = ? AND started_at IS NOT NULL AND started_at < ?
        ORDER BY started_at
        """,
        (JobStatus.IN_PROGRESS.value, threshold.isoformat()),
    ).fetchall()
    return [_row_to_job(r) for r in rows]


# ---------------------------------------------------------------------------
# Scraped listing data
# ---------------------------------------------------------------------------


def upsert_property(
    conn: sqlite3.Connection,
    location_id: str,
    record: ScrapedProperty,
    platform: Platform,
) -> int:
    """Insert or update a listing keyed by (platform, platform_property_id).

    Does not commit; callers group it with the listing's sub-records.
    Returns the property row ID.
    """
    now = datetime.now().isoformat()
    params = {
        "location_id": location_id,
        "platform": platform.value,
        "platform_property_id": record.platform_id,
        "latitude": record.latitude,
        "longitude": record.longitude,
        "title": record.title,
        "property_type": record.property_type,
        "price": record.price,
        "currency": record.currency,
        "bedrooms": record.bedrooms,
        "bathrooms": record.bathrooms,
        "guests": record.guests,
        "rating": record.rating,
        "review_count": record.review_count,
        "is_superhost": None if record.is_superhost is None else int(record.is_superhost),
        "image_url": record.image_url,
        "property_url": record.property_url,
        "now": now,
    }
    existing = conn.execute(
        "SELECT id FROM properties WHERE platform = ? AND platform_property_id = ?",
        (platform.value, record.platform_id),
    ).fetchone()
    if existing is not None:
        params["id"] = existing["id"]
        conn.execute(
            """
            UPDATE properties SET
                location_id = :location_id,
                latitude = :latitude,
                longitude = :longitude,
                title = :title,
                property_type = :property_type,
                price = :price,
                currency = :currency,
                bedrooms = :bedrooms,
                bathrooms = :bathrooms,
                guests = :guests,
                rating = :rating,
                review_count = :review_count,
                is_superhost = :is_superhost,
                image_url = :image_url,
                property_url = :property_url,
                updated_at = :now
            WHERE id = :id
            """,
            params,
        )
        return int(existing["id"])

    cursor = conn.execute(
        """
        INSERT INTO properties
            (location_id, platform, platform_property_id, latitude, longitude,
             title, property_type, price, currency, bedrooms, bathrooms, guests,
             rating, review_count, is_superhost, image_url, property_url,
             created_at, updated_at)
        VALUES
            (:location_id, :platform, :platform_property_id, :latitude, :longitude,
             :title, :property_type, :price, :currency, :bedrooms, :bathrooms, :guests,
             :rating, :review_count, :is_superhost, :image_url, :property_url,
             :now, :now)
        """,
        params,
    )
    return cursor.lastrowid or 0


def insert_availability(
    conn: sqlite3.Connection,
    property_id: int,
    months: list[MonthlyAvailability],
    scraped_at: datetime,
) -> int:
    """Append monthly availability rows for one scrape. Does not commit.

    Rows already stored for the same scrape (a redelivered message) are skipped.
    Returns the number of rows inserted.
    """
    inserted = 0
    for m in months:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO property_availability
                (property_id, month, total_days, available_days, booked_days,
                 blocked_days, estimated_occupancy, scraped_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                property_id,
                m.month,
                m.total_days,
                m.available_days,
                m.booked_days,
                m.blocked_days,
                m.occupancy,
                scraped_at.isoformat(),
            ),
        )
        inserted += cursor.rowcount
    return inserted


def insert_price_sample(
    conn: sqlite3.Connection,
    property_id: int,
    sample: ScrapedPriceSample,
) -> bool:
    """Append one price sample. Does not commit. Returns False for a replayed sample."""
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO price_samples
            (property_id, price, currency, search_date_start, search_date_end,
             number_of_nights, sampled_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            property_id,
            sample.price,
            sample.currency,
            sample.search_date_start.isoformat(),
            sample.search_date_end.isoformat(),
            sample.number_of_nights,
            sample.sampled_at.isoformat(),
        ),
    )
    return cursor.rowcount > 0


def save_scraped_property(
    conn: sqlite3.Connection,
    location_id: str,
    record: ScrapedProperty,
    scraped_at: datetime,
) -> int:
    """Upsert a listing and append its calendar and price sample atomically.

    Raises ValueError for an unknown platform and sqlite3.Error on write
    failures; either way nothing from this record is kept.
    """
    platform = Platform(record.platform)
    with conn:
        property_id = upsert_property(conn, location_id, record, platform)
        if record.availability:
            insert_availability(conn, property_id, record.availability, scraped_at)
        if record.price_sample is not None:
            insert_price_sample(conn, property_id, record.price_sample)
    return property_id


def count_properties(conn: sqlite3.Connection, location_id: str | None = None) -> int:
    if location_id is None:
        return conn.execute("SELECT COUNT(*) FROM properties").fetchone()[0]
    return conn.execute(
        "SELECT COUNT(*) FROM properties WHERE location_id = ?", (location_id,)
    ).fetchone()[0]


def get_property(
    conn: sqlite3.Connection,
    platform: Platform,
    platform_property_id: str,
) -> sqlite3.Row | None:
    return conn.execute(
        "SELECT * FROM properties WHERE platform = ? AND platform_property_id = ?",
        (platform.value, platform_property_id),
    ).fetchone()


def list_availability(conn: sqlite3.Connection, property_id: int) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM property_availability WHERE property_id = ? ORDER BY month, scraped_at",
        (property_id,),
    ).fetchall()


def list_price_samples(conn: sqlite3.Connection, property_id: int) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM price_samples WHERE property_id = ? ORDER BY search_date_start, sampled_at",
        (property_id,),
    ).fetchall()
