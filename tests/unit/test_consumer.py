"""Tests for result ingestion: job outcomes, listing merge, redelivery safety."""

import sqlite3
from datetime import date, datetime
from unittest.mock import MagicMock, patch

import pytest

from src.core import db as db_module
from src.core.db import (
    count_properties,
    get_job,
    get_location,
    get_property,
    init_db,
    insert_job,
    insert_location,
    list_availability,
    list_price_samples,
    update_job,
)
from src.core.errors import NotFoundError
from src.core.schemas import JobStatus, Location, Platform
from src.scraping.consumer import ScrapingResultConsumer
from src.scraping.events import JobCompletedEvent, JobFailedEvent
from src.scraping.job import Job
from src.scraping.notifications import DataUpdateBus, DataUpdated

SCRAPED_AT = datetime(2026, 10, 1, 9, 30)


def _record(platform_id: str, platform: str = "AIRBNB", **kw: object) -> dict[str, object]:
    record: dict[str, object] = {
        "platformId": platform_id,
        "platform": platform,
        "latitude": 38.71,
        "longitude": -9.13,
        "title": f"Listing {platform_id}",
    }
    record.update(kw)
    return record


def _completed(job_id: str, records: list[dict[str, object]], found: int | None = None,
               at: datetime = SCRAPED_AT) -> JobCompletedEvent:
    return JobCompletedEvent.model_validate(
        {
            "jobId": job_id,
            "propertiesFound": len(records) if found is None else found,
            "properties": records,
            "occurredAt": at.isoformat(),
        }
    )


@pytest.fixture()
def db(tmp_path):  # type: ignore[no-untyped-def]
    return init_db(tmp_path / "test.db")


@pytest.fixture()
def location(db):  # type: ignore[no-untyped-def]
    loc = Location(name="Lisbon", latitude=38.72, longitude=-9.14)
    insert_location(db, loc)
    return loc


@pytest.fixture()
def job(db, location):  # type: ignore[no-untyped-def]
    j = Job(location_id=location.id, platform=Platform.AIRBNB).start()
    insert_job(db, j)
    return j


@pytest.fixture()
def bus() -> DataUpdateBus:
    return DataUpdateBus()


@pytest.fixture()
def consumer(db, bus):  # type: ignore[no-untyped-def]
    return ScrapingResultConsumer(db, bus)


# ---------------------------------------------------------------------------
# Completed
# ---------------------------------------------------------------------------


class TestOnCompleted:
    def test_marks_job_completed(self, db, consumer, job) -> None:  # type: ignore[no-untyped-def]
        saved = consumer.on_completed(_completed(job.id, [_record("A1"), _record("A2")]))

        stored = get_job(db, job.id)
        assert saved == 2
        assert stored.status is JobStatus.COMPLETED
        assert stored.properties_found == 2
        assert stored.completed_at == SCRAPED_AT
        assert stored.started_at == job.started_at
        assert count_properties(db, job.location_id) == 2

    def test_bumps_location_last_scraped(self, db, consumer, job) -> None:  # type: ignore[no-untyped-def]
        consumer.on_completed(_completed(job.id, []))
        assert get_location(db, job.location_id).last_scraped_at == SCRAPED_AT

    def test_unknown_job_raises(self, db, consumer) -> None:  # type: ignore[no-untyped-def]
        with pytest.raises(NotFoundError, match="ScrapingJob not found: missing"):
            consumer.on_completed(_completed("missing", [_record("A1")]))
        assert count_properties(db) == 0

    def test_bad_record_skipped_count_kept(self, db, consumer, job) -> None:  # type: ignore[no-untyped-def]
        records = [_record("A1"), _record("B1", platform="EXPEDIA"), _record("A2")]

        saved = consumer.on_completed(_completed(job.id, records, found=3))

        assert saved == 2
        assert count_properties(db) == 2
        assert get_job(db, job.id).properties_found == 3

    def test_invalid_record_skipped_others_saved(self, db, consumer, job) -> None:  # type: ignore[no-untyped-def]
        bad_month = [{"month": "2026-13", "totalDays": 30, "availableDays": 0, "bookedDays": 0, "blockedDays": 0}]
        records = [_record("A1"), _record("B1", availability=bad_month), _record("A2")]

        saved = consumer.on_completed(_completed(job.id, records, found=3))

        stored = get_job(db, job.id)
        assert saved == 2
        assert stored.status is JobStatus.COMPLETED
        assert stored.properties_found == 3
        assert get_property(db, Platform.AIRBNB, "B1") is None
        assert count_properties(db) == 2

    def test_record_without_coordinates_skipped(self, db, consumer, job) -> None:  # type: ignore[no-untyped-def]
        records = [{"platformId": "A9", "platform": "AIRBNB"}, _record("A1")]
        assert consumer.on_completed(_completed(job.id, records)) == 1
        assert get_job(db, job.id).properties_found == 2

    def test_write_failure_rolls_back_that_record_only(self, db, consumer, job) -> None:  # type: ignore[no-untyped-def]
        availability = [
            {"month": "2026-11", "totalDays": 30, "availableDays": 10, "bookedDays": 20, "blockedDays": 0},
        ]
        sample = {
            "price": 840.0,
            "searchDateStart": "2026-11-01",
            "searchDateEnd": "2026-11-08",
            "numberOfNights": 7,
            "sampledAt": SCRAPED_AT.isoformat(),
        }
        records = [
            _record("A1", availability=availability, priceSample=sample),
            _record("A2", availability=availability, priceSample=sample),
        ]
        real_insert = db_module.insert_price_sample

        def fail_for_a1(conn, property_id, price_sample):  # type: ignore[no-untyped-def]
            if conn.execute("SELECT platform_property_id FROM properties WHERE id = ?",
                            (property_id,)).fetchone()[0] == "A1":
                raise sqlite3.OperationalError("disk I/O error")
            return real_insert(conn, property_id, price_sample)

        with patch.object(db_module, "insert_price_sample", side_effect=fail_for_a1):
            saved = consumer.on_completed(_completed(job.id, records, found=2))

        assert saved == 1
        assert get_property(db, Platform.AIRBNB, "A1") is None
        assert db.execute("SELECT COUNT(*) FROM property_availability").fetchone()[0] == 1
        assert db.execute("SELECT COUNT(*) FROM price_samples").fetchone()[0] == 1
        assert get_property(db, Platform.AIRBNB, "A2") is not None
        stored = get_job(db, job.id)
        assert stored.status is JobStatus.COMPLETED
        assert stored.properties_found == 2

    def test_completes_job_that_never_started(self, db, consumer, location) -> None:  # type: ignore[no-untyped-def]
        pending = Job(location_id=location.id, platform=Platform.VRBO)
        insert_job(db, pending)

        consumer.on_completed(_completed(pending.id, []))

        stored = get_job(db, pending.id)
        assert stored.status is JobStatus.COMPLETED
        assert stored.started_at is None

    def test_late_result_overrides_timeout(self, db, consumer, job) -> None:  # type: ignore[no-untyped-def]
        update_job(db, job.fail("Job timed out after 30 minutes"))

        consumer.on_completed(_completed(job.id, [_record("A1")]))

        stored = get_job(db, job.id)
        assert stored.status is JobStatus.COMPLETED
        assert stored.error_message is None

    def test_replay_is_idempotent(self, db, consumer, job) -> None:  # type: ignore[no-untyped-def]
        availability = [
            {"month": "2026-11", "totalDays": 30, "availableDays": 10, "bookedDays": 20, "blockedDays": 0},
        ]
        sample = {
            "price": 840.0,
            "searchDateStart": "2026-11-01",
            "searchDateEnd": "2026-11-08",
            "numberOfNights": 7,
            "sampledAt": SCRAPED_AT.isoformat(),
        }
        event = _completed(job.id, [_record("A1", availability=availability, priceSample=sample)])

        consumer.on_completed(event)
        first = get_job(db, job.id)
        consumer.on_completed(event)

        assert get_job(db, job.id) == first
        assert count_properties(db) == 1
        prop = get_property(db, Platform.AIRBNB, "A1")
        assert len(list_availability(db, prop["id"])) == 1
        samples = list_price_samples(db, prop["id"])
        assert len(samples) == 1
        assert samples[0]["search_date_start"] == date(2026, 11, 1).isoformat()

    def test_new_scrape_appends_history(self, db, consumer, job) -> None:  # type: ignore[no-untyped-def]
        availability = [
            {"month": "2026-11", "totalDays": 30, "availableDays": 10, "bookedDays": 20, "blockedDays": 0},
        ]
        record = _record("A1", availability=availability)

        consumer.on_completed(_completed(job.id, [record], at=datetime(2026, 10, 1)))
        consumer.on_completed(_completed(job.id, [record], at=datetime(2026, 10, 8)))

        prop = get_property(db, Platform.AIRBNB, "A1")
        assert count_properties(db) == 1
        assert len(list_availability(db, prop["id"])) == 2

    def test_different_months_both_kept(self, db, consumer, job) -> None:  # type: ignore[no-untyped-def]
        november = {"month": "2026-11", "totalDays": 30, "availableDays": 10, "bookedDays": 20, "blockedDays": 0}
        december = {"month": "2026-12", "totalDays": 31, "availableDays": 31, "bookedDays": 0, "blockedDays": 0}

        consumer.on_completed(_completed(job.id, [_record("A1", availability=[november])]))
        consumer.on_completed(_completed(job.id, [_record("A1", availability=[december], title="Renamed")]))

        prop = get_property(db, Platform.AIRBNB, "A1")
        assert [row["month"] for row in list_availability(db, prop["id"])] == ["2026-11", "2026-12"]
        assert prop["title"] == "Renamed"

    def test_notifies_data_updated(self, consumer, bus, job) -> None:  # type: ignore[no-untyped-def]
        received: list[DataUpdated] = []
        bus.subscribe(received.append)

        consumer.on_completed(_completed(job.id, [_record("A1")]))

        assert received == [DataUpdated(location_id=job.location_id, properties_count=1)]

    def test_failing_listener_does_not_break_ingest(self, db, consumer, bus, job) -> None:  # type: ignore[no-untyped-def]
        bus.subscribe(MagicMock(side_effect=RuntimeError("cache down")))

        saved = consumer.on_completed(_completed(job.id, [_record("A1")]))

        assert saved == 1
        assert get_job(db, job.id).status is JobStatus.COMPLETED

    def test_works_without_bus(self, db, job) -> None:  # type: ignore[no-untyped-def]
        assert ScrapingResultConsumer(db).on_completed(_completed(job.id, [])) == 0


# ---------------------------------------------------------------------------
# Failed
# ---------------------------------------------------------------------------


class TestOnFailed:
    def test_marks_job_failed(self, db, consumer, job) -> None:  # type: ignore[no-untyped-def]
        event = JobFailedEvent(job_id=job.id, error_message="captcha wall", occurred_at=SCRAPED_AT)

        result = consumer.on_failed(event)

        stored = get_job(db, job.id)
        assert result == stored
        assert stored.status is JobStatus.FAILED
        assert stored.error_message == "captcha wall"
        assert stored.completed_at == SCRAPED_AT
        assert stored.started_at == job.started_at

    def test_replay_is_idempotent(self, db, consumer, job) -> None:  # type: ignore[no-untyped-def]
        event = JobFailedEvent(job_id=job.id, error_message="captcha wall", occurred_at=SCRAPED_AT)
        first = consumer.on_failed(event)
        assert consumer.on_failed(event) == first

    def test_unknown_job_raises(self, consumer) -> None:  # type: ignore[no-untyped-def]
        with pytest.raises(NotFoundError):
            consumer.on_failed(JobFailedEvent(job_id="missing", error_message="x"))

    def test_does_not_touch_location(self, db, consumer, job) -> None:  # type: ignore[no-untyped-def]
        consumer.on_failed(JobFailedEvent(job_id=job.id, error_message="x"))
        assert get_location(db, job.location_id).last_scraped_at is None
