"""Tests for the Job lifecycle state machine."""

from datetime import datetime, timedelta

import pydantic
import pytest

from src.core.errors import StateConflictError
from src.core.schemas import JobKind, JobStatus, Platform
from src.scraping.job import Completed, Failed, InProgress, Job, Pending

T0 = datetime(2026, 5, 1, 12, 0)


def _job(**kw: object) -> Job:
    defaults: dict[str, object] = {"location_id": "loc-1", "platform": Platform.AIRBNB}
    defaults.update(kw)
    return Job(**defaults)  # type: ignore[arg-type]


class TestNewJob:
    def test_defaults(self) -> None:
        job = _job()
        assert job.status is JobStatus.PENDING
        assert job.kind is JobKind.FULL_PROFILE
        assert job.started_at is None
        assert job.completed_at is None
        assert job.properties_found is None
        assert job.error_message is None
        assert not job.is_terminal

    def test_frozen(self) -> None:
        job = _job()
        with pytest.raises(pydantic.ValidationError):
            job.platform = Platform.VRBO  # type: ignore[misc]

    def test_platform_coerced_from_string(self) -> None:
        job = _job(platform="BOOKING", state=InProgress(started_at=T0))
        assert job.platform is Platform.BOOKING
        assert job.started_at == T0


class TestStart:
    def test_pending_to_in_progress(self) -> None:
        job = _job()
        started = job.start(at=T0)
        assert started.status is JobStatus.IN_PROGRESS
        assert started.started_at == T0
        assert started.id == job.id
        # the original is untouched
        assert job.status is JobStatus.PENDING

    def test_defaults_to_now(self) -> None:
        before = datetime.now()
        started = _job().start()
        assert started.started_at is not None
        assert started.started_at >= before

    def test_twice_raises(self) -> None:
        with pytest.raises(StateConflictError, match="already started"):
            _job().start(at=T0).start()


class TestComplete:
    def test_in_progress_to_completed(self) -> None:
        done = _job().start(at=T0).complete(42, at=T0 + timedelta(minutes=5))
        assert done.status is JobStatus.COMPLETED
        assert done.properties_found == 42
        assert done.started_at == T0
        assert done.completed_at == T0 + timedelta(minutes=5)
        assert done.is_terminal

    def test_from_pending_raises(self) -> None:
        with pytest.raises(StateConflictError, match="not in progress"):
            _job().complete(1)

    def test_negative_count_rejected(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            _job().start(at=T0).complete(-1)


class TestFail:
    def test_from_pending_has_no_start(self) -> None:
        failed = _job().fail("Failed to publish job to queue: down", at=T0)
        assert failed.status is JobStatus.FAILED
        assert failed.started_at is None
        assert failed.completed_at == T0
        assert failed.error_message == "Failed to publish job to queue: down"

    def test_from_in_progress_keeps_start(self) -> None:
        failed = _job().start(at=T0).fail("timeout", at=T0 + timedelta(hours=1))
        assert failed.started_at == T0

    @pytest.mark.parametrize("finish", ["complete", "fail"])
    def test_from_terminal_raises(self, finish: str) -> None:
        job = _job().start(at=T0)
        job = job.complete(1) if finish == "complete" else job.fail("x")
        with pytest.raises(StateConflictError, match="already finished"):
            job.fail("again")


class TestReset:
    def test_failed_to_pending_clears_outcome(self) -> None:
        job = _job().start(at=T0).fail("boom").reset()
        assert isinstance(job.state, Pending)
        assert job.started_at is None
        assert job.completed_at is None
        assert job.error_message is None

    def test_reset_job_can_start_again(self) -> None:
        job = _job().fail("boom").reset().start(at=T0)
        assert job.status is JobStatus.IN_PROGRESS

    @pytest.mark.parametrize("status", ["PENDING", "IN_PROGRESS", "COMPLETED"])
    def test_non_failed_raises(self, status: str) -> None:
        job = _job()
        if status != "PENDING":
            job = job.start(at=T0)
        if status == "COMPLETED":
            job = job.complete(3)
        with pytest.raises(StateConflictError, match=f"Can only retry failed jobs. Current status: {status}"):
            job.reset()


class TestRecordedOutcomes:
    def test_completion_from_pending(self) -> None:
        job = _job().record_completion(7, T0)
        assert isinstance(job.state, Completed)
        assert job.started_at is None
        assert job.properties_found == 7

    def test_completion_overwrites_failure(self) -> None:
        job = _job().start(at=T0).fail("timeout").record_completion(5, T0 + timedelta(minutes=40))
        assert job.status is JobStatus.COMPLETED
        assert job.started_at == T0
        assert job.error_message is None

    def test_replayed_completion_is_stable(self) -> None:
        once = _job().start(at=T0).record_completion(5, T0 + timedelta(minutes=1))
        twice = once.record_completion(5, T0 + timedelta(minutes=1))
        assert once == twice

    def test_failure_overwrites_completion(self) -> None:
        job = _job().start(at=T0).complete(3).record_failure("worker crashed", T0 + timedelta(minutes=2))
        assert isinstance(job.state, Failed)
        assert job.properties_found is None
        assert job.error_message == "worker crashed"


class TestExecutionTime:
    def test_completed(self) -> None:
        job = _job().start(at=T0).complete(1, at=T0 + timedelta(seconds=90))
        assert job.execution_time() == timedelta(seconds=90)

    def test_unknown_start_is_zero(self) -> None:
        assert _job().record_completion(1, T0).execution_time() == timedelta(0)

    def test_in_progress_is_zero(self) -> None:
        assert _job().start(at=T0).execution_time() == timedelta(0)

    def test_clock_skew_clamped(self) -> None:
        job = _job().start(at=T0).record_completion(1, T0 - timedelta(seconds=5))
        assert job.execution_time() == timedelta(0)
