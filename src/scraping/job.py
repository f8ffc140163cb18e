"""Scraping job aggregate and its lifecycle.

The lifecycle is a closed set of state models, each carrying only the fields
that are valid in that state::

    Pending ──start()──> InProgress ──complete()──> Completed
       │                     │
       └──────fail()─────────┴────────fail()──────> Failed ──reset()──> Pending

Transitions never mutate: they return a new Job or raise StateConflictError.
"""

import uuid
from datetime import datetime, timedelta
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from src.core.errors import StateConflictError
from src.core.schemas import JobKind, JobStatus, Platform


class Pending(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal[JobStatus.PENDING] = JobStatus.PENDING


class InProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal[JobStatus.IN_PROGRESS] = JobStatus.IN_PROGRESS
    started_at: datetime


class Completed(BaseModel):
    """Terminal success. started_at is unknown when the result overtook start()."""

    model_config = ConfigDict(frozen=True)

    status: Literal[JobStatus.COMPLETED] = JobStatus.COMPLETED
    started_at: datetime | None = None
    completed_at: datetime
    properties_found: int = Field(ge=0)


class Failed(BaseModel):
    """Terminal failure. started_at is None when publishing failed."""

    model_config = ConfigDict(frozen=True)

    status: Literal[JobStatus.FAILED] = JobStatus.FAILED
    started_at: datetime | None = None
    completed_at: datetime
    error_message: str


JobState = Annotated[Pending | InProgress | Completed | Failed, Field(discriminator="status")]


class Job(BaseModel):
    """A scraping task for one (location, platform, kind)."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    location_id: str
    platform: Platform
    kind: JobKind = JobKind.FULL_PROFILE
    state: JobState = Field(default_factory=Pending)
    created_at: datetime = Field(default_factory=datetime.now)

    # --- read-only views over the state -----------------------------------

    @property
    def status(self) -> JobStatus:
        return self.state.status

    @property
    def is_terminal(self) -> bool:
        return isinstance(self.state, (Completed, Failed))

    @property
    def started_at(self) -> datetime | None:
        return getattr(self.state, "started_at", None)

    @property
    def completed_at(self) -> datetime | None:
        return getattr(self.state, "completed_at", None)

    @property
    def properties_found(self) -> int | None:
        return getattr(self.state, "properties_found", None)

    @property
    def error_message(self) -> str | None:
        return getattr(self.state, "error_message", None)

    def execution_time(self) -> timedelta:
        """Wall time between start and completion, zero when either is unknown."""
        started, completed = self.started_at, self.completed_at
        if started is None or completed is None:
            return timedelta(0)
        return max(completed - started, timedelta(0))

    # --- lifecycle transitions --------------------------------------------

    def start(self, at: datetime | None = None) -> "Job":
        if not isinstance(self.state, Pending):
            msg = f"Job already started: {self.id} is {self.status.value}"
            raise StateConflictError(msg)
        return self._with(InProgress(started_at=at or datetime.now()))

    def complete(self, properties_found: int, at: datetime | None = None) -> "Job":
        if not isinstance(self.state, InProgress):
            msg = f"Job not in progress: {self.id} is {self.status.value}"
            raise StateConflictError(msg)
        return self._with(
            Completed(
                started_at=self.state.started_at,
                completed_at=at or datetime.now(),
                properties_found=properties_found,
            )
        )

    def fail(self, message: str, at: datetime | None = None) -> "Job":
        if self.is_terminal:
            msg = f"Job already finished: {self.id} is {self.status.value}"
            raise StateConflictError(msg)
        return self._with(
            Failed(
                started_at=self.started_at,
                completed_at=at or datetime.now(),
                error_message=message,
            )
        )

    def reset(self) -> "Job":
        """Return the job to PENDING for a retry. Only failed jobs can be retried."""
        if not isinstance(self.state, Failed):
            msg = f"Can only retry failed jobs. Current status: {self.status.value}"
            raise StateConflictError(msg)
        return self._with(Pending())

    # Worker-reported outcomes. The transport redelivers, so these overwrite
    # job-level fields from any state instead of enforcing the transition.

    def record_completion(self, properties_found: int, at: datetime) -> "Job":
        return self._with(
            Completed(started_at=self.started_at, completed_at=at, properties_found=properties_found)
        )

    def record_failure(self, message: str, at: datetime) -> "Job":
        return self._with(Failed(started_at=self.started_at, completed_at=at, error_message=message))

    def _with(self, state: Pending | InProgress | Completed | Failed) -> "Job":
        return self.model_copy(update={"state": state})
