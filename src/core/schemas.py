"""Core data models for the scraping coordinator."""

import uuid
from datetime import date, datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.core.errors import ValidationError


class Platform(str, Enum):
    """External listing sources scraped by the worker fleet."""

    AIRBNB = "AIRBNB"
    BOOKING = "BOOKING"
    VRBO = "VRBO"


class JobKind(str, Enum):
    """FULL_PROFILE is a deep listing + calendar scrape, PRICE_SAMPLE a quick quote."""

    FULL_PROFILE = "FULL_PROFILE"
    PRICE_SAMPLE = "PRICE_SAMPLE"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class BatchStrategy(str, Enum):
    ALL_LOCATIONS = "ALL_LOCATIONS"
    STALE_ONLY = "STALE_ONLY"


class BatchStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def parse_platform(value: "Platform | str") -> Platform:
    """Coerce a platform name, raising ValidationError for unknown values."""
    try:
        return Platform(value.upper() if isinstance(value, str) else value)
    except ValueError:
        msg = f"Unknown platform: {value}"
        raise ValidationError(msg) from None


def parse_job_kind(value: "JobKind | str") -> JobKind:
    """Coerce a job kind name, raising ValidationError for unknown values."""
    try:
        return JobKind(value.upper() if isinstance(value, str) else value)
    except ValueError:
        msg = f"Unknown job kind: {value}"
        raise ValidationError(msg) from None


class TimeWindow(BaseModel):
    """A stay window searched by the scrapers: check-in ``start``, check-out ``end``."""

    model_config = ConfigDict(frozen=True)

    start: date
    end: date

    @model_validator(mode="after")
    def end_after_start(self) -> "TimeWindow":
        if self.end <= self.start:
            msg = f"window end {self.end} must be after start {self.start}"
            raise ValueError(msg)
        return self

    @property
    def nights(self) -> int:
        return (self.end - self.start).days

    @classmethod
    def starting(cls, start: date, nights: int) -> "TimeWindow":
        return cls(start=start, end=start + timedelta(days=nights))


class BoundingBox(BaseModel):
    """Spatial bounds of a location, south-west and north-east corners."""

    model_config = ConfigDict(frozen=True)

    sw_lng: float = Field(ge=-180.0, le=180.0)
    sw_lat: float = Field(ge=-90.0, le=90.0)
    ne_lng: float = Field(ge=-180.0, le=180.0)
    ne_lat: float = Field(ge=-90.0, le=90.0)

    @model_validator(mode="after")
    def corners_ordered(self) -> "BoundingBox":
        if self.sw_lat > self.ne_lat:
            msg = "south-west latitude must not exceed north-east latitude"
            raise ValueError(msg)
        return self


class Location(BaseModel):
    """A market being profiled. Owned by the location module; read-only here
    except for ``last_scraped_at``, which result ingestion bumps."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    bounding_box: BoundingBox | None = None
    last_scraped_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.now)


class BatchRun(BaseModel):
    """State of one fleet-wide refresh campaign."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    status: BatchStatus = BatchStatus.RUNNING
    strategy: BatchStrategy = BatchStrategy.ALL_LOCATIONS
    total_locations: int = 0
    completed_locations: int = 0
    failed_locations: int = 0
    current_location_id: str | None = None
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: datetime | None = None
    delay_minutes: int = 0

    @property
    def processed_locations(self) -> int:
        return self.completed_locations + self.failed_locations


class BatchProgress(BaseModel):
    """Read-only snapshot of a BatchRun handed to status pollers."""

    model_config = ConfigDict(frozen=True)

    batch_id: str | None = None
    status: BatchStatus = BatchStatus.NOT_STARTED
    total_locations: int = 0
    completed_locations: int = 0
    failed_locations: int = 0
    current_location_id: str | None = None
    started_at: datetime | None = None
    estimated_completion: datetime | None = None
    delay_minutes: int = 0
    progress_percentage: float = 0.0

    @classmethod
    def not_started(cls) -> "BatchProgress":
        return cls()
