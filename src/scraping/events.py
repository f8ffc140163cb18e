"""Wire messages exchanged with the scraper fleet.

Field names on the wire are camelCase (``jobId``, ``searchDateStart``) because
the workers were written against those names; Python code uses snake_case and
pydantic's alias generator maps between the two.
"""

import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from src.core.schemas import JobKind, Location, Platform, TimeWindow

_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_message(self) -> dict[str, Any]:
        """Serialize to a JSON-safe dict using wire field names."""
        return self.model_dump(mode="json", by_alias=True)


def occupancy_ratio(total_days: int, booked_days: int, blocked_days: int) -> float:
    """booked / (total - blocked), 0.0 when no day was bookable."""
    bookable = total_days - blocked_days
    if bookable <= 0:
        return 0.0
    return booked_days / bookable


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------


class JobCreatedEvent(WireModel):
    job_id: str
    location_id: str
    location_name: str
    job_type: JobKind
    platform: Platform
    search_date_start: date
    search_date_end: date
    bounding_box_sw_lng: float | None = None
    bounding_box_sw_lat: float | None = None
    bounding_box_ne_lng: float | None = None
    bounding_box_ne_lat: float | None = None
    occurred_at: datetime = Field(default_factory=datetime.now)

    @classmethod
    def for_job(
        cls,
        job_id: str,
        kind: JobKind,
        platform: Platform,
        location: Location,
        window: TimeWindow,
    ) -> "JobCreatedEvent":
        bbox = location.bounding_box
        return cls(
            job_id=job_id,
            location_id=location.id,
            location_name=location.name,
            job_type=kind,
            platform=platform,
            search_date_start=window.start,
            search_date_end=window.end,
            bounding_box_sw_lng=bbox.sw_lng if bbox else None,
            bounding_box_sw_lat=bbox.sw_lat if bbox else None,
            bounding_box_ne_lng=bbox.ne_lng if bbox else None,
            bounding_box_ne_lat=bbox.ne_lat if bbox else None,
        )


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------


class MonthlyAvailability(WireModel):
    """Calendar summary of one property for one month (``YYYY-MM``)."""

    month: str
    total_days: int = Field(ge=0)
    available_days: int = Field(ge=0)
    booked_days: int = Field(ge=0)
    blocked_days: int = Field(ge=0)
    estimated_occupancy: float | None = None

    @field_validator("month")
    @classmethod
    def month_format(cls, v: str) -> str:
        if not _MONTH_RE.match(v):
            msg = f"month must be YYYY-MM, got {v!r}"
            raise ValueError(msg)
        return v

    @property
    def occupancy(self) -> float:
        """Worker-reported occupancy, derived from the day counts when absent."""
        if self.estimated_occupancy is not None:
            return self.estimated_occupancy
        return occupancy_ratio(self.total_days, self.booked_days, self.blocked_days)


class ScrapedPriceSample(WireModel):
    """Total quoted price for one stay window."""

    price: float = Field(ge=0.0)
    currency: str = "EUR"
    search_date_start: date
    search_date_end: date
    number_of_nights: int = Field(gt=0)
    sampled_at: datetime

    @model_validator(mode="after")
    def window_ordered(self) -> "ScrapedPriceSample":
        if self.search_date_end <= self.search_date_start:
            msg = "searchDateEnd must be after searchDateStart"
            raise ValueError(msg)
        return self

    @property
    def average_daily_rate(self) -> Decimal:
        """ADR: price per night, rounded half-up to cents."""
        if self.number_of_nights <= 0:
            return Decimal("0")
        adr = Decimal(str(self.price)) / Decimal(self.number_of_nights)
        return adr.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class ScrapedProperty(WireModel):
    """One listing returned by a worker.

    ``platform`` stays a plain string here: an unknown value must fail only this
    record during ingestion, not the whole message.
    """

    platform_id: str
    platform: str
    latitude: float
    longitude: float
    title: str | None = None
    property_type: str | None = None
    price: float | None = None
    currency: str | None = None
    bedrooms: int | None = None
    bathrooms: int | None = None
    guests: int | None = None
    rating: float | None = None
    review_count: int | None = None
    is_superhost: bool | None = None
    image_url: str | None = None
    property_url: str | None = None
    amenities: list[str] = Field(default_factory=list)
    availability: list[MonthlyAvailability] | None = None
    price_sample: ScrapedPriceSample | None = None


class JobCompletedEvent(WireModel):
    """Worker result for one job.

    ``properties`` holds the raw listing records. Each is parsed into a
    ScrapedProperty during ingestion so one malformed record is skipped on its
    own instead of rejecting the whole message.
    """

    job_id: str
    properties_found: int = Field(ge=0)
    properties: list[Any] = Field(default_factory=list)
    job_type: JobKind | None = None
    location_id: str | None = None
    search_date_start: date | None = None
    search_date_end: date | None = None
    duplicates_removed: int | None = None
    filtered_out_of_bounds: int | None = None
    occurred_at: datetime = Field(default_factory=datetime.now)


class JobFailedEvent(WireModel):
    job_id: str
    error_message: str
    job_type: JobKind | None = None
    occurred_at: datetime = Field(default_factory=datetime.now)
