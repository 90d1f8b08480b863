"""Pydantic schemas for job specs and operational API payloads."""

from datetime import date
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ValidationError
from .models import JobPriorityEnum, JobStatusEnum, LevelEnum, SyncStageEnum
from .services.insights_parser import BREAKDOWN_CATALOG


# Job specs ------------------------------------------------------
# A closed tagged union on `kind`: anything the worker cannot execute is
# rejected here, at enqueue time.

class TimeRange(BaseModel):
    """Inclusive day range, as the insights API takes it."""

    since: date = Field(description="First day (inclusive)", examples=["2024-01-01"])
    until: date = Field(description="Last day (inclusive)", examples=["2024-01-31"])

    @model_validator(mode="after")
    def _ordered(self):
        if self.until < self.since:
            raise ValueError("time_range.until must not precede time_range.since")
        return self


class _JobSpecBase(BaseModel):
    brand_id: UUID
    priority: JobPriorityEnum = JobPriorityEnum.normal
    delay_seconds: float = Field(default=0, ge=0, description="Enqueue as delayed for this long")
    max_attempts: Optional[int] = Field(default=None, ge=1, le=20)

    model_config = {"extra": "forbid"}


class HistoricalMetricsJobSpec(_JobSpecBase):
    """Daily metrics for one chunk of history."""

    kind: Literal["historical_metrics"]
    connection_id: UUID
    time_range: TimeRange
    levels: List[LevelEnum] = Field(default_factory=lambda: [LevelEnum.account, LevelEnum.ad])

    @field_validator("levels")
    @classmethod
    def _levels_not_empty(cls, value: List[LevelEnum]) -> List[LevelEnum]:
        if not value:
            raise ValueError("levels must not be empty")
        # Deduplicate, keep order
        return list(dict.fromkeys(value))


class HistoricalDemographicsJobSpec(_JobSpecBase):
    """One breakdown dimension for one chunk of history."""

    kind: Literal["historical_demographics"]
    connection_id: UUID
    time_range: TimeRange
    breakdown: str

    @field_validator("breakdown")
    @classmethod
    def _known_breakdown(cls, value: str) -> str:
        if value not in BREAKDOWN_CATALOG:
            raise ValueError(f"unknown breakdown '{value}', expected one of {sorted(BREAKDOWN_CATALOG)}")
        return value


class DailyRefreshJobSpec(_JobSpecBase):
    """Re-fetch of the most recent days (attribution corrections)."""

    kind: Literal["daily_refresh"]
    connection_id: UUID
    time_range: Optional[TimeRange] = None
    # Breakdown streams re-fetched after the metrics (scheduled daily sync)
    breakdowns: List[str] = Field(default_factory=list)

    @field_validator("breakdowns")
    @classmethod
    def _known_breakdowns(cls, value: List[str]) -> List[str]:
        unknown = [name for name in value if name not in BREAKDOWN_CATALOG]
        if unknown:
            raise ValueError(f"unknown breakdowns {unknown}, expected any of {sorted(BREAKDOWN_CATALOG)}")
        return list(dict.fromkeys(value))


class RolloverJobSpec(_JobSpecBase):
    """Demographic rollover for one brand."""

    kind: Literal["rollover"]
    connection_id: Optional[UUID] = None


JobSpec = Annotated[
    Union[
        HistoricalMetricsJobSpec,
        HistoricalDemographicsJobSpec,
        DailyRefreshJobSpec,
        RolloverJobSpec,
    ],
    Field(discriminator="kind"),
]

_job_spec_adapter = TypeAdapter(JobSpec)


def parse_job_spec(data: Any) -> JobSpec:
    """Validate a raw job spec (dict or model).

    Raises:
        ValidationError: With every pydantic error joined into the message
    """
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return _job_spec_adapter.validate_python(data)
    except PydanticValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'job'}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid job spec: {details}") from e


# Operational API ------------------------------------------------

class EnqueueJobResponse(BaseModel):
    job_id: UUID
    status: JobStatusEnum


class QueueStatsOut(BaseModel):
    """Job counts per status. `failed` is the dead-letter count."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0


class ConnectionProgressOut(BaseModel):
    connection_id: UUID
    stage: SyncStageEnum
    days_completed: int
    days_target: int
    percent: int = Field(ge=0, le=100)
    last_error: Optional[str] = None


class BackfillRequest(BaseModel):
    brand_id: UUID
    connection_id: UUID
    start_date: Optional[date] = Field(
        default=None,
        description="Force the backfill to start here instead of 12 months before connection",
    )


class BackfillResponse(BaseModel):
    since: date
    until: date
    job_ids: List[UUID]
    deferred_demographic_jobs: int = Field(description="Chunks held back by the per-brand cap")


class RemoveJobResponse(BaseModel):
    job_id: UUID
    result: Literal["removed", "cancel_requested", "not_removable", "not_found"]


class DataChangedEvent(BaseModel):
    """Outbound notification payload (published to the data-changed channel)."""

    brand_id: UUID
    since: date
    until: date
    source: str = Field(description="Job kind or subsystem that wrote the rows")
    extra: Dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    status: str = Field(examples=["ok"])
