"""
Raw record shapes supplied by the external care subsystems.

Key care concepts:
- Vital sign recordings: one measurement session, any subset of vitals
- Task completions: a caregiver closing a scheduled care task, with telemetry
- Staffing actions: clock-in/out, shift swaps and similar roster events

Each record carries its `(source_kind, source_id)` identity; the aggregator uses
it to guarantee one observation per originating record.
"""

from collections.abc import Mapping
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


class _RawRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    source_id: str = Field(min_length=1)
    tenant_id: str = Field(min_length=1)

    @field_validator("*", mode="after")
    @classmethod
    def timestamps_are_aware(cls, v: Any) -> Any:
        if isinstance(v, datetime) and v.tzinfo is None:
            raise ValueError("timestamps must be timezone-aware")
        return v


class VitalSignRecord(_RawRecord):
    """A vital sign measurement session for one resident."""

    source_kind: Literal["vitals"] = "vitals"
    resident_id: str = Field(min_length=1)
    recorded_by: str | None = None
    measured_at: datetime

    blood_pressure_systolic: float | None = Field(None, gt=40, lt=300)
    blood_pressure_diastolic: float | None = Field(None, gt=20, lt=200)
    heart_rate: float | None = Field(None, gt=20, lt=250)
    temperature: float | None = Field(None, gt=85, lt=115, description="Fahrenheit")
    oxygen_saturation: float | None = Field(None, gt=50, le=100)
    respiratory_rate: float | None = Field(None, gt=0, lt=80)
    notes: str | None = None

    @model_validator(mode="after")
    def has_measurement(self) -> "VitalSignRecord":
        if not self.measurements():
            raise ValueError("vital sign record carries no measurement")
        return self

    def measurements(self) -> dict[str, float]:
        fields = (
            "blood_pressure_systolic",
            "blood_pressure_diastolic",
            "heart_rate",
            "temperature",
            "oxygen_saturation",
            "respiratory_rate",
        )
        return {f: getattr(self, f) for f in fields if getattr(self, f) is not None}


class TaskCompletionRecord(_RawRecord):
    """A completed care task with completion telemetry."""

    source_kind: Literal["task_completion"] = "task_completion"
    task_id: str = Field(min_length=1)
    resident_id: str = Field(min_length=1)
    caregiver_id: str = Field(min_length=1)
    category: str | None = None
    scheduled_for: datetime | None = None
    completed_at: datetime
    completion_seconds: float | None = Field(None, ge=0)
    completion_method: str | None = Field(None, description="e.g. quick_tap, voice, form")
    evidence_submitted: bool = False
    was_exception: bool = False


class StaffingActionRecord(_RawRecord):
    """A roster action taken by or on behalf of a caregiver."""

    source_kind: Literal["staffing"] = "staffing"
    caregiver_id: str = Field(min_length=1)
    action: str = Field(min_length=1, description="e.g. clock_in, clock_out, shift_swap")
    occurred_at: datetime
    shift_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


RawCareEvent = Annotated[
    VitalSignRecord | TaskCompletionRecord | StaffingActionRecord,
    Field(discriminator="source_kind"),
]

_raw_event_adapter: TypeAdapter[RawCareEvent] = TypeAdapter(RawCareEvent)


def parse_raw_event(raw: Any) -> RawCareEvent:
    """
    Validate a raw payload (or pass through a record). Raises pydantic.ValidationError.

    Anything that is not a mapping, such as a decoded JSON string or null, fails
    validation like any other malformed record.
    """
    if isinstance(raw, VitalSignRecord | TaskCompletionRecord | StaffingActionRecord):
        return raw
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    if isinstance(raw, Mapping):
        raw = dict(raw)
    return _raw_event_adapter.validate_python(raw)
