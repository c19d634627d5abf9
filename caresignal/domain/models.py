"""
Domain models for the care signal pipeline.

These models represent the core business concepts and are framework-agnostic.
Observations, baselines and risk scores are immutable once created; anomalies
and issues change only through explicit status transitions.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(UTC)


class SubjectType(str, Enum):
    """Entity an observation, anomaly or risk pertains to."""

    RESIDENT = "resident"
    CAREGIVER = "caregiver"


class EventType(str, Enum):
    VITAL_SIGN = "vital_sign"
    TASK_COMPLETION = "task_completion"
    STAFFING_ACTION = "staffing_action"


class SourceKind(str, Enum):
    """Originating record family, first half of the deduplication key."""

    VITALS = "vitals"
    TASK_COMPLETION = "task_completion"
    STAFFING = "staffing"


class MetricClass(str, Enum):
    CLINICAL = "clinical"
    PERFORMANCE = "performance"


class MetricKind(str, Enum):
    """Metrics a baseline can be maintained for."""

    BP_SYSTOLIC = "vital_signs_bp_systolic"
    BP_DIASTOLIC = "vital_signs_bp_diastolic"
    HEART_RATE = "vital_signs_heart_rate"
    TEMPERATURE = "vital_signs_temperature"
    OXYGEN_SATURATION = "vital_signs_oxygen_sat"
    RESPIRATORY_RATE = "vital_signs_respiratory_rate"
    TASK_COMPLETION_TIME = "task_completion_time"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AnomalyType(str, Enum):
    DEVIATION = "vital_sign_deviation"
    PATTERN = "rushed_care_pattern"
    WORKLOAD = "caregiver_workload"
    DRIFT = "caregiver_performance"
    TREND = "vital_sign_trend"


class AnomalyStatus(str, Enum):
    DETECTED = "detected"
    ACKNOWLEDGED = "acknowledged"
    DISMISSED = "dismissed"


class RiskCategory(str, Enum):
    RESIDENT_HEALTH = "resident_health"
    CAREGIVER_PERFORMANCE = "caregiver_performance"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class IssueStatus(str, Enum):
    NEW = "new"
    ACKNOWLEDGED = "acknowledged"
    INVESTIGATING = "investigating"
    ACTION_TAKEN = "action_taken"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


OPEN_ISSUE_STATUSES = frozenset(
    {
        IssueStatus.NEW,
        IssueStatus.ACKNOWLEDGED,
        IssueStatus.INVESTIGATING,
        IssueStatus.ACTION_TAKEN,
    }
)


class IssueAction(str, Enum):
    """Reviewer actions on a prioritized issue."""

    ACKNOWLEDGE = "acknowledge"
    INVESTIGATE = "investigate"
    TAKE_ACTION = "take_action"
    RESOLVE = "resolve"
    DISMISS = "dismiss"


class TrendDirection(str, Enum):
    RISING = "rising"
    FALLING = "falling"
    STABLE = "stable"
    UNKNOWN = "unknown"


class CareMode(str, Enum):
    NORMAL = "normal"
    ELEVATED = "elevated"
    EMERGENCY = "emergency"


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TriggerKind(str, Enum):
    SCHEDULED = "scheduled"
    BACKLOG = "backlog"
    MANUAL = "manual"


class MetricSpec(BaseModel):
    """Where a metric's value lives in an observation payload and who it describes."""

    model_config = ConfigDict(frozen=True)

    kind: MetricKind
    payload_field: str
    event_type: EventType
    metric_class: MetricClass
    subject_type: SubjectType


METRIC_SPECS: dict[MetricKind, MetricSpec] = {
    spec.kind: spec
    for spec in (
        MetricSpec(
            kind=MetricKind.BP_SYSTOLIC,
            payload_field="blood_pressure_systolic",
            event_type=EventType.VITAL_SIGN,
            metric_class=MetricClass.CLINICAL,
            subject_type=SubjectType.RESIDENT,
        ),
        MetricSpec(
            kind=MetricKind.BP_DIASTOLIC,
            payload_field="blood_pressure_diastolic",
            event_type=EventType.VITAL_SIGN,
            metric_class=MetricClass.CLINICAL,
            subject_type=SubjectType.RESIDENT,
        ),
        MetricSpec(
            kind=MetricKind.HEART_RATE,
            payload_field="heart_rate",
            event_type=EventType.VITAL_SIGN,
            metric_class=MetricClass.CLINICAL,
            subject_type=SubjectType.RESIDENT,
        ),
        MetricSpec(
            kind=MetricKind.TEMPERATURE,
            payload_field="temperature",
            event_type=EventType.VITAL_SIGN,
            metric_class=MetricClass.CLINICAL,
            subject_type=SubjectType.RESIDENT,
        ),
        MetricSpec(
            kind=MetricKind.OXYGEN_SATURATION,
            payload_field="oxygen_saturation",
            event_type=EventType.VITAL_SIGN,
            metric_class=MetricClass.CLINICAL,
            subject_type=SubjectType.RESIDENT,
        ),
        MetricSpec(
            kind=MetricKind.RESPIRATORY_RATE,
            payload_field="respiratory_rate",
            event_type=EventType.VITAL_SIGN,
            metric_class=MetricClass.CLINICAL,
            subject_type=SubjectType.RESIDENT,
        ),
        MetricSpec(
            kind=MetricKind.TASK_COMPLETION_TIME,
            payload_field="completion_seconds",
            event_type=EventType.TASK_COMPLETION,
            metric_class=MetricClass.PERFORMANCE,
            subject_type=SubjectType.CAREGIVER,
        ),
    )
}


class ObservationEvent(BaseModel):
    """A normalized care fact. Never mutated, retained for explainability."""

    model_config = ConfigDict(frozen=True)  # Immutable for audit

    id: UUID = Field(default_factory=uuid4)
    tenant_id: str = Field(min_length=1)
    subject_type: SubjectType
    subject_id: str = Field(min_length=1)
    caregiver_id: str | None = Field(
        default=None, description="Caregiver who produced the event, if any"
    )
    event_type: EventType
    event_subtype: str
    occurred_at: datetime
    ingested_at: datetime = Field(default_factory=utc_now)
    payload: dict[str, Any] = Field(default_factory=dict)
    quality: int = Field(ge=0, le=100)
    source_kind: SourceKind
    source_id: str = Field(min_length=1)

    @property
    def dedup_key(self) -> tuple[SourceKind, str]:
        return (self.source_kind, self.source_id)

    def refers_to(self, subject_type: SubjectType, subject_id: str) -> bool:
        """True when the event describes the subject or, for caregivers, was produced by them."""
        if subject_type == SubjectType.CAREGIVER and self.caregiver_id == subject_id:
            return True
        return self.subject_type == subject_type and self.subject_id == subject_id

    def metric_value(self, metric_kind: MetricKind) -> float | None:
        """Numeric value for a metric, or None when the event does not carry it."""
        spec = METRIC_SPECS[metric_kind]
        if self.event_type != spec.event_type:
            return None
        raw = self.payload.get(spec.payload_field)
        if raw is None or isinstance(raw, bool):
            return None
        try:
            return float(raw)
        except (TypeError, ValueError):
            return None


class Skipped(BaseModel):
    """Outcome of ingesting an event whose source record was already observed."""

    model_config = ConfigDict(frozen=True)

    source_kind: SourceKind
    source_id: str
    reason: str = "duplicate_source"


class WindowStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    mean: float = 0.0
    stddev: float = Field(default=0.0, ge=0.0)
    sample_count: int = Field(default=0, ge=0)
    median: float = 0.0
    minimum: float = 0.0
    maximum: float = 0.0


class Baseline(BaseModel):
    """Rolling statistical expectation for one subject's metric. Replaced wholesale."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    subject_type: SubjectType
    subject_id: str
    metric_kind: MetricKind
    window_7d: WindowStats
    window_30d: WindowStats
    confidence: float = Field(ge=0.0, le=1.0)
    trend_direction: TrendDirection = TrendDirection.UNKNOWN
    trend_velocity: float = 0.0
    trend_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    data_quality: int = Field(default=0, ge=0, le=100)
    as_of: datetime
    computed_at: datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> tuple[str, SubjectType, str, MetricKind]:
        return (self.tenant_id, self.subject_type, self.subject_id, self.metric_kind)


class Anomaly(BaseModel):
    """A single detected deviation from expected behavior."""

    id: UUID = Field(default_factory=uuid4)
    tenant_id: str
    run_id: UUID
    subject_type: SubjectType | None = None
    subject_id: str | None = None
    anomaly_type: AnomalyType
    subtype: str
    severity: Severity
    window_start: datetime
    window_end: datetime
    baseline_value: float | None = None
    observed_value: float | None = None
    deviation_magnitude: float | None = Field(
        default=None, ge=0.0, description="Deviation in standard-deviation units"
    )
    confidence: float = Field(ge=0.0, le=1.0)
    detail: dict[str, Any] = Field(default_factory=dict)
    supporting_observation_ids: list[UUID] = Field(default_factory=list)
    status: AnomalyStatus = AnomalyStatus.DETECTED
    detected_at: datetime = Field(default_factory=utc_now)
    status_changed_by: str | None = None
    status_changed_at: datetime | None = None


class ContributingFactor(BaseModel):
    model_config = ConfigDict(frozen=True)

    anomaly_type: AnomalyType
    count: int = Field(ge=1)
    weight: int


class RiskScore(BaseModel):
    """Bounded aggregate of one subject's anomalies in one run."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    tenant_id: str
    run_id: UUID
    subject_type: SubjectType
    subject_id: str
    category: RiskCategory
    risk_type: AnomalyType
    score: int = Field(ge=0, le=100)
    level: RiskLevel
    confidence: float = Field(ge=0.0, le=1.0)
    anomaly_ids: list[UUID] = Field(min_length=1)
    contributing_factors: list[ContributingFactor] = Field(default_factory=list)
    suggested_interventions: list[str] = Field(default_factory=list)
    computed_at: datetime = Field(default_factory=utc_now)


class PrioritizedIssue(BaseModel):
    """Reviewer-facing unit of work, traceable to its risk score and anomalies."""

    id: UUID = Field(default_factory=uuid4)
    tenant_id: str
    run_id: UUID
    subject_type: SubjectType
    subject_id: str
    issue_type: str
    category: RiskCategory
    title: str = Field(min_length=1)
    description: str
    urgency_score: int = Field(ge=0, le=100)
    severity_score: int = Field(ge=0, le=100)
    confidence: float = Field(ge=0.0, le=1.0)
    priority_score: float = Field(ge=0.0)
    risk_score_id: UUID
    anomaly_ids: list[UUID] = Field(min_length=1)
    suggested_actions: list[str] = Field(default_factory=list)
    status: IssueStatus = IssueStatus.NEW
    created_at: datetime = Field(default_factory=utc_now)

    assigned_to: str | None = None
    assigned_at: datetime | None = None
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    resolution_notes: str | None = None
    updated_by: str | None = None
    updated_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_ISSUE_STATUSES


class CareState(BaseModel):
    """
    Versioned per-tenant pipeline state.

    Every mutation names the version it was based on; the store rejects stale writes.
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    version: int = Field(default=0, ge=0)
    mode: CareMode = CareMode.NORMAL
    mode_pinned: bool = Field(
        default=False, description="Operator-set mode that run summaries must not override"
    )
    pipeline_paused: bool = False
    open_issue_count: int = Field(default=0, ge=0)
    high_risk_count: int = Field(default=0, ge=0)
    last_run_id: UUID | None = None
    last_run_at: datetime | None = None
    updated_by: str | None = None
    updated_at: datetime | None = None


class StageCounts(BaseModel):
    """Per-stage output counts; filled in as stages commit."""

    observations_aggregated: int = 0
    baselines_recomputed: int = 0
    anomalies_detected: int = 0
    risks_scored: int = 0
    issues_created: int = 0


class PipelineRunResult(BaseModel):
    run_id: UUID
    tenant_id: str
    trigger: TriggerKind
    state: RunState
    counts: StageCounts
    failed_stage: str | None = None
    error: str | None = None
    detector_failures: list[str] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


class SubjectOverview(BaseModel):
    """Query view for dashboards: current risk, its trend and open issues."""

    tenant_id: str
    subject_type: SubjectType
    subject_id: str
    current_risk: RiskScore | None = None
    risk_trend: list[RiskScore] = Field(default_factory=list)
    open_issues: list[PrioritizedIssue] = Field(default_factory=list)
