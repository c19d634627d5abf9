"""
Anomaly detector strategies and the registry that runs them.

Each detector is pure: it reads the observations and baselines in a
DetectionContext and returns Anomaly records, leaving persistence to the
orchestrator. The registry isolates failures so one broken strategy never
blocks the others, and no detector suppresses another's output.
"""

from collections import defaultdict
from collections.abc import Hashable
from datetime import datetime, timedelta
from typing import Protocol
from uuid import UUID

import structlog
from pydantic import BaseModel, ConfigDict, Field

from caresignal.config import DetectionConfig
from caresignal.domain.errors import DetectorError
from caresignal.domain.models import (
    METRIC_SPECS,
    Anomaly,
    AnomalyType,
    Baseline,
    CareState,
    EventType,
    MetricClass,
    MetricKind,
    ObservationEvent,
    Severity,
    SubjectType,
    TrendDirection,
)

logger = structlog.get_logger(__name__)


class DetectionContext(BaseModel):
    """Everything a detector may read during one run, plus the run's dedup ledger."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    tenant_id: str
    run_id: UUID
    now: datetime
    observations: list[ObservationEvent]
    baselines: list[Baseline]
    care_state: CareState
    config: DetectionConfig = Field(default_factory=DetectionConfig)
    claimed_keys: set[Hashable] = Field(default_factory=set)

    @property
    def window_start(self) -> datetime:
        return self.now - timedelta(hours=self.config.evaluation_window_hours)

    def recent_observations(self, event_type: EventType | None = None) -> list[ObservationEvent]:
        """Observations inside the evaluation window, oldest first."""
        return [
            e
            for e in self.observations
            if self.window_start <= e.occurred_at <= self.now
            and (event_type is None or e.event_type == event_type)
        ]

    def claim(self, key: Hashable) -> bool:
        """Reserve a detection key for this run. False when it is already covered."""
        if key in self.claimed_keys:
            return False
        self.claimed_keys.add(key)
        return True


class AnomalyDetector(Protocol):
    """Common interface for detector strategies."""

    name: str

    def detect(self, ctx: DetectionContext) -> list[Anomaly]: ...


class DeviationDetector:
    """Flags single readings far from the subject's 7-day clinical baseline."""

    name = "deviation"

    def severity(self, sigma: float, config: DetectionConfig) -> Severity:
        if sigma > config.deviation_high_sigma:
            return Severity.HIGH
        if sigma > config.deviation_medium_sigma:
            return Severity.MEDIUM
        return Severity.LOW

    def detect(self, ctx: DetectionContext) -> list[Anomaly]:
        config = ctx.config
        recent = ctx.recent_observations(EventType.VITAL_SIGN)
        anomalies: list[Anomaly] = []

        for baseline in ctx.baselines:
            if METRIC_SPECS[baseline.metric_kind].metric_class != MetricClass.CLINICAL:
                continue
            mean = baseline.window_7d.mean
            stddev = baseline.window_7d.stddev
            if stddev <= 0:
                continue

            for event in recent:
                if not event.refers_to(baseline.subject_type, baseline.subject_id):
                    continue
                value = event.metric_value(baseline.metric_kind)
                if value is None:
                    continue
                sigma = abs(value - mean) / stddev
                if sigma <= config.deviation_flag_sigma:
                    continue
                key = (
                    AnomalyType.DEVIATION,
                    baseline.subject_id,
                    baseline.metric_kind,
                    event.id,
                )
                if not ctx.claim(key):
                    continue

                anomalies.append(
                    Anomaly(
                        tenant_id=ctx.tenant_id,
                        run_id=ctx.run_id,
                        subject_type=baseline.subject_type,
                        subject_id=baseline.subject_id,
                        anomaly_type=AnomalyType.DEVIATION,
                        subtype=baseline.metric_kind.value,
                        severity=self.severity(sigma, config),
                        window_start=event.occurred_at,
                        window_end=event.occurred_at,
                        baseline_value=mean,
                        observed_value=value,
                        deviation_magnitude=sigma,
                        confidence=config.deviation_confidence,
                        detail={
                            "metric_kind": baseline.metric_kind.value,
                            "baseline_mean": mean,
                            "baseline_stddev": stddev,
                            "baseline_sample_count": baseline.window_7d.sample_count,
                            "trend": baseline.trend_direction.value,
                            "direction": "above" if value > mean else "below",
                        },
                        supporting_observation_ids=[event.id],
                        detected_at=ctx.now,
                    )
                )
        return anomalies


class RushedCarePatternDetector:
    """Flags residents receiving repeated suspiciously fast task completions."""

    name = "rushed_care_pattern"

    def detect(self, ctx: DetectionContext) -> list[Anomaly]:
        config = ctx.config
        rushed: dict[str, list[ObservationEvent]] = defaultdict(list)
        for event in ctx.recent_observations(EventType.TASK_COMPLETION):
            if event.subject_type != SubjectType.RESIDENT:
                continue
            seconds = event.metric_value(MetricKind.TASK_COMPLETION_TIME)
            if seconds is not None and seconds < config.rushed_completion_seconds:
                rushed[event.subject_id].append(event)

        anomalies: list[Anomaly] = []
        for resident_id, events in rushed.items():
            if len(events) < config.rushed_min_count:
                continue
            if not ctx.claim((AnomalyType.PATTERN, resident_id, ctx.window_start)):
                continue

            seconds = [e.metric_value(MetricKind.TASK_COMPLETION_TIME) or 0.0 for e in events]
            anomalies.append(
                Anomaly(
                    tenant_id=ctx.tenant_id,
                    run_id=ctx.run_id,
                    subject_type=SubjectType.RESIDENT,
                    subject_id=resident_id,
                    anomaly_type=AnomalyType.PATTERN,
                    subtype="systematic",
                    severity=Severity.MEDIUM,
                    window_start=ctx.window_start,
                    window_end=ctx.now,
                    observed_value=float(len(events)),
                    confidence=config.pattern_confidence,
                    detail={
                        "rushed_task_count": len(events),
                        "avg_completion_seconds": sum(seconds) / len(seconds),
                        "caregiver_ids": sorted({e.caregiver_id for e in events if e.caregiver_id}),
                        "task_ids": [e.payload.get("task_id") for e in events],
                    },
                    supporting_observation_ids=[e.id for e in events],
                    detected_at=ctx.now,
                )
            )
        return anomalies


class WorkloadDetector:
    """Flags caregivers whose task volume in the window exceeds an absolute ceiling."""

    name = "workload"

    def detect(self, ctx: DetectionContext) -> list[Anomaly]:
        config = ctx.config
        by_caregiver: dict[str, list[ObservationEvent]] = defaultdict(list)
        for event in ctx.recent_observations(EventType.TASK_COMPLETION):
            if event.caregiver_id:
                by_caregiver[event.caregiver_id].append(event)

        anomalies: list[Anomaly] = []
        for caregiver_id, events in by_caregiver.items():
            count = len(events)
            if count <= config.workload_ceiling:
                continue
            if not ctx.claim((AnomalyType.WORKLOAD, caregiver_id, ctx.window_start)):
                continue

            severity = Severity.HIGH if count > config.workload_high_ceiling else Severity.MEDIUM
            anomalies.append(
                Anomaly(
                    tenant_id=ctx.tenant_id,
                    run_id=ctx.run_id,
                    subject_type=SubjectType.CAREGIVER,
                    subject_id=caregiver_id,
                    anomaly_type=AnomalyType.WORKLOAD,
                    subtype="high_task_volume",
                    severity=severity,
                    window_start=ctx.window_start,
                    window_end=ctx.now,
                    baseline_value=float(config.workload_ceiling),
                    observed_value=float(count),
                    confidence=config.workload_confidence,
                    detail={
                        "task_count": count,
                        "ceiling": config.workload_ceiling,
                        "over_ceiling": count - config.workload_ceiling,
                        "exception_count": sum(1 for e in events if e.payload.get("was_exception")),
                    },
                    supporting_observation_ids=[e.id for e in events],
                    detected_at=ctx.now,
                )
            )
        return anomalies


class PerformanceDriftDetector:
    """Flags caregivers whose recent completion times drift above their baseline."""

    name = "performance_drift"

    def detect(self, ctx: DetectionContext) -> list[Anomaly]:
        config = ctx.config
        recent = ctx.recent_observations(EventType.TASK_COMPLETION)
        anomalies: list[Anomaly] = []

        for baseline in ctx.baselines:
            if baseline.metric_kind != MetricKind.TASK_COMPLETION_TIME:
                continue
            if baseline.subject_type != SubjectType.CAREGIVER or baseline.window_7d.stddev <= 0:
                continue

            readings = [
                (e, value)
                for e in recent
                if e.caregiver_id == baseline.subject_id
                and (value := e.metric_value(MetricKind.TASK_COMPLETION_TIME)) is not None
            ]
            if len(readings) < config.drift_min_samples:
                continue

            recent_avg = sum(v for _, v in readings) / len(readings)
            limit = baseline.window_7d.mean + config.drift_sigma * baseline.window_7d.stddev
            if recent_avg <= limit:
                continue
            if not ctx.claim((AnomalyType.DRIFT, baseline.subject_id, ctx.window_start)):
                continue

            anomalies.append(
                Anomaly(
                    tenant_id=ctx.tenant_id,
                    run_id=ctx.run_id,
                    subject_type=SubjectType.CAREGIVER,
                    subject_id=baseline.subject_id,
                    anomaly_type=AnomalyType.DRIFT,
                    subtype="completion_time_degradation",
                    severity=Severity.MEDIUM,
                    window_start=ctx.window_start,
                    window_end=ctx.now,
                    baseline_value=baseline.window_7d.mean,
                    observed_value=recent_avg,
                    deviation_magnitude=(recent_avg - baseline.window_7d.mean)
                    / baseline.window_7d.stddev,
                    confidence=config.drift_confidence,
                    detail={
                        "baseline_mean": baseline.window_7d.mean,
                        "baseline_stddev": baseline.window_7d.stddev,
                        "recent_sample_count": len(readings),
                        "relative_slowdown": (recent_avg - baseline.window_7d.mean)
                        / baseline.window_7d.mean
                        if baseline.window_7d.mean
                        else None,
                    },
                    supporting_observation_ids=[e.id for e, _ in readings],
                    detected_at=ctx.now,
                )
            )
        return anomalies


class TrendDetector:
    """Flags clinical baselines that are moving steadily in one direction."""

    name = "trend"

    def detect(self, ctx: DetectionContext) -> list[Anomaly]:
        config = ctx.config
        recent = ctx.recent_observations(EventType.VITAL_SIGN)
        anomalies: list[Anomaly] = []

        for baseline in ctx.baselines:
            if METRIC_SPECS[baseline.metric_kind].metric_class != MetricClass.CLINICAL:
                continue
            if baseline.trend_direction not in (TrendDirection.RISING, TrendDirection.FALLING):
                continue
            if abs(baseline.trend_velocity) <= config.trend_min_velocity:
                continue
            if baseline.trend_confidence <= config.trend_min_confidence:
                continue

            # Only subjects still being measured in the evaluation window.
            readings = [
                e.id
                for e in recent
                if e.refers_to(baseline.subject_type, baseline.subject_id)
                and e.metric_value(baseline.metric_kind) is not None
            ]
            if not readings:
                continue
            key = (AnomalyType.TREND, baseline.subject_id, baseline.metric_kind, baseline.as_of)
            if not ctx.claim(key):
                continue

            anomalies.append(
                Anomaly(
                    tenant_id=ctx.tenant_id,
                    run_id=ctx.run_id,
                    subject_type=baseline.subject_type,
                    subject_id=baseline.subject_id,
                    anomaly_type=AnomalyType.TREND,
                    subtype=baseline.metric_kind.value,
                    severity=Severity.MEDIUM,
                    window_start=baseline.as_of - timedelta(days=config.trend_window_days),
                    window_end=ctx.now,
                    baseline_value=baseline.window_7d.mean,
                    confidence=baseline.trend_confidence,
                    detail={
                        "metric_kind": baseline.metric_kind.value,
                        "trend_direction": baseline.trend_direction.value,
                        "trend_velocity": baseline.trend_velocity,
                        "baseline_mean": baseline.window_7d.mean,
                    },
                    supporting_observation_ids=readings,
                    detected_at=ctx.now,
                )
            )
        return anomalies


class DetectionReport(BaseModel):
    anomalies: list[Anomaly] = Field(default_factory=list)
    failures: list[str] = Field(default_factory=list)


class DetectorRegistry:
    """Ordered set of detector strategies; adding one needs no orchestrator change."""

    def __init__(self, detectors: list[AnomalyDetector] | None = None) -> None:
        self._detectors: dict[str, AnomalyDetector] = {}
        self.logger = logger.bind(component="detector_registry")
        for detector in detectors or []:
            self.register(detector)

    @classmethod
    def default(cls) -> "DetectorRegistry":
        return cls(
            [
                DeviationDetector(),
                RushedCarePatternDetector(),
                WorkloadDetector(),
                PerformanceDriftDetector(),
                TrendDetector(),
            ]
        )

    @property
    def names(self) -> list[str]:
        return list(self._detectors)

    def register(self, detector: AnomalyDetector) -> None:
        if detector.name in self._detectors:
            raise ValueError(f"detector {detector.name} already registered")
        self._detectors[detector.name] = detector

    def unregister(self, name: str) -> None:
        self._detectors.pop(name, None)

    def run(self, ctx: DetectionContext) -> DetectionReport:
        """
        Run every detector; a failing one is logged and reported, the rest continue.

        Each anomaly is stamped with the tenant's care mode at detection time.
        """
        report = DetectionReport()
        for name, detector in self._detectors.items():
            try:
                found = detector.detect(ctx)
            except Exception as e:
                error = DetectorError(name, e)
                self.logger.exception(
                    "detector_failed", detector=name, tenant_id=ctx.tenant_id, error=str(error)
                )
                report.failures.append(name)
                continue

            for anomaly in found:
                anomaly.detail.setdefault("care_mode", ctx.care_state.mode.value)
            report.anomalies.extend(found)
            self.logger.debug(
                "detector_completed", detector=name, tenant_id=ctx.tenant_id, found=len(found)
            )
        return report
