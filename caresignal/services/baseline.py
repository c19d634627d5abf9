"""
Rolling statistical baselines per (tenant, subject, metric).

Two windows (7 and 30 days by default) ending at `as_of`, the start of the
detection window. A baseline below the metric's minimum sample count is not
produced at all: the stored one stays, stale is preferable to noisy.
"""

import statistics
from collections.abc import Iterable
from datetime import datetime, timedelta
from uuid import UUID

import structlog
from pydantic import BaseModel, ConfigDict

from caresignal.config import BaselineConfig
from caresignal.domain.models import (
    METRIC_SPECS,
    Baseline,
    MetricClass,
    MetricKind,
    ObservationEvent,
    SubjectType,
    TrendDirection,
    WindowStats,
    utc_now,
)

logger = structlog.get_logger(__name__)

_ONE_DAY_SECONDS = 24 * 60 * 60


class Sample(BaseModel):
    """One metric reading taken from an observation."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    value: float
    observation_id: UUID | None = None


def window_stats(values: list[float]) -> WindowStats:
    if not values:
        return WindowStats()
    return WindowStats(
        mean=statistics.fmean(values),
        stddev=statistics.stdev(values) if len(values) >= 2 else 0.0,
        sample_count=len(values),
        median=statistics.median(values),
        minimum=min(values),
        maximum=max(values),
    )


def linear_trend(values: list[float]) -> tuple[TrendDirection, float, float]:
    """Least-squares slope over sample order. Returns (direction, velocity, r_squared)."""
    n = len(values)
    if n < 3:
        return TrendDirection.UNKNOWN, 0.0, 0.0

    xs = range(n)
    x_mean = (n - 1) / 2
    y_mean = statistics.fmean(values)
    sxx = sum((x - x_mean) ** 2 for x in xs)
    sxy = sum((x - x_mean) * (y - y_mean) for x, y in zip(xs, values, strict=True))
    slope = sxy / sxx
    intercept = y_mean - slope * x_mean

    ss_total = sum((y - y_mean) ** 2 for y in values)
    ss_residual = sum((y - (slope * x + intercept)) ** 2 for x, y in zip(xs, values, strict=True))
    r_squared = 1 - ss_residual / ss_total if ss_total > 0 else 0.0

    if abs(slope) < 0.01:
        direction = TrendDirection.STABLE
    elif slope > 0:
        direction = TrendDirection.RISING
    else:
        direction = TrendDirection.FALLING
    return direction, slope, max(0.0, min(1.0, r_squared))


def data_quality(timestamps: list[datetime]) -> int:
    """Score 0-100 from sample volume, penalizing long and irregular gaps."""
    if not timestamps:
        return 0

    quality = 50
    if len(timestamps) >= 30:
        quality += 30
    elif len(timestamps) >= 14:
        quality += 20
    elif len(timestamps) >= 7:
        quality += 10

    ordered = sorted(timestamps)
    gaps = [(b - a).total_seconds() for a, b in zip(ordered, ordered[1:], strict=False)]
    if gaps:
        max_gap = max(gaps)
        if max_gap > 3 * _ONE_DAY_SECONDS:
            quality -= 15
        elif max_gap > 2 * _ONE_DAY_SECONDS:
            quality -= 10
        if statistics.pvariance(gaps) > _ONE_DAY_SECONDS**2:
            quality -= 10

    return max(0, min(100, quality))


def extract_samples(
    observations: Iterable[ObservationEvent],
    subject_type: SubjectType,
    subject_id: str,
    metric_kind: MetricKind,
) -> list[Sample]:
    samples = []
    for event in observations:
        if not event.refers_to(subject_type, subject_id):
            continue
        value = event.metric_value(metric_kind)
        if value is not None:
            samples.append(Sample(timestamp=event.occurred_at, value=value, observation_id=event.id))
    return sorted(samples, key=lambda s: s.timestamp)


def baseline_subjects(
    observations: Iterable[ObservationEvent],
) -> set[tuple[SubjectType, str, MetricKind]]:
    """Every (subject, metric) pair some observation carries a value for."""
    pairs: set[tuple[SubjectType, str, MetricKind]] = set()
    for event in observations:
        for kind, spec in METRIC_SPECS.items():
            if event.metric_value(kind) is None:
                continue
            if spec.subject_type == SubjectType.CAREGIVER:
                subject_id = event.caregiver_id
            elif event.subject_type == SubjectType.RESIDENT:
                subject_id = event.subject_id
            else:
                subject_id = None
            if subject_id:
                pairs.add((spec.subject_type, subject_id, kind))
    return pairs


class BaselineEstimator:
    """Computes Baseline records from metric samples."""

    def __init__(self, config: BaselineConfig | None = None) -> None:
        self.config = config or BaselineConfig()
        self.logger = logger.bind(component="baseline_estimator")

    def min_samples(self, metric_kind: MetricKind) -> int:
        if METRIC_SPECS[metric_kind].metric_class == MetricClass.CLINICAL:
            return self.config.min_samples_clinical
        return self.config.min_samples_performance

    def confidence(self, sample_count: int) -> float:
        """Monotonic in sample count, saturating at high_confidence."""
        if sample_count >= self.config.confidence_sample_threshold:
            return self.config.high_confidence
        return self.config.low_confidence

    def recompute(
        self,
        tenant_id: str,
        subject_type: SubjectType,
        subject_id: str,
        metric_kind: MetricKind,
        samples: list[Sample],
        as_of: datetime,
    ) -> Baseline | None:
        """
        Build a fresh baseline from samples strictly before `as_of`.

        Returns None when the long window holds fewer samples than the metric
        minimum; callers must then leave any stored baseline untouched.
        """
        long_start = as_of - timedelta(days=self.config.long_window_days)
        short_start = as_of - timedelta(days=self.config.short_window_days)

        long_window = [s for s in samples if long_start <= s.timestamp < as_of]
        short_window = [s for s in long_window if s.timestamp >= short_start]

        required = self.min_samples(metric_kind)
        if len(long_window) < required:
            self.logger.debug(
                "baseline_skipped_insufficient_samples",
                tenant_id=tenant_id,
                subject_id=subject_id,
                metric_kind=metric_kind.value,
                sample_count=len(long_window),
                required=required,
            )
            return None

        long_values = [s.value for s in long_window]
        direction, velocity, trend_confidence = linear_trend(long_values)

        return Baseline(
            tenant_id=tenant_id,
            subject_type=subject_type,
            subject_id=subject_id,
            metric_kind=metric_kind,
            window_7d=window_stats([s.value for s in short_window]),
            window_30d=window_stats(long_values),
            confidence=self.confidence(len(long_window)),
            trend_direction=direction,
            trend_velocity=velocity,
            trend_confidence=trend_confidence,
            data_quality=data_quality([s.timestamp for s in long_window]),
            as_of=as_of,
            computed_at=utc_now(),
        )
