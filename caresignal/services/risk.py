"""
Risk scoring: a run's anomalies folded into one bounded score per subject.
"""

from collections import defaultdict
from datetime import datetime
from uuid import UUID

import structlog

from caresignal.config import ScoringConfig
from caresignal.domain.models import (
    Anomaly,
    AnomalyType,
    ContributingFactor,
    RiskCategory,
    RiskLevel,
    RiskScore,
    SubjectType,
    utc_now,
)

logger = structlog.get_logger(__name__)

INTERVENTIONS: dict[AnomalyType, list[str]] = {
    AnomalyType.DEVIATION: [
        "Schedule clinical assessment",
        "Repeat vital sign measurement",
    ],
    AnomalyType.PATTERN: [
        "Review recent task documentation with assigned caregivers",
        "Observe next scheduled care tasks",
    ],
    AnomalyType.WORKLOAD: [
        "Rebalance caregiver assignments",
        "Check in with caregiver",
    ],
    AnomalyType.DRIFT: [
        "Check in with caregiver",
        "Review task sequencing and support needs",
    ],
    AnomalyType.TREND: [
        "Review vital sign trend with nursing staff",
        "Increase measurement frequency",
    ],
}

_DEFAULT_INTERVENTIONS = ["Review detected anomalies"]


def category_for(subject_type: SubjectType) -> RiskCategory:
    if subject_type == SubjectType.RESIDENT:
        return RiskCategory.RESIDENT_HEALTH
    return RiskCategory.CAREGIVER_PERFORMANCE


class RiskScorer:
    """Weighted sum of anomaly types, clamped to [0, 100]."""

    def __init__(self, config: ScoringConfig | None = None) -> None:
        self.config = config or ScoringConfig()
        self.logger = logger.bind(component="risk_scorer")

    def weight(self, anomaly_type: AnomalyType) -> int:
        return self.config.anomaly_weights.get(anomaly_type, self.config.default_weight)

    def level(self, score: int) -> RiskLevel:
        if score >= self.config.high_threshold:
            return RiskLevel.HIGH
        if score >= self.config.medium_threshold:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def score(
        self,
        tenant_id: str,
        subject_type: SubjectType,
        subject_id: str,
        anomalies: list[Anomaly],
        run_id: UUID,
        computed_at: datetime | None = None,
    ) -> RiskScore:
        if not anomalies:
            raise ValueError("a risk score needs at least one anomaly")

        counts: dict[AnomalyType, int] = defaultdict(int)
        for anomaly in anomalies:
            counts[anomaly.anomaly_type] += 1

        raw_total = sum(self.weight(t) * n for t, n in counts.items())
        score = max(0, min(100, raw_total))
        category = category_for(subject_type)

        interventions: list[str] = []
        for anomaly_type in counts:
            for action in INTERVENTIONS.get(anomaly_type, _DEFAULT_INTERVENTIONS):
                if action not in interventions:
                    interventions.append(action)

        return RiskScore(
            tenant_id=tenant_id,
            run_id=run_id,
            subject_type=subject_type,
            subject_id=subject_id,
            category=category,
            risk_type=anomalies[0].anomaly_type,
            score=score,
            level=self.level(score),
            confidence=self.config.category_confidence[category],
            anomaly_ids=[a.id for a in anomalies],
            contributing_factors=[
                ContributingFactor(anomaly_type=t, count=n, weight=self.weight(t) * n)
                for t, n in counts.items()
            ],
            suggested_interventions=interventions,
            computed_at=computed_at or utc_now(),
        )

    def score_run(
        self,
        tenant_id: str,
        run_id: UUID,
        anomalies: list[Anomaly],
        computed_at: datetime | None = None,
    ) -> list[RiskScore]:
        """One RiskScore per subject with at least one anomaly in this run."""
        grouped: dict[tuple[SubjectType, str], list[Anomaly]] = defaultdict(list)
        unscored = 0
        for anomaly in anomalies:
            if anomaly.subject_type is None or anomaly.subject_id is None:
                unscored += 1
                continue
            grouped[(anomaly.subject_type, anomaly.subject_id)].append(anomaly)

        if unscored:
            self.logger.debug("subjectless_anomalies_not_scored", count=unscored)

        return [
            self.score(tenant_id, subject_type, subject_id, subject_anomalies, run_id, computed_at)
            for (subject_type, subject_id), subject_anomalies in grouped.items()
        ]
