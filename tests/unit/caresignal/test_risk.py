"""
Tests for risk scoring: weights, bounding, levels and per-subject grouping.
"""

from datetime import datetime
from uuid import UUID, uuid4

import pytest
from hypothesis import given
from hypothesis import strategies as st

from caresignal.config import ScoringConfig
from caresignal.domain.models import (
    Anomaly,
    AnomalyType,
    RiskCategory,
    RiskLevel,
    Severity,
    SubjectType,
)
from caresignal.services.risk import RiskScorer

TENANT = "tenant-a"
RUN_ID = uuid4()
WHEN = datetime.fromisoformat("2026-03-02T12:00:00+00:00")


def _anomaly(
    anomaly_type: AnomalyType,
    subject_type: SubjectType | None = SubjectType.RESIDENT,
    subject_id: str | None = "r-1",
    run_id: UUID = RUN_ID,
) -> Anomaly:
    return Anomaly(
        tenant_id=TENANT,
        run_id=run_id,
        subject_type=subject_type,
        subject_id=subject_id,
        anomaly_type=anomaly_type,
        subtype="test",
        severity=Severity.MEDIUM,
        window_start=WHEN,
        window_end=WHEN,
        confidence=0.9,
    )


@pytest.fixture
def scorer() -> RiskScorer:
    return RiskScorer(ScoringConfig())


class TestScore:
    def test_single_deviation_scores_thirty_low(self, scorer: RiskScorer) -> None:
        anomaly = _anomaly(AnomalyType.DEVIATION)

        risk = scorer.score(TENANT, SubjectType.RESIDENT, "r-1", [anomaly], RUN_ID)

        assert risk.score == 30
        assert risk.level == RiskLevel.LOW
        assert risk.category == RiskCategory.RESIDENT_HEALTH
        assert risk.confidence == 0.85
        assert risk.risk_type == AnomalyType.DEVIATION
        assert risk.anomaly_ids == [anomaly.id]
        assert "Schedule clinical assessment" in risk.suggested_interventions

    @pytest.mark.parametrize(
        "types,score,level",
        [
            ([AnomalyType.DEVIATION, AnomalyType.PATTERN], 50, RiskLevel.MEDIUM),
            ([AnomalyType.DEVIATION, AnomalyType.DEVIATION], 60, RiskLevel.HIGH),
            ([AnomalyType.PATTERN, AnomalyType.PATTERN], 40, RiskLevel.MEDIUM),
            ([AnomalyType.DEVIATION] * 5, 100, RiskLevel.HIGH),
        ],
    )
    def test_weights_and_levels(
        self,
        scorer: RiskScorer,
        types: list[AnomalyType],
        score: int,
        level: RiskLevel,
    ) -> None:
        risk = scorer.score(
            TENANT, SubjectType.RESIDENT, "r-1", [_anomaly(t) for t in types], RUN_ID
        )

        assert risk.score == score
        assert risk.level == level

    def test_caregiver_category_and_confidence(self, scorer: RiskScorer) -> None:
        anomalies = [
            _anomaly(AnomalyType.WORKLOAD, SubjectType.CAREGIVER, "c-1"),
            _anomaly(AnomalyType.DRIFT, SubjectType.CAREGIVER, "c-1"),
        ]

        risk = scorer.score(TENANT, SubjectType.CAREGIVER, "c-1", anomalies, RUN_ID)

        assert risk.score == 45
        assert risk.level == RiskLevel.MEDIUM
        assert risk.category == RiskCategory.CAREGIVER_PERFORMANCE
        assert risk.confidence == 0.80
        assert {f.anomaly_type for f in risk.contributing_factors} == {
            AnomalyType.WORKLOAD,
            AnomalyType.DRIFT,
        }

    def test_unlisted_types_use_default_weight(self) -> None:
        scorer = RiskScorer(ScoringConfig(anomaly_weights={AnomalyType.DEVIATION: 30}))

        risk = scorer.score(
            TENANT, SubjectType.RESIDENT, "r-1", [_anomaly(AnomalyType.PATTERN)], RUN_ID
        )

        assert risk.score == 15

    def test_empty_anomaly_list_is_rejected(self, scorer: RiskScorer) -> None:
        with pytest.raises(ValueError):
            scorer.score(TENANT, SubjectType.RESIDENT, "r-1", [], RUN_ID)

    @given(types=st.lists(st.sampled_from(list(AnomalyType)), min_size=1, max_size=40))
    def test_score_is_always_bounded(self, types: list[AnomalyType]) -> None:
        scorer = RiskScorer()
        risk = scorer.score(
            TENANT, SubjectType.RESIDENT, "r-1", [_anomaly(t) for t in types], RUN_ID
        )

        assert 0 <= risk.score <= 100
        assert risk.level == scorer.level(risk.score)
        assert len(risk.anomaly_ids) == len(types)


class TestScoreRun:
    def test_one_score_per_subject(self, scorer: RiskScorer) -> None:
        anomalies = [
            _anomaly(AnomalyType.DEVIATION, SubjectType.RESIDENT, "r-1"),
            _anomaly(AnomalyType.PATTERN, SubjectType.RESIDENT, "r-1"),
            _anomaly(AnomalyType.DEVIATION, SubjectType.RESIDENT, "r-2"),
            _anomaly(AnomalyType.WORKLOAD, SubjectType.CAREGIVER, "c-1"),
        ]

        risks = scorer.score_run(TENANT, RUN_ID, anomalies)

        by_subject = {(r.subject_type, r.subject_id): r.score for r in risks}
        assert by_subject == {
            (SubjectType.RESIDENT, "r-1"): 50,
            (SubjectType.RESIDENT, "r-2"): 30,
            (SubjectType.CAREGIVER, "c-1"): 25,
        }

    def test_subjectless_anomalies_are_not_scored(self, scorer: RiskScorer) -> None:
        anomalies = [_anomaly(AnomalyType.PATTERN, subject_type=None, subject_id=None)]

        assert scorer.score_run(TENANT, RUN_ID, anomalies) == []

    def test_no_anomalies_no_scores(self, scorer: RiskScorer) -> None:
        assert scorer.score_run(TENANT, RUN_ID, []) == []
