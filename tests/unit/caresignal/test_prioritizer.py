"""
Tests for issue prioritization and the reviewer lifecycle.
"""

from datetime import datetime
from uuid import uuid4

import pytest
from hypothesis import given
from hypothesis import strategies as st

from caresignal.domain.errors import InvalidTransitionError
from caresignal.domain.models import (
    AnomalyType,
    ContributingFactor,
    IssueAction,
    IssueStatus,
    PrioritizedIssue,
    RiskCategory,
    RiskLevel,
    RiskScore,
    SubjectType,
)
from caresignal.services.prioritizer import (
    TRANSITIONS,
    IssuePrioritizer,
    apply_transition,
    assign,
    priority_score,
)

TENANT = "tenant-a"
WHEN = datetime.fromisoformat("2026-03-02T12:00:00+00:00")


def _risk(
    score: int = 30,
    subject_type: SubjectType = SubjectType.RESIDENT,
    category: RiskCategory = RiskCategory.RESIDENT_HEALTH,
    confidence: float = 0.85,
) -> RiskScore:
    return RiskScore(
        tenant_id=TENANT,
        run_id=uuid4(),
        subject_type=subject_type,
        subject_id="s-1",
        category=category,
        risk_type=AnomalyType.DEVIATION,
        score=score,
        level=RiskLevel.LOW,
        confidence=confidence,
        anomaly_ids=[uuid4()],
        contributing_factors=[
            ContributingFactor(anomaly_type=AnomalyType.DEVIATION, count=1, weight=score)
        ],
        suggested_interventions=["Schedule clinical assessment"],
    )


@pytest.fixture
def prioritizer() -> IssuePrioritizer:
    return IssuePrioritizer()


@pytest.fixture
def issue(prioritizer: IssuePrioritizer) -> PrioritizedIssue:
    return prioritizer.prioritize(_risk(), created_at=WHEN)


class TestPriorityScore:
    def test_resident_health_example(self) -> None:
        assert priority_score(80, 30, 0.85) == 20.4

    def test_caregiver_performance_example(self) -> None:
        assert priority_score(70, 45, 0.80) == 25.2

    @given(
        urgency=st.integers(min_value=0, max_value=100),
        score=st.integers(min_value=0, max_value=100),
        confidence=st.floats(min_value=0.0, max_value=1.0),
    )
    def test_deterministic_and_bounded(self, urgency: int, score: int, confidence: float) -> None:
        first = priority_score(urgency, score, confidence)
        assert first == priority_score(urgency, score, confidence)
        assert 0.0 <= first <= 100.0


class TestPrioritize:
    def test_resident_issue_fields(self, issue: PrioritizedIssue) -> None:
        assert issue.status == IssueStatus.NEW
        assert issue.issue_type == "health_risk"
        assert issue.title == "Resident Health Risk"
        assert issue.urgency_score == 80
        assert issue.severity_score == 30
        assert issue.priority_score == 20.4
        assert issue.created_at == WHEN
        assert "30/100" in issue.description
        assert issue.suggested_actions[0] == "Review resident status"

    def test_issue_traces_back_to_risk(self, prioritizer: IssuePrioritizer) -> None:
        risk = _risk()
        issue = prioritizer.prioritize(risk)

        assert issue.risk_score_id == risk.id
        assert issue.anomaly_ids == risk.anomaly_ids
        assert issue.run_id == risk.run_id

    def test_caregiver_issue_uses_lower_urgency(self, prioritizer: IssuePrioritizer) -> None:
        issue = prioritizer.prioritize(
            _risk(
                score=45,
                subject_type=SubjectType.CAREGIVER,
                category=RiskCategory.CAREGIVER_PERFORMANCE,
                confidence=0.80,
            )
        )

        assert issue.issue_type == "workload_risk"
        assert issue.title == "Caregiver Performance Risk"
        assert issue.urgency_score == 70
        assert issue.priority_score == 25.2

    def test_same_risk_same_priority(self, prioritizer: IssuePrioritizer) -> None:
        risk = _risk(score=55)
        assert prioritizer.prioritize(risk).priority_score == (
            prioritizer.prioritize(risk).priority_score
        )


class TestLifecycle:
    def test_full_happy_path(self, issue: PrioritizedIssue) -> None:
        acknowledged = apply_transition(issue, IssueAction.ACKNOWLEDGE, "sup-1", at=WHEN)
        investigating = apply_transition(acknowledged, IssueAction.INVESTIGATE, "sup-1")
        acted = apply_transition(investigating, IssueAction.TAKE_ACTION, "nurse-1")
        resolved = apply_transition(acted, IssueAction.RESOLVE, "nurse-1", notes="Stable")

        assert acknowledged.acknowledged_by == "sup-1"
        assert acknowledged.acknowledged_at == WHEN
        assert resolved.status == IssueStatus.RESOLVED
        assert resolved.resolved_by == "nurse-1"
        assert resolved.resolution_notes == "Stable"
        assert not resolved.is_open

    def test_transition_does_not_mutate_input(self, issue: PrioritizedIssue) -> None:
        apply_transition(issue, IssueAction.ACKNOWLEDGE, "sup-1")
        assert issue.status == IssueStatus.NEW

    def test_dismiss_from_new(self, issue: PrioritizedIssue) -> None:
        dismissed = apply_transition(issue, IssueAction.DISMISS, "sup-1", notes="False alarm")
        assert dismissed.status == IssueStatus.DISMISSED
        assert dismissed.resolution_notes == "False alarm"

    @pytest.mark.parametrize(
        "status,action",
        [
            (IssueStatus.NEW, IssueAction.RESOLVE),
            (IssueStatus.NEW, IssueAction.TAKE_ACTION),
            (IssueStatus.ACKNOWLEDGED, IssueAction.ACKNOWLEDGE),
            (IssueStatus.RESOLVED, IssueAction.INVESTIGATE),
            (IssueStatus.RESOLVED, IssueAction.DISMISS),
            (IssueStatus.DISMISSED, IssueAction.ACKNOWLEDGE),
        ],
    )
    def test_invalid_transitions_raise(
        self, issue: PrioritizedIssue, status: IssueStatus, action: IssueAction
    ) -> None:
        with pytest.raises(InvalidTransitionError):
            apply_transition(issue.model_copy(update={"status": status}), action, "sup-1")

    def test_terminal_states_accept_nothing(self, issue: PrioritizedIssue) -> None:
        for status in (IssueStatus.RESOLVED, IssueStatus.DISMISSED):
            closed = issue.model_copy(update={"status": status})
            for action in TRANSITIONS:
                with pytest.raises(InvalidTransitionError):
                    apply_transition(closed, action, "sup-1")

    def test_assign_open_issue(self, issue: PrioritizedIssue) -> None:
        assigned = assign(issue, "nurse-2", "sup-1", at=WHEN)
        assert assigned.assigned_to == "nurse-2"
        assert assigned.assigned_at == WHEN
        assert assigned.status == IssueStatus.NEW

    def test_assign_closed_issue_raises(self, issue: PrioritizedIssue) -> None:
        closed = issue.model_copy(update={"status": IssueStatus.RESOLVED})
        with pytest.raises(InvalidTransitionError):
            assign(closed, "nurse-2", "sup-1")
