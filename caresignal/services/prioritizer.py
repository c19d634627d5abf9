"""
Issue prioritization and the reviewer-facing issue lifecycle.

The priority score is a pure function of the risk score; narration, assignment
and status changes never feed back into it.
"""

from datetime import datetime

import structlog

from caresignal.config import ScoringConfig
from caresignal.domain.errors import InvalidTransitionError
from caresignal.domain.models import (
    IssueAction,
    IssueStatus,
    PrioritizedIssue,
    RiskCategory,
    RiskScore,
    utc_now,
)

logger = structlog.get_logger(__name__)

_ISSUE_TYPES: dict[RiskCategory, tuple[str, str]] = {
    RiskCategory.RESIDENT_HEALTH: ("health_risk", "Resident Health Risk"),
    RiskCategory.CAREGIVER_PERFORMANCE: ("workload_risk", "Caregiver Performance Risk"),
}

_FIRST_ACTIONS: dict[RiskCategory, str] = {
    RiskCategory.RESIDENT_HEALTH: "Review resident status",
    RiskCategory.CAREGIVER_PERFORMANCE: "Check in with caregiver",
}

TRANSITIONS: dict[IssueAction, tuple[frozenset[IssueStatus], IssueStatus]] = {
    IssueAction.ACKNOWLEDGE: (frozenset({IssueStatus.NEW}), IssueStatus.ACKNOWLEDGED),
    IssueAction.INVESTIGATE: (
        frozenset({IssueStatus.NEW, IssueStatus.ACKNOWLEDGED, IssueStatus.ACTION_TAKEN}),
        IssueStatus.INVESTIGATING,
    ),
    IssueAction.TAKE_ACTION: (
        frozenset({IssueStatus.ACKNOWLEDGED, IssueStatus.INVESTIGATING}),
        IssueStatus.ACTION_TAKEN,
    ),
    IssueAction.RESOLVE: (
        frozenset(
            {IssueStatus.ACKNOWLEDGED, IssueStatus.INVESTIGATING, IssueStatus.ACTION_TAKEN}
        ),
        IssueStatus.RESOLVED,
    ),
    IssueAction.DISMISS: (
        frozenset(
            {
                IssueStatus.NEW,
                IssueStatus.ACKNOWLEDGED,
                IssueStatus.INVESTIGATING,
                IssueStatus.ACTION_TAKEN,
            }
        ),
        IssueStatus.DISMISSED,
    ),
}


def priority_score(urgency: int, risk_score: int, confidence: float) -> float:
    """urgency x score x confidence percent / 10000, rounded to cents."""
    confidence_pct = round(confidence * 100, 4)
    return round(urgency * risk_score * confidence_pct / 10000, 2)


def describe(risk: RiskScore) -> str:
    """Deterministic issue description used when narration is off or unavailable."""
    factors = ", ".join(
        f"{f.count} {f.anomaly_type.value.replace('_', ' ')}" for f in risk.contributing_factors
    )
    return (
        f"{len(risk.anomaly_ids)} anomalies detected for {risk.subject_type.value} "
        f"{risk.subject_id} ({factors}); risk score {risk.score}/100, {risk.level.value}."
    )


def apply_transition(
    issue: PrioritizedIssue,
    action: IssueAction,
    actor_id: str,
    notes: str | None = None,
    at: datetime | None = None,
) -> PrioritizedIssue:
    """Return the issue moved by `action`, or raise InvalidTransitionError."""
    allowed_from, target = TRANSITIONS[action]
    if issue.status not in allowed_from:
        raise InvalidTransitionError(
            f"cannot {action.value} issue {issue.id} in status {issue.status.value}"
        )

    at = at or utc_now()
    changes: dict[str, object] = {"status": target, "updated_by": actor_id, "updated_at": at}
    if action == IssueAction.ACKNOWLEDGE:
        changes.update(acknowledged_by=actor_id, acknowledged_at=at)
    elif action in (IssueAction.RESOLVE, IssueAction.DISMISS):
        changes.update(resolved_by=actor_id, resolved_at=at, resolution_notes=notes)
    elif notes:
        changes["resolution_notes"] = notes

    logger.info(
        "issue_transitioned",
        issue_id=str(issue.id),
        tenant_id=issue.tenant_id,
        action=action.value,
        from_status=issue.status.value,
        to_status=target.value,
        actor_id=actor_id,
    )
    return issue.model_copy(update=changes)


def assign(
    issue: PrioritizedIssue, assignee: str, actor_id: str, at: datetime | None = None
) -> PrioritizedIssue:
    if not issue.is_open:
        raise InvalidTransitionError(f"cannot assign closed issue {issue.id}")
    at = at or utc_now()
    return issue.model_copy(
        update={"assigned_to": assignee, "assigned_at": at, "updated_by": actor_id, "updated_at": at}
    )


class IssuePrioritizer:
    """Turns each RiskScore into a ranked, reviewable issue."""

    def __init__(self, config: ScoringConfig | None = None) -> None:
        self.config = config or ScoringConfig()
        self.logger = logger.bind(component="issue_prioritizer")

    def prioritize(self, risk: RiskScore, created_at: datetime | None = None) -> PrioritizedIssue:
        urgency = self.config.category_urgency[risk.category]
        issue_type, title = _ISSUE_TYPES[risk.category]

        actions = [_FIRST_ACTIONS[risk.category]]
        actions.extend(a for a in risk.suggested_interventions if a not in actions)

        issue = PrioritizedIssue(
            tenant_id=risk.tenant_id,
            run_id=risk.run_id,
            subject_type=risk.subject_type,
            subject_id=risk.subject_id,
            issue_type=issue_type,
            category=risk.category,
            title=title,
            description=describe(risk),
            urgency_score=urgency,
            severity_score=risk.score,
            confidence=risk.confidence,
            priority_score=priority_score(urgency, risk.score, risk.confidence),
            risk_score_id=risk.id,
            anomaly_ids=list(risk.anomaly_ids),
            suggested_actions=actions,
            created_at=created_at or utc_now(),
        )
        self.logger.debug(
            "issue_prioritized",
            tenant_id=risk.tenant_id,
            subject_id=risk.subject_id,
            priority_score=issue.priority_score,
        )
        return issue
