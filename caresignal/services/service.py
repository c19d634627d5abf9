"""
CareSignalService: the surface dashboards, ingestion endpoints and operators call.

Reads never trigger computation; they return what the last runs committed.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog

from caresignal.domain.errors import (
    InvalidTransitionError,
    MalformedEventError,
    NotFoundError,
    VersionConflictError,
)
from caresignal.domain.models import (
    Anomaly,
    AnomalyStatus,
    CareState,
    IssueAction,
    ObservationEvent,
    PipelineRunResult,
    PrioritizedIssue,
    SubjectOverview,
    SubjectType,
    TriggerKind,
    utc_now,
)
from caresignal.services.aggregator import IngestOutcome
from caresignal.services.orchestrator import PipelineOrchestrator
from caresignal.services.prioritizer import apply_transition, assign
from caresignal.services.result import Result
from caresignal.services.scheduler import BacklogWatcher
from caresignal.services.store import PipelineStore

logger = structlog.get_logger(__name__)

RISK_TREND_LENGTH = 10
OPERATOR_FIELDS = frozenset({"mode", "mode_pinned", "pipeline_paused"})

_ANOMALY_TRANSITIONS: dict[AnomalyStatus, frozenset[AnomalyStatus]] = {
    AnomalyStatus.DETECTED: frozenset({AnomalyStatus.ACKNOWLEDGED, AnomalyStatus.DISMISSED}),
    AnomalyStatus.ACKNOWLEDGED: frozenset({AnomalyStatus.DISMISSED}),
    AnomalyStatus.DISMISSED: frozenset(),
}


def rank_issues(issues: list[PrioritizedIssue]) -> list[PrioritizedIssue]:
    """Highest priority first; older issues win ties."""
    return sorted(issues, key=lambda i: (-i.priority_score, i.created_at))


class CareSignalService:
    """Facade over the store and orchestrator for external callers."""

    def __init__(
        self,
        store: PipelineStore,
        orchestrator: PipelineOrchestrator,
        backlog_watcher: BacklogWatcher | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.backlog_watcher = backlog_watcher
        self._clock = clock
        self.logger = logger.bind(component="care_signal_service")

    # Ingestion

    async def ingest(
        self, raw: Any
    ) -> Result[IngestOutcome, MalformedEventError]:
        """Push one raw record; a new observation may trip the backlog trigger."""
        outcome = await self.orchestrator.aggregator.ingest(raw)
        if outcome.is_ok() and self.backlog_watcher is not None:
            event = outcome.unwrap()
            if isinstance(event, ObservationEvent):
                await self.backlog_watcher.check(event.tenant_id)
        return outcome

    # Queries

    async def subject_overview(
        self, tenant_id: str, subject_type: SubjectType, subject_id: str
    ) -> SubjectOverview:
        risks = await self.store.list_risk_scores(tenant_id, subject_type, subject_id)
        issues = await self.store.list_issues(
            tenant_id, subject_type=subject_type, subject_id=subject_id, open_only=True
        )
        return SubjectOverview(
            tenant_id=tenant_id,
            subject_type=subject_type,
            subject_id=subject_id,
            current_risk=risks[-1] if risks else None,
            risk_trend=risks[-RISK_TREND_LENGTH:],
            open_issues=rank_issues(issues),
        )

    async def open_issues(self, tenant_id: str) -> list[PrioritizedIssue]:
        return rank_issues(await self.store.list_issues(tenant_id, open_only=True))

    async def care_state(self, tenant_id: str) -> CareState:
        return await self.store.get_care_state(tenant_id)

    # Lifecycle

    async def transition_issue(
        self,
        tenant_id: str,
        issue_id: UUID,
        action: IssueAction,
        actor_id: str,
        notes: str | None = None,
    ) -> PrioritizedIssue:
        issue = await self._get_issue(tenant_id, issue_id)
        updated = apply_transition(issue, action, actor_id, notes, at=self._clock())
        await self.store.update_issue(updated)
        if issue.is_open != updated.is_open:
            await self._refresh_open_issue_count(tenant_id, actor_id)
        return updated

    async def assign_issue(
        self, tenant_id: str, issue_id: UUID, assignee: str, actor_id: str
    ) -> PrioritizedIssue:
        issue = await self._get_issue(tenant_id, issue_id)
        updated = assign(issue, assignee, actor_id, at=self._clock())
        await self.store.update_issue(updated)
        self.logger.info(
            "issue_assigned", tenant_id=tenant_id, issue_id=str(issue_id), assignee=assignee
        )
        return updated

    async def update_anomaly_status(
        self, tenant_id: str, anomaly_id: UUID, status: AnomalyStatus, actor_id: str
    ) -> Anomaly:
        anomaly = await self.store.get_anomaly(tenant_id, anomaly_id)
        if anomaly is None:
            raise NotFoundError(f"anomaly {anomaly_id} not found for tenant {tenant_id}")
        if status not in _ANOMALY_TRANSITIONS[anomaly.status]:
            raise InvalidTransitionError(
                f"anomaly {anomaly_id} cannot move from {anomaly.status.value} to {status.value}"
            )

        updated = anomaly.model_copy(
            update={
                "status": status,
                "status_changed_by": actor_id,
                "status_changed_at": self._clock(),
            }
        )
        await self.store.update_anomaly(updated)
        self.logger.info(
            "anomaly_status_changed",
            tenant_id=tenant_id,
            anomaly_id=str(anomaly_id),
            status=status.value,
            actor_id=actor_id,
        )
        return updated

    # Operators

    async def trigger_tenant(self, tenant_id: str) -> PipelineRunResult | None:
        """Manual run; None when the tenant is already running or paused."""
        return await self.orchestrator.run_tenant(tenant_id, TriggerKind.MANUAL)

    async def update_care_state(
        self, tenant_id: str, expected_version: int, actor_id: str, **changes: Any
    ) -> CareState:
        """Operator mutation of mode, mode pinning or pause. Stale versions are rejected."""
        unknown = set(changes) - OPERATOR_FIELDS
        if unknown:
            raise ValueError(f"care state fields not settable by operators: {sorted(unknown)}")

        updated = await self.store.compare_and_set_care_state(
            tenant_id,
            expected_version,
            {**changes, "updated_by": actor_id, "updated_at": self._clock()},
        )
        self.logger.info(
            "care_state_changed_by_operator",
            tenant_id=tenant_id,
            version=updated.version,
            actor_id=actor_id,
            changes=sorted(changes),
        )
        return updated

    async def _get_issue(self, tenant_id: str, issue_id: UUID) -> PrioritizedIssue:
        issue = await self.store.get_issue(tenant_id, issue_id)
        if issue is None:
            raise NotFoundError(f"issue {issue_id} not found for tenant {tenant_id}")
        return issue

    async def _refresh_open_issue_count(self, tenant_id: str, actor_id: str) -> None:
        open_count = len(await self.store.list_issues(tenant_id, open_only=True))
        for _ in range(3):
            current = await self.store.get_care_state(tenant_id)
            try:
                await self.store.compare_and_set_care_state(
                    tenant_id,
                    current.version,
                    {
                        "open_issue_count": open_count,
                        "updated_by": actor_id,
                        "updated_at": self._clock(),
                    },
                )
                return
            except VersionConflictError:
                continue
        self.logger.warning("open_issue_count_refresh_gave_up", tenant_id=tenant_id)
