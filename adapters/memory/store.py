"""
In-memory implementation of the pipeline store and tenant registry.

Single event loop, so each method body runs without interleaving; the
check-then-insert in `add_observation` and the version check in
`compare_and_set_care_state` are therefore atomic.
"""

from collections import defaultdict
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import structlog

from caresignal.domain.errors import NotFoundError, VersionConflictError
from caresignal.domain.models import (
    Anomaly,
    Baseline,
    CareState,
    MetricKind,
    ObservationEvent,
    PrioritizedIssue,
    RiskScore,
    SourceKind,
    SubjectType,
)

logger = structlog.get_logger(__name__)

_EPOCH = datetime.min.replace(tzinfo=UTC)


class InMemoryPipelineStore:
    """Dict-backed store; every collection is keyed or filtered by tenant."""

    def __init__(self) -> None:
        self._observations: dict[str, list[ObservationEvent]] = defaultdict(list)
        self._observation_keys: set[tuple[SourceKind, str]] = set()
        self._watermarks: dict[str, datetime] = {}
        self._baselines: dict[tuple[str, SubjectType, str, MetricKind], Baseline] = {}
        self._anomalies: dict[str, dict[UUID, Anomaly]] = defaultdict(dict)
        self._risk_scores: dict[str, list[RiskScore]] = defaultdict(list)
        self._issues: dict[str, dict[UUID, PrioritizedIssue]] = defaultdict(dict)
        self._care_states: dict[str, CareState] = {}
        self.logger = logger.bind(component="memory_store")

    # Observations

    async def add_observation(self, event: ObservationEvent) -> bool:
        if event.dedup_key in self._observation_keys:
            return False
        self._observation_keys.add(event.dedup_key)
        self._observations[event.tenant_id].append(event)
        return True

    async def has_observation(self, source_kind: SourceKind, source_id: str) -> bool:
        return (source_kind, source_id) in self._observation_keys

    async def list_observations(
        self,
        tenant_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ObservationEvent]:
        events = [
            e
            for e in self._observations.get(tenant_id, [])
            if (since is None or e.occurred_at >= since)
            and (until is None or e.occurred_at < until)
        ]
        return sorted(events, key=lambda e: e.occurred_at)

    async def count_unprocessed(self, tenant_id: str, occurred_since: datetime) -> int:
        watermark = self._watermarks.get(tenant_id, _EPOCH)
        return sum(
            1
            for e in self._observations.get(tenant_id, [])
            if e.ingested_at > watermark and e.occurred_at >= occurred_since
        )

    async def mark_processed(self, tenant_id: str, up_to: datetime) -> None:
        current = self._watermarks.get(tenant_id, _EPOCH)
        self._watermarks[tenant_id] = max(current, up_to)

    # Baselines

    async def get_baseline(
        self,
        tenant_id: str,
        subject_type: SubjectType,
        subject_id: str,
        metric_kind: MetricKind,
    ) -> Baseline | None:
        return self._baselines.get((tenant_id, subject_type, subject_id, metric_kind))

    async def put_baseline(self, baseline: Baseline) -> None:
        self._baselines[baseline.key] = baseline

    async def list_baselines(self, tenant_id: str) -> list[Baseline]:
        return [b for key, b in self._baselines.items() if key[0] == tenant_id]

    # Anomalies

    async def add_anomaly(self, anomaly: Anomaly) -> None:
        if anomaly.id in self._anomalies[anomaly.tenant_id]:
            raise ValueError(f"anomaly {anomaly.id} already stored")
        self._anomalies[anomaly.tenant_id][anomaly.id] = anomaly

    async def get_anomaly(self, tenant_id: str, anomaly_id: UUID) -> Anomaly | None:
        return self._anomalies.get(tenant_id, {}).get(anomaly_id)

    async def update_anomaly(self, anomaly: Anomaly) -> None:
        if anomaly.id not in self._anomalies.get(anomaly.tenant_id, {}):
            raise NotFoundError(f"anomaly {anomaly.id} not found")
        self._anomalies[anomaly.tenant_id][anomaly.id] = anomaly

    async def list_anomalies(self, tenant_id: str, run_id: UUID | None = None) -> list[Anomaly]:
        anomalies = [
            a
            for a in self._anomalies.get(tenant_id, {}).values()
            if run_id is None or a.run_id == run_id
        ]
        return sorted(anomalies, key=lambda a: a.detected_at)

    # Risk scores

    async def add_risk_score(self, risk: RiskScore) -> None:
        self._risk_scores[risk.tenant_id].append(risk)

    async def list_risk_scores(
        self,
        tenant_id: str,
        subject_type: SubjectType | None = None,
        subject_id: str | None = None,
    ) -> list[RiskScore]:
        return [
            r
            for r in self._risk_scores.get(tenant_id, [])
            if (subject_type is None or r.subject_type == subject_type)
            and (subject_id is None or r.subject_id == subject_id)
        ]

    # Issues

    async def add_issue(self, issue: PrioritizedIssue) -> None:
        self._issues[issue.tenant_id][issue.id] = issue

    async def get_issue(self, tenant_id: str, issue_id: UUID) -> PrioritizedIssue | None:
        return self._issues.get(tenant_id, {}).get(issue_id)

    async def update_issue(self, issue: PrioritizedIssue) -> None:
        if issue.id not in self._issues.get(issue.tenant_id, {}):
            raise NotFoundError(f"issue {issue.id} not found")
        self._issues[issue.tenant_id][issue.id] = issue

    async def list_issues(
        self,
        tenant_id: str,
        subject_type: SubjectType | None = None,
        subject_id: str | None = None,
        open_only: bool = False,
    ) -> list[PrioritizedIssue]:
        return [
            i
            for i in self._issues.get(tenant_id, {}).values()
            if (subject_type is None or i.subject_type == subject_type)
            and (subject_id is None or i.subject_id == subject_id)
            and (not open_only or i.is_open)
        ]

    # Care state

    async def get_care_state(self, tenant_id: str) -> CareState:
        return self._care_states.get(tenant_id) or CareState(tenant_id=tenant_id)

    async def compare_and_set_care_state(
        self, tenant_id: str, expected_version: int, changes: Mapping[str, Any]
    ) -> CareState:
        current = await self.get_care_state(tenant_id)
        if current.version != expected_version:
            raise VersionConflictError(tenant_id, expected_version, current.version)

        forbidden = {"tenant_id", "version"} & set(changes)
        if forbidden:
            raise ValueError(f"care state fields cannot be set directly: {sorted(forbidden)}")

        updated = CareState.model_validate(
            {**current.model_dump(), **changes, "version": current.version + 1}
        )
        self._care_states[tenant_id] = updated
        self.logger.debug("care_state_updated", tenant_id=tenant_id, version=updated.version)
        return updated


class StaticTenantRegistry:
    """Fixed list of active tenants."""

    def __init__(self, tenant_ids: Iterable[str] = ()) -> None:
        self._tenant_ids = list(dict.fromkeys(tenant_ids))

    def activate(self, tenant_id: str) -> None:
        if tenant_id not in self._tenant_ids:
            self._tenant_ids.append(tenant_id)

    def deactivate(self, tenant_id: str) -> None:
        if tenant_id in self._tenant_ids:
            self._tenant_ids.remove(tenant_id)

    async def active_tenants(self) -> list[str]:
        return list(self._tenant_ids)
