"""
Persistence boundary for the pipeline.

Why Protocol over ABC: Structural typing, easier test doubles, no coupling to a
storage engine. Every method is async; adapters may do real I/O.
"""

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

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


class PipelineStore(Protocol):
    """Tenant-scoped storage for every pipeline entity."""

    # Observations (append-only, deduplicated by source)
    async def add_observation(self, event: ObservationEvent) -> bool:
        """Insert unless (source_kind, source_id) exists. Returns False on duplicate."""
        ...

    async def has_observation(self, source_kind: SourceKind, source_id: str) -> bool: ...

    async def list_observations(
        self,
        tenant_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ObservationEvent]: ...

    async def count_unprocessed(self, tenant_id: str, occurred_since: datetime) -> int:
        """Observations ingested after the tenant's processed watermark."""
        ...

    async def mark_processed(self, tenant_id: str, up_to: datetime) -> None: ...

    # Baselines (replace-only)
    async def get_baseline(
        self,
        tenant_id: str,
        subject_type: SubjectType,
        subject_id: str,
        metric_kind: MetricKind,
    ) -> Baseline | None: ...

    async def put_baseline(self, baseline: Baseline) -> None: ...

    async def list_baselines(self, tenant_id: str) -> list[Baseline]: ...

    # Anomalies
    async def add_anomaly(self, anomaly: Anomaly) -> None: ...

    async def get_anomaly(self, tenant_id: str, anomaly_id: UUID) -> Anomaly | None: ...

    async def update_anomaly(self, anomaly: Anomaly) -> None: ...

    async def list_anomalies(
        self, tenant_id: str, run_id: UUID | None = None
    ) -> list[Anomaly]: ...

    # Risk scores
    async def add_risk_score(self, risk: RiskScore) -> None: ...

    async def list_risk_scores(
        self,
        tenant_id: str,
        subject_type: SubjectType | None = None,
        subject_id: str | None = None,
    ) -> list[RiskScore]:
        """Oldest first, so the list reads as a trend."""
        ...

    # Issues
    async def add_issue(self, issue: PrioritizedIssue) -> None: ...

    async def get_issue(self, tenant_id: str, issue_id: UUID) -> PrioritizedIssue | None: ...

    async def update_issue(self, issue: PrioritizedIssue) -> None: ...

    async def list_issues(
        self,
        tenant_id: str,
        subject_type: SubjectType | None = None,
        subject_id: str | None = None,
        open_only: bool = False,
    ) -> list[PrioritizedIssue]: ...

    # Care state (optimistic concurrency)
    async def get_care_state(self, tenant_id: str) -> CareState: ...

    async def compare_and_set_care_state(
        self, tenant_id: str, expected_version: int, changes: Mapping[str, Any]
    ) -> CareState:
        """Apply changes and bump the version, or raise VersionConflictError."""
        ...
