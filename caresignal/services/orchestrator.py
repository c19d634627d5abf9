"""
Pipeline orchestration: one tenant run through every stage, in order.

Architecture pattern: sequential stages per tenant, concurrent tenants.

1. Aggregate raw records into observations
2. Recompute baselines
3. Detect anomalies
4. Score risk per subject
5. Prioritize issues
6. Refresh the tenant's CareState summary

A stage commits its own outputs; a later failure or a timeout never rolls
them back. At most one run per tenant is in flight at any time.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID, uuid4

import structlog

from caresignal.config import AppConfig, get_config
from caresignal.domain.errors import StageError, VersionConflictError
from caresignal.domain.models import (
    Anomaly,
    CareMode,
    CareState,
    ObservationEvent,
    PipelineRunResult,
    RiskLevel,
    RiskScore,
    RunState,
    StageCounts,
    TriggerKind,
    utc_now,
)
from caresignal.services.aggregator import ObservationAggregator
from caresignal.services.baseline import BaselineEstimator, baseline_subjects, extract_samples
from caresignal.services.detectors import DetectionContext, DetectorRegistry
from caresignal.services.narration import IssueNarrator
from caresignal.services.prioritizer import IssuePrioritizer
from caresignal.services.risk import RiskScorer
from caresignal.services.store import PipelineStore

logger = structlog.get_logger(__name__)

_CARE_STATE_RETRIES = 3
PIPELINE_ACTOR = "pipeline"


@dataclass
class RunContext:
    """Mutable working set of one tenant run, shared between stages."""

    tenant_id: str
    run_id: UUID
    trigger: TriggerKind
    now: datetime
    care_state: CareState
    counts: StageCounts = field(default_factory=StageCounts)
    stage: str | None = None
    observations: list[ObservationEvent] = field(default_factory=list)
    anomalies: list[Anomaly] = field(default_factory=list)
    risks: list[RiskScore] = field(default_factory=list)
    detector_failures: list[str] = field(default_factory=list)


def derive_mode(risks: list[RiskScore]) -> CareMode:
    levels = {r.level for r in risks}
    if RiskLevel.HIGH in levels:
        return CareMode.EMERGENCY
    if RiskLevel.MEDIUM in levels:
        return CareMode.ELEVATED
    return CareMode.NORMAL


class PipelineOrchestrator:
    """
    Runs the care signal pipeline per tenant.

    Design principles:
    - Per-tenant mutual exclusion (a trigger finding a run in flight is a no-op)
    - Stage failures are tenant-local and recorded, never raised to triggers
    - Bounded runs (timeout below the schedule interval)
    """

    def __init__(
        self,
        store: PipelineStore,
        aggregator: ObservationAggregator,
        estimator: BaselineEstimator | None = None,
        registry: DetectorRegistry | None = None,
        scorer: RiskScorer | None = None,
        prioritizer: IssuePrioritizer | None = None,
        narrator: IssueNarrator | None = None,
        config: AppConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config or get_config()
        self.store = store
        self.aggregator = aggregator
        self.estimator = estimator or BaselineEstimator(self.config.baseline)
        self.registry = registry or DetectorRegistry.default()
        self.scorer = scorer or RiskScorer(self.config.scoring)
        self.prioritizer = prioritizer or IssuePrioritizer(self.config.scoring)
        self.narrator = narrator or IssueNarrator(self.config.narration)
        self._clock = clock

        self._locks: dict[str, asyncio.Lock] = {}
        self._states: dict[str, RunState] = {}
        self._last_results: dict[str, PipelineRunResult] = {}
        self.logger = logger.bind(component="pipeline_orchestrator")

    def state_of(self, tenant_id: str) -> RunState:
        return self._states.get(tenant_id, RunState.IDLE)

    def last_result(self, tenant_id: str) -> PipelineRunResult | None:
        return self._last_results.get(tenant_id)

    async def run_tenant(
        self, tenant_id: str, trigger: TriggerKind = TriggerKind.MANUAL
    ) -> PipelineRunResult | None:
        """
        Run the pipeline once for a tenant.

        Returns None when the run was skipped: the tenant already has a run in
        flight, or its pipeline is paused.
        """
        lock = self._locks.setdefault(tenant_id, asyncio.Lock())
        # No await between the check and the acquire below.
        if lock.locked():
            self.logger.debug(
                "run_skipped_already_running", tenant_id=tenant_id, trigger=trigger.value
            )
            return None

        async with lock:
            care_state = await self.store.get_care_state(tenant_id)
            if care_state.pipeline_paused:
                self.logger.info("run_skipped_paused", tenant_id=tenant_id, trigger=trigger.value)
                return None

            run = RunContext(
                tenant_id=tenant_id,
                run_id=uuid4(),
                trigger=trigger,
                now=self._clock(),
                care_state=care_state,
            )
            self._states[tenant_id] = RunState.RUNNING
            self.logger.info(
                "pipeline_run_started",
                tenant_id=tenant_id,
                run_id=str(run.run_id),
                trigger=trigger.value,
            )

            state = RunState.COMPLETED
            failed_stage: str | None = None
            error: str | None = None
            try:
                await asyncio.wait_for(
                    self._execute(run), timeout=self.config.scheduler.run_timeout_seconds
                )
            except TimeoutError:
                state, failed_stage, error = RunState.FAILED, run.stage, "timeout"
                self.logger.error(
                    "pipeline_run_timeout",
                    tenant_id=tenant_id,
                    run_id=str(run.run_id),
                    stage=run.stage,
                    timeout_seconds=self.config.scheduler.run_timeout_seconds,
                )
            except StageError as e:
                state, failed_stage, error = RunState.FAILED, e.stage, str(e.cause)
                self.logger.error(
                    "pipeline_stage_failed",
                    tenant_id=tenant_id,
                    run_id=str(run.run_id),
                    stage=e.stage,
                    error=str(e.cause),
                )

            result = PipelineRunResult(
                run_id=run.run_id,
                tenant_id=tenant_id,
                trigger=trigger,
                state=state,
                counts=run.counts,
                failed_stage=failed_stage,
                error=error,
                detector_failures=run.detector_failures,
                started_at=run.now,
                finished_at=self._clock(),
            )
            self._states[tenant_id] = state
            self._last_results[tenant_id] = result
            self.logger.info(
                "pipeline_run_finished",
                tenant_id=tenant_id,
                run_id=str(run.run_id),
                state=state.value,
                **run.counts.model_dump(),
            )
            return result

    async def run_all(
        self, tenant_ids: list[str], trigger: TriggerKind = TriggerKind.SCHEDULED
    ) -> list[PipelineRunResult]:
        """Run every tenant concurrently, bounded by max_concurrent_tenants."""
        semaphore = asyncio.Semaphore(self.config.scheduler.max_concurrent_tenants)

        async def _bounded(tenant_id: str) -> PipelineRunResult | None:
            async with semaphore:
                try:
                    return await self.run_tenant(tenant_id, trigger)
                except Exception as e:
                    self.logger.exception("tenant_run_crashed", tenant_id=tenant_id, error=str(e))
                    return None

        async with asyncio.TaskGroup() as task_group:
            tasks = [task_group.create_task(_bounded(t)) for t in dict.fromkeys(tenant_ids)]

        return [r for task in tasks if (r := task.result()) is not None]

    async def _execute(self, run: RunContext) -> None:
        stages: list[tuple[str, Callable[[RunContext], Awaitable[None]]]] = [
            ("aggregate", self._aggregate),
            ("baselines", self._recompute_baselines),
            ("detect", self._detect),
            ("score", self._score),
            ("prioritize", self._prioritize),
            ("summarize", self._summarize),
        ]
        for name, stage in stages:
            run.stage = name
            try:
                await stage(run)
            except Exception as e:
                raise StageError(name, e) from e
        run.stage = None

    async def _aggregate(self, run: RunContext) -> None:
        since = run.now - timedelta(days=self.config.scheduler.observation_lookback_days)
        report = await self.aggregator.aggregate(run.tenant_id, since)
        run.counts.observations_aggregated = report.created
        # Read after aggregation: everything stored so far is seen by the baselines stage.
        await self.store.mark_processed(run.tenant_id, self._clock())

    async def _recompute_baselines(self, run: RunContext) -> None:
        as_of = run.now - timedelta(hours=self.config.detection.evaluation_window_hours)
        since = as_of - timedelta(days=self.config.baseline.long_window_days)
        run.observations = await self.store.list_observations(run.tenant_id, since=since)

        for subject_type, subject_id, metric_kind in sorted(
            baseline_subjects(run.observations), key=lambda p: (p[0].value, p[1], p[2].value)
        ):
            samples = extract_samples(run.observations, subject_type, subject_id, metric_kind)
            baseline = self.estimator.recompute(
                run.tenant_id, subject_type, subject_id, metric_kind, samples, as_of
            )
            if baseline is None:
                continue
            await self.store.put_baseline(baseline)
            run.counts.baselines_recomputed += 1

    async def _detect(self, run: RunContext) -> None:
        ctx = DetectionContext(
            tenant_id=run.tenant_id,
            run_id=run.run_id,
            now=run.now,
            observations=run.observations,
            baselines=await self.store.list_baselines(run.tenant_id),
            care_state=run.care_state,
            config=self.config.detection,
        )
        report = self.registry.run(ctx)
        run.detector_failures = report.failures

        for anomaly in report.anomalies:
            await self.store.add_anomaly(anomaly)
            run.anomalies.append(anomaly)
            run.counts.anomalies_detected += 1

    async def _score(self, run: RunContext) -> None:
        for risk in self.scorer.score_run(run.tenant_id, run.run_id, run.anomalies, run.now):
            await self.store.add_risk_score(risk)
            run.risks.append(risk)
            run.counts.risks_scored += 1

    async def _prioritize(self, run: RunContext) -> None:
        by_id = {a.id: a for a in run.anomalies}
        for risk in run.risks:
            issue = self.prioritizer.prioritize(risk, created_at=run.now)
            if self.narrator.enabled:
                anomalies = [by_id[i] for i in risk.anomaly_ids if i in by_id]
                description = await self.narrator.narrate(issue, anomalies)
                issue = issue.model_copy(update={"description": description})
            await self.store.add_issue(issue)
            run.counts.issues_created += 1

    async def _summarize(self, run: RunContext) -> None:
        open_issues = await self.store.list_issues(run.tenant_id, open_only=True)
        for attempt in range(1, _CARE_STATE_RETRIES + 1):
            current = await self.store.get_care_state(run.tenant_id)
            changes: dict[str, object] = {
                "open_issue_count": len(open_issues),
                "high_risk_count": sum(1 for r in run.risks if r.level == RiskLevel.HIGH),
                "last_run_id": run.run_id,
                "last_run_at": run.now,
                "updated_by": PIPELINE_ACTOR,
                "updated_at": self._clock(),
            }
            if not current.mode_pinned:
                changes["mode"] = derive_mode(run.risks)
            try:
                run.care_state = await self.store.compare_and_set_care_state(
                    run.tenant_id, current.version, changes
                )
                return
            except VersionConflictError as e:
                self.logger.warning(
                    "care_state_conflict_retry",
                    tenant_id=run.tenant_id,
                    attempt=attempt,
                    expected=e.expected,
                    actual=e.actual,
                )
                if attempt == _CARE_STATE_RETRIES:
                    raise
