"""
End-to-end demo of the care signal pipeline on a scripted agency.

This script walks through:
1. Configuration loading and validation
2. Ingestion (including a duplicate and a malformed record)
3. One orchestrated run: baselines, anomalies, risk scores, issues
4. Reviewer lifecycle actions and the tenant care state

Run with: uv run python run_demo.py
"""

import asyncio
from datetime import timedelta

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from adapters.care import StaticRawEventSource, TaskCompletionRecord, VitalSignRecord
from adapters.memory import InMemoryPipelineStore
from caresignal.config import AppConfig, print_config_summary
from caresignal.domain.models import IssueAction, SubjectType, TriggerKind, utc_now
from caresignal.log_config import configure_logging
from caresignal.services import (
    CareSignalService,
    ObservationAggregator,
    PipelineOrchestrator,
)

console = Console()

TENANT = "agency-demo"


def build_scenario(now) -> StaticRawEventSource:
    """One resident with a blood pressure spike, one with rushed care, one busy caregiver."""
    source = StaticRawEventSource("demo-care-feed")

    for i in range(10):
        source.add(
            VitalSignRecord(
                source_id=f"vs-r100-{i}",
                tenant_id=TENANT,
                resident_id="r-100",
                recorded_by="c-3",
                measured_at=now - timedelta(hours=26 + i * 14),
                blood_pressure_systolic=115.0 if i % 2 == 0 else 125.0,
                heart_rate=72.0 + (i % 3),
            )
        )
    source.add(
        VitalSignRecord(
            source_id="vs-r100-spike",
            tenant_id=TENANT,
            resident_id="r-100",
            recorded_by="c-3",
            measured_at=now - timedelta(minutes=20),
            blood_pressure_systolic=145.0,
            heart_rate=73.0,
        )
    )

    for i in range(4):
        source.add(
            TaskCompletionRecord(
                source_id=f"task-r200-{i}",
                tenant_id=TENANT,
                task_id=f"t-200-{i}",
                resident_id="r-200",
                caregiver_id="c-5",
                category="hygiene",
                completed_at=now - timedelta(hours=2, minutes=i * 15),
                completion_seconds=6.0,
                completion_method="quick_tap",
            )
        )

    for i in range(55):
        source.add(
            TaskCompletionRecord(
                source_id=f"task-c7-{i}",
                tenant_id=TENANT,
                task_id=f"t-7-{i}",
                resident_id=f"r-{300 + i % 6}",
                caregiver_id="c-7",
                category="assistance",
                completed_at=now - timedelta(minutes=20 * i + 5),
                completion_seconds=240.0,
                completion_method="form",
                evidence_submitted=i % 4 == 0,
            )
        )
    return source


async def demo_ingestion(service: CareSignalService) -> None:
    console.print(Panel("Ingestion", style="blue"))

    raw = {
        "source_kind": "vitals",
        "source_id": "vs-push-1",
        "tenant_id": TENANT,
        "resident_id": "r-400",
        "measured_at": utc_now().isoformat(),
        "heart_rate": 81,
    }
    first = await service.ingest(raw)
    second = await service.ingest(raw)
    malformed = await service.ingest({"source_kind": "vitals", "source_id": "vs-bad"})

    table = Table(title="Ingestion outcomes")
    table.add_column("Record", style="cyan")
    table.add_column("Outcome", style="white")
    table.add_row("vs-push-1 (first)", type(first.unwrap()).__name__)
    table.add_row("vs-push-1 (again)", type(second.unwrap()).__name__)
    table.add_row("vs-bad", f"rejected: {malformed.unwrap_err()}")
    console.print(table)


async def demo_run(service: CareSignalService) -> None:
    console.print(Panel("Pipeline run", style="blue"))

    result = await service.orchestrator.run_tenant(TENANT, TriggerKind.MANUAL)
    if result is None:
        console.print("Run skipped", style="yellow")
        return

    counts = Table(title=f"Run {result.run_id} ({result.state.value})")
    counts.add_column("Stage output", style="cyan")
    counts.add_column("Count", style="green")
    for name, value in result.counts.model_dump().items():
        counts.add_row(name, str(value))
    console.print(counts)

    anomalies = await service.store.list_anomalies(TENANT, run_id=result.run_id)
    anomaly_table = Table(title="Anomalies")
    anomaly_table.add_column("Subject", style="cyan")
    anomaly_table.add_column("Type", style="magenta")
    anomaly_table.add_column("Severity", style="red")
    anomaly_table.add_column("Observed", style="white")
    anomaly_table.add_column("Deviation", style="yellow")
    for a in anomalies:
        anomaly_table.add_row(
            f"{a.subject_type.value if a.subject_type else '-'} {a.subject_id or ''}",
            f"{a.anomaly_type.value}/{a.subtype}",
            a.severity.value,
            f"{a.observed_value:.1f}" if a.observed_value is not None else "-",
            f"{a.deviation_magnitude:.2f}σ" if a.deviation_magnitude is not None else "-",
        )
    console.print(anomaly_table)

    issue_table = Table(title="Open issues (ranked)")
    issue_table.add_column("Priority", style="green")
    issue_table.add_column("Title", style="cyan")
    issue_table.add_column("Subject", style="white")
    issue_table.add_column("Description", style="white")
    for issue in await service.open_issues(TENANT):
        issue_table.add_row(
            f"{issue.priority_score:.2f}",
            issue.title,
            issue.subject_id,
            issue.description,
        )
    console.print(issue_table)


async def demo_lifecycle(service: CareSignalService) -> None:
    console.print(Panel("Reviewer actions", style="blue"))

    issues = await service.open_issues(TENANT)
    if not issues:
        console.print("No open issues", style="green")
        return

    top = issues[0]
    await service.transition_issue(TENANT, top.id, IssueAction.ACKNOWLEDGE, "supervisor-1")
    await service.assign_issue(TENANT, top.id, "nurse-2", "supervisor-1")
    resolved = await service.transition_issue(
        TENANT, top.id, IssueAction.RESOLVE, "nurse-2", notes="Rechecked, physician notified"
    )
    console.print(f"Issue {resolved.id} -> {resolved.status.value}", style="green")

    overview = await service.subject_overview(TENANT, top.subject_type, top.subject_id)
    current = overview.current_risk
    console.print(
        f"{top.subject_type.value} {top.subject_id}: risk "
        f"{current.score if current else '-'} ({current.level.value if current else '-'}), "
        f"{len(overview.open_issues)} open issue(s)"
    )

    state = await service.care_state(TENANT)
    console.print(
        f"Care state v{state.version}: mode={state.mode.value}, "
        f"open_issues={state.open_issue_count}, high_risks={state.high_risk_count}"
    )

    caregiver = await service.subject_overview(TENANT, SubjectType.CAREGIVER, "c-7")
    if caregiver.current_risk:
        console.print(
            f"caregiver c-7: risk {caregiver.current_risk.score} "
            f"({', '.join(caregiver.current_risk.suggested_interventions)})"
        )


async def run_demo() -> None:
    config = AppConfig()
    configure_logging(config.logging)

    console.print(Panel("Care Signal Intelligence - Demo", style="bold blue"))
    print_config_summary(config)

    now = utc_now()
    store = InMemoryPipelineStore()
    aggregator = ObservationAggregator.from_config(
        store, config.scheduler, sources=[build_scenario(now)]
    )
    orchestrator = PipelineOrchestrator(store, aggregator, config=config, clock=lambda: now)
    service = CareSignalService(store, orchestrator)

    await demo_ingestion(service)
    await demo_run(service)
    await demo_lifecycle(service)


if __name__ == "__main__":
    try:
        asyncio.run(run_demo())
    except KeyboardInterrupt:
        console.print("\nDemo stopped by user", style="yellow")
