"""
Tests for run triggers: ticker, backlog watcher, dispatcher and the scheduler
that wires them together.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime

import pytest

from adapters.care import VitalSignRecord
from adapters.memory import InMemoryPipelineStore, StaticTenantRegistry
from caresignal.config import AppConfig, SchedulerConfig
from caresignal.domain.models import PipelineRunResult, TriggerKind
from caresignal.services.aggregator import ObservationAggregator
from caresignal.services.orchestrator import PipelineOrchestrator
from caresignal.services.scheduler import (
    BacklogWatcher,
    PipelineScheduler,
    RunDispatcher,
    RunSignal,
    ScheduleTicker,
)

TENANT = "tenant-a"


class RecordingOrchestrator:
    """Stands in for PipelineOrchestrator; remembers triggers and holds each run briefly."""

    def __init__(self, run_seconds: float = 0.0) -> None:
        self.run_seconds = run_seconds
        self.calls: list[tuple[str, TriggerKind]] = []
        self.running: set[str] = set()

    async def run_tenant(self, tenant_id: str, trigger: TriggerKind) -> PipelineRunResult | None:
        if tenant_id in self.running:
            return None
        self.running.add(tenant_id)
        self.calls.append((tenant_id, trigger))
        try:
            await asyncio.sleep(self.run_seconds)
        finally:
            self.running.discard(tenant_id)
        return None


@pytest.fixture
def queue() -> "asyncio.Queue[RunSignal | None]":
    return asyncio.Queue()


class TestScheduleTicker:
    async def test_tick_emits_one_signal_per_active_tenant(
        self, queue: "asyncio.Queue[RunSignal | None]"
    ) -> None:
        registry = StaticTenantRegistry(["tenant-a", "tenant-b"])
        ticker = ScheduleTicker(registry, queue, interval_seconds=300)

        assert await ticker.tick() == 2

        signals = [queue.get_nowait(), queue.get_nowait()]
        assert {s.tenant_id for s in signals if s} == {"tenant-a", "tenant-b"}
        assert all(s and s.trigger == TriggerKind.SCHEDULED for s in signals)

    async def test_deactivated_tenants_are_not_scheduled(
        self, queue: "asyncio.Queue[RunSignal | None]"
    ) -> None:
        registry = StaticTenantRegistry(["tenant-a", "tenant-b"])
        registry.deactivate("tenant-b")

        await ScheduleTicker(registry, queue).tick()

        assert queue.qsize() == 1

    async def test_run_loop_stops_promptly(
        self, queue: "asyncio.Queue[RunSignal | None]"
    ) -> None:
        ticker = ScheduleTicker(StaticTenantRegistry([TENANT]), queue, interval_seconds=60)

        task = asyncio.create_task(ticker.run())
        await asyncio.sleep(0.05)
        ticker.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert queue.qsize() == 1


class TestBacklogWatcher:
    async def test_threshold_triggers_backlog_signal(
        self,
        store: InMemoryPipelineStore,
        queue: "asyncio.Queue[RunSignal | None]",
        now: datetime,
        make_vitals: Callable[..., VitalSignRecord],
    ) -> None:
        aggregator = ObservationAggregator(store, clock=lambda: now)
        watcher = BacklogWatcher(store, queue, threshold=5, lookback_minutes=60, clock=lambda: now)

        for i in range(4):
            await aggregator.ingest(make_vitals(f"v-{i}", hours_ago=0.1, heart_rate=70.0))
        assert await watcher.check(TENANT) is False

        await aggregator.ingest(make_vitals("v-4", hours_ago=0.1, heart_rate=70.0))
        assert await watcher.check(TENANT) is True

        signal = queue.get_nowait()
        assert signal is not None
        assert signal.trigger == TriggerKind.BACKLOG

    async def test_old_events_do_not_count(
        self,
        store: InMemoryPipelineStore,
        queue: "asyncio.Queue[RunSignal | None]",
        now: datetime,
        make_vitals: Callable[..., VitalSignRecord],
    ) -> None:
        aggregator = ObservationAggregator(store, clock=lambda: now)
        watcher = BacklogWatcher(store, queue, threshold=5, lookback_minutes=60, clock=lambda: now)

        for i in range(6):
            await aggregator.ingest(make_vitals(f"v-{i}", hours_ago=3, heart_rate=70.0))

        assert await watcher.check(TENANT) is False

    async def test_processed_events_do_not_count(
        self,
        store: InMemoryPipelineStore,
        queue: "asyncio.Queue[RunSignal | None]",
        now: datetime,
        make_vitals: Callable[..., VitalSignRecord],
    ) -> None:
        aggregator = ObservationAggregator(store, clock=lambda: now)
        watcher = BacklogWatcher(store, queue, threshold=5, lookback_minutes=60, clock=lambda: now)
        for i in range(6):
            await aggregator.ingest(make_vitals(f"v-{i}", hours_ago=0.1, heart_rate=70.0))

        await store.mark_processed(TENANT, now)

        assert await watcher.check(TENANT) is False


class TestRunDispatcher:
    async def test_overlapping_signals_collapse_into_one_run(
        self, queue: "asyncio.Queue[RunSignal | None]"
    ) -> None:
        orchestrator = RecordingOrchestrator(run_seconds=0.1)
        dispatcher = RunDispatcher(orchestrator, queue)  # type: ignore[arg-type]

        await queue.put(RunSignal(tenant_id=TENANT, trigger=TriggerKind.SCHEDULED))
        await queue.put(RunSignal(tenant_id=TENANT, trigger=TriggerKind.BACKLOG))
        await queue.put(RunSignal(tenant_id="tenant-b", trigger=TriggerKind.SCHEDULED))
        dispatcher.stop()

        await asyncio.wait_for(dispatcher.run(), timeout=1.0)

        assert dispatcher.dispatched == 3
        assert sorted(orchestrator.calls) == [
            (TENANT, TriggerKind.SCHEDULED),
            ("tenant-b", TriggerKind.SCHEDULED),
        ]


class TestPipelineScheduler:
    async def test_scheduler_runs_every_active_tenant(
        self, store: InMemoryPipelineStore, now: datetime
    ) -> None:
        config = AppConfig(
            scheduler=SchedulerConfig(interval_seconds=60.0, run_timeout_seconds=5.0)
        )
        orchestrator = PipelineOrchestrator(
            store, ObservationAggregator(store), config=config, clock=lambda: now
        )
        registry = StaticTenantRegistry(["tenant-a", "tenant-b"])
        scheduler = PipelineScheduler(orchestrator, registry, store)

        task = asyncio.create_task(scheduler.run(backlog_poll_seconds=60.0))
        await asyncio.sleep(0.1)
        scheduler.stop()
        await asyncio.wait_for(task, timeout=2.0)

        assert orchestrator.last_result("tenant-a") is not None
        assert orchestrator.last_result("tenant-b") is not None
        assert scheduler.dispatcher.dispatched == 2
