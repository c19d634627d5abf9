"""
Run triggers: a fixed-interval ticker and a backlog watcher feeding one dispatcher.

Triggers only emit RunSignals onto a queue. The dispatcher turns each signal
into `orchestrator.run_tenant(...)`, which owns mutual exclusion, so two
triggers firing for the same tenant collapse into a single run.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Protocol

import structlog
from pydantic import BaseModel, ConfigDict, Field

from caresignal.config import SchedulerConfig
from caresignal.domain.models import PipelineRunResult, TriggerKind, utc_now
from caresignal.services.orchestrator import PipelineOrchestrator
from caresignal.services.store import PipelineStore

logger = structlog.get_logger(__name__)


class RunSignal(BaseModel):
    """Request to run the pipeline for one tenant."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    trigger: TriggerKind
    emitted_at: datetime = Field(default_factory=utc_now)


class TenantRegistry(Protocol):
    async def active_tenants(self) -> list[str]: ...


async def _sleep_until_stopped(stop: asyncio.Event, seconds: float) -> bool:
    """Sleep up to `seconds`; True when woken by the stop event."""
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except TimeoutError:
        return False
    return True


class ScheduleTicker:
    """Emits a scheduled signal for every active tenant once per interval."""

    def __init__(
        self,
        registry: TenantRegistry,
        queue: "asyncio.Queue[RunSignal | None]",
        interval_seconds: float = 300.0,
    ) -> None:
        self.registry = registry
        self.queue = queue
        self.interval_seconds = interval_seconds
        self._stop = asyncio.Event()
        self.logger = logger.bind(component="schedule_ticker")

    async def tick(self) -> int:
        tenants = await self.registry.active_tenants()
        for tenant_id in tenants:
            await self.queue.put(RunSignal(tenant_id=tenant_id, trigger=TriggerKind.SCHEDULED))
        self.logger.debug("schedule_tick", tenant_count=len(tenants))
        return len(tenants)

    async def run(self) -> None:
        self.logger.info("schedule_ticker_starting", interval_seconds=self.interval_seconds)
        while not self._stop.is_set():
            try:
                await self.tick()
            except Exception as e:
                self.logger.exception("schedule_tick_failed", error=str(e))
            if await _sleep_until_stopped(self._stop, self.interval_seconds):
                break
        self.logger.info("schedule_ticker_stopped")

    def stop(self) -> None:
        self._stop.set()


class BacklogWatcher:
    """Emits a backlog signal when a tenant accumulates enough unprocessed observations."""

    def __init__(
        self,
        store: PipelineStore,
        queue: "asyncio.Queue[RunSignal | None]",
        threshold: int = 5,
        lookback_minutes: int = 60,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.queue = queue
        self.threshold = threshold
        self.lookback_minutes = lookback_minutes
        self._clock = clock
        self._stop = asyncio.Event()
        self.logger = logger.bind(component="backlog_watcher")

    async def check(self, tenant_id: str) -> bool:
        """Emit a signal if the tenant's backlog reached the threshold."""
        occurred_since = self._clock() - timedelta(minutes=self.lookback_minutes)
        pending = await self.store.count_unprocessed(tenant_id, occurred_since)
        if pending < self.threshold:
            return False

        await self.queue.put(RunSignal(tenant_id=tenant_id, trigger=TriggerKind.BACKLOG))
        self.logger.info("backlog_threshold_reached", tenant_id=tenant_id, pending=pending)
        return True

    async def run(self, registry: TenantRegistry, poll_seconds: float) -> None:
        """Poll every active tenant; covers observations written by other processes."""
        while not self._stop.is_set():
            try:
                for tenant_id in await registry.active_tenants():
                    await self.check(tenant_id)
            except Exception as e:
                self.logger.exception("backlog_poll_failed", error=str(e))
            if await _sleep_until_stopped(self._stop, poll_seconds):
                break

    def stop(self) -> None:
        self._stop.set()


class RunDispatcher:
    """Single consumer of run signals; each becomes a tenant run task."""

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        queue: "asyncio.Queue[RunSignal | None]",
        max_concurrent_runs: int = 10,
    ) -> None:
        self.orchestrator = orchestrator
        self.queue = queue
        self._semaphore = asyncio.Semaphore(max_concurrent_runs)
        self._tasks: set[asyncio.Task[PipelineRunResult | None]] = set()
        self.dispatched = 0
        self.logger = logger.bind(component="run_dispatcher")

    def dispatch(self, signal: RunSignal) -> "asyncio.Task[PipelineRunResult | None]":
        task = asyncio.create_task(self._run(signal))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self.dispatched += 1
        return task

    async def _run(self, signal: RunSignal) -> PipelineRunResult | None:
        async with self._semaphore:
            try:
                return await self.orchestrator.run_tenant(signal.tenant_id, signal.trigger)
            except Exception as e:
                self.logger.exception(
                    "dispatched_run_crashed", tenant_id=signal.tenant_id, error=str(e)
                )
                return None

    async def run(self) -> None:
        """Consume signals until a None sentinel arrives, then wait for in-flight runs."""
        self.logger.info("run_dispatcher_starting")
        while True:
            signal = await self.queue.get()
            self.queue.task_done()
            if signal is None:
                break
            self.dispatch(signal)
        await self.wait_idle()
        self.logger.info("run_dispatcher_stopped", dispatched=self.dispatched)

    async def wait_idle(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks))

    def stop(self) -> None:
        self.queue.put_nowait(None)


class PipelineScheduler:
    """Wires ticker, backlog watcher and dispatcher together around one queue."""

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        registry: TenantRegistry,
        store: PipelineStore,
        config: SchedulerConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config or orchestrator.config.scheduler
        self.registry = registry
        self.queue: asyncio.Queue[RunSignal | None] = asyncio.Queue()
        self.ticker = ScheduleTicker(registry, self.queue, self.config.interval_seconds)
        self.backlog_watcher = BacklogWatcher(
            store,
            self.queue,
            threshold=self.config.backlog_threshold,
            lookback_minutes=self.config.backlog_lookback_minutes,
            clock=clock,
        )
        self.dispatcher = RunDispatcher(
            orchestrator, self.queue, max_concurrent_runs=self.config.max_concurrent_tenants
        )
        self.logger = logger.bind(component="pipeline_scheduler")

    async def run(self, backlog_poll_seconds: float = 30.0) -> None:
        self.logger.info(
            "pipeline_scheduler_starting",
            interval_seconds=self.config.interval_seconds,
            backlog_threshold=self.config.backlog_threshold,
        )
        async with asyncio.TaskGroup() as task_group:
            task_group.create_task(self.ticker.run())
            task_group.create_task(self.backlog_watcher.run(self.registry, backlog_poll_seconds))
            task_group.create_task(self.dispatcher.run())
        self.logger.info("pipeline_scheduler_stopped")

    def stop(self) -> None:
        self.ticker.stop()
        self.backlog_watcher.stop()
        self.dispatcher.stop()
