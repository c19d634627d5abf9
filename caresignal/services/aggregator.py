"""
Observation aggregation: heterogeneous care records into one canonical stream.

Key patterns:
- Protocol-based raw event sources (structural typing, easy test doubles)
- Result type for expected failures (malformed records, unavailable sources)
- Structured concurrency with asyncio.TaskGroup across sources
- Idempotency via the (source_kind, source_id) key, enforced by the store
"""

import asyncio
import time
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field, ValidationError

from adapters.care.domain import (
    RawCareEvent,
    StaffingActionRecord,
    TaskCompletionRecord,
    VitalSignRecord,
    parse_raw_event,
)
from caresignal.config import SchedulerConfig
from caresignal.domain.errors import MalformedEventError
from caresignal.domain.models import (
    EventType,
    ObservationEvent,
    Skipped,
    SourceKind,
    SubjectType,
    utc_now,
)
from caresignal.services.result import Result
from caresignal.services.store import PipelineStore

logger = structlog.get_logger(__name__)

IngestOutcome = ObservationEvent | Skipped

_CORE_VITALS = (
    "blood_pressure_systolic",
    "blood_pressure_diastolic",
    "heart_rate",
    "temperature",
    "oxygen_saturation",
)


class RawEventSource(Protocol):
    """
    Protocol defining how raw care records are pulled for a tenant.

    Design: Single method, focused responsibility, async-first.
    """

    source_name: str

    async def fetch_events(
        self, tenant_id: str, since: datetime
    ) -> Result[list[RawCareEvent], Exception]: ...


class AggregationReport(BaseModel):
    """Outcome of one aggregation pass over all sources."""

    created: int = 0
    skipped: int = 0
    rejected: int = 0
    failed_sources: list[str] = Field(default_factory=list)


def _clamp_quality(value: int) -> int:
    return max(0, min(100, value))


def vital_quality(record: VitalSignRecord) -> int:
    """More complete measurement sessions are better observations."""
    present = sum(1 for f in _CORE_VITALS if getattr(record, f) is not None)
    return _clamp_quality(60 + 8 * present)


def task_quality(record: TaskCompletionRecord) -> int:
    quality = 70
    if record.completion_method == "voice":
        quality += 20
    if record.completion_seconds is not None and record.completion_seconds < 10:
        quality -= 20
    if record.evidence_submitted:
        quality += 10
    return _clamp_quality(quality)


def normalize(record: RawCareEvent, ingested_at: datetime) -> ObservationEvent:
    """Map a validated raw record onto the canonical observation shape."""
    if isinstance(record, VitalSignRecord):
        return ObservationEvent(
            tenant_id=record.tenant_id,
            subject_type=SubjectType.RESIDENT,
            subject_id=record.resident_id,
            caregiver_id=record.recorded_by,
            event_type=EventType.VITAL_SIGN,
            event_subtype="measurement",
            occurred_at=record.measured_at,
            ingested_at=ingested_at,
            payload={**record.measurements(), "notes": record.notes},
            quality=vital_quality(record),
            source_kind=SourceKind.VITALS,
            source_id=record.source_id,
        )

    if isinstance(record, TaskCompletionRecord):
        return ObservationEvent(
            tenant_id=record.tenant_id,
            subject_type=SubjectType.RESIDENT,
            subject_id=record.resident_id,
            caregiver_id=record.caregiver_id,
            event_type=EventType.TASK_COMPLETION,
            event_subtype=record.category or "general",
            occurred_at=record.completed_at,
            ingested_at=ingested_at,
            payload={
                "task_id": record.task_id,
                "scheduled_for": record.scheduled_for.isoformat() if record.scheduled_for else None,
                "completion_seconds": record.completion_seconds,
                "completion_method": record.completion_method,
                "evidence_submitted": record.evidence_submitted,
                "was_exception": record.was_exception,
            },
            quality=task_quality(record),
            source_kind=SourceKind.TASK_COMPLETION,
            source_id=record.source_id,
        )

    if isinstance(record, StaffingActionRecord):
        return ObservationEvent(
            tenant_id=record.tenant_id,
            subject_type=SubjectType.CAREGIVER,
            subject_id=record.caregiver_id,
            caregiver_id=record.caregiver_id,
            event_type=EventType.STAFFING_ACTION,
            event_subtype=record.action,
            occurred_at=record.occurred_at,
            ingested_at=ingested_at,
            payload={"shift_id": record.shift_id, **record.details},
            quality=85,
            source_kind=SourceKind.STAFFING,
            source_id=record.source_id,
        )

    raise MalformedEventError(f"unsupported raw record type {type(record).__name__}")


class ObservationAggregator:
    """
    Normalizes and deduplicates raw care records into ObservationEvents.

    Design principles:
    - Malformed input is rejected and logged, never raised into the stream
    - Sources fail independently (partial aggregation is still useful)
    - Observable (structured logging for each outcome)
    """

    def __init__(
        self,
        store: PipelineStore,
        sources: list[RawEventSource] | None = None,
        source_timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.sources: list[RawEventSource] = list(sources or [])
        self.source_timeout_seconds = source_timeout_seconds
        self._clock = clock
        self.logger = logger.bind(component="observation_aggregator")

    @classmethod
    def from_config(
        cls,
        store: PipelineStore,
        config: SchedulerConfig,
        sources: list[RawEventSource] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "ObservationAggregator":
        return cls(
            store,
            sources=sources,
            source_timeout_seconds=config.source_timeout_seconds,
            clock=clock,
        )

    def add_source(self, source: RawEventSource) -> None:
        """Add a raw event source. Validates source implements protocol correctly."""
        if not hasattr(source, "fetch_events"):
            raise TypeError(f"Source {source} must implement RawEventSource protocol")
        self.sources.append(source)
        self.logger.info("source_added", source_name=source.source_name)

    async def ingest(
        self, raw: Any
    ) -> Result[IngestOutcome, MalformedEventError]:
        """Ingest one raw record. Duplicate sources come back as Skipped."""
        try:
            record = parse_raw_event(raw)
            event = normalize(record, ingested_at=self._clock())
        except ValidationError as e:
            error = MalformedEventError(
                f"invalid raw event: {e.error_count()} validation error(s)",
                source_kind=_peek(raw, "source_kind"),
                source_id=_peek(raw, "source_id"),
            )
            self.logger.warning(
                "malformed_event_rejected",
                source_kind=error.source_kind,
                source_id=error.source_id,
                errors=[err["msg"] for err in e.errors()],
            )
            return Result.err(error)
        except MalformedEventError as e:
            self.logger.warning("malformed_event_rejected", error=str(e))
            return Result.err(e)

        if not await self.store.add_observation(event):
            self.logger.debug(
                "observation_skipped_duplicate",
                source_kind=event.source_kind.value,
                source_id=event.source_id,
            )
            return Result.ok(Skipped(source_kind=event.source_kind, source_id=event.source_id))

        self.logger.debug(
            "observation_created",
            tenant_id=event.tenant_id,
            event_type=event.event_type.value,
            source_id=event.source_id,
        )
        return Result.ok(event)

    async def aggregate(self, tenant_id: str, since: datetime) -> AggregationReport:
        """
        Pull every source for the tenant and ingest what they return.

        Sources are fetched concurrently; ingestion is sequential so the
        duplicate check stays simple.
        """
        start_time = time.perf_counter()
        report = AggregationReport()

        async with asyncio.TaskGroup() as task_group:
            tasks = [
                (
                    source,
                    task_group.create_task(self._fetch(source, tenant_id, since)),
                )
                for source in self.sources
            ]

        for source, task in tasks:
            result = task.result()
            if result.is_err():
                report.failed_sources.append(source.source_name)
                continue
            for record in result.unwrap():
                outcome = await self.ingest(record)
                if outcome.is_err():
                    report.rejected += 1
                elif isinstance(outcome.unwrap(), Skipped):
                    report.skipped += 1
                else:
                    report.created += 1

        self.logger.info(
            "aggregation_completed",
            tenant_id=tenant_id,
            created=report.created,
            skipped=report.skipped,
            rejected=report.rejected,
            failed_sources=report.failed_sources,
            duration_seconds=round(time.perf_counter() - start_time, 3),
        )
        return report

    async def _fetch(
        self, source: RawEventSource, tenant_id: str, since: datetime
    ) -> Result[list[RawCareEvent], Exception]:
        try:
            return await asyncio.wait_for(
                source.fetch_events(tenant_id, since), timeout=self.source_timeout_seconds
            )
        except TimeoutError as e:
            self.logger.warning("source_fetch_timeout", source_name=source.source_name)
            return Result.err(e)
        except Exception as e:
            self.logger.exception(
                "unexpected_source_fetch_error", source_name=source.source_name, error=str(e)
            )
            return Result.err(e)


def _peek(raw: Any, key: str) -> str | None:
    if isinstance(raw, Mapping):
        value = raw.get(key)
    else:
        value = getattr(raw, key, None)
    return str(value) if value is not None else None
