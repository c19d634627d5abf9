"""Shared fixtures: a fixed clock, an empty store and raw record factories."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from adapters.care import TaskCompletionRecord, VitalSignRecord
from adapters.memory import InMemoryPipelineStore
from caresignal.config import AppConfig, SchedulerConfig
from caresignal.domain.models import ObservationEvent
from caresignal.services.aggregator import normalize

TENANT = "tenant-a"


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


@pytest.fixture
def store() -> InMemoryPipelineStore:
    return InMemoryPipelineStore()


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(
        scheduler=SchedulerConfig(interval_seconds=300.0, run_timeout_seconds=5.0),
    )


@pytest.fixture
def make_vitals(now: datetime) -> Callable[..., VitalSignRecord]:
    def _make(
        source_id: str,
        resident_id: str = "r-1",
        hours_ago: float = 0.0,
        tenant_id: str = TENANT,
        **measurements: Any,
    ) -> VitalSignRecord:
        return VitalSignRecord(
            source_id=source_id,
            tenant_id=tenant_id,
            resident_id=resident_id,
            recorded_by="c-9",
            measured_at=now - timedelta(hours=hours_ago),
            **measurements,
        )

    return _make


@pytest.fixture
def make_task(now: datetime) -> Callable[..., TaskCompletionRecord]:
    def _make(
        source_id: str,
        resident_id: str = "r-1",
        caregiver_id: str = "c-1",
        hours_ago: float = 1.0,
        completion_seconds: float | None = 120.0,
        tenant_id: str = TENANT,
        **fields: Any,
    ) -> TaskCompletionRecord:
        return TaskCompletionRecord(
            source_id=source_id,
            tenant_id=tenant_id,
            task_id=f"task-{source_id}",
            resident_id=resident_id,
            caregiver_id=caregiver_id,
            completed_at=now - timedelta(hours=hours_ago),
            completion_seconds=completion_seconds,
            **fields,
        )

    return _make


@pytest.fixture
def observe(now: datetime) -> Callable[[Any], ObservationEvent]:
    """Normalize a raw record straight into an ObservationEvent."""

    def _observe(record: Any) -> ObservationEvent:
        return normalize(record, ingested_at=now)

    return _observe


@pytest.fixture
def systolic_history(make_vitals: Callable[..., VitalSignRecord]) -> list[VitalSignRecord]:
    """Ten readings alternating 115/125 over the week before the detection window."""
    return [
        make_vitals(
            f"hist-{i}",
            hours_ago=26 + i * 14,
            blood_pressure_systolic=115.0 if i % 2 == 0 else 125.0,
        )
        for i in range(10)
    ]
