"""
Tests for observation aggregation: normalization, idempotency, rejection and
source isolation.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from adapters.care import (
    RawCareEvent,
    StaffingActionRecord,
    StaticRawEventSource,
    TaskCompletionRecord,
    VitalSignRecord,
)
from adapters.memory import InMemoryPipelineStore
from caresignal.config import SchedulerConfig
from caresignal.domain.errors import MalformedEventError
from caresignal.domain.models import EventType, ObservationEvent, Skipped, SourceKind, SubjectType
from caresignal.services.aggregator import ObservationAggregator, task_quality, vital_quality
from caresignal.services.result import Result

TENANT = "tenant-a"


class MockRawEventSource:
    """Test double that implements RawEventSource protocol."""

    def __init__(
        self,
        records: list[RawCareEvent] | None = None,
        should_fail: bool = False,
        delay_seconds: float = 0.0,
        source_name: str = "mock-source",
    ) -> None:
        self.records = records or []
        self.should_fail = should_fail
        self.delay_seconds = delay_seconds
        self.source_name = source_name
        self.call_count = 0

    async def fetch_events(
        self, tenant_id: str, since: datetime
    ) -> Result[list[RawCareEvent], Exception]:
        self.call_count += 1
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        if self.should_fail:
            return Result.err(ConnectionError("Mock failure"))
        return Result.ok(list(self.records))


@pytest.fixture
def aggregator(store: InMemoryPipelineStore, now: datetime) -> ObservationAggregator:
    return ObservationAggregator(store, source_timeout_seconds=0.5, clock=lambda: now)


class TestIngest:
    async def test_vitals_become_resident_observations(
        self,
        aggregator: ObservationAggregator,
        make_vitals: Callable[..., VitalSignRecord],
    ) -> None:
        record = make_vitals("vs-1", blood_pressure_systolic=128.0, heart_rate=70.0)

        result = await aggregator.ingest(record)

        assert result.is_ok()
        event = result.unwrap()
        assert isinstance(event, ObservationEvent)
        assert event.subject_type == SubjectType.RESIDENT
        assert event.subject_id == "r-1"
        assert event.caregiver_id == "c-9"
        assert event.event_type == EventType.VITAL_SIGN
        assert event.payload["blood_pressure_systolic"] == 128.0
        assert event.quality == 76

    async def test_task_completion_keeps_caregiver(
        self,
        aggregator: ObservationAggregator,
        make_task: Callable[..., TaskCompletionRecord],
    ) -> None:
        record = make_task("task-1", category="hygiene", completion_seconds=8.0)

        event = (await aggregator.ingest(record)).unwrap()

        assert isinstance(event, ObservationEvent)
        assert event.subject_id == "r-1"
        assert event.caregiver_id == "c-1"
        assert event.event_subtype == "hygiene"
        assert event.payload["completion_seconds"] == 8.0
        assert event.quality == 50

    async def test_staffing_action_is_about_the_caregiver(
        self, aggregator: ObservationAggregator, now: datetime
    ) -> None:
        record = StaffingActionRecord(
            source_id="roster-1",
            tenant_id=TENANT,
            caregiver_id="c-4",
            action="clock_in",
            occurred_at=now,
            shift_id="s-1",
        )

        event = (await aggregator.ingest(record)).unwrap()

        assert isinstance(event, ObservationEvent)
        assert event.subject_type == SubjectType.CAREGIVER
        assert event.subject_id == "c-4"
        assert event.event_subtype == "clock_in"
        assert event.quality == 85

    async def test_raw_mapping_is_accepted(self, aggregator: ObservationAggregator) -> None:
        raw = {
            "source_kind": "vitals",
            "source_id": "vs-map",
            "tenant_id": TENANT,
            "resident_id": "r-2",
            "measured_at": "2026-03-02T10:00:00+00:00",
            "oxygen_saturation": 97,
        }

        result = await aggregator.ingest(raw)

        assert result.is_ok()
        assert result.unwrap().source_kind == SourceKind.VITALS

    async def test_duplicate_source_is_skipped(
        self,
        aggregator: ObservationAggregator,
        store: InMemoryPipelineStore,
        make_vitals: Callable[..., VitalSignRecord],
    ) -> None:
        record = make_vitals("vs-dup", heart_rate=80.0)

        first = await aggregator.ingest(record)
        second = await aggregator.ingest(record)

        assert isinstance(first.unwrap(), ObservationEvent)
        skipped = second.unwrap()
        assert isinstance(skipped, Skipped)
        assert skipped.source_id == "vs-dup"
        assert len(await store.list_observations(TENANT)) == 1

    @pytest.mark.parametrize(
        "raw",
        [
            {"source_kind": "vitals", "source_id": "bad-1", "tenant_id": TENANT},
            {"source_kind": "unknown", "source_id": "bad-2", "tenant_id": TENANT},
            {
                "source_kind": "vitals",
                "source_id": "bad-3",
                "tenant_id": TENANT,
                "resident_id": "r-1",
                "measured_at": "2026-03-02T10:00:00",
                "heart_rate": 70,
            },
            {
                "source_kind": "vitals",
                "source_id": "bad-4",
                "tenant_id": TENANT,
                "resident_id": "r-1",
                "measured_at": "2026-03-02T10:00:00+00:00",
            },
        ],
    )
    async def test_malformed_input_is_rejected_not_raised(
        self,
        aggregator: ObservationAggregator,
        store: InMemoryPipelineStore,
        raw: dict,
    ) -> None:
        result = await aggregator.ingest(raw)

        assert result.is_err()
        error = result.unwrap_err()
        assert isinstance(error, MalformedEventError)
        assert error.source_id == raw["source_id"]
        assert await store.list_observations(TENANT) == []

    @pytest.mark.parametrize("raw", [None, "vitals", 42, ["source_kind", "vitals"]])
    async def test_non_mapping_payload_is_rejected_not_raised(
        self,
        aggregator: ObservationAggregator,
        store: InMemoryPipelineStore,
        raw: object,
    ) -> None:
        result = await aggregator.ingest(raw)

        assert result.is_err()
        error = result.unwrap_err()
        assert isinstance(error, MalformedEventError)
        assert error.source_id is None
        assert await store.list_observations(TENANT) == []


class TestQualityScores:
    @given(
        seconds=st.one_of(st.none(), st.floats(min_value=0, max_value=10_000)),
        method=st.sampled_from([None, "voice", "quick_tap", "form"]),
        evidence=st.booleans(),
    )
    def test_task_quality_is_bounded(
        self, seconds: float | None, method: str | None, evidence: bool
    ) -> None:
        record = TaskCompletionRecord(
            source_id="q",
            tenant_id=TENANT,
            task_id="t",
            resident_id="r",
            caregiver_id="c",
            completed_at=datetime.fromisoformat("2026-03-02T10:00:00+00:00"),
            completion_seconds=seconds,
            completion_method=method,
            evidence_submitted=evidence,
        )
        assert 0 <= task_quality(record) <= 100

    def test_complete_vitals_session_scores_full(
        self, make_vitals: Callable[..., VitalSignRecord]
    ) -> None:
        record = make_vitals(
            "vs-full",
            blood_pressure_systolic=120.0,
            blood_pressure_diastolic=80.0,
            heart_rate=70.0,
            temperature=98.6,
            oxygen_saturation=97.0,
        )
        assert vital_quality(record) == 100


class TestAggregate:
    async def test_sources_fail_independently(
        self,
        aggregator: ObservationAggregator,
        make_vitals: Callable[..., VitalSignRecord],
        now: datetime,
    ) -> None:
        good = MockRawEventSource([make_vitals("vs-a", heart_rate=70.0)], source_name="good")
        bad = MockRawEventSource(should_fail=True, source_name="bad")
        aggregator.add_source(good)
        aggregator.add_source(bad)

        report = await aggregator.aggregate(TENANT, now - timedelta(days=1))

        assert report.created == 1
        assert report.failed_sources == ["bad"]

    async def test_slow_source_times_out(
        self,
        aggregator: ObservationAggregator,
        make_vitals: Callable[..., VitalSignRecord],
        now: datetime,
    ) -> None:
        aggregator.add_source(MockRawEventSource(delay_seconds=2.0, source_name="slow"))
        aggregator.add_source(
            MockRawEventSource([make_vitals("vs-b", heart_rate=70.0)], source_name="fast")
        )

        report = await aggregator.aggregate(TENANT, now - timedelta(days=1))

        assert report.created == 1
        assert report.failed_sources == ["slow"]

    async def test_source_timeout_comes_from_scheduler_config(
        self,
        store: InMemoryPipelineStore,
        make_vitals: Callable[..., VitalSignRecord],
        now: datetime,
    ) -> None:
        slow = MockRawEventSource(
            [make_vitals("vs-c", heart_rate=70.0)], delay_seconds=0.3, source_name="slow"
        )
        aggregator = ObservationAggregator.from_config(
            store, SchedulerConfig(source_timeout_seconds=0.05), sources=[slow], clock=lambda: now
        )

        report = await aggregator.aggregate(TENANT, now - timedelta(days=1))

        assert aggregator.source_timeout_seconds == 0.05
        assert report.created == 0
        assert report.failed_sources == ["slow"]

    async def test_reaggregating_the_same_records_is_idempotent(
        self,
        aggregator: ObservationAggregator,
        store: InMemoryPipelineStore,
        make_vitals: Callable[..., VitalSignRecord],
        make_task: Callable[..., TaskCompletionRecord],
        now: datetime,
    ) -> None:
        source = StaticRawEventSource(
            "feed", [make_vitals("vs-c", heart_rate=70.0), make_task("task-c")]
        )
        aggregator.add_source(source)

        first = await aggregator.aggregate(TENANT, now - timedelta(days=1))
        second = await aggregator.aggregate(TENANT, now - timedelta(days=1))

        assert (first.created, first.skipped) == (2, 0)
        assert (second.created, second.skipped) == (0, 2)
        assert len(await store.list_observations(TENANT)) == 2

    async def test_static_source_filters_tenant_and_time(
        self, make_vitals: Callable[..., VitalSignRecord], now: datetime
    ) -> None:
        source = StaticRawEventSource(
            "feed",
            [
                make_vitals("vs-new", hours_ago=1, heart_rate=70.0),
                make_vitals("vs-old", hours_ago=72, heart_rate=70.0),
                make_vitals("vs-other", tenant_id="tenant-b", heart_rate=70.0),
            ],
        )

        records = (await source.fetch_events(TENANT, now - timedelta(days=1))).unwrap()

        assert [r.source_id for r in records] == ["vs-new"]

    def test_add_source_rejects_non_sources(self, aggregator: ObservationAggregator) -> None:
        with pytest.raises(TypeError):
            aggregator.add_source(object())  # type: ignore[arg-type]
