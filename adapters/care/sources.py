"""
In-process raw event sources.

In production: these would read the vital-sign and task subsystems' tables or
change feeds. Here a source holds a list of records it was handed, which is
enough for the demo and for tests that replay a scenario.
"""

from collections.abc import Iterable
from datetime import datetime

import structlog

from adapters.care.domain import RawCareEvent
from caresignal.services.result import Result

logger = structlog.get_logger(__name__)


def _record_time(record: RawCareEvent) -> datetime:
    if record.source_kind == "vitals":
        return record.measured_at
    if record.source_kind == "task_completion":
        return record.completed_at
    return record.occurred_at


class StaticRawEventSource:
    """Replays a fixed set of raw records, filtered by tenant and time."""

    def __init__(self, source_name: str, records: Iterable[RawCareEvent] = ()) -> None:
        self.source_name = source_name
        self._records: list[RawCareEvent] = list(records)
        self.logger = logger.bind(source=source_name)

    def add(self, record: RawCareEvent) -> None:
        self._records.append(record)

    async def fetch_events(
        self, tenant_id: str, since: datetime
    ) -> Result[list[RawCareEvent], Exception]:
        records = [
            r for r in self._records if r.tenant_id == tenant_id and _record_time(r) >= since
        ]
        self.logger.debug("raw_events_fetched", tenant_id=tenant_id, count=len(records))
        return Result.ok(records)
