from .domain import (
    RawCareEvent,
    StaffingActionRecord,
    TaskCompletionRecord,
    VitalSignRecord,
    parse_raw_event,
)
from .sources import StaticRawEventSource

__all__ = [
    "RawCareEvent",
    "StaffingActionRecord",
    "StaticRawEventSource",
    "TaskCompletionRecord",
    "VitalSignRecord",
    "parse_raw_event",
]
