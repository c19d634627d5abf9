"""
Error taxonomy for the pipeline.

Input errors are returned as Result values at the aggregator boundary, detector
errors are isolated per strategy, stage errors fail a single tenant run.
"""


class CareSignalError(Exception):
    """Base class for all pipeline errors."""


class MalformedEventError(CareSignalError):
    """A raw event could not be normalized into an ObservationEvent."""

    def __init__(self, message: str, source_kind: str | None = None, source_id: str | None = None):
        super().__init__(message)
        self.source_kind = source_kind
        self.source_id = source_id


class DetectorError(CareSignalError):
    """A single detector strategy failed during a run."""

    def __init__(self, detector_name: str, cause: BaseException) -> None:
        super().__init__(f"detector {detector_name} failed: {cause}")
        self.detector_name = detector_name
        self.cause = cause


class StageError(CareSignalError):
    """A pipeline stage failed; the tenant run ends in the failed state."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"stage {stage} failed: {cause}")
        self.stage = stage
        self.cause = cause


class VersionConflictError(CareSignalError):
    """Optimistic concurrency check on the tenant care state failed."""

    def __init__(self, tenant_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"care state for tenant {tenant_id} is at version {actual}, expected {expected}"
        )
        self.tenant_id = tenant_id
        self.expected = expected
        self.actual = actual


class InvalidTransitionError(CareSignalError):
    """A lifecycle action is not allowed from the entity's current status."""


class NotFoundError(CareSignalError):
    """Requested entity does not exist for the tenant."""
