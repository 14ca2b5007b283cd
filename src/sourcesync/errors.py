"""
Exception hierarchy for the sync engine.

Only ConfigurationError and UpstreamCallError subclasses are expected to
escape a page fetch and flip a run to "error". Item and attachment failures
never surface as exceptions to the caller; they are recorded as SyncError
entries on the run instead.
"""
from typing import Optional


class SyncEngineError(RuntimeError):
    """Base class for all engine errors."""


class ConfigurationError(SyncEngineError):
    """Raised when a target cannot be synced as configured (e.g. no credentials)."""


class UpstreamError(SyncEngineError):
    """An upstream API responded with an error.

    Sources raise this for non-2xx responses so the retrying client can
    classify the failure by status code.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamCallError(SyncEngineError):
    """A call through the retrying client failed for good."""


class PermanentUpstreamError(UpstreamCallError):
    """The failure was classified as permanent; no retry was attempted."""


class RetriesExhaustedError(UpstreamCallError):
    """A transient failure persisted through every retry."""

    def __init__(self, message: str, retries: int):
        super().__init__(message)
        self.retries = retries


class TargetNotFoundError(SyncEngineError):
    """No sync target with the requested id exists."""


class DuplicateTargetError(SyncEngineError):
    """A sync target with the same name is already registered."""


class RunAlreadyActiveError(SyncEngineError):
    """Another run for the same target is still processing."""

    def __init__(self, target_id: int, run_id: Optional[int] = None):
        super().__init__(
            f"A sync run is already in progress for target {target_id}"
            + (f" (run {run_id})" if run_id is not None else "")
        )
        self.target_id = target_id
        self.run_id = run_id
