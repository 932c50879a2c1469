"""Core runtime error types.

The runtime is fail-closed: it rejects definitions it cannot prove runnable.
These exception types are mapped to HTTP responses in the API layer.

Stage-level errors (timeout, failure, abort) never reach the API; the
executor converts them into a job failure reason.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable


class ConveyorError(Exception):
    """Base class for runtime errors."""


@dataclass(frozen=True)
class DefinitionViolation:
    path: str
    message: str


class InvalidDefinitionError(ConveyorError):
    """A submitted job definition (or agent registration) was rejected. Never retried."""

    def __init__(self, kind: str, violations: Iterable[DefinitionViolation]):
        self.kind = kind
        self.violations = list(violations)
        first = self.violations[0].message if self.violations else "invalid"
        super().__init__(f"{kind} is invalid ({len(self.violations)} violation(s)): {first}")

    @classmethod
    def single(cls, kind: str, path: str, message: str) -> "InvalidDefinitionError":
        return cls(kind, [DefinitionViolation(path=path, message=message)])


class NotFoundError(ConveyorError):
    def __init__(self, resource_type: str, resource_id: str):
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")


class ConflictError(ConveyorError):
    def __init__(self, message: str, details: Any | None = None):
        self.details = details
        super().__init__(message)


class PolicyViolationError(ConveyorError):
    def __init__(self, message: str, details: Any | None = None):
        self.details = details
        super().__init__(message)


class NoEligibleJobError(ConveyorError):
    """No queued job matches the offered capabilities. Transient; the caller retries later."""


class ExecutorStartError(ConveyorError):
    """The executor could not start a dispatched job."""


class StageError(ConveyorError):
    reason = "stage_failure"

    def __init__(self, stage: str, message: str, output: str = ""):
        self.stage = stage
        self.output = output
        super().__init__(f"{stage}: {message}")


class StageFailureError(StageError):
    reason = "stage_failure"


class StageTimeoutError(StageError):
    reason = "stage_timeout"


class StageAbortedError(StageError):
    """The stage ended the job deliberately (gate breach, approval rejection, cancellation)."""

    reason = "aborted"

    def __init__(self, stage: str, message: str, output: str = "", reason: str = "aborted"):
        super().__init__(stage, message, output)
        self.reason = reason
