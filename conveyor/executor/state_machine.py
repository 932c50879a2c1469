"""Job lifecycle state machine.

Canonical lifecycle:
queued -> scheduled -> running -> succeeded | failed | aborted

Notes:
- Re-entry to `queued` is the only backwards edge: a dispatch retry
  (scheduled -> queued) or an agent-lost requeue (running -> queued).
- Terminal states are final; resubmission creates a new job id.
- Entering `failed` requires a failure reason.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime

from conveyor.errors import ConflictError
from conveyor.models import Job, StageResult
from conveyor.utils import format_rfc3339

QUEUED = "queued"
SCHEDULED = "scheduled"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"
ABORTED = "aborted"

_TERMINAL_STATES = {SUCCEEDED, FAILED, ABORTED}

# Allowed transitions excluding no-op transitions.
_ALLOWED: dict[str, set[str]] = {
    QUEUED: {SCHEDULED, ABORTED, FAILED},
    SCHEDULED: {RUNNING, QUEUED, FAILED, ABORTED},
    RUNNING: {SUCCEEDED, FAILED, ABORTED, QUEUED},
    SUCCEEDED: set(),
    FAILED: set(),
    ABORTED: set(),
}

# Failure reasons recorded on jobs.
AGENT_LOST = "agent_lost"
DISPATCH_EXHAUSTED = "dispatch_exhausted"
STAGE_TIMEOUT = "stage_timeout"
STAGE_FAILURE = "stage_failure"
GATE_BREACHED = "gate_breached"
APPROVAL_REJECTED = "approval_rejected"
ABORT_REQUESTED = "aborted"


@dataclass(frozen=True)
class TransitionRequest:
    new_state: str
    now: datetime
    agent_id: str | None = None
    failure_reason: str | None = None
    failure_stage: str | None = None
    failure_details: str | None = None
    output_ref: str | None = None
    stage_results: tuple[StageResult, ...] | None = None
    count_dispatch_attempt: bool = False


def is_terminal(state: str) -> bool:
    return state in _TERMINAL_STATES


def apply_transition(job: Job, req: TransitionRequest) -> Job:
    """Return a new Job with an updated lifecycle state."""
    current_state = job.state
    new_state = req.new_state

    if new_state == current_state:
        return job

    if is_terminal(current_state):
        raise ConflictError(f"Job is terminal; cannot transition from {current_state} to {new_state}")

    allowed = _ALLOWED.get(current_state)
    if allowed is None or new_state not in allowed:
        raise ConflictError(f"Invalid job state transition: {current_state} -> {new_state}")

    if new_state == FAILED and not req.failure_reason:
        raise ConflictError("failure_reason is required for failed jobs")

    ts = format_rfc3339(req.now)
    changes: dict = {"state": new_state, "status_updated_at": ts}

    if new_state == SCHEDULED:
        changes["agent_id"] = req.agent_id
    if new_state == RUNNING and job.started_at is None:
        changes["started_at"] = ts
    if new_state == QUEUED:
        changes["agent_id"] = None
    if req.count_dispatch_attempt:
        changes["dispatch_attempts"] = job.dispatch_attempts + 1

    if is_terminal(new_state):
        changes["terminal_at"] = ts
        if req.failure_reason:
            changes["failure_reason"] = req.failure_reason
        if req.failure_stage:
            changes["failure_stage"] = req.failure_stage
        if req.failure_details:
            changes["failure_details"] = req.failure_details
        if req.output_ref:
            changes["output_ref"] = req.output_ref

    if req.stage_results is not None:
        changes["stage_results"] = req.stage_results

    return replace(job, **changes)
