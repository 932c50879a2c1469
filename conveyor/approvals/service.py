"""Manual approval decisions for approval stages.

Decisions are append-only: one decision per (job, stage). The approval
action runner polls `decision_for` while its stage is running.
"""

from __future__ import annotations

import logging
from typing import Any

from conveyor.errors import ConflictError, NotFoundError, PolicyViolationError
from conveyor.executor.state_machine import is_terminal
from conveyor.models import ApprovalAction
from conveyor.storage.interfaces import ApprovalStore, JobStore
from conveyor.utils import format_rfc3339, utcnow

logger = logging.getLogger(__name__)


class ApprovalService:
    def __init__(self, *, approval_store: ApprovalStore, job_store: JobStore):
        self._approvals = approval_store
        self._jobs = job_store

    def decide(self, job_id: str, stage: str, *, approved: bool, approver: str) -> dict[str, Any]:
        job = self._jobs.get(job_id)
        if is_terminal(job.state):
            raise ConflictError(f"Cannot decide approval for terminal job (state={job.state})")

        target = next((s for s in job.stages if s.name == stage), None)
        if target is None:
            raise NotFoundError("Stage", f"{job_id}/{stage}")
        if not isinstance(target.action, ApprovalAction):
            raise PolicyViolationError(f"Stage '{stage}' is not an approval stage")
        if not approver:
            raise PolicyViolationError("approver is required")

        decision = {
            "job_id": job_id,
            "stage": stage,
            "approved": bool(approved),
            "approver": approver,
            "decided_at": format_rfc3339(utcnow()),
        }
        self._approvals.append(decision)
        self._jobs.record_event(job_id=job_id, event_type="approval_decided", details={"stage": stage, "approved": bool(approved), "approver": approver})
        logger.info("approval_decided", extra={"event": "approval_decided", "job_id": job_id, "stage": stage})
        return decision

    def decision_for(self, job_id: str, stage: str) -> dict[str, Any] | None:
        return self._approvals.find(job_id, stage)
