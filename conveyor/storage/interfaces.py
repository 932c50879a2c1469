"""Storage interfaces.

These interfaces define the persistence boundary for:
- Job documents and lifecycle updates (plus an append-only audit log)
- Approval decisions (append-only)
- Artifacts: opaque blobs such as captured stage output

Concrete drivers live in `storage/` (SQLite and in-memory).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterable

from conveyor.models import Job


class JobStore(ABC):
    @abstractmethod
    def create(self, job: Job) -> None:
        """Insert a new job. Must fail if job_id already exists."""

    @abstractmethod
    def get(self, job_id: str) -> Job:
        """Fetch a job by id. Must raise NotFoundError if not found."""

    @abstractmethod
    def update(self, job: Job) -> None:
        """Replace the stored job (job_id is the key)."""

    @abstractmethod
    def list_by_state(self, states: Iterable[str]) -> list[Job]:
        """List jobs in any of the given states, in submission order."""

    @abstractmethod
    def next_sequence(self) -> int:
        """Return a monotonically increasing submission sequence number."""

    @abstractmethod
    def record_event(self, *, job_id: str, event_type: str, details: dict[str, Any] | None = None) -> None:
        """Append an audit event for a job (append-only)."""

    @abstractmethod
    def list_events(self, job_id: str) -> list[dict[str, Any]]:
        """List audit events for a job, oldest first."""


class ApprovalStore(ABC):
    @abstractmethod
    def append(self, decision: dict[str, Any]) -> None:
        """Append an immutable decision. Must fail if (job_id, stage) already has one."""

    @abstractmethod
    def find(self, job_id: str, stage: str) -> dict[str, Any] | None:
        """Return the decision for a job stage, or None."""


class ArtifactStore(ABC):
    @abstractmethod
    def put(self, key: str, data: bytes) -> str:
        """Store a blob under key (overwrites) and return its reference."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Fetch a blob by reference. Must raise NotFoundError if not found."""
