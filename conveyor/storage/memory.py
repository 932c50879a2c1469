"""In-memory storage driver.

Same contract as the SQLite driver; state is lost on restart. Used by tests
and by `storage.driver: memory`.
"""

from __future__ import annotations

import copy
import itertools
import threading
from pathlib import Path
from typing import Any, Iterable

from conveyor.errors import ConflictError, NotFoundError
from conveyor.models import Job
from conveyor.storage.interfaces import ApprovalStore, ArtifactStore, JobStore
from conveyor.utils import format_rfc3339, utcnow


class InMemoryJobStore(JobStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, Job] = {}
        self._events: dict[str, list[dict[str, Any]]] = {}
        self._seq = itertools.count(1)

    def create(self, job: Job) -> None:
        with self._lock:
            if job.job_id in self._jobs:
                raise ConflictError(f"Job already exists: {job.job_id}")
            self._jobs[job.job_id] = job

    def get(self, job_id: str) -> Job:
        with self._lock:
            if job_id not in self._jobs:
                raise NotFoundError("Job", job_id)
            return self._jobs[job_id]

    def update(self, job: Job) -> None:
        with self._lock:
            if job.job_id not in self._jobs:
                raise NotFoundError("Job", job.job_id)
            self._jobs[job.job_id] = job

    def list_by_state(self, states: Iterable[str]) -> list[Job]:
        wanted = set(states)
        with self._lock:
            jobs = [j for j in self._jobs.values() if j.state in wanted]
        return sorted(jobs, key=lambda j: j.submitted_seq)

    def next_sequence(self) -> int:
        with self._lock:
            return next(self._seq)

    def record_event(self, *, job_id: str, event_type: str, details: dict[str, Any] | None = None) -> None:
        event = {"ts": format_rfc3339(utcnow()), "event_type": event_type, "details": copy.deepcopy(details or {})}
        with self._lock:
            self._events.setdefault(job_id, []).append(event)

    def list_events(self, job_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._events.get(job_id, []))


class InMemoryApprovalStore(ApprovalStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._decisions: dict[tuple[str, str], dict[str, Any]] = {}

    def append(self, decision: dict[str, Any]) -> None:
        key = (decision["job_id"], decision["stage"])
        with self._lock:
            if key in self._decisions:
                raise ConflictError(f"Approval already decided: {key[0]}/{key[1]}")
            self._decisions[key] = dict(decision)

    def find(self, job_id: str, stage: str) -> dict[str, Any] | None:
        with self._lock:
            return self._decisions.get((job_id, stage))


class InMemoryArtifactStore(ArtifactStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._blobs: dict[str, bytes] = {}

    def put(self, key: str, data: bytes) -> str:
        with self._lock:
            self._blobs[key] = bytes(data)
        return key

    def get(self, key: str) -> bytes:
        with self._lock:
            if key not in self._blobs:
                raise NotFoundError("Artifact", key)
            return self._blobs[key]


class FileArtifactStore(ArtifactStore):
    """Blobs stored as files under a root directory; the reference is the relative key."""

    def __init__(self, root: Path):
        self.root = root.resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        try:
            path.relative_to(self.root)
        except ValueError as e:
            raise ConflictError(f"Artifact key escapes store root: {key}") from e
        return path

    def put(self, key: str, data: bytes) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return key

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise NotFoundError("Artifact", key)
        return path.read_bytes()
