"""Job queue.

Holds queued job ids ordered by (priority desc, submission sequence asc).
Job records themselves live in the job store; the queue only decides
which one an agent gets next.
"""

from __future__ import annotations

import bisect
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable

from conveyor.errors import ConflictError, NoEligibleJobError
from conveyor.executor.state_machine import QUEUED, is_terminal
from conveyor.models import Job
from conveyor.storage.interfaces import JobStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class _Entry:
    sort_key: tuple[int, int]
    job_id: str = field(compare=False)
    labels: frozenset[str] = field(compare=False)
    lock: str | None = field(compare=False)


def _entry(job: Job) -> _Entry:
    return _Entry(sort_key=(-job.priority, job.submitted_seq), job_id=job.job_id, labels=job.labels, lock=job.lock)


class JobQueue:
    def __init__(self, store: JobStore):
        self._store = store
        self._lock = threading.RLock()
        self._entries: list[_Entry] = []
        self._ids: set[str] = set()

    def submit(self, job: Job) -> Job:
        if job.state != QUEUED:
            raise ConflictError(f"Only queued jobs can be submitted (state={job.state})")
        self._store.create(job)
        self._store.record_event(job_id=job.job_id, event_type="job_submitted", details={"priority": job.priority})
        self._push(job)
        logger.info("job_queued", extra={"event": "job_queued", "job_id": job.job_id})
        return job

    def requeue(self, job: Job) -> None:
        """Put a job back (dispatch retry or agent-lost requeue); keeps its submission order."""
        if job.state != QUEUED:
            raise ConflictError(f"Only queued jobs can be requeued (state={job.state})")
        self._push(job)
        self._store.record_event(job_id=job.job_id, event_type="job_requeued", details={"dispatch_attempts": job.dispatch_attempts})

    def restore(self, jobs: Iterable[Job]) -> None:
        for job in jobs:
            self._push(job)

    def _push(self, job: Job) -> None:
        with self._lock:
            if job.job_id in self._ids:
                return
            bisect.insort(self._entries, _entry(job))
            self._ids.add(job.job_id)

    def dequeue_next(self, capabilities: Iterable[str], is_lock_free: Callable[[str], bool] | None = None) -> Job:
        """Remove and return the best eligible job, or raise NoEligibleJobError."""
        offered = frozenset(capabilities)
        with self._lock:
            for i, entry in enumerate(self._entries):
                if not entry.labels <= offered:
                    continue
                if entry.lock is not None and is_lock_free is not None and not is_lock_free(entry.lock):
                    continue
                del self._entries[i]
                self._ids.discard(entry.job_id)
                return self._store.get(entry.job_id)
        raise NoEligibleJobError(f"No queued job matches capabilities {sorted(offered)}")

    def remove(self, job_id: str) -> bool:
        with self._lock:
            for i, entry in enumerate(self._entries):
                if entry.job_id == job_id:
                    del self._entries[i]
                    self._ids.discard(job_id)
                    return True
        return False

    def mark_result(self, job_id: str, outcome: Job) -> None:
        """Record a terminal outcome and archive the job out of the queue."""
        if outcome.job_id != job_id or not is_terminal(outcome.state):
            raise ConflictError(f"mark_result requires the terminal record of {job_id}")
        self.remove(job_id)
        self._store.update(outcome)
        self._store.record_event(
            job_id=job_id,
            event_type="job_finished",
            details={"state": outcome.state, "reason": outcome.failure_reason, "stage": outcome.failure_stage},
        )

    def pending(self) -> list[str]:
        with self._lock:
            return [e.job_id for e in self._entries]

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
