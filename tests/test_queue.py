"""Tests for the job queue ordering and eligibility rules."""

import pytest

from conveyor.errors import ConflictError, NoEligibleJobError
from conveyor.executor.state_machine import QUEUED, SUCCEEDED, TransitionRequest, apply_transition
from conveyor.models import Job, PostHooks, ShellAction, Stage
from conveyor.scheduler.queue import JobQueue
from conveyor.storage.memory import InMemoryJobStore
from conveyor.utils import utcnow


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def queue(store):
    return JobQueue(store)


def _submit(queue, store, job_id, *, priority=0, labels=(), lock=None):
    job = Job(
        job_id=job_id,
        name=job_id,
        stages=(Stage(name="run", action=ShellAction(command="true")),),
        labels=frozenset(labels),
        priority=priority,
        lock=lock,
        post=PostHooks(),
        state=QUEUED,
        submitted_seq=store.next_sequence(),
        submitted_at="2026-01-01T00:00:00Z",
        status_updated_at="2026-01-01T00:00:00Z",
    )
    return queue.submit(job)


def test_higher_priority_first_then_fifo(queue, store):
    _submit(queue, store, "low", priority=1)
    _submit(queue, store, "high-1", priority=5)
    _submit(queue, store, "high-2", priority=5)

    order = [queue.dequeue_next(set()).job_id for _ in range(3)]
    assert order == ["high-1", "high-2", "low"]


def test_labels_must_be_subset_of_capabilities(queue, store):
    _submit(queue, store, "gpu-job", priority=10, labels=["linux", "gpu"])
    _submit(queue, store, "linux-job", labels=["linux"])

    job = queue.dequeue_next({"linux", "docker"})
    assert job.job_id == "linux-job"
    assert queue.pending() == ["gpu-job"]


def test_no_eligible_job_raises(queue, store):
    _submit(queue, store, "gpu-job", labels=["gpu"])
    with pytest.raises(NoEligibleJobError):
        queue.dequeue_next({"linux"})
    assert "gpu-job" in queue


def test_empty_queue_raises(queue):
    with pytest.raises(NoEligibleJobError):
        queue.dequeue_next({"linux"})


def test_jobs_behind_a_held_lock_are_skipped(queue, store):
    _submit(queue, store, "deploy", priority=10, lock="prod-deploy")
    _submit(queue, store, "build")

    job = queue.dequeue_next(set(), is_lock_free=lambda name: name != "prod-deploy")
    assert job.job_id == "build"
    assert queue.pending() == ["deploy"]


def test_requeue_keeps_submission_order(queue, store):
    _submit(queue, store, "first")
    _submit(queue, store, "second")

    first = queue.dequeue_next(set())
    queue.requeue(first)
    assert queue.pending() == ["first", "second"]
    assert [e["event_type"] for e in store.list_events("first")] == ["job_submitted", "job_requeued"]


def test_submit_rejects_non_queued_job(queue, store):
    job = _submit(queue, store, "a")
    done = apply_transition(job, TransitionRequest(new_state="aborted", now=utcnow(), failure_reason="aborted"))
    with pytest.raises(ConflictError):
        queue.submit(done)


def test_mark_result_archives_terminal_job(queue, store):
    job = _submit(queue, store, "a")
    running = job
    for state in ("scheduled", "running"):
        running = apply_transition(running, TransitionRequest(new_state=state, now=utcnow(), agent_id="agent-a"))
    final = apply_transition(running, TransitionRequest(new_state=SUCCEEDED, now=utcnow()))

    queue.mark_result("a", final)

    assert "a" not in queue
    assert len(queue) == 0
    assert store.get("a").state == SUCCEEDED
    assert store.list_events("a")[-1]["event_type"] == "job_finished"


def test_mark_result_requires_terminal_record(queue, store):
    job = _submit(queue, store, "a")
    with pytest.raises(ConflictError):
        queue.mark_result("a", job)
