"""Tests for the job lifecycle state machine."""

import pytest

from conveyor.errors import ConflictError
from conveyor.executor.state_machine import (
    ABORT_REQUESTED,
    ABORTED,
    AGENT_LOST,
    FAILED,
    QUEUED,
    RUNNING,
    SCHEDULED,
    SUCCEEDED,
    TransitionRequest,
    apply_transition,
    is_terminal,
)
from conveyor.models import Job, PostHooks, ShellAction, Stage
from conveyor.utils import utcnow


def _job(state=QUEUED, **fields):
    return Job(
        job_id="job-1",
        name="build",
        stages=(Stage(name="compile", action=ShellAction(command="true")),),
        labels=frozenset({"linux"}),
        priority=0,
        lock=None,
        post=PostHooks(),
        state=state,
        submitted_seq=1,
        submitted_at="2026-01-01T00:00:00Z",
        status_updated_at="2026-01-01T00:00:00Z",
        **fields,
    )


def _move(job, state, **kwargs):
    return apply_transition(job, TransitionRequest(new_state=state, now=utcnow(), **kwargs))


class TestTransitions:
    """Allowed and forbidden lifecycle edges."""

    def test_happy_path_sets_agent_and_timestamps(self):
        job = _move(_job(), SCHEDULED, agent_id="agent-a")
        assert job.state == SCHEDULED
        assert job.agent_id == "agent-a"

        job = _move(job, RUNNING)
        assert job.started_at is not None

        job = _move(job, SUCCEEDED)
        assert job.state == SUCCEEDED
        assert job.terminal_at is not None
        assert job.failure_reason is None

    def test_original_record_is_not_mutated(self):
        original = _job()
        _move(original, SCHEDULED, agent_id="agent-a")
        assert original.state == QUEUED
        assert original.agent_id is None

    def test_requeue_clears_agent_and_counts_attempt(self):
        job = _move(_job(), SCHEDULED, agent_id="agent-a")
        job = _move(job, QUEUED, count_dispatch_attempt=True)
        assert job.state == QUEUED
        assert job.agent_id is None
        assert job.dispatch_attempts == 1

    def test_queued_cannot_skip_to_running(self):
        with pytest.raises(ConflictError):
            _move(_job(), RUNNING)

    def test_queued_cannot_succeed(self):
        with pytest.raises(ConflictError):
            _move(_job(), SUCCEEDED)

    @pytest.mark.parametrize("terminal", [SUCCEEDED, FAILED, ABORTED])
    def test_terminal_states_are_final(self, terminal):
        job = _job(state=terminal)
        for target in (QUEUED, SCHEDULED, RUNNING):
            with pytest.raises(ConflictError):
                _move(job, target)

    def test_failed_requires_reason(self):
        job = _move(_job(), SCHEDULED, agent_id="agent-a")
        with pytest.raises(ConflictError):
            _move(job, FAILED)

    def test_failed_records_reason_and_stage(self):
        job = _move(_job(state=RUNNING, agent_id="agent-a"), FAILED, failure_reason=AGENT_LOST, failure_stage="compile")
        assert job.failure_reason == AGENT_LOST
        assert job.failure_stage == "compile"

    def test_abort_from_queued(self):
        job = _move(_job(), ABORTED, failure_reason=ABORT_REQUESTED)
        assert job.state == ABORTED
        assert job.failure_reason == ABORT_REQUESTED

    def test_same_state_is_noop(self):
        job = _job()
        assert _move(job, QUEUED) is job


def test_is_terminal():
    assert is_terminal(SUCCEEDED)
    assert is_terminal(FAILED)
    assert is_terminal(ABORTED)
    assert not is_terminal(QUEUED)
    assert not is_terminal(SCHEDULED)
    assert not is_terminal(RUNNING)
