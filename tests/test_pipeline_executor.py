"""Tests for the pipeline executor: ordering, retries, timeouts, groups and hooks."""

import threading
import time

import pytest

from conveyor.config.settings import RetryConfig
from conveyor.errors import StageAbortedError, StageFailureError
from conveyor.executor.actions import (
    ActionRunner,
    ApprovalRunner,
    CancelToken,
    ContainerRunner,
    GateRunner,
    ShellRunner,
    StageContext,
)
from conveyor.executor.pipeline import PipelineExecutor, plan_steps
from conveyor.executor.state_machine import ABORTED, FAILED, RUNNING, SUCCEEDED
from conveyor.integrations.clients import InMemorySecretsStore, StaticMetricsClient
from conveyor.models import Job, PostHooks, Stage
from conveyor.storage.memory import InMemoryArtifactStore


class ScriptedRunner(ActionRunner):
    """Shell runner stand-in: per-stage callables decide each attempt's result."""

    kind = "shell"

    def __init__(self, script=None):
        self.script = script or {}
        self.calls = []
        self._lock = threading.Lock()

    def run(self, ctx):
        with self._lock:
            self.calls.append((ctx.stage.name, ctx.attempt))
        behavior = self.script.get(ctx.stage.name)
        if behavior is None:
            return f"{ctx.stage.name} ok"
        return behavior(ctx)


class FakeApprovals:
    def __init__(self, decision=None):
        self.decision = decision

    def decision_for(self, job_id, stage):
        return self.decision


def _fail(ctx):
    raise StageFailureError(ctx.stage.name, "boom", "failing output")


def _job(stages, post=None):
    return Job(
        job_id="job-1",
        name="pipeline",
        stages=tuple(Stage.from_dict(s) for s in stages),
        labels=frozenset(),
        priority=0,
        lock=None,
        post=PostHooks.from_dict(post),
        state=RUNNING,
        submitted_seq=1,
        submitted_at="2026-01-01T00:00:00Z",
        status_updated_at="2026-01-01T00:00:00Z",
        agent_id="agent-a",
    )


def _shell(name, **fields):
    stage = {"name": name, "action": {"kind": "shell", "command": f"run {name}"}}
    stage.update(fields)
    return stage


@pytest.fixture
def artifacts():
    return InMemoryArtifactStore()


@pytest.fixture
def make_executor(artifacts):
    def _make(shell=None, metrics=None, approvals=None, secrets=None, artifact_store=None):
        runners = {
            "shell": shell or ScriptedRunner(),
            "gate": GateRunner(metrics),
            "approval": ApprovalRunner(approvals or FakeApprovals()),
        }
        return PipelineExecutor(
            runners=runners,
            artifacts=artifact_store or artifacts,
            secrets=secrets or InMemorySecretsStore(),
            retry=RetryConfig(strategy="fixed", base_delay_seconds=0.0, max_delay_seconds=0.0),
        )

    return _make


def _statuses(outcome):
    return {r.name: r.status for r in outcome.stage_results if r.hook is None}


class TestSequencing:
    def test_plan_steps_groups_contiguous_parallel_stages(self):
        job = _job([_shell("a"), _shell("b", parallel_group="g"), _shell("c", parallel_group="g"), _shell("d")])
        assert [[s.name for s in step] for step in plan_steps(job.stages)] == [["a"], ["b", "c"], ["d"]]

    def test_stages_run_in_declared_order(self, make_executor):
        runner = ScriptedRunner()
        outcome = make_executor(shell=runner).run(_job([_shell("a"), _shell("b"), _shell("c")]), CancelToken())

        assert outcome.state == SUCCEEDED
        assert [name for name, _ in runner.calls] == ["a", "b", "c"]
        assert [r.name for r in outcome.stage_results] == ["a", "b", "c"]

    def test_failure_stops_pipeline_and_skips_rest(self, make_executor):
        runner = ScriptedRunner({"b": _fail})
        outcome = make_executor(shell=runner).run(_job([_shell("a"), _shell("b"), _shell("c")]), CancelToken())

        assert outcome.state == FAILED
        assert outcome.failure_reason == "stage_failure"
        assert outcome.failure_stage == "b"
        assert outcome.output_ref == "jobs/job-1/b/attempt-1.log"
        assert _statuses(outcome) == {"a": "succeeded", "b": "failed", "c": "skipped"}
        assert ("c", 1) not in runner.calls

    def test_cancelled_job_runs_nothing(self, make_executor):
        runner = ScriptedRunner()
        token = CancelToken()
        token.cancel()
        outcome = make_executor(shell=runner).run(_job([_shell("a"), _shell("b")]), token)

        assert outcome.state == ABORTED
        assert outcome.failure_reason == "aborted"
        assert runner.calls == []
        assert _statuses(outcome) == {"a": "skipped", "b": "skipped"}


class TestRetries:
    def test_fails_twice_then_succeeds(self, make_executor, artifacts):
        def flaky(ctx):
            if ctx.attempt < 3:
                raise StageFailureError(ctx.stage.name, f"attempt {ctx.attempt} failed")
            return "third time lucky"

        outcome = make_executor(shell=ScriptedRunner({"flaky": flaky})).run(_job([_shell("flaky", retry=2)]), CancelToken())

        assert outcome.state == SUCCEEDED
        [result] = outcome.stage_results
        assert result.attempts == 3
        assert result.output_tail == "third time lucky"
        assert artifacts.get("jobs/job-1/flaky/attempt-3.log") == b"third time lucky"

    def test_retries_exhausted(self, make_executor):
        runner = ScriptedRunner({"flaky": _fail})
        outcome = make_executor(shell=runner).run(_job([_shell("flaky", retry=2)]), CancelToken())

        assert outcome.state == FAILED
        assert outcome.stage_results[0].attempts == 3
        assert runner.calls == [("flaky", 1), ("flaky", 2), ("flaky", 3)]

    def test_abort_is_not_retried(self, make_executor):
        def reject(ctx):
            raise StageAbortedError(ctx.stage.name, "rejected", reason="approval_rejected")

        runner = ScriptedRunner({"guarded": reject})
        outcome = make_executor(shell=runner).run(_job([_shell("guarded", retry=3)]), CancelToken())

        assert outcome.state == ABORTED
        assert outcome.failure_reason == "approval_rejected"
        assert runner.calls == [("guarded", 1)]


class TestShellActions:
    def test_timeout_fails_the_job(self, make_executor):
        stage = {"name": "slow", "timeout_seconds": 0.3, "action": {"kind": "shell", "command": "sleep 10"}}
        started = time.monotonic()
        outcome = make_executor(shell=ShellRunner()).run(_job([stage]), CancelToken())

        assert time.monotonic() - started < 5
        assert outcome.state == FAILED
        assert outcome.failure_reason == "stage_timeout"
        assert outcome.stage_results[0].status == "timed_out"

    def test_nonzero_exit_is_failure(self, make_executor):
        stage = {"name": "broken", "action": {"kind": "shell", "command": "echo nope; exit 3"}}
        outcome = make_executor(shell=ShellRunner()).run(_job([stage]), CancelToken())

        assert outcome.state == FAILED
        assert "exit code 3" in outcome.failure_details
        assert outcome.stage_results[0].output_tail.strip() == "nope"

    def test_secret_env_is_injected_and_masked(self, make_executor, artifacts):
        stage = {
            "name": "deploy",
            "action": {"kind": "shell", "command": 'echo "token=$TOKEN region=$REGION"'},
            "env": {"TOKEN": {"secret": "deploy-token"}, "REGION": "eu-west-1"},
        }
        executor = make_executor(shell=ShellRunner(), secrets=InMemorySecretsStore({"deploy-token": "hunter2"}))
        outcome = executor.run(_job([stage]), CancelToken())

        assert outcome.state == SUCCEEDED
        assert outcome.stage_results[0].output_tail.strip() == "token=*** region=eu-west-1"
        assert b"hunter2" not in artifacts.get("jobs/job-1/deploy/attempt-1.log")

    def test_missing_secret_fails_stage(self, make_executor):
        stage = _shell("deploy", env={"TOKEN": {"secret": "absent"}})
        outcome = make_executor().run(_job([stage]), CancelToken())

        assert outcome.state == FAILED
        assert outcome.failure_stage == "deploy"
        assert "absent" in outcome.failure_details

    def test_container_command_line(self):
        stage = Stage.from_dict({"name": "build", "action": {"kind": "container", "image": "alpine:3", "command": "make all"}})
        ctx = StageContext(job_id="job-1", stage=stage, attempt=1, token=CancelToken(), env={"TOKEN": "x"})
        command = ContainerRunner(ShellRunner(), default_runtime="podman").build_command(ctx)
        assert command == "podman run --rm -e TOKEN alpine:3 sh -c 'make all'"


class TestParallelGroups:
    def test_members_run_concurrently_before_next_step(self, make_executor):
        barrier = threading.Barrier(2, timeout=5)
        order = []

        def member(ctx):
            barrier.wait()
            order.append(ctx.stage.name)
            return "ok"

        def after(ctx):
            order.append(ctx.stage.name)
            return "ok"

        runner = ScriptedRunner({"unit": member, "lint": member, "package": after})
        stages = [_shell("unit", parallel_group="tests"), _shell("lint", parallel_group="tests"), _shell("package")]
        outcome = make_executor(shell=runner).run(_job(stages), CancelToken())

        assert outcome.state == SUCCEEDED
        assert sorted(order[:2]) == ["lint", "unit"]
        assert order[2] == "package"

    def test_first_failure_cancels_siblings(self, make_executor):
        def waits_for_cancel(ctx):
            if ctx.token.wait(5):
                raise StageAbortedError(ctx.stage.name, "cancelled", reason="aborted")
            return "finished"

        runner = ScriptedRunner({"unit": _fail, "e2e": waits_for_cancel})
        stages = [_shell("unit", parallel_group="tests"), _shell("e2e", parallel_group="tests"), _shell("package")]
        started = time.monotonic()
        outcome = make_executor(shell=runner).run(_job(stages), CancelToken())

        assert time.monotonic() - started < 4
        assert outcome.state == FAILED
        assert outcome.failure_stage == "unit"
        assert outcome.failure_reason == "stage_failure"
        assert _statuses(outcome) == {"unit": "failed", "e2e": "aborted", "package": "skipped"}


class TestGatesAndApprovals:
    def test_gate_within_threshold(self, make_executor):
        stage = {"name": "slo", "action": {"kind": "gate", "metric": "error_rate", "max": 0.05}}
        outcome = make_executor(metrics=StaticMetricsClient({"error_rate": 0.01})).run(_job([stage]), CancelToken())
        assert outcome.state == SUCCEEDED
        assert outcome.stage_results[0].output_tail == "error_rate=0.01"

    def test_gate_breach_aborts(self, make_executor):
        stage = {"name": "slo", "retry": 3, "action": {"kind": "gate", "metric": "error_rate", "max": 0.05}}
        outcome = make_executor(metrics=StaticMetricsClient({"error_rate": 0.2})).run(_job([stage]), CancelToken())
        assert outcome.state == ABORTED
        assert outcome.failure_reason == "gate_breached"
        assert outcome.stage_results[0].attempts == 1

    def test_gate_below_min_aborts(self, make_executor):
        stage = {"name": "traffic", "action": {"kind": "gate", "metric": "rps", "min": 10}}
        outcome = make_executor(metrics=StaticMetricsClient({"rps": 2})).run(_job([stage]), CancelToken())
        assert outcome.failure_reason == "gate_breached"

    def test_unreachable_metric_fails(self, make_executor):
        stage = {"name": "slo", "action": {"kind": "gate", "metric": "missing", "max": 1}}
        outcome = make_executor(metrics=StaticMetricsClient()).run(_job([stage]), CancelToken())
        assert outcome.state == FAILED
        assert outcome.failure_reason == "stage_failure"

    def test_gate_query_is_bounded_by_stage_timeout(self, make_executor):
        class RecordingMetrics(StaticMetricsClient):
            def __init__(self):
                super().__init__({"error_rate": 0.01})
                self.timeouts = []

            def query(self, metric, timeout=None):
                self.timeouts.append(timeout)
                return super().query(metric, timeout)

        metrics = RecordingMetrics()
        stage = {"name": "slo", "timeout_seconds": 5, "action": {"kind": "gate", "metric": "error_rate", "max": 0.05}}
        outcome = make_executor(metrics=metrics).run(_job([stage]), CancelToken())

        assert outcome.state == SUCCEEDED
        [timeout] = metrics.timeouts
        assert 0 < timeout <= 5

    def test_approval_granted(self, make_executor):
        approvals = FakeApprovals({"approved": True, "approver": "alice"})
        stage = {"name": "release", "action": {"kind": "approval"}}
        outcome = make_executor(approvals=approvals).run(_job([stage]), CancelToken())
        assert outcome.state == SUCCEEDED
        assert outcome.stage_results[0].output_tail == "approved by alice"

    def test_approval_rejected_aborts(self, make_executor):
        approvals = FakeApprovals({"approved": False, "approver": "bob"})
        stage = {"name": "release", "action": {"kind": "approval"}}
        outcome = make_executor(approvals=approvals).run(_job([stage]), CancelToken())
        assert outcome.state == ABORTED
        assert outcome.failure_reason == "approval_rejected"

    def test_approval_times_out(self, make_executor):
        stage = {"name": "release", "timeout_seconds": 0.3, "action": {"kind": "approval"}}
        outcome = make_executor().run(_job([stage]), CancelToken())
        assert outcome.state == FAILED
        assert outcome.failure_reason == "stage_timeout"


class TestHooks:
    def test_hooks_run_always_then_outcome_list(self, make_executor):
        runner = ScriptedRunner({"compile": _fail})
        post = {
            "success": [_shell("announce")],
            "failure": [_shell("rollback")],
            "always": [_shell("cleanup")],
        }
        outcome = make_executor(shell=runner).run(_job([_shell("compile")], post=post), CancelToken())

        hooks = [(r.hook, r.name) for r in outcome.stage_results if r.hook is not None]
        assert hooks == [("always", "cleanup"), ("failure", "rollback")]
        assert outcome.state == FAILED
        assert outcome.failure_stage == "compile"

    def test_failing_hook_does_not_change_outcome(self, make_executor, artifacts):
        runner = ScriptedRunner({"cleanup": _fail})
        outcome = make_executor(shell=runner).run(_job([_shell("compile")], post={"always": [_shell("cleanup")]}), CancelToken())

        assert outcome.state == SUCCEEDED
        assert outcome.failure_reason is None
        hook_result = outcome.stage_results[-1]
        assert (hook_result.hook, hook_result.status) == ("always", "failed")
        assert artifacts.get("jobs/job-1/post-always/cleanup/attempt-1.log") == b"failing output"

    def test_aborted_hooks_run_after_cancellation(self, make_executor):
        runner = ScriptedRunner()
        token = CancelToken()
        token.cancel()
        outcome = make_executor(shell=runner).run(_job([_shell("compile")], post={"aborted": [_shell("notify")]}), token)

        assert outcome.state == ABORTED
        assert runner.calls == [("notify", 1)]

    def test_hook_storage_error_keeps_outcome(self, make_executor):
        class HookLogsUnwritable(InMemoryArtifactStore):
            def put(self, key, data):
                if "/post-" in key:
                    raise OSError("disk full")
                return super().put(key, data)

        executor = make_executor(artifact_store=HookLogsUnwritable())
        post = {"always": [_shell("cleanup")], "success": [_shell("announce")]}
        outcome = executor.run(_job([_shell("compile")], post=post), CancelToken())

        assert outcome.state == SUCCEEDED
        assert outcome.failure_reason is None
        assert _statuses(outcome) == {"compile": "succeeded"}
        hooks = [r for r in outcome.stage_results if r.hook is not None]
        assert [(r.hook, r.name, r.status) for r in hooks] == [("always", "cleanup", "failed"), ("success", "announce", "failed")]
        assert "disk full" in hooks[0].error

    def test_hook_token_stops_running_hooks(self, make_executor):
        def waits_for_cancel(ctx):
            if ctx.token.wait(5):
                raise StageAbortedError(ctx.stage.name, "cancelled", reason="aborted")
            return "finished"

        runner = ScriptedRunner({"notify": waits_for_cancel})
        hook_token = CancelToken()
        hook_token.cancel()
        started = time.monotonic()
        outcome = make_executor(shell=runner).run(_job([_shell("compile")], post={"success": [_shell("notify")]}), CancelToken(), hook_token)

        assert time.monotonic() - started < 4
        assert outcome.state == SUCCEEDED
        assert (outcome.stage_results[-1].hook, outcome.stage_results[-1].status) == ("success", "aborted")
