"""Pipeline executor: runs one job's stage graph on its assigned agent.

Stages run strictly in declared order. Consecutive stages that share a
`parallel_group` form one step and run concurrently; the step succeeds only
if every member succeeds, and the first failing member cancels its
siblings.

Per stage: each attempt is bounded by `timeout_seconds`; a failed or timed
out attempt is re-run up to `retry` times with the configured backoff.
Aborts (cancellation, gate breach, approval rejection) are never retried.

Post-condition hooks run once the outcome is known: `always` first, then
the list for the outcome. Hook failures are logged and recorded but never
change the outcome.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable

from conveyor.config.settings import RetryConfig
from conveyor.errors import ConveyorError, StageAbortedError, StageError, StageFailureError, StageTimeoutError
from conveyor.executor.actions import ActionRunner, CancelToken, StageContext
from conveyor.executor.state_machine import ABORT_REQUESTED, ABORTED, FAILED, SUCCEEDED
from conveyor.integrations.interfaces import SecretsStore
from conveyor.models import Job, Stage, StageResult
from conveyor.storage.interfaces import ArtifactStore
from conveyor.utils import format_rfc3339, tail, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineOutcome:
    state: str
    stage_results: tuple[StageResult, ...]
    failure_reason: str | None = None
    failure_stage: str | None = None
    failure_details: str | None = None
    output_ref: str | None = None


def plan_steps(stages: Iterable[Stage]) -> list[list[Stage]]:
    """Group stages into sequential steps; a contiguous parallel group is one step."""
    steps: list[list[Stage]] = []
    for stage in stages:
        if stage.parallel_group is not None and steps and steps[-1][0].parallel_group == stage.parallel_group:
            steps[-1].append(stage)
        else:
            steps.append([stage])
    return steps


def _status_for(err: StageError) -> str:
    if isinstance(err, StageTimeoutError):
        return "timed_out"
    if isinstance(err, StageAbortedError):
        return "aborted"
    return "failed"


def _outcome_state(err: StageError) -> str:
    return ABORTED if isinstance(err, StageAbortedError) else FAILED


class PipelineExecutor:
    def __init__(
        self,
        *,
        runners: dict[str, ActionRunner],
        artifacts: ArtifactStore,
        secrets: SecretsStore,
        retry: RetryConfig,
    ):
        self._runners = dict(runners)
        self._artifacts = artifacts
        self._secrets = secrets
        self._retry = retry

    def run(self, job: Job, token: CancelToken, hook_token: CancelToken | None = None) -> PipelineOutcome:
        """Run the stages under `token`, then the post hooks under `hook_token`.

        Aborting the job cancels `token` only; hooks still run and are stopped
        only through `hook_token` (runtime shutdown, lost agent).
        """
        results: dict[str, StageResult] = {}
        error: StageError | None = None

        for step in plan_steps(job.stages):
            if token.is_cancelled():
                error = StageAbortedError(step[0].name, "job aborted before stage started", reason=ABORT_REQUESTED)
                break
            if len(step) == 1:
                result, error = self._run_stage(job, step[0], token)
                results[result.name] = result
            else:
                step_results, error = self._run_group(job, step, token)
                results.update({r.name: r for r in step_results})
            if error is not None:
                break

        ordered = tuple(results.get(s.name) or StageResult(name=s.name, status="skipped") for s in job.stages)

        if error is None:
            outcome = PipelineOutcome(state=SUCCEEDED, stage_results=ordered)
        else:
            failing = results.get(error.stage)
            outcome = PipelineOutcome(
                state=_outcome_state(error),
                stage_results=ordered,
                failure_reason=error.reason,
                failure_stage=error.stage,
                failure_details=str(error),
                output_ref=failing.output_ref if failing else None,
            )

        hook_results = self._run_hooks(job, outcome.state, hook_token or CancelToken())
        if hook_results:
            outcome = PipelineOutcome(
                state=outcome.state,
                stage_results=outcome.stage_results + hook_results,
                failure_reason=outcome.failure_reason,
                failure_stage=outcome.failure_stage,
                failure_details=outcome.failure_details,
                output_ref=outcome.output_ref,
            )

        logger.info(
            "pipeline_finished",
            extra={"event": "pipeline_finished", "job_id": job.job_id, "reason": outcome.failure_reason, "stage": outcome.failure_stage},
        )
        return outcome

    def _run_group(self, job: Job, stages: list[Stage], token: CancelToken) -> tuple[list[StageResult], StageError | None]:
        group_token = CancelToken(token)
        with ThreadPoolExecutor(max_workers=len(stages), thread_name_prefix=f"{job.job_id}-group") as pool:
            futures = [pool.submit(self._run_stage, job, stage, group_token, group_token) for stage in stages]
            pairs = [f.result() for f in futures]

        results = [r for r, _ in pairs]
        errors = [e for _, e in pairs if e is not None]
        if not errors:
            return results, None
        # Prefer the member that actually failed over siblings it cancelled.
        primary = next((e for e in errors if e.reason != ABORT_REQUESTED), errors[0])
        if token.is_cancelled():
            primary = next((e for e in errors if e.reason == ABORT_REQUESTED), primary)
        return results, primary

    def _run_stage(
        self,
        job: Job,
        stage: Stage,
        token: CancelToken,
        group_token: CancelToken | None = None,
        hook: str | None = None,
    ) -> tuple[StageResult, StageError | None]:
        started_at = format_rfc3339(utcnow())
        runner = self._runners[stage.action.kind]
        attempt = 0
        output_ref: str | None = None
        output = ""

        while True:
            attempt += 1
            log_extra = {"job_id": job.job_id, "stage": stage.name, "attempt": attempt, "hook": hook}
            err: StageError | None = None
            try:
                ctx = self._context(job, stage, attempt, token)
                output = runner.run(ctx)
            except StageError as e:
                err = e
                output = e.output

            output_ref = self._store_output(job, stage, attempt, output, hook)

            if err is None:
                logger.info("stage_succeeded", extra={"event": "stage_succeeded", **log_extra})
                return self._result(stage, "succeeded", attempt, output_ref, output, None, started_at, hook), None

            logger.warning("stage_attempt_failed", extra={"event": "stage_attempt_failed", "reason": err.reason, **log_extra})
            if isinstance(err, StageAbortedError) or attempt > stage.retry:
                if group_token is not None and err.reason != ABORT_REQUESTED:
                    group_token.cancel()
                return self._result(stage, _status_for(err), attempt, output_ref, output, str(err), started_at, hook), err

            if token.wait(self._retry.delay_for(attempt)):
                err = StageAbortedError(stage.name, "cancelled during retry backoff", reason=ABORT_REQUESTED)
                return self._result(stage, "aborted", attempt, output_ref, output, str(err), started_at, hook), err

    def _run_hooks(self, job: Job, state: str, token: CancelToken) -> tuple[StageResult, ...]:
        results: list[StageResult] = []
        hooks = [("always", s) for s in job.post.always]
        hooks += self._outcome_hooks(job, state)
        for hook, stage in hooks:
            try:
                result, err = self._run_stage(job, stage, token, hook=hook)
            except (ConveyorError, OSError) as e:
                # Storage or runner trouble inside a hook still leaves the job's outcome alone.
                logger.warning(
                    "post_hook_failed",
                    exc_info=True,
                    extra={"event": "post_hook_failed", "job_id": job.job_id, "stage": stage.name, "hook": hook},
                )
                results.append(
                    StageResult(name=stage.name, status="failed", error=f"hook could not run: {e}", finished_at=format_rfc3339(utcnow()), hook=hook)
                )
                continue
            if err is not None:
                logger.warning(
                    "post_hook_failed",
                    extra={"event": "post_hook_failed", "job_id": job.job_id, "stage": stage.name, "hook": hook, "reason": err.reason},
                )
            results.append(result)
        return tuple(results)

    @staticmethod
    def _outcome_hooks(job: Job, state: str) -> list[tuple[str, Stage]]:
        name = {SUCCEEDED: "success", FAILED: "failure", ABORTED: "aborted"}[state]
        return [(name, s) for s in getattr(job.post, name)]

    def _context(self, job: Job, stage: Stage, attempt: int, token: CancelToken) -> StageContext:
        env: dict[str, str] = {}
        masked: list[str] = []
        for key, value in stage.env.items():
            if isinstance(value, dict):
                ref = str(value.get("secret"))
                try:
                    secret = self._secrets.get(ref)
                except ConveyorError as e:
                    raise StageFailureError(stage.name, f"cannot resolve secret '{ref}': {e}") from e
                env[key] = secret
                masked.append(secret)
            else:
                env[key] = str(value)
        deadline = time.monotonic() + stage.timeout_seconds if stage.timeout_seconds is not None else None
        return StageContext(
            job_id=job.job_id,
            stage=stage,
            attempt=attempt,
            token=token,
            deadline=deadline,
            env=env,
            masked=tuple(masked),
        )

    def _store_output(self, job: Job, stage: Stage, attempt: int, output: str, hook: str | None) -> str:
        prefix = f"post-{hook}/" if hook else ""
        key = f"jobs/{job.job_id}/{prefix}{stage.name}/attempt-{attempt}.log"
        return self._artifacts.put(key, output.encode("utf-8"))

    @staticmethod
    def _result(
        stage: Stage,
        status: str,
        attempts: int,
        output_ref: str | None,
        output: str,
        error: str | None,
        started_at: str,
        hook: str | None,
    ) -> StageResult:
        return StageResult(
            name=stage.name,
            status=status,
            attempts=attempts,
            output_ref=output_ref,
            output_tail=tail(output),
            error=error,
            started_at=started_at,
            finished_at=format_rfc3339(utcnow()),
            hook=hook,
        )
