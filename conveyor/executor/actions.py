"""Stage action runners.

Stage actions are a closed set of tagged variants (see models.ACTION_TYPES).
Each kind has exactly one ActionRunner; the executor dispatches on
`stage.action.kind` and never resolves behavior by name at runtime.

Runners are cooperative: they observe the stage deadline and the
cancellation token and raise:
- StageTimeoutError when the deadline passes
- StageAbortedError when cancelled, or when the action ends the job on purpose
- StageFailureError for any other unsuccessful run
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import httpx

from conveyor.errors import NotFoundError, StageAbortedError, StageFailureError, StageTimeoutError
from conveyor.executor.state_machine import ABORT_REQUESTED, APPROVAL_REJECTED, GATE_BREACHED
from conveyor.integrations.interfaces import MetricsClient
from conveyor.models import ApprovalAction, ContainerAction, GateAction, ShellAction, Stage

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.05


class CancelToken:
    """Cancellation flag that is also set when any parent token is cancelled."""

    def __init__(self, *parents: "CancelToken"):
        self._event = threading.Event()
        self._parents = parents

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set() or any(p.is_cancelled() for p in self._parents)

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; return True as soon as the token is cancelled."""
        end = time.monotonic() + seconds
        while not self.is_cancelled():
            remaining = end - time.monotonic()
            if remaining <= 0:
                return False
            self._event.wait(min(_POLL_SECONDS, remaining))
        return True


@dataclass
class StageContext:
    job_id: str
    stage: Stage
    attempt: int
    token: CancelToken
    deadline: float | None = None  # time.monotonic() value
    env: dict[str, str] = field(default_factory=dict)
    masked: tuple[str, ...] = ()

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def mask(self, text: str) -> str:
        for value in self.masked:
            if value:
                text = text.replace(value, "***")
        return text


class ActionRunner(ABC):
    kind: str

    @abstractmethod
    def run(self, ctx: StageContext) -> str:
        """Run one attempt of the stage's action and return its captured output."""


class ShellRunner(ActionRunner):
    kind = ShellAction.kind

    def run(self, ctx: StageContext) -> str:
        action = ctx.stage.action
        return self.run_command(ctx, action.command)

    def run_command(self, ctx: StageContext, command: str) -> str:
        name = ctx.stage.name
        try:
            proc = subprocess.Popen(
                command,
                shell=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env={**os.environ, **ctx.env},
                start_new_session=True,
            )
        except OSError as e:
            raise StageFailureError(name, f"failed to start command: {e}") from e

        while True:
            try:
                out, _ = proc.communicate(timeout=_POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                if ctx.token.is_cancelled():
                    output = self._kill(proc)
                    raise StageAbortedError(name, "cancelled", ctx.mask(output), reason=ABORT_REQUESTED)
                if ctx.expired():
                    output = self._kill(proc)
                    raise StageTimeoutError(name, f"timed out after {ctx.stage.timeout_seconds}s", ctx.mask(output))

        output = ctx.mask(out or "")
        if proc.returncode != 0:
            raise StageFailureError(name, f"exit code {proc.returncode}", output)
        return output

    @staticmethod
    def _kill(proc: subprocess.Popen) -> str:
        # The command runs in its own session; kill the whole group so children release the pipe.
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        out, _ = proc.communicate()
        return out or ""


class ContainerRunner(ActionRunner):
    """Runs the command inside a throwaway container via the container runtime CLI."""

    kind = ContainerAction.kind

    def __init__(self, shell: ShellRunner, default_runtime: str = "docker"):
        self._shell = shell
        self.default_runtime = default_runtime

    def build_command(self, ctx: StageContext) -> str:
        action = ctx.stage.action
        argv = [action.runtime or self.default_runtime, "run", "--rm"]
        # Values are inherited from the runner's environment so secrets stay off the command line.
        for name in sorted(ctx.env):
            argv += ["-e", name]
        argv += [action.image, "sh", "-c", action.command]
        return shlex.join(argv)

    def run(self, ctx: StageContext) -> str:
        return self._shell.run_command(ctx, self.build_command(ctx))


class ApprovalRunner(ActionRunner):
    """Blocks until a decision for (job, stage) is recorded by the approvals service."""

    kind = ApprovalAction.kind

    def __init__(self, approvals):
        self._approvals = approvals

    def run(self, ctx: StageContext) -> str:
        name = ctx.stage.name
        logger.info("approval_pending", extra={"event": "approval_pending", "job_id": ctx.job_id, "stage": name})
        while True:
            decision = self._approvals.decision_for(ctx.job_id, name)
            if decision is not None:
                approver = decision.get("approver", "")
                if decision.get("approved"):
                    return f"approved by {approver}"
                raise StageAbortedError(name, f"rejected by {approver}", reason=APPROVAL_REJECTED)
            if ctx.expired():
                raise StageTimeoutError(name, f"no decision within {ctx.stage.timeout_seconds}s")
            if ctx.token.wait(_POLL_SECONDS * 4):
                raise StageAbortedError(name, "cancelled", reason=ABORT_REQUESTED)


class GateRunner(ActionRunner):
    """Checks a metric from the SLO endpoint against the stage's thresholds."""

    kind = GateAction.kind

    def __init__(self, metrics: MetricsClient | None):
        self._metrics = metrics

    def run(self, ctx: StageContext) -> str:
        name = ctx.stage.name
        action = ctx.stage.action
        if self._metrics is None:
            raise StageFailureError(name, "no metrics endpoint configured")
        remaining = ctx.remaining()
        if remaining is not None and remaining <= 0:
            raise StageTimeoutError(name, f"no time left to query {action.metric}")
        try:
            value = self._metrics.query(action.metric, timeout=remaining)
        except (httpx.HTTPError, NotFoundError, KeyError, ValueError) as e:
            raise StageFailureError(name, f"metric query failed for {action.metric}: {e}") from e

        if ctx.expired():
            raise StageTimeoutError(name, f"metric query exceeded {ctx.stage.timeout_seconds}s")

        output = f"{action.metric}={value}"
        if action.max is not None and value > action.max:
            raise StageAbortedError(name, f"{output} exceeds max {action.max}", output, reason=GATE_BREACHED)
        if action.min is not None and value < action.min:
            raise StageAbortedError(name, f"{output} below min {action.min}", output, reason=GATE_BREACHED)
        return output


def default_runners(*, approvals, metrics: MetricsClient | None, container_runtime: str = "docker") -> dict[str, ActionRunner]:
    shell = ShellRunner()
    runners: list[ActionRunner] = [
        shell,
        ContainerRunner(shell, default_runtime=container_runtime),
        ApprovalRunner(approvals),
        GateRunner(metrics),
    ]
    return {r.kind: r for r in runners}
