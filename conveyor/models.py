"""Domain records: jobs, stages, stage actions, agents, stage results.

Records are frozen; lifecycle changes produce new records (see
executor.state_machine). Every record round-trips through plain dicts so it
can be stored as a JSON document and returned by the API unchanged.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Union

from conveyor.errors import InvalidDefinitionError


# --- Stage actions (closed set of tagged variants) ---


@dataclass(frozen=True)
class ShellAction:
    kind: ClassVar[str] = "shell"
    command: str


@dataclass(frozen=True)
class ContainerAction:
    kind: ClassVar[str] = "container"
    image: str
    command: str
    runtime: str | None = None


@dataclass(frozen=True)
class ApprovalAction:
    kind: ClassVar[str] = "approval"
    message: str = ""


@dataclass(frozen=True)
class GateAction:
    kind: ClassVar[str] = "gate"
    metric: str
    max: float | None = None
    min: float | None = None


StageAction = Union[ShellAction, ContainerAction, ApprovalAction, GateAction]

ACTION_TYPES: dict[str, type] = {
    ShellAction.kind: ShellAction,
    ContainerAction.kind: ContainerAction,
    ApprovalAction.kind: ApprovalAction,
    GateAction.kind: GateAction,
}


def action_from_dict(raw: dict[str, Any]) -> StageAction:
    kind = raw.get("kind")
    cls = ACTION_TYPES.get(str(kind))
    if cls is None:
        raise InvalidDefinitionError.single("JobDefinition", "/action/kind", f"Unknown stage action kind: {kind}")
    fields = {k: v for k, v in raw.items() if k != "kind"}
    try:
        return cls(**fields)
    except TypeError as e:
        raise InvalidDefinitionError.single("JobDefinition", "/action", f"Invalid {kind} action: {e}") from e


def action_to_dict(action: StageAction) -> dict[str, Any]:
    out = {"kind": action.kind}
    out.update({k: v for k, v in asdict(action).items() if v is not None})
    return out


# --- Stages and jobs ---


@dataclass(frozen=True)
class Stage:
    name: str
    action: StageAction
    retry: int = 0
    timeout_seconds: float | None = None
    parallel_group: str | None = None
    env: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Stage":
        timeout = raw.get("timeout_seconds")
        return cls(
            name=str(raw["name"]),
            action=action_from_dict(raw["action"]),
            retry=int(raw.get("retry", 0)),
            timeout_seconds=float(timeout) if timeout is not None else None,
            parallel_group=raw.get("parallel_group"),
            env=dict(raw.get("env") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "action": action_to_dict(self.action), "retry": self.retry}
        if self.timeout_seconds is not None:
            out["timeout_seconds"] = self.timeout_seconds
        if self.parallel_group is not None:
            out["parallel_group"] = self.parallel_group
        if self.env:
            out["env"] = dict(self.env)
        return out


HOOK_NAMES = ("always", "success", "failure", "aborted")


@dataclass(frozen=True)
class PostHooks:
    always: tuple[Stage, ...] = ()
    success: tuple[Stage, ...] = ()
    failure: tuple[Stage, ...] = ()
    aborted: tuple[Stage, ...] = ()

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "PostHooks":
        raw = raw or {}
        return cls(**{name: tuple(Stage.from_dict(s) for s in raw.get(name) or []) for name in HOOK_NAMES})

    def to_dict(self) -> dict[str, Any]:
        return {name: [s.to_dict() for s in getattr(self, name)] for name in HOOK_NAMES if getattr(self, name)}


@dataclass(frozen=True)
class StageResult:
    name: str
    status: str  # succeeded|failed|timed_out|aborted|skipped
    attempts: int = 0
    output_ref: str | None = None
    output_tail: str = ""
    error: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    hook: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "StageResult":
        return cls(**raw)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Job:
    job_id: str
    name: str
    stages: tuple[Stage, ...]
    labels: frozenset[str]
    priority: int
    lock: str | None
    post: PostHooks
    state: str
    submitted_seq: int
    submitted_at: str
    status_updated_at: str
    started_at: str | None = None
    terminal_at: str | None = None
    agent_id: str | None = None
    dispatch_attempts: int = 0
    failure_reason: str | None = None
    failure_stage: str | None = None
    failure_details: str | None = None
    output_ref: str | None = None
    stage_results: tuple[StageResult, ...] = ()
    abort_requested: bool = False

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Job":
        return cls(
            job_id=str(raw["job_id"]),
            name=str(raw["name"]),
            stages=tuple(Stage.from_dict(s) for s in raw["stages"]),
            labels=frozenset(raw.get("labels") or []),
            priority=int(raw.get("priority", 0)),
            lock=raw.get("lock"),
            post=PostHooks.from_dict(raw.get("post")),
            state=str(raw["state"]),
            submitted_seq=int(raw["submitted_seq"]),
            submitted_at=str(raw["submitted_at"]),
            status_updated_at=str(raw["status_updated_at"]),
            started_at=raw.get("started_at"),
            terminal_at=raw.get("terminal_at"),
            agent_id=raw.get("agent_id"),
            dispatch_attempts=int(raw.get("dispatch_attempts", 0)),
            failure_reason=raw.get("failure_reason"),
            failure_stage=raw.get("failure_stage"),
            failure_details=raw.get("failure_details"),
            output_ref=raw.get("output_ref"),
            stage_results=tuple(StageResult.from_dict(r) for r in raw.get("stage_results") or []),
            abort_requested=bool(raw.get("abort_requested", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "name": self.name,
            "stages": [s.to_dict() for s in self.stages],
            "labels": sorted(self.labels),
            "priority": self.priority,
            "lock": self.lock,
            "post": self.post.to_dict(),
            "state": self.state,
            "submitted_seq": self.submitted_seq,
            "submitted_at": self.submitted_at,
            "status_updated_at": self.status_updated_at,
            "started_at": self.started_at,
            "terminal_at": self.terminal_at,
            "agent_id": self.agent_id,
            "dispatch_attempts": self.dispatch_attempts,
            "failure_reason": self.failure_reason,
            "failure_stage": self.failure_stage,
            "failure_details": self.failure_details,
            "output_ref": self.output_ref,
            "stage_results": [r.to_dict() for r in self.stage_results],
            "abort_requested": self.abort_requested,
        }


# --- Agents ---

AGENT_ONLINE = "online"
AGENT_OFFLINE = "offline"


@dataclass
class Agent:
    """Mutable pool entry. Only the AgentPool touches these fields."""

    agent_id: str
    name: str
    labels: frozenset[str]
    capacity: int
    last_heartbeat: float
    status: str = AGENT_ONLINE
    running: set[str] = field(default_factory=set)

    @property
    def load(self) -> int:
        return len(self.running)

    @property
    def free_slots(self) -> int:
        return max(self.capacity - self.load, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "name": self.name,
            "labels": sorted(self.labels),
            "capacity": self.capacity,
            "load": self.load,
            "status": self.status,
            "running": sorted(self.running),
        }
