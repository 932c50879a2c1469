"""Policy enforcement for job definitions and agent registrations.

This module enforces rules the schema cannot express:
- Global hard limits (limits.yaml)
- Structural rules of the stage graph (unique names, contiguous parallel groups)

It does not execute anything. It only proves whether a definition is
runnable within the declared boundaries.
"""

from __future__ import annotations

import re
from typing import Any

from conveyor.config.settings import LimitsConfig
from conveyor.errors import DefinitionViolation, InvalidDefinitionError
from conveyor.models import HOOK_NAMES

LABEL_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]*$")


def _check_labels(labels: Any, *, path: str, limits: LimitsConfig) -> list[DefinitionViolation]:
    out: list[DefinitionViolation] = []
    if labels is None:
        return out
    if not isinstance(labels, list):
        return [DefinitionViolation(path, "labels must be a list of strings")]
    if len(labels) > limits.max_labels:
        out.append(DefinitionViolation(path, f"too many labels ({len(labels)} > {limits.max_labels})"))
    for i, label in enumerate(labels):
        if not isinstance(label, str) or not LABEL_PATTERN.match(label):
            out.append(DefinitionViolation(f"{path}/{i}", f"malformed label: {label!r}"))
    return out


def _check_stage(stage: dict[str, Any], *, path: str, limits: LimitsConfig) -> list[DefinitionViolation]:
    out: list[DefinitionViolation] = []
    retry = int(stage.get("retry", 0))
    if retry > limits.max_stage_retry:
        out.append(DefinitionViolation(f"{path}/retry", f"retry exceeds global upper bound ({limits.max_stage_retry})"))
    timeout = stage.get("timeout_seconds")
    if timeout is not None and float(timeout) > limits.max_stage_timeout_seconds:
        out.append(
            DefinitionViolation(
                f"{path}/timeout_seconds",
                f"timeout_seconds exceeds global upper bound ({limits.max_stage_timeout_seconds})",
            )
        )
    return out


def _check_parallel_groups(stages: list[dict[str, Any]], *, path: str) -> list[DefinitionViolation]:
    """A parallel group must be one contiguous run of sibling stages."""
    out: list[DefinitionViolation] = []
    closed: set[str] = set()
    previous: str | None = None
    for i, stage in enumerate(stages):
        group = stage.get("parallel_group")
        if previous is not None and group != previous:
            closed.add(previous)
        if group is not None and group in closed:
            out.append(DefinitionViolation(f"{path}/{i}/parallel_group", f"parallel group '{group}' is not contiguous"))
        previous = group
    return out


def enforce_job_definition(definition: dict[str, Any], *, limits: LimitsConfig) -> None:
    """Raise InvalidDefinitionError unless the (schema-valid) definition is runnable."""
    violations: list[DefinitionViolation] = []

    stages = definition.get("stages")
    if not isinstance(stages, list) or not stages:
        raise InvalidDefinitionError.single("JobDefinition", "/stages", "job definition must declare at least one stage")
    if len(stages) > limits.max_stages:
        violations.append(DefinitionViolation("/stages", f"too many stages ({len(stages)} > {limits.max_stages})"))

    violations.extend(_check_labels(definition.get("labels"), path="/labels", limits=limits))

    priority = int(definition.get("priority", 0))
    if not limits.min_priority <= priority <= limits.max_priority:
        violations.append(
            DefinitionViolation("/priority", f"priority must be within [{limits.min_priority}, {limits.max_priority}]")
        )

    seen: set[str] = set()
    for i, stage in enumerate(stages):
        name = str(stage.get("name"))
        if name in seen:
            violations.append(DefinitionViolation(f"/stages/{i}/name", f"duplicate stage name: {name}"))
        seen.add(name)
        violations.extend(_check_stage(stage, path=f"/stages/{i}", limits=limits))
    violations.extend(_check_parallel_groups(stages, path="/stages"))

    post = definition.get("post") or {}
    for hook in HOOK_NAMES:
        hook_stages = post.get(hook) or []
        hook_seen: set[str] = set()
        for i, stage in enumerate(hook_stages):
            name = str(stage.get("name"))
            if name in hook_seen:
                violations.append(DefinitionViolation(f"/post/{hook}/{i}/name", f"duplicate stage name: {name}"))
            hook_seen.add(name)
            if stage.get("parallel_group"):
                violations.append(
                    DefinitionViolation(f"/post/{hook}/{i}/parallel_group", "post-condition hooks run sequentially")
                )
            action = stage.get("action") or {}
            if action.get("kind") == "approval":
                violations.append(
                    DefinitionViolation(f"/post/{hook}/{i}/action/kind", "post-condition hooks cannot wait for an approval")
                )
            violations.extend(_check_stage(stage, path=f"/post/{hook}/{i}", limits=limits))

    if violations:
        raise InvalidDefinitionError("JobDefinition", violations)


def enforce_agent_registration(registration: dict[str, Any], *, limits: LimitsConfig) -> None:
    violations = _check_labels(registration.get("labels"), path="/labels", limits=limits)
    capacity = registration.get("capacity")
    if not isinstance(capacity, int) or isinstance(capacity, bool) or capacity < 1:
        violations.append(DefinitionViolation("/capacity", "capacity must be a positive integer"))
    elif capacity > limits.max_agent_capacity:
        violations.append(DefinitionViolation("/capacity", f"capacity exceeds global upper bound ({limits.max_agent_capacity})"))
    if violations:
        raise InvalidDefinitionError("AgentRegistration", violations)
