"""In-memory registry of pipeline templates.

A pipeline template is a named, reusable job definition loaded from the
pipelines directory at startup:

    kind: Pipeline
    name: deploy-service
    job: {stages: [...], labels: [...], lock: prod-deploy}

Fail-closed rules:
- Every template must pass the Pipeline schema, and its job must pass the
  JobDefinition schema and definition policy.
- Duplicate template names are rejected.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from conveyor.config.settings import LimitsConfig
from conveyor.errors import NotFoundError, PolicyViolationError
from conveyor.executor.policy import enforce_job_definition
from conveyor.registry.loader import iter_yaml_files, load_yaml_document
from conveyor.registry.schema_validator import SchemaValidator

# Fields a caller may override when starting a run from a template.
_OVERRIDABLE = ("priority", "labels", "lock", "name")


@dataclass(frozen=True)
class PipelineRecord:
    name: str
    description: str
    path: Path | None
    job: dict[str, Any]


class Registry:
    def __init__(self, pipelines: dict[str, PipelineRecord] | None = None):
        self._pipelines = dict(pipelines or {})

    @classmethod
    def load(cls, *, pipelines_dir: Path | None, schema_validator: SchemaValidator, limits: LimitsConfig) -> "Registry":
        pipelines: dict[str, PipelineRecord] = {}
        if pipelines_dir is None:
            return cls(pipelines)

        for p in iter_yaml_files(pipelines_dir):
            doc = load_yaml_document(p)
            if doc.kind != "Pipeline":
                continue
            schema_validator.validate("Pipeline", doc.data)
            schema_validator.validate("JobDefinition", doc.data["job"])
            enforce_job_definition(doc.data["job"], limits=limits)

            name = str(doc.data["name"])
            if name in pipelines:
                raise PolicyViolationError(f"Duplicate Pipeline name: {name} ({pipelines[name].path} and {p})")
            pipelines[name] = PipelineRecord(
                name=name,
                description=str(doc.data.get("description", "")),
                path=p.resolve(),
                job=doc.data["job"],
            )

        return cls(pipelines)

    def names(self) -> list[str]:
        return sorted(self._pipelines)

    def get_pipeline(self, name: str) -> PipelineRecord:
        if name not in self._pipelines:
            raise NotFoundError("Pipeline", name)
        return self._pipelines[name]

    def build_definition(self, name: str, overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        """Return a job definition for a run of the named template."""
        record = self.get_pipeline(name)
        definition = copy.deepcopy(record.job)
        definition.setdefault("name", record.name)
        for key, value in (overrides or {}).items():
            if key not in _OVERRIDABLE:
                raise PolicyViolationError(f"Pipeline run may not override '{key}'")
            definition[key] = value
        return definition
