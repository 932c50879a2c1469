"""Configuration loader for the runtime.

Rules:
- Fail closed when config is missing or invalid.
- All relative paths in runtime.yaml are resolved relative to runtime.yaml's directory.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from conveyor.errors import PolicyViolationError


@dataclass(frozen=True)
class ServiceConfig:
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass(frozen=True)
class StorageConfig:
    driver: str = "memory"  # sqlite|memory
    sqlite_path: Path | None = None
    artifacts_dir: Path | None = None


@dataclass(frozen=True)
class SchedulerConfig:
    enabled: bool = True
    poll_interval_seconds: float = 1.0
    heartbeat_timeout_seconds: float = 30.0
    dispatch_retry_limit: int = 3
    requeue_on_agent_lost: bool = False
    max_workers: int = 8


@dataclass(frozen=True)
class RetryConfig:
    strategy: str = "exponential"  # fixed|exponential
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before re-running after the given (1-based) failed attempt."""
        if self.strategy == "fixed":
            delay = self.base_delay_seconds
        else:
            delay = self.base_delay_seconds * (2 ** max(attempt - 1, 0))
        return min(delay, self.max_delay_seconds)


@dataclass(frozen=True)
class IntegrationsConfig:
    secrets_env_prefix: str = "CONVEYOR_SECRET_"
    notification_webhook_url: str | None = None
    metrics_base_url: str | None = None
    metrics_timeout_seconds: float = 5.0
    container_runtime: str = "docker"


@dataclass(frozen=True)
class RuntimeConfig:
    service: ServiceConfig = field(default_factory=ServiceConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    integrations: IntegrationsConfig = field(default_factory=IntegrationsConfig)
    pipelines_dir: Path | None = None
    config_dir: Path | None = None


@dataclass(frozen=True)
class LimitsConfig:
    max_stages: int = 100
    max_stage_retry: int = 10
    max_stage_timeout_seconds: int = 86400
    min_priority: int = -1000
    max_priority: int = 1000
    max_labels: int = 32
    max_agent_capacity: int = 64


_RETRY_STRATEGIES = ("fixed", "exponential")
_STORAGE_DRIVERS = ("sqlite", "memory")


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise PolicyViolationError(f"Missing required config file: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise PolicyViolationError(f"Invalid YAML root object in config file: {path}")
    return data


def _resolve_path(base_dir: Path, raw: str) -> Path:
    p = Path(raw)
    if p.is_absolute():
        return p
    return (base_dir / p).resolve()


def load_runtime_config(runtime_config_path: Path) -> RuntimeConfig:
    cfg_dir = runtime_config_path.parent.resolve()
    raw = _load_yaml(runtime_config_path)

    service_raw = raw.get("service", {})
    storage_raw = raw.get("storage", {})
    scheduler_raw = raw.get("scheduler", {})
    retry_raw = raw.get("retry", {})
    pipelines_raw = raw.get("pipelines", {})
    integrations_raw = raw.get("integrations", {})

    service = ServiceConfig(
        host=str(service_raw.get("host", "0.0.0.0")),
        port=int(service_raw.get("port", 8080)),
    )

    driver = str(storage_raw.get("driver", "sqlite"))
    if driver not in _STORAGE_DRIVERS:
        raise PolicyViolationError(f"Unsupported storage.driver: {driver}")
    storage = StorageConfig(
        driver=driver,
        sqlite_path=_resolve_path(cfg_dir, str(storage_raw.get("sqlite", {}).get("path", "../state/conveyor.sqlite"))),
        artifacts_dir=_resolve_path(cfg_dir, str(storage_raw.get("artifacts", {}).get("dir", "../state/artifacts"))),
    )

    scheduler = SchedulerConfig(
        enabled=bool(scheduler_raw.get("enabled", True)),
        poll_interval_seconds=float(scheduler_raw.get("poll_interval_seconds", 1.0)),
        heartbeat_timeout_seconds=float(scheduler_raw.get("heartbeat_timeout_seconds", 30.0)),
        dispatch_retry_limit=int(scheduler_raw.get("dispatch_retry_limit", 3)),
        requeue_on_agent_lost=bool(scheduler_raw.get("requeue_on_agent_lost", False)),
        max_workers=int(scheduler_raw.get("max_workers", 8)),
    )
    if scheduler.dispatch_retry_limit < 0:
        raise PolicyViolationError("scheduler.dispatch_retry_limit must be >= 0")
    if scheduler.max_workers < 1:
        raise PolicyViolationError("scheduler.max_workers must be >= 1")

    strategy = str(retry_raw.get("strategy", "exponential"))
    if strategy not in _RETRY_STRATEGIES:
        raise PolicyViolationError(f"Unsupported retry.strategy: {strategy}")
    retry = RetryConfig(
        strategy=strategy,
        base_delay_seconds=float(retry_raw.get("base_delay_seconds", 1.0)),
        max_delay_seconds=float(retry_raw.get("max_delay_seconds", 30.0)),
    )

    secrets_raw = integrations_raw.get("secrets", {})
    notifications_raw = integrations_raw.get("notifications", {})
    metrics_raw = integrations_raw.get("metrics", {})
    containers_raw = integrations_raw.get("containers", {})
    integrations = IntegrationsConfig(
        secrets_env_prefix=str(secrets_raw.get("env_prefix", "CONVEYOR_SECRET_")),
        notification_webhook_url=notifications_raw.get("webhook_url") or None,
        metrics_base_url=metrics_raw.get("base_url") or None,
        metrics_timeout_seconds=float(metrics_raw.get("timeout_seconds", 5.0)),
        container_runtime=str(containers_raw.get("runtime", "docker")),
    )

    pipelines_dir = None
    if pipelines_raw.get("dir"):
        pipelines_dir = _resolve_path(cfg_dir, str(pipelines_raw["dir"]))

    return RuntimeConfig(
        service=service,
        storage=storage,
        scheduler=scheduler,
        retry=retry,
        integrations=integrations,
        pipelines_dir=pipelines_dir,
        config_dir=cfg_dir,
    )


def load_limits_config(limits_path: Path) -> LimitsConfig:
    raw = _load_yaml(limits_path)

    job = raw.get("job_definition", {})
    agent = raw.get("agent", {})

    return LimitsConfig(
        max_stages=int(job.get("max_stages", 100)),
        max_stage_retry=int(job.get("max_stage_retry", 10)),
        max_stage_timeout_seconds=int(job.get("max_stage_timeout_seconds", 86400)),
        min_priority=int(job.get("min_priority", -1000)),
        max_priority=int(job.get("max_priority", 1000)),
        max_labels=int(job.get("max_labels", 32)),
        max_agent_capacity=int(agent.get("max_capacity", 64)),
    )


def _env_path(name: str) -> Path | None:
    v = os.environ.get(name)
    if not v:
        return None
    return Path(v)


def default_config_paths() -> tuple[Path, Path, Path]:
    # Default to the config/ directory in the working directory, overridable per file.
    runtime_path = _env_path("CONVEYOR_RUNTIME_CONFIG") or Path.cwd() / "config" / "runtime.yaml"
    logging_path = _env_path("CONVEYOR_LOGGING_CONFIG") or Path.cwd() / "config" / "logging.yaml"
    limits_path = _env_path("CONVEYOR_LIMITS_CONFIG") or Path.cwd() / "config" / "limits.yaml"
    return runtime_path, logging_path, limits_path
