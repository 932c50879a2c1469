"""FastAPI surface for the Conveyor runtime."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

from fastapi import Body, FastAPI
from fastapi.responses import JSONResponse

from conveyor.approvals.service import ApprovalService
from conveyor.config.logging import apply_logging_config
from conveyor.config.settings import LimitsConfig, RuntimeConfig, default_config_paths, load_limits_config, load_runtime_config
from conveyor.errors import ConflictError, InvalidDefinitionError, NotFoundError, PolicyViolationError
from conveyor.executor.actions import default_runners
from conveyor.executor.engine import JobEngine
from conveyor.executor.pipeline import PipelineExecutor
from conveyor.integrations.clients import (
    EnvSecretsStore,
    HttpMetricsClient,
    LoggingNotificationSink,
    WebhookNotificationSink,
)
from conveyor.integrations.interfaces import MetricsClient, NotificationSink, SecretsStore
from conveyor.registry.registry import Registry
from conveyor.registry.schema_validator import SchemaValidator
from conveyor.scheduler.agents import AgentPool
from conveyor.scheduler.locks import LockTable
from conveyor.scheduler.queue import JobQueue
from conveyor.scheduler.runner import Scheduler
from conveyor.storage.interfaces import ArtifactStore
from conveyor.storage.memory import FileArtifactStore, InMemoryApprovalStore, InMemoryArtifactStore, InMemoryJobStore
from conveyor.storage.sqlite import SQLiteStores

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppComponents:
    engine: JobEngine
    scheduler: Scheduler
    approvals: ApprovalService
    registry: Registry
    artifact_store: ArtifactStore


def build_components(
    runtime: RuntimeConfig,
    limits: LimitsConfig,
    *,
    secrets: SecretsStore | None = None,
    metrics: MetricsClient | None = None,
    notifier: NotificationSink | None = None,
    artifacts: ArtifactStore | None = None,
    clock: Callable[[], float] | None = None,
) -> AppComponents:
    schema_validator = SchemaValidator.load_from_dir()
    registry = Registry.load(pipelines_dir=runtime.pipelines_dir, schema_validator=schema_validator, limits=limits)

    if runtime.storage.driver == "sqlite":
        stores = SQLiteStores(runtime.storage.sqlite_path)
        job_store, approval_store = stores.jobs, stores.approvals
    else:
        job_store, approval_store = InMemoryJobStore(), InMemoryApprovalStore()

    if artifacts is None:
        if runtime.storage.driver == "sqlite" and runtime.storage.artifacts_dir is not None:
            artifacts = FileArtifactStore(runtime.storage.artifacts_dir)
        else:
            artifacts = InMemoryArtifactStore()

    integrations = runtime.integrations
    if secrets is None:
        secrets = EnvSecretsStore(integrations.secrets_env_prefix)
    if metrics is None and integrations.metrics_base_url:
        metrics = HttpMetricsClient(integrations.metrics_base_url, integrations.metrics_timeout_seconds)
    if notifier is None:
        if integrations.notification_webhook_url:
            notifier = WebhookNotificationSink(integrations.notification_webhook_url)
        else:
            notifier = LoggingNotificationSink()

    approvals = ApprovalService(approval_store=approval_store, job_store=job_store)
    executor = PipelineExecutor(
        runners=default_runners(approvals=approvals, metrics=metrics, container_runtime=integrations.container_runtime),
        artifacts=artifacts,
        secrets=secrets,
        retry=runtime.retry,
    )

    pool_kwargs: dict[str, Any] = {"heartbeat_timeout_seconds": runtime.scheduler.heartbeat_timeout_seconds}
    if clock is not None:
        pool_kwargs["clock"] = clock
    agents = AgentPool(**pool_kwargs)
    locks = LockTable()
    queue = JobQueue(job_store)
    scheduler = Scheduler(
        config=runtime.scheduler,
        queue=queue,
        agents=agents,
        locks=locks,
        executor=executor,
        store=job_store,
        notifier=notifier,
    )
    engine = JobEngine(
        schema_validator=schema_validator,
        registry=registry,
        job_store=job_store,
        queue=queue,
        agents=agents,
        scheduler=scheduler,
        limits=limits,
    )
    engine.recover()

    return AppComponents(engine=engine, scheduler=scheduler, approvals=approvals, registry=registry, artifact_store=artifacts)


def _build_components_from_env() -> AppComponents:
    runtime_path, logging_path, limits_path = default_config_paths()
    runtime = load_runtime_config(runtime_path)
    limits = load_limits_config(limits_path)
    apply_logging_config(logging_path)
    return build_components(runtime, limits)


def _error_payload(err: Exception) -> dict[str, Any]:
    if isinstance(err, InvalidDefinitionError):
        return {
            "error": "INVALID_DEFINITION",
            "kind": err.kind,
            "violations": [{"path": v.path, "message": v.message} for v in err.violations],
        }
    if isinstance(err, PolicyViolationError):
        return {"error": "POLICY_VIOLATION", "message": str(err), "details": err.details}
    if isinstance(err, ConflictError):
        return {"error": "CONFLICT", "message": str(err), "details": err.details}
    if isinstance(err, NotFoundError):
        return {"error": "NOT_FOUND", "resource_type": err.resource_type, "resource_id": err.resource_id}
    return {"error": "INTERNAL", "message": str(err)}


def create_app(components: AppComponents | None = None) -> FastAPI:
    app = FastAPI(title="Conveyor CI/CD Runtime", version="0.1.0")
    app.state.components = components
    app.state.stop_event = threading.Event()

    @app.on_event("startup")
    def _startup() -> None:
        # Fail closed at startup if config, schemas or pipelines cannot be loaded.
        if app.state.components is None:
            app.state.components = _build_components_from_env()
        scheduler = app.state.components.scheduler
        if scheduler.config.enabled:
            thread = threading.Thread(target=scheduler.run_forever, args=(app.state.stop_event,), name="conveyor-scheduler", daemon=True)
            thread.start()
        logger.info("runtime_started", extra={"event": "runtime_started"})

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.stop_event.set()
        if app.state.components is not None:
            app.state.components.scheduler.shutdown()

    @app.exception_handler(InvalidDefinitionError)
    def _invalid_definition_handler(_req, exc: InvalidDefinitionError):
        return JSONResponse(status_code=422, content=_error_payload(exc))

    @app.exception_handler(PolicyViolationError)
    def _policy_violation_handler(_req, exc: PolicyViolationError):
        return JSONResponse(status_code=403, content=_error_payload(exc))

    @app.exception_handler(ConflictError)
    def _conflict_handler(_req, exc: ConflictError):
        return JSONResponse(status_code=409, content=_error_payload(exc))

    @app.exception_handler(NotFoundError)
    def _not_found_handler(_req, exc: NotFoundError):
        return JSONResponse(status_code=404, content=_error_payload(exc))

    @app.exception_handler(Exception)
    def _unhandled_handler(_req, exc: Exception):
        logger.exception("unhandled_error", extra={"event": "unhandled_error"})
        return JSONResponse(status_code=500, content=_error_payload(exc))

    def _components() -> AppComponents:
        return app.state.components

    @app.get("/health")
    def health() -> dict[str, Any]:
        """Health check for runtime availability. Returns 200 when config, schemas and stores are loaded."""
        return {"status": "ok"}

    @app.post("/jobs")
    def submit_job(definition: dict[str, Any] = Body(...)) -> dict[str, Any]:
        job = _components().engine.submit_job(definition)
        return {"job": job.to_dict()}

    @app.get("/jobs/{job_id}")
    def get_job(job_id: str) -> dict[str, Any]:
        return {"status": _components().engine.get_status(job_id)}

    @app.get("/jobs/{job_id}/events")
    def get_job_events(job_id: str) -> dict[str, Any]:
        return {"events": _components().engine.list_events(job_id)}

    @app.post("/jobs/{job_id}/abort")
    def abort_job(job_id: str) -> dict[str, Any]:
        job = _components().engine.abort_job(job_id)
        return {"job": job.to_dict()}

    @app.post("/jobs/{job_id}/approvals/{stage}")
    def decide_approval(job_id: str, stage: str, decision: dict[str, Any] = Body(...)) -> dict[str, Any]:
        approved = decision.get("approved")
        if not isinstance(approved, bool):
            raise PolicyViolationError("approval decision requires boolean 'approved'")
        res = _components().approvals.decide(job_id, stage, approved=approved, approver=str(decision.get("approver", "")))
        return {"decision": res}

    @app.get("/pipelines")
    def list_pipelines() -> dict[str, Any]:
        registry = _components().registry
        return {
            "pipelines": [
                {"name": name, "description": registry.get_pipeline(name).description} for name in registry.names()
            ]
        }

    @app.post("/pipelines/{name}/runs")
    def run_pipeline(name: str, overrides: dict[str, Any] | None = Body(default=None)) -> dict[str, Any]:
        job = _components().engine.submit_pipeline(name, overrides)
        return {"job": job.to_dict()}

    @app.post("/agents")
    def register_agent(registration: dict[str, Any] = Body(...)) -> dict[str, Any]:
        agent = _components().engine.register_agent(registration)
        return {"agent": agent.to_dict()}

    @app.get("/agents")
    def list_agents() -> dict[str, Any]:
        return {"agents": _components().engine.list_agents()}

    @app.post("/agents/{agent_id}/heartbeat")
    def heartbeat(agent_id: str) -> dict[str, Any]:
        agent = _components().engine.heartbeat(agent_id)
        return {"agent": agent.to_dict()}

    @app.delete("/agents/{agent_id}")
    def deregister_agent(agent_id: str) -> dict[str, Any]:
        lost = _components().engine.deregister_agent(agent_id)
        return {"agent_id": agent_id, "lost_jobs": lost}

    return app


app = create_app()
