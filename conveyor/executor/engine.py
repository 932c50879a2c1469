"""Job submission, status and control engine.

This engine:
- Validates job definitions against the JobDefinition schema and policy
- Creates queued jobs and hands them to the queue
- Registers agents and relays heartbeats to the agent pool
- Answers status queries and forwards aborts to the scheduler

Scheduling and execution themselves live in `scheduler.runner` and
`executor.pipeline`.
"""

from __future__ import annotations

import logging
from typing import Any

from conveyor.config.settings import LimitsConfig
from conveyor.executor.policy import enforce_agent_registration, enforce_job_definition
from conveyor.executor.state_machine import (
    AGENT_LOST,
    FAILED,
    QUEUED,
    RUNNING,
    SCHEDULED,
    TransitionRequest,
    apply_transition,
    is_terminal,
)
from conveyor.models import Agent, Job, PostHooks, Stage
from conveyor.registry.registry import Registry
from conveyor.registry.schema_validator import SchemaValidator
from conveyor.scheduler.agents import AgentPool
from conveyor.scheduler.queue import JobQueue
from conveyor.scheduler.runner import Scheduler
from conveyor.storage.interfaces import JobStore
from conveyor.utils import format_rfc3339, new_id, utcnow

logger = logging.getLogger(__name__)


class JobEngine:
    def __init__(
        self,
        *,
        schema_validator: SchemaValidator,
        registry: Registry,
        job_store: JobStore,
        queue: JobQueue,
        agents: AgentPool,
        scheduler: Scheduler,
        limits: LimitsConfig,
    ):
        self._schemas = schema_validator
        self._registry = registry
        self._jobs = job_store
        self._queue = queue
        self._agents = agents
        self._scheduler = scheduler
        self._limits = limits

    # --- jobs ---

    def submit_job(self, definition: dict[str, Any]) -> Job:
        self._schemas.validate("JobDefinition", definition)
        enforce_job_definition(definition, limits=self._limits)

        now = format_rfc3339(utcnow())
        job_id = new_id("job")
        job = Job(
            job_id=job_id,
            name=str(definition.get("name") or job_id),
            stages=tuple(Stage.from_dict(s) for s in definition["stages"]),
            labels=frozenset(definition.get("labels") or []),
            priority=int(definition.get("priority", 0)),
            lock=definition.get("lock"),
            post=PostHooks.from_dict(definition.get("post")),
            state=QUEUED,
            submitted_seq=self._jobs.next_sequence(),
            submitted_at=now,
            status_updated_at=now,
        )
        self._queue.submit(job)
        logger.info("job_submitted", extra={"event": "job_submitted", "job_id": job_id, "lock": job.lock})
        return job

    def submit_pipeline(self, name: str, overrides: dict[str, Any] | None = None) -> Job:
        return self.submit_job(self._registry.build_definition(name, overrides))

    def get_job(self, job_id: str) -> Job:
        return self._jobs.get(job_id)

    def get_status(self, job_id: str) -> dict[str, Any]:
        job = self._jobs.get(job_id)
        status: dict[str, Any] = {
            "job_id": job.job_id,
            "name": job.name,
            "state": job.state,
            "agent_id": job.agent_id,
            "dispatch_attempts": job.dispatch_attempts,
            "abort_requested": job.abort_requested,
            "submitted_at": job.submitted_at,
            "status_updated_at": job.status_updated_at,
        }
        if is_terminal(job.state):
            status["outcome"] = {
                "state": job.state,
                "failure_reason": job.failure_reason,
                "failure_stage": job.failure_stage,
                "failure_details": job.failure_details,
                "output_ref": job.output_ref,
                "terminal_at": job.terminal_at,
            }
            status["stages"] = [r.to_dict() for r in job.stage_results]
        return status

    def list_events(self, job_id: str) -> list[dict[str, Any]]:
        self._jobs.get(job_id)
        return self._jobs.list_events(job_id)

    def abort_job(self, job_id: str) -> Job:
        return self._scheduler.abort(job_id)

    # --- agents ---

    def register_agent(self, registration: dict[str, Any]) -> Agent:
        self._schemas.validate("AgentRegistration", registration)
        enforce_agent_registration(registration, limits=self._limits)
        agent_id = new_id("agent")
        agent = Agent(
            agent_id=agent_id,
            name=str(registration.get("name") or agent_id),
            labels=frozenset(registration.get("labels") or []),
            capacity=int(registration["capacity"]),
            last_heartbeat=0.0,
        )
        return self._agents.register(agent)

    def heartbeat(self, agent_id: str) -> Agent:
        return self._agents.heartbeat(agent_id)

    def deregister_agent(self, agent_id: str) -> list[str]:
        return self._scheduler.deregister_agent(agent_id)

    def list_agents(self) -> list[dict[str, Any]]:
        return self._agents.list_agents()

    # --- startup ---

    def recover(self) -> None:
        """Rebuild the queue from the store after a restart.

        Jobs that were scheduled or running belonged to agents of the previous
        process; they are failed as lost.
        """
        self._queue.restore(self._jobs.list_by_state([QUEUED]))
        for job in self._jobs.list_by_state([SCHEDULED, RUNNING]):
            failed = apply_transition(
                job,
                TransitionRequest(
                    new_state=FAILED,
                    now=utcnow(),
                    failure_reason=AGENT_LOST,
                    failure_details="runtime restarted while the job was in flight",
                ),
            )
            self._queue.mark_result(job.job_id, failed)
            logger.warning("job_agent_lost", extra={"event": "job_agent_lost", "job_id": job.job_id, "reason": AGENT_LOST})
