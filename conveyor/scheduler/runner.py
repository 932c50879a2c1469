"""Scheduler: matches queued jobs to agents and hands them to the executor.

One cycle (`run_once`):
1. Sweep the agent pool; jobs on lost agents fail with `agent_lost` (or are
   requeued when configured and the dispatch budget allows).
2. For each online agent with free capacity, under the coordination mutex:
   dequeue an eligible job, acquire its lock, reserve the agent and mark it
   `scheduled`. Nothing partial is ever visible.
3. Dispatch outside the mutex. A dispatch that cannot start is rolled back
   and requeued until `dispatch_retry_limit` is spent (`dispatch_exhausted`).

A job whose abort is pending is never requeued or scheduled again; it ends
`aborted` wherever it would otherwise go back to the queue.

The lock table and reservations are only mutated while holding `mutex`.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Callable

from conveyor.config.settings import SchedulerConfig
from conveyor.errors import ConflictError, ExecutorStartError, NoEligibleJobError, NotFoundError
from conveyor.executor.actions import CancelToken
from conveyor.executor.pipeline import PipelineExecutor, PipelineOutcome
from conveyor.executor.state_machine import (
    ABORT_REQUESTED,
    ABORTED,
    AGENT_LOST,
    DISPATCH_EXHAUSTED,
    FAILED,
    QUEUED,
    RUNNING,
    SCHEDULED,
    STAGE_FAILURE,
    TransitionRequest,
    apply_transition,
    is_terminal,
)
from conveyor.integrations.interfaces import NotificationSink
from conveyor.models import Agent, Job
from conveyor.scheduler.agents import AgentPool
from conveyor.scheduler.locks import LockTable
from conveyor.scheduler.queue import JobQueue
from conveyor.storage.interfaces import JobStore
from conveyor.utils import utcnow

logger = logging.getLogger(__name__)


class Dispatcher:
    """Starts job runs on worker threads."""

    def __init__(self, max_workers: int):
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="conveyor-job")
        self._futures: set[Future] = set()
        self._lock = threading.Lock()

    def start(self, fn: Callable[[], None]) -> None:
        try:
            future = self._pool.submit(fn)
        except RuntimeError as e:
            raise ExecutorStartError(f"executor is not accepting work: {e}") from e
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for in-flight runs; True when all finished within timeout."""
        with self._lock:
            pending = set(self._futures)
        done, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True)


@dataclass
class _Run:
    job_id: str
    agent_id: str
    token: CancelToken
    # Hooks outlive an abort; only shutdown and agent loss stop them.
    hook_token: CancelToken = field(default_factory=CancelToken)

    def cancel_all(self) -> None:
        self.token.cancel()
        self.hook_token.cancel()


class Scheduler:
    def __init__(
        self,
        *,
        config: SchedulerConfig,
        queue: JobQueue,
        agents: AgentPool,
        locks: LockTable,
        executor: PipelineExecutor,
        store: JobStore,
        notifier: NotificationSink,
        dispatcher: Dispatcher | None = None,
    ):
        self.config = config
        self._queue = queue
        self._agents = agents
        self._locks = locks
        self._executor = executor
        self._store = store
        self._notifier = notifier
        self._dispatcher = dispatcher or Dispatcher(config.max_workers)
        self.mutex = locks.mutex
        self._runs: dict[str, _Run] = {}

    # --- scheduling cycle ---

    def run_once(self) -> list[str]:
        """Run one scheduling cycle; returns the ids of jobs dispatched."""
        self.handle_lost_agents()

        dispatched: list[str] = []
        for agent in self._agents.available():
            for _ in range(agent.free_slots):
                job = self._claim(agent)
                if job is None:
                    break
                if not self._dispatch(job):
                    break
                dispatched.append(job.job_id)
        return dispatched

    def run_forever(self, stop_event: threading.Event) -> None:
        if not self.config.enabled:
            logger.info("scheduler_disabled", extra={"event": "scheduler_disabled"})
            return
        logger.info("scheduler_started", extra={"event": "scheduler_started"})
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                # Keep the loop alive; the failing cycle is retried at the next tick.
                logger.exception("scheduler_cycle_failed", extra={"event": "scheduler_cycle_failed"})
            stop_event.wait(self.config.poll_interval_seconds)
        logger.info("scheduler_stopped", extra={"event": "scheduler_stopped"})

    def join(self, timeout: float | None = None) -> bool:
        return self._dispatcher.join(timeout)

    def shutdown(self) -> None:
        with self.mutex:
            runs = list(self._runs.values())
        for run in runs:
            run.cancel_all()
        self._dispatcher.shutdown()

    def _claim(self, agent: Agent) -> Job | None:
        """Atomically dequeue, lock, reserve and mark scheduled."""
        aborted: list[Job] = []
        try:
            with self.mutex:
                while True:
                    try:
                        job = self._queue.dequeue_next(agent.labels, self._locks.is_free)
                    except NoEligibleJobError:
                        return None
                    if not job.abort_requested:
                        break
                    aborted.append(self._abort_pending(job))

                if job.lock is not None and not self._locks.try_acquire(job.lock, job.job_id):
                    self._queue.requeue(job)
                    return None
                try:
                    self._agents.reserve(agent.agent_id, job.job_id)
                except (ConflictError, NotFoundError):
                    if job.lock is not None:
                        self._locks.release(job.lock, job.job_id)
                    self._queue.requeue(job)
                    return None

                scheduled = apply_transition(job, TransitionRequest(new_state=SCHEDULED, now=utcnow(), agent_id=agent.agent_id))
                self._store.update(scheduled)
                self._store.record_event(job_id=job.job_id, event_type="job_scheduled", details={"agent_id": agent.agent_id})
                self._runs[job.job_id] = _Run(job_id=job.job_id, agent_id=agent.agent_id, token=CancelToken())
        finally:
            for final in aborted:
                self._notify(final)
        logger.info("job_scheduled", extra={"event": "job_scheduled", "job_id": job.job_id, "agent_id": agent.agent_id, "lock": job.lock})
        return scheduled

    def _dispatch(self, job: Job) -> bool:
        run = self._runs[job.job_id]
        try:
            self._dispatcher.start(lambda: self._execute(run))
            return True
        except ExecutorStartError as e:
            logger.warning("dispatch_failed", extra={"event": "dispatch_failed", "job_id": job.job_id, "agent_id": run.agent_id})
            with self.mutex:
                if self._runs.get(job.job_id) is not run:
                    return False
                current = self._store.get(job.job_id)
                self._release(current, run)
                if current.abort_requested:
                    final = self._abort_pending(current)
                elif current.dispatch_attempts < self.config.dispatch_retry_limit:
                    requeued = apply_transition(current, TransitionRequest(new_state=QUEUED, now=utcnow(), count_dispatch_attempt=True))
                    self._store.update(requeued)
                    self._queue.requeue(requeued)
                    return False
                else:
                    final = apply_transition(
                        current,
                        TransitionRequest(
                            new_state=FAILED,
                            now=utcnow(),
                            failure_reason=DISPATCH_EXHAUSTED,
                            failure_details=str(e),
                            count_dispatch_attempt=True,
                        ),
                    )
                    self._queue.mark_result(final.job_id, final)
            self._notify(final)
            return False

    # --- execution ---

    def _execute(self, run: _Run) -> None:
        with self.mutex:
            if self._runs.get(run.job_id) is not run:
                return
            job = self._store.get(run.job_id)
            if job.state != SCHEDULED:
                return
            running = apply_transition(job, TransitionRequest(new_state=RUNNING, now=utcnow()))
            self._store.update(running)
            self._store.record_event(job_id=job.job_id, event_type="job_started", details={"agent_id": run.agent_id})
        logger.info("job_started", extra={"event": "job_started", "job_id": job.job_id, "agent_id": run.agent_id})

        try:
            outcome = self._executor.run(running, run.token, run.hook_token)
        except Exception as e:
            logger.exception("executor_crashed", extra={"event": "executor_crashed", "job_id": job.job_id})
            outcome = PipelineOutcome(
                state=FAILED,
                stage_results=(),
                failure_reason=STAGE_FAILURE,
                failure_details=f"executor error: {e}",
            )
        self._complete(run, outcome)

    def _complete(self, run: _Run, outcome: PipelineOutcome) -> None:
        with self.mutex:
            if self._runs.get(run.job_id) is not run:
                # Already failed as agent_lost, requeued or aborted elsewhere.
                logger.info("stale_result_discarded", extra={"event": "stale_result_discarded", "job_id": run.job_id})
                return
            job = self._store.get(run.job_id)
            final = apply_transition(
                job,
                TransitionRequest(
                    new_state=outcome.state,
                    now=utcnow(),
                    failure_reason=outcome.failure_reason,
                    failure_stage=outcome.failure_stage,
                    failure_details=outcome.failure_details,
                    output_ref=outcome.output_ref,
                    stage_results=outcome.stage_results,
                ),
            )
            self._release(final, run)
            self._queue.mark_result(final.job_id, final)
        self._notify(final)

    def _release(self, job: Job, run: _Run) -> None:
        """Release lock and reservation held by a run. Caller holds the mutex."""
        if job.lock is not None:
            self._locks.release(job.lock, job.job_id)
        self._agents.release(run.agent_id, job.job_id)
        self._runs.pop(job.job_id, None)

    # --- lost agents and aborts ---

    def handle_lost_agents(self) -> list[str]:
        lost_jobs: list[str] = []
        for agent_id, job_ids in self._agents.sweep().items():
            for job_id in sorted(job_ids):
                self._fail_lost(job_id, agent_id)
                lost_jobs.append(job_id)
        return lost_jobs

    def deregister_agent(self, agent_id: str) -> list[str]:
        job_ids = sorted(self._agents.deregister(agent_id))
        for job_id in job_ids:
            self._fail_lost(job_id, agent_id)
        return job_ids

    def _fail_lost(self, job_id: str, agent_id: str) -> None:
        final: Job | None = None
        with self.mutex:
            run = self._runs.get(job_id)
            if run is None or run.agent_id != agent_id:
                return
            run.cancel_all()
            job = self._store.get(job_id)
            self._release(job, run)
            if job.abort_requested:
                final = self._abort_pending(job)
            elif self.config.requeue_on_agent_lost and job.dispatch_attempts < self.config.dispatch_retry_limit:
                requeued = apply_transition(job, TransitionRequest(new_state=QUEUED, now=utcnow(), count_dispatch_attempt=True))
                self._store.update(requeued)
                self._queue.requeue(requeued)
            else:
                final = apply_transition(
                    job,
                    TransitionRequest(
                        new_state=FAILED,
                        now=utcnow(),
                        failure_reason=AGENT_LOST,
                        failure_details=f"agent {agent_id} stopped sending heartbeats",
                    ),
                )
                self._queue.mark_result(job_id, final)
        logger.warning("job_agent_lost", extra={"event": "job_agent_lost", "job_id": job_id, "agent_id": agent_id, "reason": AGENT_LOST})
        if final is not None:
            self._notify(final)

    def _abort_pending(self, job: Job) -> Job:
        """End a job whose abort arrived before it could be requeued. Caller holds the mutex."""
        final = apply_transition(job, TransitionRequest(new_state=ABORTED, now=utcnow(), failure_reason=ABORT_REQUESTED))
        self._queue.mark_result(job.job_id, final)
        logger.info("job_aborted", extra={"event": "job_aborted", "job_id": job.job_id, "reason": ABORT_REQUESTED})
        return final

    def abort(self, job_id: str) -> Job:
        """Abort a job: queued jobs end immediately, scheduled/running jobs are cancelled."""
        final: Job | None = None
        with self.mutex:
            job = self._store.get(job_id)
            if is_terminal(job.state):
                raise ConflictError(f"Cannot abort a terminal job (state={job.state})")
            if job.state == QUEUED:
                final = apply_transition(job, TransitionRequest(new_state=ABORTED, now=utcnow(), failure_reason=ABORT_REQUESTED))
                self._queue.mark_result(job_id, final)
                job = final
            else:
                job = replace(job, abort_requested=True)
                self._store.update(job)
                self._store.record_event(job_id=job_id, event_type="abort_requested")
                run = self._runs.get(job_id)
                if run is not None:
                    run.token.cancel()
        logger.info("job_abort_requested", extra={"event": "job_abort_requested", "job_id": job_id})
        if final is not None:
            self._notify(final)
        return job

    def _notify(self, job: Job) -> None:
        payload = {
            "job_id": job.job_id,
            "name": job.name,
            "state": job.state,
            "failure_reason": job.failure_reason,
            "failure_stage": job.failure_stage,
            "output_ref": job.output_ref,
        }
        try:
            self._notifier.send(f"job_{job.state}", payload)
        except Exception:
            logger.warning("notification_failed", exc_info=True, extra={"event": "notification_failed", "job_id": job.job_id})
