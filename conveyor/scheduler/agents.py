"""Agent pool: registered workers, their capabilities and reserved capacity.

Capacity only changes through reserve/release. An agent whose last
heartbeat is older than the timeout goes offline at the next sweep and its
in-flight jobs are handed back to the scheduler as lost.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from conveyor.errors import ConflictError, NotFoundError
from conveyor.models import AGENT_OFFLINE, AGENT_ONLINE, Agent

logger = logging.getLogger(__name__)


class AgentPool:
    def __init__(self, *, heartbeat_timeout_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._timeout = heartbeat_timeout_seconds
        self._clock = clock
        self._lock = threading.RLock()
        self._agents: dict[str, Agent] = {}

    def register(self, agent: Agent) -> Agent:
        with self._lock:
            if agent.agent_id in self._agents:
                raise ConflictError(f"Agent already registered: {agent.agent_id}")
            agent.last_heartbeat = self._clock()
            agent.status = AGENT_ONLINE
            agent.running = set()
            self._agents[agent.agent_id] = agent
        logger.info("agent_registered", extra={"event": "agent_registered", "agent_id": agent.agent_id})
        return agent

    def heartbeat(self, agent_id: str) -> Agent:
        with self._lock:
            agent = self._require(agent_id)
            agent.last_heartbeat = self._clock()
            if agent.status == AGENT_OFFLINE:
                agent.status = AGENT_ONLINE
                logger.info("agent_online", extra={"event": "agent_online", "agent_id": agent_id})
            return agent

    def deregister(self, agent_id: str) -> set[str]:
        """Remove an agent; returns the ids of jobs it was running."""
        with self._lock:
            agent = self._require(agent_id)
            del self._agents[agent_id]
        logger.info("agent_deregistered", extra={"event": "agent_deregistered", "agent_id": agent_id})
        return set(agent.running)

    def reserve(self, agent_id: str, job_id: str) -> None:
        with self._lock:
            agent = self._require(agent_id)
            if agent.status != AGENT_ONLINE:
                raise ConflictError(f"Agent is offline: {agent_id}")
            if agent.free_slots <= 0:
                raise ConflictError(f"Agent at capacity: {agent_id} ({agent.load}/{agent.capacity})")
            agent.running.add(job_id)

    def release(self, agent_id: str, job_id: str) -> None:
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is not None:
                agent.running.discard(job_id)

    def sweep(self) -> dict[str, set[str]]:
        """Take silent agents offline; returns {agent_id: in-flight job ids} for each."""
        now = self._clock()
        lost: dict[str, set[str]] = {}
        with self._lock:
            for agent in self._agents.values():
                if agent.status != AGENT_ONLINE or now - agent.last_heartbeat <= self._timeout:
                    continue
                agent.status = AGENT_OFFLINE
                lost[agent.agent_id] = set(agent.running)
                agent.running = set()
                logger.warning("agent_offline", extra={"event": "agent_offline", "agent_id": agent.agent_id})
        return lost

    def available(self) -> list[Agent]:
        """Online agents with free capacity, in registration order."""
        with self._lock:
            return [a for a in self._agents.values() if a.status == AGENT_ONLINE and a.free_slots > 0]

    def get(self, agent_id: str) -> Agent:
        with self._lock:
            return self._require(agent_id)

    def list_agents(self) -> list[dict]:
        with self._lock:
            return [a.to_dict() for a in self._agents.values()]

    def _require(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        return agent
