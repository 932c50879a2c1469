"""External collaborators consumed as black boxes.

- SecretsStore: credential retrieval by reference
- NotificationSink: fire-and-forget message delivery
- MetricsClient: health/error-budget signals queried by gate stages

Artifact storage lives with the other stores in `storage/interfaces.py`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class SecretsStore(ABC):
    @abstractmethod
    def get(self, ref: str) -> str:
        """Return the secret value for ref. Must raise NotFoundError if unknown."""


class NotificationSink(ABC):
    @abstractmethod
    def send(self, event: str, payload: dict[str, Any]) -> None:
        """Deliver a notification. Failures must not propagate to the caller."""


class MetricsClient(ABC):
    @abstractmethod
    def query(self, metric: str, timeout: float | None = None) -> float:
        """Return the current value of a metric. Raises on an unreachable endpoint.

        `timeout` bounds the whole call in seconds; None means the client default.
        """
