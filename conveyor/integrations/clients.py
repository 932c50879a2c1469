"""Default implementations of the external collaborators."""

from __future__ import annotations

import logging
import os
import time
from typing import Any

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, stop_before_delay, wait_exponential

from conveyor.errors import NotFoundError
from conveyor.integrations.interfaces import MetricsClient, NotificationSink, SecretsStore

logger = logging.getLogger(__name__)


class EnvSecretsStore(SecretsStore):
    """Resolves `ref` from the environment variable `<prefix><REF>` (ref upper-cased, '-' and '.' to '_')."""

    def __init__(self, prefix: str = "CONVEYOR_SECRET_"):
        self.prefix = prefix

    def env_name(self, ref: str) -> str:
        return self.prefix + ref.upper().replace("-", "_").replace(".", "_")

    def get(self, ref: str) -> str:
        value = os.environ.get(self.env_name(ref))
        if value is None:
            raise NotFoundError("Secret", ref)
        return value


class InMemorySecretsStore(SecretsStore):
    def __init__(self, secrets: dict[str, str] | None = None):
        self._secrets = dict(secrets or {})

    def get(self, ref: str) -> str:
        if ref not in self._secrets:
            raise NotFoundError("Secret", ref)
        return self._secrets[ref]


class LoggingNotificationSink(NotificationSink):
    def send(self, event: str, payload: dict[str, Any]) -> None:
        logger.info(event, extra={"event": event, "job_id": payload.get("job_id"), "reason": payload.get("failure_reason")})


class RecordingNotificationSink(NotificationSink):
    """Keeps every notification in memory; useful for tests and local runs."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []

    def send(self, event: str, payload: dict[str, Any]) -> None:
        self.sent.append((event, dict(payload)))


class WebhookNotificationSink(NotificationSink):
    """POSTs `{"event": ..., "payload": ...}` to a webhook URL."""

    def __init__(self, url: str, timeout_seconds: float = 5.0):
        self.url = url
        self.timeout_seconds = timeout_seconds

    def send(self, event: str, payload: dict[str, Any]) -> None:
        try:
            response = httpx.post(self.url, json={"event": event, "payload": payload}, timeout=self.timeout_seconds)
            response.raise_for_status()
        except httpx.HTTPError:
            # Fire-and-forget: delivery failures never affect job outcomes.
            logger.warning("notification_failed", exc_info=True, extra={"event": "notification_failed", "job_id": payload.get("job_id")})


class HttpMetricsClient(MetricsClient):
    """Queries `GET {base_url}/metrics/{metric}`, expecting `{"value": <number>}`.

    Transport errors are retried (three attempts at most). A `timeout` passed to
    `query` caps the retries too: no backoff sleep is started that would end
    past it, and each request only gets the time that is left.
    """

    def __init__(self, base_url: str, timeout_seconds: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def query(self, metric: str, timeout: float | None = None) -> float:
        stop = stop_after_attempt(3)
        deadline = None
        if timeout is not None:
            stop = stop | stop_before_delay(timeout)
            deadline = time.monotonic() + timeout

        retrying = Retrying(
            retry=retry_if_exception_type(httpx.TransportError),
            stop=stop,
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                request_timeout = self.timeout_seconds
                if deadline is not None:
                    request_timeout = max(0.001, min(request_timeout, deadline - time.monotonic()))
                response = httpx.get(f"{self.base_url}/metrics/{metric}", timeout=request_timeout)
                response.raise_for_status()
                body = response.json()
                return float(body["value"])


class StaticMetricsClient(MetricsClient):
    """Serves fixed values; a missing metric behaves like an unreachable endpoint."""

    def __init__(self, values: dict[str, float] | None = None):
        self.values = dict(values or {})

    def query(self, metric: str, timeout: float | None = None) -> float:
        if metric not in self.values:
            raise NotFoundError("Metric", metric)
        return float(self.values[metric])
