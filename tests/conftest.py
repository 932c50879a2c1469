"""Pytest configuration and fixtures."""

import dataclasses
import time

import pytest

from conveyor.api.main import build_components
from conveyor.config.settings import LimitsConfig, RetryConfig, RuntimeConfig, SchedulerConfig
from conveyor.integrations.clients import InMemorySecretsStore, RecordingNotificationSink, StaticMetricsClient


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limits():
    return LimitsConfig()


@pytest.fixture
def notifier():
    return RecordingNotificationSink()


@pytest.fixture
def metrics():
    return StaticMetricsClient({"app.error_rate": 0.001})


@pytest.fixture
def secrets():
    return InMemorySecretsStore({"kube-token": "s3cr3t-value"})


@pytest.fixture
def make_components(clock, limits, notifier, metrics, secrets):
    """Build a full in-memory runtime; the background scheduler loop is off so tests drive run_once."""

    def _make(pipelines_dir=None, **scheduler_overrides):
        scheduler = dataclasses.replace(SchedulerConfig(enabled=False, heartbeat_timeout_seconds=30.0), **scheduler_overrides)
        runtime = RuntimeConfig(
            scheduler=scheduler,
            retry=RetryConfig(strategy="fixed", base_delay_seconds=0.0, max_delay_seconds=0.0),
            pipelines_dir=pipelines_dir,
        )
        return build_components(runtime, limits, secrets=secrets, metrics=metrics, notifier=notifier, clock=clock)

    created = []

    def _tracked(*args, **kwargs):
        components = _make(*args, **kwargs)
        created.append(components)
        return components

    yield _tracked

    for components in created:
        components.scheduler.shutdown()


@pytest.fixture
def components(make_components):
    return make_components()


@pytest.fixture
def wait_for_state():
    """Poll a job until it reaches one of the given states."""

    def _wait(engine, job_id, *states, timeout=10.0):
        deadline = time.monotonic() + timeout
        while True:
            job = engine.get_job(job_id)
            if job.state in states:
                return job
            if time.monotonic() > deadline:
                raise AssertionError(f"job {job_id} stuck in {job.state}, expected one of {states}")
            time.sleep(0.02)

    return _wait
