"""Pytest configuration and fixtures for quote workflow health tests."""

import copy
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from workflow_health.config import DEFAULT_POLICY
from workflow_health.engine import WorkflowHealthEngine
from workflow_health.store import InMemoryWorkflowStore


class FakeClock:
    """Controllable UTC clock for tracker and alert timing."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 3, 4, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeTime:
    """Controllable epoch-seconds clock for circuit breakers."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class WaitRecorder:
    """Stands in for recovery waits; records requested delays without sleeping."""

    def __init__(self):
        self.calls = []

    def __call__(self, seconds, cancel_event):
        self.calls.append(seconds)
        return cancel_event.is_set()


@pytest.fixture(autouse=True)
def no_slack(monkeypatch):
    """Keep tests from posting to a real webhook."""
    monkeypatch.delenv("SLACK_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("WORKFLOW_STORE_BACKEND", raising=False)
    monkeypatch.delenv("WORKFLOW_STORE_DIR", raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def waits():
    return WaitRecorder()


@pytest.fixture
def policy():
    return copy.deepcopy(DEFAULT_POLICY)


@pytest.fixture
def store():
    return InMemoryWorkflowStore()


@pytest.fixture
def engine(store, policy, clock, waits):
    """Engine with inline recovery, fake clock and no console output."""
    engine = WorkflowHealthEngine(
        store=store,
        policy=policy,
        background_recovery=False,
        wait=waits,
        clock=clock,
        console_output=False,
    )
    yield engine
    engine.shutdown()
