"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

import pytest

from workflow_mirror.core.config import ExecutionConfig, FeedConfig, MirrorConfig
from workflow_mirror.execution.state_machine import RunState
from workflow_mirror.feed.messages import ChangeMessage
from workflow_mirror.mirror import Mirror, build_mirror
from workflow_mirror.steps.models import StepRecord
from workflow_mirror.store.entities import ExecutionRun, ExecutionSession
from workflow_mirror.store.normalized import NormalizedStore
from workflow_mirror.store.sources import RunPage, Snapshot, TransportError


class FakeSubscription:
    def __init__(self, topic: str) -> None:
        self.topic = topic
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    """In-memory change feed: records subscriptions and lets tests push rows."""

    def __init__(self) -> None:
        self.subscriptions: list[FakeSubscription] = []
        self._callbacks: dict[str, Callable[[ChangeMessage], None]] = {}

    def subscribe(
        self, topic: str, on_message: Callable[[ChangeMessage], None]
    ) -> FakeSubscription:
        subscription = FakeSubscription(topic)
        self.subscriptions.append(subscription)
        self._callbacks[topic] = on_message
        return subscription

    def opened(self, topic: str) -> int:
        return sum(1 for s in self.subscriptions if s.topic == topic)

    def push(self, topic: str, message: dict[str, Any]) -> None:
        self._callbacks[topic](ChangeMessage.model_validate(message))


class FakeBus:
    def __init__(self) -> None:
        self.posted: list[dict[str, object]] = []

    def post(self, message: dict[str, object]) -> None:
        self.posted.append(message)

    def types(self) -> list[object]:
        return [m["type"] for m in self.posted]


class FakeBackend:
    """Snapshot source and record writer over in-memory rows."""

    def __init__(self) -> None:
        self.sessions: list[ExecutionSession] = []
        self.runs: list[ExecutionRun] = []
        self.fail = False
        self.state_updates: list[tuple[str, RunState]] = []
        self.session_updates: list[tuple[str, dict[str, Any]]] = []
        self.deleted: list[str] = []
        self.created: list[ExecutionRun] = []

    def _check(self) -> None:
        if self.fail:
            raise TransportError("backend unavailable")

    def fetch_sessions(self) -> Snapshot:
        self._check()
        return Snapshot(sessions=list(self.sessions))

    def fetch_session_snapshot(self, session_id: str) -> Snapshot:
        self._check()
        return Snapshot(
            sessions=[s for s in self.sessions if s.id == session_id],
            runs=[r for r in self.runs if r.session_id == session_id],
        )

    def fetch_recent_runs(self, *, page: int, per_page: int) -> RunPage:
        self._check()
        ordered = sorted(self.runs, key=lambda r: r.created_at or "", reverse=True)
        start = (page - 1) * per_page
        return RunPage(
            runs=ordered[start : start + per_page],
            total=len(ordered),
            page=page,
            per_page=per_page,
        )

    def create_run(
        self,
        *,
        session_id: str,
        steps: Sequence[StepRecord],
        user_inputs: dict[str, Any],
    ) -> ExecutionRun:
        self._check()
        run = ExecutionRun(
            id=f"run-{len(self.created) + 1}",
            session_id=session_id,
            steps=list(steps),
            user_inputs=user_inputs,
        )
        self.created.append(run)
        self.runs.append(run)
        return run

    def update_run_state(self, run_id: str, state: RunState) -> None:
        self._check()
        self.state_updates.append((run_id, state))

    def update_session(self, session_id: str, fields: dict[str, Any]) -> None:
        self._check()
        self.session_updates.append((session_id, fields))

    def delete_session(self, session_id: str) -> None:
        self._check()
        self.deleted.append(session_id)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_step(
    step_number: int, nesting_level: int = 0, type: str = "function", **fields: Any
) -> StepRecord:
    return StepRecord(step_number=step_number, nesting_level=nesting_level, type=type, **fields)


@pytest.fixture
def step() -> Callable[..., StepRecord]:
    """Factory for step records: step(number, level, type, **fields)."""
    return make_step


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def bus() -> FakeBus:
    return FakeBus()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> NormalizedStore:
    return NormalizedStore()


@pytest.fixture
def ready_session() -> ExecutionSession:
    """A session whose program is approved and runnable."""
    return ExecutionSession(
        id="s1",
        title="Scrape listings",
        requires_code_rewrite=False,
        apps=["gmail", "sheets"],
        user_inputs={"city": "Berlin"},
        steps=[
            make_step(1, function_name="mock_get_user_inputs", output={"city": "Paris"}),
            make_step(2, function_name="fetch_listings", description="Fetch listings"),
            make_step(3, function_name="main", output="done"),
        ],
    )


@pytest.fixture
def execution_config() -> ExecutionConfig:
    """Provide a test execution configuration."""
    return ExecutionConfig(
        connect_timeout_seconds=120,
        control_timeout_seconds=30,
        highlight_seconds=2.0,
        screenshot_history=3,
    )


@pytest.fixture
def mirror_config(execution_config: ExecutionConfig) -> MirrorConfig:
    """Provide a test mirror configuration."""
    return MirrorConfig(
        log_level="DEBUG",
        debug=True,
        feed=FeedConfig(rest_url="http://read-model.test/rest/v1", api_key="test-key"),
        execution=execution_config,
    )


@pytest.fixture
def mirror(
    mirror_config: MirrorConfig,
    transport: FakeTransport,
    bus: FakeBus,
    backend: FakeBackend,
) -> Mirror:
    return build_mirror(
        mirror_config, transport=transport, bus=bus, source=backend, writer=backend
    )
