"""Interfaces to the remote read model.

Implementations raise :class:`TransportError` for any failure to reach or
understand the remote store; callers recover from it without touching data they
already hold.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from workflow_mirror.execution.state_machine import RunState
from workflow_mirror.steps.models import StepRecord
from workflow_mirror.store.entities import (
    BrowserEvent,
    CoderunEvent,
    ExecutionRun,
    ExecutionSession,
)


class TransportError(RuntimeError):
    """The remote read model could not be reached or returned an error."""


@dataclass
class NotFound(Exception):
    kind: str
    entity_id: str

    def __str__(self) -> str:
        return f"{self.kind} {self.entity_id!r} not found"


@dataclass(slots=True)
class Snapshot:
    """A consistent read of part of the remote store."""

    sessions: list[ExecutionSession] = field(default_factory=list)
    runs: list[ExecutionRun] = field(default_factory=list)
    coderun_events: list[CoderunEvent] = field(default_factory=list)
    browser_events: list[BrowserEvent] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class RunPage:
    runs: list[ExecutionRun]
    total: int
    page: int
    per_page: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.per_page) if self.per_page > 0 else 0


class SnapshotSource(Protocol):
    def fetch_sessions(self) -> Snapshot: ...

    def fetch_session_snapshot(self, session_id: str) -> Snapshot: ...

    def fetch_recent_runs(self, *, page: int, per_page: int) -> RunPage: ...


class RecordWriter(Protocol):
    """Write access to the remote store used by user-initiated actions."""

    def create_run(
        self,
        *,
        session_id: str,
        steps: Sequence[StepRecord],
        user_inputs: dict[str, Any],
    ) -> ExecutionRun: ...

    def update_run_state(self, run_id: str, state: RunState) -> None: ...

    def update_session(self, session_id: str, fields: dict[str, Any]) -> None: ...

    def delete_session(self, session_id: str) -> None: ...
