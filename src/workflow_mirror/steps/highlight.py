"""Detect which steps changed between two consecutive snapshots of a run.

Changed steps are highlighted briefly by the host. `user_input` steps are never
reported: their changes come from the user, not from the execution backend.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from workflow_mirror.steps.models import StepRecord, StepType


def _serialized(step: StepRecord) -> dict[str, object]:
    return step.model_dump(mode="json")


def diff(previous: Sequence[StepRecord], current: Sequence[StepRecord]) -> set[str]:
    """Return ids of steps present in both snapshots whose content differs."""

    before = {step.step_id: _serialized(step) for step in previous}
    changed: set[str] = set()
    for step in current:
        if step.type is StepType.USER_INPUT:
            continue
        old = before.get(step.step_id)
        if old is not None and old != _serialized(step):
            changed.add(step.step_id)
    return changed


@dataclass
class _RunHighlights:
    snapshot: list[StepRecord]
    changed: set[str] = field(default_factory=set)
    expires_at: float = 0.0


class HighlightTracker:
    """Remembers the last snapshot per run and the current, expiring highlight set."""

    def __init__(
        self, *, duration_seconds: float = 2.0, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._duration = duration_seconds
        self._clock = clock
        self._runs: dict[str, _RunHighlights] = {}

    def observe(self, run_id: str, steps: Sequence[StepRecord]) -> set[str]:
        """Record a new snapshot and return the ids that changed since the last one.

        The first snapshot of a run highlights nothing.
        """

        snapshot = [s.model_copy(deep=True) for s in steps]
        state = self._runs.get(run_id)
        if state is None:
            self._runs[run_id] = _RunHighlights(snapshot=snapshot)
            return set()

        changed = diff(state.snapshot, snapshot)
        state.snapshot = snapshot
        state.changed = changed
        state.expires_at = self._clock() + self._duration
        return set(changed)

    def active(self, run_id: str) -> set[str]:
        state = self._runs.get(run_id)
        if state is None or self._clock() >= state.expires_at:
            return set()
        return set(state.changed)

    def forget(self, run_id: str) -> None:
        self._runs.pop(run_id, None)
