from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    ABORTED = "aborted"
    FINISHED = "finished"
    WAITING_FOR_USER = "waiting_for_user"
    WINDOW_CLOSED = "window_closed"
    CRASHED = "crashed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


INITIAL_STATE = RunState.RUNNING

TERMINAL_STATES: frozenset[RunState] = frozenset(
    {
        RunState.STOPPED,
        RunState.ABORTED,
        RunState.FINISHED,
        RunState.WINDOW_CLOSED,
        RunState.CRASHED,
    }
)

# Transitions a user may request. Everything else only ever arrives from the
# execution backend.
ALLOWED_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.RUNNING: frozenset({RunState.PAUSED, RunState.ABORTED}),
    RunState.PAUSED: frozenset({RunState.RUNNING, RunState.ABORTED}),
    RunState.WAITING_FOR_USER: frozenset({RunState.RUNNING}),
}

# States the backend may move a live run into on its own.
BACKEND_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    state: frozenset(RunState) - {state}
    for state in RunState
    if state not in TERMINAL_STATES
}


class IllegalTransitionError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class RunSnapshot:
    run_id: str
    state: RunState

    def to_json(self) -> dict[str, object]:
        return {"run_id": self.run_id, "state": self.state.value}


def allowed_controls(state: RunState) -> frozenset[RunState]:
    """Target states the UI may offer for a run currently in `state`."""

    return ALLOWED_TRANSITIONS.get(state, frozenset())


def can_transition(current: RunState, to: RunState) -> bool:
    return to in allowed_controls(current)


def transition(*, current: RunSnapshot, to: RunState) -> RunSnapshot:
    if not can_transition(current.state, to):
        raise IllegalTransitionError(f"Illegal transition: {current.state.value} -> {to.value}")
    return RunSnapshot(run_id=current.run_id, state=to)


def observe_backend_state(
    *, run_id: str, previous: RunState | None, reported: RunState
) -> RunState:
    """Accept a state pushed by the execution backend.

    The backend is authoritative, so the reported state always wins. Reports
    that the transition table does not allow are logged as anomalous.
    """

    if previous is None or previous == reported:
        return reported
    if reported not in BACKEND_TRANSITIONS.get(previous, frozenset()):
        logger.warning(
            "Backend reported an unexpected run state transition",
            extra={"run_id": run_id, "from_state": previous.value, "to_state": reported.value},
        )
    return reported
