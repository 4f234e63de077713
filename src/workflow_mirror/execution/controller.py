"""User-initiated run controls.

Controls are validated against the run state machine before anything is sent
upstream; a request the table does not allow is dropped without side effects.
Accepted requests leave the run "pending" until a confirming update arrives
from the feed or the request's deadline passes, after which the control is
released and a recoverable error reported.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from workflow_mirror.core.config import ExecutionConfig
from workflow_mirror.core.notifications import NotificationCenter
from workflow_mirror.execution.bridge import ExecutionBridge
from workflow_mirror.execution.state_machine import (
    IllegalTransitionError,
    RunSnapshot,
    RunState,
    allowed_controls,
    transition,
)
from workflow_mirror.store.entities import EntityKind, ExecutionRun, RewriteStatus
from workflow_mirror.store.normalized import NormalizedStore
from workflow_mirror.store.sources import RecordWriter, TransportError

logger = logging.getLogger(__name__)


class PendingKind(str, Enum):
    CONNECT = "connect"
    CONTROL = "control"


@dataclass(frozen=True, slots=True)
class PendingAction:
    run_id: str
    kind: PendingKind
    deadline: float
    target: RunState | None = None


class RunController:
    def __init__(
        self,
        *,
        store: NormalizedStore,
        writer: RecordWriter,
        bridge: ExecutionBridge,
        config: ExecutionConfig | None = None,
        notifications: NotificationCenter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._writer = writer
        self._bridge = bridge
        self._config = config or ExecutionConfig()
        self._notifications = notifications or NotificationCenter()
        self._clock = clock
        self._pending: dict[str, PendingAction] = {}
        store.add_run_listener(self._on_run_changed)

    def controls(self, run_id: str) -> frozenset[RunState]:
        """Target states the host may offer as controls right now."""

        run = self._store.run(run_id)
        if run is None or run_id in self._pending:
            return frozenset()
        return allowed_controls(run.code_run_state)

    def is_pending(self, run_id: str) -> bool:
        return run_id in self._pending

    def pending(self, run_id: str) -> PendingAction | None:
        return self._pending.get(run_id)

    def can_start(self, session_id: str) -> bool:
        session = self._store.session(session_id)
        return (
            session is not None
            and session.rewrite_status is RewriteStatus.READY
            and len(session.steps) > 0
        )

    def start_run(self, session_id: str) -> ExecutionRun | None:
        """Create a run of the session's current program and ask the executor to start it.

        The run receives its own copy of the program and inputs; later edits to
        the session do not reach runs already started.
        """

        session = self._store.session(session_id)
        if session is None or not self.can_start(session_id):
            logger.debug("Session is not ready to run", extra={"session_id": session_id})
            return None

        try:
            run = self._writer.create_run(
                session_id=session.id,
                steps=[s.model_copy(deep=True) for s in session.steps],
                user_inputs=dict(session.user_inputs),
            )
        except TransportError as e:
            self._notifications.notify("Error starting run", str(e))
            return None

        self._store.apply_insert(EntityKind.RUN, run)
        self._pending[run.id] = PendingAction(
            run_id=run.id,
            kind=PendingKind.CONNECT,
            deadline=self._clock() + self._config.connect_timeout_seconds,
        )
        self._bridge.open_run_window(session.id, run.id)
        logger.info("Run started", extra={"session_id": session.id, "run_id": run.id})
        return run

    def request(self, run_id: str, to: RunState) -> bool:
        """Ask for `run_id` to move to `to`. Returns False if nothing was sent."""

        run = self._store.run(run_id)
        if run is None or run_id in self._pending:
            return False

        try:
            transition(current=RunSnapshot(run_id=run.id, state=run.code_run_state), to=to)
        except IllegalTransitionError:
            logger.debug(
                "Rejected run control",
                extra={
                    "run_id": run_id,
                    "from_state": run.code_run_state.value,
                    "to_state": to.value,
                },
            )
            return False

        try:
            self._writer.update_run_state(run_id, to)
        except TransportError as e:
            self._notifications.notify("Error updating run", str(e))
            return False

        self._pending[run_id] = PendingAction(
            run_id=run_id,
            kind=PendingKind.CONTROL,
            deadline=self._clock() + self._config.control_timeout_seconds,
            target=to,
        )
        return True

    def pause(self, run_id: str) -> bool:
        return self.request(run_id, RunState.PAUSED)

    def resume(self, run_id: str) -> bool:
        return self.request(run_id, RunState.RUNNING)

    def abort(self, run_id: str) -> bool:
        return self.request(run_id, RunState.ABORTED)

    def expire_pending(self) -> list[str]:
        """Release every pending action past its deadline. Returns their run ids."""

        now = self._clock()
        expired = [p for p in self._pending.values() if now >= p.deadline]
        for action in expired:
            del self._pending[action.run_id]
            if action.kind is PendingKind.CONNECT:
                title = "Run did not start"
                description = "The executor did not confirm the run in time. Try again."
            else:
                title = "Run control timed out"
                description = "No confirmation was received for the requested change. Try again."
            self._notifications.notify(title, description)
            logger.warning(
                "Pending run action timed out",
                extra={"run_id": action.run_id, "kind": action.kind.value},
            )
        return [a.run_id for a in expired]

    def _on_run_changed(self, run: ExecutionRun, previous: ExecutionRun | None) -> None:
        action = self._pending.get(run.id)
        if action is None or previous is None:
            return

        if action.kind is PendingKind.CONNECT:
            confirmed = run != previous
        else:
            confirmed = run.code_run_state is action.target or run.is_terminal
        if confirmed:
            del self._pending[run.id]
