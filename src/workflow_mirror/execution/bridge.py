"""Message bridge to the external run executor.

Outbound messages are fire-and-forget. Inbound messages arrive on a channel
shared with unrelated traffic and are not paired with requests: screenshot
replies for runs nobody is watching are ignored, and a closed run window moves
the run to `window_closed`.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from workflow_mirror.core.notifications import NotificationCenter
from workflow_mirror.execution.messages import (
    CreateRunWindow,
    JumpToRunWindow,
    MalformedMessage,
    RequestScreenshot,
    RunWindowClosed,
    ScreenshotResponse,
    parse_inbound,
)
from workflow_mirror.execution.state_machine import RunState
from workflow_mirror.store.entities import EntityKind
from workflow_mirror.store.normalized import NormalizedStore
from workflow_mirror.store.sources import RecordWriter, TransportError

logger = logging.getLogger(__name__)


class MessageBus(Protocol):
    """Generic message-passing channel to the executor."""

    def post(self, message: dict[str, object]) -> None: ...


@dataclass(frozen=True, slots=True)
class Screenshot:
    run_id: str
    image: str
    received_at: float


class ExecutionBridge:
    def __init__(
        self,
        *,
        bus: MessageBus,
        store: NormalizedStore,
        writer: RecordWriter,
        notifications: NotificationCenter | None = None,
        screenshot_history: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._bus = bus
        self._store = store
        self._writer = writer
        self._notifications = notifications or NotificationCenter()
        self._history = screenshot_history
        self._clock = clock
        self._screenshots: dict[str, deque[Screenshot]] = {}
        store.add_run_removed_listener(self.clear_screenshots)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def open_run_window(self, session_id: str, run_id: str) -> None:
        self._bus.post(CreateRunWindow(sessionId=session_id, runId=run_id).to_message())

    def request_screenshot(self, run_id: str) -> None:
        self._bus.post(RequestScreenshot(runId=run_id).to_message())

    def jump_to_run_window(self, run_id: str) -> None:
        self._bus.post(JumpToRunWindow(runId=run_id).to_message())

    def request_running_screenshots(self, session_id: str | None = None) -> list[str]:
        """Poll a frame from every running run (optionally of one session).

        Hosts call this on the configured screenshot interval.
        """

        if session_id is not None:
            runs = self._store.runs_for_session(session_id)
        else:
            runs = [
                run
                for session in self._store.sessions()
                for run in self._store.runs_for_session(session.id)
            ]
        run_ids = [r.id for r in runs if r.code_run_state is RunState.RUNNING]
        for run_id in run_ids:
            self.request_screenshot(run_id)
        return run_ids

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def handle_message(self, raw: object) -> bool:
        """Handle one message from the executor; returns True if it was acted on."""

        try:
            message = parse_inbound(raw)
        except MalformedMessage:
            logger.warning("Ignoring malformed executor message", exc_info=True)
            return False

        if isinstance(message, ScreenshotResponse):
            return self._on_screenshot(message)
        if isinstance(message, RunWindowClosed):
            return self._on_window_closed(message)
        return False

    def _on_screenshot(self, message: ScreenshotResponse) -> bool:
        if self._store.run(message.runId) is None:
            logger.debug("Ignoring screenshot for unknown run", extra={"run_id": message.runId})
            return False

        buffer = self._screenshots.setdefault(message.runId, deque(maxlen=self._history))
        buffer.append(
            Screenshot(run_id=message.runId, image=message.image, received_at=self._clock())
        )
        return True

    def _on_window_closed(self, message: RunWindowClosed) -> bool:
        run_id = message.runId
        run = self._store.run(run_id)
        if run is not None and run.is_terminal:
            logger.debug(
                "Ignoring window close for a finished run",
                extra={"run_id": run_id, "state": run.code_run_state.value},
            )
            return False

        logger.info("Run window closed by the executor", extra={"run_id": run_id})
        try:
            self._writer.update_run_state(run_id, RunState.WINDOW_CLOSED)
        except TransportError as e:
            self._notifications.notify("Error updating run", str(e))

        # The executor is authoritative here; mirror the state without waiting
        # for the feed to echo it back.
        if run is not None:
            self._store.apply_update(
                EntityKind.RUN, run.model_copy(update={"code_run_state": RunState.WINDOW_CLOSED})
            )
        return True

    # ------------------------------------------------------------------
    # Screenshot buffer
    # ------------------------------------------------------------------

    def screenshots(self, run_id: str) -> list[Screenshot]:
        return list(self._screenshots.get(run_id, ()))

    def latest_screenshot(self, run_id: str) -> Screenshot | None:
        buffer = self._screenshots.get(run_id)
        return buffer[-1] if buffer else None

    def clear_screenshots(self, run_id: str | None = None) -> None:
        if run_id is None:
            self._screenshots.clear()
        else:
            self._screenshots.pop(run_id, None)
