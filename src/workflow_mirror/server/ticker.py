"""Background housekeeping thread for a hosted mirror."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from workflow_mirror.mirror import Mirror

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Ticker:
    thread: threading.Thread
    stop_event: threading.Event

    def stop(self, *, timeout: float | None = None) -> bool:
        """Signal the thread and wait for an in-flight tick. Returns False on timeout."""

        self.stop_event.set()
        self.thread.join(timeout)
        if self.thread.is_alive():
            logger.warning("Ticker did not stop in time", extra={"timeout": timeout})
            return False
        return True


def start_ticker(mirror: Mirror, *, interval_seconds: float) -> Ticker:
    """Call `mirror.tick()` every `interval_seconds` until the ticker is stopped."""

    stop_event = threading.Event()
    thread = threading.Thread(
        target=_run,
        name="workflow-mirror-ticker",
        daemon=True,
        kwargs={"mirror": mirror, "interval_seconds": interval_seconds, "stop": stop_event},
    )
    thread.start()
    return Ticker(thread=thread, stop_event=stop_event)


def _run(*, mirror: Mirror, interval_seconds: float, stop: threading.Event) -> None:
    logger.info("Ticker started", extra={"interval_seconds": interval_seconds})
    while not stop.wait(interval_seconds):
        try:
            expired = mirror.tick()
        except Exception:
            # Keep the thread alive; the next tick retries.
            logger.exception("Ticker iteration failed")
            continue
        if expired:
            logger.info("Expired pending run actions", extra={"run_ids": expired})
    logger.info("Ticker stopped")
