"""Process-wide wiring of the mirror's services.

Hosts build one :class:`Mirror` and pass it to whatever needs it (the REST
adapter keeps it on `app.state`). Nothing here is a module-level global.

The services themselves are single-threaded. Hosts that call in from several
threads hold `Mirror.lock` around every call, as the REST adapter does.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from workflow_mirror.core.config import MirrorConfig
from workflow_mirror.core.notifications import NotificationCenter
from workflow_mirror.execution.bridge import ExecutionBridge, MessageBus
from workflow_mirror.execution.controller import RunController
from workflow_mirror.feed.channels import ChannelManager, FeedTransport
from workflow_mirror.feed.rest import RestReadModel
from workflow_mirror.steps.highlight import HighlightTracker
from workflow_mirror.store.normalized import NormalizedStore
from workflow_mirror.store.service import StoreService
from workflow_mirror.store.sources import RecordWriter, SnapshotSource

logger = logging.getLogger(__name__)


@dataclass
class Mirror:
    config: MirrorConfig
    channels: ChannelManager
    service: StoreService
    bridge: ExecutionBridge
    controller: RunController
    notifications: NotificationCenter
    lock: threading.RLock = field(default_factory=threading.RLock)

    @property
    def store(self) -> NormalizedStore:
        return self.service.store

    def tick(self) -> list[str]:
        """Periodic housekeeping: time out pending controls and poll running runs.

        Returns the run ids whose pending action expired.
        """

        with self.lock:
            expired = self.controller.expire_pending()
            self.bridge.request_running_screenshots()
        return expired

    def close(self) -> None:
        with self.lock:
            self.channels.close_all()


def build_mirror(
    config: MirrorConfig,
    *,
    transport: FeedTransport,
    bus: MessageBus,
    source: SnapshotSource | None = None,
    writer: RecordWriter | None = None,
) -> Mirror:
    """Wire the services together.

    `source` and `writer` default to one REST client for the configured read
    model.
    """

    if source is None or writer is None:
        rest = RestReadModel(config.feed)
        source = source or rest
        writer = writer or rest

    notifications = NotificationCenter()
    channels = ChannelManager(transport)
    store = NormalizedStore()
    service = StoreService(
        source=source,
        writer=writer,
        channels=channels,
        store=store,
        highlights=HighlightTracker(duration_seconds=config.execution.highlight_seconds),
        notifications=notifications,
    )
    bridge = ExecutionBridge(
        bus=bus,
        store=store,
        writer=writer,
        notifications=notifications,
        screenshot_history=config.execution.screenshot_history,
    )
    controller = RunController(
        store=store,
        writer=writer,
        bridge=bridge,
        config=config.execution,
        notifications=notifications,
    )
    logger.info("Mirror initialised", extra={"read_model": config.feed.rest_url})
    return Mirror(
        config=config,
        channels=channels,
        service=service,
        bridge=bridge,
        controller=controller,
        notifications=notifications,
    )
