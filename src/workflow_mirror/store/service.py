"""Store service: lazy snapshot loading plus live updates for interested hosts.

A host "watches" the session list or a single session. The first watch of a
feed topic opens it (through the shared channel manager); releasing the last
watch closes it. Snapshot failures are recorded on the watch and reported as a
notification; whatever the store already holds stays untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from workflow_mirror.core.notifications import NotificationCenter
from workflow_mirror.feed.channels import ChannelHandle, ChannelManager
from workflow_mirror.feed.messages import ChangeMessage, Table, topic_for
from workflow_mirror.steps.highlight import HighlightTracker
from workflow_mirror.store.entities import EntityKind, ExecutionRun, ExecutionSession
from workflow_mirror.store.normalized import NormalizedStore
from workflow_mirror.store.sources import (
    NotFound,
    RecordWriter,
    RunPage,
    Snapshot,
    SnapshotSource,
    TransportError,
)

logger = logging.getLogger(__name__)

SESSION_LIST_KEY = "sessions"
RUNS_PER_PAGE = 20


def session_watch_key(session_id: str) -> str:
    return f"session:{session_id}"


@dataclass
class Watch:
    """A host's interest in part of the store."""

    key: str
    session_id: str | None = None
    handles: list[ChannelHandle] = field(default_factory=list)
    loading: bool = False
    error: str | None = None
    released: bool = False


class StoreService:
    def __init__(
        self,
        *,
        source: SnapshotSource,
        writer: RecordWriter,
        channels: ChannelManager,
        store: NormalizedStore | None = None,
        highlights: HighlightTracker | None = None,
        notifications: NotificationCenter | None = None,
    ) -> None:
        self._source = source
        self._writer = writer
        self._channels = channels
        self.store = store or NormalizedStore()
        self.highlights = highlights or HighlightTracker()
        self.notifications = notifications or NotificationCenter()
        self.store.add_run_listener(self._on_run_changed)
        self.store.add_run_removed_listener(self.highlights.forget)

    # ------------------------------------------------------------------
    # Watches
    # ------------------------------------------------------------------

    def watch_sessions(self) -> Watch:
        watch = Watch(key=SESSION_LIST_KEY)
        watch.handles.append(self._channels.attach(topic_for(Table.SESSIONS), self._on_change))
        self.refresh(watch)
        return watch

    def watch_session(self, session_id: str) -> Watch:
        watch = Watch(key=session_watch_key(session_id), session_id=session_id)
        topics = [
            topic_for(Table.SESSIONS, column="id", value=session_id),
            topic_for(Table.RUNS, column="chat_id", value=session_id),
            topic_for(Table.CODERUN_EVENTS, column="chat_id", value=session_id),
            topic_for(Table.BROWSER_EVENTS, column="chat_id", value=session_id),
        ]
        for topic in topics:
            watch.handles.append(self._channels.attach(topic, self._on_change))
        self.refresh(watch)
        return watch

    def refresh(self, watch: Watch) -> bool:
        """(Re)load the snapshot behind `watch`.

        A released watch may still complete a refresh; applying a snapshot is
        idempotent, so the result is simply merged.
        """

        watch.loading = True
        try:
            snapshot = self._fetch(watch)
        except TransportError as e:
            watch.error = str(e)
            if watch.session_id is None:
                self.notifications.notify("Error fetching workflows", str(e))
            else:
                self.notifications.notify("Error fetching runs", str(e))
            logger.warning("Snapshot refresh failed", extra={"watch": watch.key, "error": str(e)})
            return False
        finally:
            watch.loading = False

        self.store.load_snapshot(snapshot)
        watch.error = None
        return True

    def release(self, watch: Watch) -> None:
        if watch.released:
            return
        for handle in watch.handles:
            self._channels.detach(handle)
        watch.handles.clear()
        watch.released = True

    def _fetch(self, watch: Watch) -> Snapshot:
        if watch.session_id is None:
            return self._source.fetch_sessions()
        return self._source.fetch_session_snapshot(watch.session_id)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def require_session(self, session_id: str) -> ExecutionSession:
        session = self.store.session(session_id)
        if session is None:
            raise NotFound("session", session_id)
        return session

    def require_run(self, run_id: str) -> ExecutionRun:
        run = self.store.run(run_id)
        if run is None:
            raise NotFound("run", run_id)
        return run

    # ------------------------------------------------------------------
    # Session edits
    # ------------------------------------------------------------------

    def rename_session(self, session_id: str, title: str) -> bool:
        return self._update_session(session_id, {"title": title}, error_title="Error updating chat")

    def update_session_inputs(self, session_id: str, user_inputs: dict[str, Any]) -> bool:
        return self._update_session(
            session_id, {"user_inputs": dict(user_inputs)}, error_title="Error saving inputs"
        )

    def delete_session(self, session_id: str) -> bool:
        try:
            self._writer.delete_session(session_id)
        except TransportError as e:
            self.notifications.notify("Error deleting chat", str(e))
            return False
        self.store.apply_delete(EntityKind.SESSION, session_id)
        return True

    def _update_session(
        self, session_id: str, fields: dict[str, Any], *, error_title: str
    ) -> bool:
        try:
            self._writer.update_session(session_id, fields)
        except TransportError as e:
            self.notifications.notify(error_title, str(e))
            return False

        session = self.store.session(session_id)
        if session is not None:
            self.store.apply_update(EntityKind.SESSION, session.model_copy(update=fields))
        return True

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def recent_runs(self, page: int = 1, per_page: int = RUNS_PER_PAGE) -> RunPage | None:
        try:
            return self._source.fetch_recent_runs(page=page, per_page=per_page)
        except TransportError as e:
            self.notifications.notify("Error fetching runs", str(e))
            return None

    # ------------------------------------------------------------------
    # Feed reactions
    # ------------------------------------------------------------------

    def _on_change(self, message: ChangeMessage) -> None:
        self.store.apply_change(message)

    def _on_run_changed(self, run: ExecutionRun, previous: ExecutionRun | None) -> None:
        if previous is None or previous.steps != run.steps:
            self.highlights.observe(run.id, run.steps)
