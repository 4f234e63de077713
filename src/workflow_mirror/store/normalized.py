"""Normalized in-memory store of sessions, runs and their sub-events.

Entities are kept in one map per kind, keyed by id. Parent -> child links are
derived locally and stored apart from the entities, so an update payload for a
parent can never drop children the store already knows about.

The feed only guarantees ordering per row. A child that arrives before its
parent is held as an orphan and linked as soon as the parent is seen; it is
never dropped.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import cast

from pydantic import BaseModel, ValidationError

from workflow_mirror.execution.state_machine import RunState, observe_backend_state
from workflow_mirror.feed.messages import ChangeMessage, ChangeType, Table
from workflow_mirror.steps.models import StepRecord
from workflow_mirror.store.entities import (
    BrowserEvent,
    CoderunEvent,
    EntityKind,
    ExecutionRun,
    ExecutionSession,
)
from workflow_mirror.store.sources import Snapshot

logger = logging.getLogger(__name__)

Entity = ExecutionSession | ExecutionRun | CoderunEvent | BrowserEvent

_MODELS: dict[EntityKind, type[BaseModel]] = {
    EntityKind.SESSION: ExecutionSession,
    EntityKind.RUN: ExecutionRun,
    EntityKind.CODERUN_EVENT: CoderunEvent,
    EntityKind.BROWSER_EVENT: BrowserEvent,
}

_PARENT_KIND: dict[EntityKind, EntityKind] = {
    EntityKind.RUN: EntityKind.SESSION,
    EntityKind.CODERUN_EVENT: EntityKind.RUN,
    EntityKind.BROWSER_EVENT: EntityKind.CODERUN_EVENT,
}

_CHILD_KIND: dict[EntityKind, EntityKind] = {v: k for k, v in _PARENT_KIND.items()}

_TABLE_KIND: dict[Table, EntityKind] = {
    Table.SESSIONS: EntityKind.SESSION,
    Table.RUNS: EntityKind.RUN,
    Table.CODERUN_EVENTS: EntityKind.CODERUN_EVENT,
    Table.BROWSER_EVENTS: EntityKind.BROWSER_EVENT,
}

RUN_MESSAGE_TYPE = "code_run"

RunListener = Callable[[ExecutionRun, ExecutionRun | None], None]
RunRemovedListener = Callable[[str], None]


def _parent_id(kind: EntityKind, entity: Entity) -> str | None:
    if kind is EntityKind.RUN:
        return cast(ExecutionRun, entity).session_id
    if kind is EntityKind.CODERUN_EVENT:
        return cast(CoderunEvent, entity).run_id
    if kind is EntityKind.BROWSER_EVENT:
        return cast(BrowserEvent, entity).coderun_event_id
    return None


class NormalizedStore:
    def __init__(self) -> None:
        self._entities: dict[EntityKind, dict[str, Entity]] = {kind: {} for kind in EntityKind}
        # parent kind -> parent id -> ordered child ids
        self._children: dict[EntityKind, dict[str, list[str]]] = {
            kind: {} for kind in _CHILD_KIND
        }
        # child kind -> missing parent id -> child ids waiting for it
        self._orphans: dict[EntityKind, dict[str, list[str]]] = {
            kind: {} for kind in _PARENT_KIND
        }
        self._run_listeners: list[RunListener] = []
        self._run_removed_listeners: list[RunRemovedListener] = []

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def load_snapshot(self, snapshot: Snapshot) -> None:
        """Seed or refresh the store from a snapshot.

        Safe to repeat: known entities are updated in place (children kept),
        unknown ones are inserted. Parents are applied before children so that
        links resolve in one pass.
        """

        batches: list[tuple[EntityKind, Iterable[Entity]]] = [
            (EntityKind.SESSION, snapshot.sessions),
            (EntityKind.RUN, snapshot.runs),
            (EntityKind.CODERUN_EVENT, snapshot.coderun_events),
            (EntityKind.BROWSER_EVENT, snapshot.browser_events),
        ]
        for kind, entities in batches:
            for entity in entities:
                if entity.id in self._entities[kind]:
                    self.apply_update(kind, entity)
                else:
                    self.apply_insert(kind, entity)

        logger.debug(
            "Snapshot applied",
            extra={
                "sessions": len(snapshot.sessions),
                "runs": len(snapshot.runs),
                "coderun_events": len(snapshot.coderun_events),
                "browser_events": len(snapshot.browser_events),
            },
        )

    def apply_insert(self, kind: EntityKind, entity: Entity) -> bool:
        """Add `entity` unless its id is already known.

        Returns False for duplicates, which an at-least-once feed will deliver.
        """

        entities = self._entities[kind]
        if entity.id in entities:
            logger.debug("Dropping duplicate insert", extra={"kind": kind.value, "id": entity.id})
            return False

        entities[entity.id] = entity
        self._link(kind, entity)
        self._adopt_orphans(kind, entity.id)
        if kind is EntityKind.RUN:
            self._notify_run(cast(ExecutionRun, entity), None)
        return True

    def apply_update(self, kind: EntityKind, entity: Entity) -> bool:
        """Replace an entity's own fields, keeping the children linked to it.

        An update for an id the store has never seen is applied as an insert:
        the feed may have delivered the update of a row whose insert we missed.
        """

        entities = self._entities[kind]
        previous = entities.get(entity.id)
        if previous is None:
            return self.apply_insert(kind, entity)

        if kind is EntityKind.RUN:
            run = cast(ExecutionRun, entity)
            observe_backend_state(
                run_id=run.id,
                previous=cast(ExecutionRun, previous).code_run_state,
                reported=run.code_run_state,
            )

        entities[entity.id] = entity
        old_parent = _parent_id(kind, previous)
        if old_parent != _parent_id(kind, entity):
            self._unlink(kind, entity.id, old_parent)
            self._link(kind, entity)
        self._adopt_orphans(kind, entity.id)

        if kind is EntityKind.RUN:
            self._notify_run(cast(ExecutionRun, entity), cast(ExecutionRun, previous))
        return True

    def apply_delete(self, kind: EntityKind, entity_id: str) -> bool:
        """Remove an entity and detach it from its parent.

        Children are not deleted. They are kept as orphans of the removed id, so
        they would be linked again should the parent reappear.
        """

        entity = self._entities[kind].pop(entity_id, None)
        if entity is None:
            return False

        self._unlink(kind, entity_id, _parent_id(kind, entity))

        child_kind = _CHILD_KIND.get(kind)
        if child_kind is not None:
            children = self._children[kind].pop(entity_id, [])
            if children:
                waiting = self._orphans[child_kind].setdefault(entity_id, [])
                waiting.extend(c for c in children if c not in waiting)

        if kind is EntityKind.RUN:
            for listener in list(self._run_removed_listeners):
                listener(entity_id)
        return True

    def apply_change(self, message: ChangeMessage) -> bool:
        """Apply one feed message. Malformed rows are logged and skipped."""

        kind = _TABLE_KIND[message.table]

        if message.event_type is ChangeType.DELETE:
            row_id = message.row_id
            if row_id is None:
                logger.warning("Delete without a row id", extra={"table": message.table.value})
                return False
            return self.apply_delete(kind, row_id)

        row = message.new
        if not row:
            logger.warning(
                "Change without a new row",
                extra={"table": message.table.value, "event_type": message.event_type.value},
            )
            return False
        # Runs share their table with plain chat messages.
        if kind is EntityKind.RUN and row.get("type", RUN_MESSAGE_TYPE) != RUN_MESSAGE_TYPE:
            return False

        try:
            entity = cast(Entity, _MODELS[kind].model_validate(row))
        except ValidationError:
            logger.warning(
                "Skipping malformed feed row",
                extra={"table": message.table.value, "id": row.get("id")},
                exc_info=True,
            )
            return False

        if message.event_type is ChangeType.INSERT:
            return self.apply_insert(kind, entity)
        return self.apply_update(kind, entity)

    def add_run_listener(self, listener: RunListener) -> None:
        """Call `listener(run, previous)` after every run insert or update."""

        self._run_listeners.append(listener)

    def add_run_removed_listener(self, listener: RunRemovedListener) -> None:
        """Call `listener(run_id)` after a run is deleted."""

        self._run_removed_listeners.append(listener)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, kind: EntityKind, entity_id: str) -> Entity | None:
        return self._entities[kind].get(entity_id)

    def session(self, session_id: str) -> ExecutionSession | None:
        return cast(ExecutionSession | None, self.get(EntityKind.SESSION, session_id))

    def run(self, run_id: str) -> ExecutionRun | None:
        return cast(ExecutionRun | None, self.get(EntityKind.RUN, run_id))

    def sessions(self) -> list[ExecutionSession]:
        """All sessions, newest first."""

        items = cast(Iterable[ExecutionSession], self._entities[EntityKind.SESSION].values())
        return sorted(items, key=lambda s: s.created_at or "", reverse=True)

    def child_ids(self, kind: EntityKind, parent_id: str) -> list[str]:
        return list(self._children[kind].get(parent_id, []))

    def runs_for_session(self, session_id: str) -> list[ExecutionRun]:
        return cast(list[ExecutionRun], self._resolve(EntityKind.SESSION, session_id))

    def coderun_events_for_run(self, run_id: str) -> list[CoderunEvent]:
        return cast(list[CoderunEvent], self._resolve(EntityKind.RUN, run_id))

    def browser_events_for_coderun_event(self, event_id: str) -> list[BrowserEvent]:
        return cast(list[BrowserEvent], self._resolve(EntityKind.CODERUN_EVENT, event_id))

    def browser_events_by_function(self, run_id: str) -> dict[str, list[BrowserEvent]]:
        """Browser events of a run grouped by the function step that produced them."""

        grouped: dict[str, list[BrowserEvent]] = {}
        for event in self.coderun_events_for_run(run_id):
            for browser_event in self.browser_events_for_coderun_event(event.id):
                name = browser_event.function_name or event.function_name
                if name:
                    grouped.setdefault(name, []).append(browser_event)
        return grouped

    def latest_running_run(self, session_id: str) -> ExecutionRun | None:
        running = [
            r for r in self.runs_for_session(session_id) if r.code_run_state is RunState.RUNNING
        ]
        if not running:
            return None
        return max(running, key=lambda r: r.created_at or "")

    def live_steps(self, session_id: str) -> list[StepRecord]:
        """Steps to display for a session: the running run's, else the program."""

        run = self.latest_running_run(session_id)
        if run is not None and run.steps:
            return run.steps
        session = self.session(session_id)
        return session.steps if session is not None else []

    def orphan_count(self) -> int:
        return sum(len(ids) for waiting in self._orphans.values() for ids in waiting.values())

    def counts(self) -> dict[str, int]:
        return {kind.value: len(entities) for kind, entities in self._entities.items()}

    # ------------------------------------------------------------------
    # Linking
    # ------------------------------------------------------------------

    def _resolve(self, parent_kind: EntityKind, parent_id: str) -> list[Entity]:
        child_kind = _CHILD_KIND[parent_kind]
        entities = self._entities[child_kind]
        ids = self._children[parent_kind].get(parent_id, [])
        return [entities[c] for c in ids if c in entities]

    def _link(self, kind: EntityKind, entity: Entity) -> None:
        parent_kind = _PARENT_KIND.get(kind)
        parent_id = _parent_id(kind, entity)
        if parent_kind is None or parent_id is None:
            return

        if parent_id in self._entities[parent_kind]:
            children = self._children[parent_kind].setdefault(parent_id, [])
            if entity.id not in children:
                children.append(entity.id)
            return

        waiting = self._orphans[kind].setdefault(parent_id, [])
        if entity.id not in waiting:
            waiting.append(entity.id)
            logger.debug(
                "Holding entity until its parent arrives",
                extra={"kind": kind.value, "id": entity.id, "parent_id": parent_id},
            )

    def _unlink(self, kind: EntityKind, entity_id: str, parent_id: str | None) -> None:
        parent_kind = _PARENT_KIND.get(kind)
        if parent_kind is None or parent_id is None:
            return

        for index in (self._children[parent_kind], self._orphans[kind]):
            ids = index.get(parent_id)
            if ids and entity_id in ids:
                ids.remove(entity_id)
                if not ids:
                    del index[parent_id]

    def _adopt_orphans(self, kind: EntityKind, parent_id: str) -> None:
        child_kind = _CHILD_KIND.get(kind)
        if child_kind is None:
            return
        waiting = self._orphans[child_kind].pop(parent_id, [])
        if not waiting:
            return

        children = self._children[kind].setdefault(parent_id, [])
        entities = self._entities[child_kind]
        for child_id in waiting:
            child = entities.get(child_id)
            if child is None or _parent_id(child_kind, child) != parent_id:
                continue
            if child_id not in children:
                children.append(child_id)
        logger.debug(
            "Linked held entities to their parent",
            extra={"kind": child_kind.value, "parent_id": parent_id, "count": len(waiting)},
        )

    def _notify_run(self, run: ExecutionRun, previous: ExecutionRun | None) -> None:
        for listener in list(self._run_listeners):
            listener(run, previous)
