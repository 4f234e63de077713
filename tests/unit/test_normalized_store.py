"""Unit tests for the normalized entity store."""

from __future__ import annotations

import logging

import pytest

from workflow_mirror.execution.state_machine import RunState
from workflow_mirror.feed.messages import ChangeMessage
from workflow_mirror.store.entities import (
    BrowserEvent,
    CoderunEvent,
    EntityKind,
    ExecutionRun,
    ExecutionSession,
)
from workflow_mirror.store.normalized import NormalizedStore
from workflow_mirror.store.sources import Snapshot


def _session(session_id: str = "s1", **fields) -> ExecutionSession:
    return ExecutionSession(id=session_id, title=fields.pop("title", "Workflow"), **fields)


def _run(run_id: str = "r1", session_id: str = "s1", **fields) -> ExecutionRun:
    return ExecutionRun(id=run_id, session_id=session_id, **fields)


def _event(event_id: str = "e1", run_id: str = "r1", **fields) -> CoderunEvent:
    return CoderunEvent(id=event_id, run_id=run_id, **fields)


def test_insert_is_idempotent(store: NormalizedStore) -> None:
    assert store.apply_insert(EntityKind.SESSION, _session()) is True
    assert store.apply_insert(EntityKind.RUN, _run()) is True

    assert store.apply_insert(EntityKind.RUN, _run(code_run_state="paused")) is False

    assert store.counts()["run"] == 1
    assert store.run("r1").code_run_state is RunState.RUNNING
    assert store.child_ids(EntityKind.SESSION, "s1") == ["r1"]


@pytest.mark.parametrize("child_first", [True, False])
def test_linking_is_order_independent(child_first: bool) -> None:
    store = NormalizedStore()
    inserts = [(EntityKind.SESSION, _session()), (EntityKind.RUN, _run())]
    if child_first:
        inserts.reverse()

    for kind, entity in inserts:
        store.apply_insert(kind, entity)

    assert [r.id for r in store.runs_for_session("s1")] == ["r1"]
    assert store.orphan_count() == 0


def test_orphan_waits_for_its_parent(store: NormalizedStore) -> None:
    store.apply_insert(EntityKind.BROWSER_EVENT, BrowserEvent(id="b1", coderun_event_id="e1"))
    store.apply_insert(EntityKind.CODERUN_EVENT, _event())

    assert store.orphan_count() == 1  # the coderun event still waits for run r1
    assert [b.id for b in store.browser_events_for_coderun_event("e1")] == ["b1"]

    store.apply_insert(EntityKind.RUN, _run())

    assert [e.id for e in store.coderun_events_for_run("r1")] == ["e1"]


def test_update_keeps_children(store: NormalizedStore) -> None:
    store.apply_insert(EntityKind.SESSION, _session())
    store.apply_insert(EntityKind.RUN, _run())

    store.apply_update(EntityKind.SESSION, _session(title="Renamed"))

    assert store.session("s1").title == "Renamed"
    assert [r.id for r in store.runs_for_session("s1")] == ["r1"]


def test_update_of_unknown_id_inserts(store: NormalizedStore) -> None:
    assert store.apply_update(EntityKind.SESSION, _session()) is True
    assert store.session("s1") is not None


def test_update_moving_child_to_another_parent(store: NormalizedStore) -> None:
    store.apply_insert(EntityKind.SESSION, _session("s1"))
    store.apply_insert(EntityKind.SESSION, _session("s2"))
    store.apply_insert(EntityKind.RUN, _run(session_id="s1"))

    store.apply_update(EntityKind.RUN, _run(session_id="s2"))

    assert store.runs_for_session("s1") == []
    assert [r.id for r in store.runs_for_session("s2")] == ["r1"]


def test_delete_does_not_cascade(store: NormalizedStore) -> None:
    store.apply_insert(EntityKind.SESSION, _session())
    store.apply_insert(EntityKind.RUN, _run())

    assert store.apply_delete(EntityKind.SESSION, "s1") is True

    assert store.session("s1") is None
    assert store.run("r1") is not None
    assert store.orphan_count() == 1

    # The run is linked again if the session reappears.
    store.apply_insert(EntityKind.SESSION, _session())
    assert [r.id for r in store.runs_for_session("s1")] == ["r1"]


def test_delete_unknown_id(store: NormalizedStore) -> None:
    assert store.apply_delete(EntityKind.RUN, "missing") is False


def test_delete_child_unlinks_it(store: NormalizedStore) -> None:
    store.apply_insert(EntityKind.SESSION, _session())
    store.apply_insert(EntityKind.RUN, _run())

    store.apply_delete(EntityKind.RUN, "r1")

    assert store.runs_for_session("s1") == []


def test_snapshot_is_safe_to_repeat(store: NormalizedStore) -> None:
    snapshot = Snapshot(sessions=[_session()], runs=[_run()], coderun_events=[_event()])

    store.load_snapshot(snapshot)
    store.load_snapshot(snapshot)

    assert store.counts() == {"session": 1, "run": 1, "coderun_event": 1, "browser_event": 0}
    assert store.child_ids(EntityKind.RUN, "r1") == ["e1"]


def test_run_listener_sees_previous_version(store: NormalizedStore) -> None:
    seen: list[tuple[str, str | None]] = []
    store.add_run_listener(
        lambda run, previous: seen.append(
            (run.code_run_state.value, previous.code_run_state.value if previous else None)
        )
    )

    store.apply_insert(EntityKind.RUN, _run())
    store.apply_update(EntityKind.RUN, _run(code_run_state="paused"))

    assert seen == [("running", None), ("paused", "running")]


def test_run_removed_listener_fires_on_run_delete_only(store: NormalizedStore) -> None:
    removed: list[str] = []
    store.add_run_removed_listener(removed.append)
    store.apply_insert(EntityKind.SESSION, _session())
    store.apply_insert(EntityKind.RUN, _run())
    store.apply_insert(EntityKind.RUN, _run("r2"))

    store.apply_delete(EntityKind.SESSION, "s1")
    store.apply_delete(EntityKind.RUN, "missing")
    assert removed == []

    store.apply_delete(EntityKind.RUN, "r1")
    store.apply_delete(EntityKind.RUN, "r2")
    assert removed == ["r1", "r2"]


def test_update_of_terminal_run_is_accepted_and_logged(
    store: NormalizedStore, caplog: pytest.LogCaptureFixture
) -> None:
    store.apply_insert(EntityKind.RUN, _run(code_run_state="finished"))

    with caplog.at_level(logging.WARNING):
        store.apply_update(EntityKind.RUN, _run(code_run_state="running"))

    assert store.run("r1").code_run_state is RunState.RUNNING
    assert "unexpected run state transition" in caplog.text


def test_apply_change_insert_update_delete(store: NormalizedStore) -> None:
    store.apply_change(
        ChangeMessage.model_validate(
            {"eventType": "INSERT", "table": "chats", "new": {"id": "s1", "title": "A"}}
        )
    )
    store.apply_change(
        ChangeMessage.model_validate(
            {
                "eventType": "INSERT",
                "table": "messages",
                "new": {"id": "r1", "chat_id": "s1", "type": "code_run", "steps": None},
            }
        )
    )
    store.apply_change(
        ChangeMessage.model_validate(
            {"eventType": "update", "table": "chats", "new": {"id": "s1", "title": "B"}}
        )
    )

    assert store.session("s1").title == "B"
    assert [r.id for r in store.runs_for_session("s1")] == ["r1"]

    store.apply_change(
        ChangeMessage.model_validate(
            {"eventType": "DELETE", "table": "messages", "old": {"id": "r1"}}
        )
    )
    assert store.run("r1") is None


def test_apply_change_skips_plain_chat_messages(store: NormalizedStore) -> None:
    applied = store.apply_change(
        ChangeMessage.model_validate(
            {
                "eventType": "INSERT",
                "table": "messages",
                "new": {"id": "m1", "chat_id": "s1", "type": "text", "content": "hi"},
            }
        )
    )

    assert applied is False
    assert store.run("m1") is None


def test_apply_change_skips_malformed_rows(
    store: NormalizedStore, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.WARNING):
        applied = store.apply_change(
            ChangeMessage.model_validate(
                {
                    "eventType": "INSERT",
                    "table": "chats",
                    "new": {"id": "s1", "steps": [{"step_number": "x"}]},
                }
            )
        )

    assert applied is False
    assert store.session("s1") is None
    assert "Skipping malformed feed row" in caplog.text


def test_apply_change_delete_without_id(store: NormalizedStore) -> None:
    message = ChangeMessage.model_validate({"eventType": "DELETE", "table": "chats", "old": {}})

    assert store.apply_change(message) is False


def test_live_steps_prefer_running_run(store: NormalizedStore, step) -> None:
    store.apply_insert(EntityKind.SESSION, _session(steps=[step(1, description="program")]))
    assert [s.description for s in store.live_steps("s1")] == ["program"]

    store.apply_insert(
        EntityKind.RUN, _run(steps=[step(1, description="live", active=True)])
    )

    assert store.latest_running_run("s1").id == "r1"
    assert [s.description for s in store.live_steps("s1")] == ["live"]

    store.apply_update(EntityKind.RUN, _run(code_run_state="finished"))
    assert store.latest_running_run("s1") is None
    assert [s.description for s in store.live_steps("s1")] == ["program"]


def test_sessions_newest_first(store: NormalizedStore) -> None:
    store.apply_insert(EntityKind.SESSION, _session("old", created_at="2024-01-01T00:00:00Z"))
    store.apply_insert(EntityKind.SESSION, _session("new", created_at="2024-06-01T00:00:00Z"))

    assert [s.id for s in store.sessions()] == ["new", "old"]


def test_browser_events_grouped_by_function(store: NormalizedStore) -> None:
    store.apply_insert(EntityKind.RUN, _run())
    store.apply_insert(EntityKind.CODERUN_EVENT, _event(function_name="search"))
    store.apply_insert(EntityKind.BROWSER_EVENT, BrowserEvent(id="b1", coderun_event_id="e1"))
    store.apply_insert(
        EntityKind.BROWSER_EVENT,
        BrowserEvent(id="b2", coderun_event_id="e1", function_name="login"),
    )

    grouped = store.browser_events_by_function("r1")

    assert {name: [b.id for b in events] for name, events in grouped.items()} == {
        "search": ["b1"],
        "login": ["b2"],
    }
