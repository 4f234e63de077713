"""Unit tests for the store service: lazy snapshots plus live feed updates."""

from __future__ import annotations

import pytest

from workflow_mirror.feed.channels import ChannelManager
from workflow_mirror.steps.highlight import HighlightTracker
from workflow_mirror.store.entities import EntityKind, ExecutionRun, ExecutionSession
from workflow_mirror.store.service import StoreService
from workflow_mirror.store.sources import NotFound

SESSION_TOPICS = [
    "chats:id=eq.s1",
    "messages:chat_id=eq.s1",
    "coderun_events:chat_id=eq.s1",
    "browser_events:chat_id=eq.s1",
]


@pytest.fixture
def channels(transport) -> ChannelManager:
    return ChannelManager(transport)


@pytest.fixture
def service(backend, channels, store, clock) -> StoreService:
    backend.sessions = [ExecutionSession(id="s1", title="Invoices")]
    backend.runs = [ExecutionRun(id="r1", session_id="s1")]
    return StoreService(
        source=backend,
        writer=backend,
        channels=channels,
        store=store,
        highlights=HighlightTracker(duration_seconds=2.0, clock=clock),
    )


def test_watch_session_loads_snapshot_and_opens_topics(service: StoreService, channels) -> None:
    watch = service.watch_session("s1")

    assert watch.error is None
    assert service.store.session("s1").title == "Invoices"
    assert [r.id for r in service.store.runs_for_session("s1")] == ["r1"]
    assert channels.topics() == sorted(SESSION_TOPICS)


def test_two_watchers_share_subscriptions(service: StoreService, channels, transport) -> None:
    first = service.watch_session("s1")
    second = service.watch_session("s1")

    assert len(transport.subscriptions) == 4
    service.release(first)
    assert channels.topics() == sorted(SESSION_TOPICS)

    service.release(second)
    service.release(second)
    assert channels.topics() == []
    assert all(s.closed for s in transport.subscriptions)


def test_feed_updates_reach_the_store(service: StoreService, transport) -> None:
    service.watch_session("s1")

    transport.push(
        "messages:chat_id=eq.s1",
        {
            "eventType": "INSERT",
            "table": "messages",
            "new": {"id": "r2", "chat_id": "s1", "type": "code_run"},
        },
    )
    transport.push(
        "chats:id=eq.s1",
        {"eventType": "UPDATE", "table": "chats", "new": {"id": "s1", "title": "Renamed"}},
    )

    assert service.store.session("s1").title == "Renamed"
    assert [r.id for r in service.store.runs_for_session("s1")] == ["r1", "r2"]


def test_step_changes_are_highlighted(service: StoreService, transport, clock) -> None:
    steps = [{"step_number": 1, "nesting_level": 0, "type": "function", "active": True}]
    service.watch_session("s1")
    row = {"id": "r1", "chat_id": "s1", "type": "code_run", "steps": steps}
    transport.push(
        "messages:chat_id=eq.s1", {"eventType": "UPDATE", "table": "messages", "new": row}
    )

    done = [{**steps[0], "active": False, "output": 3}]
    transport.push(
        "messages:chat_id=eq.s1",
        {"eventType": "UPDATE", "table": "messages", "new": {**row, "steps": done}},
    )

    assert service.highlights.active("r1") == {"step-1"}
    clock.advance(2)
    assert service.highlights.active("r1") == set()


def test_deleted_run_is_forgotten_by_highlights(service: StoreService, transport) -> None:
    steps = [{"step_number": 1, "nesting_level": 0, "type": "function", "active": True}]
    done = [{**steps[0], "active": False, "output": 3}]
    service.watch_session("s1")
    row = {"id": "r1", "chat_id": "s1", "type": "code_run", "steps": steps}
    topic = "messages:chat_id=eq.s1"
    transport.push(topic, {"eventType": "UPDATE", "table": "messages", "new": row})
    transport.push(
        topic, {"eventType": "UPDATE", "table": "messages", "new": {**row, "steps": done}}
    )
    assert service.highlights.active("r1") == {"step-1"}

    transport.push(topic, {"eventType": "DELETE", "table": "messages", "old": {"id": "r1"}})
    assert service.highlights.active("r1") == set()

    # A run that comes back starts from a fresh snapshot.
    transport.push(
        topic, {"eventType": "INSERT", "table": "messages", "new": {**row, "steps": done}}
    )
    assert service.highlights.active("r1") == set()


def test_highlights_do_not_outlive_deleted_runs(service: StoreService, store) -> None:
    for n in range(100):
        run = ExecutionRun(id=f"r{n}", session_id="s1")
        store.apply_insert(EntityKind.RUN, run)
    assert len(service.highlights._runs) == 100

    for n in range(100):
        store.apply_delete(EntityKind.RUN, f"r{n}")

    assert service.highlights._runs == {}


def test_refresh_failure_keeps_cache_and_notifies(service: StoreService, backend) -> None:
    watch = service.watch_session("s1")
    backend.fail = True
    backend.sessions = []

    assert service.refresh(watch) is False

    assert watch.error == "backend unavailable"
    assert watch.loading is False
    assert service.store.session("s1") is not None
    assert [n.title for n in service.notifications.pending()] == ["Error fetching runs"]

    backend.fail = False
    assert service.refresh(watch) is True
    assert watch.error is None


def test_session_list_failure(service: StoreService, backend) -> None:
    backend.fail = True

    watch = service.watch_sessions()

    assert watch.error == "backend unavailable"
    assert [n.title for n in service.notifications.pending()] == ["Error fetching workflows"]


def test_rename_and_inputs_update_the_cache(service: StoreService, backend) -> None:
    service.watch_session("s1")

    assert service.rename_session("s1", "Receipts") is True
    assert service.update_session_inputs("s1", {"month": "May"}) is True

    session = service.store.session("s1")
    assert session.title == "Receipts"
    assert session.user_inputs == {"month": "May"}
    assert backend.session_updates == [
        ("s1", {"title": "Receipts"}),
        ("s1", {"user_inputs": {"month": "May"}}),
    ]


def test_failed_edit_leaves_cache_untouched(service: StoreService, backend) -> None:
    service.watch_session("s1")
    backend.fail = True

    assert service.rename_session("s1", "Receipts") is False

    assert service.store.session("s1").title == "Invoices"
    assert [n.title for n in service.notifications.pending()] == ["Error updating chat"]


def test_delete_session(service: StoreService, backend) -> None:
    service.watch_session("s1")

    assert service.delete_session("s1") is True

    assert backend.deleted == ["s1"]
    assert service.store.session("s1") is None
    assert service.store.run("r1") is not None


def test_require_raises_not_found(service: StoreService) -> None:
    with pytest.raises(NotFound):
        service.require_session("missing")
    with pytest.raises(NotFound):
        service.require_run("missing")


def test_recent_runs_pages(service: StoreService, backend) -> None:
    backend.runs = [
        ExecutionRun(id=f"r{n}", session_id="s1", created_at=f"2024-01-{n:02d}")
        for n in range(1, 26)
    ]

    first = service.recent_runs()
    second = service.recent_runs(page=2)

    assert [r.id for r in first.runs][:2] == ["r25", "r24"]
    assert len(first.runs) == 20
    assert len(second.runs) == 5
    assert first.total_pages == 2


def test_recent_runs_failure(service: StoreService, backend) -> None:
    backend.fail = True

    assert service.recent_runs() is None
    assert [n.title for n in service.notifications.pending()] == ["Error fetching runs"]
