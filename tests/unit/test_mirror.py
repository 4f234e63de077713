from __future__ import annotations

from workflow_mirror.mirror import Mirror, build_mirror
from workflow_mirror.store.entities import EntityKind, ExecutionRun, ExecutionSession


def test_services_share_one_store(mirror: Mirror) -> None:
    mirror.store.apply_insert(EntityKind.SESSION, ExecutionSession(id="s1"))
    mirror.store.apply_insert(EntityKind.RUN, ExecutionRun(id="r1", session_id="s1"))

    assert mirror.controller.controls("r1")
    assert mirror.bridge.request_running_screenshots() == ["r1"]


def test_tick_expires_and_polls(mirror: Mirror, bus, ready_session) -> None:
    mirror.store.apply_insert(EntityKind.SESSION, ready_session)
    run = mirror.controller.start_run("s1")

    assert mirror.tick() == []
    assert bus.types() == ["CREATE_RUN_WINDOW", "REQUEST_SCREENSHOT"]
    assert mirror.controller.is_pending(run.id)


def test_close_releases_channels(mirror: Mirror, transport) -> None:
    mirror.service.watch_sessions()

    mirror.close()

    assert mirror.channels.topics() == []
    assert transport.subscriptions[0].closed


def test_build_mirror_defaults_to_rest_client(mirror_config, transport, bus) -> None:
    built = build_mirror(mirror_config, transport=transport, bus=bus)

    assert built.store.counts()["session"] == 0
    assert built.notifications is built.service.notifications
