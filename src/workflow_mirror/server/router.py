"""Read and control endpoints for host UIs.

All routes are mounted under `/api`. Handlers are thin: they take the mirror's
lock, call one service and translate the result.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request, Response

from workflow_mirror.execution.state_machine import RunState
from workflow_mirror.mirror import Mirror
from workflow_mirror.server.models import (
    ApiNotification,
    ApiRun,
    ApiRunPage,
    ApiSession,
    ApiSessionSummary,
    ApiStepNode,
    ApiStepTree,
    ControlRequest,
    ControlResult,
    InputsRequest,
    RenameRequest,
)
from workflow_mirror.steps.models import StepRecord
from workflow_mirror.steps.nesting import StepNode, nest
from workflow_mirror.steps.view import (
    IGNORED_FUNCTIONS,
    current_step,
    example_inputs,
    final_output,
    format_step_title,
)
from workflow_mirror.store.entities import ExecutionRun, ExecutionSession, missing_connections
from workflow_mirror.store.service import SESSION_LIST_KEY, Watch, session_watch_key
from workflow_mirror.store.sources import NotFound

router = APIRouter()


def _mirror(request: Request) -> Mirror:
    mirror = getattr(request.app.state, "mirror", None)
    if not isinstance(mirror, Mirror):
        raise HTTPException(status_code=500, detail="Mirror not configured")
    return mirror


def _watches(request: Request) -> dict[str, Watch]:
    return request.app.state.watches


def _ensure_session_list(request: Request, mirror: Mirror) -> Watch:
    watches = _watches(request)
    watch = watches.get(SESSION_LIST_KEY)
    if watch is None:
        watch = mirror.service.watch_sessions()
        watches[SESSION_LIST_KEY] = watch
    return watch


def _ensure_session(request: Request, mirror: Mirror, session_id: str) -> Watch:
    watches = _watches(request)
    watch = watches.get(session_watch_key(session_id))
    if watch is None:
        watch = mirror.service.watch_session(session_id)
        watches[watch.key] = watch
    return watch


def _release_session(request: Request, mirror: Mirror, session_id: str) -> None:
    watch = _watches(request).pop(session_watch_key(session_id), None)
    if watch is not None:
        mirror.service.release(watch)


def _session_or_404(request: Request, mirror: Mirror, session_id: str) -> ExecutionSession:
    watch = _ensure_session(request, mirror, session_id)
    try:
        return mirror.service.require_session(session_id)
    except NotFound as e:
        # A missing session has no consumer.
        _release_session(request, mirror, session_id)
        if watch.error:
            raise HTTPException(status_code=502, detail=watch.error) from e
        raise HTTPException(status_code=404, detail=str(e)) from e


def _run_or_404(mirror: Mirror, run_id: str) -> ExecutionRun:
    try:
        return mirror.service.require_run(run_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


def _summary(session: ExecutionSession) -> ApiSessionSummary:
    return ApiSessionSummary(
        id=session.id,
        title=session.title,
        created_at=session.created_at,
        rewrite_status=session.rewrite_status,
        is_example=session.is_example,
    )


def _api_session(mirror: Mirror, session: ExecutionSession, connected: set[str]) -> ApiSession:
    running = mirror.store.latest_running_run(session.id)
    return ApiSession(
        **_summary(session).model_dump(),
        apps=list(session.apps),
        missing_connections=missing_connections(session, connected),
        user_inputs=dict(session.user_inputs),
        model_cost=session.model_cost,
        run_ids=[r.id for r in mirror.store.runs_for_session(session.id)],
        running_run_id=running.id if running is not None else None,
        can_start=mirror.controller.can_start(session.id),
    )


def _api_run(mirror: Mirror, run: ExecutionRun) -> ApiRun:
    return ApiRun(
        id=run.id,
        session_id=run.session_id,
        state=run.code_run_state,
        created_at=run.created_at,
        code_run_error=run.code_run_error,
        code_output=run.code_output,
        model_cost=run.model_cost,
        controls=sorted(mirror.controller.controls(run.id), key=lambda s: s.value),
        pending=mirror.controller.is_pending(run.id),
        highlighted=sorted(mirror.service.highlights.active(run.id)),
    )


def _api_nodes(nodes: Sequence[StepNode]) -> list[ApiStepNode]:
    out: list[ApiStepNode] = []
    for node in nodes:
        if node.step.function_name in IGNORED_FUNCTIONS:
            continue
        out.append(
            ApiStepNode(
                title=format_step_title(node.step),
                step=node.step.model_dump(mode="json"),
                children=_api_nodes(node.children),
            )
        )
    return out


def _tree(steps: Sequence[StepRecord], highlighted: set[str]) -> ApiStepTree:
    current = current_step(steps)
    return ApiStepTree(
        nodes=_api_nodes(nest(steps)),
        current_step_number=current.step_number if current is not None else None,
        example_inputs=example_inputs(steps),
        final_output=final_output(steps),
        highlighted=sorted(highlighted),
    )


def _parse_connected(value: str | None) -> set[str]:
    if not value:
        return set()
    return {part.strip() for part in value.split(",") if part.strip()}


@router.get("/health")
def health(request: Request) -> dict[str, Any]:
    mirror = _mirror(request)
    with mirror.lock:
        return {
            "status": "ok",
            "entities": mirror.store.counts(),
            "orphans": mirror.store.orphan_count(),
            "channels": len(mirror.channels.topics()),
        }


# ----------------------------------------------------------------------
# Sessions
# ----------------------------------------------------------------------


@router.get("/sessions", response_model=list[ApiSessionSummary])
def list_sessions(
    request: Request, refresh: bool = Query(default=False)
) -> list[ApiSessionSummary]:
    mirror = _mirror(request)
    with mirror.lock:
        watch = _ensure_session_list(request, mirror)
        if refresh:
            mirror.service.refresh(watch)
        sessions = mirror.store.sessions()
        if watch.error and not sessions:
            raise HTTPException(status_code=502, detail=watch.error)
        return [_summary(s) for s in sessions]


@router.get("/sessions/{session_id}", response_model=ApiSession)
def get_session(
    session_id: str,
    request: Request,
    connected: str | None = Query(default=None, description="Comma-separated connected apps"),
) -> ApiSession:
    mirror = _mirror(request)
    with mirror.lock:
        session = _session_or_404(request, mirror, session_id)
        return _api_session(mirror, session, _parse_connected(connected))


@router.patch("/sessions/{session_id}", response_model=ApiSession)
def rename_session(session_id: str, req: RenameRequest, request: Request) -> ApiSession:
    mirror = _mirror(request)
    with mirror.lock:
        _session_or_404(request, mirror, session_id)
        if not mirror.service.rename_session(session_id, req.title):
            raise HTTPException(status_code=502, detail="Could not rename session")
        return _api_session(mirror, mirror.service.require_session(session_id), set())


@router.put("/sessions/{session_id}/inputs", response_model=ApiSession)
def update_inputs(session_id: str, req: InputsRequest, request: Request) -> ApiSession:
    mirror = _mirror(request)
    with mirror.lock:
        _session_or_404(request, mirror, session_id)
        if not mirror.service.update_session_inputs(session_id, req.user_inputs):
            raise HTTPException(status_code=502, detail="Could not save inputs")
        return _api_session(mirror, mirror.service.require_session(session_id), set())


@router.delete("/sessions/{session_id}", status_code=204)
def delete_session(session_id: str, request: Request) -> Response:
    mirror = _mirror(request)
    with mirror.lock:
        _session_or_404(request, mirror, session_id)
        if not mirror.service.delete_session(session_id):
            raise HTTPException(status_code=502, detail="Could not delete session")
        _release_session(request, mirror, session_id)
    return Response(status_code=204)


@router.delete("/sessions/{session_id}/watch", status_code=204)
def release_session(session_id: str, request: Request) -> Response:
    mirror = _mirror(request)
    with mirror.lock:
        _release_session(request, mirror, session_id)
    return Response(status_code=204)


@router.get("/sessions/{session_id}/tree", response_model=ApiStepTree)
def session_tree(session_id: str, request: Request) -> ApiStepTree:
    mirror = _mirror(request)
    with mirror.lock:
        _session_or_404(request, mirror, session_id)
        running = mirror.store.latest_running_run(session_id)
        highlighted = mirror.service.highlights.active(running.id) if running else set()
        return _tree(mirror.store.live_steps(session_id), highlighted)


@router.post("/sessions/{session_id}/runs", response_model=ApiRun, status_code=201)
def start_run(session_id: str, request: Request) -> ApiRun:
    mirror = _mirror(request)
    with mirror.lock:
        _session_or_404(request, mirror, session_id)
        if not mirror.controller.can_start(session_id):
            raise HTTPException(status_code=409, detail="Session is not ready to run")
        run = mirror.controller.start_run(session_id)
        if run is None:
            raise HTTPException(status_code=502, detail="Could not start run")
        return _api_run(mirror, run)


# ----------------------------------------------------------------------
# Runs
# ----------------------------------------------------------------------


@router.get("/runs/recent", response_model=ApiRunPage)
def recent_runs(request: Request, page: int = Query(default=1, ge=1)) -> ApiRunPage:
    mirror = _mirror(request)
    with mirror.lock:
        result = mirror.service.recent_runs(page=page)
        if result is None:
            raise HTTPException(status_code=502, detail="Could not fetch runs")
        return ApiRunPage(
            runs=[_api_run(mirror, run) for run in result.runs],
            total=result.total,
            page=result.page,
            per_page=result.per_page,
            total_pages=result.total_pages,
        )


@router.get("/runs/{run_id}", response_model=ApiRun)
def get_run(run_id: str, request: Request) -> ApiRun:
    mirror = _mirror(request)
    with mirror.lock:
        return _api_run(mirror, _run_or_404(mirror, run_id))


@router.get("/runs/{run_id}/tree", response_model=ApiStepTree)
def run_tree(run_id: str, request: Request) -> ApiStepTree:
    mirror = _mirror(request)
    with mirror.lock:
        run = _run_or_404(mirror, run_id)
        return _tree(run.steps, mirror.service.highlights.active(run.id))


@router.get("/runs/{run_id}/controls", response_model=list[RunState])
def run_controls(run_id: str, request: Request) -> list[RunState]:
    mirror = _mirror(request)
    with mirror.lock:
        _run_or_404(mirror, run_id)
        return sorted(mirror.controller.controls(run_id), key=lambda s: s.value)


@router.post("/runs/{run_id}/control", response_model=ControlResult)
def control_run(run_id: str, req: ControlRequest, request: Request) -> ControlResult:
    mirror = _mirror(request)
    with mirror.lock:
        _run_or_404(mirror, run_id)
        accepted = mirror.controller.request(run_id, req.to)
        return ControlResult(accepted=accepted, run=_api_run(mirror, _run_or_404(mirror, run_id)))


@router.get("/runs/{run_id}/highlights", response_model=list[str])
def run_highlights(run_id: str, request: Request) -> list[str]:
    mirror = _mirror(request)
    with mirror.lock:
        _run_or_404(mirror, run_id)
        return sorted(mirror.service.highlights.active(run_id))


@router.post("/runs/{run_id}/jump", status_code=202)
def jump_to_run(run_id: str, request: Request) -> dict[str, str]:
    mirror = _mirror(request)
    with mirror.lock:
        _run_or_404(mirror, run_id)
        mirror.bridge.jump_to_run_window(run_id)
    return {"status": "sent"}


@router.get("/runs/{run_id}/screenshots/latest")
def latest_screenshot(run_id: str, request: Request) -> dict[str, Any]:
    mirror = _mirror(request)
    with mirror.lock:
        shot = mirror.bridge.latest_screenshot(run_id)
    if shot is None:
        raise HTTPException(status_code=404, detail="No screenshot for run")
    return {"run_id": shot.run_id, "image": shot.image, "received_at": shot.received_at}


# ----------------------------------------------------------------------
# Executor boundary and notifications
# ----------------------------------------------------------------------


@router.post("/executor/messages")
def executor_message(payload: dict[str, Any], request: Request) -> dict[str, bool]:
    mirror = _mirror(request)
    with mirror.lock:
        return {"handled": mirror.bridge.handle_message(payload)}


@router.get("/notifications", response_model=list[ApiNotification])
def list_notifications(request: Request) -> list[ApiNotification]:
    mirror = _mirror(request)
    with mirror.lock:
        return [
            ApiNotification(
                notification_id=n.notification_id,
                title=n.title,
                description=n.description,
                variant=n.variant,
            )
            for n in mirror.notifications.pending()
        ]


@router.delete("/notifications/{notification_id}", status_code=204)
def dismiss_notification(notification_id: int, request: Request) -> Response:
    mirror = _mirror(request)
    with mirror.lock:
        mirror.notifications.dismiss(notification_id)
    return Response(status_code=204)
