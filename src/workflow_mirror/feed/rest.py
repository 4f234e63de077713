"""REST client for a PostgREST-style read model (e.g. Supabase).

Implements both :class:`~workflow_mirror.store.sources.SnapshotSource` and
:class:`~workflow_mirror.store.sources.RecordWriter`. Every HTTP or decoding
failure is raised as :class:`~workflow_mirror.store.sources.TransportError`.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, TypeVar

import requests
from pydantic import BaseModel, ValidationError

from workflow_mirror.core.config import FeedConfig
from workflow_mirror.execution.state_machine import RunState
from workflow_mirror.feed.messages import Table
from workflow_mirror.steps.models import StepRecord
from workflow_mirror.store.entities import (
    BrowserEvent,
    CoderunEvent,
    ExecutionRun,
    ExecutionSession,
)
from workflow_mirror.store.normalized import RUN_MESSAGE_TYPE
from workflow_mirror.store.sources import RunPage, Snapshot, TransportError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _in_filter(ids: Sequence[str]) -> str:
    return "in.(" + ",".join(ids) + ")"


def _parse_total(content_range: str | None) -> int | None:
    # PostgREST: "0-19/123" or "*/0"
    if not content_range or "/" not in content_range:
        return None
    total = content_range.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else None


class RestReadModel:
    """Thin wrapper around `requests` for the operations the mirror needs."""

    def __init__(self, config: FeedConfig, *, session: requests.Session | None = None) -> None:
        self._base_url = config.rest_url.rstrip("/")
        self._timeout = config.request_timeout_seconds
        self._session = session or requests.Session()
        headers = {"Accept": "application/json", "User-Agent": "workflow-mirror"}
        if config.api_key:
            headers["apikey"] = config.api_key
            headers["Authorization"] = f"Bearer {config.api_key}"
        self._session.headers.update(headers)

    def close(self) -> None:
        self._session.close()

    def _url(self, table: Table) -> str:
        return f"{self._base_url}/{table.value}"

    def _request(
        self,
        method: str,
        table: Table,
        *,
        params: dict[str, str] | None = None,
        json: object = None,
        headers: dict[str, str] | None = None,
    ) -> requests.Response:
        try:
            resp = self._session.request(
                method,
                self._url(table),
                params=params,
                json=json,
                headers=headers,
                timeout=self._timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning(
                "Read model request failed",
                extra={"method": method, "table": table.value, "error": str(e)},
            )
            raise TransportError(f"{method} {table.value} failed: {e}") from e
        return resp

    def _rows(self, table: Table, params: dict[str, str]) -> list[dict[str, Any]]:
        resp = self._request("GET", table, params=params)
        try:
            data = resp.json()
        except ValueError as e:
            raise TransportError(f"{table.value}: response is not JSON") from e
        if not isinstance(data, list):
            raise TransportError(f"{table.value}: expected a list of rows")
        return [row for row in data if isinstance(row, dict)]

    def _models(self, model: type[ModelT], rows: list[dict[str, Any]]) -> list[ModelT]:
        out: list[ModelT] = []
        for row in rows:
            try:
                out.append(model.model_validate(row))
            except ValidationError:
                logger.warning(
                    "Skipping malformed row",
                    extra={"model": model.__name__, "id": row.get("id")},
                    exc_info=True,
                )
        return out

    # ------------------------------------------------------------------
    # SnapshotSource
    # ------------------------------------------------------------------

    def fetch_sessions(self) -> Snapshot:
        rows = self._rows(Table.SESSIONS, {"select": "*", "order": "created_at.desc"})
        return Snapshot(sessions=self._models(ExecutionSession, rows))

    def fetch_session_snapshot(self, session_id: str) -> Snapshot:
        sessions = self._models(
            ExecutionSession,
            self._rows(Table.SESSIONS, {"select": "*", "id": f"eq.{session_id}"}),
        )
        runs = self._models(
            ExecutionRun,
            self._rows(
                Table.RUNS,
                {
                    "select": "*",
                    "chat_id": f"eq.{session_id}",
                    "type": f"eq.{RUN_MESSAGE_TYPE}",
                    "order": "created_at",
                },
            ),
        )

        coderun_events: list[CoderunEvent] = []
        browser_events: list[BrowserEvent] = []
        if runs:
            coderun_events = self._models(
                CoderunEvent,
                self._rows(
                    Table.CODERUN_EVENTS,
                    {
                        "select": "*",
                        "message_id": _in_filter([r.id for r in runs]),
                        "order": "created_at",
                    },
                ),
            )
        if coderun_events:
            browser_events = self._models(
                BrowserEvent,
                self._rows(
                    Table.BROWSER_EVENTS,
                    {
                        "select": "*",
                        "coderun_event_id": _in_filter([e.id for e in coderun_events]),
                        "order": "created_at",
                    },
                ),
            )

        logger.info(
            "Fetched session snapshot",
            extra={
                "session_id": session_id,
                "runs": len(runs),
                "coderun_events": len(coderun_events),
                "browser_events": len(browser_events),
            },
        )
        return Snapshot(
            sessions=sessions,
            runs=runs,
            coderun_events=coderun_events,
            browser_events=browser_events,
        )

    def fetch_recent_runs(self, *, page: int, per_page: int) -> RunPage:
        if page < 1:
            raise ValueError("page must be >= 1")
        start = (page - 1) * per_page
        resp = self._request(
            "GET",
            Table.RUNS,
            params={
                "select": "*",
                "type": f"eq.{RUN_MESSAGE_TYPE}",
                "order": "created_at.desc",
                "offset": str(start),
                "limit": str(per_page),
            },
            headers={"Prefer": "count=exact"},
        )
        try:
            data = resp.json()
        except ValueError as e:
            raise TransportError("messages: response is not JSON") from e
        rows = [row for row in data if isinstance(row, dict)] if isinstance(data, list) else []
        runs = self._models(ExecutionRun, rows)
        total = _parse_total(resp.headers.get("Content-Range"))
        return RunPage(
            runs=runs,
            total=total if total is not None else start + len(runs),
            page=page,
            per_page=per_page,
        )

    # ------------------------------------------------------------------
    # RecordWriter
    # ------------------------------------------------------------------

    def create_run(
        self,
        *,
        session_id: str,
        steps: Sequence[StepRecord],
        user_inputs: dict[str, Any],
    ) -> ExecutionRun:
        body = {
            "chat_id": session_id,
            "role": "user",
            "content": "",
            "type": RUN_MESSAGE_TYPE,
            "code_run_state": RunState.RUNNING.value,
            "steps": [s.model_dump(mode="json") for s in steps],
            "user_inputs": user_inputs,
        }
        resp = self._request(
            "POST", Table.RUNS, json=body, headers={"Prefer": "return=representation"}
        )
        try:
            data = resp.json()
            row = data[0] if isinstance(data, list) else data
            run = ExecutionRun.model_validate(row)
        except (ValueError, IndexError, KeyError, ValidationError) as e:
            raise TransportError(f"Unexpected run creation response: {e}") from e
        logger.info("Created run", extra={"session_id": session_id, "run_id": run.id})
        return run

    def update_run_state(self, run_id: str, state: RunState) -> None:
        self._request(
            "PATCH",
            Table.RUNS,
            params={"id": f"eq.{run_id}"},
            json={"code_run_state": state.value},
            headers={"Prefer": "return=minimal"},
        )
        logger.info("Requested run state", extra={"run_id": run_id, "state": state.value})

    def update_session(self, session_id: str, fields: dict[str, Any]) -> None:
        self._request(
            "PATCH",
            Table.SESSIONS,
            params={"id": f"eq.{session_id}"},
            json=fields,
            headers={"Prefer": "return=minimal"},
        )

    def delete_session(self, session_id: str) -> None:
        self._request("DELETE", Table.SESSIONS, params={"id": f"eq.{session_id}"})
