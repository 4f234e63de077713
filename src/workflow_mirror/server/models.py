"""Pydantic models for the REST adapter."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from workflow_mirror.execution.state_machine import RunState
from workflow_mirror.store.entities import RewriteStatus


class ApiSessionSummary(BaseModel):
    id: str
    title: str
    created_at: str | None = None
    rewrite_status: RewriteStatus
    is_example: bool = False


class ApiSession(ApiSessionSummary):
    apps: list[str] = Field(default_factory=list)
    missing_connections: list[str] = Field(default_factory=list)
    user_inputs: dict[str, Any] = Field(default_factory=dict)
    model_cost: float | None = None
    run_ids: list[str] = Field(default_factory=list)
    running_run_id: str | None = None
    can_start: bool = False


class ApiStepNode(BaseModel):
    title: str
    step: dict[str, Any]
    children: list[ApiStepNode] = Field(default_factory=list)


class ApiStepTree(BaseModel):
    nodes: list[ApiStepNode]
    current_step_number: int | None = None
    example_inputs: dict[str, Any] = Field(default_factory=dict)
    final_output: Any = None
    highlighted: list[str] = Field(default_factory=list)


class ApiRun(BaseModel):
    id: str
    session_id: str | None
    state: RunState
    created_at: str | None = None
    code_run_error: str | None = None
    code_output: Any = None
    model_cost: float | None = None
    controls: list[RunState] = Field(default_factory=list)
    pending: bool = False
    highlighted: list[str] = Field(default_factory=list)


class ApiRunPage(BaseModel):
    runs: list[ApiRun]
    total: int
    page: int
    per_page: int
    total_pages: int


class ControlRequest(BaseModel):
    to: RunState


class ControlResult(BaseModel):
    accepted: bool
    run: ApiRun


class RenameRequest(BaseModel):
    title: str = Field(min_length=1)


class InputsRequest(BaseModel):
    user_inputs: dict[str, Any]


class ApiNotification(BaseModel):
    notification_id: int
    title: str
    description: str
    variant: str
