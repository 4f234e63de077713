"""Entities mirrored from the remote read model.

Sessions live in the `chats` table, runs are `messages` rows of type
`code_run`, and runs own `coderun_events` which in turn own `browser_events`.
Field names follow this package's vocabulary; the remote column names are
accepted as aliases.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from workflow_mirror.execution.state_machine import RunState
from workflow_mirror.steps.models import StepRecord, parse_steps


class EntityKind(str, Enum):
    SESSION = "session"
    RUN = "run"
    CODERUN_EVENT = "coderun_event"
    BROWSER_EVENT = "browser_event"


class RewriteStatus(str, Enum):
    THINKING = "thinking"
    REWRITING = "rewriting"
    READY = "ready"


class _Entity(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, protected_namespaces=())

    id: str
    created_at: str | None = None
    uid: str | None = None


class ExecutionSession(_Entity):
    """A persistent workflow definition: the program plus its inputs."""

    title: str = ""
    steps: list[StepRecord] = Field(default_factory=list)
    apps: list[str] = Field(default_factory=list)
    requires_code_rewrite: bool | None = None
    code_approved: bool | None = None
    user_inputs: dict[str, Any] = Field(default_factory=dict)
    model_cost: float = 0.0
    is_example: bool = False
    script: str | None = None

    @field_validator("steps", mode="before")
    @classmethod
    def _steps(cls, value: object) -> list[StepRecord]:
        return parse_steps(value)

    @field_validator("apps", mode="before")
    @classmethod
    def _null_apps(cls, value: object) -> object:
        return [] if value is None else value

    @field_validator("user_inputs", mode="before")
    @classmethod
    def _null_inputs(cls, value: object) -> object:
        return {} if value is None else value

    @property
    def rewrite_status(self) -> RewriteStatus:
        return rewrite_status(self)


class ExecutionRun(_Entity):
    """One invocation of a session's program.

    `steps` is the live copy updated by the execution backend, independent of
    the session's program.
    """

    session_id: str = Field(validation_alias=AliasChoices("session_id", "chat_id"))
    code_run_state: RunState = RunState.RUNNING
    steps: list[StepRecord] = Field(default_factory=list)
    code_run_error: str | None = None
    code_output: Any = None
    user_inputs: dict[str, Any] = Field(default_factory=dict)
    model_cost: float = 0.0

    @field_validator("steps", mode="before")
    @classmethod
    def _steps(cls, value: object) -> list[StepRecord]:
        return parse_steps(value)

    @field_validator("code_run_state", mode="before")
    @classmethod
    def _default_state(cls, value: object) -> object:
        return RunState.RUNNING if value is None else value

    @field_validator("user_inputs", mode="before")
    @classmethod
    def _null_inputs(cls, value: object) -> object:
        return {} if value is None else value

    @property
    def is_terminal(self) -> bool:
        return self.code_run_state.is_terminal


class CoderunEvent(_Entity):
    """Telemetry for one function step of a run."""

    run_id: str = Field(validation_alias=AliasChoices("run_id", "message_id"))
    session_id: str | None = Field(
        default=None, validation_alias=AliasChoices("session_id", "chat_id")
    )
    function_name: str | None = None
    description: str | None = None
    progress_title: str | None = None
    input: Any = None
    output: Any = None
    n_progress: int | None = None
    n_total: int | None = None
    requires_browser: bool = False
    control_value: Any = None
    control_description: str | None = None
    disabled: bool = False


class BrowserEvent(_Entity):
    """Browser telemetry emitted while a coderun event was executing."""

    coderun_event_id: str
    run_id: str | None = Field(default=None, validation_alias=AliasChoices("run_id", "message_id"))
    session_id: str | None = Field(
        default=None, validation_alias=AliasChoices("session_id", "chat_id")
    )
    function_name: str | None = None
    data: Any = None


def rewrite_status(session: ExecutionSession | None) -> RewriteStatus:
    """Derive whether a session's program is still being authored."""

    if session is None or session.requires_code_rewrite is None:
        return RewriteStatus.THINKING
    if session.requires_code_rewrite is False:
        return RewriteStatus.READY
    return RewriteStatus.READY if session.code_approved else RewriteStatus.REWRITING


def missing_connections(session: ExecutionSession, connected: set[str]) -> list[str]:
    """Required apps the user has not connected yet, in declaration order."""

    return [app for app in session.apps if app not in connected]
