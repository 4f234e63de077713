"""Pydantic model for a single step of a workflow program."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class StepType(str, Enum):
    FUNCTION = "function"
    IF = "if"
    FOR = "for"
    DONE = "done"
    USER_INPUT = "user_input"


CONTROL_TYPES: frozenset[StepType] = frozenset({StepType.IF, StepType.FOR})


class StepRecord(BaseModel):
    """One instruction of a flat workflow program.

    Backends add fields over time; unknown ones are kept so that snapshot
    comparison and re-serialization see exactly what was delivered.
    """

    model_config = ConfigDict(extra="allow")

    step_number: int = Field(ge=1)
    nesting_level: int = Field(default=0, ge=0)
    type: StepType

    id: str | None = None

    # function steps
    function_name: str | None = None
    function_description: str | None = None
    description: str | None = None
    input: dict[str, Any] | None = None
    output: Any = None
    browser_required: bool = False

    # control steps
    control_description: str | None = None
    child_count: int = Field(default=0, ge=0)
    control_value: Any = None
    n_progress: int | None = None
    n_total: int | None = None

    active: bool = False
    disabled: bool = False

    @property
    def is_control(self) -> bool:
        return self.type in CONTROL_TYPES

    @property
    def step_id(self) -> str:
        """Stable identifier used for diffing and UI keys."""

        return self.id or f"step-{self.step_number}"


def parse_steps(raw: object) -> list[StepRecord]:
    """Validate a JSON step array as stored on sessions and runs.

    `None` (no program yet) maps to an empty list.
    """

    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError("steps must be a list")
    return [StepRecord.model_validate(item) for item in raw]
