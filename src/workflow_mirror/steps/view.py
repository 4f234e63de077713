"""Display helpers over step arrays.

Hosts render from these instead of re-deriving titles, the current step or the
example input/output of a program themselves.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from workflow_mirror.steps.models import StepRecord, StepType
from workflow_mirror.store.entities import BrowserEvent

# Bookkeeping functions emitted by the code generator; never shown as steps.
INPUTS_FUNCTION = "mock_get_user_inputs"
MAIN_FUNCTION = "main"
IGNORED_FUNCTIONS: frozenset[str] = frozenset({INPUTS_FUNCTION, MAIN_FUNCTION})


def humanize_function_name(name: str) -> str:
    return name.replace("_", " ")


def format_step_title(step: StepRecord) -> str:
    if step.type is StepType.IF:
        return f"If: {step.control_description or 'Condition'}"
    if step.type is StepType.FOR:
        return f"For: {step.control_description or 'Loop'}"
    if step.type is StepType.FUNCTION:
        return step.description or step.function_name or "Function"
    if step.type is StepType.USER_INPUT:
        return step.description or "User Input"
    return step.description or "Step"


def display_steps(steps: Sequence[StepRecord]) -> list[StepRecord]:
    """Steps worth showing: everything but the generator's bookkeeping functions."""

    return [s for s in steps if s.function_name not in IGNORED_FUNCTIONS]


def _find_function(steps: Sequence[StepRecord], name: str) -> StepRecord | None:
    for step in steps:
        if step.function_name == name:
            return step
    return None


def example_inputs(steps: Sequence[StepRecord]) -> dict[str, Any]:
    step = _find_function(steps, INPUTS_FUNCTION)
    if step is None or not isinstance(step.output, dict):
        return {}
    return dict(step.output)


def final_output(steps: Sequence[StepRecord]) -> Any:
    step = _find_function(steps, MAIN_FUNCTION)
    return None if step is None else step.output


def current_step(steps: Sequence[StepRecord]) -> StepRecord | None:
    """The executing step, or the last one when nothing is active."""

    for step in steps:
        if step.active:
            return step
    return steps[-1] if steps else None


def loop_progress(step: StepRecord) -> tuple[int, int] | None:
    if step.type is not StepType.FOR or step.n_total is None:
        return None
    return (step.n_progress or 0, step.n_total)


def is_browser_event_empty(event: BrowserEvent) -> bool:
    data = event.data
    if not isinstance(data, dict) or not data:
        return True

    goal = data.get("current_goal")
    has_goal = isinstance(goal, str) and goal.strip() != ""
    browser_state = data.get("browser_state")
    has_browser_state = isinstance(browser_state, dict) and len(browser_state) > 0
    return not has_goal and not has_browser_state
