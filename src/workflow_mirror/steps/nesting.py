"""Flat step array -> nested control-flow forest.

Steps arrive as a flat list ordered by `step_number`, each annotated with its
`nesting_level`. A control step (`if` / `for`) declares how many *direct*
children it has; every deeper step between two direct children belongs to the
earlier child.

Producers have been seen to overstate `child_count`. Such a control step simply
gets fewer children; reconstruction never reads outside the range it was given.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field

from workflow_mirror.steps.models import StepRecord


@dataclass(slots=True)
class StepNode:
    step: StepRecord
    children: list[StepNode] = field(default_factory=list)

    def walk(self) -> Iterator[StepNode]:
        """Yield this node and its descendants, depth-first pre-order."""

        yield self
        for child in self.children:
            yield from child.walk()

    def to_json(self) -> dict[str, object]:
        return {
            "step": self.step.model_dump(mode="json"),
            "children": [child.to_json() for child in self.children],
        }


def nest(steps: Sequence[StepRecord]) -> list[StepNode]:
    """Build the control-flow forest for `steps`.

    The input is not modified: steps are copied and ordered by `step_number`
    before reconstruction, so repeated calls with equal input give equal forests.
    """

    if not steps:
        return []

    ordered = sorted((s.model_copy(deep=True) for s in steps), key=lambda s: s.step_number)
    return _nest_range(ordered, 0, len(ordered), level=0)


def _nest_range(steps: list[StepRecord], start: int, end: int, *, level: int) -> list[StepNode]:
    nodes: list[StepNode] = []
    i = start
    while i < end:
        step = steps[i]
        i += 1
        # Deeper steps are handled by the recursive call of their own parent.
        if step.nesting_level != level:
            continue

        node = StepNode(step=step)
        if step.is_control and step.child_count > 0:
            boundary = _children_boundary(steps, i, end, level=level, count=step.child_count)
            node.children = _nest_range(steps, i, boundary, level=level + 1)
            i = boundary
        nodes.append(node)
    return nodes


def _children_boundary(
    steps: list[StepRecord], start: int, end: int, *, level: int, count: int
) -> int:
    """Index just past the last descendant of the first `count` direct children."""

    seen = 0
    j = start
    while j < end:
        child_level = steps[j].nesting_level
        if child_level <= level:
            break
        if child_level == level + 1:
            if seen == count:
                break
            seen += 1
        j += 1
    return j


def flatten(forest: Sequence[StepNode]) -> list[StepRecord]:
    """Pre-order flattening; the inverse of :func:`nest` for well-formed input."""

    out: list[StepRecord] = []
    for root in forest:
        out.extend(node.step for node in root.walk())
    return out
