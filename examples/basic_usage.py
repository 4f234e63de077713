#!/usr/bin/env python3
"""Print a session's step tree from the read model (one-shot example).

This demonstrates using the mirror components directly:

* load settings from `.env` / `WORKFLOW_MIRROR_*` variables
* fetch one session snapshot over REST
* rebuild the nested control-flow tree and print it

No change feed is attached; the output reflects the moment of the fetch.
"""

from __future__ import annotations

import argparse
from typing import Sequence

from workflow_mirror.core.config import MirrorConfig
from workflow_mirror.feed.rest import RestReadModel
from workflow_mirror.steps.nesting import StepNode, nest
from workflow_mirror.steps.view import IGNORED_FUNCTIONS, format_step_title, loop_progress
from workflow_mirror.store.normalized import NormalizedStore
from workflow_mirror.store.sources import TransportError


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Print the step tree of a workflow session.")
    parser.add_argument("session_id", help="Session (chat) id")
    parser.add_argument(
        "--live",
        action="store_true",
        help="Show the running run's steps instead of the session program when one exists",
    )
    return parser.parse_args(argv)


def _print(nodes: Sequence[StepNode], depth: int = 0) -> None:
    for node in nodes:
        if node.step.function_name in IGNORED_FUNCTIONS:
            continue
        marker = "*" if node.step.active else "-"
        line = f"{'  ' * depth}{marker} {node.step.step_number}. {format_step_title(node.step)}"
        progress = loop_progress(node.step)
        if progress is not None:
            line += f" [{progress[0]}/{progress[1]}]"
        print(line)
        _print(node.children, depth + 1)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    config = MirrorConfig()
    config.setup_logging()

    client = RestReadModel(config.feed)
    store = NormalizedStore()
    try:
        store.load_snapshot(client.fetch_session_snapshot(args.session_id))
    except TransportError as exc:
        print(f"Could not fetch session: {exc}")
        return 1
    finally:
        client.close()

    session = store.session(args.session_id)
    if session is None:
        print(f"Session {args.session_id} not found")
        return 1

    steps = store.live_steps(session.id) if args.live else session.steps
    print(f"{session.title or session.id} ({session.rewrite_status.value})")
    _print(nest(steps))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
