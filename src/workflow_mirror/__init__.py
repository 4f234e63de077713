"""Workflow Mirror.

Keeps an in-memory model of workflow sessions and their runs consistent with a
remote change feed:
- nested step trees reconstructed from flat step arrays
- a normalized store of sessions, runs and sub-events
- the run lifecycle state machine and execution controls
"""

__version__ = "0.1.0"

from workflow_mirror.core.config import MirrorConfig
from workflow_mirror.steps.nesting import StepNode, flatten, nest

__all__ = ["__version__", "MirrorConfig", "StepNode", "flatten", "nest"]
