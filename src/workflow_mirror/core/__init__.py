"""Core package initialization."""

from workflow_mirror.core.config import ExecutionConfig, FeedConfig, MirrorConfig

__all__ = [
    "ExecutionConfig",
    "FeedConfig",
    "MirrorConfig",
]
