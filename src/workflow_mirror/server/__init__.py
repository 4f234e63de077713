"""HTTP adapter exposing the mirror to host UIs."""

from workflow_mirror.server.app import create_app

__all__ = ["create_app"]
