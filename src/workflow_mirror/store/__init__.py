"""Normalized mirror of the remote read model."""

__all__: list[str] = []
