"""Shared utilities."""

__all__: list[str] = []
