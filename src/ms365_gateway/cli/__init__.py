"""Command-line interface for ms365-gateway.

Provides commands for running the gateway and inspecting its storage,
tokens and configuration.
"""

from .main import cli, main

__all__ = ["cli", "main"]
