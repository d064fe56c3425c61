"""Shared configuration loading for CLI commands."""

from __future__ import annotations

__all__ = ["load_config_or_exit"]

import sys
from pathlib import Path

import click

from ms365_gateway.config import AppConfig, load_config
from ms365_gateway.exceptions import ConfigurationError

from ..styling import style_error


def load_config_or_exit(config_path: Path | None = None) -> AppConfig:
    """Load configuration, exiting with ConfigurationError.exit_code on failure."""
    try:
        return load_config(config_path)
    except ConfigurationError as e:
        click.echo(style_error(e.message), err=True)
        sys.exit(ConfigurationError.exit_code)
