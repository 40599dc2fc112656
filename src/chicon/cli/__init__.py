"""Command-line interface."""

from chicon.cli.app import app

__all__ = ["app"]
