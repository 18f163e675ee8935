"""
CLI Module - Command-line interface.
====================================

Provides the ``courseta`` command built with Typer.
"""

from course_ta.cli.main import app, cli

__all__ = ["app", "cli"]
