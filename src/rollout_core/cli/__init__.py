"""Command-line interface for the rollout engine."""

from __future__ import annotations

from rollout_core.cli.main import cli, main

__all__ = ["cli", "main"]
