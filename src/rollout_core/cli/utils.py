"""CLI utility functions: exit codes and output helpers.

Errors and progress go to stderr as plain text; results go to stdout so
they can be piped.

Example:
    from rollout_core.cli.utils import error_exit, ExitCode

    if not path.exists():
        error_exit("File not found", exit_code=ExitCode.FILE_NOT_FOUND, path=str(path))
"""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from enum import IntEnum
from typing import TYPE_CHECKING

import click

if TYPE_CHECKING:
    from typing import NoReturn


class ExitCode(IntEnum):
    """Exit codes for CLI commands."""

    SUCCESS = 0
    """Command completed successfully."""

    GENERAL_ERROR = 1
    """General error (catch-all for failures)."""

    USAGE_ERROR = 2
    """Invalid usage (bad arguments, missing required options)."""

    FILE_NOT_FOUND = 3
    """Required file not found."""

    VALIDATION_ERROR = 5
    """Input validation failed."""


def _with_context(prefix: str, message: str, context: dict[str, str | int | bool | None]) -> str:
    context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
    if context_str:
        return f"{prefix}: {message} ({context_str})"
    return f"{prefix}: {message}"


def error(message: str, **context: str | int | bool | None) -> None:
    """Print an error message to stderr.

    Example:
        error("File not found", path="/path/to/file")
        # Output: Error: File not found (path=/path/to/file)
    """
    click.echo(_with_context("Error", message, context), err=True)


def error_exit(
    message: str,
    exit_code: ExitCode = ExitCode.GENERAL_ERROR,
    **context: str | int | bool | None,
) -> NoReturn:
    """Print an error message to stderr and exit with a code.

    Raises:
        SystemExit: Always.
    """
    error(message, **context)
    sys.exit(exit_code)


def warn(message: str, **context: str | int | bool | None) -> None:
    """Print a warning message to stderr."""
    click.echo(_with_context("Warning", message, context), err=True)


def success(message: str) -> None:
    """Print a result to stdout."""
    click.echo(message)


def info(message: str) -> None:
    """Print progress information to stderr."""
    click.echo(message, err=True)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp; naive timestamps are taken as UTC.

    Raises:
        click.BadParameter: If the value is not a valid timestamp.
    """
    # fromisoformat only accepts a trailing Z from Python 3.11
    normalized = value[:-1] + "+00:00" if value.endswith(("Z", "z")) else value
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as e:
        raise click.BadParameter(f"not an ISO 8601 timestamp: {value}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


__all__ = [
    "ExitCode",
    "error",
    "error_exit",
    "info",
    "parse_timestamp",
    "success",
    "warn",
]
