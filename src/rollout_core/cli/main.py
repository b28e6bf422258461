"""Main entry point for the rollout CLI.

Commands:
    rollout validate: Validate a deployment spec
    rollout steps: Print the step graph of a deployment spec
    rollout plan: Show what one evaluation of a state snapshot would do

Example:
    $ rollout --help
    $ rollout --log-level DEBUG plan snapshot.yaml --json
"""

from __future__ import annotations

import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version

import click

from rollout_core.cli.plan import plan_command
from rollout_core.cli.steps import steps_command
from rollout_core.cli.validate import validate_command
from rollout_core.errors import RolloutError
from rollout_core.telemetry.logging import configure_logging


def _get_version() -> str:
    try:
        return get_version("rollout-core")
    except PackageNotFoundError:
        return "unknown"


@click.group(
    name="rollout",
    help="rollout - Continuous deployment rollout decisions.",
    epilog="Use 'rollout <command> --help' for command-specific help.",
    context_settings={
        "help_option_names": ["-h", "--help"],
    },
)
@click.version_option(
    version=_get_version(),
    prog_name="rollout",
    message="%(prog)s %(version)s",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Minimum level of log lines written to stderr.",
)
@click.option("--json-logs", is_flag=True, default=False, help="Write logs as JSON lines.")
@click.pass_context
def cli(ctx: click.Context, log_level: str, json_logs: bool) -> None:
    """Root command group for the rollout CLI."""
    ctx.ensure_object(dict)
    configure_logging(log_level=log_level, json_output=json_logs)


cli.add_command(validate_command)
cli.add_command(steps_command)
cli.add_command(plan_command)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the rollout CLI.

    Args:
        argv: Command-line arguments (uses sys.argv if None).
    """
    try:
        cli(args=argv, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)
    except RolloutError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(e.exit_code)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
