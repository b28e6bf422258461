"""``rollout steps``: show the step graph a deployment spec folds into.

Prints every step in declaration order with the steps it waits for,
including the implicit system and staging tests of instances that do not
declare their own.

Example:
    $ rollout steps deployment.yaml
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import click

from rollout_core.cli.utils import ExitCode, error_exit, success
from rollout_core.deployment.status import DeploymentStatus
from rollout_core.deployment.steps import DelayStatus, InstanceStatus, StepStatus
from rollout_core.errors import InvalidDeploymentSpecError
from rollout_core.schemas.application import Application
from rollout_core.schemas.deployment_spec import DeploymentSpec
from rollout_core.schemas.version_status import VersionStatus
from rollout_core.schemas.versions import Version


def describe_step(step: StepStatus) -> str:
    """Short human-readable label of a step."""
    if isinstance(step, InstanceStatus):
        return f"instance {step.instance}"
    if isinstance(step, DelayStatus):
        return f"{step.instance}: delay {step.step.duration}"
    label = f"{step.instance}: {step.job.type}" if step.job is not None else step.instance
    return label if step.is_declared else f"{label} (implicit)"


@click.command(
    name="steps",
    help="Print the ordered steps of a deployment spec and what each waits for.",
)
@click.argument(
    "spec",
    type=click.Path(exists=True, dir_okay=False, resolve_path=True, path_type=Path),
    metavar="SPEC",
)
@click.option(
    "--application",
    "-a",
    default="tenant.application",
    show_default=True,
    help="Application id the spec belongs to.",
)
def steps_command(spec: Path, application: str) -> None:
    """Print the step graph of a deployment spec."""
    try:
        parsed = DeploymentSpec.from_yaml(spec, application)
    except InvalidDeploymentSpecError as e:
        error_exit(str(e), exit_code=ExitCode.VALIDATION_ERROR, path=str(spec))

    # Versions do not affect the shape of the graph.
    status = DeploymentStatus(
        Application(id=application, deployment_spec=parsed),
        {},
        VersionStatus(system_version=Version(major=0)),
        datetime.now(timezone.utc),
    )
    for step in status.steps():
        waits_for = ", ".join(describe_step(d) for d in step.dependencies)
        success(describe_step(step) + (f"  <- {waits_for}" if waits_for else ""))


__all__ = ["describe_step", "steps_command"]
