"""``rollout validate``: check a deployment spec without rolling anything out.

Example:
    $ rollout validate deployment.yaml
    $ rollout validate deployment.yaml --application tenant.app
"""

from __future__ import annotations

from pathlib import Path

import click
import structlog

from rollout_core.cli.utils import ExitCode, error_exit, success
from rollout_core.errors import InvalidDeploymentSpecError
from rollout_core.schemas.deployment_spec import DeploymentSpec

logger = structlog.get_logger(__name__)


@click.command(
    name="validate",
    help="Validate a deployment spec YAML file.",
    epilog="""
Examples:
    $ rollout validate deployment.yaml
    $ rollout validate deployment.yaml --application tenant.app
""",
)
@click.argument(
    "spec",
    type=click.Path(exists=True, dir_okay=False, resolve_path=True, path_type=Path),
    metavar="SPEC",
)
@click.option(
    "--application",
    "-a",
    default=None,
    help="Application id, used in error messages.",
)
def validate_command(spec: Path, application: str | None) -> None:
    """Validate a deployment spec and summarize its instances.

    Args:
        spec: Path to the deployment spec YAML.
        application: Optional application id for error context.
    """
    try:
        parsed = DeploymentSpec.from_yaml(spec, application)
    except InvalidDeploymentSpecError as e:
        logger.info("deployment_spec_rejected", path=str(spec), reason=e.reason)
        error_exit(str(e), exit_code=ExitCode.VALIDATION_ERROR, path=str(spec))

    success(f"{spec.name}: valid")
    for instance in parsed.instances():
        zones = ", ".join(instance.zones()) or "no production zones"
        success(
            f"  instance {instance.name}: {zones} "
            f"(upgrade {instance.upgrade_policy.value}, rollout {instance.rollout_policy.value}, "
            f"revision {instance.revision_policy.value})"
        )


__all__ = ["validate_command"]
