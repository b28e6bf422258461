"""``rollout plan``: show what one evaluation would trigger and abort.

Reads a RolloutSnapshot, replays it into an in-memory store and job
history, and evaluates the application once. Nothing is dispatched.

Example:
    $ rollout plan snapshot.yaml
    $ rollout plan snapshot.yaml --now 2024-05-02T12:00:00Z --json
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
import structlog

from rollout_core.cli.utils import ExitCode, error_exit, parse_timestamp, success
from rollout_core.deployment.jobs import JobController
from rollout_core.deployment.store import InMemoryApplicationStore
from rollout_core.deployment.trigger import DeploymentTrigger
from rollout_core.errors import ConfigurationError
from rollout_core.schemas.config import RolloutConfig
from rollout_core.schemas.snapshot import RolloutSnapshot
from rollout_core.telemetry.tracing import traced

if TYPE_CHECKING:
    from rollout_core.deployment.status import DeploymentStatus
    from rollout_core.deployment.trigger import Actions
    from rollout_core.schemas.jobs import RunId, Versions

logger = structlog.get_logger(__name__)


class DryRunExecutor:
    """Job executor that only logs what it is asked to do."""

    def deploy(self, run_id: RunId, versions: Versions) -> None:
        logger.info("dry_run_deploy", run=str(run_id), versions=str(versions))

    def abort(self, run_id: RunId) -> None:
        logger.info("dry_run_abort", run=str(run_id))


@traced(name="rollout.plan")
def plan(
    snapshot: RolloutSnapshot, config: RolloutConfig, now: datetime
) -> tuple[Actions, DeploymentStatus]:
    """Evaluate the snapshot's application once.

    Returns:
        The actions, and the deployment status after the evaluation's
        change maintenance.
    """
    store = InMemoryApplicationStore()
    store.create(snapshot.application)
    controller = JobController()
    for run in snapshot.runs:
        controller.record(run)
    trigger = DeploymentTrigger(
        store,
        controller,
        DryRunExecutor(),
        lambda: snapshot.version_status,
        clock=lambda: now,
        config=config,
    )
    actions = trigger.evaluate(snapshot.application.id)
    return actions, trigger.status(snapshot.application.id)


def _as_dict(actions: Actions, status: DeploymentStatus) -> dict[str, Any]:
    application = status.application
    return {
        "application": application.id,
        "now": status.now.isoformat(),
        "instances": {
            name: {
                "change": application.instance(name).change.model_dump(mode="json"),
                "rollout_state": status.rollout_state(name).value,
                "outstanding": status.outstanding_change(name).model_dump(mode="json"),
            }
            for name in application.deployment_spec.instance_names()
        },
        "to_trigger": [
            {
                "instance": t.job.instance,
                "job": t.job.type.job_name,
                "versions": t.versions.model_dump(mode="json"),
                "reason": t.reason,
            }
            for t in actions.to_trigger
        ],
        "to_abort": [
            {
                "instance": a.run.job.instance,
                "job": a.run.job.type.job_name,
                "run": a.run.number,
                "reason": a.reason,
            }
            for a in actions.to_abort
        ],
    }


@click.command(
    name="plan",
    help="Show the jobs one evaluation of a state snapshot would trigger and abort.",
    epilog="""
Examples:
    $ rollout plan snapshot.yaml
    $ rollout plan snapshot.yaml --config rollout.yaml --now 2024-05-02T12:00:00Z
    $ rollout plan snapshot.yaml --json
""",
)
@click.argument(
    "snapshot",
    type=click.Path(exists=True, dir_okay=False, resolve_path=True, path_type=Path),
    metavar="SNAPSHOT",
)
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, resolve_path=True, path_type=Path),
    help="Engine configuration YAML.",
    metavar="PATH",
)
@click.option(
    "--now",
    default=None,
    help="Evaluation time (ISO 8601). Defaults to the snapshot's time, then the current time.",
)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print JSON.")
def plan_command(
    snapshot: Path, config_path: Path | None, now: str | None, as_json: bool
) -> None:
    """Evaluate a snapshot once and print the resulting actions."""
    try:
        loaded = RolloutSnapshot.from_yaml(snapshot)
        config = RolloutConfig.from_yaml(config_path) if config_path else RolloutConfig()
    except ConfigurationError as e:
        error_exit(str(e), exit_code=ExitCode.VALIDATION_ERROR)

    evaluated_at = (
        parse_timestamp(now) if now is not None else loaded.now or datetime.now(timezone.utc)
    )
    actions, status = plan(loaded, config, evaluated_at)
    result = _as_dict(actions, status)
    if as_json:
        success(json.dumps(result, indent=2))
        return

    success(f"{result['application']} at {result['now']}")
    for name, instance in result["instances"].items():
        change = status.application.instance(name).change
        success(f"  instance {name}: {change} [{instance['rollout_state']}]")
    if not actions.to_trigger and not actions.to_abort:
        success("Nothing to do")
    for t in actions.to_trigger:
        success(f"trigger {t.job.instance} {t.job.type}: {t.versions}")
    for a in actions.to_abort:
        success(f"abort   {a.run.job.instance} {a.run.job.type} #{a.run.number} ({a.reason})")


__all__ = ["DryRunExecutor", "plan", "plan_command"]
