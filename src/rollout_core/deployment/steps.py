"""Step statuses: the deployment spec folded into a dependency graph.

Every primitive step of a deployment spec (instance, delay, system or
staging test, production deployment, production test) becomes a
StepStatus node that knows the steps it depends on and when it was
completed for a given change. Readiness is computed top-down: a step is
ready once all of its dependencies have completed the change, and it is
neither blocked, paused nor cooling down after failures.

Nodes are built by build_step_graph, a fold over the spec's tagged step
tree. Job nodes come out keyed by JobId in declaration order; instances
that do not declare system or staging tests get implicit ones.

See Also:
    - rollout_core.deployment.status: Queries the graph to decide which jobs to run
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from rollout_core.deployment.blocking import blocked_until
from rollout_core.schemas.deployment_spec import (
    DelayStep,
    InstanceSpec,
    ParallelStep,
    ProductionTestStep,
    RegionStep,
    SequentialStep,
    StagingTestStep,
    SystemTestStep,
)
from rollout_core.schemas.jobs import JobId, JobStatus, JobType, Versions

if TYPE_CHECKING:
    from collections.abc import Sequence

    from rollout_core.deployment.status import DeploymentStatus
    from rollout_core.schemas.application import Deployment
    from rollout_core.schemas.change import Change

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class StepType(str, Enum):
    """Kinds of step nodes.

    Attributes:
        INSTANCE: Completion marks a change as ready for the jobs in the instance.
        DELAY: A timed wait.
        TEST: A system, staging or production test job.
        DEPLOYMENT: A production deployment job.
    """

    INSTANCE = "instance"
    DELAY = "delay"
    TEST = "test"
    DEPLOYMENT = "deployment"


class StepStatus(ABC):
    """A node in the step graph.

    Args:
        type: What kind of step this is.
        step: The spec step this node was built from.
        dependencies: Steps that must complete before this one may start.
        instance: Name of the instance the step belongs to.
    """

    def __init__(
        self,
        type: StepType,
        step: Any,
        dependencies: Sequence[StepStatus],
        instance: str,
    ) -> None:
        self.type = type
        self.step = step
        self.dependencies: tuple[StepStatus, ...] = tuple(dependencies)
        self.instance = instance

    @property
    def job(self) -> JobId | None:
        """The job this step runs, if any."""
        return None

    @property
    def is_declared(self) -> bool:
        """Whether the step is declared in the spec rather than implied."""
        return True

    @abstractmethod
    def completed_at(self, change: Change, dependent: JobId | None = None) -> datetime | None:
        """When this step completed the change, or None if it has not.

        Args:
            change: The change, or part of a change, to check.
            dependent: The job asking. A job asking about itself applies the
                strictest criterion.
        """
        ...

    def ready_at(self, change: Change, dependent: JobId | None = None) -> datetime | None:
        """When this step may start running the change, or None if not yet known."""
        ready = self.dependencies_completed_at(change, dependent)
        if ready is None:
            return None
        holds = (self.blocked_until(change), self.paused_until(), self.cooling_down_until(change))
        return max([ready, *(hold for hold in holds if hold is not None)])

    def dependencies_completed_at(
        self, change: Change, dependent: JobId | None = None
    ) -> datetime | None:
        latest = EPOCH
        for dependency in self.dependencies:
            completed = dependency.completed_at(change, dependent)
            if completed is None:
                return None
            latest = max(latest, completed)
        return latest

    def blocked_until(self, change: Change) -> datetime | None:
        return None

    def paused_until(self) -> datetime | None:
        return None

    def cooling_down_until(self, change: Change) -> datetime | None:
        return None

    def __repr__(self) -> str:
        label = self.job if self.job is not None else self.type.value
        return f"<{type(self).__name__} {self.instance}: {label}>"


class DelayStatus(StepStatus):
    """Completes a fixed duration after it became ready."""

    def __init__(self, step: DelayStep, dependencies: Sequence[StepStatus], instance: str) -> None:
        super().__init__(StepType.DELAY, step, dependencies, instance)

    def completed_at(self, change: Change, dependent: JobId | None = None) -> datetime | None:
        ready = self.ready_at(change, dependent)
        return ready + self.step.duration if ready is not None else None


class InstanceStatus(StepStatus):
    """Entry point of an instance.

    Complete for a change once its dependencies are, provided the instance
    has taken the change on, or the instance deploys to no production zone.
    Its change blockers hold back new changes for the instance.
    """

    def __init__(
        self,
        spec: InstanceSpec,
        dependencies: Sequence[StepStatus],
        status: DeploymentStatus,
    ) -> None:
        super().__init__(StepType.INSTANCE, spec, dependencies, spec.name)
        self.spec = spec
        self._status = status

    @property
    def latest_deployed(self) -> Any:
        return self._status.application.instance(self.instance).latest_deployed

    def completed_at(self, change: Change, dependent: JobId | None = None) -> datetime | None:
        current = self._status.application.instance(self.instance).change
        if current.contains(change) or not self.spec.concerns_production:
            return self.dependencies_completed_at(change, dependent)
        return None

    def blocked_until(self, change: Change) -> datetime | None:
        return blocked_until(self.spec, change, self._status.now, self._status.block_lookahead)


class JobStepStatus(StepStatus):
    """A step that runs a job. Subclasses define completion."""

    def __init__(
        self,
        type: StepType,
        step: Any,
        dependencies: Sequence[StepStatus],
        job: JobId,
        status: DeploymentStatus,
        declared: bool = True,
    ) -> None:
        super().__init__(type, step, dependencies, job.instance)
        self._job = job
        self._status = status
        self._declared = declared

    @property
    def job(self) -> JobId:
        return self._job

    @property
    def is_declared(self) -> bool:
        return self._declared

    @property
    def job_status(self) -> JobStatus:
        return self._status.job_status(self._job)

    def blocked_until(self, change: Change) -> datetime | None:
        if not self._job.type.is_production:
            return None
        return self._status.instance_steps()[self.instance].blocked_until(change)

    def paused_until(self) -> datetime | None:
        return self.job_status.paused_until

    def cooling_down_until(self, change: Change) -> datetime | None:
        return self._status.retry_policy.cooling_down_until(
            self.job_status, change, self._status.now
        )

    def _versions(self, change: Change, dependent: JobId | None) -> Versions:
        status = self._status
        return Versions.from_change(
            change,
            status.application,
            status.deployment_for(dependent) if dependent is not None else None,
            status.system_version,
        )


class TestEnvironmentStatus(JobStepStatus):
    """System or staging test; complete on the latest success with matching targets."""

    def __init__(
        self,
        step: SystemTestStep | StagingTestStep,
        job: JobId,
        status: DeploymentStatus,
        declared: bool,
    ) -> None:
        super().__init__(StepType.TEST, step, (), job, status, declared)

    def completed_at(self, change: Change, dependent: JobId | None = None) -> datetime | None:
        versions = self._versions(change, dependent)
        ends = [
            run.end
            for run in self.job_status.successes()
            if run.end is not None and run.versions.targets_match(versions)
        ]
        return max(ends, default=None)


def _restored_at(change: Change, existing: Deployment | None) -> datetime | None:
    """Completion of a zone restored without run history, if already on the targets."""
    if (
        existing is not None
        and change.has_targets
        and (change.platform is None or change.platform == existing.platform)
        and (change.revision is None or change.revision == existing.revision)
    ):
        return existing.at
    return None


class ProductionDeploymentStatus(JobStepStatus):
    """Deployment to a production zone.

    Ready only once system and staging tests have verified the versions it
    would deploy. Complete once a successful run has deployed the change,
    or immediately when the change would only downgrade the zone.
    """

    def __init__(
        self,
        step: RegionStep,
        dependencies: Sequence[StepStatus],
        job: JobId,
        status: DeploymentStatus,
    ) -> None:
        super().__init__(StepType.DEPLOYMENT, step, dependencies, job, status)

    def ready_at(self, change: Change, dependent: JobId | None = None) -> datetime | None:
        ready = super().ready_at(change, dependent)
        status = self._status
        versions = Versions.from_change(
            change, status.application, status.deployment_for(self.job), status.system_version
        )
        tested = status.verified_at(self.job, versions)
        if ready is None or tested is None:
            return None
        return max(ready, tested)

    def completed_at(self, change: Change, dependent: JobId | None = None) -> datetime | None:
        existing = self._status.deployment_for(self.job)
        if (
            change.pinned
            and change.platform is not None
            and (existing is None or existing.platform != change.platform)
        ):
            return None

        # The job itself must run until its zone has the revision; others need not wait.
        if (
            change.revision is not None
            and dependent == self.job
            and (existing is None or existing.revision != change.revision)
            and (existing is None or change.pinned or change.revision > existing.revision)
        ):
            return None

        full_change = self._status.application.instance(self.instance).change
        if (
            existing is not None
            and not (change.upgrades(existing.platform) or change.upgrades(existing.revision))
            and (
                full_change.downgrades(existing.platform)
                or full_change.downgrades(existing.revision)
            )
        ):
            last_completed = self.job_status.last_completed
            if last_completed is not None:
                return last_completed.end
            return _restored_at(change, existing)

        if dependent == self.job:
            last_success = self.job_status.last_success
            runs = [last_success] if last_success is not None else []
        else:
            runs = self.job_status.successes()
        ends = [
            run.end
            for run in runs
            if run.end is not None
            and (change.platform is None or change.platform == run.versions.target_platform)
            and (change.revision is None or change.revision == run.versions.target_revision)
        ]
        if ends:
            return min(ends)
        return _restored_at(change, existing)


class ProductionTestStatus(JobStepStatus):
    """Verification of a production zone after deployment.

    For the job itself, only a success that started after the zone's latest
    deployment run ended counts.
    """

    def __init__(
        self,
        step: ProductionTestStep,
        dependencies: Sequence[StepStatus],
        job: JobId,
        status: DeploymentStatus,
    ) -> None:
        super().__init__(StepType.TEST, step, dependencies, job, status)
        self.deployment_job = job.model_copy(update={"type": JobType.production(step.zone)})

    def completed_at(self, change: Change, dependent: JobId | None = None) -> datetime | None:
        status = self._status
        versions = Versions.from_change(
            change, status.application, status.deployment_for(self.job), status.system_version
        )
        if dependent == self.job:
            last_success = self.job_status.last_success
            if last_success is None or not versions.targets_match(last_success.versions):
                return None
            deployed = status.job_status(self.deployment_job).last_completed
            if deployed is None or deployed.end is None or deployed.end > last_success.start:
                return None
            return last_success.end
        ends = [
            run.end
            for run in self.job_status.successes()
            if run.end is not None and versions.targets_match(run.versions)
        ]
        return min(ends, default=None)


def build_step_graph(
    status: DeploymentStatus,
) -> tuple[dict[JobId, JobStepStatus], list[StepStatus]]:
    """Fold the application's deployment spec into step statuses.

    Args:
        status: The deployment status the nodes query for job history,
            deployments and the clock.

    Returns:
        Job steps keyed by job id in declaration order, and all steps in
        declaration order, with declared tests replacing implicit ones.
    """
    application = status.application
    job_steps: dict[JobId, JobStepStatus] = {}
    all_steps: list[StepStatus] = []

    def job_id(instance: str, job_type: JobType) -> JobId:
        return JobId(application=application.id, instance=instance, type=job_type)

    def add_job_step(step_status: JobStepStatus) -> None:
        all_steps[:] = [s for s in all_steps if s.job != step_status.job]
        all_steps.append(step_status)
        job_steps[step_status.job] = step_status

    def fill(step: Any, previous: list[StepStatus], instance: str | None) -> list[StepStatus]:
        if isinstance(step, InstanceSpec):
            instance_status = InstanceStatus(step, previous, status)
            all_steps.append(instance_status)
            for test_step in (SystemTestStep(), StagingTestStep()):
                implicit = job_id(step.name, test_step.job_type)
                if implicit not in job_steps:
                    test_status = TestEnvironmentStatus(test_step, implicit, status, declared=False)
                    job_steps[implicit] = test_status
                    all_steps.append(test_status)
            return fill_sequence(step.steps, [instance_status], step.name)
        if isinstance(step, SequentialStep):
            return fill_sequence(step.steps, previous, instance)
        if isinstance(step, ParallelStep):
            branches: list[StepStatus] = []
            for nested in step.steps:
                branches.extend(fill(nested, previous, instance))
            return branches
        if instance is None:
            return previous
        if isinstance(step, DelayStep):
            if not step.duration:
                return previous
            delay = DelayStatus(step, previous, instance)
            all_steps.append(delay)
            return [delay]
        if isinstance(step, (SystemTestStep, StagingTestStep)):
            test_status = TestEnvironmentStatus(
                step, job_id(instance, step.job_type), status, declared=True
            )
            add_job_step(test_status)
            return [*previous, test_status]
        if isinstance(step, ProductionTestStep):
            verification = ProductionTestStatus(
                step, previous, job_id(instance, step.job_type), status
            )
            add_job_step(verification)
            return [verification]
        if isinstance(step, RegionStep):
            deployment = ProductionDeploymentStatus(
                step, previous, job_id(instance, step.job_type), status
            )
            add_job_step(deployment)
            return [deployment]
        raise TypeError(f"Unknown step {step!r}")

    def fill_sequence(
        steps: Sequence[Any], previous: list[StepStatus], instance: str | None
    ) -> list[StepStatus]:
        for nested in steps:
            previous = fill(nested, previous, instance)
        return previous

    fill_sequence(application.deployment_spec.steps, [], None)
    return job_steps, all_steps


__all__ = [
    "EPOCH",
    "DelayStatus",
    "InstanceStatus",
    "JobStepStatus",
    "ProductionDeploymentStatus",
    "ProductionTestStatus",
    "StepStatus",
    "StepType",
    "TestEnvironmentStatus",
    "build_step_graph",
]
