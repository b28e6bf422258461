"""Deployment status of an application: which jobs should run, and when.

DeploymentStatus is a read-only snapshot combining an application, the run
history of its jobs, the platform version status and the current time. On
top of the step graph it answers the questions the trigger asks:

- which jobs still have work to do for each instance's change, with the
  versions they should run and when they become ready;
- which system and staging tests must verify those versions first;
- whether a new revision is outstanding for an instance;
- how platform and revision parts of a change are sequenced in a zone.

Nothing here mutates state. Every query is a pure function of the snapshot.

Example:
    >>> status = DeploymentStatus(application, job_statuses, version_status, now)
    >>> for job, to_run in status.jobs_to_run().items():
    ...     print(job, to_run[0].versions, to_run[0].ready_at)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from rollout_core.deployment.retry import RetryBackoffPolicy
from rollout_core.deployment.steps import (
    EPOCH,
    InstanceStatus,
    JobStepStatus,
    StepStatus,
    build_step_graph,
)
from rollout_core.schemas.change import Change
from rollout_core.schemas.config import RolloutConfig
from rollout_core.schemas.deployment_spec import RolloutPolicy
from rollout_core.schemas.jobs import JobId, JobStatus, JobType, Versions

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from datetime import timedelta

    from rollout_core.schemas.application import Application, Deployment
    from rollout_core.schemas.versions import ApplicationRevision, Version
    from rollout_core.schemas.version_status import VersionStatus


@dataclass(frozen=True)
class JobToRun:
    """A run a job should make.

    Attributes:
        versions: Versions the run should deploy or test.
        ready_at: When the run may start, or None if still waiting on dependencies.
        change: The change, or part of it, the run rolls out.
    """

    versions: Versions
    ready_at: datetime | None
    change: Change


class Join(str, Enum):
    """How the platform and revision parts of a change roll out in a zone.

    Attributes:
        JOINED: Both parts deploy together.
        PLATFORM_FIRST: The platform deploys alone, then the revision joins it.
        REVISION_FIRST: The revision deploys alone, then the platform joins it.
    """

    JOINED = "joined"
    PLATFORM_FIRST = "platform_first"
    REVISION_FIRST = "revision_first"

    def partials(self, change: Change) -> list[Change]:
        """The partial changes to deploy, in order."""
        if self is Join.PLATFORM_FIRST:
            return [change.without_revision(), change]
        if self is Join.REVISION_FIRST:
            return [change.without_platform(), change]
        return [change]


class RolloutState(str, Enum):
    """Observable rollout state of an instance.

    Attributes:
        IDLE: No change is rolling out.
        PLATFORM_ONLY: Only a platform upgrade is rolling out.
        REVISION_ONLY: Only a revision is rolling out.
        JOINED: Platform and revision roll out together.
        PLATFORM_LEADING_REVISION_CATCHING_UP: The platform deploys ahead of the revision.
        REVISION_LEADING_PLATFORM_CATCHING_UP: The revision deploys ahead of the platform.
    """

    IDLE = "idle"
    PLATFORM_ONLY = "platform_only"
    REVISION_ONLY = "revision_only"
    JOINED = "joined"
    PLATFORM_LEADING_REVISION_CATCHING_UP = "platform_leading_revision_catching_up"
    REVISION_LEADING_PLATFORM_CATCHING_UP = "revision_leading_platform_catching_up"


_JOIN_STATES = {
    Join.JOINED: RolloutState.JOINED,
    Join.PLATFORM_FIRST: RolloutState.PLATFORM_LEADING_REVISION_CATCHING_UP,
    Join.REVISION_FIRST: RolloutState.REVISION_LEADING_PLATFORM_CATCHING_UP,
}

_TEST_TYPES = (JobType.system_test(), JobType.staging_test())


def _merge(jobs: dict[JobId, list[JobToRun]], job: JobId, to_run: Iterable[JobToRun]) -> None:
    """Append runs to a job's list, dropping duplicates."""
    existing = jobs.setdefault(job, [])
    for item in to_run:
        if item not in existing:
            existing.append(item)


def _test_versions(test_type: JobType, versions: Versions) -> Versions:
    # System tests deploy from scratch, so sources never apply.
    if test_type == JobType.system_test():
        return versions.without_sources()
    return versions


class DeploymentStatus:
    """Status of all jobs of an application, at a point in time.

    Args:
        application: The application, with its deployment spec and instances.
        job_statuses: Run history of the application's jobs. Jobs without
            history may be omitted.
        version_status: Platform releases and their confidence.
        now: The time of evaluation.
        config: Engine configuration; defaults to RolloutConfig().

    Attributes:
        application: The application.
        version_status: Platform releases and their confidence.
        system_version: The currently recommended platform version.
        now: The time of evaluation.
        retry_policy: Backoff applied to failing jobs.
    """

    def __init__(
        self,
        application: Application,
        job_statuses: Mapping[JobId, JobStatus],
        version_status: VersionStatus,
        now: datetime,
        config: RolloutConfig | None = None,
    ) -> None:
        self.application = application
        self.version_status = version_status
        self.system_version: Version = version_status.system_version
        self.now = now
        self._config = config or RolloutConfig()
        self.retry_policy = RetryBackoffPolicy(self._config.retry)
        self._raw_statuses = dict(job_statuses)
        self._statuses: dict[JobId, JobStatus] = {}
        self._job_steps, self._all_steps = build_step_graph(self)

    @property
    def block_lookahead(self) -> timedelta:
        return self._config.block_lookahead

    # =========================================================================
    # Graph accessors
    # =========================================================================

    def job_status(self, job: JobId) -> JobStatus:
        """Run history of a job, with the instance's pause applied."""
        cached = self._statuses.get(job)
        if cached is None:
            cached = self._raw_statuses.get(job) or JobStatus(job=job)
            paused = self.application.instance(job.instance).paused_until(job.type)
            if cached.paused_until != paused:
                cached = cached.model_copy(update={"paused_until": paused})
            self._statuses[job] = cached
        return cached

    def jobs(self) -> list[JobStatus]:
        """Statuses of all jobs in the step graph, in declaration order."""
        return [self.job_status(job) for job in self._job_steps]

    def job_steps(self) -> dict[JobId, JobStepStatus]:
        return dict(self._job_steps)

    def all_steps(self) -> list[StepStatus]:
        return list(self._all_steps)

    def steps(self) -> list[StepStatus]:
        """Steps worth showing: all but implicit tests shadowed by declared ones."""
        shown: list[StepStatus] = []
        seen_tests: set[JobType] = set()
        for step in self._all_steps:
            job = step.job
            if job is not None and job.type.is_test:
                if not step.is_declared and job.type in seen_tests:
                    continue
                seen_tests.add(job.type)
            shown.append(step)
        return shown

    def instance_steps(self) -> dict[str, InstanceStatus]:
        return {
            step.instance: step for step in self._all_steps if isinstance(step, InstanceStatus)
        }

    def deployment_for(self, job: JobId) -> Deployment | None:
        """The deployment in the job's production zone, if any."""
        if not job.type.is_production:
            return None
        return self.application.instance(job.instance).deployment(job.type.zone)

    def _job_statuses_of_type(self, job_type: JobType) -> list[JobStatus]:
        return [self.job_status(job) for job in self._job_steps if job.type == job_type]

    def _declared_test(self, instance: str, test_type: JobType) -> JobId | None:
        job = JobId(application=self.application.id, instance=instance, type=test_type)
        step = self._job_steps.get(job)
        return job if step is not None and step.is_declared else None

    def _first_declared_or_implicit_test(self, test_type: JobType) -> JobId:
        candidates = [job for job in self._job_steps if job.type == test_type]
        declared = [job for job in candidates if self._job_steps[job].is_declared]
        return (declared or candidates)[0]

    # =========================================================================
    # Jobs to run
    # =========================================================================

    def jobs_to_run(self) -> dict[JobId, list[JobToRun]]:
        """Every job with outstanding work, with the runs it should make.

        Production jobs roll out each instance's current change. Test jobs
        additionally verify any outstanding revision ahead of time, so it is
        ready when the instance takes it on.
        """
        changes = {
            name: self.application.instance(name).change
            for name in self.application.deployment_spec.instance_names()
        }
        jobs = self._jobs_to_run(changes, eager_tests=False)
        eager_changes = {
            name: self.outstanding_change(name).on_top_of(change)
            for name, change in changes.items()
        }
        for job, to_run in self._jobs_to_run(eager_changes, eager_tests=True).items():
            if not job.type.is_production:
                _merge(jobs, job, to_run)
        return jobs

    def jobs_to_run_for(self, changes: Mapping[str, Change]) -> dict[JobId, list[JobToRun]]:
        """Jobs that would run the given changes, by instance name."""
        return self._jobs_to_run(changes, eager_tests=False)

    def _jobs_to_run(
        self, changes: Mapping[str, Change], eager_tests: bool
    ) -> dict[JobId, list[JobToRun]]:
        production: dict[JobId, list[JobToRun]] = {}
        for instance, change in changes.items():
            for job, to_run in self.production_jobs(instance, change, eager_tests).items():
                _merge(production, job, to_run)

        jobs: dict[JobId, list[JobToRun]] = {job: list(runs) for job, runs in production.items()}
        for job, to_run in self.test_jobs(production).items():
            _merge(jobs, job, to_run)

        # Declared tests with nothing in production to verify still run idle changes.
        for job, step in self._job_steps.items():
            change = changes.get(job.instance)
            if (
                not job.type.is_test
                or not step.is_declared
                or job in jobs
                or change is None
                or not change.has_targets
            ):
                continue
            dependent = self._first_production_deployment(job.instance)
            if step.completed_at(change, dependent) is not None:
                continue
            versions = _test_versions(
                job.type,
                Versions.from_change(
                    change,
                    self.application,
                    self.deployment_for(dependent) if dependent is not None else None,
                    self.system_version,
                ),
            )
            _merge(jobs, job, [JobToRun(versions, step.ready_at(change), change)])
        return jobs

    def _first_production_deployment(self, instance: str) -> JobId | None:
        return next(
            (
                job
                for job in self._job_steps
                if job.instance == instance
                and job.type.is_production_deployment
                and self.deployment_for(job) is not None
            ),
            None,
        )

    def production_jobs(
        self, instance: str, change: Change, assume_upgrades_succeed: bool
    ) -> dict[JobId, list[JobToRun]]:
        """Production jobs of the instance that must run to roll out the change.

        Args:
            instance: Instance name.
            change: The change to roll out.
            assume_upgrades_succeed: Whether later partial changes should
                assume earlier ones have been deployed.

        Returns:
            Runs each incomplete production job should make, in order.
        """
        jobs: dict[JobId, list[JobToRun]] = {}
        if not change.has_targets:
            return jobs
        for job, step in self._job_steps.items():
            if job.instance != instance or not job.type.is_production:
                continue
            join = self._join(job, step, change)
            if join is None:
                continue
            deployment = self.deployment_for(job)
            to_run: list[JobToRun] = []
            for partial in join.partials(change):
                versions = Versions.from_change(
                    partial, self.application, deployment, self.system_version
                )
                to_run.append(JobToRun(versions, step.ready_at(partial, job), partial))
                if assume_upgrades_succeed and deployment is not None:
                    deployment = deployment.model_copy(
                        update={
                            "platform": versions.target_platform,
                            "revision": versions.target_revision,
                        }
                    )
            _merge(jobs, job, to_run)
        return jobs

    def _join(self, job: JobId, step: JobStepStatus, change: Change) -> Join | None:
        """How the parts of the change roll out through the job, or None if done."""
        if step.completed_at(change, job) is not None:
            return None
        if change.platform is None or change.revision is None or change.pinned:
            return Join.JOINED
        if (
            step.completed_at(change.without_revision(), job) is not None
            or step.completed_at(change.without_platform(), job) is not None
        ):
            return Join.JOINED

        rollout = self.application.deployment_spec.instance(job.instance).rollout_policy
        if job.type.is_production_test:
            deployment_job = job.model_copy(update={"type": JobType.production(job.type.zone)})
            deployment_step = self._job_steps[deployment_job]
            platform_deployed_at = deployment_step.completed_at(
                change.without_revision(), deployment_job
            )
            revision_deployed_at = deployment_step.completed_at(
                change.without_platform(), deployment_job
            )
            if platform_deployed_at is None and revision_deployed_at is not None:
                return Join.REVISION_FIRST
            if platform_deployed_at is not None and revision_deployed_at is None:
                ready = deployment_step.ready_at(change, deployment_job)
                if ready is not None and ready <= self.now:
                    if rollout is RolloutPolicy.SEPARATE:
                        if self._has_failures_between(deployment_step, step):
                            return Join.JOINED
                        return Join.PLATFORM_FIRST
                    if rollout is RolloutPolicy.LEADING:
                        return Join.JOINED
                    return Join.REVISION_FIRST
                return Join.PLATFORM_FIRST

        platform_ready_at = step.dependencies_completed_at(change.without_revision(), job)
        revision_ready_at = step.dependencies_completed_at(change.without_platform(), job)
        if platform_ready_at is None and revision_ready_at is None:
            if rollout is RolloutPolicy.SEPARATE:
                return Join.PLATFORM_FIRST
            if rollout is RolloutPolicy.LEADING:
                return Join.JOINED
            return Join.REVISION_FIRST
        if platform_ready_at is None:
            return Join.REVISION_FIRST
        if revision_ready_at is None:
            return Join.PLATFORM_FIRST

        platform_first = platform_ready_at < revision_ready_at
        revision_first = revision_ready_at < platform_ready_at
        if rollout is RolloutPolicy.SEPARATE:
            if platform_first or platform_ready_at == EPOCH:
                # Keep retrying the joint change while it fails, to let a revision fix it.
                if self.job_status(job).first_failing is not None:
                    return Join.JOINED
                return Join.PLATFORM_FIRST
            if revision_first:
                return Join.REVISION_FIRST
            return Join.JOINED
        if rollout is RolloutPolicy.LEADING:
            return Join.JOINED
        return Join.JOINED if platform_first else Join.REVISION_FIRST

    def test_jobs(self, jobs: Mapping[JobId, list[JobToRun]]) -> dict[JobId, list[JobToRun]]:
        """System and staging tests needed to verify the given production jobs.

        An instance's declared tests verify its own production runs. Versions
        no test job has verified yet go to the first declared test of the
        application, or the first instance's implicit one.
        """
        test_jobs: dict[JobId, list[JobToRun]] = {}
        for test_type in _TEST_TYPES:
            for job, to_run in jobs.items():
                if not job.type.is_production_deployment:
                    continue
                declared = self._declared_test(job.instance, test_type)
                if declared is None:
                    continue
                test_step = self._job_steps[declared]
                for production in to_run:
                    versions = _test_versions(test_type, production.versions)
                    if self.job_status(declared).success_on(versions):
                        continue
                    ready_at = test_step.ready_at(production.change)
                    _merge(test_jobs, declared, [JobToRun(versions, ready_at, production.change)])

            for job, to_run in jobs.items():
                if not job.type.is_production_deployment:
                    continue
                for production in to_run:
                    versions = _test_versions(test_type, production.versions)
                    if any(
                        status.success_on(versions)
                        for status in self._job_statuses_of_type(test_type)
                    ):
                        continue
                    if any(
                        queued.type == test_type and any(r.versions == versions for r in runs)
                        for queued, runs in test_jobs.items()
                    ):
                        continue
                    test_job = self._first_declared_or_implicit_test(test_type)
                    test_step = self._job_steps[test_job]
                    ready_at = test_step.ready_at(production.change)
                    _merge(test_jobs, test_job, [JobToRun(versions, ready_at, production.change)])
        return test_jobs

    # =========================================================================
    # Revisions and verification
    # =========================================================================

    def outstanding_change(self, instance: str) -> Change:
        """A newer revision the instance could roll out, as a change, or an empty change."""
        revision = self._next_revision(instance)
        if revision is None:
            return Change.empty()
        change = Change.of(revision)
        current = self.application.instance(instance)
        if not current.accepts_revision(revision):
            return Change.empty()
        if current.change.revision is not None and not change.upgrades(current.change.revision):
            return Change.empty()
        if not self._jobs_to_run({instance: change}, eager_tests=False):
            return Change.empty()
        return change

    def _next_revision(self, instance: str) -> ApplicationRevision | None:
        """The newest revision all upstream instances have rolled out."""
        step = self.instance_steps().get(instance)
        if step is None:
            return None
        deployed = [
            upstream.latest_deployed
            for upstream in self._upstream_instances(step)
            if upstream.latest_deployed is not None
        ]
        return min(deployed) if deployed else self.application.latest_revision

    def _upstream_instances(self, step: StepStatus) -> list[InstanceStatus]:
        found: list[InstanceStatus] = []
        pending = list(step.dependencies)
        seen: set[int] = set()
        while pending:
            current = pending.pop()
            if id(current) in seen:
                continue
            seen.add(id(current))
            if isinstance(current, InstanceStatus):
                found.append(current)
            pending.extend(current.dependencies)
        return found

    def verified_at(self, job: JobId, versions: Versions) -> datetime | None:
        """When the versions were verified for production, or None if not yet.

        Versions count as verified once both system and staging tests have
        succeeded on them, or from the moment the job was first triggered on
        them, whichever is earlier.
        """
        triggered_at = next(
            (run.start for run in self.job_status(job).runs if run.versions == versions), None
        )
        system_tested_at = self._tested_at(job.instance, JobType.system_test(), versions)
        staging_tested_at = self._tested_at(job.instance, JobType.staging_test(), versions)
        if system_tested_at is None or staging_tested_at is None:
            return triggered_at
        tested_at = max(system_tested_at, staging_tested_at)
        if triggered_at is not None and triggered_at < tested_at:
            return triggered_at
        return tested_at

    def _tested_at(self, instance: str, test_type: JobType, versions: Versions) -> datetime | None:
        declared = self._declared_test(instance, test_type)
        statuses = (
            [self.job_status(declared)]
            if declared is not None
            else self._job_statuses_of_type(test_type)
        )
        starts = [
            run.start
            for status in statuses
            for run in status.successes()
            if run.versions.targets_match(versions)
            and run.versions.sources_match_if_present(versions)
        ]
        return min(starts, default=None)

    # =========================================================================
    # Failures and state
    # =========================================================================

    def has_failures(self, revision: ApplicationRevision) -> bool:
        """Whether any job fails hard on a revision older than the given one."""
        for status in self.jobs():
            last = status.last_triggered
            if last is None or not status.is_failing_hard:
                continue
            if last.versions.target_revision < revision:
                return True
        return False

    def _has_failures_between(self, dependency: StepStatus, dependent: StepStatus) -> bool:
        """Whether a job on a path from the dependency to the dependent is failing."""
        between: set[int] = set()
        self._fill_between(dependency, dependent, between, set())
        return any(
            step.job_status.first_failing is not None
            for step in self._job_steps.values()
            if id(step) in between and step is not dependency
        )

    def _fill_between(
        self,
        dependency: StepStatus,
        current: StepStatus,
        between: set[int],
        visited: set[int],
    ) -> bool:
        if id(current) in visited:
            return id(current) in between
        visited.add(id(current))
        reaches = current is dependency
        for upstream in current.dependencies:
            if self._fill_between(dependency, upstream, between, visited):
                reaches = True
        if reaches:
            between.add(id(current))
        return reaches

    def rollout_state(self, instance: str) -> RolloutState:
        """How the instance's change is currently rolling out."""
        change = self.application.instance(instance).change
        if not change.has_targets:
            return RolloutState.IDLE
        if change.revision is None:
            return RolloutState.PLATFORM_ONLY
        if change.platform is None:
            return RolloutState.REVISION_ONLY
        for job, step in self._job_steps.items():
            if job.instance != instance or not job.type.is_production_deployment:
                continue
            join = self._join(job, step, change)
            if join is not None:
                return _JOIN_STATES[join]
        return RolloutState.JOINED


__all__ = ["DeploymentStatus", "Join", "JobToRun", "RolloutState"]
