"""Rollout decision engine: what to trigger and abort for an application.

DeploymentTrigger owns the decision cycle for one application:

1. Under the application's lock, bring each instance's change up to date:
   platform targets from the version status, axes that have finished
   rolling out dropped, and new revisions merged in where ready.
2. Compute Actions from the resulting DeploymentStatus: ready jobs to
   trigger, and running jobs to abort because their targets are obsolete
   or were cancelled, or their platform was marked broken.
3. Apply the actions: runs are recorded under the lock, and dispatched to
   the JobExecutor outside it.

Operator commands (force trigger, re-trigger, pause, cancel, ...) go
through the same locked commit path and the same dispatch, so they share
the non-downgrade guard and never start a job that is already running.

Example:
    >>> trigger = DeploymentTrigger(store, controller, executor, lambda: version_status)
    >>> actions = trigger.evaluate("tenant.app")
    >>> trigger.apply(actions)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from rollout_core.deployment.metrics import RolloutMetrics
from rollout_core.deployment.status import DeploymentStatus, JobToRun
from rollout_core.deployment.store import lock_and_store
from rollout_core.deployment.upgrader import Upgrader
from rollout_core.errors import (
    JobAlreadyRunningError,
    PauseTooLongError,
    UnknownInstanceError,
)
from rollout_core.schemas.application import Deployment, RetriggerEntry
from rollout_core.schemas.change import Change
from rollout_core.schemas.config import RolloutConfig
from rollout_core.schemas.deployment_spec import RevisionPolicy
from rollout_core.schemas.jobs import (
    FailureKind,
    JobId,
    JobType,
    Run,
    RunId,
    RunStatus,
    Versions,
)
from rollout_core.telemetry.tracing import create_span

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from rollout_core.deployment.jobs import JobController, JobExecutor
    from rollout_core.deployment.store import ApplicationStore
    from rollout_core.schemas.application import Application, Instance
    from rollout_core.schemas.versions import ApplicationRevision
    from rollout_core.schemas.version_status import VersionStatus

logger = structlog.get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Actions
# =============================================================================


class CancelScope(str, Enum):
    """What part of an instance's change to cancel.

    Attributes:
        ALL: The whole change, including any pin.
        PLATFORM: The platform target.
        REVISION: The revision target.
        PIN: The pin, keeping the targets.
        VERSIONS: Both targets, keeping the pin.
    """

    ALL = "all"
    PLATFORM = "platform"
    REVISION = "revision"
    PIN = "pin"
    VERSIONS = "versions"

    def apply(self, change: Change) -> Change:
        if self is CancelScope.ALL:
            return Change.empty()
        if self is CancelScope.PLATFORM:
            return change.without_platform()
        if self is CancelScope.REVISION:
            return change.without_revision()
        if self is CancelScope.PIN:
            return change.without_pin()
        return Change.empty().with_pin() if change.pinned else Change.empty()


@dataclass(frozen=True)
class JobTrigger:
    """A job to start.

    Attributes:
        job: The job, identifying instance and job type.
        versions: Versions the run deploys or tests.
        ready_at: When the job became ready.
        change: The change, or part of it, the run rolls out.
        is_retry: Whether the job last failed for lack of test capacity.
        is_revision_upgrade: Whether the instance is rolling out a revision.
        reason: Why the job is triggered: automatic, forced or retrigger.
    """

    job: JobId
    versions: Versions
    ready_at: datetime
    change: Change
    is_retry: bool = False
    is_revision_upgrade: bool = False
    reason: str = "automatic"


@dataclass(frozen=True)
class JobAbort:
    """A running run to stop, and why."""

    run: RunId
    reason: str


@dataclass(frozen=True)
class Actions:
    """Result of one evaluation of an application.

    Attributes:
        application: The evaluated application.
        to_trigger: Jobs to start, in step order.
        to_abort: Runs to abort.
    """

    application: str
    to_trigger: tuple[JobTrigger, ...] = ()
    to_abort: tuple[JobAbort, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.to_trigger and not self.to_abort


def would_downgrade(application: Application, job: JobId, versions: Versions) -> bool:
    """Whether running the versions would move the job's zone backwards.

    Only a change pinned to exactly the lower target may do so.
    """
    if not job.type.is_production_deployment:
        return False
    instance = application.instance(job.instance)
    deployment = instance.deployment(job.type.zone)
    if deployment is None:
        return False
    change = instance.change
    if versions.target_platform < deployment.platform and not (
        change.pinned and change.platform == versions.target_platform
    ):
        return True
    return versions.target_revision < deployment.revision and not (
        change.pinned and change.revision == versions.target_revision
    )


def _outside_change(versions: Versions, change: Change, deployment: Deployment | None) -> bool:
    """Whether a deployment run moves its zone to targets the change no longer holds."""
    if deployment is None:
        if not change.has_targets:
            return True
        return (change.platform is not None and change.platform != versions.target_platform) or (
            change.revision is not None and change.revision != versions.target_revision
        )
    moves_platform = versions.target_platform != deployment.platform
    moves_revision = versions.target_revision != deployment.revision
    return (moves_platform and versions.target_platform != change.platform) or (
        moves_revision and versions.target_revision != change.revision
    )


# =============================================================================
# Trigger
# =============================================================================


class DeploymentTrigger:
    """Decides and applies job triggers and aborts, one application at a time.

    Args:
        store: Application state, with per-application locks.
        jobs: Run history, and where new runs are recorded.
        executor: Runs the jobs.
        version_status: Returns the current platform version status.
        clock: Returns the current time.
        config: Engine configuration; defaults to RolloutConfig().
        metrics: Metrics collector; a new one is created if omitted.
    """

    def __init__(
        self,
        store: ApplicationStore,
        jobs: JobController,
        executor: JobExecutor,
        version_status: Callable[[], VersionStatus],
        clock: Callable[[], datetime] = _utc_now,
        config: RolloutConfig | None = None,
        metrics: RolloutMetrics | None = None,
    ) -> None:
        self._store = store
        self._jobs = jobs
        self._executor = executor
        self._version_status = version_status
        self._clock = clock
        self._config = config or RolloutConfig()
        self._metrics = metrics or RolloutMetrics()
        self._upgrader = Upgrader()

    @property
    def config(self) -> RolloutConfig:
        return self._config

    @property
    def metrics(self) -> RolloutMetrics:
        return self._metrics

    def now(self) -> datetime:
        return self._clock()

    def status(self, application: str | Application) -> DeploymentStatus:
        """Deployment status of an application, from committed state."""
        if isinstance(application, str):
            application = self._store.read(application)
        return DeploymentStatus(
            application,
            self._jobs.job_statuses(application.id),
            self._version_status(),
            self._clock(),
            self._config,
        )

    # =========================================================================
    # Evaluation
    # =========================================================================

    def evaluate(self, application_id: str) -> Actions:
        """Update the application's changes and decide what to trigger and abort.

        Evaluating again without any state change in between gives the same
        actions.

        Args:
            application_id: The application to evaluate.

        Returns:
            The actions to apply.

        Raises:
            LockTimeoutError: If the application's lock is busy.
            UnknownApplicationError: If the application does not exist.
        """
        span_attributes = {"rollout.application": application_id}
        timer = self._metrics.evaluation_timer(application_id)
        with create_span(RolloutMetrics.SPAN_EVALUATE, span_attributes), timer:
            with self._store.lock(application_id, self._config.lock_timeout_seconds):
                current = self._store.read(application_id)
                application = self._maintain(current)
                if application != current:
                    self._store.write(application)
                actions = self.compute_actions(self.status(application))
        if not actions.is_empty:
            logger.debug(
                "application_evaluated",
                application=application_id,
                to_trigger=[str(t.job) for t in actions.to_trigger],
                to_abort=[str(a.run) for a in actions.to_abort],
            )
        return actions

    def _maintain(self, application: Application) -> Application:
        application = self._upgrader.maintain(self.status(application))
        application = self._with_remaining_changes(application)
        application = self._with_new_revisions(application)
        return self._with_pruned_retrigger_queue(application)

    def compute_actions(self, status: DeploymentStatus) -> Actions:
        """Jobs to trigger and runs to abort, given a deployment status."""
        application = status.application
        now = status.now
        log = logger.bind(application=application.id)
        to_abort: dict[RunId, JobAbort] = {}

        for job_status in status.jobs():
            last = job_status.last_triggered
            if last is None or last.has_ended:
                continue
            platform = last.versions.target_platform
            change = application.instance(job_status.job.instance).change
            if status.version_status.is_broken(platform) and not (
                change.pinned and change.platform == platform
            ):
                log.info("aborting_broken_platform_run", run=str(last.id), platform=str(platform))
                to_abort[last.id] = JobAbort(last.id, "broken_platform")

        jobs_to_run = status.jobs_to_run()
        for job_status in status.jobs():
            job = job_status.job
            last = job_status.last_triggered
            if (
                last is None
                or last.has_ended
                or job in jobs_to_run
                or not job.type.is_production_deployment
            ):
                continue
            instance = application.instance(job.instance)
            if _outside_change(last.versions, instance.change, instance.deployment(job.type.zone)):
                log.info("aborting_cancelled_run", run=str(last.id), versions=str(last.versions))
                to_abort.setdefault(last.id, JobAbort(last.id, "cancelled"))

        to_trigger: list[JobTrigger] = []
        for job, runs in jobs_to_run.items():
            first = runs[0]
            if first.ready_at is None or first.ready_at > now:
                continue
            if not self._abort_if_running(status, jobs_to_run, job, to_abort):
                continue
            if would_downgrade(application, job, first.versions):
                self._refuse_downgrade(job, first.versions)
                continue
            to_trigger.append(self._job_trigger(status, job, first, "automatic"))

        triggered = {t.job for t in to_trigger}
        for entry in application.retrigger_queue:
            job_status = status.job_status(entry.job)
            last = job_status.last_triggered
            if entry.job in triggered or job_status.is_running or last is None:
                continue
            if last.id.number >= entry.required_run:
                continue
            if would_downgrade(application, entry.job, last.versions):
                self._refuse_downgrade(entry.job, last.versions)
                continue
            change = application.instance(entry.job.instance).change
            retrigger = JobToRun(last.versions, now, change)
            to_trigger.append(self._job_trigger(status, entry.job, retrigger, "retrigger"))
            triggered.add(entry.job)

        return Actions(application.id, tuple(to_trigger), tuple(to_abort.values()))

    def _job_trigger(
        self, status: DeploymentStatus, job: JobId, to_run: JobToRun, reason: str
    ) -> JobTrigger:
        change = status.application.instance(job.instance).change
        return JobTrigger(
            job=job,
            versions=to_run.versions,
            ready_at=to_run.ready_at if to_run.ready_at is not None else status.now,
            change=to_run.change,
            is_retry=status.job_status(job).is_out_of_capacity,
            is_revision_upgrade=change.revision is not None,
            reason=reason,
        )

    def _refuse_downgrade(self, job: JobId, versions: Versions) -> None:
        logger.warning("downgrade_refused", job=str(job), versions=str(versions))
        self._metrics.record_refused_downgrade(job.type.job_name)

    def _abort_if_outdated(
        self,
        status: DeploymentStatus,
        jobs: Mapping[JobId, list[JobToRun]],
        job: JobId,
        to_abort: dict[RunId, JobAbort],
    ) -> None:
        last = status.job_status(job).last_triggered
        candidates = jobs.get(job)
        if last is None or last.has_ended or candidates is None:
            return
        if not any(
            c.versions.targets_match(last.versions)
            and c.versions.sources_match_if_present(last.versions)
            for c in candidates
        ):
            logger.info("aborting_outdated_run", run=str(last.id), versions=str(last.versions))
            to_abort.setdefault(last.id, JobAbort(last.id, "outdated"))

    def _abort_if_running(
        self,
        status: DeploymentStatus,
        jobs: Mapping[JobId, list[JobToRun]],
        job: JobId,
        to_abort: dict[RunId, JobAbort],
    ) -> bool:
        """Abort outdated runs of the job, and report whether it is free to start."""
        self._abort_if_outdated(status, jobs, job, to_abort)
        blocked = status.job_status(job).is_running
        if job.type.is_production_deployment:
            test_job = job.model_copy(update={"type": JobType.test(job.type.zone)})
            if test_job in status.job_steps():
                self._abort_if_outdated(status, jobs, test_job, to_abort)
                # A deployment waits for its zone's test to verify what it deployed last.
                test_runs = jobs.get(test_job)
                if test_runs and not test_runs[0].versions.targets_match(jobs[job][0].versions):
                    blocked = True
        return not blocked

    # =========================================================================
    # Applying actions
    # =========================================================================

    def apply(self, actions: Actions) -> list[Run]:
        """Abort and start runs. Dispatch to the executor happens outside the lock.

        Returns:
            The runs started.
        """
        with create_span(
            RolloutMetrics.SPAN_APPLY,
            {
                "rollout.application": actions.application,
                "rollout.triggers": len(actions.to_trigger),
                "rollout.aborts": len(actions.to_abort),
            },
        ):
            for abort in actions.to_abort:
                self._abort(abort)
            started = []
            for trigger in actions.to_trigger:
                run = self._trigger(trigger)
                if run is not None:
                    started.append(run)
            return started

    def _abort(self, abort: JobAbort) -> None:
        if not self._jobs.abort(abort.run, self._clock()):
            return
        logger.info("job_aborted", run=str(abort.run), reason=abort.reason)
        self._metrics.record_abort(abort.run.job.type.job_name, reason=abort.reason)
        try:
            self._executor.abort(abort.run)
        except Exception:
            logger.exception("abort_dispatch_failed", run=str(abort.run))

    def _trigger(self, trigger: JobTrigger) -> Run | None:
        job = trigger.job
        log = logger.bind(application=job.application, job=str(job))
        with self._store.lock(job.application, self._config.lock_timeout_seconds):
            application = self._store.read(job.application)
            if would_downgrade(application, job, trigger.versions):
                self._refuse_downgrade(job, trigger.versions)
                return None
            now = self._clock()
            instance = application.instance(job.instance)
            paused_until = instance.paused_until(job.type)
            # Pauses set after the evaluation still hold back automatic triggers.
            if trigger.reason == "automatic" and paused_until is not None and paused_until > now:
                log.info("trigger_skipped_paused", until=paused_until.isoformat())
                return None
            try:
                run = self._jobs.start(job, trigger.versions, now)
            except JobAlreadyRunningError:
                log.info("job_already_running")
                return None
            if paused_until is not None and (trigger.reason == "forced" or paused_until <= now):
                unpaused = instance.with_job_pause(job.type, None)
                self._store.write(application.with_instance(unpaused))

        log.info(
            "job_triggered",
            run=run.id.number,
            versions=str(run.versions),
            reason=trigger.reason,
        )
        self._metrics.record_trigger(job.type.job_name, reason=trigger.reason)
        try:
            self._executor.deploy(run.id, run.versions)
        except Exception:
            log.exception("dispatch_failed", run=run.id.number)
            return self._jobs.finish(run.id, RunStatus.FAILED, self._clock(), FailureKind.ERROR)
        return run

    # =========================================================================
    # Change maintenance
    # =========================================================================

    def _with_remaining_change(
        self, status: DeploymentStatus, instance: Instance, change: Change
    ) -> Instance:
        """The instance with the given change, minus axes with nothing left to run."""
        remaining = change
        if not status.jobs_to_run_for({instance.name: change.without_revision()}):
            remaining = remaining.without_platform()
        if not status.jobs_to_run_for({instance.name: change.without_platform()}):
            remaining = remaining.without_revision()
            if change.revision is not None:
                instance = instance.with_latest_deployed(change.revision)
        if remaining != instance.change:
            logger.info(
                "change_updated",
                application=status.application.id,
                instance=instance.name,
                change=str(remaining),
                previous=str(instance.change),
            )
        return instance.with_change(remaining)

    def _with_remaining_changes(self, application: Application) -> Application:
        status = self.status(application)
        for name in application.deployment_spec.instance_names():
            instance = application.instance(name)
            if instance.change.has_targets:
                application = application.with_instance(
                    self._with_remaining_change(status, instance, instance.change)
                )
        return application

    def _with_new_revisions(self, application: Application) -> Application:
        """Merge outstanding revisions into instances that are ready for them."""
        status = self.status(application)
        for name in application.deployment_spec.instance_names():
            outstanding = status.outstanding_change(name)
            if not outstanding.has_targets or outstanding.revision is None:
                continue
            ready_at = status.instance_steps()[name].ready_at(outstanding)
            if ready_at is None or ready_at > status.now:
                continue
            if not self._accepts_new_revision(status, name, outstanding.revision):
                continue
            instance = application.instance(name)
            application = application.with_instance(
                self._with_remaining_change(
                    status, instance, instance.change.with_revision(outstanding.revision)
                )
            )
        return application

    def _accepts_new_revision(
        self, status: DeploymentStatus, instance: str, revision: ApplicationRevision
    ) -> bool:
        spec = status.application.deployment_spec.instance(instance)
        if spec is None:
            return False
        # A new revision may fix whatever is failing on an older one.
        if status.has_failures(revision):
            return True
        change = status.application.instance(instance).change
        return change.revision is None or spec.revision_policy is not RevisionPolicy.SEPARATE

    def _with_pruned_retrigger_queue(self, application: Application) -> Application:
        queue = tuple(
            entry
            for entry in application.retrigger_queue
            if (last := self._jobs.job_status(entry.job).last_triggered) is None
            or last.id.number < entry.required_run
        )
        if queue == application.retrigger_queue:
            return application
        return application.with_retrigger_queue(queue)

    # =========================================================================
    # Notifications
    # =========================================================================

    def notify_of_submission(self, application_id: str, revision: ApplicationRevision) -> None:
        """Record a newly built revision and roll it out where possible."""
        logger.info("revision_submitted", application=application_id, revision=str(revision))
        lock_and_store(
            self._store,
            application_id,
            lambda application: application.with_submission(revision),
            self._config.lock_timeout_seconds,
        )
        self.trigger_new_revision(application_id)

    def trigger_new_revision(self, application_id: str) -> None:
        """Merge the next revision into each instance ready to take it."""
        lock_and_store(
            self._store,
            application_id,
            self._with_new_revisions,
            self._config.lock_timeout_seconds,
        )

    def notify_of_completion(self, application_id: str) -> None:
        """Drop the parts of each instance's change that have finished rolling out."""
        lock_and_store(
            self._store,
            application_id,
            self._with_remaining_changes,
            self._config.lock_timeout_seconds,
        )

    def report_run(
        self,
        run_id: RunId,
        status: RunStatus,
        failure: FailureKind | None = None,
    ) -> Run:
        """Record the end of a run reported by the executor.

        A successful production deployment updates the zone's deployment.
        """
        run = self._jobs.finish(run_id, status, self._clock(), failure)
        job = run_id.job
        if run.has_succeeded and job.type.is_production_deployment:
            deployment = Deployment(
                zone=job.type.zone,
                platform=run.versions.target_platform,
                revision=run.versions.target_revision,
                at=run.end,
            )
            lock_and_store(
                self._store,
                job.application,
                lambda application: application.with_instance(
                    application.instance(job.instance).with_deployment(deployment)
                ),
                self._config.lock_timeout_seconds,
            )
        self.notify_of_completion(job.application)
        return run

    # =========================================================================
    # Operator commands
    # =========================================================================

    def _require_instance(self, application: Application, instance: str) -> None:
        if not application.is_declared(instance):
            raise UnknownInstanceError(application.id, instance)

    def _job(self, application_id: str, instance: str, job_type: JobType) -> JobId:
        self._require_instance(self._store.read(application_id), instance)
        return JobId(application=application_id, instance=instance, type=job_type)

    def force_trigger(
        self,
        application_id: str,
        instance: str,
        job_type: JobType,
        user: str,
        require_tests: bool = False,
    ) -> list[JobId]:
        """Trigger a job now, with the versions of the instance's change.

        Pauses and readiness are ignored, and the job's pause is cleared.

        Args:
            application_id: The application.
            instance: The instance name.
            job_type: The job to trigger.
            user: Who asked.
            require_tests: Trigger the system and staging tests the versions
                still need instead, if any.

        Returns:
            The jobs triggered.

        Raises:
            UnknownInstanceError: If the instance is not declared.
            JobAlreadyRunningError: If the job itself would start but is running.
        """
        job = self._job(application_id, instance, job_type)
        with create_span(
            RolloutMetrics.SPAN_OPERATOR,
            {"rollout.operation": "force_trigger", "rollout.job": str(job)},
        ):
            status = self.status(application_id)
            change = status.application.instance(instance).change
            versions = Versions.from_change(
                change, status.application, status.deployment_for(job), status.system_version
            )
            to_run = JobToRun(versions, status.now, change)
            jobs = status.test_jobs({job: [to_run]}) if require_tests else {}
            if not jobs:
                running = self._jobs.job_status(job).last_triggered
                if running is not None and not running.has_ended:
                    raise JobAlreadyRunningError(str(job), running.id.number)
                jobs = {job: [to_run]}
            logger.info("job_force_triggered", job=str(job), user=user, jobs=[str(j) for j in jobs])
            triggers = tuple(
                self._job_trigger(status, forced, runs[0], "forced")
                for forced, runs in jobs.items()
            )
            self.apply(Actions(application_id, triggers))
            return list(jobs)

    def re_trigger(self, application_id: str, instance: str, job_type: JobType) -> JobId:
        """Trigger a job again with the versions of its last run.

        Raises:
            UnknownInstanceError: If the instance is not declared.
            JobNeverTriggeredError: If the job has no runs.
            JobAlreadyRunningError: If the job is running.
        """
        job = self._job(application_id, instance, job_type)
        last = self._jobs.last_triggered(job)
        if not last.has_ended:
            raise JobAlreadyRunningError(str(job), last.id.number)
        status = self.status(application_id)
        change = status.application.instance(instance).change
        to_run = JobToRun(last.versions, status.now, change)
        trigger = self._job_trigger(status, job, to_run, "retrigger")
        self.apply(Actions(application_id, (trigger,)))
        return job

    def re_trigger_or_queue(
        self, application_id: str, instance: str, job_type: JobType
    ) -> JobId | None:
        """Re-trigger a job, aborting and queueing it if it is running.

        Returns:
            The job if it was triggered now, None if the re-trigger was queued.
        """
        job = self._job(application_id, instance, job_type)
        last = self._jobs.last_triggered(job)
        if last.has_ended:
            return self.re_trigger(application_id, instance, job_type)

        required = RetriggerEntry(job=job, required_run=last.id.number + 1)

        def enqueue(application: Application) -> Application:
            queue = [
                entry
                for entry in application.retrigger_queue
                if not (entry.job == job and entry.required_run < required.required_run)
            ]
            if not any(e.job == job and e.required_run >= required.required_run for e in queue):
                queue.append(required)
            return application.with_retrigger_queue(tuple(queue))

        lock_and_store(self._store, application_id, enqueue, self._config.lock_timeout_seconds)
        logger.info("retrigger_queued", job=str(job), required_run=required.required_run)
        self._abort(JobAbort(last.id, "retrigger"))
        return None

    def pause_job(
        self, application_id: str, instance: str, job_type: JobType, until: datetime
    ) -> None:
        """Suspend automatic triggering of a job until the given time.

        Raises:
            UnknownInstanceError: If the instance is not declared.
            PauseTooLongError: If the pause would exceed the configured maximum.
        """
        if until > self._clock() + self._config.max_pause:
            raise PauseTooLongError(until, self._config.max_pause)
        self._update_instance(
            application_id, instance, lambda _, i: i.with_job_pause(job_type, until)
        )
        logger.info(
            "job_paused",
            application=application_id,
            instance=instance,
            job_type=job_type.job_name,
            until=until.isoformat(),
        )

    def resume_job(self, application_id: str, instance: str, job_type: JobType) -> None:
        """Let a paused job be triggered normally again."""
        self._update_instance(
            application_id, instance, lambda _, i: i.with_job_pause(job_type, None)
        )
        logger.info(
            "job_resumed", application=application_id, instance=instance, job_type=job_type.job_name
        )

    def trigger_change(self, application_id: str, instance: str, change: Change) -> None:
        """Start rolling out the change, unless the instance already has one."""

        def update(status: DeploymentStatus, current: Instance) -> Instance:
            if current.change.has_targets:
                return current
            return self._with_remaining_change(status, current, change.on_top_of(current.change))

        self._update_instance(application_id, instance, update)

    def force_change(self, application_id: str, instance: str, change: Change) -> None:
        """Override the parts of the instance's change present in the given change."""
        self._update_instance(
            application_id,
            instance,
            lambda status, current: self._with_remaining_change(
                status, current, change.on_top_of(current.change)
            ),
        )

    def cancel_change(self, application_id: str, instance: str, scope: CancelScope) -> None:
        """Cancel part of the instance's change.

        Cancelled targets are not taken on again automatically; only newer
        platforms and revisions are. Production runs still deploying a
        cancelled target are aborted by the next evaluation.
        """

        def update(status: DeploymentStatus, current: Instance) -> Instance:
            remaining = scope.apply(current.change)
            return self._with_remaining_change(
                status, current.with_cancelled(remaining), remaining
            )

        self._update_instance(application_id, instance, update)
        logger.info(
            "change_cancelled", application=application_id, instance=instance, scope=scope.value
        )

    def _update_instance(
        self,
        application_id: str,
        instance: str,
        update: Callable[[DeploymentStatus, Instance], Instance],
    ) -> Application:
        def mutate(application: Application) -> Application:
            self._require_instance(application, instance)
            status = self.status(application)
            return application.with_instance(update(status, application.instance(instance)))

        with create_span(
            RolloutMetrics.SPAN_OPERATOR,
            {"rollout.application": application_id, "rollout.instance": instance},
        ):
            return lock_and_store(
                self._store, application_id, mutate, self._config.lock_timeout_seconds
            )


__all__ = [
    "Actions",
    "CancelScope",
    "DeploymentTrigger",
    "JobAbort",
    "JobTrigger",
    "would_downgrade",
]
