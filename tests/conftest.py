"""Shared fixtures for rollout-core tests.

Tests drive the real engine against in-memory state: an
InMemoryApplicationStore, a JobController and a RecordingExecutor that
only remembers what it was asked to run. Time only moves when a test
advances the ManualClock.

Example:
    def test_rollout(tester: DeploymentTester, single_zone_spec: str) -> None:
        tester.create(single_zone_spec)
        tester.submit(1)
        tester.evaluate()
        tester.succeed("default", JobType.system_test())
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import pytest

from rollout_core.deployment.jobs import JobController
from rollout_core.deployment.orchestrator import OrchestrationLoop
from rollout_core.deployment.status import DeploymentStatus
from rollout_core.deployment.store import InMemoryApplicationStore
from rollout_core.deployment.trigger import DeploymentTrigger
from rollout_core.schemas.application import Application, Deployment, Instance
from rollout_core.schemas.config import RolloutConfig
from rollout_core.schemas.deployment_spec import DeploymentSpec
from rollout_core.schemas.jobs import FailureKind, JobId, JobType, Run, RunStatus
from rollout_core.schemas.version_status import Confidence, PlatformRelease, VersionStatus
from rollout_core.schemas.versions import ApplicationRevision, Version

if TYPE_CHECKING:
    from collections.abc import Callable

    from rollout_core.deployment.orchestrator import CycleResult
    from rollout_core.deployment.trigger import Actions
    from rollout_core.schemas.jobs import RunId, Versions

# Monday, 10:00 UTC
START = datetime(2024, 5, 6, 10, 0, tzinfo=timezone.utc)

APP_ID = "tenant.app"

SINGLE_ZONE_SPEC = """
instances:
  - name: default
    steps:
      - region: us-west-1
"""


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> datetime:
        self.now += delta
        return self.now


class RecordingExecutor:
    """Job executor that records requests instead of running anything."""

    def __init__(self) -> None:
        self.deployed: list[tuple[RunId, Versions]] = []
        self.aborted: list[RunId] = []

    def deploy(self, run_id: RunId, versions: Versions) -> None:
        self.deployed.append((run_id, versions))

    def abort(self, run_id: RunId) -> None:
        self.aborted.append(run_id)


def _version_status(system: str = "7.1", **releases: Confidence) -> VersionStatus:
    """Version status with releases given as ``v7_1=Confidence.NORMAL``.

    Without releases, the system version is released with normal confidence.
    """
    if not releases:
        releases = {f"v{system.replace('.', '_')}": Confidence.NORMAL}
    return VersionStatus(
        system_version=Version.parse(system),
        releases=tuple(
            PlatformRelease(version=Version.parse(name[1:].replace("_", ".")), confidence=c)
            for name, c in releases.items()
        ),
    )


class DeploymentTester:
    """Drives one application through the engine.

    Attributes:
        clock: The manual clock all components share.
        store: Application state.
        controller: Run history.
        executor: Records dispatched runs and aborts.
        trigger: The engine under test.
        loop: Orchestration loop over the store.
        versions: Version status returned to the engine; replace to change it.
    """

    def __init__(self, config: RolloutConfig | None = None) -> None:
        self.clock = ManualClock()
        self.store = InMemoryApplicationStore()
        self.controller = JobController()
        self.executor = RecordingExecutor()
        self.versions = _version_status()
        self.trigger = DeploymentTrigger(
            self.store,
            self.controller,
            self.executor,
            lambda: self.versions,
            clock=self.clock,
            config=config,
        )
        self.loop = OrchestrationLoop(self.store, self.trigger, max_workers=2)
        self.app_id = APP_ID

    # Setup

    def create(
        self,
        spec: str,
        app_id: str = APP_ID,
        instances: dict[str, Instance] | None = None,
        revisions: tuple[int, ...] = (),
    ) -> Application:
        application = Application(
            id=app_id,
            deployment_spec=DeploymentSpec.from_yaml_string(spec, app_id),
            instances=instances or {},
            revisions=tuple(ApplicationRevision.of(b) for b in revisions),
        )
        self.store.create(application)
        self.app_id = app_id
        return application

    def create_deployed(
        self, spec: str, platform: str, build: int, zones: tuple[str, ...] = ("us-west-1",)
    ) -> Application:
        """Create the application with every zone of "default" already deployed."""
        deployments = {
            zone: Deployment(
                zone=zone,
                platform=Version.parse(platform),
                revision=ApplicationRevision.of(build),
                at=self.clock.now - timedelta(days=1),
            )
            for zone in zones
        }
        instance = Instance(
            name="default",
            deployments=deployments,
            latest_deployed=ApplicationRevision.of(build),
        )
        return self.create(spec, instances={"default": instance}, revisions=(build,))

    # State

    def application(self) -> Application:
        return self.store.read(self.app_id)

    def status(self) -> DeploymentStatus:
        return self.trigger.status(self.app_id)

    def job(self, instance: str, job_type: JobType) -> JobId:
        return JobId(application=self.app_id, instance=instance, type=job_type)

    def last_run(self, instance: str, job_type: JobType) -> Run | None:
        return self.controller.job_status(self.job(instance, job_type)).last_triggered

    def running_jobs(self) -> set[str]:
        """Running jobs as "instance job-name"."""
        return {
            f"{run.id.job.instance} {run.id.job.type}"
            for run in self.controller.active_runs(self.app_id)
        }

    def set_platforms(self, system: str, **releases: Confidence) -> None:
        """Replace the version status, e.g. ``set_platforms("7.2", v7_2=Confidence.BROKEN)``."""
        self.versions = _version_status(system, **releases)

    # Actions

    def submit(self, build: int) -> None:
        self.trigger.notify_of_submission(self.app_id, ApplicationRevision.of(build))

    def evaluate(self) -> Actions:
        return self.trigger.evaluate(self.app_id)

    def tick(self) -> list[Run]:
        """Evaluate and apply the resulting actions."""
        return self.trigger.apply(self.evaluate())

    def cycle(self) -> CycleResult:
        return self.loop.run_once()

    def _finish(
        self,
        instance: str,
        job_type: JobType,
        status: RunStatus,
        failure: FailureKind | None = None,
    ) -> Run:
        run = self.last_run(instance, job_type)
        assert run is not None, f"{instance} {job_type} was never triggered"
        assert not run.has_ended, f"{instance} {job_type} is not running"
        return self.trigger.report_run(run.id, status, failure)

    def succeed(self, instance: str, job_type: JobType) -> Run:
        return self._finish(instance, job_type, RunStatus.SUCCESS)

    def fail(
        self, instance: str, job_type: JobType, failure: FailureKind = FailureKind.TEST_FAILURE
    ) -> Run:
        return self._finish(instance, job_type, RunStatus.FAILED, failure)

    def out_of_capacity(self, instance: str, job_type: JobType) -> Run:
        return self._finish(instance, job_type, RunStatus.OUT_OF_CAPACITY)

    def pass_tests(self, instance: str = "default") -> None:
        """Complete running system and staging tests successfully."""
        for job_type in (JobType.system_test(), JobType.staging_test()):
            run = self.last_run(instance, job_type)
            if run is not None and not run.has_ended:
                self.succeed(instance, job_type)


@pytest.fixture
def tester() -> DeploymentTester:
    """A DeploymentTester with default configuration."""
    return DeploymentTester()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def make_version_status() -> Callable[..., VersionStatus]:
    """Factory for version statuses with releases given as keyword arguments."""
    return _version_status


@pytest.fixture
def single_zone_spec() -> str:
    return SINGLE_ZONE_SPEC
