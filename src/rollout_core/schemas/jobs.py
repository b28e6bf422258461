"""Jobs, runs and job status views.

A job is a recurring pipeline stage for one application instance: the
shared system and staging test environments, and for each production zone
a deployment job and an optional verification (production test) job. Each
execution of a job is a Run; the ordered run history of a job is its
JobStatus.

Job names follow the pipeline convention used in YAML snapshots and the CLI:

    system-test, staging-test, production-<zone>, test-<zone>

Example:
    >>> from rollout_core.schemas.jobs import JobType
    >>> JobType.parse("production-us-west-1").zone
    'us-west-1'
    >>> JobType.test("us-west-1").is_production
    True
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, model_serializer, model_validator

from rollout_core.schemas.versions import ApplicationRevision, Version

if TYPE_CHECKING:
    from rollout_core.schemas.application import Application, Deployment
    from rollout_core.schemas.change import Change


# =============================================================================
# Job identity
# =============================================================================


class JobKind(str, Enum):
    """Pipeline stage kinds.

    Attributes:
        SYSTEM_TEST: Functional tests in the shared test environment.
        STAGING_TEST: Upgrade tests in the shared staging environment.
        PRODUCTION: Deployment to a production zone.
        PRODUCTION_TEST: Verification of a production zone after deployment.
    """

    SYSTEM_TEST = "system-test"
    STAGING_TEST = "staging-test"
    PRODUCTION = "production"
    PRODUCTION_TEST = "test"


class JobType(BaseModel):
    """A pipeline stage, optionally bound to a production zone.

    Validates from and serializes to the job name, e.g.
    ``"production-us-east-3"``.

    Attributes:
        kind: The stage kind.
        zone: The production zone, for production and production test jobs.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: JobKind
    zone: str | None = None

    @model_validator(mode="before")
    @classmethod
    def parse_job_name(cls, data: Any) -> Any:
        """Accept job names such as "system-test" or "production-us-west-1"."""
        if not isinstance(data, str):
            return data
        if data in (JobKind.SYSTEM_TEST.value, JobKind.STAGING_TEST.value):
            return {"kind": data}
        for kind in (JobKind.PRODUCTION, JobKind.PRODUCTION_TEST):
            prefix = f"{kind.value}-"
            if data.startswith(prefix) and len(data) > len(prefix):
                return {"kind": kind, "zone": data[len(prefix) :]}
        raise ValueError(f"Unknown job name '{data}'")

    @model_validator(mode="after")
    def check_zone(self) -> JobType:
        needs_zone = self.kind in (JobKind.PRODUCTION, JobKind.PRODUCTION_TEST)
        if needs_zone and not self.zone:
            raise ValueError(f"{self.kind.value} jobs require a zone")
        if not needs_zone and self.zone is not None:
            raise ValueError(f"{self.kind.value} jobs cannot have a zone")
        return self

    @model_serializer
    def serialize(self) -> str:
        return self.job_name

    @classmethod
    def parse(cls, name: str) -> JobType:
        return cls.model_validate(name)

    @classmethod
    def system_test(cls) -> JobType:
        return cls(kind=JobKind.SYSTEM_TEST)

    @classmethod
    def staging_test(cls) -> JobType:
        return cls(kind=JobKind.STAGING_TEST)

    @classmethod
    def production(cls, zone: str) -> JobType:
        return cls(kind=JobKind.PRODUCTION, zone=zone)

    @classmethod
    def test(cls, zone: str) -> JobType:
        return cls(kind=JobKind.PRODUCTION_TEST, zone=zone)

    @property
    def job_name(self) -> str:
        if self.zone is None:
            return self.kind.value
        return f"{self.kind.value}-{self.zone}"

    @property
    def is_test(self) -> bool:
        """Whether this job runs in one of the shared test environments."""
        return self.kind in (JobKind.SYSTEM_TEST, JobKind.STAGING_TEST)

    @property
    def is_production(self) -> bool:
        """Whether this job runs against a production zone."""
        return self.kind in (JobKind.PRODUCTION, JobKind.PRODUCTION_TEST)

    @property
    def is_deployment(self) -> bool:
        """Whether running this job deploys the application."""
        return self.kind is not JobKind.PRODUCTION_TEST

    @property
    def is_production_deployment(self) -> bool:
        return self.kind is JobKind.PRODUCTION

    @property
    def is_production_test(self) -> bool:
        return self.kind is JobKind.PRODUCTION_TEST

    def __str__(self) -> str:
        return self.job_name


class JobId(BaseModel):
    """A job of one application instance."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    application: str = Field(..., min_length=1, description="Application id, e.g. tenant.app")
    instance: str = Field(..., min_length=1, description="Instance name")
    type: JobType

    def __str__(self) -> str:
        return f"{self.application}.{self.instance} {self.type}"


class RunId(BaseModel):
    """A single run of a job; numbers increase monotonically per job."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    job: JobId
    number: int = Field(..., ge=1)

    def __str__(self) -> str:
        return f"{self.job} #{self.number}"


# =============================================================================
# Versions
# =============================================================================


class Versions(BaseModel):
    """Target and source platform/revision of a run.

    Sources are the versions deployed in the zone before the run, and are
    only known for jobs that upgrade an existing deployment.

    Attributes:
        target_platform: Platform version the run deploys or tests.
        target_revision: Application revision the run deploys or tests.
        source_platform: Platform version deployed before the run, if any.
        source_revision: Application revision deployed before the run, if any.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    target_platform: Version
    target_revision: ApplicationRevision
    source_platform: Version | None = None
    source_revision: ApplicationRevision | None = None

    def targets_match(self, other: Versions) -> bool:
        return (
            self.target_platform == other.target_platform
            and self.target_revision == other.target_revision
        )

    def sources_match_if_present(self, other: Versions) -> bool:
        """Whether sources agree wherever both sides know them."""
        return (
            self.source_platform is None
            or other.source_platform is None
            or self.source_platform == other.source_platform
        ) and (
            self.source_revision is None
            or other.source_revision is None
            or self.source_revision == other.source_revision
        )

    def without_sources(self) -> Versions:
        return self.model_copy(update={"source_platform": None, "source_revision": None})

    @classmethod
    def from_change(
        cls,
        change: Change,
        application: Application,
        deployment: Deployment | None,
        system_version: Version,
    ) -> Versions:
        """Resolve the versions a job should run with for a change.

        Targets never fall below what is deployed in the zone unless the
        change is pinned. Axes the change does not touch keep the deployed
        value, or for a zone without a deployment the oldest value deployed
        anywhere in the application, falling back to the system version and
        the latest submitted revision.

        Args:
            change: The change to roll out.
            application: The application being rolled out.
            deployment: The current deployment in the job's zone, if any.
            system_version: The currently recommended platform version.

        Returns:
            Versions with targets and, when deployed, sources.
        """
        return cls(
            target_platform=_target_platform(change, application, deployment, system_version),
            target_revision=_target_revision(change, application, deployment),
            source_platform=deployment.platform if deployment else None,
            source_revision=deployment.revision if deployment else None,
        )

    def __str__(self) -> str:
        text = f"platform {self.target_platform}, revision {self.target_revision}"
        if self.source_platform is not None or self.source_revision is not None:
            text += f" (from platform {self.source_platform}, revision {self.source_revision})"
        return text


def _target_platform(
    change: Change,
    application: Application,
    deployment: Deployment | None,
    system_version: Version,
) -> Version:
    if change.pinned and change.platform is not None:
        return change.platform
    deployed = deployment.platform if deployment else None
    candidates = [v for v in (change.platform, deployed) if v is not None]
    if candidates:
        return max(candidates)
    return application.oldest_deployed_platform() or system_version


def _target_revision(
    change: Change,
    application: Application,
    deployment: Deployment | None,
) -> ApplicationRevision:
    if change.pinned and change.revision is not None:
        return change.revision
    deployed = deployment.revision if deployment else None
    candidates = [r for r in (change.revision, deployed) if r is not None]
    if candidates:
        return max(candidates)
    return (
        application.oldest_deployed_revision()
        or application.latest_revision
        or ApplicationRevision.unknown()
    )


# =============================================================================
# Runs
# =============================================================================


class RunStatus(str, Enum):
    """Status of a run.

    Attributes:
        RUNNING: Not yet finished.
        SUCCESS: Finished successfully.
        FAILED: Finished with a failure; see Run.failure for the kind.
        ABORTED: Aborted before finishing.
        OUT_OF_CAPACITY: The zone had no capacity for the deployment.
    """

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    ABORTED = "aborted"
    OUT_OF_CAPACITY = "out_of_capacity"


class FailureKind(str, Enum):
    """What went wrong in a failed run."""

    DEPLOYMENT_FAILED = "deployment_failed"
    INSTALLATION_FAILED = "installation_failed"
    CONVERGENCE_TIMEOUT = "convergence_timeout"
    TEST_FAILURE = "test_failure"
    ERROR = "error"


class Run(BaseModel):
    """One execution of a job. Immutable once it has ended."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: RunId
    versions: Versions
    status: RunStatus = RunStatus.RUNNING
    failure: FailureKind | None = None
    start: datetime
    end: datetime | None = None

    @model_validator(mode="after")
    def check_end(self) -> Run:
        if (self.status is RunStatus.RUNNING) != (self.end is None):
            raise ValueError("a run has an end time exactly when it is no longer running")
        if self.failure is not None and self.status is not RunStatus.FAILED:
            raise ValueError("failure kind is only set on failed runs")
        return self

    @property
    def has_ended(self) -> bool:
        return self.status is not RunStatus.RUNNING

    @property
    def has_succeeded(self) -> bool:
        return self.status is RunStatus.SUCCESS

    @property
    def is_completed(self) -> bool:
        """Whether the run ended with a verdict, i.e. was not aborted."""
        return self.has_ended and self.status is not RunStatus.ABORTED

    def finished(
        self, status: RunStatus, end: datetime, failure: FailureKind | None = None
    ) -> Run:
        return self.model_copy(update={"status": status, "end": end, "failure": failure})


# =============================================================================
# Job status
# =============================================================================


class JobStatus(BaseModel):
    """Run history of one job, newest last, with derived accessors.

    Attributes:
        job: The job this history belongs to.
        runs: All runs, oldest first.
        paused_until: Automatic triggering is suspended until this instant.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    job: JobId
    runs: tuple[Run, ...] = ()
    paused_until: datetime | None = None

    @property
    def last_triggered(self) -> Run | None:
        return self.runs[-1] if self.runs else None

    @property
    def last_completed(self) -> Run | None:
        return next((run for run in reversed(self.runs) if run.is_completed), None)

    @property
    def last_success(self) -> Run | None:
        return next((run for run in reversed(self.runs) if run.has_succeeded), None)

    @property
    def first_failing(self) -> Run | None:
        """First completed run in the current streak of failures, if failing."""
        last_completed = self.last_completed
        if last_completed is None or last_completed.has_succeeded:
            return None
        last_success = self.last_success
        return next(
            run
            for run in self.runs
            if run.is_completed
            and (last_success is None or run.id.number > last_success.id.number)
        )

    @property
    def is_running(self) -> bool:
        last = self.last_triggered
        return last is not None and not last.has_ended

    @property
    def is_success(self) -> bool:
        last = self.last_completed
        return last is not None and last.has_succeeded

    @property
    def is_out_of_capacity(self) -> bool:
        last = self.last_completed
        return last is not None and last.status is RunStatus.OUT_OF_CAPACITY

    @property
    def is_failing_hard(self) -> bool:
        """Whether the job fails for reasons other than test capacity."""
        last = self.last_completed
        if last is None or last.has_succeeded:
            return False
        return not (self.is_out_of_capacity and self.job.type.is_test)

    def successes(self) -> list[Run]:
        return [run for run in self.runs if run.has_succeeded]

    def success_on(self, versions: Versions) -> bool:
        """Whether a run succeeded with matching targets and known sources."""
        return any(
            run.versions.targets_match(versions)
            and run.versions.sources_match_if_present(versions)
            for run in self.successes()
        )

    def with_run(self, run: Run) -> JobStatus:
        """Add a run, or replace the run with the same number."""
        runs = [existing for existing in self.runs if existing.id.number != run.id.number]
        runs.append(run)
        runs.sort(key=lambda r: r.id.number)
        return self.model_copy(update={"runs": tuple(runs)})


__all__ = [
    "FailureKind",
    "JobId",
    "JobKind",
    "JobStatus",
    "JobType",
    "Run",
    "RunId",
    "RunStatus",
    "Versions",
]
