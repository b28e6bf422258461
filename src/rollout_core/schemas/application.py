"""Application state as seen by the rollout engine.

An Application holds its deployment spec, submitted revisions and one
Instance per instance name. Instances carry their pending Change, their
paused jobs and the deployments currently live in their production zones.

All models are frozen. State transitions produce new snapshots with
``model_copy`` and are committed through the application store.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from rollout_core.schemas.change import Change
from rollout_core.schemas.deployment_spec import DeploymentSpec
from rollout_core.schemas.jobs import JobId, JobType
from rollout_core.schemas.versions import ApplicationRevision, Version


class Deployment(BaseModel):
    """What is live in a production zone right now.

    Attributes:
        zone: The production zone.
        platform: Platform version running in the zone.
        revision: Application revision running in the zone.
        at: When this deployment was activated.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    zone: str = Field(..., min_length=1)
    platform: Version
    revision: ApplicationRevision
    at: datetime


class RetriggerEntry(BaseModel):
    """A queued re-trigger, waiting for an aborted run to end.

    Attributes:
        job: The job to re-trigger.
        required_run: Run number the re-trigger creates; the entry is done once it exists.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    job: JobId
    required_run: int = Field(..., ge=1)


class Instance(BaseModel):
    """One instance of an application.

    Attributes:
        name: Instance name.
        change: The change currently rolling out in this instance.
        deployments: Live deployments, by production zone.
        job_pauses: Automatic triggering of these jobs is paused until the given time.
        latest_deployed: The latest revision this instance has fully rolled out.
        cancelled_platform: Last platform target cancelled by an operator; only
            newer platforms are taken on automatically.
        cancelled_revision: Last revision target cancelled by an operator; only
            newer revisions are taken on automatically.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    change: Change = Field(default_factory=Change.empty)
    deployments: dict[str, Deployment] = Field(default_factory=dict)
    job_pauses: dict[str, datetime] = Field(default_factory=dict)
    latest_deployed: ApplicationRevision | None = None
    cancelled_platform: Version | None = None
    cancelled_revision: ApplicationRevision | None = None

    def deployment(self, zone: str | None) -> Deployment | None:
        return self.deployments.get(zone) if zone is not None else None

    def paused_until(self, job_type: JobType) -> datetime | None:
        return self.job_pauses.get(job_type.job_name)

    def with_change(self, change: Change) -> Instance:
        return self.model_copy(update={"change": change})

    def with_deployment(self, deployment: Deployment) -> Instance:
        return self.model_copy(
            update={"deployments": {**self.deployments, deployment.zone: deployment}}
        )

    def with_job_pause(self, job_type: JobType, until: datetime | None) -> Instance:
        pauses = {k: v for k, v in self.job_pauses.items() if k != job_type.job_name}
        if until is not None:
            pauses[job_type.job_name] = until
        return self.model_copy(update={"job_pauses": pauses})

    def with_latest_deployed(self, revision: ApplicationRevision) -> Instance:
        return self.model_copy(update={"latest_deployed": revision})

    def with_cancelled(self, remaining: Change) -> Instance:
        """The instance with the targets its change loses to ``remaining`` marked cancelled."""
        update: dict[str, Version | ApplicationRevision] = {}
        if self.change.platform is not None and remaining.platform is None:
            update["cancelled_platform"] = self.change.platform
        if self.change.revision is not None and remaining.revision is None:
            update["cancelled_revision"] = self.change.revision
        return self.model_copy(update=update) if update else self

    def accepts_platform(self, platform: Version) -> bool:
        """Whether the platform may be taken on automatically, given past cancellations."""
        return self.cancelled_platform is None or platform > self.cancelled_platform

    def accepts_revision(self, revision: ApplicationRevision) -> bool:
        """Whether the revision may be taken on automatically, given past cancellations."""
        return self.cancelled_revision is None or revision > self.cancelled_revision


class Application(BaseModel):
    """An application and all of its instances.

    Instances declared in the deployment spec but not yet stored are
    materialized on access with an empty change. Instances stored but not
    declared in the spec are never rolled out automatically.

    Attributes:
        id: Application id, ``tenant.application``.
        deployment_spec: The validated deployment spec.
        instances: Stored instances, by name.
        revisions: Submitted revisions, oldest first.
        retrigger_queue: Re-triggers waiting for aborted runs to end.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., pattern=r"^[a-z0-9][a-z0-9_-]*\.[a-z0-9][a-z0-9_-]*$")
    deployment_spec: DeploymentSpec
    instances: dict[str, Instance] = Field(default_factory=dict)
    revisions: tuple[ApplicationRevision, ...] = ()
    retrigger_queue: tuple[RetriggerEntry, ...] = ()

    @property
    def latest_revision(self) -> ApplicationRevision | None:
        return max(self.revisions) if self.revisions else None

    def instance(self, name: str) -> Instance:
        return self.instances.get(name) or Instance(name=name)

    def declared_instances(self) -> list[Instance]:
        """Instances declared in the deployment spec, in declaration order."""
        return [self.instance(name) for name in self.deployment_spec.instance_names()]

    def is_declared(self, instance: str) -> bool:
        return self.deployment_spec.instance(instance) is not None

    def with_instance(self, instance: Instance) -> Application:
        return self.model_copy(update={"instances": {**self.instances, instance.name: instance}})

    def with_submission(self, revision: ApplicationRevision) -> Application:
        revisions = tuple(sorted({*self.revisions, revision}))
        return self.model_copy(update={"revisions": revisions})

    def with_retrigger_queue(self, queue: tuple[RetriggerEntry, ...]) -> Application:
        return self.model_copy(update={"retrigger_queue": queue})

    def _deployments(self) -> list[Deployment]:
        return [
            deployment
            for instance in self.declared_instances()
            for deployment in instance.deployments.values()
        ]

    def oldest_deployed_platform(self) -> Version | None:
        return min((d.platform for d in self._deployments()), default=None)

    def oldest_deployed_revision(self) -> ApplicationRevision | None:
        return min((d.revision for d in self._deployments()), default=None)


__all__ = ["Application", "Deployment", "Instance", "RetriggerEntry"]
