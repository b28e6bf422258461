"""Immutable data models for rollout state, specs and configuration."""

from __future__ import annotations

from rollout_core.schemas.application import Application, Deployment, Instance, RetriggerEntry
from rollout_core.schemas.change import Change
from rollout_core.schemas.config import RetryConfig, RolloutConfig
from rollout_core.schemas.deployment_spec import (
    ChangeBlocker,
    DelayStep,
    DeploymentSpec,
    InstanceSpec,
    ParallelStep,
    ProductionTestStep,
    RegionStep,
    RevisionPolicy,
    RolloutPolicy,
    SequentialStep,
    StagingTestStep,
    SystemTestStep,
    UpgradePolicy,
)
from rollout_core.schemas.jobs import (
    FailureKind,
    JobId,
    JobKind,
    JobStatus,
    JobType,
    Run,
    RunId,
    RunStatus,
    Versions,
)
from rollout_core.schemas.snapshot import RolloutSnapshot
from rollout_core.schemas.version_status import Confidence, PlatformRelease, VersionStatus
from rollout_core.schemas.versions import ApplicationRevision, RevisionSource, Version

__all__ = [
    "Application",
    "ApplicationRevision",
    "Change",
    "ChangeBlocker",
    "Confidence",
    "DelayStep",
    "Deployment",
    "DeploymentSpec",
    "FailureKind",
    "Instance",
    "InstanceSpec",
    "JobId",
    "JobKind",
    "JobStatus",
    "JobType",
    "ParallelStep",
    "PlatformRelease",
    "ProductionTestStep",
    "RegionStep",
    "RetriggerEntry",
    "RetryConfig",
    "RevisionPolicy",
    "RevisionSource",
    "RolloutConfig",
    "RolloutPolicy",
    "RolloutSnapshot",
    "Run",
    "RunId",
    "RunStatus",
    "SequentialStep",
    "StagingTestStep",
    "SystemTestStep",
    "UpgradePolicy",
    "Version",
    "VersionStatus",
    "Versions",
]
