"""Rollout decision engine: step graph, deployment status, trigger and orchestration."""

from __future__ import annotations

from rollout_core.deployment.blocking import blocked_until
from rollout_core.deployment.jobs import JobController, JobExecutor
from rollout_core.deployment.metrics import RolloutMetrics
from rollout_core.deployment.orchestrator import CycleResult, OrchestrationLoop
from rollout_core.deployment.retry import RetryBackoffPolicy
from rollout_core.deployment.status import DeploymentStatus, Join, JobToRun, RolloutState
from rollout_core.deployment.steps import StepStatus, StepType
from rollout_core.deployment.store import ApplicationStore, InMemoryApplicationStore
from rollout_core.deployment.trigger import (
    Actions,
    CancelScope,
    DeploymentTrigger,
    JobAbort,
    JobTrigger,
)
from rollout_core.deployment.upgrader import Upgrader

__all__ = [
    "Actions",
    "ApplicationStore",
    "CancelScope",
    "CycleResult",
    "DeploymentStatus",
    "DeploymentTrigger",
    "InMemoryApplicationStore",
    "Join",
    "JobAbort",
    "JobController",
    "JobExecutor",
    "JobToRun",
    "JobTrigger",
    "OrchestrationLoop",
    "RetryBackoffPolicy",
    "RolloutMetrics",
    "RolloutState",
    "StepStatus",
    "StepType",
    "Upgrader",
    "blocked_until",
]
