"""rollout-core: continuous deployment rollout decisions.

Decides, for each application, which deployment and test jobs to start
and which running jobs to abort, so platform upgrades and new application
revisions roll out through each instance's declared steps in order,
never downgrading a zone, and respecting block windows, pauses and
retry backoff.

Example:
    >>> from rollout_core import DeploymentTrigger, InMemoryApplicationStore, JobController
    >>> trigger = DeploymentTrigger(store, JobController(), executor, lambda: version_status)
    >>> trigger.apply(trigger.evaluate("tenant.app"))
"""

from __future__ import annotations

from rollout_core.deployment import (
    Actions,
    CancelScope,
    DeploymentStatus,
    DeploymentTrigger,
    InMemoryApplicationStore,
    JobController,
    JobExecutor,
    OrchestrationLoop,
    RolloutState,
)
from rollout_core.errors import RolloutError

__version__ = "0.1.0"

__all__ = [
    "Actions",
    "CancelScope",
    "DeploymentStatus",
    "DeploymentTrigger",
    "InMemoryApplicationStore",
    "JobController",
    "JobExecutor",
    "OrchestrationLoop",
    "RolloutError",
    "RolloutState",
    "__version__",
]
