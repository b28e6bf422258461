"""Exception hierarchy for rollout-core.

All exceptions raised by the rollout engine inherit from RolloutError.
Transient failures (lock contention, an unavailable state store) derive from
TransientRolloutError so the orchestration loop can skip an application for
one cycle and retry it on the next.

Exception Hierarchy:
    RolloutError (base)
    ├── ConfigurationError           # Invalid engine configuration
    ├── InvalidDeploymentSpecError   # Deployment spec rejected at parse time
    ├── UnknownApplicationError      # Application not present in the store
    ├── UnknownInstanceError         # Instance not declared in the deployment spec
    ├── PauseTooLongError            # Pause requested beyond the allowed maximum
    ├── JobNeverTriggeredError       # Re-trigger of a job without any run
    ├── JobAlreadyRunningError       # Trigger of a job with an active run
    └── TransientRolloutError        # Retry on the next cycle
        ├── LockTimeoutError         # Application lock not acquired in time
        └── StateStoreUnavailableError

Exit Codes:
    1 - General error (RolloutError)
    3 - Unknown application or instance
    5 - Validation error (ConfigurationError, InvalidDeploymentSpecError, PauseTooLongError)
    8 - Transient error (LockTimeoutError, StateStoreUnavailableError)

Example:
    >>> from rollout_core.errors import UnknownInstanceError
    >>> raise UnknownInstanceError("tenant.app", "canary")
    Traceback (most recent call last):
        ...
    UnknownInstanceError: Instance 'canary' is not declared in the deployment spec of tenant.app
"""

from __future__ import annotations

from datetime import datetime, timedelta


class RolloutError(Exception):
    """Base exception for all rollout engine errors.

    Attributes:
        exit_code: CLI exit code for this error type (default: 1).
    """

    exit_code: int = 1


class ConfigurationError(RolloutError):
    """Raised when the engine configuration cannot be loaded or is invalid.

    Attributes:
        source: Where the configuration came from (file path or "<inline>").
        reason: Description of the problem.
    """

    exit_code: int = 5

    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"Invalid rollout configuration in {source}: {reason}")


class InvalidDeploymentSpecError(RolloutError):
    """Raised when a deployment spec is rejected at parse time.

    The engine assumes a validated spec, so every structural problem
    (duplicate zones, tests without a preceding region, blockers that would
    hold platform upgrades forever) is reported here instead of during
    evaluation.

    Attributes:
        reason: Description of the problem.
        application: The application the spec belongs to, if known.
    """

    exit_code: int = 5

    def __init__(self, reason: str, application: str | None = None) -> None:
        self.reason = reason
        self.application = application
        where = f" for {application}" if application else ""
        super().__init__(f"Invalid deployment spec{where}: {reason}")


class UnknownApplicationError(RolloutError):
    """Raised when an application is not present in the state store."""

    exit_code: int = 3

    def __init__(self, application: str) -> None:
        self.application = application
        super().__init__(f"Unknown application: {application}")


class UnknownInstanceError(RolloutError):
    """Raised when an operation names an instance missing from the deployment spec.

    Instances created outside the spec (e.g. per-user instances) are never
    rolled out automatically, and operator mutators refuse them as well.
    """

    exit_code: int = 3

    def __init__(self, application: str, instance: str) -> None:
        self.application = application
        self.instance = instance
        super().__init__(
            f"Instance '{instance}' is not declared in the deployment spec of {application}"
        )


class PauseTooLongError(RolloutError):
    """Raised when a job pause would extend beyond the configured maximum.

    Attributes:
        until: The requested end of the pause.
        max_pause: The maximum allowed pause duration.
    """

    exit_code: int = 5

    def __init__(self, until: datetime, max_pause: timedelta) -> None:
        self.until = until
        self.max_pause = max_pause
        super().__init__(
            f"Pause until {until.isoformat()} exceeds the maximum pause of {max_pause}"
        )


class JobNeverTriggeredError(RolloutError):
    """Raised when re-triggering a job that has no previous run."""

    def __init__(self, job: str) -> None:
        self.job = job
        super().__init__(f"Job {job} has never been triggered")


class JobAlreadyRunningError(RolloutError):
    """Raised when starting a job that already has an active run."""

    def __init__(self, job: str, run_number: int) -> None:
        self.job = job
        self.run_number = run_number
        super().__init__(f"Job {job} is already running (run {run_number})")


class TransientRolloutError(RolloutError):
    """Base for failures that are retried on the next maintenance cycle.

    No partial state is committed when one of these is raised.
    """

    exit_code: int = 8


class LockTimeoutError(TransientRolloutError):
    """Raised when the per-application lock is not acquired in time.

    Attributes:
        application: The application whose lock timed out.
        timeout_seconds: How long acquisition was attempted.
    """

    def __init__(self, application: str, timeout_seconds: float) -> None:
        self.application = application
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Timed out after {timeout_seconds}s acquiring lock for {application}"
        )


class StateStoreUnavailableError(TransientRolloutError):
    """Raised when the application state store cannot be read or written."""

    def __init__(self, application: str, reason: str) -> None:
        self.application = application
        self.reason = reason
        super().__init__(f"State store unavailable for {application}: {reason}")


__all__ = [
    "ConfigurationError",
    "InvalidDeploymentSpecError",
    "JobAlreadyRunningError",
    "JobNeverTriggeredError",
    "LockTimeoutError",
    "PauseTooLongError",
    "RolloutError",
    "StateStoreUnavailableError",
    "TransientRolloutError",
    "UnknownApplicationError",
    "UnknownInstanceError",
]
