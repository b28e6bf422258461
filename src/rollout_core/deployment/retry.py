"""Retry backoff for failing jobs.

A failing job is retried immediately once. After that it cools down for
``max(base_interval, elapsed_fraction * time spent failing)``, capped by
``max_interval``, measured from the end of the last completed run. The
cooldown only applies while the job would rerun the versions it last
failed on: a new target is tried at once.

Out-of-capacity failures in the shared test environments never cool down;
capacity there frees up as other applications' tests finish.

Example:
    >>> policy = RetryBackoffPolicy(RetryConfig())
    >>> policy.interval(timedelta(0))
    datetime.timedelta(0)
    >>> policy.interval(timedelta(hours=1))
    datetime.timedelta(seconds=1800)
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from rollout_core.schemas.config import RetryConfig

if TYPE_CHECKING:
    from rollout_core.schemas.change import Change
    from rollout_core.schemas.jobs import JobStatus


class RetryBackoffPolicy:
    """Stateless mapping from a job's failure history to its next retry time.

    Args:
        config: Backoff parameters. Defaults to RetryConfig().
    """

    def __init__(self, config: RetryConfig | None = None) -> None:
        self._config = config or RetryConfig()

    @property
    def config(self) -> RetryConfig:
        return self._config

    def interval(self, failing_for: timedelta) -> timedelta:
        """Wait before the next retry, given how long the job has been failing.

        Args:
            failing_for: Time from the end of the first failing run to the end
                of the last completed run.

        Returns:
            Zero when only one run has failed, otherwise the backoff interval.
        """
        if failing_for <= timedelta(0):
            return timedelta(0)
        wait = max(self._config.base_interval, failing_for * self._config.elapsed_fraction)
        return min(wait, self._config.max_interval)

    def retry_at(self, job: JobStatus) -> datetime | None:
        """Earliest time the job may be retried, or None if it is not failing."""
        last_completed = job.last_completed
        first_failing = job.first_failing
        if last_completed is None or first_failing is None:
            return None
        if last_completed.end is None or first_failing.end is None:
            return None
        if job.job.type.is_test and job.is_out_of_capacity:
            return last_completed.end
        return last_completed.end + self.interval(last_completed.end - first_failing.end)

    def cooling_down_until(self, job: JobStatus, change: Change, now: datetime) -> datetime | None:
        """Time until which the job may not run the given change, if in the future.

        Args:
            job: The job's status.
            change: The change the job would run.
            now: Current time.

        Returns:
            The retry time when it lies after ``now`` and the change targets the
            versions the job last failed on; otherwise None.
        """
        last_completed = job.last_completed
        if last_completed is None or job.first_failing is None:
            return None
        versions = last_completed.versions
        if change.platform is not None and change.platform != versions.target_platform:
            return None
        if change.revision is not None and change.revision != versions.target_revision:
            return None
        retry_at = self.retry_at(job)
        if retry_at is None or retry_at <= now:
            return None
        return retry_at


__all__ = ["RetryBackoffPolicy"]
