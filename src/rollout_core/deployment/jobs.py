"""Job execution boundary: the executor protocol and run bookkeeping.

The engine never runs jobs itself. It asks a JobExecutor to deploy or test
a set of versions under a run id, and learns about the outcome when the
executor reports back through JobController.finish. The controller keeps
each job's run history and is the source of JobStatus snapshots.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import structlog

from rollout_core.errors import JobAlreadyRunningError, JobNeverTriggeredError
from rollout_core.schemas.jobs import FailureKind, JobId, JobStatus, Run, RunId, RunStatus

if TYPE_CHECKING:
    from datetime import datetime

    from rollout_core.schemas.jobs import Versions

logger = structlog.get_logger(__name__)


@runtime_checkable
class JobExecutor(Protocol):
    """Runs deployment and test jobs.

    Both calls return once the request is accepted. The executor reports
    terminal states later through JobController.finish.
    """

    def deploy(self, run_id: RunId, versions: Versions) -> None:
        """Start the run, deploying or testing the given versions."""
        ...

    def abort(self, run_id: RunId) -> None:
        """Stop the run as soon as possible."""
        ...


class JobController:
    """Thread-safe in-memory run history of all jobs.

    Example:
        >>> controller = JobController()
        >>> run = controller.start(job, versions, now)
        >>> controller.finish(run.id, RunStatus.SUCCESS, later)
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[JobId, JobStatus] = {}

    def job_status(self, job: JobId) -> JobStatus:
        with self._lock:
            return self._jobs.get(job) or JobStatus(job=job)

    def job_statuses(self, application: str) -> dict[JobId, JobStatus]:
        """Statuses of all jobs of an application that have runs."""
        with self._lock:
            return {job: s for job, s in self._jobs.items() if job.application == application}

    def run(self, run_id: RunId) -> Run | None:
        with self._lock:
            status = self._jobs.get(run_id.job)
        if status is None:
            return None
        return next((r for r in status.runs if r.id.number == run_id.number), None)

    def last_triggered(self, job: JobId) -> Run:
        """The job's latest run.

        Raises:
            JobNeverTriggeredError: If the job has no runs.
        """
        run = self.job_status(job).last_triggered
        if run is None:
            raise JobNeverTriggeredError(str(job))
        return run

    def record(self, run: Run) -> None:
        """Add a run to the history as is, e.g. when restoring from a snapshot."""
        with self._lock:
            status = self._jobs.get(run.id.job) or JobStatus(job=run.id.job)
            self._jobs[run.id.job] = status.with_run(run)

    def start(self, job: JobId, versions: Versions, now: datetime) -> Run:
        """Record a new run of the job.

        Raises:
            JobAlreadyRunningError: If the job's latest run has not ended.
        """
        with self._lock:
            status = self._jobs.get(job) or JobStatus(job=job)
            last = status.last_triggered
            if last is not None and not last.has_ended:
                raise JobAlreadyRunningError(str(job), last.id.number)
            number = last.id.number + 1 if last is not None else 1
            run = Run(id=RunId(job=job, number=number), versions=versions, start=now)
            self._jobs[job] = status.with_run(run)
        logger.info("run_started", run=str(run.id), versions=str(versions))
        return run

    def finish(
        self,
        run_id: RunId,
        status: RunStatus,
        end: datetime,
        failure: FailureKind | None = None,
    ) -> Run:
        """Record the terminal state of a run. Finishing an ended run is a no-op.

        Raises:
            KeyError: If the run is unknown.
        """
        if status is RunStatus.RUNNING:
            raise ValueError("A run cannot finish as running")
        with self._lock:
            job_status = self._jobs.get(run_id.job)
            run = None
            if job_status is not None:
                run = next((r for r in job_status.runs if r.id.number == run_id.number), None)
            if run is None or job_status is None:
                raise KeyError(f"Unknown run {run_id}")
            if run.has_ended:
                return run
            run = run.finished(status, end, failure if status is RunStatus.FAILED else None)
            self._jobs[run_id.job] = job_status.with_run(run)
        logger.info("run_finished", run=str(run_id), status=status.value)
        return run

    def abort(self, run_id: RunId, now: datetime) -> bool:
        """Mark a running run as aborted.

        Returns:
            True if the run was running and is now aborted.
        """
        run = self.run(run_id)
        if run is None or run.has_ended:
            return False
        self.finish(run_id, RunStatus.ABORTED, now)
        return True

    def active_runs(self, application: str | None = None) -> list[Run]:
        with self._lock:
            statuses = list(self._jobs.values())
        return [
            s.last_triggered
            for s in statuses
            if s.is_running
            and s.last_triggered is not None
            and (application is None or s.job.application == application)
        ]


__all__ = ["JobController", "JobExecutor"]
