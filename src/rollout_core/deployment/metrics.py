"""OpenTelemetry metrics for the rollout engine.

Metrics Emitted:
    Counters:
        - rollout_jobs_triggered_total: Runs started, by job type and reason
        - rollout_jobs_aborted_total: Runs aborted, by job type and reason
        - rollout_downgrades_refused_total: Triggers refused because they would downgrade
        - rollout_evaluations_skipped_total: Application evaluations skipped, by reason

    Histograms:
        - rollout_evaluation_duration_seconds: Time to evaluate one application

Trace Spans:
    - rollout.evaluate: Evaluation of one application
    - rollout.apply: Dispatch of evaluated actions
    - rollout.cycle: One orchestration cycle over all applications
    - rollout.operator: An operator command

Example:
    >>> metrics = RolloutMetrics()
    >>> metrics.record_trigger("production-us-east-1", reason="automatic")
    >>> with metrics.evaluation_timer("tenant.app"):
    ...     actions = trigger.evaluate("tenant.app")
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog
from opentelemetry import metrics

if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.metrics import Counter, Histogram

logger = structlog.get_logger(__name__)


class RolloutMetrics:
    """OpenTelemetry metrics collector for rollout decisions.

    All metrics are prefixed with ``rollout_``. Instruments are created on
    first use.

    Label Conventions:
        - job_type: Job name, e.g. system-test, production-us-east-1
        - reason: automatic, forced, retrigger, outdated, broken_platform, ...
    """

    JOBS_TRIGGERED_TOTAL = "rollout_jobs_triggered_total"
    JOBS_ABORTED_TOTAL = "rollout_jobs_aborted_total"
    DOWNGRADES_REFUSED_TOTAL = "rollout_downgrades_refused_total"
    EVALUATIONS_SKIPPED_TOTAL = "rollout_evaluations_skipped_total"
    EVALUATION_DURATION_SECONDS = "rollout_evaluation_duration_seconds"

    SPAN_EVALUATE = "rollout.evaluate"
    SPAN_APPLY = "rollout.apply"
    SPAN_CYCLE = "rollout.cycle"
    SPAN_OPERATOR = "rollout.operator"

    def __init__(self, meter_name: str = "rollout_core", meter_version: str = "1.0.0") -> None:
        self._meter = metrics.get_meter(meter_name, meter_version)
        self._triggered_counter: Counter | None = None
        self._aborted_counter: Counter | None = None
        self._refused_counter: Counter | None = None
        self._skipped_counter: Counter | None = None
        self._duration_histogram: Histogram | None = None

    @property
    def triggered_counter(self) -> Counter:
        if self._triggered_counter is None:
            self._triggered_counter = self._meter.create_counter(
                self.JOBS_TRIGGERED_TOTAL,
                unit="1",
                description="Runs started by the rollout engine",
            )
        return self._triggered_counter

    @property
    def aborted_counter(self) -> Counter:
        if self._aborted_counter is None:
            self._aborted_counter = self._meter.create_counter(
                self.JOBS_ABORTED_TOTAL,
                unit="1",
                description="Runs aborted by the rollout engine",
            )
        return self._aborted_counter

    @property
    def refused_counter(self) -> Counter:
        if self._refused_counter is None:
            self._refused_counter = self._meter.create_counter(
                self.DOWNGRADES_REFUSED_TOTAL,
                unit="1",
                description="Production triggers refused because they would downgrade a zone",
            )
        return self._refused_counter

    @property
    def skipped_counter(self) -> Counter:
        if self._skipped_counter is None:
            self._skipped_counter = self._meter.create_counter(
                self.EVALUATIONS_SKIPPED_TOTAL,
                unit="1",
                description="Application evaluations skipped in a cycle",
            )
        return self._skipped_counter

    @property
    def duration_histogram(self) -> Histogram:
        if self._duration_histogram is None:
            self._duration_histogram = self._meter.create_histogram(
                self.EVALUATION_DURATION_SECONDS,
                unit="s",
                description="Duration of application evaluations in seconds",
            )
        return self._duration_histogram

    def record_trigger(self, job_type: str, *, reason: str) -> None:
        self.triggered_counter.add(1, attributes={"job_type": job_type, "reason": reason})

    def record_abort(self, job_type: str, *, reason: str) -> None:
        self.aborted_counter.add(1, attributes={"job_type": job_type, "reason": reason})

    def record_refused_downgrade(self, job_type: str) -> None:
        self.refused_counter.add(1, attributes={"job_type": job_type})

    def record_skip(self, reason: str) -> None:
        self.skipped_counter.add(1, attributes={"reason": reason})
        logger.debug("evaluation_skip_recorded", reason=reason)

    @contextmanager
    def evaluation_timer(self, application: str) -> Generator[None, None, None]:
        """Record the duration of the enclosed evaluation, whether or not it fails."""
        start = time.monotonic()
        status = "success"
        try:
            yield
        except Exception:
            status = "failure"
            raise
        finally:
            attributes: dict[str, Any] = {"application": application, "status": status}
            self.duration_histogram.record(time.monotonic() - start, attributes=attributes)


__all__ = ["RolloutMetrics"]
