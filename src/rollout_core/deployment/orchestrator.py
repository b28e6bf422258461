"""Orchestration loop: evaluate every application, then apply the actions.

Applications are evaluated in parallel on a thread pool, each under its own
lock. A transient failure (lock timeout, unavailable store) skips that
application until the next cycle; an unexpected error is logged and only
affects the application that raised it.

Production jobs are all triggered. The shared system and staging test
environments have limited capacity, so at most one job of each test type
starts per cycle, preferring retries after out-of-capacity failures, then
revision upgrades, then the job that has been ready longest.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from rollout_core.deployment.metrics import RolloutMetrics
from rollout_core.deployment.trigger import Actions, JobTrigger
from rollout_core.errors import TransientRolloutError
from rollout_core.telemetry.tracing import create_span

if TYPE_CHECKING:
    from rollout_core.deployment.store import ApplicationStore
    from rollout_core.deployment.trigger import DeploymentTrigger
    from rollout_core.schemas.jobs import JobType, Run

logger = structlog.get_logger(__name__)


@dataclass
class CycleResult:
    """Outcome of one orchestration cycle.

    Attributes:
        evaluated: Applications evaluated successfully.
        skipped: Applications skipped, with the reason.
        started: Runs started.
    """

    evaluated: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    started: list[Run] = field(default_factory=list)


def _test_priority(trigger: JobTrigger) -> tuple[bool, bool, datetime]:
    return (not trigger.is_retry, not trigger.is_revision_upgrade, trigger.ready_at)


def select_test_triggers(actions: list[Actions]) -> list[Actions]:
    """Keep every production trigger, and one trigger per test job type.

    Args:
        actions: Evaluated actions of all applications.

    Returns:
        The same actions, with test triggers limited to the best candidate of
        each test type across all applications.
    """
    best: dict[JobType, JobTrigger] = {}
    for trigger in sorted(
        (t for a in actions for t in a.to_trigger if t.job.type.is_test), key=_test_priority
    ):
        best.setdefault(trigger.job.type, trigger)
    chosen = set(map(id, best.values()))
    return [
        Actions(
            a.application,
            tuple(t for t in a.to_trigger if not t.job.type.is_test or id(t) in chosen),
            a.to_abort,
        )
        for a in actions
    ]


class OrchestrationLoop:
    """Runs evaluation cycles over all applications in a store.

    Args:
        store: The applications to evaluate.
        trigger: The decision engine.
        max_workers: Applications evaluated concurrently; defaults to the
            trigger's configuration.

    Example:
        >>> loop = OrchestrationLoop(store, trigger)
        >>> result = loop.run_once()
        >>> stop = threading.Event()
        >>> loop.run_forever(stop)  # until stop.set()
    """

    def __init__(
        self,
        store: ApplicationStore,
        trigger: DeploymentTrigger,
        max_workers: int | None = None,
    ) -> None:
        self._store = store
        self._trigger = trigger
        self._max_workers = max_workers or trigger.config.max_workers
        self._metrics = trigger.metrics

    def run_once(self) -> CycleResult:
        """Evaluate every application once and apply the selected actions."""
        result = CycleResult()
        application_ids = self._store.ids()
        with create_span(
            RolloutMetrics.SPAN_CYCLE, {"rollout.applications": len(application_ids)}
        ):
            evaluated: list[Actions] = []
            with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
                futures = {
                    pool.submit(self._trigger.evaluate, application_id): application_id
                    for application_id in application_ids
                }
                for future in as_completed(futures):
                    application_id = futures[future]
                    try:
                        evaluated.append(future.result())
                    except TransientRolloutError as e:
                        logger.warning(
                            "application_skipped", application=application_id, reason=str(e)
                        )
                        self._metrics.record_skip("transient")
                        result.skipped[application_id] = str(e)
                    except Exception as e:
                        logger.exception("evaluation_failed", application=application_id)
                        self._metrics.record_skip("error")
                        result.skipped[application_id] = str(e)

            evaluated.sort(key=lambda a: application_ids.index(a.application))
            for actions in select_test_triggers(evaluated):
                try:
                    result.started.extend(self._trigger.apply(actions))
                except TransientRolloutError as e:
                    logger.warning(
                        "application_skipped", application=actions.application, reason=str(e)
                    )
                    self._metrics.record_skip("transient")
                    result.skipped[actions.application] = str(e)
                    continue
                except Exception as e:
                    logger.exception("apply_failed", application=actions.application)
                    self._metrics.record_skip("error")
                    result.skipped[actions.application] = str(e)
                    continue
                result.evaluated.append(actions.application)

        logger.info(
            "cycle_completed",
            evaluated=len(result.evaluated),
            skipped=len(result.skipped),
            started=len(result.started),
        )
        return result

    def request(self, application_id: str) -> list[Run]:
        """Evaluate one application now, e.g. after a submission, and apply the actions."""
        return self._trigger.apply(self._trigger.evaluate(application_id))

    def run_forever(self, stop: threading.Event) -> None:
        """Run a cycle every maintenance interval until the event is set."""
        interval = self._trigger.config.maintenance_interval_seconds
        logger.info("orchestration_started", interval_seconds=interval)
        while not stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("cycle_failed")
            stop.wait(interval)
        logger.info("orchestration_stopped")


__all__ = ["CycleResult", "OrchestrationLoop", "select_test_triggers"]
