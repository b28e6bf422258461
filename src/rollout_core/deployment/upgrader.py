"""Platform upgrades: choosing and maintaining each instance's platform target.

Each instance's upgrade policy sets how much confidence a platform release
needs before the instance moves to it:

    canary        low confidence, or the system version itself
    default       normal confidence
    conservative  high confidence

Targets never exceed the system version. A platform change is replaced by a
newer eligible target, and dropped when its version is marked broken.
Pinned changes are left alone, and a platform an operator cancelled is only
superseded by a newer one.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from rollout_core.schemas.change import Change
from rollout_core.schemas.deployment_spec import UpgradePolicy
from rollout_core.schemas.version_status import Confidence

if TYPE_CHECKING:
    from rollout_core.deployment.status import DeploymentStatus
    from rollout_core.schemas.application import Application
    from rollout_core.schemas.versions import Version
    from rollout_core.schemas.version_status import VersionStatus

logger = structlog.get_logger(__name__)

_REQUIRED_CONFIDENCE = {
    UpgradePolicy.CANARY: Confidence.LOW,
    UpgradePolicy.DEFAULT: Confidence.NORMAL,
    UpgradePolicy.CONSERVATIVE: Confidence.HIGH,
}


def target_platform(version_status: VersionStatus, policy: UpgradePolicy) -> Version | None:
    """Newest platform release the policy accepts, if any.

    Args:
        version_status: Platform releases and their confidence.
        policy: The instance's upgrade policy.

    Returns:
        The newest non-broken release at or below the system version with
        enough confidence for the policy.
    """
    system = version_status.system_version
    required = _REQUIRED_CONFIDENCE[policy]
    candidates = [
        release.version
        for release in version_status.releases
        if release.version <= system
        and release.confidence is not Confidence.BROKEN
        and release.confidence.rank >= required.rank
    ]
    if policy is UpgradePolicy.CANARY and not version_status.is_broken(system):
        candidates.append(system)
    return max(candidates, default=None)


class Upgrader:
    """Keeps instance platform changes in line with the version status."""

    def maintain(self, status: DeploymentStatus) -> Application:
        """Cancel broken platform targets and start eligible upgrades.

        Args:
            status: Current deployment status of the application.

        Returns:
            The application with updated instance changes.
        """
        application = status.application
        instance_steps = status.instance_steps()
        for spec in application.deployment_spec.instances():
            instance = application.instance(spec.name)
            change = instance.change
            if change.pinned:
                continue
            log = logger.bind(application=application.id, instance=spec.name)

            if change.platform is not None and status.version_status.is_broken(change.platform):
                log.warning(
                    "platform_upgrade_cancelled", platform=str(change.platform), reason="broken"
                )
                change = change.without_platform()

            deployed = [d.platform for d in instance.deployments.values()]
            target = target_platform(status.version_status, spec.upgrade_policy)
            if (
                target is not None
                and deployed
                and target > min(deployed)
                and (change.platform is None or change.platform < target)
                and instance.accepts_platform(target)
            ):
                ready_at = instance_steps[spec.name].ready_at(Change.of(target))
                if ready_at is not None and ready_at <= status.now:
                    log.info("platform_upgrade_started", platform=str(target))
                    change = change.with_platform(target)

            if change != instance.change:
                application = application.with_instance(instance.with_change(change))
        return application


__all__ = ["Upgrader", "target_platform"]
