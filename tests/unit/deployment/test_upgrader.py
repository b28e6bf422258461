"""Unit tests for platform upgrade target selection and maintenance."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import pytest

from rollout_core.deployment.status import DeploymentStatus
from rollout_core.deployment.upgrader import Upgrader, target_platform
from rollout_core.schemas.application import Application, Deployment, Instance
from rollout_core.schemas.change import Change
from rollout_core.schemas.deployment_spec import DeploymentSpec, UpgradePolicy
from rollout_core.schemas.version_status import Confidence, VersionStatus
from rollout_core.schemas.versions import ApplicationRevision, Version

T0 = datetime(2024, 5, 6, 10, 0, tzinfo=timezone.utc)


def _application(change: Change | None = None, policy: str = "default") -> Application:
    spec = DeploymentSpec.model_validate(
        {
            "instances": [
                {"name": "default", "upgrade_policy": policy, "steps": [{"region": "a"}]}
            ]
        }
    )
    deployment = Deployment(
        zone="a",
        platform=Version.parse("7.0"),
        revision=ApplicationRevision.of(1),
        at=T0 - timedelta(days=1),
    )
    instance = Instance(
        name="default", change=change or Change.empty(), deployments={"a": deployment}
    )
    return Application(
        id="tenant.app",
        deployment_spec=spec,
        instances={"default": instance},
        revisions=(ApplicationRevision.of(1),),
    )


class TestTargetPlatform:
    """Tests for target_platform."""

    @pytest.fixture
    def releases(self, make_version_status: Callable[..., VersionStatus]) -> VersionStatus:
        return make_version_status(
            "7.2",
            v7_0=Confidence.HIGH,
            v7_1=Confidence.NORMAL,
            v7_2=Confidence.LOW,
            v7_3=Confidence.HIGH,
        )

    @pytest.mark.parametrize(
        ("policy", "expected"),
        [
            (UpgradePolicy.CANARY, "7.2"),
            (UpgradePolicy.DEFAULT, "7.1"),
            (UpgradePolicy.CONSERVATIVE, "7.0"),
        ],
    )
    def test_policy_confidence(
        self, releases: VersionStatus, policy: UpgradePolicy, expected: str
    ) -> None:
        """Test each policy takes the newest release with enough confidence."""
        assert target_platform(releases, policy) == Version.parse(expected)

    def test_never_above_system_version(self, releases: VersionStatus) -> None:
        """Test releases newer than the system version are ignored."""
        assert target_platform(releases, UpgradePolicy.CONSERVATIVE) != Version.parse("7.3")

    def test_broken_excluded(self, make_version_status: Callable[..., VersionStatus]) -> None:
        """Test broken versions are never targeted, not even by canaries."""
        status = make_version_status("7.2", v7_1=Confidence.NORMAL, v7_2=Confidence.BROKEN)

        assert target_platform(status, UpgradePolicy.CANARY) == Version.parse("7.1")

    def test_canary_takes_unlisted_system_version(
        self, make_version_status: Callable[..., VersionStatus]
    ) -> None:
        """Test canaries follow the system version before it has a confidence."""
        status = make_version_status("7.3", v7_1=Confidence.NORMAL)

        assert target_platform(status, UpgradePolicy.CANARY) == Version.parse("7.3")
        assert target_platform(status, UpgradePolicy.DEFAULT) == Version.parse("7.1")

    def test_nothing_eligible(self, make_version_status: Callable[..., VersionStatus]) -> None:
        """Test no target when nothing has enough confidence."""
        status = make_version_status("7.2", v7_2=Confidence.LOW)

        assert target_platform(status, UpgradePolicy.CONSERVATIVE) is None


class TestUpgrader:
    """Tests for Upgrader.maintain."""

    def _maintain(self, application: Application, version_status: VersionStatus) -> Change:
        status = DeploymentStatus(application, {}, version_status, T0)
        return Upgrader().maintain(status).instance("default").change

    def test_starts_upgrade(self, make_version_status: Callable[..., VersionStatus]) -> None:
        """Test an instance behind the target gets a platform change."""
        status = make_version_status("7.1", v7_1=Confidence.NORMAL)

        assert self._maintain(_application(), status) == Change.of(Version.parse("7.1"))

    def test_keeps_revision(self, make_version_status: Callable[..., VersionStatus]) -> None:
        """Test the platform is added next to an existing revision change."""
        status = make_version_status("7.1", v7_1=Confidence.NORMAL)
        change = Change.of(ApplicationRevision.of(2))

        result = self._maintain(_application(change), status)

        assert result.platform == Version.parse("7.1")
        assert result.revision == ApplicationRevision.of(2)

    def test_replaces_older_target(
        self, make_version_status: Callable[..., VersionStatus]
    ) -> None:
        """Test a newer eligible version replaces the current platform target."""
        status = make_version_status("7.2", v7_1=Confidence.NORMAL, v7_2=Confidence.NORMAL)

        result = self._maintain(_application(Change.of(Version.parse("7.1"))), status)

        assert result.platform == Version.parse("7.2")

    def test_cancels_broken_target(
        self, make_version_status: Callable[..., VersionStatus]
    ) -> None:
        """Test a broken target is replaced by the best remaining version."""
        status = make_version_status(
            "7.2", v7_0=Confidence.HIGH, v7_1=Confidence.NORMAL, v7_2=Confidence.BROKEN
        )

        result = self._maintain(_application(Change.of(Version.parse("7.2"))), status)

        assert result.platform == Version.parse("7.1")

    def test_cancels_broken_target_without_replacement(
        self, make_version_status: Callable[..., VersionStatus]
    ) -> None:
        """Test a broken target is dropped when nothing newer is eligible."""
        status = make_version_status("7.1", v7_0=Confidence.HIGH, v7_1=Confidence.BROKEN)

        result = self._maintain(_application(Change.of(Version.parse("7.1"))), status)

        assert result.platform is None

    def test_pinned_change_untouched(
        self, make_version_status: Callable[..., VersionStatus]
    ) -> None:
        """Test pinned changes are never replaced or cancelled."""
        status = make_version_status("7.2", v7_2=Confidence.BROKEN, v7_1=Confidence.HIGH)
        pinned = Change.of(Version.parse("7.2")).with_pin()

        assert self._maintain(_application(pinned), status) == pinned

    def test_conservative_waits_for_high_confidence(
        self, make_version_status: Callable[..., VersionStatus]
    ) -> None:
        """Test a conservative instance ignores normal confidence versions."""
        status = make_version_status("7.1", v7_1=Confidence.NORMAL)

        assert self._maintain(_application(policy="conservative"), status).is_empty

    def test_undeployed_instance_not_upgraded(
        self, make_version_status: Callable[..., VersionStatus]
    ) -> None:
        """Test instances without deployments get no platform change."""
        status = make_version_status("7.1", v7_1=Confidence.NORMAL)
        application = _application()
        application = application.with_instance(Instance(name="default"))

        assert self._maintain(application, status).is_empty
