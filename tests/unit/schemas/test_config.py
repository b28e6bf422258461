"""Unit tests for engine configuration, version status and state snapshots."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from pydantic import ValidationError

from rollout_core.errors import ConfigurationError
from rollout_core.schemas.application import Application, Instance
from rollout_core.schemas.config import RetryConfig, RolloutConfig
from rollout_core.schemas.deployment_spec import DeploymentSpec
from rollout_core.schemas.jobs import JobType
from rollout_core.schemas.snapshot import RolloutSnapshot
from rollout_core.schemas.version_status import Confidence, VersionStatus
from rollout_core.schemas.versions import ApplicationRevision, Version

SNAPSHOT = """
now: 2024-05-06T10:00:00Z
version_status:
  system_version: "7.2"
  releases:
    - {version: "7.2", confidence: normal}
application:
  id: tenant.app
  revisions: [1, 2]
  deployment_spec:
    instances:
      - name: default
        steps:
          - region: us-west-1
  instances:
    default:
      name: default
      change: {revision: 2}
runs:
  - id: {job: {application: tenant.app, instance: default, type: system-test}, number: 1}
    versions: {target_platform: "7.2", target_revision: 2}
    status: success
    start: 2024-05-06T09:00:00Z
    end: 2024-05-06T09:20:00Z
"""

NOON = datetime(2024, 5, 6, 12, 0, tzinfo=timezone.utc)


class TestRolloutConfig:
    """Tests for RolloutConfig loading."""

    def test_defaults(self) -> None:
        """Test the documented defaults."""
        config = RolloutConfig()

        assert config.retry.base_interval == timedelta(minutes=10)
        assert config.retry.max_interval == timedelta(days=1)
        assert config.retry.elapsed_fraction == 0.5
        assert config.max_pause == timedelta(days=3)
        assert config.block_lookahead == timedelta(days=7)
        assert config.max_workers == 8

    def test_from_yaml(self, tmp_path: Path) -> None:
        """Test overriding nested settings from YAML."""
        path = tmp_path / "rollout.yaml"
        path.write_text("retry:\n  base_interval_seconds: 60\nmax_workers: 2\n")

        config = RolloutConfig.from_yaml(path)

        assert config.retry.base_interval == timedelta(minutes=1)
        assert config.retry.max_interval_seconds == 86400
        assert config.max_workers == 2

    def test_empty_file_gives_defaults(self, tmp_path: Path) -> None:
        """Test an empty file is a valid, default configuration."""
        path = tmp_path / "rollout.yaml"
        path.write_text("")

        assert RolloutConfig.from_yaml(path) == RolloutConfig()

    @pytest.mark.parametrize(
        "text",
        ["max_workers: 0\n", "unknown: 1\n", "- a\n", "retry: [\n"],
    )
    def test_invalid_files(self, tmp_path: Path, text: str) -> None:
        """Test invalid content is reported as a ConfigurationError."""
        path = tmp_path / "rollout.yaml"
        path.write_text(text)

        with pytest.raises(ConfigurationError) as exc_info:
            RolloutConfig.from_yaml(path)

        assert exc_info.value.source == str(path)
        assert exc_info.value.exit_code == 5

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test an unreadable file is a ConfigurationError."""
        with pytest.raises(ConfigurationError):
            RolloutConfig.from_yaml(tmp_path / "missing.yaml")

    def test_retry_bounds(self) -> None:
        """Test the maximum interval may not be below the base interval."""
        with pytest.raises(ValidationError, match="max_interval_seconds"):
            RetryConfig(base_interval_seconds=600, max_interval_seconds=60)


class TestVersionStatus:
    """Tests for VersionStatus."""

    def test_confidence_lookup(self) -> None:
        """Test confidence of listed and unlisted versions."""
        status = VersionStatus(
            system_version="7.2",
            releases=[
                {"version": "7.1", "confidence": "high"},
                {"version": "7.2", "confidence": "broken"},
            ],
        )

        assert status.confidence(Version.parse("7.1")) is Confidence.HIGH
        assert status.is_broken(Version.parse("7.2"))
        assert status.confidence(Version.parse("7.0")) is None

    def test_duplicate_versions_rejected(self) -> None:
        """Test a version may only be listed once."""
        with pytest.raises(ValidationError, match="only be listed once"):
            VersionStatus(
                system_version="7.2",
                releases=[
                    {"version": "7.2", "confidence": "low"},
                    {"version": "7.2.0", "confidence": "high"},
                ],
            )

    def test_confidence_rank(self) -> None:
        """Test confidence levels are ordered from broken to high."""
        ranks = [c.rank for c in (Confidence.BROKEN, Confidence.LOW, Confidence.NORMAL)]

        assert ranks == sorted(ranks)
        assert Confidence.HIGH.rank == 3


class TestApplication:
    """Tests for Application state helpers."""

    @pytest.fixture
    def application(self) -> Application:
        spec = DeploymentSpec.model_validate(
            {"instances": [{"name": "default", "steps": [{"region": "us-west-1"}]}]}
        )
        return Application(id="tenant.app", deployment_spec=spec)

    def test_declared_instance_materialized(self, application: Application) -> None:
        """Test declared instances exist even before they are stored."""
        assert application.instance("default").change.is_empty
        assert [i.name for i in application.declared_instances()] == ["default"]
        assert application.is_declared("default")
        assert not application.is_declared("other")

    def test_submissions_are_sorted_and_unique(self, application: Application) -> None:
        """Test revisions stay ordered without duplicates."""
        updated = (
            application.with_submission(ApplicationRevision.of(3))
            .with_submission(ApplicationRevision.of(1))
            .with_submission(ApplicationRevision.of(3))
        )

        assert updated.revisions == (ApplicationRevision.of(1), ApplicationRevision.of(3))
        assert updated.latest_revision == ApplicationRevision.of(3)
        assert application.latest_revision is None

    def test_job_pause(self) -> None:
        """Test setting and clearing a job pause."""
        instance = Instance(name="default")
        job_type = JobType.production("us-west-1")

        paused = instance.with_job_pause(job_type, NOON)

        assert paused.paused_until(job_type) == NOON
        assert paused.with_job_pause(job_type, None).job_pauses == {}

    def test_invalid_id_rejected(self, application: Application) -> None:
        """Test application ids must be tenant.application."""
        with pytest.raises(ValidationError):
            Application(id="no-dot", deployment_spec=application.deployment_spec)


class TestRolloutSnapshot:
    """Tests for RolloutSnapshot loading and validation."""

    def test_from_yaml(self, tmp_path: Path) -> None:
        """Test a complete snapshot loads."""
        path = tmp_path / "snapshot.yaml"
        path.write_text(SNAPSHOT)

        snapshot = RolloutSnapshot.from_yaml(path)

        assert snapshot.application.instance("default").change.revision == ApplicationRevision.of(2)
        assert snapshot.runs[0].id.job.type == JobType.system_test()
        assert snapshot.version_status.system_version == Version.parse("7.2")
        assert snapshot.now is not None

    def test_runs_of_other_applications_rejected(self, tmp_path: Path) -> None:
        """Test every run must belong to the snapshot's application."""
        path = tmp_path / "snapshot.yaml"
        path.write_text(SNAPSHOT.replace("{application: tenant.app,", "{application: other.app,"))

        with pytest.raises(ConfigurationError, match="other applications"):
            RolloutSnapshot.from_yaml(path)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test unparsable files are a ConfigurationError."""
        path = tmp_path / "snapshot.yaml"
        path.write_text("application: [")

        with pytest.raises(ConfigurationError):
            RolloutSnapshot.from_yaml(path)
