"""Point-in-time snapshot of one application's rollout state.

A snapshot carries everything a single evaluation needs: the application
with its spec, instances and submitted revisions, the run history of its
jobs, and the platform version status. ``rollout plan`` reads one from
YAML to show what the engine would do.

Example YAML:

    now: 2024-05-02T10:00:00Z
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
        start: 2024-05-02T09:00:00Z
        end: 2024-05-02T09:20:00Z
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from rollout_core.errors import ConfigurationError
from rollout_core.schemas.application import Application
from rollout_core.schemas.jobs import Run
from rollout_core.schemas.version_status import VersionStatus


class RolloutSnapshot(BaseModel):
    """State of one application at one instant.

    Attributes:
        application: The application.
        runs: Run history of the application's jobs.
        version_status: Platform releases and their confidence.
        now: The instant of the snapshot, if recorded.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    application: Application
    runs: tuple[Run, ...] = Field(default=())
    version_status: VersionStatus
    now: datetime | None = None

    @model_validator(mode="after")
    def validate_runs(self) -> RolloutSnapshot:
        foreign = sorted(
            {str(r.id) for r in self.runs if r.id.job.application != self.application.id}
        )
        if foreign:
            raise ValueError(f"runs of other applications: {foreign}")
        keys = [(r.id.job, r.id.number) for r in self.runs]
        if len(set(keys)) != len(keys):
            raise ValueError("run ids must be unique")
        return self

    @classmethod
    def from_yaml(cls, path: Path) -> RolloutSnapshot:
        """Load a snapshot from a YAML file.

        Raises:
            ConfigurationError: If the file cannot be read or is invalid.
        """
        try:
            data = yaml.safe_load(path.read_text())
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(str(path), str(e)) from e
        if not isinstance(data, dict):
            raise ConfigurationError(str(path), "expected a mapping at the top level")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(str(path), str(e)) from e


__all__ = ["RolloutSnapshot"]
