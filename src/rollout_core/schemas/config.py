"""Configuration for the rollout engine.

Loaded from YAML, with every field optional:

    retry:
      base_interval_seconds: 600
      elapsed_fraction: 0.5
      max_interval_seconds: 86400
    lock_timeout_seconds: 10
    max_pause_seconds: 259200
    maintenance_interval_seconds: 60
    max_workers: 8

Example:
    >>> config = RolloutConfig.from_yaml(Path("rollout.yaml"))
    >>> config.retry.base_interval
    datetime.timedelta(seconds=600)
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from rollout_core.errors import ConfigurationError


class RetryConfig(BaseModel):
    """Backoff for retrying failed jobs.

    After the immediate first retry, a failing job waits
    ``max(base_interval, elapsed_fraction * time failing)``, capped by
    ``max_interval``, before it is retried again.

    Attributes:
        base_interval_seconds: Minimum wait between retries after the first.
        elapsed_fraction: Fraction of the time spent failing to wait.
        max_interval_seconds: Upper bound on the wait.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    base_interval_seconds: int = Field(
        default=600,
        ge=0,
        description="Minimum wait between consecutive retries",
    )
    elapsed_fraction: float = Field(
        default=0.5,
        ge=0.0,
        le=10.0,
        description="Fraction of the time since the first failure to wait",
    )
    max_interval_seconds: int = Field(
        default=86400,
        ge=0,
        description="Upper bound on the wait between retries",
    )

    @model_validator(mode="after")
    def validate_bounds(self) -> RetryConfig:
        if self.max_interval_seconds < self.base_interval_seconds:
            raise ValueError("max_interval_seconds must be at least base_interval_seconds")
        return self

    @property
    def base_interval(self) -> timedelta:
        return timedelta(seconds=self.base_interval_seconds)

    @property
    def max_interval(self) -> timedelta:
        return timedelta(seconds=self.max_interval_seconds)


class RolloutConfig(BaseModel):
    """Top-level rollout engine configuration.

    Attributes:
        retry: Retry backoff for failing jobs.
        lock_timeout_seconds: How long to wait for an application lock.
        max_pause_seconds: Longest allowed job pause.
        maintenance_interval_seconds: Time between orchestration cycles.
        max_workers: Applications evaluated in parallel per cycle.
        block_lookahead_days: How far ahead to search for the end of a block window.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    retry: RetryConfig = Field(default_factory=RetryConfig)
    lock_timeout_seconds: float = Field(default=10.0, gt=0)
    max_pause_seconds: int = Field(default=3 * 24 * 3600, gt=0)
    maintenance_interval_seconds: float = Field(default=60.0, gt=0)
    max_workers: int = Field(default=8, ge=1, le=256)
    block_lookahead_days: int = Field(default=7, ge=1, le=60)

    @property
    def max_pause(self) -> timedelta:
        return timedelta(seconds=self.max_pause_seconds)

    @property
    def block_lookahead(self) -> timedelta:
        return timedelta(days=self.block_lookahead_days)

    @classmethod
    def from_yaml(cls, path: Path) -> RolloutConfig:
        """Load configuration from a YAML file.

        Args:
            path: Path to the YAML file. An empty file yields the defaults.

        Returns:
            The validated configuration.

        Raises:
            ConfigurationError: If the file cannot be read or is invalid.
        """
        try:
            data = yaml.safe_load(path.read_text())
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(str(path), str(e)) from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(str(path), "expected a mapping at the top level")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(str(path), str(e)) from e


__all__ = ["RetryConfig", "RolloutConfig"]
