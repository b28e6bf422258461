"""Platform version confidence, refreshed out-of-band.

The rollout engine treats a VersionStatus as a read-only snapshot: it
reads the recommended system version and the confidence of each known
platform version, and never modifies either.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from rollout_core.schemas.versions import Version


class Confidence(str, Enum):
    """Confidence in a platform version, from worst to best.

    Attributes:
        BROKEN: Known bad; never upgrade to it, cancel upgrades targeting it.
        LOW: Rolling out to canaries only.
        NORMAL: Safe for default upgrade policies.
        HIGH: Safe for conservative upgrade policies.
    """

    BROKEN = "broken"
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return list(Confidence).index(self)


class PlatformRelease(BaseModel):
    """A released platform version and the confidence in it."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: Version
    confidence: Confidence


class VersionStatus(BaseModel):
    """System-wide platform version information.

    Attributes:
        system_version: The currently recommended platform version.
        releases: Known released versions with their confidence.

    Examples:
        >>> status = VersionStatus(
        ...     system_version="7.2",
        ...     releases=[{"version": "7.1", "confidence": "high"}],
        ... )
        >>> status.confidence(Version.parse("7.1"))
        <Confidence.HIGH: 'high'>
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    system_version: Version
    releases: tuple[PlatformRelease, ...] = Field(default=())

    @model_validator(mode="after")
    def validate_unique_versions(self) -> VersionStatus:
        versions = [release.version for release in self.releases]
        if len(set(versions)) != len(versions):
            raise ValueError("each platform version may only be listed once")
        return self

    def confidence(self, version: Version) -> Confidence | None:
        return next((r.confidence for r in self.releases if r.version == version), None)

    def is_broken(self, version: Version) -> bool:
        return self.confidence(version) is Confidence.BROKEN


__all__ = ["Confidence", "PlatformRelease", "VersionStatus"]
