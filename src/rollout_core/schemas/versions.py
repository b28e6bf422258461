"""Platform versions and application revisions.

Both are immutable and totally ordered. Platform versions are dotted
``major.minor.micro`` strings; application revisions are identified by a
monotonically increasing build number plus source metadata.

Example:
    >>> from rollout_core.schemas.versions import ApplicationRevision, Version
    >>> Version.parse("7.2") > Version.parse("7.1.9")
    True
    >>> ApplicationRevision.of(3) > ApplicationRevision.unknown()
    True
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_serializer, model_validator

_VERSION_PATTERN = re.compile(r"^(\d+)(?:\.(\d+))?(?:\.(\d+))?$")


def _parse_version(text: str) -> dict[str, int]:
    """Parse a dotted version string into its numeric components.

    Args:
        text: Version string such as "7", "7.1" or "7.1.3".

    Returns:
        Mapping with major, minor and micro components.

    Raises:
        ValueError: If the string is not a dotted numeric version.
    """
    match = _VERSION_PATTERN.match(text.strip())
    if match is None:
        raise ValueError(f"Invalid version '{text}': expected major[.minor[.micro]]")
    major, minor, micro = match.groups()
    return {"major": int(major), "minor": int(minor or 0), "micro": int(micro or 0)}


class Version(BaseModel):
    """A platform version, ordered numerically component by component.

    Accepts either a mapping of components or a dotted string when
    validated, and serializes back to the dotted string.

    Attributes:
        major: Major version component.
        minor: Minor version component.
        micro: Micro version component.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    major: int = Field(..., ge=0, description="Major version component")
    minor: int = Field(default=0, ge=0, description="Minor version component")
    micro: int = Field(default=0, ge=0, description="Micro version component")

    @model_validator(mode="before")
    @classmethod
    def parse_dotted_string(cls, data: Any) -> Any:
        """Allow versions to be written as "7.1.3" in YAML and JSON."""
        if isinstance(data, str):
            return _parse_version(data)
        if isinstance(data, (int, float)) and not isinstance(data, bool):
            return _parse_version(str(data))
        return data

    @model_serializer
    def serialize(self) -> str:
        return str(self)

    @classmethod
    def parse(cls, text: str) -> Version:
        """Parse a dotted version string."""
        return cls.model_validate(text)

    def _key(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.micro)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.micro}"

    def __lt__(self, other: Version) -> bool:
        return self._key() < other._key()

    def __le__(self, other: Version) -> bool:
        return self._key() <= other._key()

    def __gt__(self, other: Version) -> bool:
        return self._key() > other._key()

    def __ge__(self, other: Version) -> bool:
        return self._key() >= other._key()


class RevisionSource(BaseModel):
    """Where an application revision was built from."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    repository: str = Field(..., min_length=1, description="Source repository")
    branch: str = Field(default="main", min_length=1, description="Source branch")
    commit: str = Field(..., min_length=1, description="Commit the build was made from")


class ApplicationRevision(BaseModel):
    """A built application artifact.

    Revisions are ordered by build number. The unknown revision has no
    build number and sorts below every known revision; it stands in for an
    application that has never been submitted.

    Attributes:
        build: Monotonically increasing build number, None when unknown.
        source: Source metadata for the build, if reported.

    Examples:
        >>> ApplicationRevision.of(12).build
        12
        >>> ApplicationRevision.unknown().is_unknown
        True
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    build: int | None = Field(default=None, ge=1, description="Build number")
    source: RevisionSource | None = Field(default=None, description="Source metadata")

    @model_validator(mode="before")
    @classmethod
    def parse_build_number(cls, data: Any) -> Any:
        """Allow a bare build number as shorthand."""
        if isinstance(data, int) and not isinstance(data, bool):
            return {"build": data}
        return data

    @classmethod
    def of(cls, build: int, source: RevisionSource | None = None) -> ApplicationRevision:
        return cls(build=build, source=source)

    @classmethod
    def unknown(cls) -> ApplicationRevision:
        return cls()

    @property
    def is_unknown(self) -> bool:
        return self.build is None

    def _key(self) -> int:
        return -1 if self.build is None else self.build

    def __str__(self) -> str:
        return "unknown" if self.build is None else f"build {self.build}"

    def __lt__(self, other: ApplicationRevision) -> bool:
        return self._key() < other._key()

    def __le__(self, other: ApplicationRevision) -> bool:
        return self._key() <= other._key()

    def __gt__(self, other: ApplicationRevision) -> bool:
        return self._key() > other._key()

    def __ge__(self, other: ApplicationRevision) -> bool:
        return self._key() >= other._key()


__all__ = ["ApplicationRevision", "RevisionSource", "Version"]
