"""The pending change for an application instance.

A Change names a target platform version, a target application revision,
or both, and may be pinned. It is an immutable value: every operation
returns a new Change.

Example:
    >>> from rollout_core.schemas.change import Change
    >>> from rollout_core.schemas.versions import ApplicationRevision, Version
    >>> change = Change.of(Version.parse("7.2")).with_revision(ApplicationRevision.of(4))
    >>> str(change)
    'upgrade to 7.2, revision build 4'
    >>> change.without_platform().has_targets
    True
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from rollout_core.schemas.versions import ApplicationRevision, Version


class Change(BaseModel):
    """A desired platform version and/or application revision.

    A pinned change is never replaced by automatic upgrade or rollback
    logic, and a pinned platform allows deploying a lower version than the
    one currently running.

    Attributes:
        platform: Target platform version, if the change upgrades the platform.
        revision: Target application revision, if the change deploys a new revision.
        pinned: Whether the platform is pinned by an operator.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    platform: Version | None = Field(default=None, description="Target platform version")
    revision: ApplicationRevision | None = Field(
        default=None, description="Target application revision"
    )
    pinned: bool = Field(default=False, description="Pinned by an operator")

    @classmethod
    def empty(cls) -> Change:
        return cls()

    @classmethod
    def of(cls, target: Version | ApplicationRevision) -> Change:
        """Create a single-axis change for the given platform or revision."""
        if isinstance(target, Version):
            return cls(platform=target)
        return cls(revision=target)

    @property
    def has_targets(self) -> bool:
        """Whether this change targets a platform or a revision."""
        return self.platform is not None or self.revision is not None

    @property
    def is_empty(self) -> bool:
        """Whether there is nothing pending at all, not even a pin."""
        return not self.has_targets and not self.pinned

    def with_platform(self, platform: Version) -> Change:
        return self.model_copy(update={"platform": platform})

    def with_revision(self, revision: ApplicationRevision) -> Change:
        return self.model_copy(update={"revision": revision})

    def without_platform(self) -> Change:
        return self.model_copy(update={"platform": None})

    def without_revision(self) -> Change:
        return self.model_copy(update={"revision": None})

    def with_pin(self) -> Change:
        return self.model_copy(update={"pinned": True})

    def without_pin(self) -> Change:
        return self.model_copy(update={"pinned": False})

    def on_top_of(self, other: Change) -> Change:
        """Lay the parts present in this change over ``other``.

        Args:
            other: The change to fill missing parts from.

        Returns:
            ``other`` with this change's platform, revision and pin applied.
        """
        result = other
        if self.platform is not None:
            result = result.with_platform(self.platform)
        if self.revision is not None:
            result = result.with_revision(self.revision)
        if self.pinned:
            result = result.with_pin()
        return result

    def upgrades(self, target: Version | ApplicationRevision) -> bool:
        """Whether this change moves the given axis strictly forward."""
        if isinstance(target, Version):
            return self.platform is not None and self.platform > target
        return self.revision is not None and self.revision > target

    def downgrades(self, target: Version | ApplicationRevision) -> bool:
        """Whether this change moves the given axis strictly backward."""
        if isinstance(target, Version):
            return self.platform is not None and self.platform < target
        return self.revision is not None and self.revision < target

    def contains(self, other: Change) -> bool:
        """Whether every target of ``other`` is also targeted by this change."""
        return (other.platform is None or other.platform == self.platform) and (
            other.revision is None or other.revision == self.revision
        )

    def __str__(self) -> str:
        parts = []
        if self.platform is not None:
            parts.append(f"upgrade to {self.platform}")
        if self.revision is not None:
            parts.append(f"revision {self.revision}")
        if self.pinned:
            parts.append("pinned")
        return ", ".join(parts) if parts else "no change"


__all__ = ["Change"]
