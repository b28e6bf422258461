"""Unit tests for platform versions, application revisions and changes."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from rollout_core.schemas.change import Change
from rollout_core.schemas.versions import ApplicationRevision, RevisionSource, Version


class TestVersion:
    """Tests for Version parsing and ordering."""

    def test_parse_fills_missing_components(self) -> None:
        """Test a short version string is padded with zeros."""
        assert Version.parse("7") == Version(major=7, minor=0, micro=0)
        assert Version.parse("7.1") == Version(major=7, minor=1, micro=0)

    def test_ordering_is_numeric(self) -> None:
        """Test components compare as numbers, not strings."""
        assert Version.parse("7.10") > Version.parse("7.9.9")
        assert Version.parse("8") > Version.parse("7.99")
        assert max(Version.parse("7.2"), Version.parse("7.1.3")) == Version.parse("7.2")

    def test_serializes_to_dotted_string(self) -> None:
        """Test a version round-trips through JSON as a string."""
        version = Version.parse("7.2.1")

        assert version.model_dump(mode="json") == "7.2.1"
        assert str(version) == "7.2.1"

    @pytest.mark.parametrize("text", ["", "seven", "7.x", "7.1.2.3", "-1"])
    def test_invalid_strings_rejected(self, text: str) -> None:
        """Test malformed version strings are rejected."""
        with pytest.raises(ValidationError):
            Version.parse(text)

    def test_frozen(self) -> None:
        """Test versions cannot be modified."""
        version = Version.parse("7.1")

        with pytest.raises(ValidationError):
            version.major = 8  # type: ignore[misc]


class TestApplicationRevision:
    """Tests for ApplicationRevision."""

    def test_unknown_sorts_below_every_build(self) -> None:
        """Test the unknown revision is older than any real build."""
        assert ApplicationRevision.unknown() < ApplicationRevision.of(1)
        assert ApplicationRevision.unknown().is_unknown
        assert str(ApplicationRevision.unknown()) == "unknown"

    def test_ordered_by_build_number(self) -> None:
        """Test revisions order by build regardless of source."""
        source = RevisionSource(repository="git@example.com:app", commit="abc123")

        assert ApplicationRevision.of(3, source) > ApplicationRevision.of(2)
        assert ApplicationRevision.of(3, source).source == source

    def test_bare_build_number_accepted(self) -> None:
        """Test an integer validates as a revision with that build number."""
        assert ApplicationRevision.model_validate(4) == ApplicationRevision.of(4)

    def test_build_number_must_be_positive(self) -> None:
        """Test build numbers start at 1."""
        with pytest.raises(ValidationError):
            ApplicationRevision.of(0)


class TestChange:
    """Tests for Change values."""

    def test_empty_change_has_no_targets(self) -> None:
        """Test the empty change targets nothing."""
        change = Change.empty()

        assert not change.has_targets
        assert change.is_empty
        assert str(change) == "no change"

    def test_pinned_change_without_targets_is_not_empty(self) -> None:
        """Test a pin alone still counts as something pending."""
        change = Change.empty().with_pin()

        assert not change.has_targets
        assert not change.is_empty

    def test_of_picks_axis_by_type(self) -> None:
        """Test Change.of sets the platform or the revision."""
        assert Change.of(Version.parse("7.1")).platform == Version.parse("7.1")
        assert Change.of(ApplicationRevision.of(2)).revision == ApplicationRevision.of(2)

    def test_with_and_without_return_new_changes(self) -> None:
        """Test mutators leave the original untouched."""
        original = Change.of(Version.parse("7.1"))

        both = original.with_revision(ApplicationRevision.of(2))

        assert original.revision is None
        assert both.without_platform() == Change.of(ApplicationRevision.of(2))
        assert both.without_revision() == original

    def test_on_top_of_overrides_present_parts(self) -> None:
        """Test on_top_of keeps parts the overlay does not set."""
        base = Change.of(Version.parse("7.1")).with_revision(ApplicationRevision.of(2))
        overlay = Change.of(ApplicationRevision.of(5)).with_pin()

        result = overlay.on_top_of(base)

        assert result.platform == Version.parse("7.1")
        assert result.revision == ApplicationRevision.of(5)
        assert result.pinned

    def test_upgrades_and_downgrades(self) -> None:
        """Test axis comparisons ignore axes the change does not target."""
        change = Change.of(Version.parse("7.2"))

        assert change.upgrades(Version.parse("7.1"))
        assert not change.upgrades(Version.parse("7.2"))
        assert change.downgrades(Version.parse("7.3"))
        assert not change.upgrades(ApplicationRevision.of(1))
        assert not change.downgrades(ApplicationRevision.of(1))

    def test_contains(self) -> None:
        """Test a change contains its parts, but not other targets."""
        change = Change.of(Version.parse("7.2")).with_revision(ApplicationRevision.of(3))

        assert change.contains(change.without_revision())
        assert change.contains(change.without_platform())
        assert change.contains(Change.empty())
        assert not change.contains(Change.of(ApplicationRevision.of(4)))
        assert not Change.empty().contains(change)

    def test_str_lists_parts(self) -> None:
        """Test the readable form names every part."""
        change = Change.of(Version.parse("7.2")).with_revision(ApplicationRevision.of(4))

        assert str(change) == "upgrade to 7.2.0, revision build 4"
        assert str(change.with_pin()).endswith("pinned")
