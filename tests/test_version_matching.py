"""Tests for Maven version ordering and version selection."""

import pytest

from kefs.versioning.matcher import latest_version, maven_version, select_version
from kefs.versioning.models import MatchFilter, RequestedVersion, ResolvedVersion, VersionMatching


def _filter(requested, matching):
    return MatchFilter(RequestedVersion(requested), matching)


class TestMavenOrdering:
    """Tests for Maven version ordering helpers."""

    @pytest.mark.parametrize(
        "lower,higher",
        [
            ("1.9", "1.10"),
            ("1.0-rc1", "1.0"),
            ("1.0-rc1", "1.0.1"),
            ("1.0-alpha1", "1.0-beta1"),
            ("1.0-SNAPSHOT", "1.0"),
            ("1.0", "1.0-sp1"),
            ("2.1.99", "2.2.0"),
            ("0.9.0", "0.10.0"),
        ],
    )
    def test_ordering(self, lower, higher):
        """Lower versions sort before higher ones."""
        assert maven_version(lower) < maven_version(higher)
        assert maven_version(higher) > maven_version(lower)

    def test_trailing_zeros_are_insignificant(self):
        """1 and 1.0.0 are the same version."""
        assert maven_version("1") == maven_version("1.0.0")

    def test_latest_keeps_original_spelling(self):
        """The highest version is returned as published."""
        assert latest_version(["1.0", "1.0.1-dev-5", "0.9"]) == "1.0.1-dev-5"

    def test_latest_of_nothing(self):
        """Empty strings and empty inputs have no latest version."""
        assert latest_version([]) is None
        assert latest_version([""]) is None
        assert maven_version("") is None


class TestSelectVersion:
    """Tests for select_version."""

    @pytest.mark.parametrize("matching", list(VersionMatching))
    def test_exact_shortcut_for_every_strategy(self, matching):
        """The requested version wins whenever every list contains it."""
        lists = [["1.0.0", "1.2.0", "9.0.0"], ["1.2.0", "9.0.0"]]
        result = select_version(lists, "", _filter("1.2.0", matching))
        assert result == ResolvedVersion("1.2.0")

    def test_exact_without_match(self):
        """EXACT never falls back to another version."""
        assert select_version([["1.0.0", "1.1.0"]], "", _filter("1.2.0", VersionMatching.EXACT)) is None

    def test_same_major_picks_highest_in_major(self):
        """SAME_MAJOR stays on the requested major line."""
        result = select_version(
            [["1.0.0", "1.5.0", "2.0.0"]], "", _filter("1.2.0", VersionMatching.SAME_MAJOR)
        )
        assert result == ResolvedVersion("1.5.0")

    def test_same_major_rejects_older(self):
        """Nothing at or above the requested version within the major line."""
        result = select_version([["1.0.0", "2.0.0"]], "", _filter("1.5.0", VersionMatching.SAME_MAJOR))
        assert result is None

    def test_same_major_zero_line_requires_equal_minor(self):
        """0.x versions only match within the same minor."""
        lists = [["0.10.0", "0.10.3", "0.11.0", "1.0.0"]]
        result = select_version(lists, "", _filter("0.10.1", VersionMatching.SAME_MAJOR))
        assert result == ResolvedVersion("0.10.3")

    def test_latest_picks_highest(self):
        """LATEST selects the overall maximum."""
        result = select_version(
            [["1.0.0", "2.0.0", "3.0.0"]], "", _filter("0.9.0", VersionMatching.LATEST)
        )
        assert result == ResolvedVersion("3.0.0")

    def test_latest_bundle_requires_agreement(self):
        """Bundle members must resolve to the same maximum."""
        flt = _filter("0.9.0", VersionMatching.LATEST)
        assert select_version([["1.0.0", "3.0.0"], ["1.0.0", "2.0.0"]], "", flt) is None
        assert select_version([["1.0.0", "3.0.0"], ["2.0.0", "3.0.0"]], "", flt) == ResolvedVersion("3.0.0")

    def test_prefix_filters_and_strips(self):
        """Entries without the prefix are ignored; the prefix is removed."""
        lists = [["2.1.0-1.0.0", "2.2.0-1.1.0", "2.2.0-1.2.0", "9.9.9"]]
        result = select_version(lists, "2.2.0-", _filter("1.0.0", VersionMatching.LATEST))
        assert result == ResolvedVersion("1.2.0")

    def test_prefix_excludes_exact_shortcut_from_other_host(self):
        """A requested version published only for another host is not exact."""
        lists = [["2.1.0-1.0.0", "2.2.0-1.1.0"]]
        result = select_version(lists, "2.2.0-", _filter("1.0.0", VersionMatching.EXACT))
        assert result is None

    def test_empty_inputs(self):
        """No lists or an empty list yields None."""
        flt = _filter("1.0.0", VersionMatching.LATEST)
        assert select_version([], "", flt) is None
        assert select_version([[]], "", flt) is None
