"""Tests for the on-disk jar cache layout, scanning and validation."""

import json
from pathlib import Path

import pytest

from kefs.cache import disk
from kefs.models import KotlinVersionMismatch, MavenId
from kefs.settings.models import KotlinArtifactsRepository, RepositoryType
from kefs.settings.replacement import ReplacementPattern
from kefs.versioning.models import MatchFilter, RequestedVersion, ResolvedVersion, VersionMatching

HOST = "2.2.0-ij251-78"
ARTIFACT = MavenId("org.example:my-plugin")
REPO = KotlinArtifactsRepository("central", "https://repo.example.com/maven", RepositoryType.URL)


def _jar(directory: Path, name: str, content: bytes = b"jar-bytes") -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_bytes(content)
    return path


class TestLayout:
    """Tests for cache path helpers."""

    def test_artifact_dir_uses_group_path(self, tmp_path):
        """Group ids become nested directories under the host version."""
        base = disk.artifact_cache_dir(tmp_path, HOST, ARTIFACT)
        assert base == tmp_path / HOST / "org" / "example" / "my-plugin"

    def test_sidecar_names(self, tmp_path):
        """Sidecars append their extension to the full jar name."""
        jar = tmp_path / "a.jar"
        assert disk.metadata_path(jar).name == "a.jar.metadata"
        assert disk.link_path(jar).name == "a.jar.link"

    def test_md5_is_padded_hex(self, tmp_path):
        """The checksum is a 32 character hex string and deterministic."""
        jar = _jar(tmp_path, "a.jar")
        first = disk.md5(jar)
        assert len(first) == 32
        assert first == disk.md5(jar)


class TestMetadata:
    """Tests for metadata sidecars."""

    def test_round_trip(self, tmp_path):
        """Written metadata reads back with the repository name."""
        jar = _jar(tmp_path, "a.jar")
        disk.write_metadata(jar, REPO)

        raw = json.loads(disk.metadata_path(jar).read_text(encoding="utf-8"))
        assert raw == {"originRepositoryName": "central"}
        assert disk.read_metadata(jar).origin_repository_name == "central"

    @pytest.mark.parametrize("content", ["{not json", "[]", '{"originRepositoryName": ""}'])
    def test_malformed_metadata(self, tmp_path, content):
        """Malformed sidecars read as None."""
        jar = _jar(tmp_path, "a.jar")
        disk.metadata_path(jar).write_text(content, encoding="utf-8")
        assert disk.read_metadata(jar) is None

    def test_missing_metadata(self, tmp_path):
        """A jar without a sidecar has no metadata."""
        assert disk.read_metadata(_jar(tmp_path, "a.jar")) is None


class TestScan:
    """Tests for list_cached_jars and find_matching_jar."""

    def test_lists_versions_for_host(self, tmp_path):
        """Only jars built for the host version are listed."""
        _jar(tmp_path, f"my-plugin-{HOST}-1.0.0.jar")
        _jar(tmp_path, f"my-plugin-{HOST}-1.1.0.jar")
        _jar(tmp_path, "my-plugin-2.1.0-1.2.0.jar")
        _jar(tmp_path, f"my-plugin-{HOST}-1.1.0.jar.metadata")

        jars = disk.list_cached_jars(tmp_path, ARTIFACT, HOST, None)

        assert sorted(jars) == ["1.0.0", "1.1.0"]

    def test_for_ide_variant_wins(self, tmp_path):
        """The IDE-classified jar is preferred over the plain one."""
        _jar(tmp_path, f"my-plugin-{HOST}-1.0.0.jar")
        for_ide = _jar(tmp_path, f"my-plugin-{HOST}-1.0.0-for-ide.jar")

        jars = disk.list_cached_jars(tmp_path, ARTIFACT, HOST, None)

        assert jars == {"1.0.0": for_ide}

    def test_missing_directory(self, tmp_path):
        """A missing directory has no cached jars."""
        assert disk.list_cached_jars(tmp_path / "missing", ARTIFACT, HOST, None) == {}

    def test_replacement_naming(self, tmp_path):
        """Replacement patterns change the scanned file names."""
        replacement = ReplacementPattern("<kotlin-version>-<lib-version>", "<artifact-id>", "renamed-<artifact-id>")
        expected = _jar(tmp_path, f"renamed-my-plugin-{HOST}-0.10.2.jar")
        _jar(tmp_path, f"my-plugin-{HOST}-0.10.3.jar")

        jars = disk.list_cached_jars(tmp_path, ARTIFACT, HOST, replacement)

        assert jars == {"0.10.2": expected}

    def test_find_matching_jar_same_major(self, tmp_path):
        """The newest jar of the requested major is picked."""
        _jar(tmp_path, f"my-plugin-{HOST}-1.0.0.jar")
        newest = _jar(tmp_path, f"my-plugin-{HOST}-1.4.0.jar")
        _jar(tmp_path, f"my-plugin-{HOST}-2.0.0.jar")
        match_filter = MatchFilter(RequestedVersion("1.1.0"), VersionMatching.SAME_MAJOR)

        found = disk.find_matching_jar(tmp_path, ARTIFACT, HOST, None, match_filter)

        assert found == (ResolvedVersion("1.4.0"), HOST, newest)

    def test_requested_version_on_disk_wins(self, tmp_path):
        """A cached jar of the requested version is picked over newer ones."""
        requested = _jar(tmp_path, f"my-plugin-{HOST}-1.0.0.jar")
        _jar(tmp_path, f"my-plugin-{HOST}-1.4.0.jar")
        match_filter = MatchFilter(RequestedVersion("1.0.0"), VersionMatching.SAME_MAJOR)

        found = disk.find_matching_jar(tmp_path, ARTIFACT, HOST, None, match_filter)

        assert found == (ResolvedVersion("1.0.0"), HOST, requested)

    def test_lib_first_pattern_finds_for_ide_jar(self, tmp_path):
        """The classifier after a trailing host version is still recognised."""
        replacement = ReplacementPattern("<lib-version>-<kotlin-version>", "<artifact-id>", "<artifact-id>")
        for_ide = _jar(tmp_path, "my-plugin-1.0.0-2.2.0-for-ide.jar")
        match_filter = MatchFilter(RequestedVersion("1.0.0"), VersionMatching.EXACT)

        found = disk.find_matching_jar(tmp_path, ARTIFACT, "2.2.0", replacement, match_filter)

        assert found == (ResolvedVersion("1.0.0"), "2.2.0", for_ide)

    def test_lib_first_pattern_prefers_for_ide(self, tmp_path):
        """Plain and classified jars of one version map to the classified one."""
        replacement = ReplacementPattern("<lib-version>-<kotlin-version>", "<artifact-id>", "<artifact-id>")
        _jar(tmp_path, "my-plugin-1.0.0-2.2.0.jar")
        for_ide = _jar(tmp_path, "my-plugin-1.0.0-2.2.0-for-ide.jar")
        _jar(tmp_path, "my-plugin-1.0.0-2.1.0.jar")

        assert disk.list_cached_jars(tmp_path, ARTIFACT, "2.2.0", replacement) == {"1.0.0": for_ide}

    def test_find_matching_jar_exact_miss(self, tmp_path):
        """EXACT does not fall back to other versions."""
        _jar(tmp_path, f"my-plugin-{HOST}-1.4.0.jar")
        match_filter = MatchFilter(RequestedVersion("1.0.0"), VersionMatching.EXACT)

        assert disk.find_matching_jar(tmp_path, ARTIFACT, HOST, None, match_filter) is None


class TestValidation:
    """Tests for validate_cached_jar."""

    def test_valid_entry(self, tmp_path):
        """A jar with a known origin validates."""
        jar = _jar(tmp_path, f"my-plugin-{HOST}-1.0.0.jar")
        disk.write_metadata(jar, REPO)

        result = disk.validate_cached_jar(jar, HOST, HOST, ResolvedVersion("1.0.0"), [REPO])

        assert result is not None
        assert result.origin == REPO
        assert result.jar.checksum == disk.md5(jar)
        assert result.jar.is_local is False
        assert result.jar.kotlin_version_mismatch is None

    def test_unknown_repository_removes_metadata(self, tmp_path):
        """A sidecar naming an unconfigured repository invalidates the entry."""
        jar = _jar(tmp_path, "a.jar")
        disk.write_metadata(jar, KotlinArtifactsRepository("gone", "x", RepositoryType.URL))

        assert disk.validate_cached_jar(jar, HOST, HOST, ResolvedVersion("1"), [REPO]) is None
        assert not disk.metadata_path(jar).exists()
        assert jar.exists()

    def test_missing_metadata(self, tmp_path):
        """A jar without a sidecar is invalid."""
        jar = _jar(tmp_path, "a.jar")
        assert disk.validate_cached_jar(jar, HOST, HOST, ResolvedVersion("1"), [REPO]) is None

    def test_missing_jar(self, tmp_path):
        """A missing jar is invalid."""
        assert disk.validate_cached_jar(tmp_path / "a.jar", HOST, HOST, ResolvedVersion("1"), [REPO]) is None

    def test_kotlin_version_mismatch(self, tmp_path):
        """A jar built for another host version carries a mismatch."""
        jar = _jar(tmp_path, "a.jar")
        disk.write_metadata(jar, REPO)

        result = disk.validate_cached_jar(jar, HOST, "2.1.0", ResolvedVersion("1"), [REPO])

        assert result.jar.kotlin_version_mismatch == KotlinVersionMismatch(ide_version=HOST, jar_version="2.1.0")

    def test_linked_original_unchanged(self, tmp_path):
        """A jar equal to its linked original is local."""
        original = _jar(tmp_path / "repo", "a.jar")
        jar = _jar(tmp_path / "cache", "a.jar")
        disk.write_metadata(jar, REPO)
        disk.link_original(jar, original)

        assert disk.resolve_original_jar(jar) == original.resolve()
        result = disk.validate_cached_jar(jar, HOST, HOST, ResolvedVersion("1"), [REPO])
        assert result.jar.is_local is True

    def test_linked_original_changed(self, tmp_path):
        """A jar whose original changed is deleted."""
        original = _jar(tmp_path / "repo", "a.jar", b"new content")
        jar = _jar(tmp_path / "cache", "a.jar", b"old content")
        disk.write_metadata(jar, REPO)
        disk.link_original(jar, original)

        assert disk.validate_cached_jar(jar, HOST, HOST, ResolvedVersion("1"), [REPO]) is None
        assert not jar.exists()

    def test_original_with_other_name_is_ignored(self, tmp_path):
        """A link to a file with a different name is not an original."""
        other = _jar(tmp_path / "repo", "b.jar")
        jar = _jar(tmp_path / "cache", "a.jar")
        disk.link_original(jar, other)

        assert disk.resolve_original_jar(jar) is None

    def test_unlink_original(self, tmp_path):
        """Unlinking removes the link sidecar."""
        original = _jar(tmp_path / "repo", "a.jar")
        jar = _jar(tmp_path / "cache", "a.jar")
        disk.link_original(jar, original)
        disk.unlink_original(jar)

        assert disk.resolve_original_jar(jar) is None
        assert not disk.link_path(jar).exists()
