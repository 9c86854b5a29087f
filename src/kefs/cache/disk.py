"""On-disk jar cache: layout, scanning and validation.

Layout::

    <cache_root>/<host_version>/<group/path>/<artifact_id>/<file>.jar
    <file>.jar.metadata   JSON {"originRepositoryName": ...}
    <file>.jar.link       optional, points to the local original (hot reload)

A cached jar is only trusted when its sidecar names a repository that is
still configured, and, for linked jars, when its content still equals the
original's.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple

from kefs.common.logging_utils import extra_context, is_debug_enabled
from kefs.constants import Constants
from kefs.models import Jar, JarDiskMetadata, KotlinVersionMismatch, MavenId
from kefs.settings.models import KotlinArtifactsRepository
from kefs.settings.replacement import ReplacementPattern
from kefs.versioning.matcher import select_version
from kefs.versioning.models import MatchFilter, ResolvedVersion

logger = logging.getLogger(__name__)

_FOR_IDE_SUFFIX = f"-{Constants.FOR_IDE_CLASSIFIER}"
_JAR_EXTENSION = ".jar"


@dataclass(frozen=True)
class ValidatedJarResult:
    jar: Jar
    resolved_version: ResolvedVersion
    origin: KotlinArtifactsRepository


def host_cache_dir(cache_root: Path, host_version: str) -> Path:
    return Path(cache_root) / host_version


def artifact_cache_dir(cache_root: Path, host_version: str, maven_id: MavenId) -> Path:
    return host_cache_dir(cache_root, host_version).joinpath(*maven_id.group_id.split("."), maven_id.artifact_id)


def metadata_path(jar_path: Path) -> Path:
    return jar_path.with_name(jar_path.name + Constants.METADATA_EXTENSION)


def link_path(jar_path: Path) -> Path:
    return jar_path.with_name(jar_path.name + Constants.LINK_EXTENSION)


def md5(path: Path) -> str:
    """MD5 of a file as a zero-padded 32 character hex string."""
    digest = hashlib.md5()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def read_metadata(jar_path: Path) -> Optional[JarDiskMetadata]:
    """Load the sidecar of ``jar_path``; None when missing or malformed."""
    path = metadata_path(jar_path)
    if not path.exists():
        return None
    try:
        return JarDiskMetadata.from_json(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, ValueError) as exc:
        logger.debug("Failed to read metadata from %s: %s", path, exc)
        return None


def write_metadata(jar_path: Path, origin: KotlinArtifactsRepository) -> None:
    path = metadata_path(jar_path)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(JarDiskMetadata(origin.name).to_json()), encoding="utf-8")
    os.replace(tmp, path)


def link_original(jar_path: Path, original: Path) -> None:
    """Record the local original of a cached jar.

    A symlink is preferred; where symlinks are unavailable a text file
    holding the absolute path is written instead.
    """
    link = link_path(jar_path)
    _unlink_quietly(link)
    try:
        os.symlink(original.resolve(), link)
        return
    except OSError as exc:
        logger.debug("Failed to create symbolic link for %s: %s", jar_path.name, exc)
    try:
        link.write_text(str(original.resolve()), encoding="utf-8")
    except OSError as exc:
        logger.debug("Failed to create fallback link for %s: %s", jar_path.name, exc)


def unlink_original(jar_path: Path) -> None:
    _unlink_quietly(link_path(jar_path))


def resolve_original_jar(jar_path: Path) -> Optional[Path]:
    """Return the linked original of a cached jar if it still exists."""
    link = link_path(jar_path)
    try:
        if link.is_symlink():
            candidate = link.resolve()
        elif link.is_file():
            candidate = Path(link.read_text(encoding="utf-8").strip())
        else:
            return None
    except OSError:
        return None
    if candidate.is_file() and candidate.name == jar_path.name:
        return candidate
    return None


def _version_key(name: str, prefix: str, suffix: str) -> Optional[str]:
    # the classifier sits between the version tail and the extension
    if not name.endswith(_JAR_EXTENSION):
        return None
    stem = name[: -len(_JAR_EXTENSION)]
    if stem.endswith(_FOR_IDE_SUFFIX):
        stem = stem[: -len(_FOR_IDE_SUFFIX)]
    tail = suffix[: -len(_JAR_EXTENSION)] if suffix.endswith(_JAR_EXTENSION) else suffix
    if len(stem) <= len(prefix) + len(tail):
        return None
    if not (stem.startswith(prefix) and stem.endswith(tail)):
        return None
    return stem[len(prefix):len(stem) - len(tail)]


def list_cached_jars(
    base_path: Path,
    artifact: MavenId,
    kotlin_ide_version: str,
    replacement: Optional[ReplacementPattern],
) -> Dict[str, Path]:
    """Map library version to cached jar for one artifact and host version."""
    base_path = Path(base_path)
    if not base_path.is_dir():
        return {}

    if replacement is not None:
        prefix, suffix = replacement.disk_glob(artifact, kotlin_ide_version)
    else:
        prefix, suffix = f"{artifact.artifact_id}-{kotlin_ide_version}-", ".jar"

    try:
        entries = list(base_path.iterdir())
    except OSError as exc:
        logger.debug("Failed to list %s: %s", base_path, exc)
        return {}

    version_to_path: Dict[str, Path] = {}
    for entry in entries:
        key = _version_key(entry.name, prefix, suffix)
        if key is None or not entry.is_file():
            continue
        # the IDE-classified variant wins over the plain jar
        if key not in version_to_path or entry.stem.endswith(_FOR_IDE_SUFFIX):
            version_to_path[key] = entry
    return version_to_path


def find_matching_jar(
    base_path: Path,
    artifact: MavenId,
    kotlin_ide_version: str,
    replacement: Optional[ReplacementPattern],
    match_filter: MatchFilter,
) -> Optional[Tuple[ResolvedVersion, str, Path]]:
    """Pick the best cached jar in ``base_path`` for the filter.

    Returns:
        ``(resolved_version, kotlin_version, jar_path)`` or None.
    """
    version_to_path = list_cached_jars(base_path, artifact, kotlin_ide_version, replacement)
    if not version_to_path:
        return None

    matched = select_version([list(version_to_path)], "", match_filter)

    if is_debug_enabled(logger):
        logger.debug(
            "Disk scan",
            extra=extra_context(
                event="decision",
                component="disk_cache",
                action="find_matching_jar",
                outcome="match" if matched else "no_match",
                target=str(base_path),
                candidates=sorted(version_to_path),
            ),
        )

    if matched is None:
        return None
    return matched, kotlin_ide_version, version_to_path[matched.value]


def validate_cached_jar(
    jar_path: Path,
    kotlin_ide_version: str,
    resolved_kotlin_version: str,
    resolved_version: ResolvedVersion,
    repositories: Sequence[KotlinArtifactsRepository],
) -> Optional[ValidatedJarResult]:
    """Validate a cache entry; invalid entries are cleaned up and yield None."""
    try:
        checksum = md5(jar_path)
    except OSError as exc:
        logger.debug("Failed to compute checksum for %s: %s", jar_path, exc)
        return None

    original = resolve_original_jar(jar_path)
    if original is not None:
        try:
            original_checksum = md5(original)
        except OSError:
            original_checksum = None
        if original_checksum != checksum:
            logger.debug("Checksums don't match with the original jar for %s", jar_path)
            _unlink_quietly(jar_path)
            return None

    mismatch = None
    if resolved_kotlin_version != kotlin_ide_version:
        mismatch = KotlinVersionMismatch(ide_version=kotlin_ide_version, jar_version=resolved_kotlin_version)

    metadata = read_metadata(jar_path)
    origin = None
    if metadata is not None:
        origin = next((r for r in repositories if r.name == metadata.origin_repository_name), None)

    if origin is None:
        logger.debug(
            "Invalid original repository for %s: %s",
            jar_path,
            metadata.origin_repository_name if metadata else None,
        )
        _unlink_quietly(metadata_path(jar_path))
        return None

    jar = Jar(path=jar_path, checksum=checksum, is_local=original is not None, kotlin_version_mismatch=mismatch)
    return ValidatedJarResult(jar=jar, resolved_version=resolved_version, origin=origin)


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.debug("Failed to delete %s: %s", path, exc)
