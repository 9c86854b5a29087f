"""Bundle-consistent artifact resolution across the configured repositories.

The locator resolves every member of a plugin descriptor to the same library
version. The on-disk cache is consulted first; repositories are then tried
in priority order (local paths before remote URLs). Failures from several
repositories are folded into a single result per artifact by ``accumulate``.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

from kefs.cache import disk
from kefs.common.http_client import HttpClient
from kefs.common.logging_utils import Timer, extra_context, is_debug_enabled
from kefs.models import Jar, MavenId
from kefs.registry.downloader import (
    DownloadNotFound,
    DownloadResult,
    DownloadSuccess,
    JarDownloader,
    candidate_file_names,
    published_version_for,
    published_versions,
)
from kefs.registry.manifest import (
    ManifestFailedToFetch,
    ManifestNotFound,
    ManifestResult,
    ManifestSuccess,
    fetch_remote_manifest,
    local_artifact_dir,
    read_local_manifest,
)
from kefs.settings.models import KotlinArtifactsRepository, RepositoryType, VersionedPluginDescriptor
from kefs.status import Cached, FailedToFetchState, FoundButBundleIsIncomplete, NotFoundState
from kefs.versioning.matcher import select_version
from kefs.versioning.models import ResolvedVersion

logger = logging.getLogger(__name__)

_log_ids = itertools.count()


@dataclass(frozen=True)
class CachedResult:
    jar: Jar
    state: Cached
    lib_version: str
    original: Optional[Path] = None


@dataclass(frozen=True)
class NotFoundResult:
    state: NotFoundState
    lib_version: str


@dataclass(frozen=True)
class FailedToFetchResult:
    state: FailedToFetchState
    lib_version: str


@dataclass(frozen=True)
class IncompleteResult:
    """A member that resolved while another member of its bundle did not."""
    lib_version: str
    jar: Optional[Jar] = None
    state: FoundButBundleIsIncomplete = field(default_factory=FoundButBundleIsIncomplete)


LocatorResult = Union[CachedResult, NotFoundResult, FailedToFetchResult, IncompleteResult]


@dataclass(frozen=True)
class BundleResult:
    locator_results: Dict[MavenId, LocatorResult]

    def all_found(self) -> bool:
        return all(isinstance(r, CachedResult) for r in self.locator_results.values())


def sorted_by_priority(repositories: Sequence[KotlinArtifactsRepository]) -> List[KotlinArtifactsRepository]:
    """Local repositories first; the configured order is kept otherwise."""
    return sorted(repositories, key=lambda r: 0 if r.type is RepositoryType.PATH else 1)


def _numbered(results: Sequence[Union[NotFoundResult, FailedToFetchResult]], indent: str = "") -> str:
    return "\n".join(f"{indent}{i}. {r.state.message}" for i, r in enumerate(results, start=1))


def accumulate(
    failed_to_fetch: Sequence[FailedToFetchResult],
    not_found: Sequence[NotFoundResult],
    cached: Optional[CachedResult],
    lib_version: str = "",
) -> LocatorResult:
    """Fold the per-repository outcomes of one artifact into one result."""
    if cached is not None:
        return cached

    if failed_to_fetch and not not_found:
        if len(failed_to_fetch) == 1:
            return failed_to_fetch[0]
        return FailedToFetchResult(
            FailedToFetchState(
                "Failed to fetch artifacts from multiple repositories:\n"
                + _numbered(failed_to_fetch, indent="    ")
            ),
            lib_version,
        )

    if not_found and not failed_to_fetch:
        if len(not_found) == 1:
            return not_found[0]
        return NotFoundResult(
            NotFoundState(
                "No artifacts found matching the requested version and criteria:\n" + _numbered(not_found)
            ),
            lib_version,
        )

    if failed_to_fetch and not_found:
        return FailedToFetchResult(
            FailedToFetchState(
                "Multiple failures occurred while fetching artifacts:\n"
                "Failed to fetch:\n" + _numbered(failed_to_fetch) + "\n"
                "Not found:\n" + _numbered(not_found)
            ),
            lib_version,
        )

    return FailedToFetchResult(FailedToFetchState("Unknown error"), lib_version)


class ArtifactLocator:
    """Resolves plugin bundles into cached jars."""

    def __init__(self, http: HttpClient, downloader: Optional[JarDownloader] = None):
        self._http = http
        self._downloader = downloader or JarDownloader(http)

    async def locate_artifacts(
        self,
        versioned: VersionedPluginDescriptor,
        kotlin_ide_version: str,
        cache_root: Path,
        known: Optional[Mapping[MavenId, Jar]] = None,
    ) -> BundleResult:
        """Resolve every member of ``versioned`` to one common version.

        Args:
            versioned: Descriptor pinned to the requested library version.
            kotlin_ide_version: Host compiler version.
            cache_root: Root of the jar cache.
            known: Jars from the previous cycle; reused when unchanged.

        Returns:
            One ``LocatorResult`` per member id.
        """
        descriptor = versioned.descriptor
        requested = versioned.requested_version.value
        log_tag = f"[{descriptor.name}:{next(_log_ids)}]"
        known = known or {}

        logger.debug("%s Locating artifacts for %s", log_tag, kotlin_ide_version)

        disk_hits = await asyncio.to_thread(self._from_disk, versioned, kotlin_ide_version, cache_root)
        if len(disk_hits) == len(descriptor.ids) and all(
            hit.lib_version == requested for hit in disk_hits.values()
        ):
            logger.debug("%s All artifacts found on disk", log_tag)
            return BundleResult(dict(disk_hits))

        repositories = sorted_by_priority(descriptor.repositories)
        if not repositories:
            return BundleResult({
                maven_id: NotFoundResult(NotFoundState(f"No repositories added found for {maven_id}"), requested)
                for maven_id in descriptor.ids
            })

        failed: Dict[MavenId, List[FailedToFetchResult]] = {m: [] for m in descriptor.ids}
        not_found: Dict[MavenId, List[NotFoundResult]] = {m: [] for m in descriptor.ids}
        partial: Dict[MavenId, CachedResult] = {}
        first_found: Optional[Dict[MavenId, LocatorResult]] = None

        for repository in repositories:
            with Timer() as t:
                outcome = await self._locate_in_repository(
                    log_tag, repository, versioned, kotlin_ide_version, cache_root, known
                )

            if is_debug_enabled(logger):
                logger.debug(
                    "Repository searched",
                    extra=extra_context(
                        event="decision",
                        component="locator",
                        action="locate_in_repository",
                        outcome="found" if _all_cached(outcome) else "incomplete",
                        duration_ms=t.duration_ms(),
                        target=repository.name,
                        plugin=descriptor.name,
                    ),
                )

            if _all_cached(outcome):
                lib_version = next(iter(outcome.values())).lib_version
                if lib_version == requested:
                    return BundleResult(outcome)
                if first_found is None:
                    first_found = outcome
                continue

            for maven_id, result in outcome.items():
                if isinstance(result, CachedResult):
                    partial.setdefault(maven_id, result)
                elif isinstance(result, FailedToFetchResult):
                    failed[maven_id].append(result)
                elif isinstance(result, NotFoundResult):
                    not_found[maven_id].append(result)

        if first_found is not None:
            return BundleResult(first_found)

        if len(disk_hits) == len(descriptor.ids) and len({h.lib_version for h in disk_hits.values()}) == 1:
            logger.debug("%s Falling back to the cached bundle", log_tag)
            return BundleResult(dict(disk_hits))

        results: Dict[MavenId, LocatorResult] = {}
        for maven_id in descriptor.ids:
            cached = partial.get(maven_id) or disk_hits.get(maven_id)
            results[maven_id] = accumulate(failed[maven_id], not_found[maven_id], cached, requested)

        for maven_id, result in results.items():
            logger.debug("%s '%s' is %s", log_tag, maven_id, _describe(result))

        return BundleResult(_mark_incomplete(results))

    def _from_disk(
        self,
        versioned: VersionedPluginDescriptor,
        kotlin_ide_version: str,
        cache_root: Path,
    ) -> Dict[MavenId, CachedResult]:
        descriptor = versioned.descriptor
        match_filter = versioned.as_match_filter()
        hits: Dict[MavenId, CachedResult] = {}
        for maven_id in descriptor.ids:
            base = disk.artifact_cache_dir(cache_root, kotlin_ide_version, maven_id)
            found = disk.find_matching_jar(base, maven_id, kotlin_ide_version, descriptor.replacement, match_filter)
            if found is None:
                continue
            resolved, jar_kotlin_version, jar_path = found
            validated = disk.validate_cached_jar(
                jar_path, kotlin_ide_version, jar_kotlin_version, resolved, descriptor.repositories
            )
            if validated is None:
                continue
            state = Cached(
                jar=validated.jar,
                requested_version=versioned.requested_version,
                resolved_version=validated.resolved_version,
                criteria=descriptor.version_matching,
                origin=validated.origin,
            )
            hits[maven_id] = CachedResult(
                validated.jar, state, validated.resolved_version.value, disk.resolve_original_jar(jar_path)
            )
        return hits

    async def _locate_in_repository(
        self,
        log_tag: str,
        repository: KotlinArtifactsRepository,
        versioned: VersionedPluginDescriptor,
        kotlin_ide_version: str,
        cache_root: Path,
        known: Mapping[MavenId, Jar],
    ) -> Dict[MavenId, LocatorResult]:
        descriptor = versioned.descriptor
        replacement = descriptor.replacement
        requested = versioned.requested_version.value
        names = {
            maven_id: replacement.get_artifact_string(maven_id) if replacement else maven_id.artifact_id
            for maven_id in descriptor.ids
        }

        logger.debug("%s Accessing manifests in %s", log_tag, repository)
        manifests = await asyncio.gather(
            *(self._manifest(repository, maven_id, names[maven_id]) for maven_id in descriptor.ids)
        )

        results: Dict[MavenId, LocatorResult] = {}
        versions: Dict[MavenId, List[str]] = {}
        for maven_id, manifest in zip(descriptor.ids, manifests):
            if isinstance(manifest, ManifestSuccess):
                versions[maven_id] = list(manifest.versions)
            elif isinstance(manifest, ManifestNotFound):
                results[maven_id] = NotFoundResult(NotFoundState(f"Manifest not found at {manifest.location}"), requested)
            elif isinstance(manifest, ManifestFailedToFetch):
                results[maven_id] = FailedToFetchResult(FailedToFetchState(manifest.message), requested)

        if results:
            missing = ", ".join(str(m) for m in results)
            for maven_id in versions:
                results[maven_id] = NotFoundResult(
                    NotFoundState(f"Other artifacts of the bundle are not available in {repository}: {missing}"),
                    requested,
                )
            return results

        lists = []
        prefix = ""
        for maven_id in descriptor.ids:
            candidates, prefix = published_versions(versions[maven_id], kotlin_ide_version, replacement)
            lists.append(candidates)

        selected = select_version(lists, prefix, versioned.as_match_filter())
        if selected is None:
            return {
                maven_id: NotFoundResult(
                    NotFoundState(
                        "No compiler plugin artifact exists matching the requested version and criteria:\n"
                        f"  - Version: {requested}, prefixed with {kotlin_ide_version}\n"
                        f"  - Criteria: {descriptor.version_matching.value}\n"
                        f"Available versions: {', '.join(versions[maven_id]) or 'none'}"
                    ),
                    requested,
                )
                for maven_id in descriptor.ids
            }

        lib_version = selected.value
        artifact_version = published_version_for(lib_version, kotlin_ide_version, replacement)
        logger.debug("%s Version to locate: %s", log_tag, artifact_version)

        materialized = await asyncio.gather(
            *(
                self._materialize(
                    repository, versioned, maven_id, names[maven_id],
                    kotlin_ide_version, artifact_version, lib_version,
                    disk.artifact_cache_dir(cache_root, kotlin_ide_version, maven_id), known.get(maven_id),
                )
                for maven_id in descriptor.ids
            )
        )
        return dict(zip(descriptor.ids, materialized))

    async def _manifest(self, repository: KotlinArtifactsRepository, maven_id: MavenId, name: str) -> ManifestResult:
        if repository.type is RepositoryType.URL:
            return await fetch_remote_manifest(self._http, repository.value, maven_id.group_path, name)
        return await asyncio.to_thread(read_local_manifest, repository.value, maven_id.group_path, name)

    async def _materialize(
        self,
        repository: KotlinArtifactsRepository,
        versioned: VersionedPluginDescriptor,
        maven_id: MavenId,
        name: str,
        kotlin_ide_version: str,
        artifact_version: str,
        lib_version: str,
        dest: Path,
        known: Optional[Jar],
    ) -> LocatorResult:
        outcome: DownloadResult
        if repository.type is RepositoryType.URL:
            outcome = await self._fetch_remote(
                repository, versioned, maven_id, name, kotlin_ide_version, artifact_version, lib_version, dest
            )
        else:
            version_dir = local_artifact_dir(repository.value, maven_id.group_path, name) / artifact_version
            messages = []
            outcome = DownloadNotFound("")
            for file_name in candidate_file_names(name, artifact_version):
                outcome = await self._downloader.copy_local(version_dir / file_name, dest / file_name)
                if not isinstance(outcome, DownloadNotFound):
                    break
                messages.append(outcome.message)
            if isinstance(outcome, DownloadNotFound):
                outcome = DownloadNotFound("; ".join(messages))

        if isinstance(outcome, DownloadNotFound):
            return NotFoundResult(NotFoundState(outcome.message), lib_version)
        if not isinstance(outcome, DownloadSuccess):
            return FailedToFetchResult(FailedToFetchState(outcome.message), lib_version)

        try:
            await asyncio.to_thread(disk.write_metadata, outcome.path, repository)
            checksum = await asyncio.to_thread(disk.md5, outcome.path)
        except OSError as exc:
            return FailedToFetchResult(
                FailedToFetchState(f"Failed to finalize {outcome.path.name}: {exc}"), lib_version
            )

        if known is not None and known.path == outcome.path and known.checksum == checksum:
            jar = known
        else:
            jar = Jar(path=outcome.path, checksum=checksum, is_local=outcome.original is not None)

        state = Cached(
            jar=jar,
            requested_version=versioned.requested_version,
            resolved_version=ResolvedVersion(lib_version),
            criteria=versioned.descriptor.version_matching,
            origin=repository,
        )
        return CachedResult(jar, state, lib_version, outcome.original)

    async def _fetch_remote(
        self,
        repository: KotlinArtifactsRepository,
        versioned: VersionedPluginDescriptor,
        maven_id: MavenId,
        name: str,
        kotlin_ide_version: str,
        artifact_version: str,
        lib_version: str,
        dest: Path,
    ) -> DownloadResult:
        """Fetch the bundle-selected version of one member.

        The version is handed to the downloader as the preferred one; a jar
        resolved to any other version is not part of the bundle.
        """
        failures: List[DownloadResult] = []
        jars = await self._downloader.fetch_if_absent(
            repository.value,
            maven_id,
            kotlin_ide_version,
            dest,
            preferred_lib_versions=(lib_version,),
            replacement=versioned.descriptor.replacement,
            failures=failures,
        )
        jar = next((j for j in jars if j.requested_version == lib_version), None)
        if jar is not None:
            return DownloadSuccess(jar.path, downloaded=jar.downloaded)
        if failures:
            return failures[-1]
        return DownloadNotFound(f"{name} {artifact_version} is no longer published in {repository}")


def _all_cached(results: Mapping[MavenId, LocatorResult]) -> bool:
    return bool(results) and all(isinstance(r, CachedResult) for r in results.values())


def _mark_incomplete(results: Dict[MavenId, LocatorResult]) -> Dict[MavenId, LocatorResult]:
    """Downgrade found members when the bundle as a whole is not found."""
    if all(isinstance(r, CachedResult) for r in results.values()):
        return results
    return {
        maven_id: IncompleteResult(r.lib_version, r.jar) if isinstance(r, CachedResult) else r
        for maven_id, r in results.items()
    }


def _describe(result: LocatorResult) -> str:
    if isinstance(result, CachedResult):
        return "Cached"
    if isinstance(result, IncompleteResult):
        return "Found, but the bundle is incomplete"
    if isinstance(result, NotFoundResult):
        return f"Not Found: {result.state.message}"
    return f"Failed To Fetch: {result.state.message}"
