"""Jar materialization from remote and local Maven repositories.

Every transfer is staged into ``<final>.downloading``. The staged file is
created exclusively before any byte is written; it is the claim that makes
concurrent attempts for the same final file single-flight, across
processes sharing the cache directory too. A finalized jar never carries the
``.downloading`` suffix and is only ever produced by an atomic rename.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple, Union

import aiohttp

from kefs.cache import disk
from kefs.common.http_client import HttpClient
from kefs.common.logging_utils import Timer, extra_context, is_debug_enabled, safe_url
from kefs.constants import Constants
from kefs.models import MavenId
from kefs.registry.manifest import ManifestNotFound, ManifestSuccess, artifact_url, fetch_remote_manifest
from kefs.settings.replacement import ReplacementPattern
from kefs.versioning.matcher import latest_version, select_version
from kefs.versioning.models import MatchFilter

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float], None]


@dataclass(frozen=True)
class JarResult:
    path: Path
    artifact_version: str
    requested_version: str
    downloaded: bool


@dataclass(frozen=True)
class DownloadSuccess:
    path: Path
    downloaded: bool
    original: Optional[Path] = None


@dataclass(frozen=True)
class DownloadNotFound:
    message: str


@dataclass(frozen=True)
class DownloadFailed:
    message: str


DownloadResult = Union[DownloadSuccess, DownloadNotFound, DownloadFailed]


def candidate_file_names(artifact_name: str, artifact_version: str) -> Tuple[str, str]:
    """IDE-classified name first, then the plain one."""
    base = f"{artifact_name}-{artifact_version}"
    return f"{base}-{Constants.FOR_IDE_CLASSIFIER}.jar", f"{base}.jar"


def staged_path(final_path: Path) -> Path:
    return final_path.with_name(final_path.name + Constants.DOWNLOADING_EXTENSION)


def published_versions(
    versions: Iterable[str],
    host_version: str,
    replacement: Optional[ReplacementPattern],
) -> Tuple[List[str], str]:
    """Return the candidate list and prefix to hand to ``select_version``."""
    if replacement is None:
        return list(versions), f"{host_version}-"
    return list(replacement.lib_versions_for(versions, host_version)), ""


def published_version_for(
    lib_version: str,
    host_version: str,
    replacement: Optional[ReplacementPattern],
) -> str:
    if replacement is None:
        return f"{host_version}-{lib_version}"
    return replacement.get_version_string(host_version, lib_version)


class JarDownloader:
    """Fetches jars into the cache directory with the claim-file protocol."""

    def __init__(
        self,
        http: HttpClient,
        progress: Optional[ProgressCallback] = None,
        chunk_size: Optional[int] = None,
    ):
        self._http = http
        self._progress = progress
        self._chunk_size = chunk_size or Constants.DOWNLOAD_CHUNK_SIZE

    async def fetch_if_absent(
        self,
        repo_url: str,
        maven_id: MavenId,
        kotlin_ide_version: str,
        dest: Path,
        match_filter: Optional[MatchFilter] = None,
        preferred_lib_versions: Iterable[str] = (),
        replacement: Optional[ReplacementPattern] = None,
        failures: Optional[List[DownloadResult]] = None,
    ) -> List[JarResult]:
        """Resolve and download the jar(s) of one artifact from one repository.

        Args:
            repo_url: Repository base URL.
            maven_id: Requested coordinates.
            kotlin_ide_version: Host compiler version; published versions are
                prefixed with it.
            dest: Directory receiving the jar.
            match_filter: Requested version and strategy, used when no
                preferred versions are given.
            preferred_lib_versions: Library versions to fetch, each resolved
                independently.
            replacement: Naming rewrite of the artifact, if any.
            failures: Collects the outcome of an unavailable manifest and of
                every chosen version that could not be materialized.

        Returns:
            One ``JarResult`` per successfully materialized version; empty
            when the manifest is unavailable.
        """
        artifact_name = replacement.get_artifact_string(maven_id) if replacement else maven_id.artifact_id
        manifest = await fetch_remote_manifest(self._http, repo_url, maven_id.group_path, artifact_name)
        if not isinstance(manifest, ManifestSuccess):
            logger.debug("No manifest for %s in %s: %s", maven_id, safe_url(repo_url), manifest)
            if failures is not None:
                if isinstance(manifest, ManifestNotFound):
                    failures.append(DownloadNotFound(f"Manifest not found at {manifest.location}"))
                else:
                    failures.append(DownloadFailed(manifest.message))
            return []

        chosen = self.choose_versions(
            list(manifest.versions), kotlin_ide_version, match_filter, preferred_lib_versions, replacement
        )

        base_url = artifact_url(repo_url, maven_id.group_path, artifact_name)
        results: List[JarResult] = []
        for artifact_version, lib_version in chosen:
            outcome = await self.download_version(base_url, artifact_name, artifact_version, dest)
            if isinstance(outcome, DownloadSuccess):
                results.append(JarResult(outcome.path, artifact_version, lib_version, outcome.downloaded))
            else:
                logger.debug("Failed to download %s %s: %s", artifact_name, artifact_version, outcome)
                if failures is not None:
                    failures.append(outcome)
        return results

    @staticmethod
    def choose_versions(
        versions: List[str],
        kotlin_ide_version: str,
        match_filter: Optional[MatchFilter],
        preferred_lib_versions: Iterable[str],
        replacement: Optional[ReplacementPattern],
    ) -> List[Tuple[str, str]]:
        """Pick ``(published_version, lib_version)`` pairs to download."""
        preferred = list(dict.fromkeys(preferred_lib_versions))
        candidates, prefix = published_versions(versions, kotlin_ide_version, replacement)
        with_prefix = [v for v in candidates if v.startswith(prefix)]

        if preferred:
            chosen = []
            for lib_version in preferred:
                if lib_version in (v[len(prefix):] for v in with_prefix):
                    chosen.append((published_version_for(lib_version, kotlin_ide_version, replacement), lib_version))
                    continue
                if not with_prefix:
                    continue
                latest = latest_version(v[len(prefix):] for v in with_prefix)
                if latest is None:
                    continue
                chosen.append((published_version_for(latest, kotlin_ide_version, replacement), latest))
            return list(dict.fromkeys(chosen))

        if match_filter is None:
            return []
        selected = select_version([candidates], prefix, match_filter)
        if selected is None:
            return []
        return [(published_version_for(selected.value, kotlin_ide_version, replacement), selected.value)]

    async def download_version(
        self,
        base_url: str,
        artifact_name: str,
        artifact_version: str,
        dest: Path,
    ) -> DownloadResult:
        """Download ``<artifact>-<version>[-for-ide].jar`` into ``dest``."""
        not_found: List[str] = []
        for file_name in candidate_file_names(artifact_name, artifact_version):
            url = f"{base_url}/{artifact_version}/{file_name}"
            outcome = await self.download_file(url, Path(dest) / file_name)
            if isinstance(outcome, DownloadNotFound):
                not_found.append(outcome.message)
                continue
            return outcome
        return DownloadNotFound("; ".join(not_found))

    async def download_file(self, url: str, final_path: Path) -> DownloadResult:
        """Stream ``url`` into ``final_path`` unless it is already there."""
        final_path.parent.mkdir(parents=True, exist_ok=True)

        if final_path.exists():
            if await self._remote_checksum_matches(url, final_path):
                return DownloadSuccess(final_path, downloaded=False)
            logger.debug("Cached %s differs from the remote checksum, re-downloading", final_path.name)

        claimed = await self._claim(final_path)
        if not claimed:
            if final_path.exists():
                return DownloadSuccess(final_path, downloaded=False)
            return DownloadFailed(f"Timed out waiting for a concurrent download of {final_path.name}")

        staged = staged_path(final_path)
        success = False
        try:
            with Timer() as t:
                outcome = await self._stream(url, staged, final_path.name)
            if isinstance(outcome, DownloadSuccess):
                os.replace(staged, final_path)
                disk.unlink_original(final_path)
                success = True
                if is_debug_enabled(logger):
                    logger.debug(
                        "Jar downloaded",
                        extra=extra_context(
                            event="download",
                            component="downloader",
                            action="download_file",
                            outcome="success",
                            duration_ms=t.duration_ms(),
                            target=safe_url(url),
                        ),
                    )
                return DownloadSuccess(final_path, downloaded=True)
            return outcome
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return DownloadFailed(f"Failed to download {safe_url(url)}: {type(exc).__name__}: {exc}")
        except OSError as exc:
            return DownloadFailed(f"Failed to write {final_path.name}: {exc}")
        finally:
            if not success:
                _remove(staged)

    async def copy_local(self, source: Path, final_path: Path) -> DownloadResult:
        """Copy a jar from a local repository and link it for hot reload."""
        if not source.is_file():
            return DownloadNotFound(f"File does not exist: {source}")
        final_path.parent.mkdir(parents=True, exist_ok=True)

        if final_path.exists() and await _same_content(final_path, source):
            await asyncio.to_thread(disk.link_original, final_path, source)
            return DownloadSuccess(final_path, downloaded=False, original=source)

        if not await self._claim(final_path):
            return DownloadFailed(f"Timed out waiting for a concurrent copy of {final_path.name}")

        staged = staged_path(final_path)
        success = False
        try:
            await asyncio.to_thread(shutil.copyfile, source, staged)
            os.replace(staged, final_path)
            success = True
        except OSError as exc:
            return DownloadFailed(f"Failed to copy file {source.name}: {exc}")
        finally:
            if not success:
                _remove(staged)

        await asyncio.to_thread(disk.link_original, final_path, source)
        return DownloadSuccess(final_path, downloaded=True, original=source)

    async def _stream(self, url: str, staged: Path, name: str) -> DownloadResult:
        async with self._http.open_stream(url) as response:
            if response.status == 404:
                return DownloadNotFound(f"File not found {safe_url(url)}")
            if not 200 <= response.status < 300:
                return DownloadFailed(f"Failed to download {safe_url(url)}: HTTP {response.status}")
            total = response.content_length
            if total == 0:
                return DownloadFailed(f"Empty response for {safe_url(url)}")

            written = 0
            with open(staged, "ab") as fh:
                async for chunk in response.content.iter_chunked(self._chunk_size):
                    fh.write(chunk)
                    written += len(chunk)
                    if self._progress is not None and total:
                        self._progress(name, written / total)

            if written == 0:
                return DownloadFailed(f"Empty response for {safe_url(url)}")
            return DownloadSuccess(staged, downloaded=True)

    async def _claim(self, final_path: Path) -> bool:
        """Create the staged placeholder exclusively.

        When another attempt holds it, wait for it to finish. A placeholder
        older than the claim timeout is considered abandoned and taken over.
        """
        staged = staged_path(final_path)
        deadline = time.monotonic() + Constants.CLAIM_WAIT_TIMEOUT_SEC
        while True:
            try:
                fd = os.open(staged, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.close(fd)
                return True
            except FileExistsError:
                pass

            if is_debug_enabled(logger):
                logger.debug(
                    "Download already claimed",
                    extra=extra_context(
                        event="decision", component="downloader", action="claim", outcome="wait", target=staged.name
                    ),
                )
            while staged.exists():
                if time.monotonic() > deadline:
                    if _age(staged) > Constants.CLAIM_WAIT_TIMEOUT_SEC:
                        _remove(staged)
                        break
                    return False
                await asyncio.sleep(Constants.CLAIM_POLL_INTERVAL_SEC)

            if final_path.exists():
                return False

    async def _remote_checksum_matches(self, url: str, final_path: Path) -> bool:
        """Compare a cached jar with the repository's ``.md5`` when published."""
        status, text = await self._http.get_text(f"{url}.md5", use_cache=False)
        if status != 200 or not text.strip():
            return True
        remote = text.strip().split()[0].lower()
        try:
            local = await asyncio.to_thread(disk.md5, final_path)
        except OSError:
            return False
        return remote == local


async def _same_content(left: Path, right: Path) -> bool:
    try:
        left_md5, right_md5 = await asyncio.gather(
            asyncio.to_thread(disk.md5, left), asyncio.to_thread(disk.md5, right)
        )
    except OSError:
        return False
    return left_md5 == right_md5


def _age(path: Path) -> float:
    try:
        return time.time() - path.stat().st_mtime
    except OSError:
        return 0.0


def _remove(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.debug("Failed to delete %s: %s", path, exc)
