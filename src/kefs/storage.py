"""Storage orchestrator: per-plugin actualization, status and invalidation.

``KefsStorage`` owns the in-memory view of the jar cache. Each
``(plugin, requested version)`` pair is actualized by a single supervised
task; consumers ask for resolved paths with ``get_plugin_path`` and are told
to reload through the ``invalidate`` callback once the cache settles.
"""
from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import shutil
import time
from contextlib import nullcontext
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

from kefs.cache import disk
from kefs.common.http_client import HttpClient
from kefs.common.logging_utils import extra_context, is_debug_enabled
from kefs.config import KefsConfig
from kefs.constants import Constants
from kefs.debounce import ReloadDebouncer
from kefs.errors import CacheDirectoryError, run_catching_except_cancellation
from kefs.listeners import Discovery, DiscoveryListener, NullStatusListener, StatusListener
from kefs.models import Jar, JarId, MavenId
from kefs.registry.locator import ArtifactLocator, BundleResult, CachedResult, LocatorResult
from kefs.settings.models import (
    KotlinPluginDescriptor,
    RepositoryType,
    RequestedPluginDescriptor,
    SettingsState,
    VersionedPluginDescriptor,
)
from kefs.status import (
    ArtifactState,
    ArtifactStatus,
    Cached,
    ExceptionInRuntime,
    FailedToFetchState,
    FailedToLoad,
    InProgress,
    NotFoundState,
    PartialSuccess,
    to_status,
)
from kefs.versioning.models import RequestedVersion
from kefs.watcher import FileWatcherCallback, KefsFileWatcher

__all__ = [
    "Discovery",
    "DiscoveryListener",
    "KefsStorage",
    "NullStatusListener",
    "RequestedPluginKey",
    "StatusListener",
]

logger = logging.getLogger(__name__)

Job = Union[asyncio.Future, concurrent.futures.Future]


@dataclass(frozen=True)
class RequestedPluginKey:
    maven_id: str
    requested_version: RequestedVersion


@dataclass(frozen=True)
class _CycleOutcome:
    resolved: bool
    changed: bool


class KefsStorage:  # pylint: disable=too-many-instance-attributes,too-many-public-methods
    """In-memory cache state plus the tasks keeping it fresh."""

    def __init__(
        self,
        config: KefsConfig,
        state: SettingsState,
        host_version_provider: Callable[[], str],
        status_listener: Optional[StatusListener] = None,
        invalidate: Optional[Callable[[], None]] = None,
        discovery_listener: Optional[DiscoveryListener] = None,
        locator: Optional[ArtifactLocator] = None,
        http: Optional[HttpClient] = None,
        watcher: Optional[KefsFileWatcher] = None,
    ):
        self._config = config
        self._state = state
        self._host_version = host_version_provider
        self._status = status_listener or NullStatusListener()
        self._invalidate = invalidate
        self._discovery = discovery_listener or DiscoveryListener()
        self._http = http if http is not None else HttpClient()
        self._locator = locator or ArtifactLocator(self._http)

        self._plugins_cache: Dict[str, Dict[RequestedPluginKey, ArtifactState]] = {}
        self._lifecycle_cache: Dict[str, Dict[str, Path]] = {}

        self._actualizer_lock = asyncio.Lock()
        self._actualizer_jobs: Dict[VersionedPluginDescriptor, asyncio.Task] = {}
        self._index_lock = asyncio.Lock()
        self._index_jobs: Dict[VersionedPluginDescriptor, Job] = {}
        self._background: Set[Job] = set()

        self._provider_calls = 0
        self._last_provider_call = 0.0
        self._invalidation_job: Optional[Job] = None
        self._auto_update_task: Optional[asyncio.Task] = None
        self._reload = ReloadDebouncer(self.run_actualization)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._closed = False

        if watcher is None and config.watch_files:
            watcher = KefsFileWatcher(_StorageWatchCallback(self))
        self._watcher = watcher
        self._external_clear: Optional[Job] = None

    # -- settings -----------------------------------------------------------

    @property
    def state(self) -> SettingsState:
        return self._state

    def update_state(self, state: SettingsState) -> None:
        self._state = state
        if self._loop is not None and not self._closed:
            self._spawn(self._register_watches())

    def cache_dir(self) -> Path:
        return self._config.cache_root

    def reports_dir(self) -> Path:
        path = disk.host_cache_dir(self._config.cache_root, self._host_version()) / Constants.REPORTS_DIR_NAME
        path.mkdir(parents=True, exist_ok=True)
        return path

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Bind to the running loop and start periodic updates if enabled."""
        self._loop = asyncio.get_running_loop()
        await self._http.start()
        if self._watcher is not None:
            self._watcher.start(self._loop)
            await self._register_watches()
        if self._config.auto_update:
            self.start_auto_update()

    def start_auto_update(self) -> None:
        if self._auto_update_task is not None and not self._auto_update_task.done():
            self._auto_update_task.cancel()
        self._auto_update_task = asyncio.get_running_loop().create_task(
            self._auto_update_loop(), name="actualizer-loop"
        )

    async def _auto_update_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.update_interval * 60)
            logger.debug("Scheduled actualize triggered")
            self.run_actualization()

    async def stop(self) -> None:
        """Cancel every task owned by the storage and close the HTTP client."""
        self._closed = True
        await self._reload.cancel()
        jobs: List[Job] = list(self._actualizer_jobs.values()) + list(self._index_jobs.values())
        jobs.extend(self._background)
        if self._auto_update_task is not None:
            jobs.append(self._auto_update_task)
        if self._invalidation_job is not None:
            jobs.append(self._invalidation_job)
        await _cancel_all(jobs)
        self._actualizer_jobs.clear()
        self._index_jobs.clear()
        self._background.clear()
        self._plugins_cache.clear()
        self._lifecycle_cache.clear()
        self._invalidation_job = None
        if self._watcher is not None:
            await asyncio.to_thread(self._watcher.stop)
        await self._http.stop()
        logger.debug("Storage closed")

    # -- reload signals -----------------------------------------------------

    def mark_host_ready(self) -> None:
        self._reload.mark_ready()

    def on_reload_signal(self) -> None:
        self._reload.signal()

    # -- actualization ------------------------------------------------------

    def run_actualization(self) -> None:
        """Re-actualize every requested version of every enabled plugin."""
        logger.debug("Requested actualization")
        for plugin_name, artifacts in list(self._plugins_cache.items()):
            plugin = self._state.plugin_by_name(plugin_name)
            if plugin is None or not plugin.enabled:
                continue
            self._actualize_plugin(plugin, artifacts)

    def handle_local_repo_change(self, repo_root: Path) -> None:
        """Re-actualize the plugins served by the local repository at ``repo_root``."""
        logger.debug("Detected changes in local repo: %s", repo_root)
        root = _normalized(repo_root)
        names = {
            repo.name
            for repo in self._state.repositories
            if repo.type is RepositoryType.PATH and _normalized(Path(repo.value)) == root
        }
        if not names:
            return
        for plugin in self._state.plugins:
            if not plugin.enabled or not any(r.name in names for r in plugin.repositories):
                continue
            cached = self._plugins_cache.get(plugin.name)
            if cached is not None:
                self._actualize_plugin(plugin, cached)

    def handle_cache_dir_external_change(self) -> None:
        """Drop the in-memory state after the cache was changed behind our back."""
        if self._closed:
            return
        if self._external_clear is not None and not self._external_clear.done():
            return
        logger.debug("Detected external changes in the cache directory")
        self._external_clear = self._spawn(self.clear_state())

    # -- file watching ------------------------------------------------------

    @property
    def file_watcher(self) -> Optional[KefsFileWatcher]:
        return self._watcher

    async def _register_watches(self) -> None:
        """Watch every local repository and the host cache directory."""
        watcher = self._watcher
        if watcher is None or self._closed:
            return
        roots = list(dict.fromkeys(
            _normalized(Path(repo.value))
            for repo in self._state.repositories
            if repo.type is RepositoryType.PATH
        ))
        host_dir = disk.host_cache_dir(self._config.cache_root, self._host_version())

        def register() -> None:
            for root in roots:
                watcher.register_local_repo(root)
            try:
                host_dir.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                logger.warning("Failed to create cache directory %s: %s", host_dir, exc)
                return
            watcher.register_cache_dir(host_dir)

        await asyncio.to_thread(register)

    def _self_update(self):
        if self._watcher is None:
            return nullcontext()
        return self._watcher.self_update()

    def _actualize_plugin(self, plugin: KotlinPluginDescriptor, artifacts: Dict[RequestedPluginKey, ArtifactState]) -> None:
        versions = list(dict.fromkeys(key.requested_version for key in artifacts))
        for version in versions:
            self._spawn(self.actualize(VersionedPluginDescriptor(plugin, version)))

    async def actualize(self, versioned: VersionedPluginDescriptor) -> asyncio.Task:
        """Start the actualization of ``versioned`` unless one is running.

        Returns:
            The task doing the work, possibly one started earlier.
        """
        return await self._start_actualize(versioned, attempt=0)

    async def _start_actualize(self, versioned: VersionedPluginDescriptor, attempt: int) -> asyncio.Task:
        async with self._actualizer_lock:
            running = self._actualizer_jobs.get(versioned)
            if running is not None and not running.done():
                logger.debug("Actualize plugins job is already running (%s)", versioned)
                return running

            task = asyncio.get_running_loop().create_task(
                self._actualize_job(versioned), name=f"jar-fetcher-{versioned.name}"
            )
            self._actualizer_jobs[versioned] = task
            task.add_done_callback(lambda t: self._on_actualize_done(versioned, attempt, t))
            return task

    async def _actualize_job(self, versioned: VersionedPluginDescriptor) -> _CycleOutcome:
        descriptor = versioned.descriptor
        requested = versioned.requested_version
        self._status.update_plugin(descriptor.name, InProgress())

        kotlin_ide_version = self._host_version()
        try:
            cache_root = self._config.ensure_cache_root()
        except CacheDirectoryError as exc:
            logger.error("Failed to find cache directory for %s: %s", versioned, exc)
            self._status.update_plugin(descriptor.name, FailedToLoad("Internal error"))
            return _CycleOutcome(resolved=False, changed=False)

        artifacts = self._plugins_cache.setdefault(descriptor.name, {})
        known: Dict[MavenId, Jar] = {
            MavenId(key.maven_id): value.jar
            for key, value in artifacts.items()
            if descriptor.has_artifact(key.maven_id) and key.requested_version == requested and isinstance(value, Cached)
        }

        for maven_id in descriptor.ids:
            self._status.update_version(descriptor.name, maven_id.id, requested, InProgress())

        logger.debug("Actualize plugins job started (%s)", versioned)
        try:
            with self._self_update():
                bundle, exc = await run_catching_except_cancellation(
                    self._locator.locate_artifacts(versioned, kotlin_ide_version, cache_root, known)
                )
        except asyncio.CancelledError:
            self._status.update_plugin(descriptor.name, FailedToLoad("Job was cancelled"))
            raise

        if exc is not None or bundle is None:
            logger.error("Actualize plugins job failed (%s)", descriptor.name, exc_info=exc)
            self._status.update_plugin(descriptor.name, FailedToLoad("Unexpected error"))
            return _CycleOutcome(resolved=False, changed=False)

        if is_debug_enabled(logger):
            logger.debug(
                "Actualize bundle",
                extra=extra_context(
                    event="decision",
                    component="storage",
                    action="actualize",
                    outcome="found" if bundle.all_found() else "incomplete",
                    target=str(versioned),
                ),
            )

        changed = self._apply_bundle(versioned, artifacts, bundle)
        self._status.update_plugin(descriptor.name, _plugin_status(bundle))
        self._status.redraw()
        return _CycleOutcome(resolved=bundle.all_found(), changed=changed)

    def _apply_bundle(
        self,
        versioned: VersionedPluginDescriptor,
        artifacts: Dict[RequestedPluginKey, ArtifactState],
        bundle: BundleResult,
    ) -> bool:
        descriptor = versioned.descriptor
        requested = versioned.requested_version
        any_changed = False

        for maven_id, result in bundle.locator_results.items():
            key = RequestedPluginKey(maven_id.id, requested)
            old = artifacts.get(key)
            old_checksum = old.jar.checksum if isinstance(old, Cached) else None
            is_new = isinstance(result, CachedResult) and result.jar.checksum != old_checksum
            artifacts[key] = result.state

            if is_new:
                any_changed = True
                self._discovery.discovered(_discovery(descriptor.name, maven_id.id, result.state))

            status: ArtifactStatus
            if not is_new and isinstance(result, CachedResult):
                status = self._status_for(descriptor.name, maven_id.id, result.state)
            else:
                status = to_status(result.state)
            self._status.update_version(descriptor.name, maven_id.id, requested, status)

        return any_changed

    def _on_actualize_done(self, versioned: VersionedPluginDescriptor, attempt: int, task: asyncio.Task) -> None:
        if self._actualizer_jobs.get(versioned) is task:
            del self._actualizer_jobs[versioned]
        if task.cancelled() or self._closed:
            return

        exc = task.exception()
        if exc is not None:
            logger.error("Actualize plugins job failed (%s)", versioned, exc_info=exc)
            self._status.update_plugin(versioned.name, FailedToLoad("Unexpected error"))
            return

        outcome: _CycleOutcome = task.result()
        if not outcome.resolved and attempt < Constants.RETRY_MAX:
            logger.debug("Scheduling retry %d for %s", attempt + 1, versioned)
            self._spawn(self._retry_later(versioned, attempt + 1))
            if outcome.changed:
                self.invalidate_kotlin_plugin_cache()
            return

        self.invalidate_kotlin_plugin_cache()

    async def _retry_later(self, versioned: VersionedPluginDescriptor, attempt: int) -> None:
        await asyncio.sleep(Constants.RETRY_DELAY_SEC)
        descriptor = self._state.plugin_by_name(versioned.name)
        if descriptor is None or not descriptor.enabled:
            return
        await self._start_actualize(VersionedPluginDescriptor(descriptor, versioned.requested_version), attempt)

    # -- provider entry points ------------------------------------------------

    def get_plugin_path(self, requested: RequestedPluginDescriptor) -> Optional[Path]:
        """Return the cached jar of ``requested.artifact`` if its bundle is complete.

        A None result schedules a disk scan, which in turn actualizes the
        plugin when the disk has no complete bundle either.
        """
        descriptor = requested.descriptor
        artifact_id = requested.artifact.id

        if self._invalidation_job is not None:
            logger.debug("Invalidation pending %s:%s (%s)", descriptor.name, artifact_id, requested.requested_version)
            return None

        lifecycle = self._lifecycle_cache.get(descriptor.name)
        if lifecycle is not None and artifact_id in lifecycle:
            return lifecycle[artifact_id]

        plugin_map = self._plugins_cache.setdefault(descriptor.name, {})
        states = [
            (maven_id.id, plugin_map.get(RequestedPluginKey(maven_id.id, requested.requested_version)))
            for maven_id in descriptor.ids
        ]
        cached = [(mid, s) for mid, s in states if isinstance(s, Cached) and s.jar.path.exists()]
        resolved_versions = {s.resolved_version for _, s in cached}

        if len(cached) != len(states) or len(resolved_versions) != 1:
            logger.debug("Requested plugins not found in full (%s)", requested.versioned())
            self._spawn(self._update_cache_from_disk(requested.versioned()))
            return None

        self._lifecycle_cache[descriptor.name] = {mid: s.jar.path for mid, s in cached}
        state = dict(cached)[artifact_id]
        self._status.update_version(
            descriptor.name, artifact_id, requested.requested_version,
            self._status_for(descriptor.name, artifact_id, state),
        )
        return state.jar.path

    async def _update_cache_from_disk(self, versioned: VersionedPluginDescriptor) -> None:
        async with self._index_lock:
            running = self._index_jobs.get(versioned)
            if running is not None and not running.done():
                logger.debug("Update cache from disk job is already running for %s", versioned)
                return
            task = asyncio.get_running_loop().create_task(
                self._index_from_disk(versioned), name=f"update-cache-from-disk-{versioned}"
            )
            self._index_jobs[versioned] = task

            def _done(t: asyncio.Task) -> None:
                if self._index_jobs.get(versioned) is t:
                    del self._index_jobs[versioned]
                if not t.cancelled() and t.exception() is not None:
                    logger.error("Update cache from disk failed (%s)", versioned, exc_info=t.exception())

            task.add_done_callback(_done)

    async def _index_from_disk(self, versioned: VersionedPluginDescriptor) -> None:
        descriptor = versioned.descriptor
        plugin_map = self._plugins_cache.setdefault(descriptor.name, {})
        kotlin_ide_version = self._host_version()

        for maven_id in descriptor.ids:
            key = RequestedPluginKey(maven_id.id, versioned.requested_version)
            old = plugin_map.get(key)
            if isinstance(old, Cached) and old.jar.path.exists():
                continue
            with self._self_update():
                state = await asyncio.to_thread(self._find_on_disk, versioned, maven_id, kotlin_ide_version)
            if state is not None:
                plugin_map[key] = state
                self._discovery.discovered(_discovery(descriptor.name, maven_id.id, state))

        states = [plugin_map.get(RequestedPluginKey(m.id, versioned.requested_version)) for m in descriptor.ids]
        resolved = {s.resolved_version for s in states if isinstance(s, Cached)}
        if any(not isinstance(s, Cached) for s in states) or len(resolved) != 1:
            logger.debug("Some versions are missing for %s", versioned)
            await self.actualize(versioned)
            return

        self.invalidate_kotlin_plugin_cache()
        logger.debug("Cache from disk update finished for %s", versioned)

    def _find_on_disk(
        self,
        versioned: VersionedPluginDescriptor,
        maven_id: MavenId,
        kotlin_ide_version: str,
    ) -> Optional[Cached]:
        """Scan and validate the disk entry of one bundle member."""
        descriptor = versioned.descriptor
        base = disk.artifact_cache_dir(self._config.cache_root, kotlin_ide_version, maven_id)
        scanned = disk.find_matching_jar(
            base, maven_id, kotlin_ide_version, descriptor.replacement, versioned.as_match_filter()
        )
        if scanned is None:
            return None
        resolved_version, jar_kotlin_version, path = scanned
        validated = disk.validate_cached_jar(
            path, kotlin_ide_version, jar_kotlin_version, resolved_version, descriptor.repositories
        )
        if validated is None:
            return None

        return Cached(
            jar=validated.jar,
            requested_version=versioned.requested_version,
            resolved_version=resolved_version,
            criteria=descriptor.version_matching,
            origin=validated.origin,
        )

    def record_provider_call_start(self) -> None:
        self._provider_calls += 1

    def record_provider_call_end(self) -> None:
        self._last_provider_call = time.monotonic()
        self._provider_calls -= 1

    # -- invalidation -------------------------------------------------------

    def invalidate_kotlin_plugin_cache(self) -> None:
        """Schedule one debounced ``invalidate`` call; no-op while one is pending."""
        if self._closed:
            return
        if self._invalidation_job is not None:
            logger.debug("Invalidation already pending")
            return

        self._lifecycle_cache.clear()
        self._status.reset()
        self._invalidation_job = self._spawn(self._debounced_invalidate())
        logger.debug("Invalidation job started")

    @property
    def invalidation_pending(self) -> bool:
        return self._invalidation_job is not None

    async def _debounced_invalidate(self) -> None:
        debounce = self._config.invalidation_debounce_ms / 1000.0
        try:
            while True:
                if self._provider_calls > 0:
                    await asyncio.sleep(debounce)
                    continue
                since_last_call = time.monotonic() - self._last_provider_call
                if since_last_call >= debounce:
                    break
                await asyncio.sleep(debounce - since_last_call)
        finally:
            self._invalidation_job = None

        if self._invalidate is None:
            return
        try:
            self._invalidate()
            logger.debug("Invalidated plugin consumers after debounce")
        except Exception:  # pylint: disable=broad-exception-caught
            logger.exception("Invalidate callback failed")

    # -- state management ---------------------------------------------------

    async def _cancel_jobs(self) -> None:
        async with self._actualizer_lock:
            async with self._index_lock:
                jobs: List[Job] = list(self._actualizer_jobs.values()) + list(self._index_jobs.values())
                await _cancel_all(jobs)
                self._actualizer_jobs.clear()
                self._index_jobs.clear()
                self._plugins_cache.clear()
                self._lifecycle_cache.clear()
                if self._watcher is not None:
                    self._watcher.cancel_all_watches()

    async def clear_state(self) -> None:
        logger.debug("Clearing state")
        await self._cancel_jobs()
        await self._register_watches()
        self.invalidate_kotlin_plugin_cache()

    async def clear_caches(self) -> None:
        """Delete the cached jars of the current host version and re-resolve them."""
        logger.debug("Clearing caches")
        keys = [
            (name, key.requested_version)
            for name, artifacts in self._plugins_cache.items()
            for key in artifacts
        ]
        await self._cancel_jobs()

        host_dir = disk.host_cache_dir(self._config.cache_root, self._host_version())
        with self._self_update():
            _, exc = await run_catching_except_cancellation(
                asyncio.to_thread(shutil.rmtree, host_dir, ignore_errors=False)
            )
        if exc is not None and not isinstance(exc, FileNotFoundError):
            logger.warning("Failed to delete %s: %s", host_dir, exc)

        await self._register_watches()
        self.invalidate_kotlin_plugin_cache()
        for name, version in dict.fromkeys(keys):
            plugin = self._state.plugin_by_name(name)
            if plugin is not None and plugin.enabled:
                await self.actualize(VersionedPluginDescriptor(plugin, version))

    # -- queries ------------------------------------------------------------

    def _status_for(self, plugin_name: str, maven_id: str, state: ArtifactState) -> ArtifactStatus:
        if isinstance(state, Cached) and self._discovery.has_exceptions(plugin_name, maven_id, state.requested_version):
            return ExceptionInRuntime(JarId(plugin_name, maven_id, state.requested_version, state.resolved_version))
        return to_status(state)

    def states(self) -> List[Tuple[str, str, RequestedVersion, ArtifactState]]:
        return [
            (plugin_name, key.maven_id, key.requested_version, state)
            for plugin_name, artifacts in self._plugins_cache.items()
            for key, state in artifacts.items()
        ]

    def request_statuses(self) -> None:
        logger.debug("Requested statuses")
        for plugin_name, maven_id, requested, state in self.states():
            self._status.update_version(plugin_name, maven_id, requested, self._status_for(plugin_name, maven_id, state))

    def request_discovery(self) -> List[Discovery]:
        return [
            _discovery(plugin_name, maven_id, state)
            for plugin_name, maven_id, _, state in self.states()
            if isinstance(state, Cached)
        ]

    def get_location_for(
        self,
        plugin_name: Optional[str],
        maven_id: Optional[str] = None,
        requested_version: Optional[RequestedVersion] = None,
    ) -> Optional[Path]:
        """Path of a cached jar, or the closest cache directory for a partial id."""
        if plugin_name is None:
            return None
        if maven_id is not None and requested_version is not None:
            state = self._plugins_cache.get(plugin_name, {}).get(RequestedPluginKey(maven_id, requested_version))
            return state.jar.path if isinstance(state, Cached) else None

        host_dir = disk.host_cache_dir(self._config.cache_root, self._host_version())
        if maven_id is not None:
            return disk.artifact_cache_dir(self._config.cache_root, self._host_version(), MavenId(maven_id))
        return host_dir

    def get_failed_to_fetch_message_for(
        self, plugin_name: str, maven_id: str, requested_version: RequestedVersion
    ) -> Optional[str]:
        state = self._plugins_cache.get(plugin_name, {}).get(RequestedPluginKey(maven_id, requested_version))
        if isinstance(state, (FailedToFetchState, NotFoundState)):
            return state.message
        return None

    # -- helpers ------------------------------------------------------------

    def _spawn(self, coro) -> Job:
        """Schedule ``coro`` on the storage loop, from any thread."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        job: Job
        if loop is not None and (self._loop is None or loop is self._loop):
            job = loop.create_task(coro)
        elif self._loop is not None:
            job = asyncio.run_coroutine_threadsafe(coro, self._loop)
        else:
            coro.close()
            raise RuntimeError("KefsStorage is not started")

        self._background.add(job)
        job.add_done_callback(self._background.discard)
        return job


class _StorageWatchCallback(FileWatcherCallback):
    def __init__(self, storage: KefsStorage):
        self._storage = storage

    def on_local_repo_change(self, repo_root: Path) -> None:
        self._storage.handle_local_repo_change(repo_root)

    def on_cache_dir_external_change(self) -> None:
        self._storage.handle_cache_dir_external_change()


def _discovery(plugin_name: str, maven_id: str, state: Cached) -> Discovery:
    return Discovery(
        plugin_name=plugin_name,
        maven_id=maven_id,
        requested_version=state.requested_version,
        resolved_version=state.resolved_version,
        origin=state.origin,
        jar=state.jar.path,
        checksum=state.jar.checksum,
        is_local=state.jar.is_local,
        kotlin_version_mismatch=state.jar.kotlin_version_mismatch,
    )


def _plugin_status(bundle: BundleResult) -> ArtifactStatus:
    results: List[LocatorResult] = list(bundle.locator_results.values())
    if bundle.all_found() and results:
        return to_status(results[0].state)
    failures = [r for r in results if isinstance(r.state, (FailedToFetchState, NotFoundState))]
    if failures and len(failures) == len(results):
        return to_status(failures[0].state)
    return PartialSuccess()


def _normalized(path: Path) -> Path:
    try:
        return Path(path).expanduser().resolve()
    except OSError:
        return Path(path).expanduser().absolute()


async def _cancel_all(jobs: List[Job]) -> None:
    current = asyncio.current_task()
    waitable = []
    for job in jobs:
        if job is current or job.done():
            continue
        job.cancel()
        if isinstance(job, asyncio.Future):
            waitable.append(job)
    if waitable:
        await asyncio.gather(*waitable, return_exceptions=True)

