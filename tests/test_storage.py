"""Tests for KefsStorage actualization, lookups and invalidation."""

import asyncio

import pytest

pytest.importorskip("aiohttp")

from watchdog.events import FileDeletedEvent, FileModifiedEvent

from kefs.cache import disk
from kefs.config import KefsConfig
from kefs.constants import Constants
from kefs.debounce import ReloadDebouncer
from kefs.listeners import DiscoveryListener, StatusListener
from kefs.models import Jar, MavenId
from kefs.registry.locator import BundleResult, CachedResult, NotFoundResult
from kefs.settings.models import (
    KotlinArtifactsRepository,
    KotlinPluginDescriptor,
    RepositoryType,
    RequestedPluginDescriptor,
    SettingsState,
    VersionedPluginDescriptor,
)
from kefs.status import Cached, NotFound, NotFoundState, Success
from kefs.storage import KefsStorage
from kefs.versioning.models import RequestedVersion, ResolvedVersion, VersionMatching

HOST = "2.2.0-ij251-78"
REPO = KotlinArtifactsRepository("central", "https://repo.example.com/maven", RepositoryType.URL)
FIRST = MavenId("org.example:a")
SECOND = MavenId("org.example:b")
PLUGIN = KotlinPluginDescriptor("example", (FIRST, SECOND), VersionMatching.EXACT, repositories=(REPO,))
STATE = SettingsState(repositories=(REPO,), plugins=(PLUGIN,))
VERSION = RequestedVersion("1.0.0")


class FakeLocator:
    """Returns a fixed bundle and counts calls."""

    def __init__(self, bundle_factory):
        self._bundle_factory = bundle_factory
        self.calls = 0

    async def locate_artifacts(self, versioned, kotlin_ide_version, cache_root, known=None):
        self.calls += 1
        return self._bundle_factory(versioned)


class RecordingListener(StatusListener, DiscoveryListener):
    """Records status updates and discoveries."""

    def __init__(self):
        self.versions = []
        self.plugins = []
        self.discoveries = []

    def update_plugin(self, plugin_name, status):
        self.plugins.append((plugin_name, status))

    def update_version(self, plugin_name, maven_id, requested_version, status):
        self.versions.append((plugin_name, maven_id, requested_version, status))

    def discovered(self, discovery):
        self.discoveries.append(discovery)


def _cached_bundle(tmp_path, checksum="c1"):
    def factory(versioned):
        results = {}
        for maven_id in versioned.descriptor.ids:
            path = tmp_path / f"{maven_id.artifact_id}.jar"
            path.write_bytes(b"jar")
            jar = Jar(path=path, checksum=checksum, is_local=False)
            state = Cached(jar, versioned.requested_version, ResolvedVersion("1.0.0"), VersionMatching.EXACT, REPO)
            results[maven_id] = CachedResult(jar, state, "1.0.0")
        return BundleResult(results)

    return factory


def _missing_bundle(versioned):
    return BundleResult({
        maven_id: NotFoundResult(NotFoundState(f"missing {maven_id}"), "1.0.0")
        for maven_id in versioned.descriptor.ids
    })


async def _eventually(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture(autouse=True)
def fast_timers(monkeypatch):
    monkeypatch.setattr(Constants, "INVALIDATION_DEBOUNCE_MS", 10)
    monkeypatch.setattr(Constants, "RETRY_DELAY_SEC", 3600)


def _storage(tmp_path, locator, listener, invalidated, state=STATE, watch_files=False):
    config = KefsConfig(cache_root=tmp_path / "cache", auto_update=False, watch_files=watch_files)
    return KefsStorage(
        config,
        state,
        lambda: HOST,
        status_listener=listener,
        invalidate=lambda: invalidated.append(True),
        discovery_listener=listener,
        locator=locator,
    )


class TestActualize:
    """Tests for actualizing a plugin bundle."""

    def test_resolved_bundle(self, tmp_path):
        """A found bundle is cached, discovered, published and invalidates consumers."""
        listener = RecordingListener()
        invalidated = []
        locator = FakeLocator(_cached_bundle(tmp_path))

        async def scenario():
            storage = _storage(tmp_path, locator, listener, invalidated)
            await storage.start()
            try:
                task = await storage.actualize(VersionedPluginDescriptor(PLUGIN, VERSION))
                await task
                await _eventually(lambda: invalidated)
                requested = RequestedPluginDescriptor(PLUGIN, VERSION, SECOND)
                return storage.get_plugin_path(requested), storage.request_discovery()
            finally:
                await storage.stop()

        path, discoveries = asyncio.run(scenario())

        assert path == tmp_path / "b.jar"
        assert len(discoveries) == 2
        assert [d.maven_id for d in listener.discoveries] == ["org.example:a", "org.example:b"]
        assert ("example", "org.example:a", VERSION, Success(VERSION, ResolvedVersion("1.0.0"), VersionMatching.EXACT)) \
            in listener.versions
        assert invalidated == [True]

    def test_unchanged_bundle_is_not_rediscovered(self, tmp_path):
        """A second cycle with the same checksums does not rediscover the jars."""
        listener = RecordingListener()
        locator = FakeLocator(_cached_bundle(tmp_path))

        async def scenario():
            storage = _storage(tmp_path, locator, listener, [])
            await storage.start()
            try:
                versioned = VersionedPluginDescriptor(PLUGIN, VERSION)
                await (await storage.actualize(versioned))
                await (await storage.actualize(versioned))
            finally:
                await storage.stop()

        asyncio.run(scenario())

        assert locator.calls == 2
        assert len(listener.discoveries) == 2

    def test_missing_bundle(self, tmp_path):
        """A bundle that is not found records the failure message."""
        listener = RecordingListener()
        locator = FakeLocator(_missing_bundle)

        async def scenario():
            storage = _storage(tmp_path, locator, listener, [])
            await storage.start()
            try:
                await (await storage.actualize(VersionedPluginDescriptor(PLUGIN, VERSION)))
                requested = RequestedPluginDescriptor(PLUGIN, VERSION, FIRST)
                return storage.get_failed_to_fetch_message_for("example", FIRST.id, VERSION), storage.get_plugin_path(
                    requested
                )
            finally:
                await storage.stop()

        message, path = asyncio.run(scenario())

        assert message == "missing org.example:a"
        assert path is None
        assert ("example", NotFound("missing org.example:a")) in listener.plugins

    def test_concurrent_actualize_shares_task(self, tmp_path):
        """Actualizing a running pair returns the running task."""
        locator = FakeLocator(_cached_bundle(tmp_path))

        async def scenario():
            storage = _storage(tmp_path, locator, RecordingListener(), [])
            await storage.start()
            try:
                versioned = VersionedPluginDescriptor(PLUGIN, VERSION)
                first = await storage.actualize(versioned)
                second = await storage.actualize(versioned)
                await first
                return first is second
            finally:
                await storage.stop()

        assert asyncio.run(scenario()) is True
        assert locator.calls == 1


class TestGetPluginPath:
    """Tests for provider lookups."""

    def test_unknown_version_triggers_actualization(self, tmp_path):
        """A lookup with nothing cached returns None and resolves in the background."""
        locator = FakeLocator(_cached_bundle(tmp_path))
        invalidated = []

        async def scenario():
            storage = _storage(tmp_path, locator, RecordingListener(), invalidated)
            await storage.start()
            try:
                requested = RequestedPluginDescriptor(PLUGIN, VERSION, FIRST)
                first = storage.get_plugin_path(requested)
                await _eventually(lambda: invalidated)
                return first, storage.get_plugin_path(requested)
            finally:
                await storage.stop()

        first, second = asyncio.run(scenario())

        assert first is None
        assert second == tmp_path / "a.jar"
        assert locator.calls == 1

    def test_pending_invalidation_returns_none(self, tmp_path):
        """No paths are handed out while an invalidation is pending."""
        async def scenario():
            storage = _storage(tmp_path, FakeLocator(_cached_bundle(tmp_path)), RecordingListener(), [])
            await storage.start()
            try:
                await (await storage.actualize(VersionedPluginDescriptor(PLUGIN, VERSION)))
                storage.record_provider_call_start()
                pending = storage.invalidation_pending
                path = storage.get_plugin_path(RequestedPluginDescriptor(PLUGIN, VERSION, FIRST))
                storage.record_provider_call_end()
                return pending, path
            finally:
                await storage.stop()

        pending, path = asyncio.run(scenario())

        assert pending is True
        assert path is None

    def test_location_queries(self, tmp_path):
        """Partial ids resolve to cache directories."""
        storage = _storage(tmp_path, FakeLocator(_missing_bundle), RecordingListener(), [])

        assert storage.get_location_for(None) is None
        assert storage.get_location_for("example") == tmp_path / "cache" / HOST
        assert storage.get_location_for("example", FIRST.id) == tmp_path / "cache" / HOST / "org" / "example" / "a"
        assert storage.get_location_for("example", FIRST.id, VERSION) is None


class TestReloadDebouncer:
    """Tests for coalescing reload signals."""

    def test_burst_runs_once_after_ready(self):
        """A burst of signals runs the callback once, only after ready."""
        calls = []

        async def scenario():
            debouncer = ReloadDebouncer(lambda: calls.append(True), delay_ms=10)
            for _ in range(3):
                debouncer.signal()
            await asyncio.sleep(0.05)
            before_ready = list(calls)
            debouncer.mark_ready()
            await asyncio.sleep(0.05)
            return before_ready

        before_ready = asyncio.run(scenario())

        assert before_ready == []
        assert calls == [True]

    def test_signal_after_run_schedules_again(self):
        """Signals after a run schedule a new run."""
        calls = []

        async def scenario():
            debouncer = ReloadDebouncer(lambda: calls.append(True), delay_ms=5)
            debouncer.mark_ready()
            debouncer.signal()
            await asyncio.sleep(0.05)
            debouncer.signal()
            await asyncio.sleep(0.05)
            await debouncer.cancel()

        asyncio.run(scenario())

        assert calls == [True, True]


class SequenceLocator(FakeLocator):
    """Returns one bundle per call, repeating the last one."""

    def __init__(self, *factories):
        super().__init__(None)
        self._factories = list(factories)

    async def locate_artifacts(self, versioned, kotlin_ide_version, cache_root, known=None):
        factory = self._factories[min(self.calls, len(self._factories) - 1)]
        self.calls += 1
        return factory(versioned)


class TestRetry:
    """Tests for retrying unresolved bundles."""

    def test_exhausted_retries_invalidate_once(self, tmp_path, monkeypatch):
        """An unresolved bundle is retried up to the limit, then invalidates once."""
        monkeypatch.setattr(Constants, "RETRY_DELAY_SEC", 0)
        monkeypatch.setattr(Constants, "RETRY_MAX", 2)
        locator = FakeLocator(_missing_bundle)
        invalidated = []

        async def scenario():
            storage = _storage(tmp_path, locator, RecordingListener(), invalidated)
            await storage.start()
            try:
                await (await storage.actualize(VersionedPluginDescriptor(PLUGIN, VERSION)))
                await _eventually(lambda: locator.calls == 3 and invalidated)
                await asyncio.sleep(0.1)
            finally:
                await storage.stop()

        asyncio.run(scenario())

        assert locator.calls == 3
        assert invalidated == [True]

    def test_retry_until_resolved(self, tmp_path, monkeypatch):
        """A retry that resolves the bundle stops retrying and invalidates once."""
        monkeypatch.setattr(Constants, "RETRY_DELAY_SEC", 0)
        locator = SequenceLocator(_missing_bundle, _cached_bundle(tmp_path))
        invalidated = []

        async def scenario():
            storage = _storage(tmp_path, locator, RecordingListener(), invalidated)
            await storage.start()
            try:
                await (await storage.actualize(VersionedPluginDescriptor(PLUGIN, VERSION)))
                await _eventually(lambda: invalidated)
                await asyncio.sleep(0.1)
                return storage.get_plugin_path(RequestedPluginDescriptor(PLUGIN, VERSION, FIRST))
            finally:
                await storage.stop()

        path = asyncio.run(scenario())

        assert locator.calls == 2
        assert invalidated == [True]
        assert path == tmp_path / "a.jar"


class TestFileWatching:
    """Tests for reacting to watcher notifications."""

    def test_local_repo_change_reactualizes(self, tmp_path):
        """A change below a local repository re-resolves the plugins using it."""
        repo_root = tmp_path / "repo"
        repo_root.mkdir()
        local = KotlinArtifactsRepository("local", str(repo_root), RepositoryType.PATH)
        plugin = KotlinPluginDescriptor("example", (FIRST, SECOND), VersionMatching.EXACT, repositories=(local,))
        state = SettingsState(repositories=(local,), plugins=(plugin,))
        locator = FakeLocator(_cached_bundle(tmp_path))

        async def scenario():
            storage = _storage(tmp_path, locator, RecordingListener(), [], state=state, watch_files=True)
            await storage.start()
            try:
                await (await storage.actualize(VersionedPluginDescriptor(plugin, VERSION)))
                storage.file_watcher.process_event(
                    repo_root.resolve(), False, FileModifiedEvent(str(repo_root / "a.jar"))
                )
                await _eventually(lambda: locator.calls == 2)
            finally:
                await storage.stop()

        asyncio.run(scenario())

        assert locator.calls == 2

    def test_external_cache_change_clears_state(self, tmp_path, monkeypatch):
        """A foreign change in the cache directory drops the state and invalidates."""
        monkeypatch.setattr(Constants, "SELF_UPDATE_GRACE_SEC", 0)
        invalidated = []
        host_dir = disk.host_cache_dir(tmp_path / "cache", HOST)

        async def scenario():
            storage = _storage(
                tmp_path, FakeLocator(_cached_bundle(tmp_path)), RecordingListener(), invalidated, watch_files=True
            )
            await storage.start()
            try:
                await (await storage.actualize(VersionedPluginDescriptor(PLUGIN, VERSION)))
                await _eventually(lambda: invalidated)
                storage.file_watcher.process_event(
                    host_dir.resolve(), True, FileDeletedEvent(str(host_dir / "org" / "example" / "a.jar"))
                )
                await _eventually(lambda: len(invalidated) == 2)
                return storage.states()
            finally:
                await storage.stop()

        states = asyncio.run(scenario())

        assert states == []
        assert invalidated == [True, True]

    def test_cache_change_during_self_update_is_ignored(self, tmp_path):
        """Cache events while kefs writes the cache itself keep the state."""
        invalidated = []
        host_dir = disk.host_cache_dir(tmp_path / "cache", HOST)

        async def scenario():
            storage = _storage(
                tmp_path, FakeLocator(_cached_bundle(tmp_path)), RecordingListener(), invalidated, watch_files=True
            )
            await storage.start()
            try:
                await (await storage.actualize(VersionedPluginDescriptor(PLUGIN, VERSION)))
                await _eventually(lambda: invalidated)
                with storage.file_watcher.self_update():
                    storage.file_watcher.process_event(
                        host_dir.resolve(), True, FileModifiedEvent(str(host_dir / "a.jar"))
                    )
                await asyncio.sleep(0.1)
                return storage.states()
            finally:
                await storage.stop()

        states = asyncio.run(scenario())

        assert len(states) == 2
        assert invalidated == [True]

    def test_watches_registered_on_start(self, tmp_path):
        """Starting the storage watches local repositories and the host cache directory."""
        repo_root = tmp_path / "repo"
        repo_root.mkdir()
        local = KotlinArtifactsRepository("local", str(repo_root), RepositoryType.PATH)
        state = SettingsState(repositories=(local, REPO), plugins=(PLUGIN,))

        async def scenario():
            storage = _storage(
                tmp_path, FakeLocator(_missing_bundle), RecordingListener(), [], state=state, watch_files=True
            )
            await storage.start()
            try:
                watcher = storage.file_watcher
                return watcher.is_watching(repo_root), watcher.is_watching(disk.host_cache_dir(tmp_path / "cache", HOST))
            finally:
                await storage.stop()

        repo_watched, cache_watched = asyncio.run(scenario())

        assert repo_watched is True
        assert cache_watched is True

    def test_disabled_watching(self, tmp_path):
        """No watcher is created when file watching is off."""
        storage = _storage(tmp_path, FakeLocator(_missing_bundle), RecordingListener(), [])
        assert storage.file_watcher is None
