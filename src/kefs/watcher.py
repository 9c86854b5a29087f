"""Filesystem watching of local repositories and the host cache directory.

Changes below a local repository root re-actualize the plugins served from
it. Changes in the cache directory that kefs did not make itself drop the
in-memory state. While a self-update is marked, and for a short grace period
after it, cache events are attributed to kefs and ignored.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional, Set

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.observers.api import ObservedWatch

from kefs.common.logging_utils import extra_context, is_debug_enabled
from kefs.constants import Constants

logger = logging.getLogger(__name__)

_RELEVANT_EVENTS = frozenset({EVENT_TYPE_CREATED, EVENT_TYPE_DELETED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED})
_STAGING_SUFFIXES = (Constants.DOWNLOADING_EXTENSION, ".tmp")


class FileWatcherCallback:
    """Receiver of watcher notifications."""

    def on_local_repo_change(self, repo_root: Path) -> None:
        pass

    def on_cache_dir_external_change(self) -> None:
        pass


class _RootEventHandler(FileSystemEventHandler):
    """Forwards the events below one registered root to the watcher."""

    def __init__(self, watcher: "KefsFileWatcher", root: Path, is_cache_dir: bool):
        super().__init__()
        self._watcher = watcher
        self._root = root
        self._is_cache_dir = is_cache_dir

    def on_any_event(self, event: FileSystemEvent) -> None:
        self._watcher.process_event(self._root, self._is_cache_dir, event)


class KefsFileWatcher:
    """Watches local repository trees and the host cache directory."""

    def __init__(self, callback: FileWatcherCallback, loop: Optional[asyncio.AbstractEventLoop] = None):
        """Initialize the watcher.

        Args:
            callback: Receives the notifications.
            loop: Loop the callbacks are scheduled on; without one they run
                on the observer thread.
        """
        self._callback = callback
        self._loop = loop
        self._observer: Optional[Observer] = None
        self._lock = threading.Lock()
        self._watches: Dict[Path, ObservedWatch] = {}
        self._local_roots: Set[Path] = set()
        self._self_updates = 0
        self._quiet_until = 0.0

    # -- lifecycle ----------------------------------------------------------

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        if loop is not None:
            self._loop = loop
        if self._observer is None:
            observer = Observer()
            observer.daemon = True
            observer.start()
            self._observer = observer
            logger.debug("File watcher started")

    def stop(self) -> None:
        """Stop the observer thread and forget every registration."""
        observer, self._observer = self._observer, None
        with self._lock:
            self._watches.clear()
            self._local_roots.clear()
        if observer is not None:
            observer.stop()
            observer.join()
            logger.debug("File watcher stopped")

    # -- registration -------------------------------------------------------

    def register_local_repo(self, path: Path) -> bool:
        root = _normalized(path)
        with self._lock:
            self._local_roots.add(root)
        return self._schedule(root, is_cache_dir=False)

    def register_cache_dir(self, path: Path) -> bool:
        return self._schedule(_normalized(path), is_cache_dir=True)

    def cancel_all_watches(self) -> None:
        with self._lock:
            self._watches.clear()
        if self._observer is not None:
            self._observer.unschedule_all()

    def is_watching(self, path: Path) -> bool:
        with self._lock:
            return _normalized(path) in self._watches

    def _schedule(self, root: Path, is_cache_dir: bool) -> bool:
        with self._lock:
            if root in self._watches:
                return True
        if self._observer is None:
            logger.debug("File watcher is not started, not watching %s", root)
            return False
        if not root.is_dir():
            logger.debug("Not watching missing directory %s", root)
            return False
        try:
            watch = self._observer.schedule(_RootEventHandler(self, root, is_cache_dir), str(root), recursive=True)
        except OSError as exc:
            logger.warning("Failed to watch %s: %s", root, exc)
            return False
        with self._lock:
            self._watches[root] = watch
        logger.debug("Watching %s (%s)", root, "cache" if is_cache_dir else "local repository")
        return True

    # -- self updates -------------------------------------------------------

    def mark_self_update_start(self) -> None:
        with self._lock:
            self._self_updates += 1

    def mark_self_update_end(self) -> None:
        with self._lock:
            self._self_updates = max(0, self._self_updates - 1)
            self._quiet_until = time.monotonic() + Constants.SELF_UPDATE_GRACE_SEC

    @contextmanager
    def self_update(self) -> Iterator[None]:
        self.mark_self_update_start()
        try:
            yield
        finally:
            self.mark_self_update_end()

    def _is_self_updating(self) -> bool:
        with self._lock:
            return self._self_updates > 0 or time.monotonic() < self._quiet_until

    # -- events -------------------------------------------------------------

    def process_event(self, root: Path, is_cache_dir: bool, event: FileSystemEvent) -> None:
        """Route one filesystem event below ``root`` to the callback."""
        if event.event_type not in _RELEVANT_EVENTS:
            return
        path = Path(_as_str(event.src_path))
        if path.name.endswith(_STAGING_SUFFIXES):
            return

        if not is_cache_dir:
            self._dispatch(self._callback.on_local_repo_change, root)
            return

        if _is_reports_path(path, root):
            return
        if self._is_self_updating():
            return

        if is_debug_enabled(logger):
            logger.debug(
                "External change in cache directory",
                extra=extra_context(
                    event="file_watch",
                    component="watcher",
                    action=event.event_type,
                    target=str(path),
                ),
            )
        self._dispatch(self._callback.on_cache_dir_external_change)

    def _dispatch(self, fn: Callable[..., None], *args) -> None:
        loop = self._loop
        if loop is None:
            fn(*args)
            return
        if loop.is_closed():
            logger.debug("Dropping file event, the loop is closed")
            return
        loop.call_soon_threadsafe(fn, *args)


def _as_str(path) -> str:
    if isinstance(path, bytes):
        return path.decode("utf-8", errors="replace")
    return str(path)


def _is_reports_path(path: Path, root: Path) -> bool:
    try:
        parts = path.relative_to(root).parts
    except ValueError:
        return False
    return bool(parts) and parts[0] == Constants.REPORTS_DIR_NAME


def _normalized(path: Path) -> Path:
    try:
        return Path(path).expanduser().resolve()
    except OSError:
        return Path(path).expanduser().absolute()
