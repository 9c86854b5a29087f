"""Per-jar bookkeeping of runtime exceptions and the report files built from it."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional, Set, Tuple

from kefs.analysis.correlation import distinct_stacktrace
from kefs.analysis.jar_analyzer import JarAnalysisFailure, analyze_jar
from kefs.analysis.throwable import ThrowableInfo, as_throwable_info
from kefs.common.logging_utils import extra_context, is_debug_enabled
from kefs.constants import Constants
from kefs.listeners import Discovery, DiscoveryListener, NullStatusListener, StatusListener
from kefs.models import JarId, KotlinVersionMismatch
from kefs.settings.models import KotlinArtifactsRepository, SettingsState
from kefs.status import ExceptionInRuntime
from kefs.versioning.models import RequestedVersion, ResolvedVersion

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExceptionsReport:
    """Snapshot of what is known about exceptions attributed to one jar.

    Equality only considers the flags and the exception ids so that a UI can
    tell whether anything worth re-rendering changed.
    """
    plugin_name: str = field(compare=False)
    maven_id: str = field(compare=False)
    requested_version: RequestedVersion = field(compare=False)
    resolved_version: ResolvedVersion = field(compare=False)
    origin: KotlinArtifactsRepository = field(compare=False)
    checksum: str = field(compare=False)
    is_local: bool = field(compare=False)
    reloaded_same: bool
    is_probably_incompatible: bool
    kotlin_version_mismatch: Optional[KotlinVersionMismatch]
    exception_ids: Tuple[str, ...]
    exceptions: Tuple[ThrowableInfo, ...] = field(compare=False, default=())


@dataclass(frozen=True)
class _JarMetadata:
    discovery: Discovery
    reloaded_same: bool = False
    is_probably_incompatible: bool = False


@dataclass(frozen=True)
class _CaughtException:
    jar_id: JarId
    exception_id: str
    exception: ThrowableInfo = field(compare=False)


def exception_id(throwable, lookup: Set[str]) -> str:
    info = as_throwable_info(throwable)
    return f"{info.class_name}|{info.message or ''}|{distinct_stacktrace(info, lookup)}"


class ExceptionReporter(DiscoveryListener):
    """Collects discovered jars and the exceptions attributed to them."""

    def __init__(
        self,
        settings: Callable[[], SettingsState],
        status_listener: Optional[StatusListener] = None,
        exceptions_cache_size: Optional[int] = None,
    ) -> None:
        self._settings = settings
        self._status = status_listener or NullStatusListener()
        self._cache_size = exceptions_cache_size or Constants.EXCEPTIONS_CACHE_SIZE
        self._metadata: Dict[JarId, _JarMetadata] = {}
        self._class_names: Dict[JarId, FrozenSet[str]] = {}
        self._pending: Dict[JarId, Path] = {}
        self._caught: Dict[str, List[_CaughtException]] = {}

    # DiscoveryListener

    def discovered(self, discovery: Discovery) -> None:
        jar_id = discovery.jar_id
        previous = self._metadata.get(jar_id)
        if previous is not None and previous.discovery.checksum == discovery.checksum:
            self._metadata[jar_id] = replace(previous, discovery=discovery, reloaded_same=True)
            return

        self._metadata[jar_id] = _JarMetadata(discovery=discovery)
        caught = self._caught.get(discovery.plugin_name)
        if caught:
            self._caught[discovery.plugin_name] = [c for c in caught if c.jar_id != jar_id]
        self._class_names.pop(jar_id, None)
        self._pending[jar_id] = discovery.jar
        if is_debug_enabled(logger):
            logger.debug(
                "Jar registered for exception analysis",
                extra=extra_context(
                    event="discovery",
                    component="reporter",
                    target=str(jar_id),
                    checksum=discovery.checksum,
                ),
            )

    def has_exceptions(self, plugin_name: str, maven_id: str, requested_version: RequestedVersion) -> bool:
        return any(
            c.jar_id.maven_id == maven_id and c.jar_id.requested_version == requested_version
            for c in self._caught.get(plugin_name, ())
        )

    # Analysis

    async def lookup(self) -> Dict[JarId, FrozenSet[str]]:
        """Class names per jar, analyzing newly discovered jars first."""
        pending, self._pending = self._pending, {}
        for jar_id, path in pending.items():
            result = await asyncio.to_thread(analyze_jar, path)
            if isinstance(result, JarAnalysisFailure):
                logger.warning(
                    "Skipping jar in exception analysis: %s",
                    result.message,
                    extra=extra_context(event="analysis", component="reporter", outcome="failed", target=str(jar_id)),
                )
                continue
            if jar_id in self._metadata:
                self._class_names[jar_id] = result.fq_names
        return dict(self._class_names)

    def matched(self, jar_ids: List[JarId], throwable, is_probably_incompatible: bool) -> List[JarId]:
        """Record an exception against the jars it was attributed to.

        Plugins configured with ``ignore_exceptions`` are skipped.

        Returns:
            The jar ids for which the exception was not seen before.
        """
        info = as_throwable_info(throwable)
        if not jar_ids:
            return []
        lookup = self._class_names.get(jar_ids[0], frozenset())
        exc_id = exception_id(info, set(lookup))
        settings = self._settings()
        fresh: List[JarId] = []

        for jar_id in jar_ids:
            plugin = settings.plugin_by_name(jar_id.plugin_name)
            if plugin is None or plugin.ignore_exceptions:
                continue

            metadata = self._metadata.get(jar_id)
            if metadata is not None and is_probably_incompatible and not metadata.is_probably_incompatible:
                self._metadata[jar_id] = replace(metadata, is_probably_incompatible=True)

            caught = self._caught.setdefault(jar_id.plugin_name, [])
            entry = _CaughtException(jar_id, exc_id, info)
            if entry in caught:
                continue
            caught.append(entry)
            del caught[: max(0, len(caught) - self._cache_size)]
            fresh.append(jar_id)

        for jar_id in fresh:
            logger.info(
                "Exception attributed to %s (%s)",
                jar_id.plugin_name,
                jar_id.maven_id,
                extra=extra_context(event="exception", component="reporter", target=str(jar_id)),
            )
            self._status.update_version(
                jar_id.plugin_name, jar_id.maven_id, jar_id.requested_version, ExceptionInRuntime(jar_id)
            )
        if fresh:
            self._status.redraw()
        return fresh

    def get_report(self, jar_id: JarId) -> Optional[ExceptionsReport]:
        exceptions = [c for c in self._caught.get(jar_id.plugin_name, ()) if c.jar_id == jar_id]
        metadata = self._metadata.get(jar_id)
        if not exceptions or metadata is None:
            return None
        discovery = metadata.discovery
        return ExceptionsReport(
            plugin_name=discovery.plugin_name,
            maven_id=discovery.maven_id,
            requested_version=discovery.requested_version,
            resolved_version=discovery.resolved_version,
            origin=discovery.origin,
            checksum=discovery.checksum,
            is_local=discovery.is_local,
            reloaded_same=metadata.reloaded_same,
            is_probably_incompatible=metadata.is_probably_incompatible,
            kotlin_version_mismatch=discovery.kotlin_version_mismatch,
            exception_ids=tuple(c.exception_id for c in exceptions),
            exceptions=tuple(c.exception for c in exceptions),
        )

    def reports(self) -> List[ExceptionsReport]:
        result = []
        for jar_id in list(self._metadata):
            report = self.get_report(jar_id)
            if report is not None:
                result.append(report)
        return result

    def clear(self) -> None:
        self._metadata.clear()
        self._class_names.clear()
        self._pending.clear()
        self._caught.clear()

    def write_report(self, report: ExceptionsReport, reports_dir: Path, kotlin_ide_version: str,
                     now: Optional[datetime] = None) -> Path:
        reports_dir = Path(reports_dir)
        reports_dir.mkdir(parents=True, exist_ok=True)
        path = reports_dir / format_report_filename(report, now)
        path.write_text(format_exception_report(report, kotlin_ide_version), encoding="utf-8")
        logger.info("Exception report written to %s", path)
        return path


def format_exception_report(report: ExceptionsReport, kotlin_ide_version: str) -> str:
    mismatch = report.kotlin_version_mismatch if report.kotlin_version_mismatch is not None else "none"
    traces = "\n\n".join(info.format() for info in report.exceptions)
    return (
        f"KEFS Report for {report.plugin_name} ({report.maven_id})\n"
        "\n"
        f"Kotlin IDE version: {kotlin_ide_version}\n"
        f"Kotlin version mismatch: {mismatch}\n"
        f"Requested version: {report.requested_version}\n"
        f"Resolved version: {report.resolved_version}\n"
        f"Origin repository: {report.origin.value}\n"
        f"Checksum: {report.checksum}\n"
        f"Is probably incompatible: {str(report.is_probably_incompatible).lower()}\n"
        "\n"
        "Exceptions:\n"
        f"{traces}"
    )


def format_report_filename(report: ExceptionsReport, now: Optional[datetime] = None) -> str:
    timestamp = (now or datetime.now()).strftime("%Y-%m-%dT%H-%M-%S")
    stem = f"{report.plugin_name}-{report.maven_id}-{timestamp}"
    return stem.replace(":", "-").replace(".", "-") + ".txt"
