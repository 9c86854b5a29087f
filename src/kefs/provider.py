"""Maps compiler-plugin classpath entries to configured plugin descriptors."""

from __future__ import annotations

import logging
import re
from pathlib import Path, PurePath
from typing import Iterable, Optional, Union

from kefs.common.logging_utils import extra_context, is_debug_enabled
from kefs.settings.models import KotlinPluginDescriptor, RequestedPluginDescriptor
from kefs.settings.replacement import LIB_VERSION_GROUP, ReplacementPattern
from kefs.versioning.models import RequestedVersion

logger = logging.getLogger(__name__)

SEMVER_REGEX = re.compile(r"(\d+\.\d+\.\d+)")

# Classpath entries that are never compiler plugins
IGNORE_LIST = (
    "org.jetbrains.kotlin/kotlin-scripting-jvm/",
    "org.jetbrains.kotlin/kotlin-scripting-common/",
    "org.jetbrains.kotlin/kotlin-stdlib/",
    "org.jetbrains.kotlin/kotlin-script-runtime/",
    "org.jetbrains/annotations/",
    "lib/groovy",
    "lib/groovy-ant",
    "lib/groovy-astbuilder",
    "lib/groovy-console",
    "lib/groovy-datetime",
    "lib/groovy-dateutil",
    "lib/groovy-groovydoc",
    "lib/groovy-json",
    "lib/groovy-nio",
    "lib/groovy-sql",
    "lib/groovy-templates",
    "lib/groovy-test",
    "lib/groovy-xml",
    "lib/javaparser-core",
    "lib/kotlin-stdlib",
    "lib/kotlin-reflect",
    "lib/gradle-installation-beacon",
    "lib/gradle-api",
    "lib/gradle-kotlin-dsl",
    "lib/gradle-kotlin-dsl-shared-runtime",
    "lib/gradle-kotlin-dsl-tooling-models",
)

PathLike = Union[str, PurePath]


def is_ignored(path: PathLike) -> bool:
    text = PurePath(path).as_posix()
    return any(entry in text for entry in IGNORE_LIST)


def locate_descriptor(path: PathLike, descriptor: KotlinPluginDescriptor) -> Optional[RequestedPluginDescriptor]:
    """Match one classpath entry against one descriptor.

    Descriptors with a replacement pattern match on the jar file name only;
    the others match on the Maven repository path of one of their ids.
    """
    path = PurePath(path)
    if descriptor.replacement is not None:
        return _replacement_matching(path, descriptor, descriptor.replacement)

    found = SEMVER_REGEX.findall(path.name)
    if not found:
        return None
    return _default_matching(path, descriptor, found[-1])


def _replacement_matching(
    path: PurePath, descriptor: KotlinPluginDescriptor, replacement: ReplacementPattern
) -> Optional[RequestedPluginDescriptor]:
    if path.suffix != ".jar":
        return None
    stem = path.name[: -len(".jar")]
    for maven_id in descriptor.ids:
        matched = replacement.detect_regex(maven_id).search(stem)
        if matched is None:
            continue
        lib_version = matched.group(LIB_VERSION_GROUP)
        if lib_version:
            return RequestedPluginDescriptor(descriptor, RequestedVersion(lib_version), maven_id)
    return None


def _default_matching(
    path: PurePath, descriptor: KotlinPluginDescriptor, core_version: str
) -> Optional[RequestedPluginDescriptor]:
    text = path.as_posix()
    for maven_id in descriptor.ids:
        variants = (
            f"{maven_id.group_path}/{maven_id.artifact_id}/",
            f"{maven_id.group_id}/{maven_id.artifact_id}/",
        )
        if not any(f"/{v}" in text or text.startswith(v) for v in variants):
            continue
        # 0.1.0 in my-plugin-0.1.0-dev-123.jar -> 0.1.0-dev-123
        tail = path.name.rsplit(core_version, 1)[1]
        if "." in tail:
            tail = tail.rsplit(".", 1)[0]
        return RequestedPluginDescriptor(descriptor, RequestedVersion(core_version + tail), maven_id)
    return None


def find_requested_descriptor(
    path: PathLike, plugins: Iterable[KotlinPluginDescriptor]
) -> Optional[RequestedPluginDescriptor]:
    """First enabled descriptor matching ``path``, or None."""
    if is_ignored(path):
        return None
    for descriptor in plugins:
        if not descriptor.enabled:
            continue
        requested = locate_descriptor(path, descriptor)
        if requested is not None:
            if is_debug_enabled(logger):
                logger.debug(
                    "Classpath entry matched",
                    extra=extra_context(
                        event="decision",
                        component="provider",
                        action="match",
                        outcome="match",
                        target=str(path),
                        plugin=descriptor.name,
                        requested=str(requested.requested_version),
                    ),
                )
            return requested
    return None


class KefsProvider:
    """Answers "which jar should replace this classpath entry?" for a host."""

    def __init__(self, storage) -> None:
        self._storage = storage

    def provide_bundled_plugin_jar(self, user_supplied_jar: PathLike) -> Optional[Path]:
        self._storage.record_provider_call_start()
        try:
            requested = find_requested_descriptor(user_supplied_jar, self._storage.state.plugins)
            if requested is None:
                return None
            return self._storage.get_plugin_path(requested)
        finally:
            self._storage.record_provider_call_end()
