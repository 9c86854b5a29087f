"""Naming rewrites for artifacts republished under different coordinates.

Some libraries publish their IDE compiler plugin under a different artifact
name and version scheme than the one referenced by the build. A
``ReplacementPattern`` describes that convention with three macro strings:

* ``version``: how the published version is composed, e.g.
  ``<kotlin-version>-<lib-version>``;
* ``detect``: how the jar on the build classpath is named, e.g.
  ``<artifact-id>``;
* ``search``: the artifact id to look up in repositories, e.g.
  ``kotlinx-rpc-<artifact-id>``.

Example: with the values above, ``org.jetbrains.kotlinx:compiler-plugin-k2``
at library version ``0.10.2`` for host ``2.2.0-ij251-78`` is searched as
``kotlinx-rpc-compiler-plugin-k2`` version ``2.2.0-ij251-78-0.10.2``.
"""
from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Pattern, Tuple

from kefs.models import MavenId
from kefs.settings.validation import (
    ARTIFACT_ID_MACRO,
    KOTLIN_VERSION_MACRO,
    LIB_VERSION_MACRO,
    validate_jar_pattern,
    validate_version_pattern,
)

KOTLIN_VERSION_GROUP = "kotlinVersion"
LIB_VERSION_GROUP = "libVersion"

_VERSION_BODY = r"\d+\.\d+\.\d+(?:(?:\.|\+|-)[\w.+-]+)?"


def _literal_split(pattern: str, macros: Iterable[str]) -> List[Tuple[bool, str]]:
    """Split a pattern into (is_macro, text) parts."""
    macro_regex = "(" + "|".join(re.escape(m) for m in macros) + ")"
    parts = []
    for chunk in re.split(macro_regex, pattern):
        if not chunk:
            continue
        parts.append((chunk in macros, chunk))
    return parts


@dataclass(frozen=True)
class ReplacementPattern:
    version: str
    detect: str
    search: str
    _detect_cache: Dict[str, Pattern[str]] = field(
        default_factory=dict, init=False, repr=False, compare=False, hash=False
    )
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False, hash=False
    )

    def validate(self) -> Optional[str]:
        """Return the first validation error of the three patterns, if any."""
        for label, error in (
            ("version", validate_version_pattern(self.version)),
            ("detect", validate_jar_pattern(self.detect)),
            ("search", validate_jar_pattern(self.search)),
        ):
            if error is not None:
                return f"Invalid {label} pattern '{getattr(self, label)}': {error}"
        return None

    @property
    def version_regex(self) -> str:
        """Regex source for the version pattern with named version groups.

        Literal text is escaped so dots and plus signs match themselves.
        """
        pieces = []
        for is_macro, text in _literal_split(self.version, (KOTLIN_VERSION_MACRO, LIB_VERSION_MACRO)):
            if not is_macro:
                pieces.append(re.escape(text))
            elif text == KOTLIN_VERSION_MACRO:
                pieces.append(f"(?P<{KOTLIN_VERSION_GROUP}>{_VERSION_BODY})")
            else:
                pieces.append(f"(?P<{LIB_VERSION_GROUP}>{_VERSION_BODY})")
        return "".join(pieces)

    def detect_regex(self, maven_id: MavenId) -> Pattern[str]:
        """Compiled detect regex for one artifact, cached per maven id."""
        with self._lock:
            compiled = self._detect_cache.get(maven_id.id)
            if compiled is None:
                source = re.escape(self.detect.replace(ARTIFACT_ID_MACRO, maven_id.artifact_id))
                compiled = re.compile(f"{source}-{self.version_regex}")
                self._detect_cache[maven_id.id] = compiled
            return compiled

    def get_version_string(self, kotlin_version: str, lib_version: str) -> str:
        return (
            self.version
            .replace(KOTLIN_VERSION_MACRO, kotlin_version)
            .replace(LIB_VERSION_MACRO, lib_version)
        )

    def get_detect_string(self, maven_id: MavenId, version: str) -> str:
        return f"{self.detect.replace(ARTIFACT_ID_MACRO, maven_id.artifact_id)}-{version}"

    def get_artifact_string(self, maven_id: MavenId) -> str:
        return self.search.replace(ARTIFACT_ID_MACRO, maven_id.artifact_id)

    def match_version(self, version: str) -> Optional[Tuple[str, str]]:
        """Split a published version into ``(kotlin_version, lib_version)``."""
        matched = re.fullmatch(self.version_regex, version)
        if matched is None:
            return None
        return matched.group(KOTLIN_VERSION_GROUP), matched.group(LIB_VERSION_GROUP)

    def lib_versions_for(self, versions: Iterable[str], kotlin_version: str) -> Dict[str, str]:
        """Map lib version to published version for entries built for ``kotlin_version``."""
        result: Dict[str, str] = {}
        for published in versions:
            parts = self.match_version(published)
            if parts is not None and parts[0] == kotlin_version:
                result.setdefault(parts[1], published)
        return result

    def disk_glob(self, maven_id: MavenId, kotlin_version: str) -> Tuple[str, str]:
        """Return ``(prefix, suffix)`` of cached jar names around the lib version."""
        head, _, tail = self.get_version_string(kotlin_version, "*").partition("*")
        return f"{self.get_artifact_string(maven_id)}-{head}", f"{tail}.jar"
