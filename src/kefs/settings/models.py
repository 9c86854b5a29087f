"""Configuration models: repositories and plugin descriptors."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Tuple

from kefs.models import MavenId
from kefs.settings.replacement import ReplacementPattern
from kefs.versioning.models import MatchFilter, RequestedVersion, VersionMatching


class RepositoryType(Enum):
    URL = "URL"
    PATH = "PATH"


@dataclass(frozen=True)
class KotlinArtifactsRepository:
    """A Maven-layout repository, remote (URL) or on the local filesystem (PATH)."""
    name: str
    value: str
    type: RepositoryType

    def __str__(self) -> str:
        prefix = "Remote" if self.type is RepositoryType.URL else "Local"
        return f"{prefix} repository ({self.name}): {self.value}"


@dataclass(frozen=True)
class KotlinPluginDescriptor:
    """A configured compiler plugin.

    Several ``ids`` make a bundle: all members are resolved to the same
    library version or the bundle is reported incomplete.
    """
    name: str
    ids: Tuple[MavenId, ...]
    version_matching: VersionMatching = VersionMatching.SAME_MAJOR
    enabled: bool = True
    ignore_exceptions: bool = False
    repositories: Tuple[KotlinArtifactsRepository, ...] = ()
    replacement: Optional[ReplacementPattern] = None

    def has_artifact(self, maven_id: str) -> bool:
        return any(artifact.id == maven_id for artifact in self.ids)

    def with_changes(self, **changes) -> "KotlinPluginDescriptor":
        return replace(self, **changes)


@dataclass(frozen=True)
class VersionedPluginDescriptor:
    """A descriptor pinned to one requested version; keyed by (name, version)."""
    descriptor: KotlinPluginDescriptor = field(compare=False, hash=False)
    requested_version: RequestedVersion
    name: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", self.descriptor.name)

    def as_match_filter(self) -> MatchFilter:
        return MatchFilter(self.requested_version, self.descriptor.version_matching)

    def __str__(self) -> str:
        return f"{self.descriptor.name}|{self.requested_version}"


@dataclass(frozen=True)
class RequestedPluginDescriptor(VersionedPluginDescriptor):
    """A versioned descriptor narrowed to one member artifact."""
    artifact: MavenId

    def versioned(self) -> VersionedPluginDescriptor:
        return VersionedPluginDescriptor(self.descriptor, self.requested_version)

    def __str__(self) -> str:
        return f"{super().__str__()}|{self.artifact}"


@dataclass(frozen=True)
class SettingsState:
    repositories: Tuple[KotlinArtifactsRepository, ...] = ()
    plugins: Tuple[KotlinPluginDescriptor, ...] = ()

    def plugin_by_name(self, name: str) -> Optional[KotlinPluginDescriptor]:
        return next((p for p in self.plugins if p.name == name), None)

    def repository_by_name(self, name: str) -> Optional[KotlinArtifactsRepository]:
        return next((r for r in self.repositories if r.name == name), None)
