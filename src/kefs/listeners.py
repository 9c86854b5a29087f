"""Callback interfaces between the storage core and its consumers."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from kefs.models import JarId, KotlinVersionMismatch
from kefs.settings.models import KotlinArtifactsRepository
from kefs.status import ArtifactStatus
from kefs.versioning.models import RequestedVersion, ResolvedVersion


class StatusListener:
    """Receives status updates per plugin, artifact and requested version."""

    def update_plugin(self, plugin_name: str, status: ArtifactStatus) -> None:
        pass

    def update_artifact(self, plugin_name: str, maven_id: str, status: ArtifactStatus) -> None:
        pass

    def update_version(
        self,
        plugin_name: str,
        maven_id: str,
        requested_version: RequestedVersion,
        status: ArtifactStatus,
    ) -> None:
        pass

    def reset(self) -> None:
        pass

    def redraw(self) -> None:
        pass


class NullStatusListener(StatusListener):
    """Discards every update."""


@dataclass(frozen=True)
class Discovery:
    """A jar that became available in the cache."""
    plugin_name: str
    maven_id: str
    requested_version: RequestedVersion
    resolved_version: ResolvedVersion
    origin: KotlinArtifactsRepository
    jar: Path
    checksum: str
    is_local: bool
    kotlin_version_mismatch: Optional[KotlinVersionMismatch] = None

    @property
    def jar_id(self) -> JarId:
        return JarId(self.plugin_name, self.maven_id, self.requested_version, self.resolved_version)


class DiscoveryListener:
    """Told about every new or changed jar; also answers exception queries."""

    def discovered(self, discovery: Discovery) -> None:
        pass

    def has_exceptions(self, plugin_name: str, maven_id: str, requested_version: RequestedVersion) -> bool:
        return False
