"""Core data models shared by the cache, locator and analysis layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Optional

from kefs.versioning.models import RequestedVersion, ResolvedVersion


@dataclass(frozen=True, order=True)
class MavenId:
    """``groupId:artifactId`` coordinates."""
    id: str

    @classmethod
    def parse(cls, coordinates: str) -> "MavenId":
        return cls(coordinates.strip())

    @property
    def group_id(self) -> str:
        return self.id.split(":", 1)[0]

    @property
    def artifact_id(self) -> str:
        return self.id.split(":", 1)[1] if ":" in self.id else self.id

    @property
    def group_path(self) -> str:
        """Group id as a URL path fragment (``org/example``)."""
        return self.group_id.replace(".", "/")

    def local_group_path(self) -> PurePosixPath:
        return PurePosixPath(*self.group_id.split("."))

    def __str__(self) -> str:
        return self.id


@dataclass(frozen=True)
class JarId:
    """Logical identity of a resolved jar.

    ``resolved_version`` is informational only: two results for the same
    request are the same entry even if resolution picked a newer version.
    """
    plugin_name: str
    maven_id: str
    requested_version: RequestedVersion
    resolved_version: ResolvedVersion = field(compare=False, hash=False)

    def __str__(self) -> str:
        return f"{self.plugin_name}|{self.maven_id}|{self.requested_version}|{self.resolved_version}"


@dataclass(frozen=True)
class KotlinVersionMismatch:
    """Host compiler version differs from the one the jar was built for."""
    ide_version: str
    jar_version: str

    def __str__(self) -> str:
        return f"Used version: {self.jar_version}, expected version: {self.ide_version}"


@dataclass(frozen=True)
class Jar:
    path: Path
    checksum: str
    is_local: bool
    kotlin_version_mismatch: Optional[KotlinVersionMismatch] = None


@dataclass(frozen=True)
class JarDiskMetadata:
    """Sidecar stored next to every cached jar."""
    origin_repository_name: str

    def to_json(self) -> dict:
        return {"originRepositoryName": self.origin_repository_name}

    @classmethod
    def from_json(cls, data: object) -> Optional["JarDiskMetadata"]:
        if not isinstance(data, dict):
            return None
        name = data.get("originRepositoryName")
        if not isinstance(name, str) or not name:
            return None
        return cls(origin_repository_name=name)
