"""Data models for versioning and version matching."""

from dataclasses import dataclass
from enum import Enum


class VersionMatching(Enum):
    """Strategy used to pick a version from a repository listing."""
    EXACT = "EXACT"
    SAME_MAJOR = "SAME_MAJOR"
    LATEST = "LATEST"


@dataclass(frozen=True)
class RequestedVersion:
    """Version string as requested by the build (never a resolution result)."""
    value: str

    def __str__(self) -> str:
        return self.value

    def as_resolved_for_disk_search(self) -> "ResolvedVersion":
        """Explicit conversion used when the request itself names a file on disk."""
        return ResolvedVersion(self.value)


@dataclass(frozen=True)
class ResolvedVersion:
    """Concrete library version chosen for a request."""
    value: str

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class MatchFilter:
    """Requested version plus the strategy to satisfy it."""
    requested_version: RequestedVersion
    matching: VersionMatching
