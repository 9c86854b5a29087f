"""Maven version ordering and version selection."""

from .matcher import latest_version, maven_version, select_version
from .models import MatchFilter, RequestedVersion, ResolvedVersion, VersionMatching

__all__ = [
    "latest_version",
    "maven_version",
    "select_version",
    "MatchFilter",
    "RequestedVersion",
    "ResolvedVersion",
    "VersionMatching",
]
