"""Artifact state (internal cache entries) and status (published per node)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from kefs.models import Jar, JarId
from kefs.settings.models import KotlinArtifactsRepository
from kefs.versioning.models import RequestedVersion, ResolvedVersion, VersionMatching


@dataclass(frozen=True)
class Cached:
    jar: Jar
    requested_version: RequestedVersion
    resolved_version: ResolvedVersion
    criteria: VersionMatching
    origin: KotlinArtifactsRepository


@dataclass(frozen=True)
class FailedToFetchState:
    message: str


@dataclass(frozen=True)
class NotFoundState:
    message: str


@dataclass(frozen=True)
class FoundButBundleIsIncomplete:
    """This member resolved, but another member of the bundle did not."""


ArtifactState = Union[Cached, FailedToFetchState, NotFoundState, FoundButBundleIsIncomplete]


@dataclass(frozen=True)
class InProgress:
    pass


@dataclass(frozen=True)
class Success:
    requested_version: RequestedVersion
    resolved_version: ResolvedVersion
    criteria: VersionMatching


@dataclass(frozen=True)
class PartialSuccess:
    pass


@dataclass(frozen=True)
class FailedToLoad:
    message: str


@dataclass(frozen=True)
class NotFound:
    message: str


@dataclass(frozen=True)
class Disabled:
    pass


@dataclass(frozen=True)
class Skipped:
    pass


@dataclass(frozen=True)
class ExceptionInRuntime:
    jar_id: JarId


ArtifactStatus = Union[
    InProgress, Success, PartialSuccess, FailedToLoad, NotFound, Disabled, Skipped, ExceptionInRuntime
]


def to_status(state: ArtifactState) -> ArtifactStatus:
    """Map a cache state to the status shown for it."""
    if isinstance(state, Cached):
        return Success(state.requested_version, state.resolved_version, state.criteria)
    if isinstance(state, FoundButBundleIsIncomplete):
        return PartialSuccess()
    if isinstance(state, FailedToFetchState):
        return FailedToLoad(state.message)
    if isinstance(state, NotFoundState):
        return NotFound(state.message)
    raise TypeError(f"Unknown artifact state: {state!r}")
