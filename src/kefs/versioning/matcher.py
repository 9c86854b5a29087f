"""Version selection across one or more repository listings.

A single artifact is resolved against one listing; a bundle passes one
listing per member and only succeeds when every member agrees on the same
version.
"""
from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence

from univers.versions import InvalidVersion, MavenVersion

from kefs.common.logging_utils import extra_context, is_debug_enabled
from kefs.versioning.models import MatchFilter, ResolvedVersion, VersionMatching

logger = logging.getLogger(__name__)


def maven_version(value: str) -> Optional[MavenVersion]:
    """Parse ``value`` with Maven ordering; None when it is not a version."""
    if not value:
        return None
    try:
        return MavenVersion(value)
    except InvalidVersion:
        logger.debug("Ignoring unparseable version %r", value)
        return None


def latest_version(versions: Iterable[str]) -> Optional[str]:
    """Return the highest of ``versions`` in its original spelling."""
    parsed = [(maven_version(v), v) for v in versions]
    parsed = [(key, v) for key, v in parsed if key is not None]
    if not parsed:
        return None
    return max(parsed, key=lambda item: item[0])[1]


def _major(version: str) -> str:
    return version.split(".", 1)[0]


def _minor(version: str) -> str:
    parts = version.split(".")
    return parts[1] if len(parts) > 1 else ""


def _same_major_filter(requested: str):
    major = _major(requested)
    if major != "0":
        return lambda candidate: _major(candidate) == major
    # 0.x lines are treated as their own major line
    minor = _minor(requested)
    return lambda candidate: _major(candidate) == "0" and _minor(candidate) == minor


def select_version(
    candidate_lists: Sequence[Sequence[str]],
    prefix: str,
    match_filter: MatchFilter,
) -> Optional[ResolvedVersion]:
    """Select the version satisfying ``match_filter`` in every list.

    Args:
        candidate_lists: One list of raw version strings per artifact.
        prefix: Only entries starting with it are considered; it is stripped
            before comparison (e.g. ``"2.2.0-ij251-78-"``).
        match_filter: Requested version and matching strategy.

    Returns:
        The selected version without the prefix, or None when the lists
        disagree, any list has no candidate, or the result is older than
        the requested version.
    """
    transformed: List[List[str]] = [
        [version[len(prefix):] for version in versions if version.startswith(prefix)]
        for versions in candidate_lists
    ]

    if not transformed:
        return None

    requested = match_filter.requested_version.value

    # exact version wins over any strategy
    if all(requested in versions for versions in transformed):
        return match_filter.requested_version.as_resolved_for_disk_search()

    if match_filter.matching is VersionMatching.EXACT:
        return None

    if match_filter.matching is VersionMatching.SAME_MAJOR:
        accept = _same_major_filter(requested)
        transformed = [[v for v in versions if accept(v)] for versions in transformed]

    per_list = [latest_version(versions) for versions in transformed]

    if is_debug_enabled(logger):
        logger.debug(
            "Per-list version candidates",
            extra=extra_context(
                event="decision",
                component="version_matcher",
                action="select_version",
                strategy=match_filter.matching.value,
                requested=requested,
                candidates=per_list,
            ),
        )

    if any(candidate is None for candidate in per_list):
        return None

    selected = maven_version(per_list[0])
    if any(maven_version(candidate) != selected for candidate in per_list[1:]):
        return None

    requested_parsed = maven_version(requested)
    if requested_parsed is not None and selected < requested_parsed:
        return None
    return ResolvedVersion(per_list[0])
