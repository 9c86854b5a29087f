"""Maven ``maven-metadata.xml`` parsing and fetching."""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

from kefs.common.http_client import HttpClient
from kefs.common.logging_utils import extra_context, is_debug_enabled, safe_url
from kefs.constants import Constants

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ManifestSuccess:
    versions: Tuple[str, ...]


@dataclass(frozen=True)
class ManifestNotFound:
    location: str


@dataclass(frozen=True)
class ManifestFailedToFetch:
    message: str


ManifestResult = Union[ManifestSuccess, ManifestNotFound, ManifestFailedToFetch]


def parse_versions(xml_text: str) -> List[str]:
    """Parse ``metadata/versioning/versions/version`` in document order.

    Elements are matched by local name, so namespaced manifests parse too.
    Malformed XML or a missing element yields an empty list.
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError:
        return []

    if _local_name(root) != "metadata":
        return []
    versioning = _child(root, "versioning")
    if versioning is None:
        return []
    versions_elem = _child(versioning, "versions")
    if versions_elem is None:
        return []

    versions = []
    for version_elem in versions_elem:
        if _local_name(version_elem) != "version":
            continue
        ver_text = version_elem.text
        if ver_text and ver_text.strip():
            versions.append(ver_text.strip())
    return versions


def _local_name(elem: ET.Element) -> str:
    tag = elem.tag
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _child(elem: ET.Element, name: str) -> Optional[ET.Element]:
    return next((child for child in elem if _local_name(child) == name), None)


def artifact_url(repo_url: str, group_path: str, artifact_name: str) -> str:
    return f"{repo_url.rstrip('/')}/{group_path}/{artifact_name}"


def manifest_url(repo_url: str, group_path: str, artifact_name: str) -> str:
    return f"{artifact_url(repo_url, group_path, artifact_name)}/{Constants.MANIFEST_FILE}"


def local_artifact_dir(repo_root: str, group_path: str, artifact_name: str) -> Path:
    return Path(repo_root).expanduser().joinpath(*group_path.split("/"), artifact_name)


async def fetch_remote_manifest(
    http: HttpClient,
    repo_url: str,
    group_path: str,
    artifact_name: str,
) -> ManifestResult:
    """Fetch and parse a remote manifest.

    A 404 is ``ManifestNotFound``; any other failure, including an unparseable
    body, is ``ManifestFailedToFetch``.
    """
    url = manifest_url(repo_url, group_path, artifact_name)
    status, text = await http.get_text(url)

    if status == 404:
        return ManifestNotFound(url)
    if status != 200:
        reason = text if status == 0 else f"HTTP {status}"
        logger.debug("Failed to fetch manifest %s: %s", safe_url(url), reason)
        return ManifestFailedToFetch(f"Failed to fetch manifest from {safe_url(url)}: {reason}")

    return _parsed(text, safe_url(url))


def read_local_manifest(repo_root: str, group_path: str, artifact_name: str) -> ManifestResult:
    """Read a manifest from a local Maven-layout directory."""
    path = local_artifact_dir(repo_root, group_path, artifact_name) / Constants.MANIFEST_FILE
    if not path.is_file():
        return ManifestNotFound(str(path))
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        return ManifestFailedToFetch(f"Failed to read manifest {path}: {exc}")
    return _parsed(text, str(path))


def _parsed(text: str, location: str) -> ManifestResult:
    versions = parse_versions(text)
    if not versions:
        return ManifestFailedToFetch(f"Manifest at {location} has no versions or is malformed")
    if is_debug_enabled(logger):
        logger.debug(
            "Parsed manifest",
            extra=extra_context(
                event="parse",
                component="manifest",
                action="parse_versions",
                outcome="success",
                count=len(versions),
                target=location,
            ),
        )
    return ManifestSuccess(tuple(versions))
