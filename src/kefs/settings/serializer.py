"""Flat string encoding of the settings state, as persisted between runs.

Every entry is keyed by name and encoded as ``;``-separated fields:

* repository: ``<value>;<URL|PATH>``
* plugin: ``<STRATEGY>;<enabled>;<ignoreExceptions>;<id1>,<id2>``
* replacement: ``<version>;<detect>;<search>``
* plugin repositories: ``<name1>;<name2>``

Entries that cannot be decoded are dropped rather than failing the load.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from kefs.errors import ConfigError
from kefs.models import MavenId
from kefs.settings.models import (
    KotlinArtifactsRepository,
    KotlinPluginDescriptor,
    RepositoryType,
    SettingsState,
)
from kefs.settings.replacement import ReplacementPattern
from kefs.settings.validation import MAVEN_REGEX
from kefs.versioning.models import VersionMatching

logger = logging.getLogger(__name__)

_ID_SEPARATOR = ","


@dataclass
class StoredState:
    repositories: Dict[str, str] = field(default_factory=dict)
    plugins: Dict[str, str] = field(default_factory=dict)
    plugins_replacements: Dict[str, str] = field(default_factory=dict)
    plugins_repos: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Dict[str, str]]:
        return {
            "repositories": dict(self.repositories),
            "plugins": dict(self.plugins),
            "pluginsReplacements": dict(self.plugins_replacements),
            "pluginsRepos": dict(self.plugins_repos),
        }

    @classmethod
    def from_dict(cls, data: object) -> "StoredState":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError("Stored settings must be a mapping")

        def section(key: str) -> Dict[str, str]:
            value = data.get(key) or {}
            if not isinstance(value, dict):
                raise ConfigError(f"Stored settings section '{key}' must be a mapping")
            return {str(k): str(v) for k, v in value.items()}

        return cls(
            repositories=section("repositories"),
            plugins=section("plugins"),
            plugins_replacements=section("pluginsReplacements"),
            plugins_repos=section("pluginsRepos"),
        )


def _strict_bool(value: Optional[str]) -> Optional[bool]:
    if value == "true":
        return True
    if value == "false":
        return False
    return None


def _enum_by_name(enum_cls, name: Optional[str]):
    return next((member for member in enum_cls if member.name == name), None)


def as_stored(state: SettingsState) -> StoredState:
    stored = StoredState()
    for repo in state.repositories:
        stored.repositories[repo.name] = f"{repo.value};{repo.type.name}"
    for plugin in state.plugins:
        ids = _ID_SEPARATOR.join(maven_id.id for maven_id in plugin.ids)
        stored.plugins[plugin.name] = (
            f"{plugin.version_matching.name};{str(plugin.enabled).lower()};"
            f"{str(plugin.ignore_exceptions).lower()};{ids}"
        )
        if plugin.replacement is not None:
            r = plugin.replacement
            stored.plugins_replacements[plugin.name] = f"{r.version};{r.detect};{r.search}"
        stored.plugins_repos[plugin.name] = ";".join(repo.name for repo in plugin.repositories)
    return stored


def _parse_replacement(encoded: Optional[str]) -> Optional[ReplacementPattern]:
    if encoded is None:
        return None
    parts = encoded.split(";")
    if len(parts) < 3:
        return None
    replacement = ReplacementPattern(parts[0], parts[1], parts[2])
    if replacement.validate() is not None:
        return None
    return replacement


def _parse_ids(fields: List[str]) -> List[MavenId]:
    ids = []
    for chunk in fields:
        for candidate in chunk.split(_ID_SEPARATOR):
            candidate = candidate.strip()
            if MAVEN_REGEX.fullmatch(candidate):
                ids.append(MavenId(candidate))
    return ids


def as_state(stored: StoredState) -> SettingsState:
    repositories = []
    for name, encoded in stored.repositories.items():
        parts = encoded.split(";")
        repo_type = _enum_by_name(RepositoryType, parts[1] if len(parts) > 1 else None)
        if not parts[0] or repo_type is None:
            logger.debug("Dropping unparseable repository entry %s", name)
            continue
        repositories.append(KotlinArtifactsRepository(name, parts[0], repo_type))
    by_name = {repo.name: repo for repo in repositories}

    plugins = []
    for name, encoded in stored.plugins.items():
        parts = encoded.split(";")
        matching = _enum_by_name(VersionMatching, parts[0])
        enabled = _strict_bool(parts[1] if len(parts) > 1 else None)
        ignore_exceptions = _strict_bool(parts[2] if len(parts) > 2 else None)
        if matching is None or enabled is None or ignore_exceptions is None:
            logger.debug("Dropping unparseable plugin entry %s", name)
            continue
        repo_names = stored.plugins_repos.get(name, "").split(";")
        plugins.append(KotlinPluginDescriptor(
            name=name,
            ids=tuple(_parse_ids(parts[3:])),
            version_matching=matching,
            enabled=enabled,
            ignore_exceptions=ignore_exceptions,
            repositories=tuple(by_name[n] for n in repo_names if n in by_name),
            replacement=_parse_replacement(stored.plugins_replacements.get(name)),
        ))

    return SettingsState(repositories=tuple(repositories), plugins=tuple(plugins))


def load_state(path: Path) -> SettingsState:
    """Read a persisted settings file; a missing file is an empty state."""
    path = Path(path)
    if not path.is_file():
        return SettingsState()
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to read settings from {path}: {exc}") from exc
    return as_state(StoredState.from_dict(data))


def save_state(path: Path, state: SettingsState) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as fh:
        yaml.safe_dump(as_stored(state).to_dict(), fh, sort_keys=False)
    os.replace(tmp, path)
