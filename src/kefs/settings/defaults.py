"""Bundled default repositories and plugins, and merging them into user state."""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, replace
from importlib import resources
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

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
from kefs.settings.validation import validate_maven_id, validate_plugin_name
from kefs.versioning.models import VersionMatching

logger = logging.getLogger(__name__)

DEFAULTS_RESOURCE = "defaults.yml"


@dataclass(frozen=True)
class DefaultState:
    repositories: Tuple[KotlinArtifactsRepository, ...] = ()
    plugins: Tuple[KotlinPluginDescriptor, ...] = ()

    @property
    def repository_map(self) -> Dict[str, KotlinArtifactsRepository]:
        return {repo.name: repo for repo in self.repositories}

    @property
    def plugin_map(self) -> Dict[str, KotlinPluginDescriptor]:
        return {plugin.name: plugin for plugin in self.plugins}


def _required(entry: dict, key: str, what: str) -> str:
    value = entry.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{what}/{key} missing or blank")
    return value


def _parse_repositories(data: Iterable) -> Dict[str, KotlinArtifactsRepository]:
    result: Dict[str, KotlinArtifactsRepository] = {}
    for entry in data or ():
        if not isinstance(entry, dict):
            raise ConfigError("repository entries must be mappings")
        repo_id = _required(entry, "id", "repository")
        name = _required(entry, "name", "repository")
        value = _required(entry, "value", "repository")
        type_name = _required(entry, "type", "repository")
        try:
            repo_type = RepositoryType[type_name]
        except KeyError as exc:
            raise ConfigError(f"Unknown repository type: {type_name} for repository {name}") from exc
        result[repo_id] = KotlinArtifactsRepository(name, value, repo_type)
    return result


def _parse_replacement(entry: Optional[dict], plugin_name: str) -> Optional[ReplacementPattern]:
    if entry is None:
        return None
    replacement = ReplacementPattern(
        _required(entry, "version", "replacement"),
        _required(entry, "detect", "replacement"),
        _required(entry, "search", "replacement"),
    )
    error = replacement.validate()
    if error is not None:
        raise ConfigError(f"{error} for plugin {plugin_name}")
    return replacement


def _parse_plugins(data: Iterable, repositories: Dict[str, KotlinArtifactsRepository]) -> List[KotlinPluginDescriptor]:
    plugins = []
    for entry in data or ():
        if not isinstance(entry, dict):
            raise ConfigError("plugin entries must be mappings")
        name = _required(entry, "name", "plugin")
        if validate_plugin_name(name) is not None:
            raise ConfigError(f"plugin/name is invalid for plugin {name}")

        matching_name = _required(entry, "versionMatching", "plugin")
        try:
            matching = VersionMatching[matching_name]
        except KeyError as exc:
            raise ConfigError(f"Unknown versionMatching: {matching_name} for plugin {name}") from exc

        repos = []
        for ref in entry.get("repositories") or ():
            if ref not in repositories:
                raise ConfigError(f"Unknown repository id: {ref} for plugin {name}")
            repos.append(repositories[ref])

        ids = []
        for coordinates in entry.get("artifacts") or ():
            if validate_maven_id(str(coordinates)) is not None:
                raise ConfigError(f"Invalid artifact coordinates: {coordinates} for plugin {name}")
            ids.append(MavenId(str(coordinates)))

        plugins.append(KotlinPluginDescriptor(
            name=name,
            ids=tuple(ids),
            version_matching=matching,
            enabled=True,
            ignore_exceptions=False,
            repositories=tuple(repos),
            replacement=_parse_replacement(entry.get("replacement"), name),
        ))
    return plugins


def parse_default_state(data: object) -> DefaultState:
    if data is None:
        return DefaultState()
    if not isinstance(data, dict):
        raise ConfigError("Default state must be a mapping")
    repositories = _parse_repositories(data.get("repositories"))
    plugins = _parse_plugins(data.get("plugins"), repositories)
    return DefaultState(tuple(repositories.values()), tuple(plugins))


def load_default_state(path: Optional[Path] = None) -> DefaultState:
    """Load defaults from ``path`` or from the bundled resource."""
    if path is not None:
        with open(path, "r", encoding="utf-8") as fh:
            return parse_default_state(yaml.safe_load(fh))
    return _bundled_defaults()


@functools.lru_cache(maxsize=1)
def _bundled_defaults() -> DefaultState:
    text = resources.files("kefs.settings").joinpath(DEFAULTS_RESOURCE).read_text(encoding="utf-8")
    state = parse_default_state(yaml.safe_load(text))
    logger.debug("Loaded %d default repositories and %d default plugins",
                 len(state.repositories), len(state.plugins))
    return state


def _distinct_by_name(items):
    seen = set()
    result = []
    for item in items:
        if item.name in seen:
            continue
        seen.add(item.name)
        result.append(item)
    return result


def distinct(state: SettingsState, defaults: DefaultState) -> SettingsState:
    """De-duplicate by name keeping the first entry.

    A default plugin whose repositories, matching or flags were customised
    keeps the customisation with the default repositories merged in.
    Plugin repositories that are not part of the state are dropped.
    """
    repositories = _distinct_by_name(state.repositories)
    repository_names = {repo.name for repo in repositories}
    default_plugins = defaults.plugin_map

    customised: Dict[str, KotlinPluginDescriptor] = {}
    for plugin in state.plugins:
        default = default_plugins.get(plugin.name)
        if default is None:
            continue
        if (
            plugin.repositories != default.repositories
            or plugin.version_matching != default.version_matching
            or plugin.enabled != default.enabled
            or plugin.ignore_exceptions != default.ignore_exceptions
        ):
            merged = _distinct_by_name(default.repositories + plugin.repositories)
            customised[plugin.name] = replace(plugin, repositories=tuple(merged))

    plugins = [p for p in _distinct_by_name(state.plugins) if p.name not in customised]
    plugins.extend(customised.values())
    plugins = [
        replace(p, repositories=tuple(r for r in p.repositories if r.name in repository_names))
        for p in plugins
    ]
    return SettingsState(repositories=tuple(repositories), plugins=tuple(plugins))


def with_defaults(state: SettingsState, defaults: Optional[DefaultState] = None) -> SettingsState:
    """Prepend the defaults to ``state`` and de-duplicate."""
    defaults = defaults if defaults is not None else load_default_state()
    combined = SettingsState(
        repositories=defaults.repositories + tuple(state.repositories),
        plugins=defaults.plugins + tuple(state.plugins),
    )
    return distinct(combined, defaults)
