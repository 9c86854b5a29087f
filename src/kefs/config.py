"""Runtime configuration of a kefs storage instance."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from kefs.constants import Constants
from kefs.errors import CacheDirectoryError, ConfigError


def default_cache_root() -> Path:
    return Path(os.path.expanduser("~")) / Constants.CACHE_DIR_NAME


@dataclass
class KefsConfig:
    """Storage options; built from CLI arguments or a YAML mapping."""

    cache_root: Path
    auto_update: bool = True
    update_interval: int = Constants.UPDATE_INTERVAL_MIN
    extended_invalidation_debounce: bool = False
    settings_file: Optional[Path] = None
    watch_files: bool = True

    def __post_init__(self) -> None:
        self.cache_root = Path(self.cache_root).expanduser()
        if self.settings_file is not None:
            self.settings_file = Path(self.settings_file).expanduser()
        if self.update_interval <= 0:
            self.update_interval = Constants.UPDATE_INTERVAL_MIN

    @property
    def invalidation_debounce_ms(self) -> int:
        if self.extended_invalidation_debounce:
            return Constants.EXTENDED_INVALIDATION_DEBOUNCE_MS
        return Constants.INVALIDATION_DEBOUNCE_MS

    def ensure_cache_root(self) -> Path:
        try:
            self.cache_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CacheDirectoryError(f"Cannot create cache directory {self.cache_root}: {exc}") from exc
        return self.cache_root

    @classmethod
    def from_args(cls, args) -> "KefsConfig":
        cache_dir = getattr(args, "CACHE_DIR", None)
        settings_file = getattr(args, "SETTINGS", None)
        return cls(
            cache_root=Path(cache_dir) if cache_dir else default_cache_root(),
            auto_update=False,
            settings_file=Path(settings_file) if settings_file else None,
            watch_files=False,
        )

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, Any]) -> "KefsConfig":
        """Build from the ``kefs`` section of a loaded YAML config."""
        section = cfg.get("kefs") if isinstance(cfg, Mapping) else None
        if section is None:
            section = {}
        if not isinstance(section, Mapping):
            raise ConfigError("'kefs' config section must be a mapping")

        try:
            update_interval = int(section.get("update_interval", Constants.UPDATE_INTERVAL_MIN))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid update_interval: {section.get('update_interval')!r}") from exc

        cache_root = section.get("cache_root")
        settings_file = section.get("settings_file")
        return cls(
            cache_root=Path(cache_root) if cache_root else default_cache_root(),
            auto_update=_as_bool(section.get("auto_update", True), "auto_update"),
            update_interval=update_interval,
            extended_invalidation_debounce=_as_bool(
                section.get("extended_invalidation_debounce", False), "extended_invalidation_debounce"
            ),
            settings_file=Path(settings_file) if settings_file else None,
            watch_files=_as_bool(section.get("watch_files", True), "watch_files"),
        )


def _as_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"{key} must be true or false, got {value!r}")
