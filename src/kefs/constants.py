"""Constants used in the project."""

from __future__ import annotations

import logging
import os
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    CONNECTION_ERROR = 2
    FILE_ERROR = 1
    EXIT_WARNINGS = 3


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    LOG_FORMAT = "[%(levelname)s] %(message)s"
    ENV_LOG_LEVEL = "KEFS_LOG_LEVEL"
    ENV_LOG_FORMAT = "KEFS_LOG_FORMAT"
    ENV_CONFIG = "KEFS_CONFIG"

    REQUEST_TIMEOUT = 30  # Timeout in seconds for all HTTP requests
    HTTP_RETRY_MAX = 3
    HTTP_RETRY_BASE_DELAY_SEC = 0.3
    HTTP_CACHE_TTL_SEC = 300
    DOWNLOAD_CHUNK_SIZE = 64 * 1024
    CLAIM_WAIT_TIMEOUT_SEC = 120
    CLAIM_POLL_INTERVAL_SEC = 0.1

    CACHE_DIR_NAME = ".kefs"
    REPORTS_DIR_NAME = "reports"
    MANIFEST_FILE = "maven-metadata.xml"
    METADATA_EXTENSION = ".metadata"
    LINK_EXTENSION = ".link"
    DOWNLOADING_EXTENSION = ".downloading"
    FOR_IDE_CLASSIFIER = "for-ide"

    INVALIDATION_DEBOUNCE_MS = 750
    EXTENDED_INVALIDATION_DEBOUNCE_MS = 2000
    RELOAD_DEBOUNCE_MS = 50
    RETRY_DELAY_SEC = 30
    RETRY_MAX = 5
    UPDATE_INTERVAL_MIN = 20
    EXCEPTIONS_CACHE_SIZE = 20
    SELF_UPDATE_GRACE_SEC = 1.0  # Cache events this long after a self-update are ours

    DEFAULT_CONFIG_LOCATIONS = (
        os.path.join("~", ".config", "kefs", "kefs.yml"),
        "kefs.yml",
    )


# Keys accepted in the "kefs:" section of a YAML config file, mapped onto Constants.
_CONFIG_KEYS = {
    "request_timeout": "REQUEST_TIMEOUT",
    "http_retry_max": "HTTP_RETRY_MAX",
    "http_retry_base_delay_sec": "HTTP_RETRY_BASE_DELAY_SEC",
    "http_cache_ttl_sec": "HTTP_CACHE_TTL_SEC",
    "download_chunk_size": "DOWNLOAD_CHUNK_SIZE",
    "invalidation_debounce_ms": "INVALIDATION_DEBOUNCE_MS",
    "extended_invalidation_debounce_ms": "EXTENDED_INVALIDATION_DEBOUNCE_MS",
    "reload_debounce_ms": "RELOAD_DEBOUNCE_MS",
    "retry_delay_sec": "RETRY_DELAY_SEC",
    "retry_max": "RETRY_MAX",
    "self_update_grace_sec": "SELF_UPDATE_GRACE_SEC",
    "update_interval_min": "UPDATE_INTERVAL_MIN",
    "exceptions_cache_size": "EXCEPTIONS_CACHE_SIZE",
}


def _load_yaml_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load the first YAML config found.

    Lookup order: explicit path, $KEFS_CONFIG, then DEFAULT_CONFIG_LOCATIONS.
    Returns an empty dict when nothing is found or the file is not a mapping.
    """
    import yaml  # pylint: disable=import-outside-toplevel

    candidates = []
    if path:
        candidates.append(path)
    env_path = os.environ.get(Constants.ENV_CONFIG)
    if env_path:
        candidates.append(env_path)
    candidates.extend(Constants.DEFAULT_CONFIG_LOCATIONS)

    for candidate in candidates:
        full = os.path.expanduser(candidate)
        if not os.path.isfile(full):
            continue
        try:
            with open(full, "r", encoding="utf-8") as fh:
                cfg = yaml.safe_load(fh) or {}
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("Failed to read config %s: %s", full, exc)
            return {}
        return cfg if isinstance(cfg, dict) else {}
    return {}


def apply_config(cfg: Dict[str, Any]) -> None:
    """Overlay known keys of the ``kefs`` section onto Constants."""
    section = cfg.get("kefs") if isinstance(cfg, dict) else None
    if not isinstance(section, dict):
        return
    for key, attr in _CONFIG_KEYS.items():
        if key not in section:
            continue
        current = getattr(Constants, attr)
        try:
            setattr(Constants, attr, type(current)(section[key]))
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid config value for %s: %r", key, section[key])
