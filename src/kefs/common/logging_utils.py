"""Structured logging helpers shared by all kefs modules.

Modules log through ``logging.getLogger(__name__)`` and attach structured
fields with ``extra=extra_context(...)``. DEBUG traces are guarded with
``is_debug_enabled`` so the field dictionaries are only built when needed.
"""
from __future__ import annotations

import logging
import os
import sys
import time
import urllib.parse
from typing import Any, Dict, Optional

from kefs.constants import Constants

_SENSITIVE_KEYS = ("token", "password", "secret", "authorization", "api_key")


def configure_logging(level: Optional[str] = None) -> None:
    """Configure the root logger from arguments or environment.

    ``KEFS_LOG_LEVEL`` and ``KEFS_LOG_FORMAT`` are honoured when no explicit
    level is given. Calling this more than once replaces the handler.
    """
    level_name = (level or os.environ.get(Constants.ENV_LOG_LEVEL) or "INFO").upper()
    level_value = getattr(logging, level_name, logging.INFO)
    fmt = os.environ.get(Constants.ENV_LOG_FORMAT) or Constants.LOG_FORMAT

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_kefs_handler", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(fmt))
    handler._kefs_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level_value)


def is_debug_enabled(logger: logging.Logger) -> bool:
    """Return True when DEBUG records of this logger would be emitted."""
    return logger.isEnabledFor(logging.DEBUG)


def extra_context(**fields: Any) -> Dict[str, Any]:
    """Build an ``extra`` mapping for structured log records.

    Common keys are ``event``, ``component``, ``action``, ``outcome`` and
    ``target``. None values are dropped and sensitive keys are redacted.
    """
    context: Dict[str, Any] = {}
    for key, value in fields.items():
        if value is None:
            continue
        if any(marker in key.lower() for marker in _SENSITIVE_KEYS):
            value = redact(str(value))
        context[key] = value
    return context


def redact(value: str) -> str:
    """Mask a secret value, keeping at most the last four characters."""
    if not value:
        return value
    if len(value) <= 4:
        return "****"
    return "****" + value[-4:]


def safe_url(url: str) -> str:
    """Strip user info and the query string from a URL for logging."""
    try:
        parts = urllib.parse.urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme:
        return url
    netloc = parts.hostname or ""
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    return urllib.parse.urlunsplit((parts.scheme, netloc, parts.path, "", ""))


class Timer:
    """Context manager measuring wall-clock duration in milliseconds."""

    def __init__(self) -> None:
        self._start = 0.0
        self._end: Optional[float] = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        self._end = None
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._end = time.perf_counter()

    def duration_ms(self) -> float:
        end = self._end if self._end is not None else time.perf_counter()
        return round((end - self._start) * 1000.0, 3)
