"""Exceptions raised at real faults; expected outcomes travel as result types."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, Tuple, TypeVar

T = TypeVar("T")


class KefsError(Exception):
    """Base class for kefs errors."""


class ConfigError(KefsError, ValueError):
    """Raised for an unusable configuration value or settings entry."""


class CacheDirectoryError(KefsError, OSError):
    """Raised when the cache root cannot be created or used."""


async def run_catching_except_cancellation(
    coro: Awaitable[T],
) -> Tuple[Optional[T], Optional[BaseException]]:
    """Await ``coro`` and return ``(value, None)`` or ``(None, exc)``.

    ``asyncio.CancelledError`` is re-raised.
    """
    try:
        return await coro, None
    except asyncio.CancelledError:
        raise
    except Exception as exc:  # pylint: disable=broad-exception-caught
        return None, exc
