"""Shared async HTTP helpers used by the manifest fetcher and the downloader.

Encapsulates timeout, retry and DEBUG tracing so callers deal only with
status codes. Cancellation (``asyncio.CancelledError``) is never caught here.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Tuple

import aiohttp

from kefs.common.logging_utils import Timer, extra_context, is_debug_enabled, safe_url
from kefs.common.ttl_cache import TtlCache
from kefs.constants import Constants

logger = logging.getLogger(__name__)


class HttpClient:
    """Thin aiohttp wrapper with retries and a TTL cache for text GETs."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        session: Optional[aiohttp.ClientSession] = None,
        cache_ttl: Optional[float] = None,
    ):
        """Initialize the client.

        Args:
            timeout: Request timeout in seconds.
            session: Externally owned session; it is not closed by ``stop``.
            cache_ttl: TTL for cached successful text responses, 0 disables.
        """
        self._timeout = aiohttp.ClientTimeout(
            total=timeout if timeout is not None else Constants.REQUEST_TIMEOUT
        )
        self._session = session
        self._owns_session = session is None
        ttl = Constants.HTTP_CACHE_TTL_SEC if cache_ttl is None else cache_ttl
        self._cache: Optional[TtlCache[Tuple[int, str]]] = TtlCache(ttl) if ttl > 0 else None

    async def start(self) -> None:
        """Start the HTTP session."""
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True

    async def stop(self) -> None:
        """Stop the HTTP session."""
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        await self.start()
        if self._session is None:
            raise RuntimeError("HTTP session is closed")
        return self._session

    async def __aenter__(self) -> "HttpClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def clear_cache(self) -> None:
        if self._cache is not None:
            self._cache.clear()

    async def get_text(self, url: str, *, use_cache: bool = True) -> Tuple[int, str]:
        """GET a text resource with retries.

        Returns:
            ``(status_code, body)``; status 0 means every attempt failed and
            the body carries the last error.
        """
        safe_target = safe_url(url)
        if use_cache and self._cache is not None:
            cached = self._cache.get(url)
            if cached is not None:
                if is_debug_enabled(logger):
                    logger.debug(
                        "HTTP cache hit",
                        extra=extra_context(
                            event="cache_hit", component="http_client", action="GET", target=safe_target
                        ),
                    )
                return cached

        session = await self._ensure_session()
        last_exception = None

        for attempt in range(Constants.HTTP_RETRY_MAX):
            if attempt:
                await asyncio.sleep(Constants.HTTP_RETRY_BASE_DELAY_SEC * (2 ** (attempt - 1)))
            with Timer() as t:
                if is_debug_enabled(logger):
                    logger.debug(
                        "HTTP request",
                        extra=extra_context(
                            event="http_request",
                            component="http_client",
                            action="GET",
                            target=safe_target,
                            attempt=attempt + 1,
                        ),
                    )
                try:
                    async with session.get(url, timeout=self._timeout) as response:
                        text = await response.text()
                        status = response.status
                except asyncio.TimeoutError:
                    last_exception = "timeout"
                    self._trace_exception("timeout", attempt, safe_target)
                    continue
                except aiohttp.ClientError as exc:
                    last_exception = str(exc) or type(exc).__name__
                    self._trace_exception("request_exception", attempt, safe_target)
                    continue

                if is_debug_enabled(logger):
                    logger.debug(
                        "HTTP response",
                        extra=extra_context(
                            event="http_response",
                            component="http_client",
                            action="GET",
                            outcome="success" if status == 200 else "status",
                            status_code=status,
                            duration_ms=t.duration_ms(),
                            target=safe_target,
                        ),
                    )

                if status >= 500:
                    last_exception = f"HTTP {status}"
                    continue
                if status == 200 and use_cache and self._cache is not None:
                    self._cache.set(url, (status, text))
                return status, text

        return 0, f"Request failed after {Constants.HTTP_RETRY_MAX} attempts: {last_exception}"

    @asynccontextmanager
    async def open_stream(self, url: str) -> AsyncIterator[aiohttp.ClientResponse]:
        """Open a streaming GET as an async context manager.

        Network errors propagate to the caller, which owns cleanup of any
        partially written file.
        """
        session = await self._ensure_session()
        if is_debug_enabled(logger):
            logger.debug(
                "HTTP stream open",
                extra=extra_context(
                    event="http_request", component="http_client", action="STREAM", target=safe_url(url)
                ),
            )
        async with session.get(url, timeout=self._timeout) as response:
            yield response

    @staticmethod
    def _trace_exception(outcome: str, attempt: int, target: str) -> None:
        if is_debug_enabled(logger):
            logger.debug(
                "HTTP request exception",
                extra=extra_context(
                    event="http_exception",
                    component="http_client",
                    action="GET",
                    outcome=outcome,
                    attempt=attempt + 1,
                    target=target,
                ),
            )

