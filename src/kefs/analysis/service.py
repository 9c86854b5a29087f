"""Background consumer that attributes submitted exceptions to cached jars."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

from kefs.analysis.correlation import is_probably_incompatible, match
from kefs.analysis.reporter import ExceptionReporter
from kefs.analysis.throwable import ThrowableInfo, as_throwable_info
from kefs.common.logging_utils import extra_context
from kefs.models import JarId

logger = logging.getLogger(__name__)


class ExceptionAnalyzerService:
    """Single worker draining a queue of exceptions.

    ``submit`` never blocks; when the queue is bounded and full the
    exception is dropped.
    """

    def __init__(self, reporter: ExceptionReporter, maxsize: int = 0) -> None:
        self.reporter = reporter
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._worker: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        worker, self._worker = self._worker, None
        if worker is None:
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass

    async def __aenter__(self) -> "ExceptionAnalyzerService":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def submit(self, throwable) -> bool:
        try:
            self._queue.put_nowait(as_throwable_info(throwable))
        except asyncio.QueueFull:
            logger.debug("Exception analysis queue full; dropping exception")
            return False
        return True

    async def join(self) -> None:
        """Wait until every submitted exception was processed."""
        await self._queue.join()

    async def analyze(self, info: ThrowableInfo) -> Optional[Set[JarId]]:
        lookup = await self.reporter.lookup()
        jar_ids = match(lookup, info)
        if not jar_ids:
            return None
        ordered = sorted(jar_ids, key=str)
        self.reporter.matched(ordered, info, is_probably_incompatible(info))
        return jar_ids

    async def _run(self) -> None:
        while True:
            info = await self._queue.get()
            try:
                await self.analyze(info)
            except asyncio.CancelledError:
                raise
            except Exception:  # pylint: disable=broad-exception-caught
                logger.exception(
                    "Exception analysis failed",
                    extra=extra_context(event="analysis", component="service", outcome="error"),
                )
            finally:
                self._queue.task_done()
