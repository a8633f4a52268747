"""Runs the blocking normalize -> classify unit off the event loop.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> pipeline run

N defaults to 1: one classification in flight at a time. Further requests wait
for a slot for up to ``SLOT_TIMEOUT_SECONDS`` and are then rejected with 503.
The result is awaited on the event loop, so callers update presentation state
from there.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from snapclassify.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SLOT_TIMEOUT_SECONDS: float = 5.0


class InferencePool:
    """Semaphore-guarded worker pool for classification requests."""

    def __init__(self, settings: Settings, slot_timeout: float = SLOT_TIMEOUT_SECONDS) -> None:
        self._slot_timeout = slot_timeout
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="snapclassify-worker",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run a blocking function on a worker thread once a slot is free.

        Raises:
            TimeoutError: If no slot frees up within the slot timeout.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._slot_timeout)
        except TimeoutError:
            logger.warning("No worker slot free after %.1fs", self._slot_timeout)
            raise
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Number of requests currently running."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Wait for running work and stop the worker threads."""
        self._executor.shutdown(wait=True)
