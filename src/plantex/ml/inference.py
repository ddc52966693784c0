"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> slot (asyncio.Semaphore) -> worker thread -> classify()

A request holds one slot for the whole decode/preprocess/run/rank unit. The
classifier serializes calls on the same instance, so slots only add
parallelism across classifiers. Waiting for a slot times out after
``SEMAPHORE_TIMEOUT_SECONDS`` and the API answers 503.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from plantex.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0
WORKER_THREAD_PREFIX = "classify"


@dataclass
class PoolStats:
    """Snapshot of slot usage."""

    active: int = 0
    waiting: int = 0


class InferencePool:
    """Bounds concurrent classification work and runs it off the event loop."""

    def __init__(self, settings: Settings) -> None:
        self._limit = settings.max_concurrent
        self._slots = asyncio.Semaphore(self._limit)
        self._workers = ThreadPoolExecutor(max_workers=self._limit, thread_name_prefix=WORKER_THREAD_PREFIX)
        self._stats = PoolStats()
        self._stats_lock = threading.Lock()
        self._closed = False

    async def run(self, func: Callable[..., T], *args: object, **kwargs: object) -> T:
        """Run a blocking callable on a worker thread once a slot is free.

        Raises:
            TimeoutError: If every slot stays busy past the timeout.
            RuntimeError: If the pool has been shut down.
        """
        if self._closed:
            raise RuntimeError("Inference pool is shut down")
        call = functools.partial(func, *args, **kwargs)
        async with self._slot():
            return await asyncio.get_running_loop().run_in_executor(self._workers, call)

    @property
    def active_count(self) -> int:
        """Number of classifications currently running."""
        return self.stats().active

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a slot."""
        return self.stats().waiting

    def stats(self) -> PoolStats:
        with self._stats_lock:
            return PoolStats(active=self._stats.active, waiting=self._stats.waiting)

    def shutdown(self) -> None:
        """Wait for running work, then stop the worker threads. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._workers.shutdown(wait=True)
        logger.debug("Inference pool stopped")

    # -- Internal -----------------------------------------------------------

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        timeout = SEMAPHORE_TIMEOUT_SECONDS
        self._track(waiting=1)
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=timeout)
        except TimeoutError:
            logger.warning("All %d inference slots busy for %.1fs, rejecting request", self._limit, timeout)
            raise
        finally:
            self._track(waiting=-1)

        self._track(active=1)
        try:
            yield
        finally:
            self._slots.release()
            self._track(active=-1)

    def _track(self, *, active: int = 0, waiting: int = 0) -> None:
        with self._stats_lock:
            self._stats.active += active
            self._stats.waiting += waiting
