"""Bounded execution of pipeline work off the event loop.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> pipeline

Each request runs the whole pipeline synchronously on one worker thread.
Requests beyond the semaphore limit queue with a timeout, then get 503.
A cancelled request flags its cancel event; the pipeline stops at the next
stage boundary.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from facematch.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Caps how many pipeline runs execute at once and how long callers queue."""

    def __init__(self, settings: Settings) -> None:
        self._slots = asyncio.Semaphore(settings.max_concurrent)
        self._workers = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="face-pipeline",
        )
        self._queue_timeout = settings.queue_timeout
        self._counts = {"waiting": 0, "running": 0}
        self._counts_lock = threading.Lock()

    def _adjust(self, state: str, delta: int) -> None:
        with self._counts_lock:
            self._counts[state] += delta

    @contextmanager
    def _tracked(self, state: str) -> Iterator[None]:
        self._adjust(state, 1)
        try:
            yield
        finally:
            self._adjust(state, -1)

    def _count(self, state: str) -> int:
        with self._counts_lock:
            return self._counts[state]

    def _finish(self, job: asyncio.Future[object]) -> None:
        """Free the slot held by ``job``; called once its worker thread is done."""
        if not job.cancelled():
            # Marks a failure as retrieved when the caller has already gone.
            job.exception()
        self._adjust("running", -1)
        self._slots.release()

    async def run(
        self,
        func: Callable[..., T],
        *args: object,
        cancel: threading.Event | None = None,
    ) -> T:
        """Run ``func(*args)`` on a worker thread once a slot is free.

        If the awaiting task is cancelled, ``cancel`` is set so the running
        function can stop at its next checkpoint; the worker thread itself is
        never interrupted, and its slot stays taken until it returns.

        Raises:
            TimeoutError: If no slot frees up within ``queue_timeout`` seconds.
        """
        with self._tracked("waiting"):
            try:
                await asyncio.wait_for(self._slots.acquire(), timeout=self._queue_timeout)
            except TimeoutError:
                logger.warning("No pipeline slot after %.1fs, rejecting request", self._queue_timeout)
                raise

        self._adjust("running", 1)
        loop = asyncio.get_running_loop()
        job = loop.run_in_executor(self._workers, func, *args)
        # Shielded so that cancelling the caller leaves ``job`` tracking the thread.
        job.add_done_callback(self._finish)
        try:
            return await asyncio.shield(job)
        except asyncio.CancelledError:
            if cancel is not None:
                cancel.set()
            logger.info("Request cancelled while %s was running", getattr(func, "__name__", func))
            raise

    @property
    def active_count(self) -> int:
        """Pipeline runs currently executing."""
        return self._count("running")

    @property
    def queue_depth(self) -> int:
        """Requests waiting for a free slot."""
        return self._count("waiting")

    def shutdown(self) -> None:
        self._workers.shutdown(wait=True)
