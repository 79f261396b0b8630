# studio_ingest/services/queue.py
# Background work for previews and enhancements.

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable

from studio_ingest.core.logging import get_logger

log = get_logger("queue")


class TaskQueue:
    """Small thread pool. Task bodies own their own error handling."""

    def __init__(self, workers: int = 2) -> None:
        self._pool = ThreadPoolExecutor(max_workers=max(int(workers), 1), thread_name_prefix="ingest")

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        fut = self._pool.submit(fn, *args, **kwargs)
        fut.add_done_callback(self._report)
        return fut

    @staticmethod
    def _report(fut: Future) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            log.error("background task crashed", exc_info=exc)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


class InlineQueue(TaskQueue):
    """Runs tasks immediately on the caller's thread (scripts, tests)."""

    def __init__(self) -> None:
        pass

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        fut: Future = Future()
        try:
            fut.set_result(fn(*args, **kwargs))
        except Exception as e:
            fut.set_exception(e)
            self._report(fut)
        return fut

    def shutdown(self, wait: bool = True) -> None:
        pass
