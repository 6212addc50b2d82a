"""ParallelExecutor: ThreadPoolExecutor wrapper for per-field resolution.

Fields of one request are independent, so each runs on its own worker.
Stages inside a field stay sequential on that worker.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ParallelExecutor:
    """Thread-pool executor shared by all requests of one gateway."""

    def __init__(self, max_workers: int = 4):
        self._max_workers = max_workers
        self._pool: ThreadPoolExecutor | None = None
        self._lock = threading.Lock()

    def _ensure_pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self._max_workers,
                    thread_name_prefix="memgate-resolve",
                )
            return self._pool

    def run_parallel(
        self,
        tasks: List[Tuple[Callable[..., Any], tuple]],
        timeout: Optional[float] = None,
    ) -> List[Any]:
        """Run *tasks* in parallel and return results in order.

        Each task is a ``(callable, args_tuple)`` pair. If any task raises,
        its exception is propagated to the caller. ``timeout`` bounds the
        total wait and raises ``concurrent.futures.TimeoutError``; tasks
        not yet started are cancelled.
        """
        if not tasks:
            return []
        if len(tasks) == 1 and timeout is None:
            fn, args = tasks[0]
            return [fn(*args)]

        pool = self._ensure_pool()
        futures: List[Future[Any]] = [pool.submit(fn, *args) for fn, args in tasks]
        try:
            return [f.result(timeout=timeout) for f in futures]
        except FutureTimeout:
            for f in futures:
                f.cancel()
            raise

    def shutdown(self) -> None:
        """Shut down the thread pool (non-blocking)."""
        with self._lock:
            if self._pool is not None:
                self._pool.shutdown(wait=False, cancel_futures=True)
                self._pool = None
