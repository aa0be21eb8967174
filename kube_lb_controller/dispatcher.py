"""Per-key serialized task execution on a shared thread pool."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

logger = logging.getLogger(__name__)


class KeyedDispatcher:
    """Runs tasks for the same key one at a time, in submission order.

    Tasks for different keys run in parallel on up to ``max_workers`` threads.
    Each key with pending work occupies at most one worker, which drains that
    key's queue before releasing it.
    """

    def __init__(self, max_workers: int = 8):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dispatch")
        self._queues: dict[str, deque[tuple[Future, Callable[..., Any], tuple]]] = {}
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, key: str, fn: Callable[..., Any], *args: Any) -> Future:
        future: Future = Future()
        with self._lock:
            if self._closed:
                raise RuntimeError("Dispatcher is shut down")
            queue = self._queues.get(key)
            if queue is not None:
                queue.append((future, fn, args))
                return future
            self._queues[key] = deque([(future, fn, args)])
        self._executor.submit(self._drain, key)
        return future

    def pending(self, key: str) -> int:
        with self._lock:
            queue = self._queues.get(key)
            return len(queue) if queue else 0

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)

    def _drain(self, key: str) -> None:
        while True:
            with self._lock:
                queue = self._queues[key]
                if not queue:
                    del self._queues[key]
                    return
                future, fn, args = queue[0]

            if future.set_running_or_notify_cancel():
                try:
                    future.set_result(fn(*args))
                except BaseException as exc:
                    logger.debug("Task for %s raised %s", key, exc)
                    future.set_exception(exc)

            with self._lock:
                queue.popleft()
