"""
Rate-limited FIFO request queue.

Outbound calls to a throttled API are submitted as callables. A single worker
thread drains the queue in submission order and keeps at least `min_delay`
seconds between the start of consecutive calls, so N queued calls never finish
faster than (N - 1) * min_delay. Each caller gets a concurrent.futures.Future
that resolves (or raises) when its own callable has run.

The queue is bounded when `maxsize` > 0: submit() then blocks until there is
room, which pushes back on producers instead of growing without limit. The
worker exits after `idle_timeout` seconds without work and is restarted on the
next submit.
"""

import queue
import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional, TypeVar

from loguru import logger

T = TypeVar("T")


class RateLimitedQueue:
    def __init__(
        self,
        name: str,
        min_delay: float,
        maxsize: int = 0,
        idle_timeout: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if min_delay < 0:
            raise ValueError("min_delay must be >= 0")
        if maxsize < 0:
            raise ValueError("maxsize must be >= 0")

        self.name = name
        self.min_delay = min_delay
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._sleep = sleep

        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self._pending = 0
        self._worker: Optional[threading.Thread] = None
        self._last_dequeue: Optional[float] = None
        self.completed = 0

    def submit(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> "Future[T]":
        future: "Future[T]" = Future()
        with self._lock:
            self._pending += 1
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(
                    target=self._drain, name=f"{self.name}-queue", daemon=True
                )
                self._worker.start()
        self._queue.put((future, fn, args, kwargs))
        return future

    def run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Submit and block until this call has been executed."""
        return self.submit(fn, *args, **kwargs).result()

    @property
    def pending(self) -> int:
        return self._pending

    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "min_delay": self.min_delay,
            "pending": self._pending,
            "completed": self.completed,
            "maxsize": self._queue.maxsize,
        }

    def _drain(self) -> None:
        while True:
            try:
                future, fn, args, kwargs = self._queue.get(timeout=self.idle_timeout)
            except queue.Empty:
                with self._lock:
                    if self._pending == 0:
                        self._worker = None
                        return
                continue

            self._wait_turn()
            result, error = None, None
            running = future.set_running_or_notify_cancel()
            if running:
                try:
                    result = fn(*args, **kwargs)
                except Exception as exc:
                    logger.debug(f"[{self.name}] queued call failed: {exc}")
                    error = exc

            # counters settle before the caller is woken up
            with self._lock:
                self._pending -= 1
                self.completed += 1
            self._queue.task_done()

            if running:
                if error is not None:
                    future.set_exception(error)
                else:
                    future.set_result(result)

    def _wait_turn(self) -> None:
        if self._last_dequeue is not None:
            wait = self._last_dequeue + self.min_delay - self._clock()
            if wait > 0:
                self._sleep(wait)
        self._last_dequeue = self._clock()
