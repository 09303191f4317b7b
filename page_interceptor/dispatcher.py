"""The single thread every rendering-engine call runs on.

The CDP websocket and the engine state built on top of it are not
thread-safe, so all of it lives on one worker thread. Callers hand work
over with :meth:`EngineDispatcher.submit` / :meth:`EngineDispatcher.post`
and schedule delayed work with :meth:`EngineDispatcher.post_delayed`.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

logger = logging.getLogger(__name__)


class ScheduledCall:
    """Handle for work queued with :meth:`EngineDispatcher.post_delayed`."""

    def __init__(self, timer: threading.Timer, on_cancel: Callable[[threading.Timer], None] | None = None) -> None:
        self._timer = timer
        self._on_cancel = on_cancel
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        self._timer.cancel()
        on_cancel, self._on_cancel = self._on_cancel, None
        if on_cancel is not None:
            on_cancel(self._timer)


class EngineDispatcher:
    def __init__(self, name: str = "page-engine") -> None:
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._thread_id: int | None = None
        self._closed = False
        self._timers: set[threading.Timer] = set()
        self._lock = threading.Lock()
        # Record the worker's identity so is_engine_thread() can answer.
        self._executor.submit(self._remember_thread).result()

    def _remember_thread(self) -> None:
        self._thread_id = threading.get_ident()

    @property
    def closed(self) -> bool:
        return self._closed

    def is_engine_thread(self) -> bool:
        return threading.get_ident() == self._thread_id

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future[Any]:
        return self._executor.submit(fn, *args)

    def post(self, fn: Callable[..., Any], *args: Any) -> None:
        if self._closed:
            logger.debug("Dispatcher closed, dropping %s", getattr(fn, "__qualname__", fn))
            return
        try:
            future = self._executor.submit(fn, *args)
        except RuntimeError:
            logger.debug("Dispatcher shut down, dropping %s", getattr(fn, "__qualname__", fn))
            return
        future.add_done_callback(_log_failure)

    def post_delayed(self, delay_seconds: float, fn: Callable[..., Any], *args: Any) -> ScheduledCall:
        handle: ScheduledCall

        def fire() -> None:
            self._forget_timer(timer)
            if not handle.cancelled:
                self.post(self._run_unless_cancelled, handle, fn, args)

        timer = threading.Timer(max(0.0, delay_seconds), fire)
        timer.daemon = True
        handle = ScheduledCall(timer, on_cancel=self._forget_timer)
        with self._lock:
            self._timers.add(timer)
        timer.start()
        return handle

    def _forget_timer(self, timer: threading.Timer) -> None:
        with self._lock:
            self._timers.discard(timer)

    @property
    def pending_timer_count(self) -> int:
        with self._lock:
            return len(self._timers)

    @staticmethod
    def _run_unless_cancelled(handle: ScheduledCall, fn: Callable[..., Any], args: tuple[Any, ...]) -> None:
        if not handle.cancelled:
            fn(*args)

    def shutdown(self, wait: bool = True) -> None:
        self._closed = True
        with self._lock:
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> EngineDispatcher:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> bool:
        self.shutdown()
        return False


def _log_failure(future: Future[Any]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Engine task failed", exc_info=exc)
