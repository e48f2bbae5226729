"""Single worker thread that owns all mutable engine state.

Host callbacks, timers and the poll loop never touch orchestrator state
directly; they post callables here and the worker runs them one at a time in
arrival order. Delays are threading.Timer objects whose only job is to post
their callable back onto the queue.
"""
from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future
from typing import Any, Callable, Optional, Set

LOGGER = logging.getLogger("EnvTabs.Dispatcher")

THREAD_NAME = "EnvTabsDispatcher"
_STOP = object()


class SerialDispatcher:
    """FIFO executor backed by one daemon thread."""

    def __init__(self, logger: Optional[logging.Logger] = None, name: str = THREAD_NAME) -> None:
        self._logger = logger or LOGGER
        self._name = name
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._timers: Set[threading.Timer] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
            timers = list(self._timers)
            self._timers.clear()
            thread = self._thread
            self._thread = None
        for timer in timers:
            timer.cancel()
        self._queue.put(_STOP)
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                self._logger.warning("%s thread did not stop within %.1fs", self._name, timeout)

    def is_dispatch_thread(self) -> bool:
        thread = self._thread
        return thread is not None and thread is threading.current_thread()

    def submit(self, func: Callable[[], Any], *, wait: bool = False, timeout: Optional[float] = 2.0) -> Any:
        """Queue *func*; with ``wait`` block for (and return) its result."""

        if not self._running:
            self._logger.debug("Dispatcher not running; dropping %s", getattr(func, "__name__", func))
            return None
        if wait and self.is_dispatch_thread():
            return func()
        future: "Future[Any]" = Future()
        self._queue.put((func, future))
        if not wait:
            return None
        return future.result(timeout=timeout)

    def call_later(self, delay: float, func: Callable[[], Any]) -> threading.Timer:
        """Run *func* on the worker after *delay* seconds; cancel via the returned timer."""

        timer: Optional[threading.Timer] = None

        def _post() -> None:
            with self._lock:
                self._timers.discard(timer)  # type: ignore[arg-type]
            self.submit(func)

        timer = threading.Timer(max(0.0, float(delay)), _post)
        timer.daemon = True
        with self._lock:
            self._timers.add(timer)
        timer.start()
        return timer

    # Internal helpers ---------------------------------------------------

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            func, future = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = func()
            except Exception as exc:
                self._logger.exception("Dispatched task %s failed", getattr(func, "__name__", func))
                future.set_exception(exc)
            else:
                future.set_result(result)
