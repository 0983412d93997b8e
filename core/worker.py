"""
core/worker.py -- Fire-and-forget task dispatcher for work that must not block a request.

Route handlers hand closures (welcome mail, reset mail) to TaskDispatcher.submit()
and return their response immediately. The dispatcher runs each closure on its
own thread pool and keeps a single in-flight counter so shutdown can wait for
outstanding work with drain().

Guarantees:
  - submit() never blocks on the task and never raises the task's error.
  - The counter is incremented in submit() (before the task can start) and
    released by a _Lease context manager on the worker thread, so release runs
    on every exit path, including exceptions.
  - Any exception inside a task is logged with the task's name at the task
    boundary. Sibling tasks and the pool are unaffected. No retries.
  - No ordering between tasks, and none relative to the HTTP response.

Layer rule: core/ is the kernel. No imports from api/, auth/, or mailer/.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

logger = logging.getLogger("tokenward.worker")


def _describe(task: Callable[[], object]) -> str:
    return getattr(task, "__qualname__", None) or repr(task)


class _Lease:
    """One unit of the in-flight counter. Released exactly once."""

    def __init__(self, release: Callable[[], None]) -> None:
        self._release = release
        self._released = False
        self._lock = threading.Lock()

    def __enter__(self) -> _Lease:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self._release()


class TaskDispatcher:
    """Run deferred callables concurrently and track how many are outstanding.

    Usage:
        dispatcher = TaskDispatcher(max_workers=8)
        dispatcher.submit(lambda: mailer.send(user.email, "user_welcome.html", data))
        ...
        dispatcher.drain(timeout=30)   # at shutdown
        dispatcher.close()
    """

    def __init__(self, max_workers: int = 8, thread_name_prefix: str = "tokenward-worker") -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=thread_name_prefix)
        self._idle = threading.Condition()
        self._in_flight = 0
        self._closed = False

    @property
    def in_flight(self) -> int:
        """Number of submitted tasks that have not finished yet."""
        with self._idle:
            return self._in_flight

    def _acquire(self) -> _Lease:
        with self._idle:
            self._in_flight += 1
        return _Lease(self._release)

    def _release(self) -> None:
        with self._idle:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.notify_all()

    def submit(self, task: Callable[[], object]) -> None:
        """Schedule task for background execution and return immediately.

        The task owns its own error handling. Anything it raises is logged
        here and goes no further.
        """
        lease = self._acquire()
        if self._closed:
            lease.release()
            logger.error("Dispatcher is closed; dropping task %s", _describe(task))
            return
        try:
            self._executor.submit(self._run, lease, task)
        except RuntimeError:
            # Executor shut down between the closed check and submit.
            lease.release()
            logger.error("Dispatcher is closed; dropping task %s", _describe(task))

    def _run(self, lease: _Lease, task: Callable[[], object]) -> None:
        with lease:
            try:
                task()
            except Exception:
                logger.exception("Background task %s failed", _describe(task))
            except BaseException:
                # Re-raised into a future nobody reads; this log line is the only trace.
                logger.exception("Background task %s terminated abnormally", _describe(task))
                raise

    def drain(self, timeout: float | None = None) -> bool:
        """Block until every submitted task has finished.

        Returns True once the in-flight count reaches zero, or False if
        timeout (seconds) elapsed first. Tasks are never cancelled.
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight == 0, timeout=timeout)

    def close(self, wait: bool = True) -> None:
        """Stop accepting tasks and shut the pool down."""
        self._closed = True
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> TaskDispatcher:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.drain()
        self.close()
