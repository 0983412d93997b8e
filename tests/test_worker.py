"""Unit tests for core/worker.py -- TaskDispatcher.

Covers:
- submit() returns without waiting on the task, even for 10,000 tasks
- drain() waits for every submitted task and reports timeouts
- a failing task is logged and does not affect its siblings
- submit() after close() drops the task without leaking the counter
"""

from __future__ import annotations

import logging
import threading
import time

from core.worker import TaskDispatcher


class TestSubmitAndDrain:
    def test_ten_thousand_tasks_submit_without_blocking(self) -> None:
        gate = threading.Event()
        done: list[int] = []

        def task() -> None:
            gate.wait()
            done.append(1)

        with TaskDispatcher(max_workers=8) as dispatcher:
            for _ in range(10_000):
                dispatcher.submit(task)
            # Nothing can finish while the gate is closed, yet every submit returned.
            assert dispatcher.in_flight == 10_000
            assert done == []

            gate.set()
            assert dispatcher.drain(timeout=30) is True
            assert dispatcher.in_flight == 0

        assert len(done) == 10_000

    def test_submit_returns_before_slow_task_finishes(self) -> None:
        started = threading.Event()
        release = threading.Event()

        def slow() -> None:
            started.set()
            release.wait()

        dispatcher = TaskDispatcher(max_workers=1)
        dispatcher.submit(slow)
        assert started.wait(timeout=5)
        assert dispatcher.in_flight == 1

        release.set()
        assert dispatcher.drain(timeout=5) is True
        dispatcher.close()

    def test_drain_with_nothing_submitted(self) -> None:
        dispatcher = TaskDispatcher()
        assert dispatcher.drain(timeout=0.1) is True
        dispatcher.close()

    def test_drain_times_out_while_task_is_running(self) -> None:
        release = threading.Event()
        dispatcher = TaskDispatcher(max_workers=1)
        dispatcher.submit(release.wait)

        start = time.monotonic()
        assert dispatcher.drain(timeout=0.2) is False
        assert time.monotonic() - start < 5
        assert dispatcher.in_flight == 1

        release.set()
        assert dispatcher.drain(timeout=5) is True
        dispatcher.close()


class TestFailureIsolation:
    def test_failing_task_is_logged_and_siblings_complete(self, caplog) -> None:
        done: list[int] = []

        def ok() -> None:
            done.append(1)

        def boom() -> None:
            raise RuntimeError("smtp exploded")

        dispatcher = TaskDispatcher(max_workers=2)
        with caplog.at_level(logging.ERROR, logger="tokenward.worker"):
            for _ in range(5):
                dispatcher.submit(ok)
            dispatcher.submit(boom)
            for _ in range(5):
                dispatcher.submit(ok)
            assert dispatcher.drain(timeout=5) is True
        dispatcher.close()

        assert len(done) == 10
        assert dispatcher.in_flight == 0
        failures = [r for r in caplog.records if r.name == "tokenward.worker"]
        assert len(failures) == 1
        assert "boom" in failures[0].getMessage()
        assert failures[0].exc_info is not None

    def test_base_exception_is_logged_and_releases_counter(self, caplog) -> None:
        """SystemExit is not an Exception, yet it is still logged and the lease released."""

        def bail() -> None:
            raise SystemExit(3)

        dispatcher = TaskDispatcher(max_workers=1)
        with caplog.at_level(logging.ERROR, logger="tokenward.worker"):
            dispatcher.submit(bail)
            assert dispatcher.drain(timeout=5) is True
        dispatcher.close()

        assert dispatcher.in_flight == 0
        records = [r for r in caplog.records if r.name == "tokenward.worker"]
        assert len(records) == 1
        assert "bail" in records[0].getMessage()
        assert "terminated abnormally" in records[0].getMessage()
        assert records[0].exc_info[0] is SystemExit


class TestClose:
    def test_submit_after_close_drops_task(self, caplog) -> None:
        ran: list[int] = []
        dispatcher = TaskDispatcher()
        dispatcher.close()

        with caplog.at_level(logging.ERROR, logger="tokenward.worker"):
            dispatcher.submit(lambda: ran.append(1))

        assert ran == []
        assert dispatcher.in_flight == 0
        assert dispatcher.drain(timeout=0.1) is True
        assert "dropping task" in caplog.text

    def test_context_manager_drains_on_exit(self) -> None:
        done: list[int] = []
        with TaskDispatcher(max_workers=4) as dispatcher:
            for _ in range(100):
                dispatcher.submit(lambda: (time.sleep(0.001), done.append(1)))
        assert len(done) == 100
